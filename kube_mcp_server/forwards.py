"""
Port-forward bridges.

Each forward is one `kubectl port-forward` child process. ForwardSupervisor
owns the processes and is the only thing that changes a ForwardSession's
state:

    PENDING -> ACTIVE            bridge printed "Forwarding from ..."
    PENDING|ACTIVE -> CLOSING    stop() called, or start() cancelled
    CLOSING -> CLOSED            process exited within the grace period
    any -> FAILED                spawn/connect error, crash, or force-stop
"""
from __future__ import annotations
import asyncio
import collections
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional

from .errors import ForwardFailed, NotFoundError

import logging
log = logging.getLogger(__name__)

READY_MARKER = "Forwarding from"
# kubectl stderr when the local side cannot bind
_PORT_IN_USE = ("address already in use", "unable to listen on any of the requested ports")
_STDERR_TAIL = 20

TARGET_KINDS = {"pod": "pod", "po": "pod", "service": "service", "svc": "service"}


def new_forward_id() -> str:
    return f"pf-{uuid.uuid4().hex[:12]}"


class ForwardState(str, Enum):
    PENDING = "Pending"
    ACTIVE = "Active"
    CLOSING = "Closing"
    CLOSED = "Closed"
    FAILED = "Failed"


TERMINAL = (ForwardState.CLOSED, ForwardState.FAILED)


@dataclass
class ForwardSession:
    id: str
    local_port: int
    namespace: str
    target_kind: str
    target_name: str
    target_port: int
    state: ForwardState = ForwardState.PENDING
    started_at: float = field(default_factory=time.time)
    last_error: Optional[str] = None
    force_stopped: bool = False

    # runtime, owned by the supervisor
    _proc: Optional[asyncio.subprocess.Process] = field(default=None, repr=False, compare=False)
    _stderr: Deque[str] = field(default_factory=lambda: collections.deque(maxlen=_STDERR_TAIL), repr=False, compare=False)
    _pumps: List[asyncio.Task] = field(default_factory=list, repr=False, compare=False)
    _stop_task: Optional[asyncio.Task] = field(default=None, repr=False, compare=False)

    @property
    def target(self) -> str:
        return f"{self.target_kind}/{self.target_name}:{self.target_port}"

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc is not None else None

    def stderr_tail(self) -> str:
        return "\n".join(self._stderr)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "localPort": self.local_port,
            "namespace": self.namespace,
            "targetKind": self.target_kind,
            "targetName": self.target_name,
            "targetPort": self.target_port,
            "state": self.state.value,
            "startedAt": self.started_at,
            "lastError": self.last_error,
        }


# session -> bridge command line
CommandFactory = Callable[[ForwardSession], List[str]]


def port_forward_args(kubectl: str, session: ForwardSession, context: Optional[str] = None,
                      address: str = "127.0.0.1") -> List[str]:
    args = [
        kubectl, "port-forward",
        "-n", session.namespace,
        f"{session.target_kind}/{session.target_name}",
        f"{session.local_port}:{session.target_port}",
        "--address", address,
    ]
    if context:
        args += ["--context", context]
    return args


def normalize_target_kind(kind: str) -> str:
    k = TARGET_KINDS.get((kind or "").strip().lower())
    if k is None:
        raise ValueError(f"unsupported target kind: {kind!r} (expected pod or service)")
    return k


class ForwardSupervisor:
    def __init__(self, command_factory: CommandFactory, env: Optional[Dict[str, str]] = None,
                 ready_timeout: float = 15.0, stop_grace: float = 5.0):
        self.command_factory = command_factory
        self.env = env
        self.ready_timeout = ready_timeout
        self.stop_grace = stop_grace
        self._sessions: Dict[str, ForwardSession] = {}

    # --- queries ---

    def get(self, session_id: str) -> ForwardSession:
        s = self._sessions.get(session_id)
        if s is None:
            raise NotFoundError("port-forward", session_id, component="forwards")
        return s

    def list(self) -> List[ForwardSession]:
        return list(self._sessions.values())

    # --- lifecycle ---

    async def start(self, namespace: str, target_kind: str, target_name: str,
                    target_port: int, local_port: int, session_id: Optional[str] = None) -> ForwardSession:
        session = ForwardSession(
            id=session_id or new_forward_id(),
            local_port=int(local_port),
            namespace=namespace,
            target_kind=normalize_target_kind(target_kind),
            target_name=target_name,
            target_port=int(target_port),
        )
        cmd = self.command_factory(session)
        log.info("Starting port-forward %s: localhost:%d -> %s in %s",
                 session.id, session.local_port, session.target, namespace)
        try:
            session._proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
            )
        except OSError as e:
            self._fail(session, f"cannot start bridge: {e}")
            raise ForwardFailed(session.last_error, session.id)

        self._sessions[session.id] = session
        ready = asyncio.get_running_loop().create_future()
        session._pumps = [
            asyncio.create_task(self._pump_stdout(session, ready)),
            asyncio.create_task(self._pump_stderr(session)),
        ]
        try:
            await asyncio.wait_for(asyncio.shield(ready), timeout=self.ready_timeout)
        except asyncio.TimeoutError:
            await self._abort(session, f"bridge not ready after {self.ready_timeout}s")
            raise ForwardFailed(session.last_error, session.id)
        except asyncio.CancelledError:
            # teardown while pending: Pending -> Closing -> Closed
            await self._terminate(session)
            self._sessions.pop(session.id, None)
            raise

        if not ready.result():
            # stdout closed before the ready line: the bridge died
            rc = await session._proc.wait()
            await self._join_pumps(session)
            err = session.stderr_tail() or f"bridge exited with code {rc}"
            retryable = any(m in err.lower() for m in _PORT_IN_USE)
            self._fail(session, err)
            self._sessions.pop(session.id, None)
            raise ForwardFailed(err, session.id, retryable=retryable)

        session.state = ForwardState.ACTIVE
        session._pumps.append(asyncio.create_task(self._watch(session)))
        log.info("Port-forward %s active on localhost:%d", session.id, session.local_port)
        return session

    async def stop(self, session_id: str) -> ForwardSession:
        """Terminate the bridge. Idempotent for sessions already CLOSED/FAILED."""
        session = self.get(session_id)
        if session._stop_task is None:
            if session.state in TERMINAL:
                await self._join_pumps(session)
                return session
            session._stop_task = asyncio.ensure_future(self._terminate(session))
        # a second caller waits on the same stop instead of racing it
        await asyncio.shield(session._stop_task)
        return session

    def forget(self, session_id: str) -> None:
        s = self._sessions.get(session_id)
        if s is not None and s.state in TERMINAL:
            del self._sessions[session_id]

    def kill_all(self) -> int:
        """Synchronous last resort on interpreter exit. Returns processes signalled."""
        n = 0
        for s in self._sessions.values():
            p = s._proc
            if p is not None and p.returncode is None:
                try:
                    p.kill()
                    n += 1
                except ProcessLookupError:
                    pass
        return n

    # --- internals ---

    def _fail(self, session: ForwardSession, message: str) -> None:
        session.state = ForwardState.FAILED
        session.last_error = message
        log.warning("Port-forward %s failed: %s", session.id, message)

    async def _terminate(self, session: ForwardSession) -> None:
        session.state = ForwardState.CLOSING
        proc = session._proc
        if proc is not None and proc.returncode is None:
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.stop_grace)
            except asyncio.TimeoutError:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                try:
                    await asyncio.wait_for(proc.wait(), timeout=self.stop_grace)
                except asyncio.TimeoutError:
                    log.error("Port-forward %s (pid %s) did not die after SIGKILL", session.id, proc.pid)
                session.force_stopped = True
                self._fail(session, f"force-stop: bridge did not exit within {self.stop_grace}s")
        await self._join_pumps(session)
        if session.state is ForwardState.CLOSING:
            session.state = ForwardState.CLOSED
            log.info("Port-forward %s closed", session.id)

    async def _abort(self, session: ForwardSession, message: str) -> None:
        proc = session._proc
        if proc is not None and proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
        await self._join_pumps(session)
        tail = session.stderr_tail()
        self._fail(session, f"{message}: {tail}" if tail else message)
        self._sessions.pop(session.id, None)

    async def _join_pumps(self, session: ForwardSession) -> None:
        current = asyncio.current_task()
        pending = [t for t in session._pumps if t is not current and not t.done()]
        if pending:
            try:
                await asyncio.wait_for(asyncio.gather(*pending, return_exceptions=True), timeout=self.stop_grace)
            except asyncio.TimeoutError:
                for t in pending:
                    t.cancel()

    async def _pump_stdout(self, session: ForwardSession, ready: asyncio.Future) -> None:
        stream = session._proc.stdout
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", "replace").rstrip()
            log.debug("[%s] %s", session.id, text)
            if not ready.done() and READY_MARKER in text:
                ready.set_result(True)
        if not ready.done():
            ready.set_result(False)

    async def _pump_stderr(self, session: ForwardSession) -> None:
        stream = session._proc.stderr
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", "replace").rstrip()
            if text:
                session._stderr.append(text)
                log.debug("[%s] stderr: %s", session.id, text)

    async def _watch(self, session: ForwardSession) -> None:
        rc = await session._proc.wait()
        await self._join_pumps(session)
        if session.state is ForwardState.ACTIVE:
            # nobody asked it to stop
            tail = session.stderr_tail()
            msg = f"bridge exited unexpectedly with code {rc}"
            self._fail(session, f"{msg}: {tail}" if tail else msg)
