from __future__ import annotations
import asyncio
from typing import Any, Dict, List, Optional, Set

from kubernetes import client as k8s_client

from .auth import KubeconfigResolver, ResolvedKubeconfig, new_api_client
from .config import Settings, diagnostics
from .contexts import Context, ContextRegistry, Runner
from .errors import ForwardFailed
from .forwards import ForwardSession, ForwardSupervisor, new_forward_id, normalize_target_kind, port_forward_args
from .kubectl import KubectlRunner, kubectl_binary, kubectl_env
from .ports import PortAllocator, PortLease
from .registry import CloseResult, ResourceHandle, ResourceRegistry

import logging
log = logging.getLogger(__name__)

FORWARD_KIND = "port-forward"


class SessionManager:
    """Everything a tool handler needs: credentials, contexts, ports, forwards.

    One instance is built in main() and passed to every tool registration.
    """

    def __init__(self, settings: Settings,
                 resolver: Optional[KubeconfigResolver] = None,
                 runner: Optional[Runner] = None,
                 ports: Optional[PortAllocator] = None,
                 forwards: Optional[ForwardSupervisor] = None,
                 resources: Optional[ResourceRegistry] = None):
        self.settings = settings
        self.resolver = resolver or KubeconfigResolver(settings)
        self._runner = runner
        self.ports = ports or PortAllocator()
        self._forwards = forwards
        self.resources = resources or ResourceRegistry()
        self._resolved: Optional[ResolvedKubeconfig] = None
        self._contexts: Optional[ContextRegistry] = None
        self._api_client: Optional[k8s_client.ApiClient] = None
        # forward id -> task still waiting for its bridge
        self._starting: Dict[str, asyncio.Task] = {}
        self._aborted: Set[str] = set()

    # --- credentials & contexts ---

    def resolve(self) -> ResolvedKubeconfig:
        """Resolve credentials once. Later calls return the cached result."""
        if self._resolved is None:
            self._resolved = self.resolver.resolve()
        return self._resolved

    @property
    def resolved(self) -> ResolvedKubeconfig:
        return self.resolve()

    @property
    def namespace(self) -> str:
        return self.resolved.namespace

    @property
    def contexts(self) -> ContextRegistry:
        if self._contexts is None:
            runner = self._runner or KubectlRunner(self.resolved.kubeconfig_path, timeout=self.settings.kubectl_timeout)
            # a startup override is pinned without rewriting the user's kubeconfig
            self._contexts = ContextRegistry(runner, pinned=self.settings.context)
        return self._contexts

    @property
    def active_context(self) -> Optional[str]:
        return self.contexts.pinned or self.resolved.context

    def kubeconfig_env(self) -> Dict[str, str]:
        return kubectl_env(self.resolved.kubeconfig_path)

    async def list_contexts(self) -> List[Context]:
        return await self.contexts.list()

    async def current_context(self) -> Optional[Context]:
        return await self.contexts.current()

    async def set_context(self, name: str) -> Context:
        before = self.contexts.pinned
        ctx = await self.contexts.set_current(name)
        if self.contexts.pinned != before:
            self._api_client = None
        return ctx

    def api_client(self) -> k8s_client.ApiClient:
        """Kubernetes client for the active context (cached until the context changes).

        Call from the event loop, then hand the client to worker threads.
        """
        if self._api_client is None:
            self._api_client = new_api_client(self.resolved, self.active_context)
        return self._api_client

    # --- port-forwards ---

    @property
    def forwards(self) -> ForwardSupervisor:
        if self._forwards is None:
            self._forwards = ForwardSupervisor(
                command_factory=self._forward_command,
                env=self.kubeconfig_env(),
                ready_timeout=self.settings.port_forward_ready_timeout,
                stop_grace=self.settings.port_forward_stop_grace,
            )
        return self._forwards

    def _forward_command(self, session: ForwardSession) -> List[str]:
        return port_forward_args(kubectl_binary(), session, context=self.contexts.pinned)

    async def start_forward(self, namespace: Optional[str], target_kind: str, target_name: str,
                            target_port: int, local_port: Optional[int] = None) -> ForwardSession:
        kind = normalize_target_kind(target_kind)
        if not target_name:
            raise ValueError("target_name is required")
        ns = namespace or self.namespace

        forward_id = new_forward_id()
        task = asyncio.ensure_future(self._open_forward(forward_id, ns, kind, target_name, target_port, local_port))
        self._starting[forward_id] = task
        try:
            return await task
        except asyncio.CancelledError:
            if forward_id not in self._aborted:
                raise
            raise ForwardFailed("start cancelled by cleanup", forward_id) from None
        finally:
            self._starting.pop(forward_id, None)
            self._aborted.discard(forward_id)

    async def _open_forward(self, forward_id: str, ns: str, kind: str, target_name: str,
                            target_port: int, local_port: Optional[int]) -> ForwardSession:
        if local_port:
            start, retries, attempts = int(local_port), 1, 1
        else:
            start = self.settings.port_forward_start_port
            retries = self.settings.port_forward_max_retries
            attempts = max(1, self.settings.port_forward_attempts)

        attempt = 1
        while True:
            lease = self.ports.lease(start, retries)
            try:
                fwd = await self.forwards.start(ns, kind, target_name, target_port, lease.port,
                                                session_id=forward_id)
            except ForwardFailed as e:
                self.ports.release(lease)
                if not e.retryable or attempt >= attempts:
                    raise
                log.info("Local port %d was taken before the bridge bound it, retrying (%d/%d)",
                         lease.port, attempt, attempts)
                attempt += 1
                start = lease.port + 1
                continue
            except BaseException:
                self.ports.release(lease)
                raise
            self.resources.register(self._forward_handle(fwd, lease))
            return fwd

    def _forward_handle(self, fwd: ForwardSession, lease: PortLease) -> ResourceHandle:
        async def close() -> None:
            try:
                stopped = await self.forwards.stop(fwd.id)
            finally:
                self.ports.release(lease)
                self.forwards.forget(fwd.id)
            if stopped.force_stopped:
                raise ForwardFailed(stopped.last_error or "force-stop", fwd.id)

        return ResourceHandle(id=fwd.id, kind=FORWARD_KIND, close=close, describe=fwd.to_dict)

    async def stop_forward(self, forward_id: str) -> CloseResult:
        return await self.resources.close_one(forward_id)

    def list_forwards(self) -> List[ForwardSession]:
        if self._forwards is None:
            return []
        return [s for s in self._forwards.list() if s.id in self.resources]

    async def cleanup_all(self) -> List[CloseResult]:
        # pending starts first, so none of them registers behind the close below
        results = await self._abort_starts()
        results.extend(await self.resources.close_all())
        return results

    async def _abort_starts(self) -> List[CloseResult]:
        pending = list(self._starting.items())
        if not pending:
            return []
        for forward_id, task in pending:
            self._aborted.add(forward_id)
            task.cancel()
        await asyncio.gather(*(t for _, t in pending), return_exceptions=True)
        # a start that won the race is registered now and close_all picks it up
        results = [CloseResult(fid, FORWARD_KIND, ok=True) for fid, t in pending if t.cancelled()]
        if results:
            log.info("Cancelled %d pending port-forward starts", len(results))
        return results

    # --- lifecycle ---

    async def shutdown(self) -> List[CloseResult]:
        results = await self.cleanup_all()
        if self._resolved is not None:
            self._resolved.discard()
        return results

    def kill_bridges(self) -> int:
        return self._forwards.kill_all() if self._forwards is not None else 0

    def diagnostics(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"settings": diagnostics(self.settings)}
        if self._resolved is not None:
            d["kubeconfig"] = self._resolved.describe()
            d["activeContext"] = self.active_context
        d["forwards"] = len(self.list_forwards())
        d["resources"] = len(self.resources)
        d["leasedPorts"] = self.ports.leased()
        return d
