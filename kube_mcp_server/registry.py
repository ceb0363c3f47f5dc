"""
Registry of live handles opened on a caller's behalf.

Every id handed out is closed exactly once: the entry leaves the map in the
same synchronous step that decides to close it, so a second close of the same
id either joins the close already running or finds the id retired.
"""
from __future__ import annotations
import asyncio
import collections
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .errors import NotFoundError

import logging
log = logging.getLogger(__name__)

# closed ids remembered for idempotent close replies
RETIRED_LIMIT = 4096


@dataclass
class ResourceHandle:
    id: str
    kind: str
    close: Callable[[], Awaitable[None]] = field(repr=False)
    describe: Optional[Callable[[], Dict[str, Any]]] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"id": self.id, "kind": self.kind}
        if self.describe is not None:
            d.update(self.describe())
        return d


@dataclass
class CloseResult:
    id: str
    kind: str
    ok: bool
    error: Optional[str] = None
    already_closed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"id": self.id, "kind": self.kind, "ok": self.ok}
        if self.error:
            d["error"] = self.error
        if self.already_closed:
            d["alreadyClosed"] = True
        return d


class ResourceRegistry:
    def __init__(self, retired_limit: int = RETIRED_LIMIT) -> None:
        self._handles: Dict[str, ResourceHandle] = {}
        self._closing: Dict[str, asyncio.Future] = {}
        # id -> kind, oldest first; only answers repeat closes
        self._retired: collections.OrderedDict[str, str] = collections.OrderedDict()
        self.retired_limit = retired_limit

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, resource_id: str) -> bool:
        return resource_id in self._handles

    def register(self, handle: ResourceHandle) -> str:
        if handle.id in self._handles or handle.id in self._closing or handle.id in self._retired:
            raise ValueError(f"duplicate resource id {handle.id}")
        self._handles[handle.id] = handle
        log.debug("Registered %s %s", handle.kind, handle.id)
        return handle.id

    def get(self, resource_id: str) -> Optional[ResourceHandle]:
        return self._handles.get(resource_id)

    def list(self) -> List[ResourceHandle]:
        return list(self._handles.values())

    async def close_one(self, resource_id: str) -> CloseResult:
        inflight = self._closing.get(resource_id)
        if inflight is not None:
            return await asyncio.shield(inflight)

        handle = self._handles.pop(resource_id, None)
        if handle is None:
            kind = self._retired.get(resource_id)
            if kind is None:
                raise NotFoundError("resource", resource_id, component="registry")
            return CloseResult(resource_id, kind, ok=True, already_closed=True)

        fut = self._start_close(handle)
        return await asyncio.shield(fut)

    async def close_all(self) -> List[CloseResult]:
        handles = list(self._handles.values())
        self._handles.clear()
        futures = [self._start_close(h) for h in handles]
        if not futures:
            return []
        results = await asyncio.gather(*(asyncio.shield(f) for f in futures))
        failed = sum(1 for r in results if not r.ok)
        log.info("Closed %d resources (%d failed)", len(results), failed)
        return list(results)

    # --- internals ---

    def _start_close(self, handle: ResourceHandle) -> asyncio.Future:
        # caller has already removed handle from _handles; no await before this returns
        self._retired[handle.id] = handle.kind
        while len(self._retired) > self.retired_limit:
            self._retired.popitem(last=False)
        fut = asyncio.ensure_future(self._close(handle))
        self._closing[handle.id] = fut
        fut.add_done_callback(lambda _f, rid=handle.id: self._closing.pop(rid, None))
        return fut

    async def _close(self, handle: ResourceHandle) -> CloseResult:
        try:
            await handle.close()
        except Exception as e:  # report per handle, keep closing the rest
            log.warning("Closing %s %s failed: %s", handle.kind, handle.id, e)
            return CloseResult(handle.id, handle.kind, ok=False, error=str(e))
        return CloseResult(handle.id, handle.kind, ok=True)
