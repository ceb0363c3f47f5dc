from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from .errors import InvalidFormat, NotFoundError

import logging
log = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "default"

# Columns printed by `kubectl config get-contexts`, in order
_COLUMNS = ("CURRENT", "NAME", "CLUSTER", "AUTHINFO", "NAMESPACE")
_REQUIRED = ("CURRENT", "NAME", "CLUSTER", "AUTHINFO")

Runner = Callable[[List[str]], Awaitable[str]]


@dataclass
class Context:
    name: str
    cluster: str
    user: str
    namespace: str
    is_current: bool = False

    def to_dict(self) -> Dict:
        return {
            "name": self.name,
            "cluster": self.cluster,
            "user": self.user,
            "namespace": self.namespace,
            "isCurrent": self.is_current,
        }


def _column_offsets(header: str) -> Dict[str, int]:
    offsets: Dict[str, int] = {}
    for col in _COLUMNS:
        # whole word, so NAME does not match inside NAMESPACE
        m = re.search(rf"(?<!\S){col}(?!\S)", header)
        if m:
            offsets[col] = m.start()
    return offsets


def parse_context_table(text: str) -> List[Context]:
    """Parse `kubectl config get-contexts` output.

    Context names can contain ':', '@' and '/' (e.g. EKS ARNs), so each row is
    sliced at the character offsets of the header columns, never split on
    whitespace or punctuation.
    """
    lines = text.splitlines()
    while lines and not lines[0].strip():
        lines.pop(0)
    if not lines:
        return []

    header = lines[0]
    offsets = _column_offsets(header)
    missing = [c for c in _REQUIRED if c not in offsets]
    if missing:
        raise InvalidFormat(f"missing columns {', '.join(missing)} in header", text)

    ordered = sorted(offsets.items(), key=lambda kv: kv[1])
    bounds: Dict[str, tuple] = {}
    for i, (col, start) in enumerate(ordered):
        end = ordered[i + 1][1] if i + 1 < len(ordered) else None
        bounds[col] = (start, end)

    contexts: List[Context] = []
    seen_current = False
    for line in lines[1:]:
        if not line.strip():
            continue
        if len(line) <= offsets["CLUSTER"]:
            raise InvalidFormat(f"row too short for header: {line!r}", text)

        def cell(col: str) -> str:
            if col not in bounds:
                return ""
            start, end = bounds[col]
            return line[start:end].strip()

        name = cell("NAME")
        if not name:
            raise InvalidFormat(f"row without a context name: {line!r}", text)
        current = cell("CURRENT") == "*" and not seen_current
        seen_current = seen_current or current
        contexts.append(Context(
            name=name,
            cluster=cell("CLUSTER"),
            user=cell("AUTHINFO"),
            namespace=cell("NAMESPACE") or DEFAULT_NAMESPACE,
            is_current=current,
        ))
    return contexts


class ContextRegistry:
    """Known contexts and the active one.

    `pinned` overrides the kubeconfig's current-context (set from K8S_CONTEXT at
    startup, or by set_current). While pinned, is_current follows the pin.
    """

    def __init__(self, runner: Runner, pinned: Optional[str] = None):
        self._run = runner
        self.pinned = pinned

    async def list(self) -> List[Context]:
        out = await self._run(["config", "get-contexts"])
        contexts = parse_context_table(out)
        if self.pinned is not None:
            for c in contexts:
                c.is_current = c.name == self.pinned
        return contexts

    async def current(self) -> Optional[Context]:
        for c in await self.list():
            if c.is_current:
                return c
        return None

    async def set_current(self, name: str) -> Context:
        contexts = await self.list()
        target = next((c for c in contexts if c.name == name), None)
        if target is None:
            raise NotFoundError("context", name, component="contexts")
        if target.is_current:
            return target
        await self._run(["config", "use-context", name])
        self.pinned = name
        target.is_current = True
        log.info("Switched context to %s", name)
        return target
