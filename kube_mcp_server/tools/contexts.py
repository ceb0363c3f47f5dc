from __future__ import annotations
from typing import Dict, Optional

from fastmcp import FastMCP

from ..errors import KubeMcpError, error_payload
from ..session import SessionManager

OPERATIONS = ("list", "get", "set")


async def kubectl_context(session: SessionManager, operation: str = "list", name: Optional[str] = None) -> Dict:
    op = (operation or "list").strip().lower()
    if op not in OPERATIONS:
        return {"error": f"unsupported operation: {operation} (expected one of {', '.join(OPERATIONS)})"}
    try:
        if op == "list":
            contexts = await session.list_contexts()
            return {"contexts": [c.to_dict() for c in contexts]}
        if op == "get":
            cur = await session.current_context()
            return {"current": cur.to_dict() if cur else None}
        if not name:
            return {"error": "name is required for operation=set"}
        ctx = await session.set_context(name)
        return {"ok": True, "current": ctx.to_dict()}
    except KubeMcpError as e:
        return error_payload(e)


def register(mcp: FastMCP, session: SessionManager) -> None:
    @mcp.tool(name="kubectl_context", description="List kubeconfig contexts, get the current one, or switch with operation=set and name.")
    async def _kubectl_context(operation: str = "list", name: Optional[str] = None) -> Dict:
        return await kubectl_context(session, operation, name)
