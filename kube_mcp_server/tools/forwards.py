from __future__ import annotations
from typing import Dict, Optional

from fastmcp import FastMCP

from ..errors import KubeMcpError, error_payload
from ..session import SessionManager


async def port_forward(
    session: SessionManager,
    target_kind: str,
    target_name: str,
    target_port: int,
    namespace: Optional[str] = None,
    local_port: Optional[int] = None,
) -> Dict:
    """
    Forward a local port to a pod or service port.

    Args:
      target_kind: "pod" or "service" (also "po"/"svc")
      target_name: pod or service name
      target_port: port on the pod/service
      namespace: defaults to the session namespace
      local_port: local port to bind; if omitted one is picked from the configured start port
    """
    try:
        fwd = await session.start_forward(namespace, target_kind, target_name, target_port, local_port)
    except (KubeMcpError, ValueError) as e:
        return error_payload(e)
    return {
        "id": fwd.id,
        "localPort": fwd.local_port,
        "namespace": fwd.namespace,
        "target": fwd.target,
        "state": fwd.state.value,
        "url": f"http://127.0.0.1:{fwd.local_port}",
    }


async def stop_port_forward(session: SessionManager, id: str) -> Dict:
    try:
        res = await session.stop_forward(id)
    except KubeMcpError as e:
        return error_payload(e)
    if not res.ok:
        return {"ok": False, "id": res.id, "error": res.error}
    return {"ok": True, "id": res.id, "alreadyClosed": res.already_closed}


async def list_port_forwards(session: SessionManager) -> Dict:
    return {"items": [f.to_dict() for f in session.list_forwards()]}


async def cleanup(session: SessionManager) -> Dict:
    results = await session.cleanup_all()
    return {
        "results": [r.to_dict() for r in results],
        "closed": sum(1 for r in results if r.ok),
        "failed": sum(1 for r in results if not r.ok),
    }


def register(mcp: FastMCP, session: SessionManager) -> None:
    @mcp.tool(name="port_forward", description="Forward a local port to a pod or service port. Returns the forward id and local port.")
    async def _port_forward(
        target_kind: str,
        target_name: str,
        target_port: int,
        namespace: Optional[str] = None,
        local_port: Optional[int] = None,
    ) -> Dict:
        return await port_forward(session, target_kind, target_name, target_port, namespace, local_port)

    @mcp.tool(name="stop_port_forward", description="Stop a port-forward by id. Stopping an already stopped forward succeeds.")
    async def _stop_port_forward(id: str) -> Dict:
        return await stop_port_forward(session, id)

    @mcp.tool(name="list_port_forwards", description="List port-forwards opened by this server and their states.")
    async def _list_port_forwards() -> Dict:
        return await list_port_forwards(session)

    @mcp.tool(name="cleanup", description="Close every resource this server opened (port-forwards). Reports per-resource results.")
    async def _cleanup() -> Dict:
        return await cleanup(session)
