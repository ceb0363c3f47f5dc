from __future__ import annotations
import asyncio
from typing import Optional, Dict, List

from fastmcp import FastMCP
from kubernetes import client as k8s_client
from kubernetes.client import exceptions as k8s_exceptions

from ..errors import KubeMcpError, error_payload
from ..session import SessionManager

# Helpers

def _obj_id(kind: str, ns: Optional[str], name: str) -> str:
    return f"{kind.lower()}:{ns + '/' if ns else ''}{name}"

def _summary_pod(p) -> dict:
    meta = getattr(p, "metadata", None)
    status = getattr(p, "status", None)
    return {
        "name": getattr(meta, "name", ""),
        "namespace": getattr(meta, "namespace", ""),
        "phase": getattr(status, "phase", None),
        "ready": _pod_ready(status),
        "podIP": getattr(status, "pod_ip", None),
    }

def _pod_ready(status) -> Optional[str]:
    conds = getattr(status, "conditions", None) or []
    return next((c.status for c in conds if getattr(c, "type", "") == "Ready"), None)

def _summary_service(s) -> dict:
    spec = getattr(s, "spec", None)
    ports = getattr(spec, "ports", None) or []
    return {
        "name": s.metadata.name,
        "namespace": s.metadata.namespace,
        "type": getattr(spec, "type", None),
        "clusterIP": getattr(spec, "cluster_ip", None),
        "ports": [{"name": getattr(p, "name", None), "port": p.port,
                   "targetPort": str(p.target_port) if getattr(p, "target_port", None) is not None else None,
                   "protocol": getattr(p, "protocol", None)} for p in ports],
        "selector": getattr(spec, "selector", None) or {},
    }

def _summary_deployment(d) -> dict:
    return {
        "name": d.metadata.name,
        "namespace": d.metadata.namespace,
        "replicas": getattr(d.status, "replicas", 0) or 0,
        "available": getattr(d.status, "available_replicas", 0) or 0,
    }

def _trim_event(e) -> dict:
    md = getattr(e, "metadata", None)
    involved = getattr(e, "involved_object", None)
    last_ts = getattr(e, "last_timestamp", None) or getattr(e, "event_time", None)
    return {
        "name": getattr(md, "name", ""),
        "namespace": getattr(md, "namespace", ""),
        "type": getattr(e, "type", "") or None,
        "reason": getattr(e, "reason", "") or None,
        "message": (getattr(e, "message", "") or "")[:500],
        "lastTimestamp": str(last_ts) if last_ts else None,
        "count": getattr(e, "count", None),
        "involved": _obj_id(getattr(involved, "kind", "") or "", getattr(involved, "namespace", None),
                            getattr(involved, "name", "") or ""),
    }

def _core(api_client: k8s_client.ApiClient) -> k8s_client.CoreV1Api:
    return k8s_client.CoreV1Api(api_client)

def _apps(api_client: k8s_client.ApiClient) -> k8s_client.AppsV1Api:
    return k8s_client.AppsV1Api(api_client)

def _api_error(e: k8s_exceptions.ApiException) -> Dict:
    return {"error": getattr(e, "reason", None) or "api error", "status": e.status, "body": (e.body or "")[:2000]}

# Tools (the client is built on the loop; blocking calls run in a worker thread)

def _list(api_client: k8s_client.ApiClient, kind: str, namespace: Optional[str], label_selector: Optional[str], limit: int) -> Dict:
    api = _core(api_client)
    kind_l = (kind or "").lower()
    cont = None
    items: List[dict] = []

    if kind_l in ("pod", "pods"):
        resp = (api.list_namespaced_pod(namespace=namespace, label_selector=label_selector, limit=limit)
                if namespace else
                api.list_pod_for_all_namespaces(label_selector=label_selector, limit=limit))
        items = [_summary_pod(o) for o in resp.items]
    elif kind_l in ("service", "services", "svc"):
        resp = (api.list_namespaced_service(namespace=namespace, label_selector=label_selector, limit=limit)
                if namespace else
                api.list_service_for_all_namespaces(label_selector=label_selector, limit=limit))
        items = [_summary_service(s) for s in resp.items]
    elif kind_l in ("namespace", "namespaces", "ns"):
        resp = api.list_namespace(label_selector=label_selector, limit=limit)
        items = [{"name": o.metadata.name, "phase": getattr(o.status, "phase", None)} for o in resp.items]
    elif kind_l in ("node", "nodes"):
        resp = api.list_node(label_selector=label_selector, limit=limit)
        items = [{"name": o.metadata.name} for o in resp.items]
    elif kind_l in ("deployment", "deployments", "deploy"):
        apps = _apps(api_client)
        resp = (apps.list_namespaced_deployment(namespace=namespace, label_selector=label_selector, limit=limit)
                if namespace else
                apps.list_deployment_for_all_namespaces(label_selector=label_selector, limit=limit))
        items = [_summary_deployment(d) for d in resp.items]
    elif kind_l in ("event", "events"):
        resp = (api.list_namespaced_event(namespace=namespace, limit=limit)
                if namespace else
                api.list_event_for_all_namespaces(limit=limit))
        items = [_trim_event(e) for e in resp.items]
    else:
        return {"error": f"unsupported kind: {kind}"}

    cont = getattr(getattr(resp, "metadata", None), "_continue", None)
    return {"items": items, "continue": cont}


def _get(api_client: k8s_client.ApiClient, kind: str, name: str, namespace: str) -> Dict:
    k = (kind or "").lower()
    if k in ("pod", "po"):
        p = _core(api_client).read_namespaced_pod(name=name, namespace=namespace)
        d = _summary_pod(p)
        d["node"] = getattr(p.spec, "node_name", None)
        d["containers"] = [c.name for c in (getattr(p.spec, "containers", None) or [])]
        return d
    if k in ("service", "svc"):
        return _summary_service(_core(api_client).read_namespaced_service(name=name, namespace=namespace))
    if k in ("deployment", "deploy"):
        return _summary_deployment(_apps(api_client).read_namespaced_deployment(name=name, namespace=namespace))
    return {"error": f"unsupported kind: {kind}"}


def _logs(api_client: k8s_client.ApiClient, namespace: str, pod: str, container: Optional[str], tail_lines: int) -> Dict:
    kwargs = {"tail_lines": tail_lines}
    if container:
        kwargs["container"] = container
    text = _core(api_client).read_namespaced_pod_log(
        name=pod,
        namespace=namespace,
        _request_timeout=(10, 65),  # (connect, read) seconds to avoid hangs
        **kwargs,
    )
    truncated = False
    if isinstance(text, str) and len(text) > 200_000:
        text = text[-200_000:]
        truncated = True
    return {"namespace": namespace, "pod": pod, "container": container,
            "tail_lines": tail_lines, "truncated": truncated, "log": text or ""}


async def k8s_list(session: SessionManager, kind: str, namespace: Optional[str] = None,
                   label_selector: Optional[str] = None, limit: Optional[int] = 50) -> Dict:
    page_limit = max(1, min(int(limit or 50), session.settings.max_list_items))
    try:
        return await asyncio.to_thread(_list, session.api_client(), kind, namespace, label_selector, page_limit)
    except k8s_exceptions.ApiException as e:
        return _api_error(e)
    except KubeMcpError as e:
        return error_payload(e)


async def k8s_get(session: SessionManager, kind: str, name: str, namespace: Optional[str] = None) -> Dict:
    if not name:
        return {"error": "name is required"}
    try:
        return await asyncio.to_thread(_get, session.api_client(), kind, name, namespace or session.namespace)
    except k8s_exceptions.ApiException as e:
        if e.status == 404:
            return {"error": f"{kind} '{name}' not found in namespace '{namespace or session.namespace}'", "status": 404}
        return _api_error(e)
    except KubeMcpError as e:
        return error_payload(e)


async def get_pod_logs(session: SessionManager, pod: str, namespace: Optional[str] = None,
                       container: Optional[str] = None, tail_lines: Optional[int] = 200) -> Dict:
    if not pod:
        return {"error": "pod is required"}
    _tail = max(1, min(int(tail_lines or 200), 5000))
    ns = namespace or session.namespace
    try:
        return await asyncio.to_thread(_logs, session.api_client(), ns, pod, container, _tail)
    except k8s_exceptions.ApiException as e:
        if e.status == 404:
            return {"error": f"pod '{pod}' not found in namespace '{ns}'", "status": 404}
        return _api_error(e)
    except KubeMcpError as e:
        return error_payload(e)


def register(mcp: FastMCP, session: SessionManager) -> None:
    @mcp.tool(name="k8s_list", description="List Kubernetes resources (trimmed). kind={Pod|Service|Namespace|Node|Deployment|Event}.")
    async def _k8s_list(kind: str, namespace: Optional[str] = None, label_selector: Optional[str] = None,
                        limit: Optional[int] = 50) -> Dict:
        return await k8s_list(session, kind, namespace, label_selector, limit)

    @mcp.tool(name="k8s_get", description="Get a single Pod, Service or Deployment by name (trimmed).")
    async def _k8s_get(kind: str, name: str, namespace: Optional[str] = None) -> Dict:
        return await k8s_get(session, kind, name, namespace)

    @mcp.tool(name="get_pod_logs", description="Get pod logs (optionally container-specific, tail capped at 5000 lines).")
    async def _get_pod_logs(pod: str, namespace: Optional[str] = None, container: Optional[str] = None,
                            tail_lines: Optional[int] = 200) -> Dict:
        return await get_pod_logs(session, pod, namespace, container, tail_lines)
