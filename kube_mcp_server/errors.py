"""Errors raised by the session and connection layer."""
from __future__ import annotations
from typing import Any, Dict, List, Optional


class KubeMcpError(Exception):
    """Base error. `component` names the layer that raised it."""
    component = "session"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": str(self), "type": type(self).__name__, "component": self.component}


class ConfigError(KubeMcpError):
    """No usable kubeconfig, or the selected one could not be parsed."""
    component = "kubeconfig"

    NO_SOURCE_FOUND = "NoSourceFound"
    MALFORMED = "Malformed"

    def __init__(self, reason: str, message: str, source: Optional[str] = None):
        self.reason = reason
        self.source = source
        where = f" ({source})" if source else ""
        super().__init__(f"{reason}{where}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["reason"] = self.reason
        d["source"] = self.source
        return d


class NotFoundError(KubeMcpError):
    """Unknown context name or resource id."""

    def __init__(self, what: str, key: str, component: Optional[str] = None):
        self.what = what
        self.key = key
        if component:
            self.component = component
        super().__init__(f"{what} '{key}' not found")


class PortExhaustion(KubeMcpError):
    component = "ports"

    def __init__(self, start: int, end: int):
        self.start = start
        self.end = end
        super().__init__(f"no free local port in range [{start}, {end})")

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["range"] = [self.start, self.end]
        return d


class InvalidFormat(KubeMcpError):
    """kubectl printed something we could not slice into columns."""
    component = "contexts"

    def __init__(self, detail: str, text: str = ""):
        self.detail = detail
        self.text = text
        super().__init__(f"Invalid kubectl output format: {detail}")

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["output"] = self.text
        return d


class ForwardFailed(KubeMcpError):
    component = "forwards"

    def __init__(self, reason: str, session_id: Optional[str] = None, retryable: bool = False):
        self.reason = reason
        self.session_id = session_id
        self.retryable = retryable
        prefix = f"port-forward {session_id}: " if session_id else "port-forward: "
        super().__init__(prefix + reason)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["id"] = self.session_id
        d["retryable"] = self.retryable
        return d


class KubectlError(KubeMcpError):
    component = "kubectl"

    def __init__(self, command: List[str], exit_code: Optional[int], stderr: str):
        self.command = list(command)
        self.exit_code = exit_code
        self.stderr = stderr
        status = "timed out" if exit_code is None else f"exited {exit_code}"
        super().__init__(f"{' '.join(self.command[:3])} {status}: {stderr.strip()}")

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["command"] = self.command
        d["exit_code"] = self.exit_code
        d["stderr"] = self.stderr
        return d


def error_payload(exc: Exception) -> Dict[str, Any]:
    """Render an exception as a tool result dict."""
    if isinstance(exc, KubeMcpError):
        return exc.to_dict()
    return {"error": f"{exc}", "type": type(exc).__name__}
