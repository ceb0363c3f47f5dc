from __future__ import annotations
import os
import json
import pathlib
from typing import Any, Callable, Dict, Optional
from dataclasses import dataclass, asdict, field

import yaml


# -------------------------------
# Configuration loading & merging
# -------------------------------

@dataclass
class Settings:
    # Logging
    log_level: str = "INFO"

    # Kubeconfig sources, highest priority first (in-cluster is detected, not configured)
    kubeconfig_yaml: Optional[str] = None
    kubeconfig_json: Optional[str] = None
    k8s_server: Optional[str] = None
    k8s_token: Optional[str] = None
    k8s_skip_tls_verify: bool = False
    kubeconfig_path: Optional[str] = None

    # Overrides applied on top of whichever source wins
    context: Optional[str] = None
    namespace: Optional[str] = None

    # kubectl
    kubectl_timeout: float = 30.0

    # Port-forward knobs
    port_forward_start_port: int = 10000
    port_forward_max_retries: int = 100
    port_forward_ready_timeout: float = 15.0
    port_forward_stop_grace: float = 5.0
    port_forward_attempts: int = 3

    max_list_items: int = 200

    # Internal: where we loaded file config from
    _config_file: Optional[str] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def redacted(self) -> Dict[str, Any]:
        d = self.to_dict()
        for k in ("kubeconfig_yaml", "kubeconfig_json", "k8s_token"):
            v = d.get(k)
            if v:
                d[k] = _redact(v)
        return d


def _redact(v: str) -> str:
    if not v:
        return v
    return "***" if len(v) <= 8 else f"{v[:4]}...{v[-4:]}"


def _as_bool(v: str) -> bool:
    return v.strip().lower() in ("1", "true", "yes", "on")


def _read_file_config(explicit_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load YAML/JSON config for the server. Search order:
      1) explicit_path (if provided)
      2) ./config.yaml / ./config.json
      3) ~/.kube-mcp-server/config.yaml or config.json
    Returns {} if nothing found or parsing fails.
    """
    candidates = []
    if explicit_path:
        candidates.append(pathlib.Path(explicit_path))

    cwd = pathlib.Path.cwd()
    candidates.extend([
        cwd / "config.yaml",
        cwd / "config.json",
        pathlib.Path.home() / ".kube-mcp-server" / "config.yaml",
        pathlib.Path.home() / ".kube-mcp-server" / "config.json",
    ])

    for p in candidates:
        try:
            if not p.is_file():
                continue
            text = p.read_text()
            if p.suffix.lower() in (".yml", ".yaml"):
                data = yaml.safe_load(text) or {}
            else:
                data = json.loads(text)
            if isinstance(data, dict):
                data["_config_file"] = str(p)
                return data
        except (OSError, ValueError, yaml.YAMLError):
            # ignore malformed files and keep searching
            continue
    return {}


def _overlay(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if v is not None:
            out[k] = v
    return out


# env var -> (field, converter)
_ENV_FIELDS: Dict[str, tuple[str, Callable[[str], Any]]] = {
    "LOG_LEVEL": ("log_level", lambda v: v.upper()),
    "KUBECONFIG_YAML": ("kubeconfig_yaml", str),
    "KUBECONFIG_JSON": ("kubeconfig_json", str),
    "K8S_SERVER": ("k8s_server", str),
    "K8S_TOKEN": ("k8s_token", str),
    "K8S_SKIP_TLS_VERIFY": ("k8s_skip_tls_verify", _as_bool),
    "KUBECONFIG_PATH": ("kubeconfig_path", str),
    "K8S_CONTEXT": ("context", str),
    "K8S_NAMESPACE": ("namespace", str),
    "KUBECTL_TIMEOUT": ("kubectl_timeout", float),
    "PORT_FORWARD_START_PORT": ("port_forward_start_port", int),
    "PORT_FORWARD_MAX_RETRIES": ("port_forward_max_retries", int),
    "PORT_FORWARD_READY_TIMEOUT": ("port_forward_ready_timeout", float),
    "PORT_FORWARD_STOP_GRACE": ("port_forward_stop_grace", float),
    "PORT_FORWARD_ATTEMPTS": ("port_forward_attempts", int),
    "MAX_LIST_ITEMS": ("max_list_items", int),
}


def _env_config(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    # Mirror Settings fields from environment; None if not present
    env = os.environ if environ is None else environ
    out: Dict[str, Any] = {}
    for key, (name, conv) in _ENV_FIELDS.items():
        raw = env.get(key)
        if raw is None or raw.strip() == "":
            continue
        try:
            out[name] = conv(raw)
        except ValueError:
            raise ValueError(f"invalid value for {key}: {raw!r}") from None
    return out


def resolve_settings(explicit_config_path: Optional[str] = None,
                     cli_overrides: Optional[Dict[str, Any]] = None,
                     environ: Optional[Dict[str, str]] = None) -> Settings:
    """
    Build a Settings object by merging:
      defaults (Settings()) <- file config <- env vars <- CLI overrides
    """
    defaults = Settings()
    file_cfg = _read_file_config(explicit_config_path)
    env_cfg = _env_config(environ)
    merged = _overlay(defaults.to_dict(), file_cfg)
    merged = _overlay(merged, env_cfg)
    merged = _overlay(merged, cli_overrides or {})
    s = Settings(**{k: v for k, v in merged.items() if k in Settings.__dataclass_fields__ and k != "_config_file"})
    s.log_level = str(s.log_level).upper()
    # preserve where config was read
    s._config_file = file_cfg.get("_config_file")
    return s


def diagnostics(settings: Settings) -> Dict[str, Any]:
    """Small status payload for health-style tools."""
    return {
        "log_level": settings.log_level,
        "context_override": settings.context,
        "namespace_override": settings.namespace,
        "kubeconfig_path": settings.kubeconfig_path,
        "k8s_server": settings.k8s_server,
        "k8s_token": _redact(settings.k8s_token or ""),
        "port_forward": {
            "start_port": settings.port_forward_start_port,
            "max_retries": settings.port_forward_max_retries,
            "ready_timeout": settings.port_forward_ready_timeout,
            "stop_grace": settings.port_forward_stop_grace,
            "attempts": settings.port_forward_attempts,
        },
        "max_list_items": settings.max_list_items,
        "config_file": settings._config_file,
    }
