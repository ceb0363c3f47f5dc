from __future__ import annotations
import json
import os
import pathlib
import tempfile
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import yaml
from kubernetes import client as k8s_client, config as k8s_config

from .config import Settings
from .errors import ConfigError

import logging
log = logging.getLogger(__name__)

SERVICE_ACCOUNT_DIR = pathlib.Path("/var/run/secrets/kubernetes.io/serviceaccount")
DEFAULT_NAMESPACE = "default"


# --- Credential sources ----------------------------------------------------
# Exactly one is picked per process. `kind` is the tag callers switch on.

@dataclass(frozen=True)
class InCluster:
    host: str
    port: str
    token_path: str
    ca_path: str
    namespace: Optional[str] = None
    kind: str = "InCluster"


@dataclass(frozen=True)
class InlineYaml:
    text: str
    kind: str = "InlineYaml"


@dataclass(frozen=True)
class InlineJson:
    text: str
    kind: str = "InlineJson"


@dataclass(frozen=True)
class MinimalToken:
    server: str
    token: str
    skip_tls_verify: bool = False
    kind: str = "MinimalToken"


@dataclass(frozen=True)
class FilePath:
    path: str
    kind: str = "FilePath"


@dataclass(frozen=True)
class Default:
    path: str
    kind: str = "Default"


CredentialSource = Union[InCluster, InlineYaml, InlineJson, MinimalToken, FilePath, Default]


@dataclass
class ResolvedKubeconfig:
    source: CredentialSource
    kubeconfig_path: str
    context: Optional[str]
    namespace: str
    # True when kubeconfig_path is a file we wrote and must remove
    temporary: bool = False

    def describe(self) -> Dict[str, Any]:
        return {
            "source": self.source.kind,
            "kubeconfig": None if self.temporary else self.kubeconfig_path,
            "context": self.context,
            "namespace": self.namespace,
        }

    def discard(self) -> None:
        """Remove a materialised kubeconfig. No-op for user-owned files."""
        if not self.temporary:
            return
        try:
            os.unlink(self.kubeconfig_path)
        except FileNotFoundError:
            pass
        self.temporary = False


# --- Helpers ---------------------------------------------------------------

def _yaml_to_dict(text: str, source: str) -> dict:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(ConfigError.MALFORMED, f"cannot parse kubeconfig: {e}", source)
    if not isinstance(data, dict):
        raise ConfigError(ConfigError.MALFORMED, "kubeconfig is not a mapping", source)
    return data


def _json_to_dict(text: str, source: str) -> dict:
    try:
        data = json.loads(text)
    except ValueError as e:
        raise ConfigError(ConfigError.MALFORMED, f"cannot parse kubeconfig: {e}", source)
    if not isinstance(data, dict):
        raise ConfigError(ConfigError.MALFORMED, "kubeconfig is not an object", source)
    return data


def _check_kubeconfig(cfg: dict, source: str) -> None:
    for key in ("clusters", "contexts", "users"):
        if not isinstance(cfg.get(key), list) or not cfg[key]:
            raise ConfigError(ConfigError.MALFORMED, f"kubeconfig has no '{key}'", source)
    if not cfg.get("current-context"):
        # Same fallback as kubectl users expect from a one-context file
        first = cfg["contexts"][0]
        name = first.get("name") if isinstance(first, dict) else None
        if not name:
            raise ConfigError(ConfigError.MALFORMED, "kubeconfig context without a name", source)
        cfg["current-context"] = name


def _context_entry(cfg: dict, name: Optional[str]) -> Optional[dict]:
    for c in cfg.get("contexts") or []:
        if isinstance(c, dict) and c.get("name") == name:
            return c.get("context") or {}
    return None


def minimal_kubeconfig(server: str, token: str, skip_tls_verify: bool = False) -> dict:
    cluster: Dict[str, Any] = {"server": server}
    if skip_tls_verify:
        cluster["insecure-skip-tls-verify"] = True
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": "default-cluster", "cluster": cluster}],
        "users": [{"name": "default-user", "user": {"token": token}}],
        "contexts": [{
            "name": "default-context",
            "context": {"cluster": "default-cluster", "user": "default-user"},
        }],
        "current-context": "default-context",
    }


def in_cluster_kubeconfig(src: InCluster) -> dict:
    host = src.host
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"  # IPv6
    ctx: Dict[str, Any] = {"cluster": "in-cluster", "user": "service-account"}
    if src.namespace:
        ctx["namespace"] = src.namespace
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{
            "name": "in-cluster",
            "cluster": {"server": f"https://{host}:{src.port}", "certificate-authority": src.ca_path},
        }],
        "users": [{"name": "service-account", "user": {"tokenFile": src.token_path}}],
        "contexts": [{"name": "in-cluster", "context": ctx}],
        "current-context": "in-cluster",
    }


def _materialise(cfg: dict) -> str:
    """Write a kubeconfig kubectl can read; the caller owns the file."""
    fd, path = tempfile.mkstemp(prefix="kube-mcp-", suffix=".kubeconfig")
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        yaml.safe_dump(cfg, f, default_flow_style=False)
    os.chmod(path, 0o600)
    return path


def _default_kubeconfig_path() -> str:
    env = os.environ.get("KUBECONFIG")
    if env:
        first = env.split(os.pathsep)[0].strip()
        if first:
            return os.path.expanduser(first)
    return os.path.expanduser(os.path.join("~", ".kube", "config"))


# --- Resolver --------------------------------------------------------------

class KubeconfigResolver:
    """Pick one credential source by fixed priority and turn it into a kubeconfig.

    Priority (first match wins):
      1. in-cluster service account
      2. KUBECONFIG_YAML
      3. KUBECONFIG_JSON
      4. K8S_SERVER + K8S_TOKEN
      5. KUBECONFIG_PATH
      6. $KUBECONFIG / ~/.kube/config

    Incomplete sources (half of a server/token pair, a path that does not
    exist) are skipped. A present source that does not parse is fatal.
    """

    def __init__(self, settings: Settings,
                 service_account_dir: pathlib.Path = SERVICE_ACCOUNT_DIR,
                 default_path: Optional[str] = None):
        self.settings = settings
        self.service_account_dir = pathlib.Path(service_account_dir)
        self.default_path = default_path

    def select(self) -> CredentialSource:
        s = self.settings

        src = self._detect_in_cluster()
        if src is not None:
            return src
        if s.kubeconfig_yaml:
            return InlineYaml(s.kubeconfig_yaml)
        if s.kubeconfig_json:
            return InlineJson(s.kubeconfig_json)
        if s.k8s_server and s.k8s_token:
            return MinimalToken(s.k8s_server, s.k8s_token, bool(s.k8s_skip_tls_verify))
        if s.k8s_server or s.k8s_token:
            log.warning("Ignoring K8S_SERVER/K8S_TOKEN: both must be set")
        if s.kubeconfig_path:
            p = os.path.expanduser(s.kubeconfig_path)
            if os.path.isfile(p):
                return FilePath(p)
            log.warning("KUBECONFIG_PATH %s does not exist, falling back", p)
        p = self.default_path or _default_kubeconfig_path()
        if os.path.isfile(p):
            return Default(p)
        raise ConfigError(ConfigError.NO_SOURCE_FOUND,
                          "no in-cluster credentials, inline kubeconfig, server/token pair or kubeconfig file")

    def _detect_in_cluster(self) -> Optional[InCluster]:
        host = os.environ.get("KUBERNETES_SERVICE_HOST")
        port = os.environ.get("KUBERNETES_SERVICE_PORT", "443")
        token = self.service_account_dir / "token"
        if not host or not token.is_file():
            return None
        ns_file = self.service_account_dir / "namespace"
        ns = ns_file.read_text().strip() if ns_file.is_file() else None
        return InCluster(
            host=host,
            port=port,
            token_path=str(token),
            ca_path=str(self.service_account_dir / "ca.crt"),
            namespace=ns or None,
        )

    def load(self, src: CredentialSource) -> tuple[dict, Optional[str]]:
        """Return (kubeconfig dict, path of an existing file or None)."""
        if isinstance(src, InCluster):
            return in_cluster_kubeconfig(src), None
        if isinstance(src, InlineYaml):
            cfg = _yaml_to_dict(src.text, "KUBECONFIG_YAML")
            _check_kubeconfig(cfg, "KUBECONFIG_YAML")
            return cfg, None
        if isinstance(src, InlineJson):
            cfg = _json_to_dict(src.text, "KUBECONFIG_JSON")
            _check_kubeconfig(cfg, "KUBECONFIG_JSON")
            return cfg, None
        if isinstance(src, MinimalToken):
            return minimal_kubeconfig(src.server, src.token, src.skip_tls_verify), None
        # FilePath / Default: parse to validate, but kubectl reads the user's file
        try:
            text = pathlib.Path(src.path).read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(ConfigError.MALFORMED, f"cannot read {src.path}: {e}", src.kind)
        cfg = _yaml_to_dict(text, src.path)
        if not cfg.get("contexts"):
            raise ConfigError(ConfigError.MALFORMED, "kubeconfig has no 'contexts'", src.path)
        return cfg, src.path

    def resolve(self) -> ResolvedKubeconfig:
        src = self.select()
        cfg, path = self.load(src)
        log.info("Using kubeconfig source %s", src.kind)

        context = self.settings.context or cfg.get("current-context") or None
        entry = _context_entry(cfg, context) if context else None
        if self.settings.context and entry is None:
            raise ConfigError(ConfigError.MALFORMED,
                              f"context override '{self.settings.context}' is not in the kubeconfig", src.kind)
        namespace = self.settings.namespace or (entry or {}).get("namespace") or DEFAULT_NAMESPACE

        temporary = False
        if path is None:
            path = _materialise(cfg)
            temporary = True
        return ResolvedKubeconfig(
            source=src,
            kubeconfig_path=path,
            context=context,
            namespace=namespace,
            temporary=temporary,
        )


# --- Kubernetes client -----------------------------------------------------

def new_api_client(resolved: ResolvedKubeconfig, context: Optional[str] = None) -> k8s_client.ApiClient:
    """Build an ApiClient for `context` (or the resolved one) without touching global config."""
    try:
        return k8s_config.new_client_from_config(
            config_file=resolved.kubeconfig_path,
            context=context or resolved.context,
            persist_config=False,
        )
    except k8s_config.ConfigException as e:
        raise ConfigError(ConfigError.MALFORMED, f"kubernetes client rejected kubeconfig: {e}", resolved.source.kind)
