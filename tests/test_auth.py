import json
import os
import stat

import pytest
import yaml

from kube_mcp_server.auth import (
    Default,
    FilePath,
    InCluster,
    InlineJson,
    InlineYaml,
    KubeconfigResolver,
    MinimalToken,
)
from kube_mcp_server.config import Settings
from kube_mcp_server.errors import ConfigError

KUBECONFIG = {
    "apiVersion": "v1",
    "kind": "Config",
    "clusters": [{"name": "dev", "cluster": {"server": "https://dev.example:6443"}}],
    "users": [{"name": "sre:readonly", "user": {"token": "abc"}}],
    "contexts": [
        {"name": "sre:readonly@dev", "context": {"cluster": "dev", "user": "sre:readonly", "namespace": "payments"}},
        {"name": "admin@dev", "context": {"cluster": "dev", "user": "sre:readonly"}},
    ],
    "current-context": "sre:readonly@dev",
}


@pytest.fixture(autouse=True)
def no_cluster_env(monkeypatch):
    monkeypatch.delenv("KUBERNETES_SERVICE_HOST", raising=False)
    monkeypatch.delenv("KUBECONFIG", raising=False)


@pytest.fixture
def kubeconfig_file(tmp_path):
    p = tmp_path / "config"
    p.write_text(yaml.safe_dump(KUBECONFIG))
    return p


@pytest.fixture
def service_account(tmp_path):
    d = tmp_path / "sa"
    d.mkdir()
    (d / "token").write_text("sa-token")
    (d / "ca.crt").write_text("ca")
    (d / "namespace").write_text("monitoring\n")
    return d


def _resolver(settings, tmp_path, **kw):
    kw.setdefault("service_account_dir", tmp_path / "no-sa")
    kw.setdefault("default_path", str(tmp_path / "missing-default"))
    return KubeconfigResolver(settings, **kw)


def test_in_cluster_wins_over_everything(monkeypatch, tmp_path, service_account, kubeconfig_file):
    monkeypatch.setenv("KUBERNETES_SERVICE_HOST", "10.0.0.1")
    monkeypatch.setenv("KUBERNETES_SERVICE_PORT", "443")
    s = Settings(kubeconfig_yaml=yaml.safe_dump(KUBECONFIG), kubeconfig_path=str(kubeconfig_file))

    resolved = _resolver(s, tmp_path, service_account_dir=service_account).resolve()
    try:
        assert isinstance(resolved.source, InCluster)
        assert resolved.context == "in-cluster"
        assert resolved.namespace == "monitoring"
        cfg = yaml.safe_load(open(resolved.kubeconfig_path))
        assert cfg["clusters"][0]["cluster"]["server"] == "https://10.0.0.1:443"
        assert cfg["users"][0]["user"]["tokenFile"] == str(service_account / "token")
    finally:
        resolved.discard()


def test_host_env_without_token_is_not_in_cluster(monkeypatch, tmp_path, kubeconfig_file):
    monkeypatch.setenv("KUBERNETES_SERVICE_HOST", "10.0.0.1")
    s = Settings(kubeconfig_path=str(kubeconfig_file))
    assert isinstance(_resolver(s, tmp_path).select(), FilePath)


def test_inline_yaml_beats_json_token_and_path(tmp_path, kubeconfig_file):
    s = Settings(
        kubeconfig_yaml=yaml.safe_dump(KUBECONFIG),
        kubeconfig_json=json.dumps(KUBECONFIG),
        k8s_server="https://x", k8s_token="t",
        kubeconfig_path=str(kubeconfig_file),
    )
    resolved = _resolver(s, tmp_path).resolve()
    try:
        assert isinstance(resolved.source, InlineYaml)
        assert resolved.temporary
        assert resolved.context == "sre:readonly@dev"
        assert resolved.namespace == "payments"
        mode = stat.S_IMODE(os.stat(resolved.kubeconfig_path).st_mode)
        assert mode == 0o600
    finally:
        path = resolved.kubeconfig_path
        resolved.discard()
    assert not os.path.exists(path)


def test_inline_json_beats_token(tmp_path):
    s = Settings(kubeconfig_json=json.dumps(KUBECONFIG), k8s_server="https://x", k8s_token="t")
    assert isinstance(_resolver(s, tmp_path).select(), InlineJson)


def test_minimal_token_kubeconfig(tmp_path, kubeconfig_file):
    s = Settings(k8s_server="https://api.example:6443", k8s_token="secret", k8s_skip_tls_verify=True,
                 kubeconfig_path=str(kubeconfig_file))
    resolved = _resolver(s, tmp_path).resolve()
    try:
        assert isinstance(resolved.source, MinimalToken)
        assert resolved.context == "default-context"
        assert resolved.namespace == "default"
        cfg = yaml.safe_load(open(resolved.kubeconfig_path))
        assert cfg["clusters"][0]["cluster"] == {"server": "https://api.example:6443", "insecure-skip-tls-verify": True}
        assert cfg["users"][0]["user"]["token"] == "secret"
    finally:
        resolved.discard()


def test_half_a_token_pair_is_skipped(tmp_path, kubeconfig_file):
    s = Settings(k8s_server="https://api.example:6443", kubeconfig_path=str(kubeconfig_file))
    assert isinstance(_resolver(s, tmp_path).select(), FilePath)


def test_file_path_is_used_in_place(tmp_path, kubeconfig_file):
    resolved = _resolver(Settings(kubeconfig_path=str(kubeconfig_file)), tmp_path).resolve()
    assert resolved.kubeconfig_path == str(kubeconfig_file)
    assert resolved.temporary is False
    resolved.discard()
    assert kubeconfig_file.exists()


def test_missing_path_falls_back_to_default(tmp_path, kubeconfig_file):
    s = Settings(kubeconfig_path=str(tmp_path / "nope"))
    src = _resolver(s, tmp_path, default_path=str(kubeconfig_file)).select()
    assert isinstance(src, Default)
    assert src.path == str(kubeconfig_file)


def test_kubeconfig_env_is_the_default_location(monkeypatch, tmp_path, kubeconfig_file):
    monkeypatch.setenv("KUBECONFIG", str(kubeconfig_file) + os.pathsep + "/elsewhere")
    src = KubeconfigResolver(Settings(), service_account_dir=tmp_path / "no-sa").select()
    assert isinstance(src, Default)
    assert src.path == str(kubeconfig_file)


def test_no_source_found(tmp_path):
    with pytest.raises(ConfigError) as exc:
        _resolver(Settings(), tmp_path).resolve()
    assert exc.value.reason == ConfigError.NO_SOURCE_FOUND


def test_malformed_inline_yaml(tmp_path):
    with pytest.raises(ConfigError) as exc:
        _resolver(Settings(kubeconfig_yaml="clusters: [unclosed"), tmp_path).resolve()
    assert exc.value.reason == ConfigError.MALFORMED


def test_malformed_inline_json_does_not_fall_through(tmp_path, kubeconfig_file):
    s = Settings(kubeconfig_json="{not json", kubeconfig_path=str(kubeconfig_file))
    with pytest.raises(ConfigError) as exc:
        _resolver(s, tmp_path).resolve()
    assert exc.value.reason == ConfigError.MALFORMED


def test_inline_yaml_without_contexts(tmp_path):
    with pytest.raises(ConfigError):
        _resolver(Settings(kubeconfig_yaml="apiVersion: v1\nkind: Config\n"), tmp_path).resolve()


def test_context_and_namespace_overrides(tmp_path, kubeconfig_file):
    s = Settings(kubeconfig_path=str(kubeconfig_file), context="admin@dev")
    resolved = _resolver(s, tmp_path).resolve()
    assert resolved.context == "admin@dev"
    assert resolved.namespace == "default"

    s = Settings(kubeconfig_path=str(kubeconfig_file), namespace="ops")
    assert _resolver(s, tmp_path).resolve().namespace == "ops"


def test_unknown_context_override(tmp_path, kubeconfig_file):
    s = Settings(kubeconfig_path=str(kubeconfig_file), context="ghost")
    with pytest.raises(ConfigError) as exc:
        _resolver(s, tmp_path).resolve()
    assert exc.value.reason == ConfigError.MALFORMED
