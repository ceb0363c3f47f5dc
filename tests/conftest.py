import sys
import textwrap

import pytest

from kube_mcp_server.auth import FilePath, ResolvedKubeconfig
from kube_mcp_server.config import Settings
from kube_mcp_server.forwards import ForwardSupervisor
from kube_mcp_server.session import SessionManager

# Stand-in for `kubectl port-forward`. argv: mode local_port
BRIDGE = textwrap.dedent("""
    import signal, sys, time
    mode, port = sys.argv[1], sys.argv[2]
    if mode == "in-use":
        sys.stderr.write("Unable to listen on port %s: bind: address already in use\\n" % port)
        sys.stderr.write("error: unable to listen on any of the requested ports: [{%s 80}]\\n" % port)
        sys.exit(1)
    if mode == "not-found":
        sys.stderr.write('Error from server (NotFound): pods "web" not found\\n')
        sys.exit(1)
    if mode == "stubborn":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    if mode == "silent":
        time.sleep(60)
        sys.exit(0)
    print("Forwarding from 127.0.0.1:%s -> 80" % port, flush=True)
    if mode == "crash":
        time.sleep(0.2)
        sys.stderr.write("lost connection to pod\\n")
        sys.exit(3)
    while True:
        time.sleep(0.05)
""")


def bridge_factory(mode):
    def factory(session):
        return [sys.executable, "-c", BRIDGE, mode, str(session.local_port)]
    return factory


class StubResolver:
    def __init__(self, namespace="default", context="kind-dev"):
        self.calls = 0
        self.namespace = namespace
        self.context = context

    def resolve(self):
        self.calls += 1
        return ResolvedKubeconfig(
            source=FilePath("/tmp/kubeconfig"),
            kubeconfig_path="/tmp/kubeconfig",
            context=self.context,
            namespace=self.namespace,
        )


class FakeKubectl:
    """Records kubectl calls; `config get-contexts` returns `table`."""

    def __init__(self, table):
        self.table = table
        self.calls = []

    async def __call__(self, args):
        self.calls.append(list(args))
        if args[:2] == ["config", "get-contexts"]:
            return self.table
        if args[:2] == ["config", "use-context"]:
            return f'Switched to context "{args[2]}".\n'
        raise AssertionError(f"unexpected kubectl call {args}")


CONTEXT_TABLE = """CURRENT   NAME                         CLUSTER      AUTHINFO                     NAMESPACE
          sre:srereadonly@elegang      elegang      elegang:sre:srereadonly      sre
          sre:srereadonly@ohio         ohio         ohio:sre:srereadonly         sre
*         sre:srereadonly@wuxi         wuxi         wuxi:sre:srereadonly         sre
"""


@pytest.fixture
def settings():
    return Settings(
        port_forward_start_port=23000,
        port_forward_max_retries=200,
        port_forward_ready_timeout=10.0,
        port_forward_stop_grace=2.0,
    )


@pytest.fixture
def make_session(settings):
    def _make(mode="ready", table=CONTEXT_TABLE, **kw):
        sup = ForwardSupervisor(bridge_factory(mode), ready_timeout=settings.port_forward_ready_timeout,
                                stop_grace=settings.port_forward_stop_grace)
        return SessionManager(settings, resolver=StubResolver(), runner=FakeKubectl(table), forwards=sup, **kw)
    return _make
