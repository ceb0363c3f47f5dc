import asyncio

import pytest

from kube_mcp_server.contexts import ContextRegistry, parse_context_table
from kube_mcp_server.errors import InvalidFormat, NotFoundError

from conftest import CONTEXT_TABLE, FakeKubectl


def test_names_with_colons_and_at_signs_are_kept_whole():
    contexts = parse_context_table(CONTEXT_TABLE)

    assert [c.name for c in contexts] == [
        "sre:srereadonly@elegang",
        "sre:srereadonly@ohio",
        "sre:srereadonly@wuxi",
    ]
    assert [c.cluster for c in contexts] == ["elegang", "ohio", "wuxi"]
    assert contexts[0].user == "elegang:sre:srereadonly"
    assert [c.is_current for c in contexts] == [False, False, True]


def test_mixed_special_character_patterns():
    table = """CURRENT   NAME                              CLUSTER           AUTHINFO                          NAMESPACE
*         user:admin@prod-cluster           prod-cluster      prod-cluster:user:admin           production
          dev:developer@staging-env         staging-env       staging-env:dev:developer         staging
          test@simple-cluster               simple-cluster    simple-cluster:test               default
          complex:role:name@multi-cluster   multi-cluster     multi-cluster:complex:role:name   development"""
    contexts = parse_context_table(table)

    assert len(contexts) == 4
    assert contexts[0].name == "user:admin@prod-cluster"
    assert contexts[0].is_current is True
    assert contexts[3].name == "complex:role:name@multi-cluster"
    assert contexts[3].cluster == "multi-cluster"
    assert contexts[3].namespace == "development"
    assert sum(c.is_current for c in contexts) == 1


def test_eks_arn_is_a_single_name():
    table = """CURRENT   NAME                                                          CLUSTER                    AUTHINFO                                                      NAMESPACE
          arn:aws:eks:us-west-2:123456789:cluster/prod-cluster          prod-cluster               arn:aws:eks:us-west-2:123456789:cluster/prod-cluster          default
*         arn:aws:eks:us-east-1:123456789:cluster/staging-cluster       staging-cluster            arn:aws:eks:us-east-1:123456789:cluster/staging-cluster       development"""
    contexts = parse_context_table(table)

    assert contexts[0].name == "arn:aws:eks:us-west-2:123456789:cluster/prod-cluster"
    assert contexts[0].cluster == "prod-cluster"
    assert contexts[0].is_current is False
    assert contexts[1].name == "arn:aws:eks:us-east-1:123456789:cluster/staging-cluster"
    assert contexts[1].is_current is True


def test_empty_namespace_defaults():
    table = (
        "CURRENT   NAME                         CLUSTER      AUTHINFO                     NAMESPACE\n"
        "          sre:admin@cluster-a          cluster-a    cluster-a:sre:admin          \n"
        "*         sre:user@cluster-b           cluster-b    cluster-b:sre:user           development\n"
    )
    contexts = parse_context_table(table)

    assert contexts[0].namespace == "default"
    assert contexts[1].namespace == "development"


def test_blank_lines_are_skipped():
    table = """CURRENT   NAME                         CLUSTER      AUTHINFO                     NAMESPACE
          context:one@cluster          cluster      cluster:context:one          namespace1

*         context:two@cluster          cluster      cluster:context:two          namespace2"""
    contexts = parse_context_table(table)

    assert [c.name for c in contexts] == ["context:one@cluster", "context:two@cluster"]
    assert contexts[1].is_current is True


def test_simple_names():
    table = """CURRENT   NAME          CLUSTER       AUTHINFO      NAMESPACE
*         minikube      minikube      minikube      default
          docker        docker        docker        kube-system"""
    contexts = parse_context_table(table)

    assert [(c.name, c.is_current) for c in contexts] == [("minikube", True), ("docker", False)]
    assert contexts[1].namespace == "kube-system"


def test_header_without_required_columns():
    table = """INVALID   HEADER                       FORMAT
          some-context                 some-cluster"""
    with pytest.raises(InvalidFormat) as exc:
        parse_context_table(table)
    assert "Invalid kubectl output format" in str(exc.value)
    assert exc.value.text == table


def test_row_shorter_than_header():
    table = "CURRENT   NAME          CLUSTER       AUTHINFO      NAMESPACE\n*         mini\n"
    with pytest.raises(InvalidFormat):
        parse_context_table(table)


def test_empty_output_has_no_contexts():
    assert parse_context_table("") == []


def test_registry_set_current_switches_and_pins():
    kubectl = FakeKubectl(CONTEXT_TABLE)
    reg = ContextRegistry(kubectl)

    ctx = asyncio.run(reg.set_current("sre:srereadonly@ohio"))

    assert ctx.name == "sre:srereadonly@ohio"
    assert ["config", "use-context", "sre:srereadonly@ohio"] in kubectl.calls
    listed = asyncio.run(reg.list())
    assert [c.name for c in listed if c.is_current] == ["sre:srereadonly@ohio"]


def test_registry_set_current_twice_is_a_noop():
    kubectl = FakeKubectl(CONTEXT_TABLE)
    reg = ContextRegistry(kubectl)

    asyncio.run(reg.set_current("sre:srereadonly@elegang"))
    asyncio.run(reg.set_current("sre:srereadonly@elegang"))

    switches = [c for c in kubectl.calls if c[:2] == ["config", "use-context"]]
    assert len(switches) == 1
    cur = asyncio.run(reg.current())
    assert cur.name == "sre:srereadonly@elegang"


def test_registry_set_current_already_active_does_not_call_kubectl():
    kubectl = FakeKubectl(CONTEXT_TABLE)
    reg = ContextRegistry(kubectl)

    asyncio.run(reg.set_current("sre:srereadonly@wuxi"))

    assert all(c[:2] != ["config", "use-context"] for c in kubectl.calls)


def test_registry_unknown_context():
    reg = ContextRegistry(FakeKubectl(CONTEXT_TABLE))
    with pytest.raises(NotFoundError):
        asyncio.run(reg.set_current("nope"))


def test_registry_pin_overrides_star_marker():
    reg = ContextRegistry(FakeKubectl(CONTEXT_TABLE), pinned="sre:srereadonly@elegang")
    contexts = asyncio.run(reg.list())

    assert [c.name for c in contexts if c.is_current] == ["sre:srereadonly@elegang"]
