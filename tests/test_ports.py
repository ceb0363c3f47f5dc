import socket

import pytest

from kube_mcp_server.errors import PortExhaustion
from kube_mcp_server.ports import PortAllocator, find_free_port


def _occupy(port):
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", port))
    s.listen(1)
    return s


def _free_base(width):
    # find `width` consecutive ports that are free right now
    for base in range(24000, 30000, width):
        try:
            socks = [_occupy(p) for p in range(base, base + width)]
        except OSError:
            continue
        for s in socks:
            s.close()
        return base
    pytest.skip("no free port block")


def test_find_free_port_returns_start_when_free():
    base = _free_base(3)
    assert find_free_port(base, 3) == base


def test_find_free_port_skips_taken_ports():
    base = _free_base(3)
    held = _occupy(base)
    try:
        port = find_free_port(base, 3)
    finally:
        held.close()
    assert base < port < base + 3


def test_find_free_port_exhaustion_reports_range():
    base = _free_base(3)
    held = [_occupy(p) for p in range(base, base + 3)]
    try:
        with pytest.raises(PortExhaustion) as exc:
            find_free_port(base, 3)
    finally:
        for s in held:
            s.close()
    assert (exc.value.start, exc.value.end) == (base, base + 3)


def test_find_free_port_rejects_port_zero():
    with pytest.raises(ValueError):
        find_free_port(0, 10)


def test_allocator_never_hands_out_a_leased_port_twice():
    base = _free_base(4)
    alloc = PortAllocator()

    a = alloc.lease(base, 4)
    b = alloc.lease(base, 4)

    assert a.port != b.port
    assert base <= a.port < base + 4 and base <= b.port < base + 4
    assert alloc.leased() == sorted([a.port, b.port])


def test_allocator_release_makes_port_available_again():
    base = _free_base(1)
    alloc = PortAllocator()

    lease = alloc.lease(base, 1)
    with pytest.raises(PortExhaustion):
        alloc.lease(base, 1)
    alloc.release(lease)
    alloc.release(lease)  # second release is harmless

    assert alloc.lease(base, 1).port == base
