from __future__ import annotations
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List

from .errors import PortExhaustion

import logging
log = logging.getLogger(__name__)

LOCALHOST = "127.0.0.1"


@dataclass(frozen=True)
class PortLease:
    port: int
    bound_at: float = field(default_factory=time.time)


def _probe(host: str, port: int) -> int:
    """Bind and listen on (host, port); return the bound port. Raises OSError if taken."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, port))
        s.listen(1)
        return s.getsockname()[1]


def find_free_port(start_port: int, max_retries: int = 100, host: str = LOCALHOST) -> int:
    """Return the first port in [start_port, start_port + max_retries) that binds.

    The probe socket is closed before returning, so another process can still
    take the port before the caller binds it. Treat "address in use" later on
    as retryable.
    """
    if start_port < 1 or start_port > 65535:
        raise ValueError(f"start_port out of range: {start_port}")
    end = min(start_port + max(max_retries, 0), 65536)
    for port in range(start_port, end):
        try:
            return _probe(host, port)
        except OSError:
            continue
    raise PortExhaustion(start_port, end)


class PortAllocator:
    """Issues exclusive leases on local ports.

    On top of the bind probe, ports already leased inside this process are
    skipped, so two forwards started back to back never get the same port.
    """

    def __init__(self, host: str = LOCALHOST):
        self.host = host
        self._leases: Dict[int, PortLease] = {}
        self._lock = threading.Lock()

    def lease(self, start_port: int, max_retries: int = 100) -> PortLease:
        if start_port < 1 or start_port > 65535:
            raise ValueError(f"start_port out of range: {start_port}")
        end = min(start_port + max(max_retries, 0), 65536)
        with self._lock:
            for port in range(start_port, end):
                if port in self._leases:
                    continue
                try:
                    _probe(self.host, port)
                except OSError:
                    continue
                lease = PortLease(port)
                self._leases[port] = lease
                log.debug("Leased local port %d", port)
                return lease
        raise PortExhaustion(start_port, end)

    def release(self, lease: PortLease) -> None:
        with self._lock:
            if self._leases.get(lease.port) is lease:
                del self._leases[lease.port]
                log.debug("Released local port %d", lease.port)

    def leased(self) -> List[int]:
        with self._lock:
            return sorted(self._leases)
