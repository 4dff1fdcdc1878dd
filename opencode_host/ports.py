"""Local TCP port allocation for worker processes."""

from __future__ import annotations

import socket
from typing import Callable, Iterable

from .errors import AllocationError


def port_is_available(port: int, host: str = "127.0.0.1") -> bool:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
        return True
    except OSError:
        return False
    finally:
        sock.close()


def allocate_port(
    port_min: int,
    port_max: int,
    excluded: Iterable[int] = (),
    probe: Callable[[int], bool] = port_is_available,
) -> int:
    """Return the lowest port in ``[port_min, port_max]`` that is not excluded and binds.

    The scan is ascending and deterministic.
    """
    claimed = set(excluded)
    for port in range(port_min, port_max + 1):
        if port in claimed:
            continue
        if probe(port):
            return port
    raise AllocationError(f"exhausted: no available ports in range {port_min}-{port_max}")
