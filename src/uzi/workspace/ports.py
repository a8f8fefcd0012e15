"""Dev-server port allocation."""

from __future__ import annotations

import socket
from collections.abc import Callable, Collection

from uzi.errors import ConfigurationError, PortsExhaustedError


def parse_port_range(spec: str) -> tuple[int, int]:
    """Parse ``"3000-3010"`` into an inclusive ``(start, end)`` pair."""
    parts = spec.strip().split("-")
    if len(parts) != 2:
        raise ConfigurationError(f"invalid port range format: {spec}")
    try:
        start, end = int(parts[0]), int(parts[1])
    except ValueError as exc:
        raise ConfigurationError(f"invalid port range: {spec}") from exc
    if start <= 0 or end <= 0 or end < start or end > 65535:
        raise ConfigurationError(f"invalid port range: {spec}")
    return start, end


def is_port_available(port: int) -> bool:
    """Bind-probe *port* on all interfaces."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind(("", port))
        except OSError:
            return False
    return True


def find_available_port(
    range_start: int,
    range_end: int,
    already_assigned: Collection[int] = (),
    *,
    probe: Callable[[int], bool] = is_port_available,
) -> int:
    """Return the lowest port in ``[range_start, range_end]`` that is free.

    Ports in *already_assigned* are skipped without probing; the caller owns
    that set across a batch so concurrently spawned workers never collide
    before any of them is listening.
    """
    for port in range(range_start, range_end + 1):
        if port in already_assigned:
            continue
        if probe(port):
            return port
    raise PortsExhaustedError(range_start, range_end)
