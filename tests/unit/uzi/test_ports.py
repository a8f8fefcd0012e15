"""Tests for dev-server port allocation."""

from __future__ import annotations

import socket

import pytest

from uzi.errors import ConfigurationError, PortsExhaustedError
from uzi.workspace.ports import find_available_port, is_port_available, parse_port_range


def test_parse_port_range() -> None:
    assert parse_port_range("3000-3010") == (3000, 3010)
    assert parse_port_range(" 8080-8080 ") == (8080, 8080)


@pytest.mark.parametrize("spec", ["3000", "3000-", "a-b", "3010-3000", "0-10", "65000-70000", "1-2-3"])
def test_parse_port_range_rejects(spec: str) -> None:
    with pytest.raises(ConfigurationError):
        parse_port_range(spec)


def test_first_free_port_wins() -> None:
    assert find_available_port(3000, 3002, probe=lambda p: p >= 3001) == 3001


def test_assigned_ports_are_not_probed() -> None:
    probed: list[int] = []

    def probe(port: int) -> bool:
        probed.append(port)
        return True

    assert find_available_port(3000, 3002, {3000, 3001}, probe=probe) == 3002
    assert probed == [3002]


def test_exhausted_range() -> None:
    with pytest.raises(PortsExhaustedError) as excinfo:
        find_available_port(3000, 3002, {3000}, probe=lambda _p: False)
    assert excinfo.value.start == 3000
    assert excinfo.value.end == 3002
    assert "3000-3002" in str(excinfo.value)


def test_bound_port_is_unavailable() -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("", 0))
        sock.listen(1)
        port = sock.getsockname()[1]
        assert not is_port_available(port)
