"""Local endpoint and broadcast target helpers."""
from __future__ import annotations

import ipaddress
import socket
from typing import List, Sequence, Tuple

Endpoint = Tuple[str, int]

DEFAULT_ROUTE_PROBE: Endpoint = ("10.0.20.20", 31337)
DEFAULT_BRIDGED_SUBNET = "192.168.137"


def get_host_endpoint(route_probe: Endpoint = DEFAULT_ROUTE_PROBE) -> Endpoint:
    """Return the local address the OS would use to reach ``route_probe``.

    Connecting a UDP socket only selects a route; no datagram is sent.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.connect(route_probe)
        host, port = sock.getsockname()[:2]
    return host, port


def get_subnet_range(endpoint: Endpoint) -> str:
    """``("192.168.1.20", 5000)`` -> ``"192.168.1"``."""
    address = ipaddress.IPv4Address(endpoint[0])
    return ".".join(str(octet) for octet in address.packed[:3])


def validate_prefix(prefix: str) -> str:
    parts = prefix.split(".")
    if len(parts) != 3 or not all(part.isdigit() and 0 <= int(part) <= 255 for part in parts):
        raise ValueError(f"invalid subnet prefix {prefix!r}; expected 'a.b.c'")
    return ".".join(str(int(part)) for part in parts)


def broadcast_address(prefix: str) -> str:
    return f"{validate_prefix(prefix)}.255"


def get_subnet_ranges(prefixes: Sequence[str]) -> List[str]:
    """Broadcast addresses for each prefix, duplicates dropped, order kept."""
    targets: List[str] = []
    for prefix in prefixes:
        target = broadcast_address(prefix)
        if target not in targets:
            targets.append(target)
    return targets


def third_octet(address: str) -> int | None:
    try:
        return ipaddress.IPv4Address(address).packed[2]
    except ValueError:
        return None


def is_bridged(address: str, bridged_prefix: str) -> bool:
    octet = third_octet(address)
    if octet is None:
        return False
    return octet == int(validate_prefix(bridged_prefix).split(".")[2])


__all__ = [
    "Endpoint",
    "DEFAULT_ROUTE_PROBE",
    "DEFAULT_BRIDGED_SUBNET",
    "get_host_endpoint",
    "get_subnet_range",
    "validate_prefix",
    "broadcast_address",
    "get_subnet_ranges",
    "third_octet",
    "is_bridged",
]
