"""Probe and reply codec for the console discovery protocol.

A reply is a 2-byte tag/length header followed by the console name in
ASCII. Known default replies double as signatures telling the console
variants apart.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from konnect.models import ConsoleType

PROBE_PORT = 730
HEADER_LENGTH = 2

# ..jtag
JTAG_SIGNATURE = bytes((0x03, 0x04, 0x6A, 0x74, 0x61, 0x67))
# ..XeDevkit
DEVKIT_SIGNATURE = bytes((0x03, 0x04, 0x58, 0x65, 0x44, 0x65, 0x76, 0x6B, 0x69, 0x74))

SIGNATURES: Dict[ConsoleType, bytes] = {
    ConsoleType.JTAG: JTAG_SIGNATURE,
    ConsoleType.DEVKIT: DEVKIT_SIGNATURE,
}


class MalformedReplyError(ValueError):
    """Raised for datagrams too short to carry the reply header."""


@dataclass(frozen=True, slots=True)
class Reply:
    name: str
    console_type: ConsoleType
    payload: bytes


def probe_packet(console_type: ConsoleType = ConsoleType.JTAG) -> bytes:
    try:
        return SIGNATURES[console_type]
    except KeyError:
        raise ValueError(f"no probe defined for console type {console_type!r}") from None


def classify(payload: bytes) -> Optional[ConsoleType]:
    for console_type, signature in SIGNATURES.items():
        if payload == signature:
            return console_type
    return None


def decode_reply(payload: bytes, default_type: ConsoleType = ConsoleType.JTAG) -> Reply:
    data = bytes(payload)
    if len(data) < HEADER_LENGTH:
        raise MalformedReplyError(f"reply of {len(data)} bytes is shorter than the header")
    name = data[HEADER_LENGTH:].decode("ascii", errors="replace")
    return Reply(name=name, console_type=classify(data) or default_type, payload=data)


__all__ = [
    "PROBE_PORT",
    "HEADER_LENGTH",
    "JTAG_SIGNATURE",
    "DEVKIT_SIGNATURE",
    "SIGNATURES",
    "MalformedReplyError",
    "Reply",
    "probe_packet",
    "classify",
    "decode_reply",
]
