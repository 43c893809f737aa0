"""
Binary discovery responder (UDP 5050), Xbox SmartGlass style.

Frame layout, all integers big-endian:

    header   u16 type (0xDD00 probe / 0xDD01 response) | u16 payload length | u16 version (0)
    payload  u32 flags | u16 device type | u16 padding
             3 x (u16 length | bytes | 0x00)   name, identity, credential

Only datagrams starting with the probe marker are answered; everything else
on the port is left alone.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Optional

from beacon_identity import session_uuid
from beacon_profiles import DeviceProfile
from beacon_protocol import DiscoveryProtocol, DiscoveryRequest

BINARY_PORT = 5050
PROBE_MARKER = 0xDD00
RESPONSE_MARKER = 0xDD01

_HEADER = struct.Struct(">HHH")
_FIXED = struct.Struct(">IHH")
_STRLEN = struct.Struct(">H")


@dataclass(frozen=True)
class BinaryDiscoveryResponse:
    flags: int
    device_type: int
    name: str
    identity: str
    credential: str


def is_discovery_probe(data: bytes) -> bool:
    return len(data) >= 2 and int.from_bytes(data[:2], "big") == PROBE_MARKER


def encode_string(s: str) -> bytes:
    raw = s.encode("utf-8")
    if len(raw) > 0xFFFF:
        raise ValueError(f"string too long for u16 length prefix: {len(raw)} bytes")
    return _STRLEN.pack(len(raw)) + raw + b"\x00"


def decode_string(data: bytes, offset: int) -> tuple[str, int]:
    """Read one length-prefixed, NUL-terminated string; return (text, next offset)."""
    if offset + 2 > len(data):
        raise ValueError("truncated string length")
    (n,) = _STRLEN.unpack_from(data, offset)
    start = offset + 2
    end = start + n
    if end + 1 > len(data):
        raise ValueError("truncated string body")
    if data[end] != 0:
        raise ValueError("string not NUL-terminated")
    return data[start:end].decode("utf-8"), end + 1


def encode_discovery_response(
    name: str,
    identity: str,
    credential: str,
    flags: int = 1,
    device_type: int = 1,
) -> bytes:
    payload = (
        _FIXED.pack(flags, device_type, 0)
        + encode_string(name)
        + encode_string(identity)
        + encode_string(credential)
    )
    return _HEADER.pack(RESPONSE_MARKER, len(payload), 0) + payload


def decode_discovery_response(data: bytes) -> BinaryDiscoveryResponse:
    """Parse a response frame. Raises ValueError if it is not one."""
    if len(data) < _HEADER.size + _FIXED.size:
        raise ValueError(f"frame too short: {len(data)} bytes")
    marker, length, _version = _HEADER.unpack_from(data, 0)
    if marker != RESPONSE_MARKER:
        raise ValueError(f"not a discovery response: 0x{marker:04X}")
    if length != len(data) - _HEADER.size:
        raise ValueError(f"payload length {length} != {len(data) - _HEADER.size}")
    flags, device_type, _pad = _FIXED.unpack_from(data, _HEADER.size)
    offset = _HEADER.size + _FIXED.size
    strings = []
    for _ in range(3):
        s, offset = decode_string(data, offset)
        strings.append(s)
    return BinaryDiscoveryResponse(flags, device_type, *strings)


def binary_identity(profiles) -> str:
    """Identity string for a responder: pinned by the first profile, else a fresh UUID."""
    pinned = str(profiles[0].get("identity") or "") if profiles else ""
    return pinned or session_uuid()


def render_binary_response(profile: DeviceProfile, identity: str) -> bytes:
    return encode_discovery_response(
        name=str(profile.get("device_name", "")),
        identity=identity,
        credential=str(profile.get("credential", "")),
        flags=int(profile.get("flags", 1)),
        device_type=int(profile.get("device_type", 1)),
    )


class BinaryDiscoveryProtocol(DiscoveryProtocol):
    """Answers 0xDD00 probes; silent for anything else."""

    label = "binary"

    def __init__(self, *args, identity: Optional[str] = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        # One identity per responder instance.
        self.identity = identity or binary_identity(self.profiles)

    def handle(self, request: DiscoveryRequest) -> list[bytes]:
        if not is_discovery_probe(request.data):
            return []
        self.logger.debug("binary: probe from %s", request.addr)
        return [render_binary_response(p, self.identity) for p in self.profiles]
