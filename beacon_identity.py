"""
Identity helpers - host identifier, session UUIDs and the address to advertise.

The host identifier is the hardware address of the first usable network
interface so a restarted beacon looks like the same console to clients
that remember it. Everything here is read-only after startup and safe to
call from any responder.
"""

from __future__ import annotations

import logging
import os
import socket
from typing import Optional

import psutil

FALLBACK_IPV4 = "192.168.1.100"

_logger = logging.getLogger(__name__)


class IdentityError(RuntimeError):
    """The OS randomness source failed; no response can be synthesized."""


def random_bytes(n: int) -> bytes:
    """Return n bytes from the OS randomness source."""
    try:
        return os.urandom(n)
    except (NotImplementedError, OSError) as e:
        raise IdentityError(f"randomness source unavailable: {e}") from e


def _is_loopback(name: str, stats: Optional[object]) -> bool:
    flags = getattr(stats, "flags", "") or ""
    if "loopback" in flags.split(","):
        return True
    return name == "lo" or name.lower().startswith("loopback")


def _interface_macs() -> list[tuple[str, bytes]]:
    """(name, mac) for every up, non-loopback interface, in psutil's order."""
    try:
        addrs = psutil.net_if_addrs()
        stats = psutil.net_if_stats()
    except (OSError, RuntimeError) as e:
        _logger.debug("Interface enumeration failed: %s", e)
        return []

    out = []
    for name, nic_addrs in addrs.items():
        st = stats.get(name)
        if st is None or not st.isup or _is_loopback(name, st):
            continue
        for a in nic_addrs:
            if a.family != psutil.AF_LINK or not a.address:
                continue
            try:
                mac = bytes.fromhex(a.address.replace(":", "").replace("-", ""))
            except ValueError:
                continue
            if len(mac) == 6 and any(mac):
                out.append((name, mac))
                break
    return out


def host_identifier() -> bytes:
    """
    6-byte hardware-shaped identifier.

    Prefers the MAC of the first non-loopback, up interface (stable while the
    network configuration is unchanged); otherwise 6 random bytes.
    """
    macs = _interface_macs()
    if macs:
        return macs[0][1]
    return random_bytes(6)


def host_id_hex(raw: Optional[bytes] = None) -> str:
    """Uppercase hex form of a host identifier, e.g. 'A1B2C3D4E5F6'."""
    return (raw if raw is not None else host_identifier()).hex().upper()


def session_uuid() -> str:
    """Random version-4 UUID in canonical 8-4-4-4-12 form, uppercase."""
    b = bytearray(random_bytes(16))
    b[6] = (b[6] & 0x0F) | 0x40
    b[8] = (b[8] & 0x3F) | 0x80
    h = b.hex().upper()
    return f"{h[:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:]}"


def local_ipv4() -> str:
    """First non-loopback IPv4 address on any interface, else FALLBACK_IPV4."""
    try:
        addrs = psutil.net_if_addrs()
    except (OSError, RuntimeError) as e:
        _logger.debug("Interface enumeration failed: %s", e)
        return FALLBACK_IPV4
    for nic, nic_addrs in addrs.items():
        for a in nic_addrs:
            if a.family == socket.AF_INET and a.address and not a.address.startswith("127."):
                return a.address
    return FALLBACK_IPV4


def get_advertise_ip(config: dict) -> str:
    """Get the IP to advertise in SSDP LOCATION."""
    ip = (config.get("ssdp_advertise_ip") or "").strip()
    if ip:
        return ip
    return local_ipv4()
