"""
SSDP responder - answers M-SEARCH so the beacon is discoverable as a UPnP
MediaRenderer (how Xbox consoles show up to companion apps).

Probes arrive on the multicast group; replies are unicast to the searcher.
"""

from __future__ import annotations

import socket
import struct
from typing import Optional

from beacon_identity import local_ipv4, session_uuid
from beacon_profiles import DeviceProfile
from beacon_protocol import DiscoveryProtocol, DiscoveryRequest

SSDP_MCAST_GRP = "239.255.255.250"
SSDP_MCAST_PORT = 1900

DEFAULT_SERVICE_TYPE = "urn:schemas-upnp-org:device:MediaRenderer:1"
DEFAULT_MATCH_TARGETS = ("ssdp:all", "MediaRenderer")


def parse_msearch_st(msg: str) -> Optional[str]:
    """Extract ST (Search Target) from M-SEARCH request. CRLF or bare LF."""
    for line in msg.splitlines():
        if line.upper().startswith("ST:"):
            return line[3:].strip()
    return None


def matches_search(msg: str, targets=DEFAULT_MATCH_TARGETS) -> bool:
    """True for an M-SEARCH whose target is a wildcard or names one of targets.

    Matched case-insensitively against the ST header, or the whole payload
    when the searcher sent no ST line.
    """
    if "M-SEARCH" not in msg.upper():
        return False
    st = parse_msearch_st(msg)
    haystack = (st if st is not None else msg).lower()
    return any(t.lower() in haystack for t in targets)


def ssdp_response(profile: DeviceProfile, advertise_ip: str, uuid: str) -> bytes:
    """Build SSDP HTTP 200 response for M-SEARCH."""
    st = profile.get("service_type", DEFAULT_SERVICE_TYPE)
    port = int(profile.get("location_port", 2869))
    path = profile.get("location_path", "/upnphost/udhisapi.dll")
    location = f"http://{advertise_ip}:{port}{path}?content=uuid:{uuid}"
    return "\r\n".join([
        "HTTP/1.1 200 OK",
        f"CACHE-CONTROL: max-age={int(profile.get('max_age', 1800))}",
        "EXT:",
        f"LOCATION: {location}",
        f"SERVER: {profile.get('server', 'Microsoft-Windows/10.0 UPnP/1.0')}",
        f"ST: {st}",
        f"USN: uuid:{uuid}::{st}",
        "", "",
    ]).encode("utf-8")


def open_multicast_socket(
    port: int = SSDP_MCAST_PORT,
    group: str = SSDP_MCAST_GRP,
    bind_host: str = "0.0.0.0",
    join: bool = True,
) -> socket.socket:
    """UDP socket bound to port and joined to group. Closed again if setup fails."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if hasattr(socket, "SO_REUSEPORT"):
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            except OSError:
                pass
        sock.bind((bind_host, port))
        if join:
            mreq = struct.pack("=4sI", socket.inet_aton(group), socket.INADDR_ANY)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


class SSDPDiscoveryProtocol(DiscoveryProtocol):
    """Respond to SSDP M-SEARCH for the bound MediaRenderer profile(s)."""

    label = "ssdp"

    def __init__(
        self,
        *args,
        advertise_ip: Optional[str] = None,
        uuid: Optional[str] = None,
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.advertise_ip = advertise_ip or local_ipv4()
        self.uuid = uuid or session_uuid()

    def handle(self, request: DiscoveryRequest) -> list[bytes]:
        msg = request.data.decode("utf-8", errors="ignore")
        out = []
        for p in self.profiles:
            targets = p.get("match_targets") or DEFAULT_MATCH_TARGETS
            if matches_search(msg, targets):
                out.append(ssdp_response(p, self.advertise_ip, self.uuid))
        if out:
            st = parse_msearch_st(msg) or ""
            self.logger.debug("ssdp: M-SEARCH from %s (ST=%s)", request.addr, st[:50])
        return out
