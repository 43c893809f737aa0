"""
Text discovery responder (UDP 987) for the PS4 / Steam Deck / Switch families.

Every datagram on the port is a probe; the reply is an HTTP-style status
line followed by CRLF-terminated key:value lines, addressed back to the
prober's source port.
"""

from __future__ import annotations

from typing import Callable, Optional

from beacon_identity import host_id_hex
from beacon_profiles import DeviceProfile
from beacon_protocol import DiscoveryProtocol, DiscoveryRequest

TEXT_PORT = 987
STATUS_LINE = "HTTP/1.1 200 OK"


def render_text_response(profile: DeviceProfile, host_id: str, request_port: int) -> bytes:
    """Render the discovery reply for profile; request_port is the prober's source port."""
    lines = [
        STATUS_LINE,
        f"host-id:{host_id}",
        f"host-type:{profile.get('host_type', '')}",
        f"host-name:{profile.get('host_name', '')}",
        f"host-request-port:{request_port}",
        f"device-discovery-protocol-version:{profile.get('protocol_version', '')}",
        f"system-version:{profile.get('system_version', '')}",
        f"running-app-name:{profile.get('running_app_name', '')}",
        f"running-app-titleid:{profile.get('running_app_titleid', '')}",
    ]
    return ("\r\n".join(lines) + "\r\n").encode("utf-8")


def parse_text_response(data: bytes) -> dict[str, str]:
    """Header lines of a text reply as a dict (status line excluded)."""
    out = {}
    for line in data.decode("utf-8", errors="replace").split("\r\n")[1:]:
        if ":" in line:
            k, _, v = line.partition(":")
            out[k.strip()] = v.strip()
    return out


class TextDiscoveryProtocol(DiscoveryProtocol):
    """Answers any datagram with one reply per bound profile."""

    label = "text"

    def __init__(self, *args, host_id: Optional[Callable[[], str]] = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._host_id = host_id or host_id_hex

    def handle(self, request: DiscoveryRequest) -> list[bytes]:
        host_id = self._host_id()
        self.logger.debug("text: probe from %s (%d bytes)", request.addr, len(request.data))
        return [render_text_response(p, host_id, request.source_port) for p in self.profiles]
