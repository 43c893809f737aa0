"""
Common asyncio datagram plumbing shared by the three discovery responders.

Subclasses implement handle(), which turns one DiscoveryRequest into zero or
more response payloads. Sending, transient-error logging and the lifecycle
callbacks used by the supervisor live here.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from beacon_identity import IdentityError
from beacon_profiles import DeviceProfile


@dataclass(frozen=True)
class DiscoveryRequest:
    data: bytes
    addr: tuple
    local_port: int = 0

    @property
    def source_port(self) -> int:
        return int(self.addr[1])


class DiscoveryProtocol(asyncio.DatagramProtocol):
    """Receive, classify, respond. One datagram at a time, in arrival order."""

    label = "discovery"

    def __init__(
        self,
        profiles: Iterable[DeviceProfile],
        logger: Optional[logging.Logger] = None,
        on_fatal: Optional[Callable[[BaseException], None]] = None,
        on_lost: Optional[Callable[[Optional[Exception]], None]] = None,
    ) -> None:
        self.profiles = tuple(profiles)
        if not self.profiles:
            raise ValueError(f"{type(self).__name__} needs at least one profile")
        self.logger = logger or logging.getLogger(__name__)
        self.transport: Optional[asyncio.DatagramTransport] = None
        self._on_fatal = on_fatal
        self._on_lost = on_lost
        self._local_port = 0

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore[assignment]
        sockname = transport.get_extra_info("sockname")
        if sockname:
            self._local_port = int(sockname[1])

    def handle(self, request: DiscoveryRequest) -> list[bytes]:
        raise NotImplementedError

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        request = DiscoveryRequest(data, addr, self._local_port)
        try:
            responses = self.handle(request)
        except IdentityError as e:
            self.logger.critical("%s: cannot build identity: %s", self.label, e)
            if self._on_fatal:
                self._on_fatal(e)
            return
        except Exception as e:
            self.logger.warning("%s: error handling datagram from %s: %s", self.label, addr, e)
            return
        if not responses:
            self.logger.debug("%s: ignored %d bytes from %s", self.label, len(data), addr)
            return
        for payload in responses:
            self.send(payload, addr)

    def send(self, payload: bytes, addr: tuple) -> None:
        if not self.transport or self.transport.is_closing():
            return
        try:
            self.transport.sendto(payload, addr)
            self.logger.debug("%s: sent %d bytes to %s", self.label, len(payload), addr)
        except OSError as e:
            self.logger.warning("%s: send to %s failed: %s", self.label, addr, e)

    def error_received(self, exc: Exception) -> None:
        self.logger.debug("%s: socket error: %s", self.label, exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self.transport = None
        if self._on_lost:
            self._on_lost(exc)
