"""
Listener supervisor - one asyncio task per UDP endpoint.

plan_endpoints() turns the selected profiles into the distinct endpoints
that must be bound (all text-protocol profiles share port 987). The
BeaconSupervisor starts a task per endpoint, reports which ones bound, and
offers a single wait()/stop() point. Tasks are never restarted.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from beacon_binary import BINARY_PORT, BinaryDiscoveryProtocol, binary_identity
from beacon_identity import IdentityError, get_advertise_ip, session_uuid
from beacon_profiles import ConfigError, DeviceProfile, ProtocolBinding
from beacon_ssdp import SSDP_MCAST_GRP, SSDP_MCAST_PORT, SSDPDiscoveryProtocol, open_multicast_socket
from beacon_text import TEXT_PORT, TextDiscoveryProtocol

_logger = logging.getLogger(__name__)

_PORT_KEYS = {
    ProtocolBinding.TEXT: ("text_port", TEXT_PORT),
    ProtocolBinding.BINARY: ("binary_port", BINARY_PORT),
    ProtocolBinding.MULTICAST: ("ssdp_port", SSDP_MCAST_PORT),
}


class NoListenersError(RuntimeError):
    """Every requested endpoint failed to bind."""


def validate_port(value: Any, name: str = "port") -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid {name}: {value!r}") from None
    if not 0 <= port <= 65535:
        raise ConfigError(f"Invalid {name}: {port} (must be 0-65535)")
    return port


@dataclass(frozen=True)
class EndpointSpec:
    """One UDP endpoint to bind and the profiles it answers for."""

    binding: ProtocolBinding
    port: int
    profiles: tuple[DeviceProfile, ...]
    host: str = "0.0.0.0"
    group: Optional[str] = None
    join_group: bool = True

    @property
    def label(self) -> str:
        return f"{self.binding.value}:{self.port}"

    def describe(self) -> str:
        return ", ".join(p.name for p in self.profiles)


def plan_endpoints(
    profiles: Iterable[DeviceProfile],
    config: Optional[dict] = None,
    port_override: Optional[int] = None,
) -> list[EndpointSpec]:
    """
    Group profiles into endpoints, one per protocol binding.

    port_override replaces the text/binary port; it is rejected when both a
    text and a binary endpoint would need it.
    """
    config = config or {}
    grouped: dict[ProtocolBinding, list[DeviceProfile]] = {}
    for p in profiles:
        grouped.setdefault(p.binding, []).append(p)
    if not grouped:
        raise ConfigError("No device type selected")

    unicast = [b for b in grouped if b is not ProtocolBinding.MULTICAST]
    if port_override is not None:
        port_override = validate_port(port_override)
        if len(unicast) > 1:
            raise ConfigError(
                "--port cannot be used when both text and binary listeners are selected"
            )

    host = str(config.get("bind_host") or "0.0.0.0")
    specs = []
    for binding, members in grouped.items():
        key, default = _PORT_KEYS[binding]
        port = validate_port(config.get(key, default), key)
        if port_override is not None and binding is not ProtocolBinding.MULTICAST:
            port = port_override
        if binding is ProtocolBinding.MULTICAST:
            specs.append(EndpointSpec(
                binding, port, tuple(members), host,
                group=str(config.get("ssdp_group") or SSDP_MCAST_GRP),
                join_group=bool(config.get("ssdp_join_group", True)),
            ))
        else:
            specs.append(EndpointSpec(binding, port, tuple(members), host))
    return specs


class ListenerEndpoint:
    """
    Owns one bound socket for the lifetime of its task.

    Must be constructed inside a running event loop. `bound` resolves to
    True once listening, or False if binding failed.
    """

    def __init__(
        self,
        spec: EndpointSpec,
        config: dict,
        logger: logging.Logger,
        on_fatal=None,
    ) -> None:
        self.spec = spec
        self.config = config
        self.logger = logger
        self._on_fatal = on_fatal
        loop = asyncio.get_running_loop()
        self.bound: asyncio.Future = loop.create_future()
        self._closed: asyncio.Future = loop.create_future()
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.protocol = None
        self.local_port: Optional[int] = None

    def _set_bound(self, value: bool) -> None:
        if not self.bound.done():
            self.bound.set_result(value)

    def _lost(self, exc: Optional[Exception]) -> None:
        if not self._closed.done():
            self._closed.set_result(exc)

    def _fatal(self, exc: BaseException) -> None:
        if self._on_fatal:
            self._on_fatal(exc)
        else:
            self.close()

    async def _open(self) -> tuple:
        loop = asyncio.get_running_loop()
        spec = self.spec
        common = dict(logger=self.logger, on_fatal=self._fatal, on_lost=self._lost)
        if spec.binding is ProtocolBinding.TEXT:
            return await loop.create_datagram_endpoint(
                lambda: TextDiscoveryProtocol(spec.profiles, **common),
                local_addr=(spec.host, spec.port),
            )
        # Identities are built before any socket is bound so a failure leaves nothing open.
        if spec.binding is ProtocolBinding.BINARY:
            identity = binary_identity(spec.profiles)
            return await loop.create_datagram_endpoint(
                lambda: BinaryDiscoveryProtocol(spec.profiles, identity=identity, **common),
                local_addr=(spec.host, spec.port),
            )
        advertise_ip = get_advertise_ip(self.config)
        uuid = session_uuid()
        sock = open_multicast_socket(spec.port, spec.group or SSDP_MCAST_GRP, spec.host, spec.join_group)
        try:
            return await loop.create_datagram_endpoint(
                lambda: SSDPDiscoveryProtocol(spec.profiles, advertise_ip=advertise_ip, uuid=uuid, **common),
                sock=sock,
            )
        except BaseException:
            sock.close()
            raise

    async def run(self) -> None:
        spec = self.spec
        try:
            try:
                self.transport, self.protocol = await self._open()
            except OSError as e:
                self.logger.warning(
                    "UDP %d (%s) listen failed: %s. Port may be in use or need root.",
                    spec.port, spec.binding.value, e,
                )
                return
            except IdentityError as e:
                self.logger.critical("UDP %d (%s): cannot build identity: %s", spec.port, spec.binding.value, e)
                self._set_bound(False)
                self._fatal(e)
                return
            sockname = self.transport.get_extra_info("sockname")
            self.local_port = int(sockname[1]) if sockname else spec.port
            self.logger.info(
                "Listening on UDP %s:%d (%s) for %s",
                spec.host, self.local_port, spec.binding.value, spec.describe(),
            )
            self._set_bound(True)
            await self._closed
            self.logger.info("UDP %d (%s) listener stopped", self.local_port, spec.binding.value)
        finally:
            self._set_bound(False)
            if self.transport is not None and not self.transport.is_closing():
                self.transport.close()

    def close(self) -> None:
        if self.transport is not None and not self.transport.is_closing():
            self.transport.close()
        self._lost(None)


class BeaconSupervisor:
    """Starts one listener task per endpoint and tracks their lifetimes."""

    def __init__(
        self,
        specs: Iterable[EndpointSpec],
        config: Optional[dict] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.specs = list(specs)
        self.config = config or {}
        self.logger = logger or _logger
        self.endpoints: list[ListenerEndpoint] = []
        self._tasks: list[asyncio.Task] = []
        self.fatal_error: Optional[BaseException] = None
        self._done: Optional[asyncio.Event] = None

    @property
    def active(self) -> list[ListenerEndpoint]:
        return [
            ep for ep, t in zip(self.endpoints, self._tasks)
            if not t.done() and ep.bound.done() and ep.bound.result()
        ]

    def _on_fatal(self, exc: BaseException) -> None:
        if self.fatal_error is None:
            self.fatal_error = exc
            self.logger.critical("Fatal error, stopping all listeners: %s", exc)
        for ep in self.endpoints:
            ep.close()

    async def start(self) -> list[ListenerEndpoint]:
        """Start every endpoint; return those that bound.

        Raises NoListenersError if none bound, or the fatal error if
        identity generation failed during startup.
        """
        if self._tasks:
            raise RuntimeError("supervisor already started")
        self._done = asyncio.Event()
        for spec in self.specs:
            ep = ListenerEndpoint(spec, self.config, self.logger, on_fatal=self._on_fatal)
            self.endpoints.append(ep)
            task = asyncio.create_task(ep.run(), name=f"beacon-{spec.label}")
            task.add_done_callback(self._task_done)
            self._tasks.append(task)

        results = await asyncio.gather(*(ep.bound for ep in self.endpoints))
        if self.fatal_error is not None:
            await self.stop()
            raise self.fatal_error
        if not any(results):
            await self.wait()
            raise NoListenersError(
                "No listener could be started: "
                + ", ".join(f"UDP {s.port} ({s.binding.value})" for s in self.specs)
            )
        started = [ep for ep, ok in zip(self.endpoints, results) if ok]
        if len(started) < len(self.endpoints):
            self.logger.warning("%d of %d listener(s) running", len(started), len(self.endpoints))
        return started

    def _task_done(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            self.logger.error("Listener %s crashed: %s", task.get_name(), task.exception())
        if self._done is not None and all(t.done() for t in self._tasks):
            self._done.set()

    async def wait(self) -> None:
        """Return once every listener task has exited."""
        if self._done is None or not self._tasks:
            return
        await self._done.wait()

    async def stop(self) -> None:
        """Close every socket and wait for the tasks to finish."""
        for ep in self.endpoints:
            ep.close()
        await self.wait()
