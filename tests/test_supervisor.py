import asyncio
import socket

import pytest

import beacon_text
from beacon_binary import decode_discovery_response
from beacon_identity import IdentityError
from beacon_profiles import ConfigError, ProtocolBinding
from beacon_supervisor import (
    BeaconSupervisor,
    EndpointSpec,
    NoListenersError,
    plan_endpoints,
    validate_port,
)
from beacon_text import parse_text_response
from conftest import udp_exchange

LOCAL = {"bind_host": "127.0.0.1", "text_port": 0, "binary_port": 0}


def _occupied_port():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    return sock, sock.getsockname()[1]


def test_plan_shares_text_endpoint(catalog):
    specs = plan_endpoints(catalog.resolve_all("ps4,switch"))
    assert len(specs) == 1
    assert specs[0].binding is ProtocolBinding.TEXT
    assert specs[0].port == 987
    assert [p.name for p in specs[0].profiles] == ["ps4", "switch"]


def test_plan_xbox(catalog):
    specs = plan_endpoints(catalog.resolve_all("xbox"), {"ssdp_group": "239.255.255.250"})
    assert [(s.binding, s.port) for s in specs] == [
        (ProtocolBinding.BINARY, 5050),
        (ProtocolBinding.MULTICAST, 1900),
    ]
    assert specs[1].group == "239.255.255.250"
    assert specs[1].join_group is True


def test_plan_port_override(catalog):
    specs = plan_endpoints(catalog.resolve_all("xbox"), port_override="15050")
    assert [(s.binding, s.port) for s in specs] == [
        (ProtocolBinding.BINARY, 15050),
        (ProtocolBinding.MULTICAST, 1900),
    ]
    with pytest.raises(ConfigError):
        plan_endpoints(catalog.resolve_all("switch,xbox-binary"), port_override=9000)


@pytest.mark.parametrize("value", ["abc", -1, 65536, None])
def test_invalid_ports(catalog, value):
    with pytest.raises(ConfigError):
        validate_port(value)
    if value is not None:
        with pytest.raises(ConfigError):
            plan_endpoints(catalog.resolve_all("ps4"), {"text_port": value})


def test_plan_empty():
    with pytest.raises(ConfigError):
        plan_endpoints([])


def test_text_and_binary_listeners_end_to_end(catalog, logger):
    async def run():
        specs = plan_endpoints(catalog.resolve_all("switch,xbox-binary"), LOCAL)
        sup = BeaconSupervisor(specs, LOCAL, logger)
        started = await sup.start()
        try:
            assert len(started) == 2
            text_port = started[0].local_port
            binary_port = started[1].local_port
            assert text_port != binary_port

            replies, client_port = await udp_exchange(text_port, b"\x00")
            assert len(replies) == 1
            headers = parse_text_response(replies[0][0])
            assert headers["host-type"] == "NintendoSwitch"
            assert headers["host-request-port"] == str(client_port)

            replies, _ = await udp_exchange(binary_port, b"\xdd\x00")
            assert len(replies) == 1
            data = replies[0][0]
            assert data[:2] == b"\xdd\x01"
            decoded = decode_discovery_response(data)
            assert decoded.name and decoded.identity and decoded.credential

            # Each port answers only with its own profile.
            replies, _ = await udp_exchange(text_port, b"\xdd\x00")
            assert len(replies) == 1
            assert replies[0][0].startswith(b"HTTP/1.1 200 OK")
            replies, _ = await udp_exchange(binary_port, b"hello", expect=0)
            assert replies == []
        finally:
            await sup.stop()
        assert sup.active == []

    asyncio.run(run())


def test_bind_failure_is_isolated(catalog, logger):
    blocker, busy_port = _occupied_port()

    async def run():
        config = dict(LOCAL, text_port=busy_port)
        specs = plan_endpoints(catalog.resolve_all("ps4,xbox-binary"), config)
        sup = BeaconSupervisor(specs, config, logger)
        started = await sup.start()
        try:
            assert [ep.spec.binding for ep in started] == [ProtocolBinding.BINARY]
            assert len(sup.active) == 1
            replies, _ = await udp_exchange(started[0].local_port, b"\xdd\x00")
            assert len(replies) == 1
        finally:
            await sup.stop()

    try:
        asyncio.run(run())
    finally:
        blocker.close()


def test_all_bind_failures(catalog, logger):
    blocker, busy_port = _occupied_port()

    async def run():
        config = dict(LOCAL, text_port=busy_port)
        sup = BeaconSupervisor(plan_endpoints(catalog.resolve_all("ps4"), config), config, logger)
        with pytest.raises(NoListenersError):
            await sup.start()
        await asyncio.wait_for(sup.wait(), 1.0)

    try:
        asyncio.run(run())
    finally:
        blocker.close()


def test_stop_releases_sockets(catalog, logger):
    async def run():
        specs = plan_endpoints(catalog.resolve_all("ps4"), LOCAL)
        sup = BeaconSupervisor(specs, LOCAL, logger)
        [ep] = await sup.start()
        port = ep.local_port
        await asyncio.wait_for(sup.stop(), 2.0)
        return port

    port = asyncio.run(run())
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.bind(("127.0.0.1", port))
    finally:
        sock.close()


def test_identity_failure_stops_everything(catalog, logger, monkeypatch):
    def broken():
        raise IdentityError("no entropy")

    monkeypatch.setattr(beacon_text, "host_id_hex", broken)

    async def run():
        specs = plan_endpoints(catalog.resolve_all("ps4,xbox-binary"), LOCAL)
        sup = BeaconSupervisor(specs, LOCAL, logger)
        started = await sup.start()
        replies, _ = await udp_exchange(started[0].local_port, b"\x00", expect=0)
        assert replies == []
        await asyncio.wait_for(sup.wait(), 2.0)
        assert isinstance(sup.fatal_error, IdentityError)
        assert sup.active == []

    asyncio.run(run())


def test_endpoint_spec_label(catalog):
    spec = EndpointSpec(ProtocolBinding.TEXT, 987, (catalog.resolve("ps4"),))
    assert spec.label == "text:987"
    assert spec.describe() == "ps4"


def test_ssdp_listener_end_to_end(catalog, logger):
    config = {
        "bind_host": "127.0.0.1",
        "ssdp_port": 0,
        "ssdp_join_group": False,
        "ssdp_advertise_ip": "10.0.0.5",
    }
    search = (
        b"M-SEARCH * HTTP/1.1\r\n"
        b"HOST: 239.255.255.250:1900\r\n"
        b'MAN: "ssdp:discover"\r\n'
        b"MX: 1\r\n"
        b"ST: ssdp:all\r\n\r\n"
    )

    async def run():
        specs = plan_endpoints(catalog.resolve_all("xbox-ssdp"), config)
        assert specs[0].join_group is False
        sup = BeaconSupervisor(specs, config, logger)
        [ep] = await sup.start()
        try:
            assert ep.spec.binding is ProtocolBinding.MULTICAST
            assert ep.local_port != 0
            replies, client_port = await udp_exchange(ep.local_port, search)
            assert len(replies) == 1
            data, addr = replies[0]
            assert addr[1] == ep.local_port
            text = data.decode()
            assert "LOCATION: http://10.0.0.5:2869/upnphost/udhisapi.dll?content=uuid:" in text
            assert f"uuid:{ep.protocol.uuid}::" in text

            replies, _ = await udp_exchange(ep.local_port, b"NOTIFY * HTTP/1.1\r\n\r\n", expect=0)
            assert replies == []
        finally:
            await sup.stop()

    asyncio.run(run())


def test_identity_failure_at_startup_binds_nothing(catalog, logger, monkeypatch):
    import beacon_binary
    import beacon_supervisor

    def broken():
        raise IdentityError("no entropy")

    monkeypatch.setattr(beacon_binary, "session_uuid", broken)
    monkeypatch.setattr(beacon_supervisor, "session_uuid", broken)
    opened = []

    async def run():
        loop = asyncio.get_running_loop()
        real = loop.create_datagram_endpoint

        async def recording(*args, **kwargs):
            opened.append(kwargs)
            return await real(*args, **kwargs)

        loop.create_datagram_endpoint = recording
        config = dict(LOCAL, ssdp_port=0, ssdp_join_group=False)
        specs = plan_endpoints(catalog.resolve_all("xbox"), config)
        sup = BeaconSupervisor(specs, config, logger)
        with pytest.raises(IdentityError):
            await sup.start()
        assert sup.active == []

    asyncio.run(run())
    assert opened == []
