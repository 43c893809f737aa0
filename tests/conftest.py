import asyncio
import logging
from types import SimpleNamespace

import pytest

from beacon_profiles import ProfileCatalog


class FakeTransport:
    """Records sendto() calls; optionally fails the first N sends."""

    def __init__(self, sockname=("0.0.0.0", 0), fail_sends=0):
        self.sent = []
        self.closed = False
        self._sockname = sockname
        self._fail_sends = fail_sends

    def sendto(self, data, addr=None):
        if self._fail_sends:
            self._fail_sends -= 1
            raise OSError("network is unreachable")
        self.sent.append((data, addr))

    def get_extra_info(self, name, default=None):
        return self._sockname if name == "sockname" else default

    def is_closing(self):
        return self.closed

    def close(self):
        self.closed = True


class _Collector(asyncio.DatagramProtocol):
    def __init__(self):
        self.queue = asyncio.Queue()

    def datagram_received(self, data, addr):
        self.queue.put_nowait((data, addr))


async def udp_exchange(port, payload, expect=1, host="127.0.0.1", timeout=2.0, linger=0.3):
    """Send payload to host:port from a fresh socket.

    Returns (responses, client_port). Waits up to timeout for `expect`
    replies, then linger seconds more to catch extras.
    """
    loop = asyncio.get_running_loop()
    transport, proto = await loop.create_datagram_endpoint(_Collector, local_addr=(host, 0))
    client_port = transport.get_extra_info("sockname")[1]
    out = []
    try:
        transport.sendto(payload, (host, port))
        deadline = loop.time() + timeout
        while len(out) < expect:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                out.append(await asyncio.wait_for(proto.queue.get(), remaining))
            except asyncio.TimeoutError:
                break
        while True:
            try:
                out.append(await asyncio.wait_for(proto.queue.get(), linger))
            except asyncio.TimeoutError:
                break
    finally:
        transport.close()
    return out, client_port


@pytest.fixture
def catalog():
    return ProfileCatalog.load()


@pytest.fixture
def logger():
    return logging.getLogger("console-beacon.test")


@pytest.fixture
def fake_nics(monkeypatch):
    """Install fake psutil interface tables: fake_nics(addrs, stats)."""
    import beacon_identity

    def install(addrs, stats=None):
        monkeypatch.setattr(beacon_identity.psutil, "net_if_addrs", lambda: addrs)
        monkeypatch.setattr(beacon_identity.psutil, "net_if_stats", lambda: stats or {})

    return install


def nic_addr(family, address):
    return SimpleNamespace(family=family, address=address, netmask=None, broadcast=None, ptp=None)


def nic_stats(isup=True, flags="up,broadcast,running,multicast"):
    return SimpleNamespace(isup=isup, duplex=0, speed=0, mtu=1500, flags=flags)
