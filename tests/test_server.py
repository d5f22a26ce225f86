import asyncio
import threading

from conftest import FakeStore, build_record

from obmp_whois.config import ServerConfig, WhoisConfig
from obmp_whois.protocol import (
    ERROR_INVALID_REQUEST,
    ERROR_OUT_OF_RESOURCES,
    HELP_USAGE,
    NO_PREFIXES_FOUND,
)
from obmp_whois.server import AdmissionController, WhoisServer


class BlockingStore(FakeStore):
    """Holds every lookup until ``release`` is set, like a hung query."""

    def __init__(self, records=None):
        super().__init__(records)
        self.started = threading.Event()
        self.release = threading.Event()

    def lookup_prefixes(self, query):
        self.started.set()
        self.release.wait(timeout=10)
        return super().lookup_prefixes(query)


def make_config(**server) -> WhoisConfig:
    return WhoisConfig(server=ServerConfig(host="127.0.0.1", port=0, **server))


def run_with_server(store, scenario, **server):
    async def main():
        whois = WhoisServer(make_config(**server), store)
        await whois.start(install_signals=False)
        try:
            return await scenario(whois)
        finally:
            await whois.stop()

    return asyncio.run(main())


async def query(port: int, payload: bytes) -> bytes:
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    if payload:
        writer.write(payload)
        await writer.drain()
    data = await asyncio.wait_for(reader.read(), timeout=10)
    writer.close()
    return data


async def wait_for_event(event: threading.Event, timeout: float = 5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not event.is_set():
        assert loop.time() < deadline, "timed out waiting for store lookup"
        await asyncio.sleep(0.01)


def test_help():
    async def scenario(whois):
        return await query(whois.port, b"HELP\r\n")

    assert run_with_server(FakeStore(), scenario) == HELP_USAGE.encode()


def test_invalid_request_gets_error_and_help():
    async def scenario(whois):
        return await query(whois.port, b"hello world\r\n")

    assert run_with_server(FakeStore(), scenario) == (ERROR_INVALID_REQUEST + HELP_USAGE).encode()


def test_asn_lookup_closes_without_body():
    store = FakeStore([build_record()])

    async def scenario(whois):
        return await query(whois.port, b"ASN65000\r\n")

    assert run_with_server(store, scenario) == b""
    assert store.queries == []


def test_prefix_lookup_dedups_identical_rows():
    store = FakeStore([build_record(peer_name="X"), build_record(peer_name="X")])

    async def scenario(whois):
        return await query(whois.port, b"192.0.2.0/24\r\n")

    response = run_with_server(store, scenario).decode()

    assert response.count("BMPRouter:") == 1
    assert "Prefix:".ljust(20) + " 192.0.2.0/24\r\n" in response
    assert store.queries[0].network == "192.0.2.0/24"


def test_prefix_lookup_without_rows():
    async def scenario(whois):
        return await query(whois.port, b"2001:db8::/32 lax\n")

    assert run_with_server(FakeStore([]), scenario) == NO_PREFIXES_FOUND.encode()


def test_empty_read_closes_silently():
    async def scenario(whois):
        reader, writer = await asyncio.open_connection("127.0.0.1", whois.port)
        writer.write_eof()
        data = await asyncio.wait_for(reader.read(), timeout=5)
        writer.close()
        await asyncio.sleep(0.05)
        return data, whois.admission.active

    data, active = run_with_server(FakeStore(), scenario)
    assert data == b""
    assert active == 0


def test_rejects_when_no_slot_frees_in_time():
    store = BlockingStore([build_record()])

    async def scenario(whois):
        first = asyncio.create_task(query(whois.port, b"192.0.2.1\r\n"))
        await wait_for_event(store.started)
        assert whois.admission.active == 1

        # Unread request bytes would turn the server close into a reset
        rejected = await query(whois.port, b"")
        assert whois.admission.active == 1

        store.release.set()
        served = await first
        return rejected, served

    try:
        rejected, served = run_with_server(store, scenario, max_connections=1, slot_wait_timeout=0.1)
    finally:
        store.release.set()

    assert rejected == ERROR_OUT_OF_RESOURCES.encode()
    assert b"BMPRouter:" in served
    assert len(store.queries) == 1


def test_waiting_connection_is_served_when_slot_frees():
    store = BlockingStore([build_record()])

    async def scenario(whois):
        first = asyncio.create_task(query(whois.port, b"192.0.2.1\r\n"))
        await wait_for_event(store.started)

        second = asyncio.create_task(query(whois.port, b"192.0.2.2\r\n"))
        await asyncio.sleep(0.1)
        store.release.set()

        return await first, await second

    try:
        first, second = run_with_server(store, scenario, max_connections=1, slot_wait_timeout=5.0)
    finally:
        store.release.set()

    assert b"BMPRouter:" in first
    assert b"BMPRouter:" in second
    assert [q.address for q in store.queries] == ["192.0.2.1", "192.0.2.2"]


def test_shutdown_abandons_in_flight_workers():
    store = BlockingStore([build_record()])

    async def main():
        whois = WhoisServer(make_config(shutdown_grace=0.05), store)
        serving = asyncio.create_task(whois.serve(install_signals=False))
        while whois.server is None:
            await asyncio.sleep(0.01)

        client = asyncio.create_task(query(whois.port, b"192.0.2.1\r\n"))
        await wait_for_event(store.started)

        whois.request_shutdown()
        abandoned = await asyncio.wait_for(serving, timeout=5)
        data = await client
        return abandoned, data, whois.admission.active

    try:
        abandoned, data, active = asyncio.run(main())
    finally:
        store.release.set()

    assert abandoned == 1
    assert data == b""
    assert active == 0


def test_shutdown_without_workers():
    async def main():
        whois = WhoisServer(make_config(), FakeStore())
        serving = asyncio.create_task(whois.serve(install_signals=False))
        while whois.server is None:
            await asyncio.sleep(0.01)
        whois.request_shutdown()
        return await asyncio.wait_for(serving, timeout=5)

    assert asyncio.run(main()) == 0


def test_admission_controller_bounds_permits():
    async def main():
        admission = AdmissionController(2, wait_timeout=0.05)
        assert await admission.acquire()
        assert await admission.acquire()
        assert admission.active == 2

        assert not await admission.acquire()
        assert admission.active == 2

        admission.release()
        assert await admission.acquire()
        admission.release()
        admission.release()
        return admission.active

    assert asyncio.run(main()) == 0
