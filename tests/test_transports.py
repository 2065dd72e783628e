import asyncio

import pytest

from checkin_print_service.exceptions import InvalidConfigurationError
from checkin_print_service.models import TransportType
from checkin_print_service.transports import (
    InMemoryTransport, TcpTransport, build_transports, get_transport, CONNECTION_LOST,
)
from checkin_print_service.transports.tcp import parse_host, printer_id_for

from conftest import make_printer


# =============================================================================
# Registry
# =============================================================================

def test_registry_shares_serial_adapter():
    adapters = build_transports(['wifi', 'bluetooth', 'usb'])
    assert isinstance(adapters[TransportType.WIFI], TcpTransport)
    assert adapters[TransportType.BLUETOOTH] is adapters[TransportType.USB]
    assert TransportType.BLUETOOTH_LE not in adapters


def test_simulator_serves_every_transport():
    adapters = build_transports([], simulator=True)
    assert set(adapters) == set(TransportType)
    assert len({id(adapter) for adapter in adapters.values()}) == 1


def test_unknown_transport_is_rejected():
    assert get_transport('carrier-pigeon') is None
    with pytest.raises(InvalidConfigurationError):
        build_transports(['carrier-pigeon'])


# =============================================================================
# In-memory
# =============================================================================

def test_memory_transport_requires_connection():
    async def scenario():
        transport = InMemoryTransport([make_printer('QL-1')])
        before = await transport.transmit(b'\x00', {'printerId': 'QL-1'})
        await transport.connect('QL-1', TransportType.WIFI)
        after = await transport.transmit(b'\x00', {'printerId': 'QL-1', 'copies': 2})
        return before, after, transport.transmissions

    before, after, transmissions = asyncio.run(scenario())
    assert before == {'success': False, 'error': 'Printer QL-1 is not connected', 'errorCode': 'CONNECTION_LOST'}
    assert after == {'success': True, 'labels': 2}
    assert [t['success'] for t in transmissions] == [False, True]


def test_memory_transport_scripted_failures():
    async def scenario():
        transport = InMemoryTransport([make_printer('QL-1')])
        await transport.connect('QL-1', TransportType.WIFI)
        transport.fail_transmission(2, "Cover is open", 'COVER_OPEN')
        transport.fail_next_transmit("Busy", 'PRINTER_BUSY')
        return [await transport.transmit(b'', {'printerId': 'QL-1'}) for _ in range(3)]

    first, second, third = asyncio.run(scenario())
    assert first['errorCode'] == 'PRINTER_BUSY'
    assert second['errorCode'] == 'COVER_OPEN'
    assert third['success']


def test_memory_transport_pushes_connection_loss():
    async def scenario():
        transport = InMemoryTransport([make_printer('QL-1')])
        events = []
        transport.add_listener(events.append)
        await transport.connect('QL-1', TransportType.WIFI)
        transport.lose_connection('QL-1')
        alive = await transport.test_connection('QL-1')
        return events, alive

    events, alive = asyncio.run(scenario())
    assert [e.kind for e in events] == [CONNECTION_LOST]
    assert events[0].printer_id == 'QL-1'
    assert not alive


def test_memory_transport_direct_printing():
    async def scenario():
        transport = InMemoryTransport()
        ok = await transport.transmit_direct(b'abc', {}, TransportType.WIFI, '10.0.0.5')
        transport.set_reachable('10.0.0.6', False)
        missing = await transport.transmit_direct(b'abc', {}, TransportType.WIFI, '10.0.0.6')
        return ok, missing, transport.connected

    ok, missing, connected = asyncio.run(scenario())
    assert ok['success']
    assert missing['errorCode'] == 'PRINTER_NOT_FOUND'
    assert not connected


# =============================================================================
# TCP
# =============================================================================

def test_parse_host():
    assert parse_host('10.0.0.1') == ('10.0.0.1', 9100)
    assert parse_host('10.0.0.1:9200') == ('10.0.0.1', 9200)
    assert printer_id_for('10.0.0.1', 9100) == 'NET-10-0-0-1-9100'


async def _fake_printer(received: bytearray):
    async def handle(reader, writer):
        while True:
            chunk = await reader.read(1024)
            if not chunk:
                break
            received.extend(chunk)
        writer.close()

    server = await asyncio.start_server(handle, '127.0.0.1', 0)
    return server, server.sockets[0].getsockname()[1]


def test_tcp_discover_connect_and_transmit():
    received = bytearray()

    async def scenario():
        server, port = await _fake_printer(received)
        async with server:
            transport = TcpTransport(hosts=[f'127.0.0.1:{port}'], timeout=2)
            printers = await transport.discover()
            printer_id = printers[0].id
            connected = await transport.connect(printer_id, TransportType.WIFI)
            status = await transport.query_status(printer_id)
            result = await transport.transmit(b'RASTER', {'printerId': printer_id, 'copies': 2})
            await transport.close()
            await asyncio.sleep(0.05)
            return printers, connected, status, result

    printers, connected, status, result = asyncio.run(scenario())
    assert len(printers) == 1
    assert printers[0].transport_type == TransportType.WIFI
    assert connected
    assert status['connected']
    assert result == {'success': True, 'bytes_sent': 6}
    assert bytes(received) == b'RASTERRASTER'


def test_tcp_direct_transmit():
    received = bytearray()

    async def scenario():
        server, port = await _fake_printer(received)
        async with server:
            transport = TcpTransport(hosts=[])
            result = await transport.transmit_direct(b'BADGE', {}, TransportType.WIFI, '127.0.0.1', port, 2000)
            await asyncio.sleep(0.05)
            return result

    assert asyncio.run(scenario())['success']
    assert bytes(received) == b'BADGE'


def test_tcp_unreachable_host():
    async def scenario():
        server, port = await _fake_printer(bytearray())
        server.close()
        await server.wait_closed()
        transport = TcpTransport(hosts=[f'127.0.0.1:{port}'], timeout=1)
        printers = await transport.discover()
        direct = await transport.transmit_direct(b'x', {}, TransportType.WIFI, '127.0.0.1', port, 1000)
        not_connected = await transport.transmit(b'x', {'printerId': 'NET-unknown'})
        return printers, direct, not_connected

    printers, direct, not_connected = asyncio.run(scenario())
    assert printers == []
    assert not direct['success']
    assert direct['errorCode'] in ('CONNECTION_FAILED', 'PRINTER_NOT_FOUND')
    assert not_connected['errorCode'] == 'CONNECTION_LOST'
