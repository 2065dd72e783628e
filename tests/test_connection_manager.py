import asyncio

import pytest

from checkin_print_service.connection_manager import ConnectionManager, LINK_LOST
from checkin_print_service.errors import ErrorHandler, ErrorCode
from checkin_print_service.events import (
    EventBus, PrinterDiscovered, PrinterConnected, PrinterDisconnected, ConnectionFailed,
    ConnectionStatusChanged, PermissionRequired,
)
from checkin_print_service.exceptions import InvalidConfigurationError
from checkin_print_service.mfi import CachedMfiGate
from checkin_print_service.models import ConnectionStatus, PrintSettings, PrinterCapabilities, TransportType

from conftest import make_printer


def build(transports, **kwargs):
    bus = EventBus()
    manager = ConnectionManager(transports, bus, ErrorHandler(bus), **kwargs)
    return manager, bus


def test_scan_discovers_printers_once(transports, memory_transport):
    async def scenario():
        manager, bus = build(transports)
        discovered = []
        bus.subscribe(PrinterDiscovered, discovered.append)
        first, second = await asyncio.gather(manager.scan(), manager.scan())
        await manager.scan()
        return manager, first, second, discovered

    manager, first, second, discovered = asyncio.run(scenario())
    assert [c.printer_id for c in first] == ['QL-1', 'QL-2']
    assert first == second
    assert memory_transport.discover_calls == 2
    assert len(discovered) == 2
    assert all(c.status == ConnectionStatus.DISCONNECTED for c in manager.list_connections())


def test_establish_connects_and_publishes(transports):
    async def scenario():
        manager, bus = build(transports)
        await manager.scan()
        statuses, connected = [], []
        bus.subscribe(ConnectionStatusChanged, lambda e: statuses.append(e.status))
        bus.subscribe(PrinterConnected, connected.append)
        connection = await manager.establish(manager.get_printer('QL-1'))
        return manager, connection, statuses, connected

    manager, connection, statuses, connected = asyncio.run(scenario())
    assert connection.is_connected
    assert connection.generation == 1
    assert connection.connect_duration_ms is not None
    assert statuses == [ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED]
    assert connected[0].connection_id == 'conn_QL-1'
    assert manager.get_printer('QL-1').status == ConnectionStatus.CONNECTED
    assert manager.connected_printer_ids() == ['QL-1']


def test_failed_connect_goes_to_error(transports, memory_transport):
    async def scenario():
        manager, bus = build(transports)
        await manager.scan()
        failures = []
        bus.subscribe(ConnectionFailed, failures.append)
        memory_transport.fail_connect('QL-1')
        connection = await manager.establish(manager.get_printer('QL-1'))
        return manager, connection, failures

    manager, connection, failures = asyncio.run(scenario())
    assert connection.status == ConnectionStatus.ERROR
    assert connection.error == "Could not connect to Brother QL-1"
    assert failures[0].code == ErrorCode.CONNECTION_FAILED
    assert manager.error_handler.get_statistics()['errors_by_code'] == {ErrorCode.CONNECTION_FAILED: 1}


def test_concurrent_establish_is_serialized(transports, memory_transport):
    async def scenario():
        manager, _ = build(transports)
        await manager.scan()
        printer = manager.get_printer('QL-1')
        results = await asyncio.gather(*(manager.establish(printer) for _ in range(3)))
        return results

    results = asyncio.run(scenario())
    assert [c.generation for c in results] == [1, 2, 3]
    assert memory_transport.connect_calls == 3


def test_mfi_printer_authenticates_first(memory_transport):
    calls = []

    async def authenticator(printer):
        calls.append(printer.id)
        return {'success': True}

    mfi_printer = make_printer('MFI-1', TransportType.MFI, is_mfi_certified=True)
    memory_transport.add_printer(mfi_printer)
    transports = {t: memory_transport for t in TransportType}

    async def scenario():
        manager, bus = build(transports, mfi_gate=CachedMfiGate(authenticator))
        statuses = []
        bus.subscribe(ConnectionStatusChanged, lambda e: statuses.append(e.status))
        first = await manager.establish(mfi_printer)
        second = await manager.establish(mfi_printer)
        return first, second, statuses

    first, second, statuses = asyncio.run(scenario())
    assert first.is_connected and second.is_connected
    assert calls == ['MFI-1']
    assert statuses[:3] == [ConnectionStatus.CONNECTING, ConnectionStatus.AUTHENTICATING,
                            ConnectionStatus.CONNECTED]


def test_mfi_rejection_fails_connection(memory_transport):
    async def authenticator(printer):
        return {'success': False, 'error': "Certificate rejected"}

    mfi_printer = make_printer('MFI-1', TransportType.MFI, is_mfi_certified=True)
    transports = {t: memory_transport for t in TransportType}

    async def scenario():
        manager, bus = build(transports, mfi_gate=CachedMfiGate(authenticator))
        failures = []
        bus.subscribe(ConnectionFailed, failures.append)
        connection = await manager.establish(mfi_printer)
        return connection, failures

    connection, failures = asyncio.run(scenario())
    assert connection.status == ConnectionStatus.ERROR
    assert connection.error == "Certificate rejected"
    assert failures[0].code == ErrorCode.MFI_AUTH_FAILED
    assert memory_transport.connect_calls == 0


def test_failed_liveness_test_flips_to_error(transports, memory_transport):
    async def scenario():
        manager, _ = build(transports)
        await manager.scan()
        connection = await manager.establish(manager.get_printer('QL-1'))
        alive = await manager.test(connection.id)
        memory_transport.set_reachable('QL-1', False)
        dead = await manager.test(connection.id)
        return manager, alive, dead

    manager, alive, dead = asyncio.run(scenario())
    assert alive and not dead
    assert manager.get_connection('conn_QL-1').status == ConnectionStatus.ERROR


def test_link_loss_disconnects_without_teardown(transports, memory_transport):
    async def scenario():
        manager, bus = build(transports)
        await manager.initialize()
        await manager.scan()
        await manager.establish(manager.get_printer('QL-1'))
        disconnects = []
        bus.subscribe(PrinterDisconnected, disconnects.append)
        memory_transport.lose_connection('QL-1', "Out of range")
        await asyncio.sleep(0)
        return manager, disconnects

    manager, disconnects = asyncio.run(scenario())
    assert disconnects[0].reason == LINK_LOST
    assert manager.get_connection('conn_QL-1').status == ConnectionStatus.DISCONNECTED
    assert memory_transport.disconnect_calls == 0


def test_close_tears_down_in_background(transports, memory_transport):
    async def scenario():
        manager, _ = build(transports)
        await manager.scan()
        connection = await manager.establish(manager.get_printer('QL-1'))
        closed = manager.close(connection.id)
        status = manager.get_connection(connection.id).status
        await manager.stop()
        return closed, status

    closed, status = asyncio.run(scenario())
    assert closed
    assert status == ConnectionStatus.DISCONNECTED
    assert memory_transport.disconnect_calls == 1
    assert 'QL-1' not in memory_transport.connected


def test_status_event_from_transport(transports, memory_transport):
    async def scenario():
        manager, _ = build(transports)
        await manager.initialize()
        await manager.scan()
        await manager.establish(manager.get_printer('QL-1'))
        memory_transport.change_status('QL-1', 'error', error="Cover open")
        return manager.get_connection('conn_QL-1')

    connection = asyncio.run(scenario())
    assert connection.status == ConnectionStatus.ERROR
    assert connection.error == "Cover open"


def test_printer_pushed_by_transport_is_remembered(transports, memory_transport):
    async def scenario():
        manager, _ = build(transports)
        await manager.initialize()
        memory_transport.add_printer(make_printer('QL-7'))
        return manager.get_printer('QL-7')

    assert asyncio.run(scenario()) is not None


def test_transmit_uses_current_connection(transports, memory_transport):
    async def scenario():
        manager, _ = build(transports)
        await manager.scan()
        before = await manager.transmit('conn_QL-1', b'x', {})
        connection = await manager.establish(manager.get_printer('QL-1'))
        ok = await manager.transmit(connection.id, b'x', {'copies': 1})
        memory_transport.connected.discard('QL-1')
        lost = await manager.transmit(connection.id, b'x', {})
        return manager, before, ok, lost

    manager, before, ok, lost = asyncio.run(scenario())
    assert before['errorCode'] == ErrorCode.CONNECTION_LOST
    assert ok['success']
    assert lost['errorCode'] == ErrorCode.CONNECTION_LOST
    assert manager.get_connection('conn_QL-1').status == ConnectionStatus.ERROR


def test_connect_direct_reuses_known_printer(transports):
    async def scenario():
        manager, _ = build(transports)
        await manager.scan()
        known = await manager.connect_direct(PrintSettings.wifi('10.0.0.4'))
        fresh = await manager.connect_direct(PrintSettings.wifi('10.9.9.9', port=9200))
        return manager, known, fresh

    manager, known, fresh = asyncio.run(scenario())
    assert known.printer_id == 'QL-1'
    assert fresh.printer_id.startswith('direct_wifi_')
    assert known.port == 9100
    assert known.auto_reconnect
    assert fresh.port == 9200
    assert manager.get_printer(fresh.printer_id).address == '10.9.9.9'

    with pytest.raises(InvalidConfigurationError):
        asyncio.run(manager.connect_direct(PrintSettings()))


def test_permissions_denied_is_reported(transports, memory_transport):
    memory_transport.permissions_granted = False

    async def scenario():
        manager, bus = build(transports)
        requests = []
        bus.subscribe(PermissionRequired, requests.append)
        granted = await manager.request_permissions()
        return manager, granted, requests

    manager, granted, requests = asyncio.run(scenario())
    assert not granted
    assert 'wifi' in requests[0].transports
    assert manager.error_handler.get_recent_errors(1)[0].code == ErrorCode.PERMISSION_DENIED


def test_stale_printers_are_evicted(transports):
    async def scenario():
        manager, _ = build(transports, stale_after=0)
        await manager.scan()
        await manager.establish(manager.get_printer('QL-1'))
        await asyncio.sleep(0.01)
        evicted = manager._evict_stale()
        return manager, evicted

    manager, evicted = asyncio.run(scenario())
    assert evicted == ['QL-2']
    assert manager.get_printer('QL-1') is not None
    assert manager.connection_for_printer('QL-2') is None


def test_mark_unreachable_and_statistics(transports):
    async def scenario():
        manager, _ = build(transports)
        await manager.scan()
        await manager.establish(manager.get_printer('QL-1'))
        manager.mark_unreachable('QL-2')
        return manager

    manager = asyncio.run(scenario())
    assert not manager.get_printer('QL-2').reachable
    stats = manager.get_statistics()
    assert stats['printers'] == 2
    assert stats['unreachable_printers'] == 1
    assert stats['connections_by_status'] == {'connected': 1, 'disconnected': 1}


def test_connect_refreshes_capabilities(transports, memory_transport):
    async def scenario():
        manager, _ = build(transports)
        await manager.scan()
        discovered = manager.get_printer('QL-1').capabilities
        # the printer reports more than discovery knew about it
        memory_transport.printers['QL-1'] = make_printer(
            capabilities=PrinterCapabilities(max_resolution_dpi=300, supports_color=True))
        await manager.establish(manager.get_printer('QL-1'))
        return discovered, manager.get_printer('QL-1').capabilities

    discovered, refreshed = asyncio.run(scenario())
    assert discovered.max_resolution_dpi == 60
    assert refreshed.max_resolution_dpi == 300
    assert refreshed.supports_color


def test_direct_connection_can_opt_out_of_reconnects(transports):
    async def scenario():
        manager, _ = build(transports)
        return await manager.connect_direct(PrintSettings.wifi('10.9.9.9', auto_reconnect=False))

    connection = asyncio.run(scenario())
    assert connection.is_connected
    assert not connection.auto_reconnect
    assert connection.port == 9100
