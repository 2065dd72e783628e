import asyncio
import random
from datetime import datetime, timedelta

from checkin_print_service.connection_manager import ConnectionManager
from checkin_print_service.errors import ErrorHandler
from checkin_print_service.events import (
    EventBus, HealthChecked, ReconnectionAttempted, ReconnectionAbandoned,
)
from checkin_print_service.health_monitor import HealthMonitor
from checkin_print_service.models import HealthStatus


def build(transports, **options):
    bus = EventBus()
    manager = ConnectionManager(transports, bus, ErrorHandler(bus))
    settings = {'check_interval': 60, 'probe_timeout': 1, 'base_delay': 0.01, 'max_delay': 0.05,
                'jitter': 0.0, 'max_attempts': 3, 'rng': random.Random(7)}
    settings.update(options)
    return manager, HealthMonitor(manager, bus, **settings), bus


async def connected(manager, printer_id='QL-1'):
    await manager.initialize()
    await manager.scan()
    return await manager.establish(manager.get_printer(printer_id))


async def next_event(bus, event_type, predicate=lambda event: True, timeout=2.0):
    future = asyncio.get_running_loop().create_future()

    def on_event(event):
        if predicate(event) and not future.done():
            future.set_result(event)

    unsubscribe = bus.subscribe(event_type, on_event)
    try:
        return await asyncio.wait_for(future, timeout)
    finally:
        unsubscribe()


def test_slow_check_is_unhealthy():
    monitor = HealthMonitor(connection_manager=None, event_bus=EventBus())
    assert monitor.classify_latency(4000) == HealthStatus.UNHEALTHY
    assert monitor.classify_latency(1500) == HealthStatus.DEGRADED
    assert monitor.classify_latency(20) == HealthStatus.HEALTHY


def test_check_latency_is_classified(transports, memory_transport):
    async def scenario():
        manager, monitor, bus = build(transports, healthy_ms=20, degraded_ms=80)
        connection = await connected(manager)
        checked = []
        bus.subscribe(HealthChecked, checked.append)

        fast = await monitor.check_connection(connection.id)
        memory_transport.probe_latency['QL-1'] = 0.04
        slow = await monitor.check_connection(connection.id)
        memory_transport.probe_latency['QL-1'] = 0.12
        slower = await monitor.check_connection(connection.id)
        return monitor, fast, slow, slower, checked

    monitor, fast, slow, slower, checked = asyncio.run(scenario())
    assert fast.status == HealthStatus.HEALTHY
    assert slow.status == HealthStatus.DEGRADED
    assert slower.status == HealthStatus.UNHEALTHY
    assert slower.response_time_ms >= 80
    assert len(checked) == 3
    assert len(monitor.get_health_history('conn_QL-1')) == 3
    assert monitor.get_last_result('conn_QL-1') == slower

    stats = monitor.get_statistics()
    assert stats['total_connections'] == 1
    assert stats['unhealthy_connections'] == 1
    assert stats['average_response_time_ms'] > 0


def test_check_timeout_is_disconnected(transports, memory_transport):
    async def scenario():
        manager, monitor, _ = build(transports, probe_timeout=0.02)
        connection = await connected(manager)
        memory_transport.probe_latency['QL-1'] = 0.2
        return await monitor.check_connection(connection.id)

    result = asyncio.run(scenario())
    assert result.status == HealthStatus.DISCONNECTED
    assert "timed out" in result.error
    assert result.response_time_ms is None


def test_backoff_is_non_decreasing_and_capped():
    monitor = HealthMonitor(connection_manager=None, event_bus=EventBus(), base_delay=5, max_delay=300,
                            jitter=1, rng=random.Random(3))
    delays = [monitor.calculate_reconnection_delay(attempt) for attempt in range(15)]

    assert delays == sorted(delays)
    assert 5 <= delays[0] <= 6
    assert 10 <= delays[1] <= 11
    assert delays[-1] == 301
    assert monitor.calculate_reconnection_delay(10_000) == 301


def test_reconnection_gives_up_until_forced(transports, memory_transport):
    async def scenario():
        manager, monitor, bus = build(transports)
        connection = await connected(manager)
        monitor.start()
        attempts = []
        bus.subscribe(ReconnectionAttempted, lambda e: attempts.append(e.result))

        memory_transport.set_reachable('QL-1', False)
        abandoned = asyncio.ensure_future(next_event(bus, ReconnectionAbandoned))
        await monitor.check_connection(connection.id)
        event = await abandoned

        await asyncio.sleep(0.2)
        attempts_after_abandon = len(attempts)
        stats = monitor.get_statistics()
        unreachable = not manager.get_printer('QL-1').reachable

        memory_transport.set_reachable('QL-1', True)
        forced = await monitor.force_reconnect(connection.id)
        counter = monitor.get_reconnection_attempts(connection.id)
        await monitor.stop()
        return event, attempts, attempts_after_abandon, stats, unreachable, forced, counter

    event, attempts, attempts_after_abandon, stats, unreachable, forced, counter = asyncio.run(scenario())
    assert event.attempts == 3
    assert attempts_after_abandon == 3
    assert [a.attempt_number for a in attempts[:3]] == [1, 2, 3]
    assert [a.delay for a in attempts[:3]] == [0.01, 0.02, 0.04]
    assert not any(a.success for a in attempts[:3])
    assert stats['abandoned_connections'] == 1
    assert stats['total_reconnection_attempts'] == 3
    assert unreachable

    assert forced.success
    assert forced.attempt_number == 1
    assert counter == 0


def test_link_loss_reconnects_automatically(transports, memory_transport):
    async def scenario():
        manager, monitor, bus = build(transports)
        await connected(manager)
        monitor.start()
        reconnected = asyncio.ensure_future(
            next_event(bus, ReconnectionAttempted, lambda e: e.result.success))
        memory_transport.lose_connection('QL-1')
        event = await reconnected
        await asyncio.sleep(0)
        connection = manager.get_connection('conn_QL-1')
        counter = monitor.get_reconnection_attempts('conn_QL-1')
        await monitor.stop()
        return event, connection, counter

    event, connection, counter = asyncio.run(scenario())
    assert event.result.attempt_number == 1
    assert connection.is_connected
    assert connection.generation == 2
    assert counter == 0


def test_explicit_close_does_not_reconnect(transports):
    async def scenario():
        manager, monitor, bus = build(transports)
        connection = await connected(manager)
        monitor.start()
        attempts = []
        bus.subscribe(ReconnectionAttempted, attempts.append)
        manager.close(connection.id)
        await asyncio.sleep(0.1)
        stats = monitor.get_statistics()
        await monitor.stop()
        await manager.stop()
        return attempts, stats

    attempts, stats = asyncio.run(scenario())
    assert attempts == []
    assert stats['monitored_connections'] == 0
    assert stats['active_reconnections'] == 0


def test_monitoring_runs_periodically(transports):
    async def scenario():
        manager, monitor, bus = build(transports, check_interval=0.02)
        await connected(manager)
        checked = []
        bus.subscribe(HealthChecked, checked.append)
        monitor.start()
        await asyncio.sleep(0.1)
        monitored = monitor.get_statistics()['monitored_connections']
        await monitor.stop()
        return checked, monitored

    checked, monitored = asyncio.run(scenario())
    assert len(checked) >= 2
    assert all(e.result.status == HealthStatus.HEALTHY for e in checked)
    assert monitored == 1


def test_sweep_drops_stale_state(transports):
    async def scenario():
        manager, monitor, _ = build(transports, stale_after=60)
        connection = await connected(manager)
        await monitor.check_connection(connection.id)
        kept = monitor.sweep()
        swept = monitor.sweep(now=datetime.now() + timedelta(seconds=61))
        return kept, swept, monitor

    kept, swept, monitor = asyncio.run(scenario())
    assert kept == []
    assert swept == ['conn_QL-1']
    assert monitor.get_last_result('conn_QL-1') is None
    assert monitor.get_health_history('conn_QL-1') == []


def test_reconnection_is_reported_as_reconnecting(transports, memory_transport):
    async def scenario():
        manager, monitor, bus = build(transports)
        await connected(manager)
        monitor.start()
        checked = []
        bus.subscribe(HealthChecked, lambda e: checked.append(e.result))
        healthy = asyncio.ensure_future(
            next_event(bus, HealthChecked, lambda e: e.result.status == HealthStatus.HEALTHY))
        memory_transport.lose_connection('QL-1')
        await healthy
        await monitor.stop()
        return checked

    checked = asyncio.run(scenario())
    assert [r.status for r in checked] == [
        HealthStatus.DISCONNECTED, HealthStatus.RECONNECTING, HealthStatus.HEALTHY,
    ]
    assert checked[1].metrics == {'reconnection_attempts': 1}


def test_failed_connect_of_known_printer_is_retried(transports, memory_transport):
    async def scenario():
        manager, monitor, bus = build(transports)
        monitor.start()
        await connected(manager)
        attempts = []
        bus.subscribe(ReconnectionAttempted, lambda e: attempts.append(e.result))
        reconnected = asyncio.ensure_future(
            next_event(bus, ReconnectionAttempted, lambda e: e.result.success))

        memory_transport.fail_connect('QL-1')
        failed = await manager.establish(manager.get_printer('QL-1'))
        memory_transport.clear_failures()
        await reconnected
        connection = manager.get_connection('conn_QL-1')

        # a printer never connected before is left to the caller
        memory_transport.fail_connect('QL-2')
        await manager.establish(manager.get_printer('QL-2'))
        await asyncio.sleep(0.05)
        stats = monitor.get_statistics()
        await monitor.stop()
        return failed, connection, attempts, stats

    failed, connection, attempts, stats = asyncio.run(scenario())
    assert not failed.is_connected
    assert connection.is_connected
    assert [(a.connection_id, a.success) for a in attempts] == [('conn_QL-1', True)]
    assert stats['active_reconnections'] == 0
