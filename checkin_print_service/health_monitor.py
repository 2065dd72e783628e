"""
Health Monitor
==============

Periodic probing of connected printers and automatic reconnection with
exponential backoff.

Each connected printer gets its own monitoring task. A failed probe
schedules a reconnection; attempts back off from 5s up to 5 minutes and
give up after 10, leaving the printer discovered but unreachable.
"""

import asyncio
import logging
import random
import time
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Deque

from .config import (
    HEALTH_CHECK_INTERVAL, HEALTH_PROBE_TIMEOUT, HEALTHY_LATENCY_MS, DEGRADED_LATENCY_MS,
    RECONNECT_BASE_DELAY, RECONNECT_MAX_DELAY, RECONNECT_JITTER, RECONNECT_MAX_ATTEMPTS,
    HEALTH_HISTORY_SIZE, HEALTH_SWEEP_INTERVAL, HEALTH_STALE_AFTER,
)
from .connection_manager import ConnectionManager, CLOSED
from .events import (
    EventBus, PrinterConnected, PrinterDisconnected, ConnectionFailed,
    HealthChecked, ReconnectionAttempted, ReconnectionAbandoned,
)
from .exceptions import TransportError
from .models import HealthStatus, HealthCheckResult, ReconnectionResult

logger = logging.getLogger(__name__)


class HealthMonitor:
    """Connection health checks and reconnection scheduling."""

    def __init__(self, connection_manager: ConnectionManager, event_bus: EventBus,
                 check_interval: float = HEALTH_CHECK_INTERVAL,
                 probe_timeout: float = HEALTH_PROBE_TIMEOUT,
                 healthy_ms: float = HEALTHY_LATENCY_MS,
                 degraded_ms: float = DEGRADED_LATENCY_MS,
                 base_delay: float = RECONNECT_BASE_DELAY,
                 max_delay: float = RECONNECT_MAX_DELAY,
                 jitter: float = RECONNECT_JITTER,
                 max_attempts: int = RECONNECT_MAX_ATTEMPTS,
                 history_size: int = HEALTH_HISTORY_SIZE,
                 sweep_interval: float = HEALTH_SWEEP_INTERVAL,
                 stale_after: float = HEALTH_STALE_AFTER,
                 rng: Optional[random.Random] = None):
        self.connection_manager = connection_manager
        self.event_bus = event_bus
        self.check_interval = check_interval
        self.probe_timeout = probe_timeout
        self.healthy_ms = healthy_ms
        self.degraded_ms = degraded_ms
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.max_attempts = max_attempts
        self.history_size = history_size
        self.sweep_interval = sweep_interval
        self.stale_after = stale_after
        self._rng = rng or random.Random()

        self._monitors: Dict[str, asyncio.Task] = {}
        self._reconnect_timers: Dict[str, asyncio.Task] = {}
        self._attempts: Dict[str, int] = {}
        self._abandoned: set = set()
        self._history: Dict[str, Deque[HealthCheckResult]] = {}
        self._last_results: Dict[str, HealthCheckResult] = {}
        self._total_reconnection_attempts = 0
        self._tasks = set()
        self._unsubscribe = []
        self._sweep_task: Optional[asyncio.Task] = None
        self._running = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self):
        if self._running:
            return
        self._running = True
        self._unsubscribe = [
            self.event_bus.subscribe(PrinterConnected, self._on_connected),
            self.event_bus.subscribe(PrinterDisconnected, self._on_disconnected),
            self.event_bus.subscribe(ConnectionFailed, self._on_connection_failed),
        ]
        self._sweep_task = asyncio.ensure_future(self._sweep_loop())
        for connection in self.connection_manager.list_connections():
            if connection.is_connected:
                self.start_monitoring(connection.id)
        logger.info("[Health] Monitor started")

    async def stop(self):
        self._running = False
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []

        tasks = list(self._monitors.values()) + list(self._reconnect_timers.values()) + list(self._tasks)
        if self._sweep_task is not None:
            tasks.append(self._sweep_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._monitors.clear()
        self._reconnect_timers.clear()
        self._tasks.clear()
        self._sweep_task = None
        logger.info("[Health] Monitor stopped")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # =========================================================================
    # Monitoring
    # =========================================================================

    def start_monitoring(self, connection_id: str):
        if not self._running:
            return
        task = self._monitors.get(connection_id)
        if task is not None and not task.done():
            return
        self._monitors[connection_id] = asyncio.ensure_future(self._monitor_loop(connection_id))
        logger.debug(f"[Health] Monitoring {connection_id}")

    def stop_monitoring(self, connection_id: str):
        task = self._monitors.pop(connection_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _cancel_reconnection(self, connection_id: str):
        timer = self._reconnect_timers.pop(connection_id, None)
        if timer is not None:
            timer.cancel()

    async def _monitor_loop(self, connection_id: str):
        while True:
            await asyncio.sleep(self.check_interval)
            result = await self.check_connection(connection_id)
            if result.status == HealthStatus.DISCONNECTED:
                # Reconnection takes over; PrinterConnected restarts monitoring
                if self._monitors.get(connection_id) is asyncio.current_task():
                    del self._monitors[connection_id]
                return

    def _on_connected(self, event: PrinterConnected):
        self._attempts[event.connection_id] = 0
        self._abandoned.discard(event.connection_id)
        self.start_monitoring(event.connection_id)

    def _on_disconnected(self, event: PrinterDisconnected):
        self.stop_monitoring(event.connection_id)
        if event.reason == CLOSED:
            self._cancel_reconnection(event.connection_id)
            self._attempts.pop(event.connection_id, None)
        elif self._running:
            # Link lost: record it and let reconnection take over
            self._spawn(self.check_connection(event.connection_id))

    def _on_connection_failed(self, event: ConnectionFailed):
        # Only connections that were up before; a first connect that fails is the caller's to handle
        if event.connection_id in self._attempts:
            self.stop_monitoring(event.connection_id)
            self._schedule_reconnection(event.connection_id)

    def classify_latency(self, response_time_ms: float) -> HealthStatus:
        if response_time_ms < self.healthy_ms:
            return HealthStatus.HEALTHY
        if response_time_ms < self.degraded_ms:
            return HealthStatus.DEGRADED
        return HealthStatus.UNHEALTHY

    async def check_connection(self, connection_id: str) -> HealthCheckResult:
        """
        Probe a connection once, record the result and emit HealthChecked.

        A disconnected result schedules a reconnection.
        """
        started = time.monotonic()
        error = None
        try:
            # Shielded: a probe timeout stops waiting but leaves native I/O alone
            alive = await asyncio.wait_for(
                asyncio.shield(self.connection_manager.test(connection_id)),
                timeout=self.probe_timeout,
            )
        except asyncio.TimeoutError:
            alive = False
            error = f"Health probe timed out after {self.probe_timeout:g}s"
        except (TransportError, OSError) as e:
            alive = False
            error = str(e)
        elapsed_ms = (time.monotonic() - started) * 1000

        if alive:
            status = self.classify_latency(elapsed_ms)
        else:
            status = HealthStatus.DISCONNECTED
            connection = self.connection_manager.get_connection(connection_id)
            error = error or (connection.error if connection and connection.error else "Connection test failed")

        result = HealthCheckResult(
            connection_id=connection_id,
            status=status,
            response_time_ms=elapsed_ms if alive else None,
            error=error,
            metrics={'reconnection_attempts': self._attempts.get(connection_id, 0)},
        )
        self._record(result)
        self.event_bus.publish(HealthChecked(result=result))

        if status == HealthStatus.DISCONNECTED:
            self._schedule_reconnection(connection_id)
        elif status != HealthStatus.HEALTHY:
            logger.warning(f"[Health] {connection_id} is {status.value} ({elapsed_ms:.0f}ms)")
        return result

    def _record(self, result: HealthCheckResult):
        history = self._history.get(result.connection_id)
        if history is None:
            history = self._history[result.connection_id] = deque(maxlen=self.history_size)
        history.append(result)
        self._last_results[result.connection_id] = result

    # =========================================================================
    # Reconnection
    # =========================================================================

    def calculate_reconnection_delay(self, attempt: int) -> float:
        """
        Backoff delay in seconds before reconnection ``attempt`` (0-based).

        ``min(base * 2**attempt, cap)`` plus jitter below ``min(jitter, base)``.
        Once capped the delay is the cap plus the full jitter span, so the
        sequence never decreases.
        """
        span = min(self.jitter, self.base_delay)
        exponential = self.base_delay * (2 ** min(attempt, 32))
        if exponential >= self.max_delay:
            return self.max_delay + span
        return exponential + self._rng.uniform(0, span)

    def _schedule_reconnection(self, connection_id: str):
        if not self._running or connection_id in self._abandoned:
            return
        timer = self._reconnect_timers.get(connection_id)
        if timer is not None and not timer.done():
            return
        connection = self.connection_manager.get_connection(connection_id)
        if connection is None or not connection.auto_reconnect:
            return

        attempt = self._attempts.get(connection_id, 0)
        if attempt >= self.max_attempts:
            self._abandon(connection_id)
            return

        delay = self.calculate_reconnection_delay(attempt)
        logger.info(f"[Health] Reconnecting {connection_id} in {delay:.1f}s (attempt {attempt + 1})")
        self._reconnect_timers[connection_id] = asyncio.ensure_future(
            self._reconnect_after(connection_id, delay))

    async def _reconnect_after(self, connection_id: str, delay: float):
        await asyncio.sleep(delay)
        if self._reconnect_timers.get(connection_id) is asyncio.current_task():
            del self._reconnect_timers[connection_id]
        await self._attempt_reconnection(connection_id, delay)

    async def _attempt_reconnection(self, connection_id: str, delay: float = 0.0) -> ReconnectionResult:
        attempt = self._attempts.get(connection_id, 0) + 1
        self._attempts[connection_id] = attempt
        self._total_reconnection_attempts += 1

        reconnecting = HealthCheckResult(
            connection_id=connection_id,
            status=HealthStatus.RECONNECTING,
            metrics={'reconnection_attempts': attempt},
        )
        self._record(reconnecting)
        self.event_bus.publish(HealthChecked(result=reconnecting))

        connection = self.connection_manager.get_connection(connection_id)
        printer = self.connection_manager.get_printer(connection.printer_id) if connection else None
        if printer is None:
            result = ReconnectionResult(connection_id=connection_id, success=False, attempt_number=attempt,
                                        delay=delay, error="Printer is no longer known")
            self.event_bus.publish(ReconnectionAttempted(result=result))
            self._forget(connection_id)
            return result

        established = await self.connection_manager.establish(printer)
        result = ReconnectionResult(
            connection_id=connection_id,
            success=established.is_connected,
            attempt_number=attempt,
            delay=delay,
            error=established.error,
        )
        self.event_bus.publish(ReconnectionAttempted(result=result))

        if result.success:
            logger.info(f"[Health] Reconnected {connection_id} after {attempt} attempt(s)")
            self._attempts[connection_id] = 0
            await self.check_connection(connection_id)
        else:
            logger.warning(f"[Health] Reconnection {attempt} of {connection_id} failed: {result.error}")
            self._schedule_reconnection(connection_id)
        return result

    def _abandon(self, connection_id: str):
        attempts = self._attempts.get(connection_id, 0)
        self._abandoned.add(connection_id)
        self.stop_monitoring(connection_id)
        connection = self.connection_manager.get_connection(connection_id)
        if connection is not None:
            self.connection_manager.mark_unreachable(connection.printer_id)
        logger.error(f"[Health] Giving up on {connection_id} after {attempts} attempt(s)")
        self.event_bus.publish(ReconnectionAbandoned(connection_id=connection_id, attempts=attempts))

    async def force_reconnect(self, connection_id: str) -> ReconnectionResult:
        """Reset the attempt counter and reconnect now."""
        self._cancel_reconnection(connection_id)
        self._attempts[connection_id] = 0
        self._abandoned.discard(connection_id)
        return await self._attempt_reconnection(connection_id)

    # =========================================================================
    # Sweep
    # =========================================================================

    def _forget(self, connection_id: str):
        self.stop_monitoring(connection_id)
        self._cancel_reconnection(connection_id)
        self._history.pop(connection_id, None)
        self._last_results.pop(connection_id, None)
        self._attempts.pop(connection_id, None)
        self._abandoned.discard(connection_id)

    def sweep(self, now: Optional[datetime] = None) -> List[str]:
        """Drop state for connections not checked within ``stale_after``."""
        now = now or datetime.now()
        cutoff = now - timedelta(seconds=self.stale_after)
        stale = [
            cid for cid, result in self._last_results.items()
            if result.timestamp < cutoff or self.connection_manager.get_connection(cid) is None
        ]
        for connection_id in stale:
            self._forget(connection_id)
        if stale:
            logger.info(f"[Health] Swept {len(stale)} stale connection(s)")
        return stale

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    # =========================================================================
    # Reporting
    # =========================================================================

    def get_health_history(self, connection_id: str, limit: Optional[int] = None) -> List[HealthCheckResult]:
        history = list(self._history.get(connection_id, ()))
        return history[-limit:] if limit else history

    def get_last_result(self, connection_id: str) -> Optional[HealthCheckResult]:
        return self._last_results.get(connection_id)

    def get_reconnection_attempts(self, connection_id: str) -> int:
        return self._attempts.get(connection_id, 0)

    def get_statistics(self) -> Dict[str, Any]:
        by_status = Counter(result.status for result in self._last_results.values())
        times = [
            result.response_time_ms
            for history in self._history.values()
            for result in history
            if result.status != HealthStatus.DISCONNECTED and result.response_time_ms is not None
        ]
        return {
            'total_connections': len(self._last_results),
            'healthy_connections': by_status[HealthStatus.HEALTHY],
            'degraded_connections': by_status[HealthStatus.DEGRADED],
            'unhealthy_connections': by_status[HealthStatus.UNHEALTHY],
            'disconnected_connections': by_status[HealthStatus.DISCONNECTED],
            'reconnecting_connections': by_status[HealthStatus.RECONNECTING],
            'average_response_time_ms': round(sum(times) / len(times), 1) if times else 0.0,
            'total_reconnection_attempts': self._total_reconnection_attempts,
            'active_reconnections': sum(1 for t in self._reconnect_timers.values() if not t.done()),
            'monitored_connections': sum(1 for t in self._monitors.values() if not t.done()),
            'abandoned_connections': len(self._abandoned),
        }
