"""
Print Service
=============

Composition root: builds every component once and wires them together.

    service = PrintService(simulator=True)
    await service.start()
    result = await service.print_badge(BadgePayload(attendee_name='Ada Lovelace'))

``ServiceRunner`` hosts a service on its own event loop thread so the
Flask API (which is synchronous) can call into it.
"""

import asyncio
import logging
import threading
from dataclasses import replace
from typing import Optional, Dict, Any, List, Iterable, Tuple

from .config import TRANSPORTS, SIMULATOR, API_CALL_TIMEOUT, MAX_RETRIES
from .connection_manager import ConnectionManager
from .errors import ErrorHandler, ErrorCode
from .events import EventBus
from .exceptions import PrinterNotFoundError
from .health_monitor import HealthMonitor
from .job_processor import JobProcessor
from .mfi import MfiGate, NullMfiGate
from .models import (
    BadgePayload, PrintSettings, PrintJob, PrintResult, JobPriority, JobState,
    Connection, TransportType, default_label_sizes,
)
from .queue_manager import QueueManager, QueueStrategy
from .rasterizer import BadgeRasterizer
from .settings import SettingsStore, AppSettings
from .transports import TransportAdapter, build_transports

logger = logging.getLogger(__name__)


class PrintService:
    """Badge printing for a check-in desk."""

    def __init__(self, transports: Optional[Dict[TransportType, TransportAdapter]] = None,
                 settings_store: Optional[SettingsStore] = None,
                 event_bus: Optional[EventBus] = None,
                 mfi_gate: Optional[MfiGate] = None,
                 rasterizer: Optional[BadgeRasterizer] = None,
                 strategy: Optional[QueueStrategy] = None,
                 simulator: bool = SIMULATOR,
                 transport_names: Iterable[str] = TRANSPORTS,
                 connection_options: Optional[Dict[str, Any]] = None,
                 health_options: Optional[Dict[str, Any]] = None,
                 processor_options: Optional[Dict[str, Any]] = None,
                 queue_options: Optional[Dict[str, Any]] = None):
        self.events = event_bus or EventBus()
        self.errors = ErrorHandler(self.events)
        self.settings_store = settings_store or SettingsStore()
        if transports is None:
            transports = build_transports(transport_names, simulator=simulator)
        self.mfi_gate = mfi_gate or NullMfiGate()
        self.connections = ConnectionManager(transports, self.events, self.errors, self.mfi_gate,
                                             **(connection_options or {}))
        self.health = HealthMonitor(self.connections, self.events, **(health_options or {}))
        self.rasterizer = rasterizer or BadgeRasterizer()

        processor_options = dict(processor_options or {})
        processor_options.setdefault('job_timeout', self.settings_store.settings.print_timeout)
        self.processor = JobProcessor(self.connections, self.rasterizer, self.events, self.errors,
                                      **processor_options)
        self.queue = QueueManager(self.processor, self.events, strategy=strategy, **(queue_options or {}))
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    async def start(self, scan: bool = True):
        """Initialize transports, run a first scan and start background work."""
        if self._started:
            return
        await self.connections.initialize()
        await self.connections.request_permissions()
        if scan:
            await self.connections.scan()
        self.connections.start()
        self.health.start()
        self.processor.start()
        self.queue.start()
        self._started = True
        logger.info(f"[Service] Started with {len(self.connections.list_printers())} printer(s)")

    async def stop(self):
        if not self._started:
            return
        self._started = False
        await self.queue.stop()
        await self.processor.stop()
        await self.health.stop()
        await self.connections.stop()
        for adapter in self.connections.adapters:
            await adapter.close()
        logger.info("[Service] Stopped")

    # =========================================================================
    # Jobs
    # =========================================================================

    def _resolve(self, settings: Optional[PrintSettings],
                 printer_id: Optional[str]) -> Tuple[PrintSettings, Optional[str]]:
        """Fill in stored defaults for settings and target printer."""
        app_settings = self.settings_store.settings
        if settings is None:
            if app_settings.direct_printing_enabled and app_settings.direct_settings is not None:
                settings = app_settings.direct_settings
            else:
                settings = PrintSettings()

        if settings.label_size is None and app_settings.default_label_size_id:
            for size in default_label_sizes():
                if size.id == app_settings.default_label_size_id:
                    settings = replace(settings, label_size=size)
                    break

        printer_id = printer_id or app_settings.default_printer_id
        if printer_id is None and not settings.is_direct:
            connected = self.connections.connected_printer_ids()
            if connected:
                printer_id = connected[0]
        return settings, printer_id

    async def submit_job(self, payload: BadgePayload, settings: Optional[PrintSettings] = None,
                         priority: JobPriority = JobPriority.NORMAL,
                         printer_id: Optional[str] = None) -> str:
        """Queue a badge. Returns the job id."""
        settings, printer_id = self._resolve(settings, printer_id)
        job = PrintJob(payload=payload, printer_id=printer_id, settings=settings, priority=priority)
        return await self.queue.submit(job)

    def get_job(self, job_id: str) -> Optional[PrintJob]:
        return self.queue.get_job(job_id)

    def get_job_state(self, job_id: str) -> Optional[JobState]:
        return self.queue.get_state(job_id)

    def get_result(self, job_id: str) -> Optional[PrintResult]:
        return self.queue.get_result(job_id)

    def list_jobs(self, state: Optional[JobState] = None) -> List[PrintJob]:
        return self.queue.list_jobs(state)

    def describe_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        job = self.get_job(job_id)
        if job is None:
            return None
        state = self.get_job_state(job_id)
        result = self.get_result(job_id)
        return {
            **job.to_dict(),
            'state': state.value if state else None,
            'result': result.to_dict() if result else None,
        }

    def cancel_job(self, job_id: str) -> bool:
        return self.queue.cancel(job_id)

    async def print_badge(self, payload: BadgePayload, settings: Optional[PrintSettings] = None,
                          printer_id: Optional[str] = None,
                          priority: JobPriority = JobPriority.URGENT,
                          timeout: Optional[float] = None) -> PrintResult:
        """
        Print one badge and wait for the outcome, including automatic retries.

        Defaults to urgent priority so an attendee at the desk never waits
        for a batch to fill. Without a ``timeout`` the wait is bounded by
        the print timeout of the job and each of its retries.
        """
        _, result = await self._print(payload, settings, printer_id, priority, timeout)
        return result

    async def _print(self, payload: BadgePayload, settings: Optional[PrintSettings],
                     printer_id: Optional[str], priority: JobPriority,
                     timeout: Optional[float]) -> Tuple[str, PrintResult]:
        if timeout is None:
            timeout = self.processor.job_timeout * (MAX_RETRIES + 1)
        job_id = await self.submit_job(payload, settings, priority, printer_id)
        try:
            result = await self.queue.wait_for_outcome(job_id, timeout)
        except asyncio.TimeoutError:
            self.queue.cancel_attempts(job_id)
            logger.warning(f"[Service] Gave up waiting for {job_id} after {timeout:g}s")
            return job_id, PrintResult.failed(f"Badge not printed within {timeout:g}s", ErrorCode.TIMEOUT)
        if result is None:
            result = PrintResult.failed("Result unavailable", ErrorCode.UNKNOWN_ERROR)
        return job_id, result

    async def print_badges(self, payloads: Iterable[BadgePayload], settings: Optional[PrintSettings] = None,
                           printer_id: Optional[str] = None) -> PrintResult:
        """
        Print badges one after another.

        Returns a single result; if only some printed the message reads
        ``Printed X/Y badges. Last error: ...``. The run stops as soon as
        the queue is paused (out of labels, cover open, operator) and the
        remaining badges count as not printed. A retry held for the
        failed badge is cancelled so nothing prints after the run returns.
        """
        payloads = list(payloads)
        if not payloads:
            return PrintResult.failed("No badges to print", ErrorCode.INVALID_SETTINGS)

        results = []
        for payload in payloads:
            if self.queue.is_paused:
                break
            job_id, result = await self._print(payload, settings, printer_id, JobPriority.URGENT, None)
            results.append(result)
            if self.queue.is_paused:
                self.queue.cancel_attempts(job_id)
                break

        if len(results) < len(payloads) and (not results or results[-1].success):
            reason = self.queue.pause_reason or "Print queue paused"
            results.append(PrintResult.failed(f"Printing stopped: {reason}",
                                              self.queue.pause_error_code or ErrorCode.PRINTER_BUSY))
        summary = PrintResult.summarize(results, total=len(payloads))
        logger.info(f"[Service] Printed {summary.diagnostics.get('success_count', 0)}/{len(payloads)} badges")
        return summary

    # =========================================================================
    # Printers
    # =========================================================================

    async def scan(self) -> List[Connection]:
        return await self.connections.scan()

    async def connect(self, printer_id: str) -> Connection:
        printer = self.connections.get_printer(printer_id)
        if printer is None:
            raise PrinterNotFoundError(f"Printer {printer_id} not found")
        return await self.connections.establish(printer)

    async def connect_direct(self, settings: PrintSettings) -> Connection:
        return await self.connections.connect_direct(settings)

    def disconnect(self, printer_id: str) -> bool:
        connection = self.connections.connection_for_printer(printer_id)
        return connection is not None and self.connections.close(connection.id)

    async def test_connection(self, printer_id: str) -> bool:
        connection = self.connections.connection_for_printer(printer_id)
        if connection is None:
            raise PrinterNotFoundError(f"Printer {printer_id} not found")
        return await self.connections.test(connection.id)

    def forget_printer(self, printer_id: str) -> bool:
        return self.connections.forget(printer_id)

    # =========================================================================
    # Settings
    # =========================================================================

    def update_settings(self, **changes) -> AppSettings:
        """Persist operator settings; a new print timeout applies to the next job."""
        settings = self.settings_store.update(**changes)
        self.processor.job_timeout = settings.print_timeout
        return settings

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_queue_statistics(self) -> Dict[str, Any]:
        return self.queue.get_statistics().to_dict()

    def get_health_statistics(self) -> Dict[str, Any]:
        return self.health.get_statistics()

    def get_error_statistics(self) -> Dict[str, Any]:
        return self.errors.get_statistics()

    def get_statistics(self) -> Dict[str, Any]:
        return {
            'connections': self.connections.get_statistics(),
            'health': self.get_health_statistics(),
            'queue': self.get_queue_statistics(),
            'errors': self.get_error_statistics(),
            'mfi': self.mfi_gate.get_statistics(),
        }


class ServiceRunner:
    """Runs a PrintService on a dedicated event loop thread."""

    def __init__(self, service: PrintService, call_timeout: float = API_CALL_TIMEOUT):
        self.service = service
        self.call_timeout = call_timeout
        self.loop = asyncio.new_event_loop()
        self._thread: Optional[threading.Thread] = None

    def start(self, scan: bool = True):
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name='print-service-loop', daemon=True)
        self._thread.start()
        self.call(self.service.start(scan=scan))

    def _run(self):
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def call(self, coro, timeout: Optional[float] = None):
        """Run a coroutine on the service loop and block for its result."""
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return future.result(timeout or self.call_timeout)

    def invoke(self, fn, *args, **kwargs):
        """Run a plain function on the service loop thread."""
        async def _invoke():
            return fn(*args, **kwargs)
        return self.call(_invoke())

    def stop(self):
        if self._thread is None:
            return
        self.call(self.service.stop())
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=5)
        self._thread = None
        self.loop.close()
