"""
Print Job Processor
===================

Runs print jobs against connected printers with bounded concurrency.

Jobs wait in a stable priority FIFO (higher priority first, submission
order within a priority) and at most ``max_concurrent`` run at once.
Each job is rasterized in a worker thread and transmitted over the
printer's current connection. A job that exceeds its timeout is failed
right away; the first terminal outcome of a job is the one recorded.
"""

import asyncio
import heapq
import itertools
import logging
import time
from collections import OrderedDict, Counter
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Callable, Tuple

from .config import MAX_CONCURRENT_JOBS, JOB_TIMEOUT, JOB_CLEANUP_INTERVAL, JOB_RETENTION, MAX_COMPLETED_JOBS
from .connection_manager import ConnectionManager
from .errors import ErrorHandler, ErrorCode
from .events import EventBus, JobStateChanged, JobCompleted
from .exceptions import RasterizationError
from .models import PrintJob, PrintResult, JobState, PrinterCapabilities
from .rasterizer import BadgeRasterizer, RasterArtifact

logger = logging.getLogger(__name__)

ResultListener = Callable[[PrintJob, PrintResult], Any]


class JobProcessor:
    """Bounded-concurrency executor for print jobs."""

    def __init__(self, connection_manager: ConnectionManager, rasterizer: BadgeRasterizer,
                 event_bus: EventBus, error_handler: ErrorHandler,
                 max_concurrent: int = MAX_CONCURRENT_JOBS,
                 job_timeout: float = JOB_TIMEOUT,
                 cleanup_interval: float = JOB_CLEANUP_INTERVAL,
                 retention: float = JOB_RETENTION,
                 max_completed: int = MAX_COMPLETED_JOBS,
                 priority_ordering: bool = True,
                 default_capabilities: Optional[PrinterCapabilities] = None):
        self.connection_manager = connection_manager
        self.rasterizer = rasterizer
        self.event_bus = event_bus
        self.error_handler = error_handler
        self.max_concurrent = max_concurrent
        self.job_timeout = job_timeout
        self.cleanup_interval = cleanup_interval
        self.retention = retention
        self.max_completed = max_completed
        self.default_capabilities = default_capabilities or PrinterCapabilities()
        self._priority_ordering = priority_ordering

        self._jobs: Dict[str, PrintJob] = {}
        self._states: Dict[str, JobState] = {}
        self._results: Dict[str, PrintResult] = {}
        self._timings: Dict[str, Dict[str, datetime]] = {}
        self._pending: List[Tuple[int, int, str]] = []
        self._sequence = itertools.count()
        self._active: Dict[str, asyncio.Task] = {}
        self._executions: Dict[str, asyncio.Task] = {}
        self._completed: "OrderedDict[str, datetime]" = OrderedDict()
        self._waiters: Dict[str, List[asyncio.Future]] = {}
        self._listeners: List[ResultListener] = []
        self._paused = False
        self._cleanup_task: Optional[asyncio.Task] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self):
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.ensure_future(self._cleanup_loop())
        self._pump()

    async def stop(self):
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            await asyncio.gather(self._cleanup_task, return_exceptions=True)
            self._cleanup_task = None

        for job_id in list(self._active):
            self._finish(self._jobs[job_id], PrintResult.failed("Print service stopped", ErrorCode.CANCELLED))
        tasks = list(self._executions.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def priority_ordering(self) -> bool:
        return self._priority_ordering

    @priority_ordering.setter
    def priority_ordering(self, enabled: bool):
        if enabled == self._priority_ordering:
            return
        self._priority_ordering = enabled
        entries = [
            (self._rank(self._jobs[job_id]), seq, job_id)
            for _, seq, job_id in self._pending
            if self._states.get(job_id) == JobState.PENDING
        ]
        heapq.heapify(entries)
        self._pending = entries

    def _rank(self, job: PrintJob) -> int:
        return -job.priority.rank if self._priority_ordering else 0

    @property
    def is_paused(self) -> bool:
        return self._paused

    def pause(self):
        if not self._paused:
            self._paused = True
            logger.info("[Processor] Paused")

    def resume(self):
        if self._paused:
            self._paused = False
            logger.info("[Processor] Resumed")
        self._pump()

    def add_result_listener(self, listener: ResultListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    # =========================================================================
    # Submission
    # =========================================================================

    def submit(self, job: PrintJob) -> str:
        """Queue a job. Resubmitting a job that is still live is a no-op."""
        state = self._states.get(job.id)
        if state is not None and not state.is_terminal:
            return job.id

        self._jobs[job.id] = job
        self._results.pop(job.id, None)
        self._completed.pop(job.id, None)
        self._timings[job.id] = {'submitted': datetime.now()}
        self._set_state(job, JobState.PENDING)
        heapq.heappush(self._pending, (self._rank(job), next(self._sequence), job.id))
        logger.info(f"[Processor] Queued {job.id} ({job.priority.value}) for {job.payload.attendee_name}")
        self._pump()
        return job.id

    def _set_state(self, job: PrintJob, state: JobState):
        self._states[job.id] = state
        self.event_bus.publish(JobStateChanged(job_id=job.id, state=state, printer_id=job.printer_id))

    def _pump(self):
        while not self._paused and self._pending and len(self._active) < self.max_concurrent:
            _, _, job_id = heapq.heappop(self._pending)
            if self._states.get(job_id) != JobState.PENDING:
                continue  # cancelled while waiting
            job = self._jobs[job_id]
            self._set_state(job, JobState.ACTIVE)
            self._timings[job_id]['started'] = datetime.now()
            self._active[job_id] = asyncio.ensure_future(self._run(job))

    async def wait_for_result(self, job_id: str, timeout: Optional[float] = None) -> Optional[PrintResult]:
        """Wait until a job reaches a terminal state and return its result."""
        if job_id in self._results:
            return self._results[job_id]
        if job_id not in self._jobs:
            return None
        future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(job_id, []).append(future)
        return await asyncio.wait_for(future, timeout=timeout)

    # =========================================================================
    # Execution
    # =========================================================================

    async def _run(self, job: PrintJob):
        execution = asyncio.ensure_future(self._execute(job))
        self._executions[job.id] = execution
        execution.add_done_callback(lambda task: self._executions.pop(job.id, None))

        done, _ = await asyncio.wait({execution}, timeout=self.job_timeout)
        if execution not in done:
            # Left running; whatever it returns later is ignored
            logger.warning(f"[Processor] {job.id} timed out after {self.job_timeout:g}s")
            result = self._failure(job, f"Print job timed out after {self.job_timeout:g}s", ErrorCode.TIMEOUT)
        elif execution.cancelled():
            result = PrintResult.failed("Print job cancelled", ErrorCode.CANCELLED)
        else:
            result = execution.result()
        self._finish(job, result)

    async def _execute(self, job: PrintJob) -> PrintResult:
        started = time.monotonic()
        try:
            if job.settings.is_direct:
                return await self._execute_direct(job, started)
            return await self._execute_connected(job, started)
        except RasterizationError as e:
            return self._failure(job, str(e), ErrorCode.INVALID_SETTINGS, started)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"[Processor] {job.id} failed unexpectedly")
            return self._failure(job, f"Processing error: {e}", ErrorCode.PROCESSING_ERROR, started)

    async def _execute_direct(self, job: PrintJob, started: float) -> PrintResult:
        artifact = await asyncio.to_thread(
            self.rasterizer.optimize, job.payload, self.default_capabilities, job.settings)
        outcome = await self.connection_manager.transmit_direct(artifact.data, job.settings)
        return self._outcome(job, outcome, artifact, started)

    async def _execute_connected(self, job: PrintJob, started: float) -> PrintResult:
        printer = self.connection_manager.get_printer(job.printer_id) if job.printer_id else None
        if printer is None:
            message = f"Printer {job.printer_id} not found" if job.printer_id else "No printer selected"
            return self._failure(job, message, ErrorCode.PRINTER_NOT_FOUND, started)

        connection = self.connection_manager.connection_for_printer(printer.id)
        if connection is None or not connection.is_connected:
            connection = await self.connection_manager.establish(printer)
            if not connection.is_connected:
                return self._failure(job, connection.error or f"Could not connect to {printer.name}",
                                     ErrorCode.CONNECTION_FAILED, started)

        artifact = await asyncio.to_thread(
            self.rasterizer.optimize, job.payload, printer.capabilities, job.settings)
        settings = job.settings.to_settings_map(printer.id)
        settings.update(format=artifact.format, width=artifact.width, height=artifact.height)
        outcome = await self.connection_manager.transmit(connection.id, artifact.data, settings)
        return self._outcome(job, outcome, artifact, started)

    def _outcome(self, job: PrintJob, outcome: Dict[str, Any], artifact: RasterArtifact,
                 started: float) -> PrintResult:
        elapsed_ms = (time.monotonic() - started) * 1000
        if outcome.get('success'):
            return PrintResult.succeeded(
                print_time_ms=elapsed_ms,
                label_count=outcome.get('labels', job.settings.copies),
                label_size=artifact.metadata.get('label_size'),
                format=artifact.format,
            )
        return self._failure(job, outcome.get('error') or "Print failed",
                             outcome.get('errorCode') or ErrorCode.PRINT_FAILED, started)

    def _failure(self, job: PrintJob, message: str, code: str, started: Optional[float] = None) -> PrintResult:
        """Classify a failure and attach the classification to the result."""
        error = self.error_handler.parse(message, code, {'job_id': job.id, 'printer_id': job.printer_id or ''})
        elapsed_ms = (time.monotonic() - started) * 1000 if started is not None else 0.0
        return PrintResult.failed(
            message,
            error.code,
            print_time_ms=elapsed_ms,
            error_type=error.type.value,
            user_message=error.message,
            recoverable=error.is_recoverable,
            recovery_action=self.error_handler.get_recovery_action(error).value,
            troubleshooting_steps=list(error.troubleshooting_steps),
        )

    def _finish(self, job: PrintJob, result: PrintResult) -> bool:
        """Record the first terminal outcome of a job."""
        state = self._states.get(job.id)
        if state is not None and state.is_terminal:
            return False

        if result.success:
            state = JobState.COMPLETED
        elif result.error_code == ErrorCode.CANCELLED:
            state = JobState.CANCELLED
        else:
            state = JobState.FAILED

        now = datetime.now()
        self._results[job.id] = result
        self._timings.setdefault(job.id, {})['finished'] = now
        self._completed[job.id] = now
        self._active.pop(job.id, None)
        self._set_state(job, state)
        self.event_bus.publish(JobCompleted(job_id=job.id, result=result))

        if result.success:
            logger.info(f"[Processor] {job.id} completed in {result.print_time_ms:.0f}ms")
        else:
            logger.warning(f"[Processor] {job.id} {state.value}: {result.error_message} ({result.error_code})")

        for future in self._waiters.pop(job.id, []):
            if not future.done():
                future.set_result(result)
        for listener in list(self._listeners):
            try:
                listener(job, result)
            except Exception:
                logger.exception(f"[Processor] Result listener failed for {job.id}")

        self._pump()
        return True

    # =========================================================================
    # Control
    # =========================================================================

    def cancel(self, job_id: str) -> bool:
        """
        Cancel a waiting or running job.

        A running job is marked cancelled at once; its transmission runs to
        completion and the late outcome is discarded.
        """
        state = self._states.get(job_id)
        if state not in (JobState.PENDING, JobState.ACTIVE):
            return False

        job = self._jobs[job_id]
        self._finish(job, PrintResult.failed("Print job cancelled", ErrorCode.CANCELLED))
        logger.info(f"[Processor] Cancelled {job_id}")
        return True

    def retry(self, job_id: str) -> Optional[PrintJob]:
        """Resubmit a failed job under a new id if it has retries left."""
        job = self._jobs.get(job_id)
        if job is None or self._states.get(job_id) != JobState.FAILED or not job.can_retry:
            return None
        retry = job.for_retry()
        self.submit(retry)
        logger.info(f"[Processor] Retrying {job_id} as {retry.id} ({retry.retry_count}/{retry.max_retries})")
        return retry

    def cleanup(self, now: Optional[datetime] = None) -> int:
        """Drop completed jobs past retention, keeping at most ``max_completed``."""
        now = now or datetime.now()
        cutoff = now - timedelta(seconds=self.retention)
        expired = [job_id for job_id, finished in self._completed.items() if finished < cutoff]
        overflow = len(self._completed) - len(expired) - self.max_completed
        if overflow > 0:
            survivors = [job_id for job_id in self._completed if job_id not in expired]
            expired.extend(survivors[:overflow])

        for job_id in expired:
            self._completed.pop(job_id, None)
            self._jobs.pop(job_id, None)
            self._states.pop(job_id, None)
            self._results.pop(job_id, None)
            self._timings.pop(job_id, None)
        if expired:
            logger.info(f"[Processor] Cleaned up {len(expired)} completed job(s)")
        return len(expired)

    async def _cleanup_loop(self):
        while True:
            await asyncio.sleep(self.cleanup_interval)
            self.cleanup()

    # =========================================================================
    # Lookups
    # =========================================================================

    def get_job(self, job_id: str) -> Optional[PrintJob]:
        return self._jobs.get(job_id)

    def get_state(self, job_id: str) -> Optional[JobState]:
        return self._states.get(job_id)

    def get_result(self, job_id: str) -> Optional[PrintResult]:
        return self._results.get(job_id)

    def list_jobs(self, state: Optional[JobState] = None) -> List[PrintJob]:
        return [job for job_id, job in self._jobs.items() if state is None or self._states.get(job_id) == state]

    @property
    def pending_count(self) -> int:
        return sum(1 for state in self._states.values() if state == JobState.PENDING)

    @property
    def active_count(self) -> int:
        return len(self._active)

    def get_timings(self, job_id: str) -> Dict[str, datetime]:
        return dict(self._timings.get(job_id, {}))

    def get_statistics(self) -> Dict[str, Any]:
        by_state = Counter(state.value for state in self._states.values())
        return {
            'pending': by_state.get(JobState.PENDING.value, 0),
            'active': len(self._active),
            'completed': by_state.get(JobState.COMPLETED.value, 0),
            'failed': by_state.get(JobState.FAILED.value, 0),
            'cancelled': by_state.get(JobState.CANCELLED.value, 0),
            'max_concurrent': self.max_concurrent,
            'paused': self._paused,
            'priority_ordering': self._priority_ordering,
        }
