"""
Print Queue Manager
===================

Admission, batching and remediation in front of the job processor.

Strategies:
    fifo      - submission order, batching only under load
    priority  - priority order, batching only under load
    batch     - every non-urgent job joins a batch
    adaptive  - like batch, with batch size and wait re-tuned to the load

Urgent jobs always skip batching. A pending batch is sent to the
processor when it is full or has waited ``max_wait_time`` seconds.
Failed jobs are remediated according to the recovery action of their
classified error: retried, held until resume, or surfaced.
"""

import asyncio
import logging
from collections import Counter, OrderedDict, deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Dict, Any, List, Iterable

from .config import (
    QUEUE_STRATEGY, MAX_BATCH_SIZE, MAX_BATCH_WAIT, BATCH_TICK_INTERVAL, STATS_INTERVAL,
    OPTIMIZE_INTERVAL, BATCHING_THRESHOLD,
    ADAPTIVE_HIGH_LOAD, ADAPTIVE_LOW_LOAD, ADAPTIVE_MAX_BATCH_SIZE, ADAPTIVE_MIN_BATCH_SIZE,
    ADAPTIVE_MAX_WAIT, ADAPTIVE_MIN_WAIT,
)
from .errors import ErrorCode, RecoveryAction
from .events import (
    EventBus, JobStateChanged, JobCompleted, BatchStateChanged, BatchCompleted,
    QueueStatisticsUpdated, QueuePaused, QueueResumed,
)
from .exceptions import InvalidConfigurationError
from .job_processor import JobProcessor
from .models import (
    PrintJob, PrintJobBatch, PrintResult, PrintSettings, BadgePayload,
    JobPriority, JobState,
)

logger = logging.getLogger(__name__)


class QueueStrategy(str, Enum):
    FIFO = "fifo"
    PRIORITY = "priority"
    BATCH = "batch"
    ADAPTIVE = "adaptive"


@dataclass
class BatchConfig:
    max_batch_size: int = MAX_BATCH_SIZE
    max_wait_time: float = MAX_BATCH_WAIT  # seconds
    enable_batching: bool = True
    batching_threshold: int = BATCHING_THRESHOLD

    def __post_init__(self):
        if self.max_batch_size < 1:
            raise InvalidConfigurationError("max_batch_size must be at least 1",
                                            {'max_batch_size': self.max_batch_size})
        if self.max_wait_time < 0:
            raise InvalidConfigurationError("max_wait_time cannot be negative",
                                            {'max_wait_time': self.max_wait_time})

    def to_dict(self) -> Dict[str, Any]:
        return {
            'max_batch_size': self.max_batch_size,
            'max_wait_time': self.max_wait_time,
            'enable_batching': self.enable_batching,
            'batching_threshold': self.batching_threshold,
        }


@dataclass(frozen=True)
class QueueStatistics:
    pending_jobs: int = 0
    batched_jobs: int = 0
    active_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    cancelled_jobs: int = 0
    pending_batches: int = 0
    deferred_jobs: int = 0
    jobs_by_priority: Dict[str, int] = field(default_factory=dict)
    average_wait_time: float = 0.0  # seconds
    average_processing_time: float = 0.0  # seconds
    throughput_per_minute: float = 0.0
    strategy: str = QueueStrategy.ADAPTIVE.value
    paused: bool = False
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def total_jobs(self) -> int:
        return (self.pending_jobs + self.batched_jobs + self.active_jobs
                + self.completed_jobs + self.failed_jobs + self.cancelled_jobs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'pending_jobs': self.pending_jobs,
            'batched_jobs': self.batched_jobs,
            'active_jobs': self.active_jobs,
            'completed_jobs': self.completed_jobs,
            'failed_jobs': self.failed_jobs,
            'cancelled_jobs': self.cancelled_jobs,
            'pending_batches': self.pending_batches,
            'deferred_jobs': self.deferred_jobs,
            'total_jobs': self.total_jobs,
            'jobs_by_priority': dict(self.jobs_by_priority),
            'average_wait_time': round(self.average_wait_time, 2),
            'average_processing_time': round(self.average_processing_time, 2),
            'throughput_per_minute': round(self.throughput_per_minute, 2),
            'strategy': self.strategy,
            'paused': self.paused,
            'timestamp': self.timestamp.isoformat(),
        }


class QueueManager:
    """Batching front end of the job processor."""

    def __init__(self, processor: JobProcessor, event_bus: EventBus,
                 strategy: Optional[QueueStrategy] = None,
                 config: Optional[BatchConfig] = None,
                 tick_interval: float = BATCH_TICK_INTERVAL,
                 stats_interval: float = STATS_INTERVAL,
                 optimize_interval: float = OPTIMIZE_INTERVAL,
                 history_size: int = 500):
        self.processor = processor
        self.event_bus = event_bus
        self.config = config or BatchConfig()
        self.tick_interval = tick_interval
        self.stats_interval = stats_interval
        self.optimize_interval = optimize_interval
        self._strategy = QueueStrategy(strategy or QUEUE_STRATEGY)
        self.processor.priority_ordering = self._strategy != QueueStrategy.FIFO

        self._jobs: Dict[str, PrintJob] = {}
        self._admitted_at: Dict[str, datetime] = {}
        self._batches: "OrderedDict[str, PrintJobBatch]" = OrderedDict()
        self._batch_of: Dict[str, str] = {}
        self._dispatched: Dict[str, PrintJobBatch] = {}
        self._member_of: Dict[str, str] = {}
        self._batch_results: "OrderedDict[str, PrintResult]" = OrderedDict()
        self._cancelled: Dict[str, PrintResult] = {}
        self._deferred: List[PrintJob] = []
        self._retries: Dict[str, str] = {}  # failed job id -> id of its retry
        self._paused = False
        self._pause_reason: Optional[str] = None
        self._pause_code: Optional[str] = None

        self._waits = deque(maxlen=history_size)
        self._processing = deque(maxlen=history_size)
        self._completions = deque(maxlen=history_size)

        self._lock = asyncio.Lock()
        self._loops: List[asyncio.Task] = []
        self.processor.add_result_listener(self._on_result)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self):
        if self._loops:
            return
        self._loops = [
            asyncio.ensure_future(self._tick_loop()),
            asyncio.ensure_future(self._stats_loop()),
            asyncio.ensure_future(self._optimize_loop()),
        ]
        logger.info(f"[Queue] Started with {self._strategy.value} strategy")

    async def stop(self):
        for task in self._loops:
            task.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops = []

    @property
    def strategy(self) -> QueueStrategy:
        return self._strategy

    def set_strategy(self, strategy: QueueStrategy):
        self._strategy = QueueStrategy(strategy)
        self.processor.priority_ordering = self._strategy != QueueStrategy.FIFO
        logger.info(f"[Queue] Strategy set to {self._strategy.value}")

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def pause_reason(self) -> Optional[str]:
        return self._pause_reason

    @property
    def pause_error_code(self) -> Optional[str]:
        return self._pause_code

    # =========================================================================
    # Admission
    # =========================================================================

    async def submit(self, job: PrintJob) -> str:
        """Admit a job: direct to the processor or into a batch."""
        async with self._lock:
            return self._admit(job)

    async def add_job(self, payload: BadgePayload, settings: Optional[PrintSettings] = None,
                      priority: JobPriority = JobPriority.NORMAL,
                      printer_id: Optional[str] = None) -> PrintJob:
        job = PrintJob(payload=payload, printer_id=printer_id,
                       settings=settings or PrintSettings(), priority=priority)
        await self.submit(job)
        return job

    async def add_jobs(self, payloads: Iterable[BadgePayload], settings: Optional[PrintSettings] = None,
                       priority: JobPriority = JobPriority.NORMAL,
                       printer_id: Optional[str] = None) -> List[PrintJob]:
        """Admit several jobs in order under one admission lock."""
        jobs = [
            PrintJob(payload=payload, printer_id=printer_id,
                     settings=settings or PrintSettings(), priority=priority)
            for payload in payloads
        ]
        async with self._lock:
            for job in jobs:
                self._admit(job)
        return jobs

    def _admit(self, job: PrintJob) -> str:
        self._jobs[job.id] = job
        self._admitted_at[job.id] = datetime.now()

        if not self._should_batch(job):
            self.processor.submit(job)
            return job.id

        batch = self._find_batch(job)
        if batch is None:
            batch = PrintJobBatch(priority=job.priority, settings=job.settings,
                                  max_size=self.config.max_batch_size)
            self._batches[batch.id] = batch
            logger.info(f"[Queue] Opened {batch.id} ({job.priority.value})")
        batch.add(job)
        self._batch_of[job.id] = batch.id
        self.event_bus.publish(JobStateChanged(job_id=job.id, state=JobState.BATCHED, printer_id=job.printer_id))
        self.event_bus.publish(BatchStateChanged(batch_id=batch.id, state=batch.state, job_count=batch.job_count))

        if batch.is_full:
            self._promote(batch)
        return job.id

    def _should_batch(self, job: PrintJob) -> bool:
        if job.priority == JobPriority.URGENT:
            return False
        if self.config.enable_batching and self._strategy in (QueueStrategy.BATCH, QueueStrategy.ADAPTIVE):
            return True
        return self._find_batch(job) is not None or self.pending_volume > self.config.batching_threshold

    def _find_batch(self, job: PrintJob) -> Optional[PrintJobBatch]:
        for batch in self._batches.values():
            if batch.accepts(job):
                return batch
        return None

    @property
    def pending_volume(self) -> int:
        """Jobs admitted but not yet running."""
        return self.processor.pending_count + len(self._batch_of) + len(self._deferred)

    # =========================================================================
    # Batches
    # =========================================================================

    def _promote(self, batch: PrintJobBatch):
        batch.promote()
        self._batches.pop(batch.id, None)
        self._dispatched[batch.id] = batch
        logger.info(f"[Queue] Sending {batch.id} with {batch.job_count} job(s) after {batch.age():.1f}s")
        self.event_bus.publish(BatchStateChanged(batch_id=batch.id, state=batch.state, job_count=batch.job_count))
        for job in batch.jobs:
            self._batch_of.pop(job.id, None)
            self._member_of[job.id] = batch.id
            self.processor.submit(job)

    def promote_ready_batches(self, now: Optional[datetime] = None) -> List[PrintJobBatch]:
        """Send every batch that is full or has waited long enough."""
        ready = [batch for batch in self._batches.values() if batch.is_due(self.config.max_wait_time, now)]
        for batch in ready:
            self._promote(batch)
        return ready

    def _check_batch(self, batch_id: str):
        batch = self._dispatched.get(batch_id)
        if batch is None:
            return
        states = [self.processor.get_state(job_id) for job_id in batch.job_ids]
        if any(state is not None and not state.is_terminal for state in states):
            return

        results = [
            self.processor.get_result(job_id) or PrintResult.failed("Result unavailable", ErrorCode.UNKNOWN_ERROR)
            for job_id in batch.job_ids
        ]
        summary = PrintResult.summarize(results)
        batch.complete()
        del self._dispatched[batch_id]
        self._batch_results[batch_id] = summary
        while len(self._batch_results) > 100:
            self._batch_results.popitem(last=False)

        logger.info(f"[Queue] {batch_id} finished: "
                    f"{summary.diagnostics.get('success_count', 0)}/{batch.job_count} succeeded")
        self.event_bus.publish(BatchStateChanged(batch_id=batch_id, state=batch.state, job_count=batch.job_count))
        self.event_bus.publish(BatchCompleted(batch_id=batch_id, result=summary))

    def get_batches(self) -> List[PrintJobBatch]:
        return list(self._batches.values()) + list(self._dispatched.values())

    def get_batch_result(self, batch_id: str) -> Optional[PrintResult]:
        return self._batch_results.get(batch_id)

    def update_batch_config(self, **changes) -> BatchConfig:
        """
        Change batching parameters. Pending batches pick up the new size;
        a batch larger than a reduced size is split in submission order.
        """
        unknown = set(changes) - set(BatchConfig.__dataclass_fields__)
        if unknown:
            raise InvalidConfigurationError(f"Unknown batch settings: {', '.join(sorted(unknown))}")
        self.config = replace(self.config, **changes)
        size = self.config.max_batch_size
        for batch in list(self._batches.values()):
            if batch.job_count <= size:
                batch.max_size = size
                continue
            for part in batch.split(size):
                self._batches[part.id] = part
                for job in part.jobs:
                    self._batch_of[job.id] = part.id
                logger.info(f"[Queue] Split {part.job_count} job(s) from {batch.id} into {part.id}")
                self.event_bus.publish(BatchStateChanged(batch_id=part.id, state=part.state,
                                                         job_count=part.job_count))
        for batch in [b for b in self._batches.values() if b.is_full]:
            self._promote(batch)
        logger.info(f"[Queue] Batch config: {self.config.to_dict()}")
        return self.config

    def optimize(self) -> BatchConfig:
        """Re-tune batching to the current load (adaptive strategy only)."""
        if self._strategy != QueueStrategy.ADAPTIVE:
            return self.config

        pending = self.pending_volume
        size = self.config.max_batch_size
        wait = self.config.max_wait_time
        if pending > ADAPTIVE_HIGH_LOAD:
            size = min(size + 2, ADAPTIVE_MAX_BATCH_SIZE)
            wait = min(wait + 5, ADAPTIVE_MAX_WAIT)
        elif pending < ADAPTIVE_LOW_LOAD:
            size = max(size - 1, ADAPTIVE_MIN_BATCH_SIZE)
            wait = max(wait - 5, ADAPTIVE_MIN_WAIT)
        else:
            return self.config

        if (size, wait) != (self.config.max_batch_size, self.config.max_wait_time):
            logger.info(f"[Queue] Adaptive: {pending} pending -> batch size {size}, wait {wait:g}s")
            return self.update_batch_config(max_batch_size=size, max_wait_time=wait)
        return self.config

    # =========================================================================
    # Results and remediation
    # =========================================================================

    def _on_result(self, job: PrintJob, result: PrintResult):
        self._record_timing(job, result)

        batch_id = self._member_of.pop(job.id, None)
        if batch_id is not None:
            self._check_batch(batch_id)

        if not result.success and result.error_code != ErrorCode.CANCELLED:
            self._remediate(job, result)

    def _record_timing(self, job: PrintJob, result: PrintResult):
        timings = self.processor.get_timings(job.id)
        admitted = self._admitted_at.pop(job.id, None) or timings.get('submitted')
        started = timings.get('started')
        finished = timings.get('finished') or result.completed_at
        if admitted and started:
            self._waits.append((started - admitted).total_seconds())
        if started:
            self._processing.append((finished - started).total_seconds())
        if result.success:
            self._completions.append(finished)

    def _remediate(self, job: PrintJob, result: PrintResult):
        action = RecoveryAction(result.diagnostics.get('recovery_action', RecoveryAction.SURFACE.value))

        if action == RecoveryAction.RECONNECT:
            if job.can_retry:
                retry = job.for_retry()
                self._jobs[retry.id] = retry
                self._admitted_at[retry.id] = datetime.now()
                self._retries[job.id] = retry.id
                self.processor.submit(retry)
                logger.info(f"[Queue] Retrying {job.id} as {retry.id} after {result.error_code}")
        elif action == RecoveryAction.PAUSE_AND_NOTIFY:
            self.pause(reason=result.error_message or "Printer needs attention", error_code=result.error_code)
            self._defer(job)
        elif action == RecoveryAction.QUEUE_FOR_LATER:
            self._defer(job)

    def _defer(self, job: PrintJob):
        if not job.can_retry:
            return
        retry = job.for_retry()
        self._jobs[retry.id] = retry
        self._retries[job.id] = retry.id
        self._deferred.append(retry)
        logger.info(f"[Queue] Holding {retry.id} (retry of {job.id}) until resume")

    def pause(self, reason: str = "Paused by operator", error_code: Optional[str] = None):
        self.processor.pause()
        if self._paused:
            return
        self._paused = True
        self._pause_reason = reason
        self._pause_code = error_code
        logger.warning(f"[Queue] Paused: {reason}")
        self.event_bus.publish(QueuePaused(reason=reason, error_code=error_code))

    def resume(self) -> int:
        """Resume processing and release held jobs. Returns the number released."""
        released, self._deferred = self._deferred, []
        self._paused = False
        self._pause_reason = self._pause_code = None
        self.processor.resume()
        for job in released:
            self._admitted_at[job.id] = datetime.now()
            self.processor.submit(job)
        logger.info(f"[Queue] Resumed, released {len(released)} held job(s)")
        self.event_bus.publish(QueueResumed(released_jobs=len(released)))
        return len(released)

    # =========================================================================
    # Cancellation
    # =========================================================================

    def cancel(self, job_id: str) -> bool:
        """Cancel a job wherever it waits: batch, held list or processor."""
        batch_id = self._batch_of.pop(job_id, None)
        if batch_id is not None:
            batch = self._batches.get(batch_id)
            if batch is not None:
                batch.remove(job_id)
                if batch.job_count == 0:
                    del self._batches[batch_id]
                    logger.info(f"[Queue] Dropped empty {batch_id}")
            self._mark_cancelled(self._jobs[job_id])
            return True

        for job in self._deferred:
            if job.id == job_id:
                self._deferred.remove(job)
                self._mark_cancelled(job)
                return True

        return self.processor.cancel(job_id)

    def cancel_attempts(self, job_id: str) -> bool:
        """Cancel a job together with any retry the queue started or holds for it."""
        cancelled = False
        while job_id is not None:
            cancelled = self.cancel(job_id) or cancelled
            job_id = self._retries.get(job_id)
        return cancelled

    def _mark_cancelled(self, job: PrintJob):
        result = PrintResult.failed("Print job cancelled", ErrorCode.CANCELLED)
        self._cancelled[job.id] = result
        self._admitted_at.pop(job.id, None)
        self.event_bus.publish(JobStateChanged(job_id=job.id, state=JobState.CANCELLED, printer_id=job.printer_id))
        self.event_bus.publish(JobCompleted(job_id=job.id, result=result))
        logger.info(f"[Queue] Cancelled {job.id}")

    def clear_pending(self) -> int:
        """Cancel every job that has not started. Returns the number cancelled."""
        waiting = list(self._batch_of) + [job.id for job in self._deferred]
        waiting += [job.id for job in self.processor.list_jobs(JobState.PENDING)]
        cancelled = sum(1 for job_id in waiting if self.cancel(job_id))
        logger.info(f"[Queue] Cleared {cancelled} pending job(s)")
        return cancelled

    # =========================================================================
    # Lookups
    # =========================================================================

    def get_job(self, job_id: str) -> Optional[PrintJob]:
        return self._jobs.get(job_id) or self.processor.get_job(job_id)

    def get_state(self, job_id: str) -> Optional[JobState]:
        if job_id in self._batch_of:
            return JobState.BATCHED
        if job_id in self._cancelled:
            return JobState.CANCELLED
        if any(job.id == job_id for job in self._deferred):
            return JobState.PENDING
        return self.processor.get_state(job_id)

    def list_jobs(self, state: Optional[JobState] = None) -> List[PrintJob]:
        """Known jobs, most recent first."""
        jobs = {job.id: job for job in self.processor.list_jobs()}
        for job_id, job in self._jobs.items():
            jobs.setdefault(job_id, job)
        listed = [job for job in jobs.values() if state is None or self.get_state(job.id) == state]
        return sorted(listed, key=lambda job: job.created_at, reverse=True)

    def get_result(self, job_id: str) -> Optional[PrintResult]:
        return self._cancelled.get(job_id) or self.processor.get_result(job_id)

    async def wait_for_result(self, job_id: str, timeout: Optional[float] = None) -> Optional[PrintResult]:
        if job_id in self._cancelled:
            return self._cancelled[job_id]
        if job_id in self._batch_of or any(job.id == job_id for job in self._deferred):
            return await self._wait_for_event(job_id, timeout)
        return await self.processor.wait_for_result(job_id, timeout)

    def is_held(self, job_id: str) -> bool:
        return any(job.id == job_id for job in self._deferred)

    async def wait_for_outcome(self, job_id: str, timeout: Optional[float] = None) -> Optional[PrintResult]:
        """
        Wait for a job and for the retries the queue runs on its behalf.

        A retry held until resume is not waited for; the failure that
        caused the hold is returned instead.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            remaining = None if deadline is None else max(deadline - loop.time(), 0.0)
            result = await self.wait_for_result(job_id, remaining)
            retry_id = self._retries.get(job_id)
            if result is None or result.success or retry_id is None or self.is_held(retry_id):
                return result
            job_id = retry_id

    async def _wait_for_event(self, job_id: str, timeout: Optional[float]) -> PrintResult:
        future = asyncio.get_running_loop().create_future()

        def on_completed(event: JobCompleted):
            if event.job_id == job_id and not future.done():
                future.set_result(event.result)

        unsubscribe = self.event_bus.subscribe(JobCompleted, on_completed)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            unsubscribe()

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_statistics(self) -> QueueStatistics:
        processor_stats = self.processor.get_statistics()
        live = [self._jobs[job_id] for job_id in self._batch_of]
        live += self._deferred
        live += [job for job in self.processor.list_jobs()
                 if not self.processor.get_state(job.id).is_terminal]
        by_priority = Counter(job.priority.value for job in live)

        now = datetime.now()
        hour_ago = now - timedelta(hours=1)
        recent = [finished for finished in self._completions if finished >= hour_ago]
        if recent:
            minutes = max((now - min(recent)).total_seconds() / 60, 1.0)
            throughput = len(recent) / minutes
        else:
            throughput = 0.0

        return QueueStatistics(
            pending_jobs=processor_stats['pending'] + len(self._deferred),
            batched_jobs=len(self._batch_of),
            active_jobs=processor_stats['active'],
            completed_jobs=processor_stats['completed'],
            failed_jobs=processor_stats['failed'],
            cancelled_jobs=processor_stats['cancelled'] + len(self._cancelled),
            pending_batches=len(self._batches),
            deferred_jobs=len(self._deferred),
            jobs_by_priority=dict(by_priority),
            average_wait_time=sum(self._waits) / len(self._waits) if self._waits else 0.0,
            average_processing_time=sum(self._processing) / len(self._processing) if self._processing else 0.0,
            throughput_per_minute=throughput,
            strategy=self._strategy.value,
            paused=self._paused,
        )

    def forget_finished(self) -> int:
        """Drop bookkeeping for jobs the processor has already cleaned up."""
        waiting = set(self._batch_of) | {job.id for job in self._deferred}
        gone = [job_id for job_id in self._jobs
                if job_id not in waiting and self.processor.get_job(job_id) is None
                and job_id not in self._cancelled]
        for job_id in gone:
            del self._jobs[job_id]
            self._admitted_at.pop(job_id, None)
            self._retries.pop(job_id, None)
        while len(self._cancelled) > self.processor.max_completed:
            job_id = next(iter(self._cancelled))
            del self._cancelled[job_id]
            self._jobs.pop(job_id, None)
        return len(gone)

    def publish_statistics(self) -> QueueStatistics:
        statistics = self.get_statistics()
        self.event_bus.publish(QueueStatisticsUpdated(statistics=statistics))
        return statistics

    # =========================================================================
    # Background loops
    # =========================================================================

    async def _tick_loop(self):
        while True:
            await asyncio.sleep(self.tick_interval)
            self.promote_ready_batches()

    async def _stats_loop(self):
        while True:
            await asyncio.sleep(self.stats_interval)
            self.forget_finished()
            self.publish_statistics()

    async def _optimize_loop(self):
        while True:
            await asyncio.sleep(self.optimize_interval)
            self.optimize()
