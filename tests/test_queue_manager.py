import asyncio
from datetime import datetime, timedelta

import pytest

from checkin_print_service.connection_manager import ConnectionManager
from checkin_print_service.errors import ErrorHandler, ErrorCode
from checkin_print_service.events import (
    EventBus, BatchCompleted, JobCompleted, QueuePaused, QueueResumed, QueueStatisticsUpdated,
)
from checkin_print_service.exceptions import InvalidConfigurationError
from checkin_print_service.job_processor import JobProcessor
from checkin_print_service.models import (
    BadgePayload, PrintJob, PrintSettings, PrintQuality, JobPriority, JobState, BatchState, PrinterCapabilities,
)
from checkin_print_service.queue_manager import QueueManager, QueueStrategy, BatchConfig
from checkin_print_service.rasterizer import BadgeRasterizer

from conftest import TEST_DPI

DRAFT = PrintSettings(quality=PrintQuality.DRAFT)


def build(transports, strategy=QueueStrategy.BATCH, **config):
    bus = EventBus()
    errors = ErrorHandler(bus)
    manager = ConnectionManager(transports, bus, errors)
    processor = JobProcessor(manager, BadgeRasterizer(), bus, errors, job_timeout=5,
                             default_capabilities=PrinterCapabilities(max_resolution_dpi=TEST_DPI))
    queue = QueueManager(processor, bus, strategy=strategy, config=BatchConfig(**config))
    return manager, queue, bus


async def ready(manager):
    await manager.scan()
    await manager.establish(manager.get_printer('QL-1'))


def job(name='Ada', priority=JobPriority.NORMAL, settings=DRAFT):
    return PrintJob(payload=BadgePayload(attendee_name=name), printer_id='QL-1',
                    priority=priority, settings=settings)


async def next_event(bus, event_type, predicate=lambda event: True, timeout=5.0):
    future = asyncio.get_running_loop().create_future()

    def on_event(event):
        if predicate(event) and not future.done():
            future.set_result(event)

    unsubscribe = bus.subscribe(event_type, on_event)
    try:
        return await asyncio.wait_for(future, timeout)
    finally:
        unsubscribe()


# =============================================================================
# Batching
# =============================================================================

def test_five_matching_jobs_form_one_pending_batch(transports):
    async def scenario():
        _, queue, _ = build(transports)
        jobs = await queue.add_jobs([BadgePayload(attendee_name=f'A{n}') for n in range(5)], DRAFT,
                                    printer_id='QL-1')
        return queue, jobs

    queue, jobs = asyncio.run(scenario())
    batches = queue.get_batches()
    assert len(batches) == 1
    assert batches[0].job_count == 5
    assert batches[0].state == BatchState.PENDING
    assert all(queue.get_state(j.id) == JobState.BATCHED for j in jobs)
    assert queue.processor.list_jobs() == []

    stats = queue.get_statistics()
    assert stats.batched_jobs == 5
    assert stats.pending_batches == 1
    assert stats.jobs_by_priority == {'normal': 5}


def test_full_batch_is_promoted(transports):
    async def scenario():
        manager, queue, _ = build(transports, max_batch_size=3)
        await ready(manager)
        queue.processor.pause()
        for n in range(4):
            await queue.submit(job(f'A{n}'))
        return queue

    queue = asyncio.run(scenario())
    batches = queue.get_batches()
    assert [b.state for b in batches] == [BatchState.PENDING, BatchState.PROCESSING]
    assert [b.job_count for b in batches] == [1, 3]
    assert queue.processor.pending_count == 3
    assert all(b.job_count <= 3 for b in batches)


def test_batch_is_promoted_after_max_wait(transports):
    async def scenario():
        _, queue, _ = build(transports, max_wait_time=30)
        queue.processor.pause()
        await queue.submit(job())
        early = queue.promote_ready_batches()
        late = queue.promote_ready_batches(now=datetime.now() + timedelta(seconds=31))
        return early, late, queue

    early, late, queue = asyncio.run(scenario())
    assert early == []
    assert len(late) == 1
    assert late[0].state == BatchState.PROCESSING
    assert queue.processor.pending_count == 1


def test_urgent_jobs_skip_batching(transports):
    async def scenario():
        _, queue, _ = build(transports)
        queue.processor.pause()
        urgent = job(priority=JobPriority.URGENT)
        await queue.submit(urgent)
        return queue, urgent

    queue, urgent = asyncio.run(scenario())
    assert queue.get_batches() == []
    assert queue.get_state(urgent.id) == JobState.PENDING


def test_different_settings_get_separate_batches(transports):
    async def scenario():
        _, queue, _ = build(transports)
        await queue.submit(job('a'))
        await queue.submit(job('b', settings=PrintSettings(quality=PrintQuality.DRAFT, copies=2)))
        await queue.submit(job('c', priority=JobPriority.HIGH))
        return queue.get_batches()

    assert [b.job_count for b in asyncio.run(scenario())] == [1, 1, 1]


def test_fifo_batches_only_under_load(transports):
    async def scenario():
        _, queue, _ = build(transports, strategy=QueueStrategy.FIFO, batching_threshold=3)
        queue.processor.pause()
        for n in range(6):
            await queue.submit(job(f'A{n}'))
        return queue

    queue = asyncio.run(scenario())
    assert queue.processor.pending_count == 4
    assert queue.get_statistics().batched_jobs == 2
    assert not queue.processor.priority_ordering


def test_cancelling_only_job_removes_batch(transports):
    async def scenario():
        _, queue, bus = build(transports)
        completed = []
        bus.subscribe(JobCompleted, completed.append)
        queued = job()
        await queue.submit(queued)
        cancelled = queue.cancel(queued.id)
        return queue, queued, cancelled, completed

    queue, queued, cancelled, completed = asyncio.run(scenario())
    assert cancelled
    assert queue.get_batches() == []
    assert queue.get_state(queued.id) == JobState.CANCELLED
    assert queue.get_result(queued.id).error_code == ErrorCode.CANCELLED
    assert completed[0].job_id == queued.id
    assert queue.get_statistics().cancelled_jobs == 1


def test_batch_summary_counts_original_jobs(transports, memory_transport):
    async def scenario():
        manager, queue, bus = build(transports, max_batch_size=3)
        await ready(manager)
        memory_transport.fail_next_transmit("Printer is busy", 'PRINTER_BUSY')
        completed = asyncio.ensure_future(next_event(bus, BatchCompleted))
        jobs = [job(f'A{n}') for n in range(3)]
        for queued in jobs:
            await queue.submit(queued)
        event = await completed
        return queue, event

    queue, event = asyncio.run(scenario())
    summary = event.result
    assert summary.is_partial
    assert summary.error_message == "Printed 2/3 badges. Last error: Printer is busy"
    assert summary.diagnostics['total_count'] == 3
    assert queue.get_batch_result(event.batch_id) is summary
    assert queue.get_batches() == []


def test_wait_for_batched_job(transports):
    async def scenario():
        manager, queue, _ = build(transports, max_batch_size=2)
        await ready(manager)
        first = job('first')
        await queue.submit(first)
        waiting = asyncio.ensure_future(queue.wait_for_result(first.id, timeout=5))
        await asyncio.sleep(0)
        await queue.submit(job('second'))
        return await waiting

    assert asyncio.run(scenario()).success


# =============================================================================
# Remediation
# =============================================================================

def test_connection_errors_are_retried(transports, memory_transport):
    async def scenario():
        manager, queue, bus = build(transports, strategy=QueueStrategy.PRIORITY)
        await ready(manager)
        memory_transport.fail_next_transmit("Timed out sending", 'CONNECTION_TIMEOUT')
        original = job(priority=JobPriority.URGENT)
        retried = asyncio.ensure_future(next_event(
            bus, JobCompleted, lambda e: e.result.success))
        await queue.submit(original)
        event = await retried
        return queue, original, event

    queue, original, event = asyncio.run(scenario())
    retry = queue.get_job(event.job_id)
    assert retry.retry_of == original.id
    assert retry.retry_count == 1
    assert queue.get_state(original.id) == JobState.FAILED


def test_hardware_errors_pause_until_resume(transports, memory_transport):
    async def scenario():
        manager, queue, bus = build(transports)
        await ready(manager)
        paused, resumed = [], []
        bus.subscribe(QueuePaused, paused.append)
        bus.subscribe(QueueResumed, resumed.append)
        memory_transport.fail_next_transmit("No media", 'OUT_OF_LABELS')

        original = job(priority=JobPriority.URGENT)
        await queue.submit(original)
        await queue.wait_for_result(original.id, timeout=5)
        held = queue.list_jobs(JobState.PENDING)
        stats = queue.get_statistics()

        # Jobs admitted while paused wait too
        later = job('later', priority=JobPriority.URGENT)
        await queue.submit(later)
        await asyncio.sleep(0.05)
        later_state = queue.get_state(later.id)

        released = queue.resume()
        results = [await queue.wait_for_result(j.id, timeout=5) for j in held + [later]]
        return queue, held, stats, later_state, released, results, paused, resumed

    queue, held, stats, later_state, released, results, paused, resumed = asyncio.run(scenario())
    assert paused[0].error_code == ErrorCode.OUT_OF_LABELS
    assert stats.paused and stats.deferred_jobs == 1
    assert len(held) == 1 and held[0].retry_count == 1
    assert later_state == JobState.PENDING
    assert released == 1
    assert resumed[0].released_jobs == 1
    assert all(result.success for result in results)
    assert not queue.is_paused


def test_non_recoverable_errors_are_surfaced(transports, memory_transport):
    async def scenario():
        manager, queue, _ = build(transports)
        await ready(manager)
        memory_transport.fail_next_transmit("Bad image", 'UNSUPPORTED_FORMAT')
        original = job(priority=JobPriority.URGENT)
        await queue.submit(original)
        result = await queue.wait_for_result(original.id, timeout=5)
        await asyncio.sleep(0.05)
        return queue, result

    queue, result = asyncio.run(scenario())
    assert result.diagnostics['recovery_action'] == 'surface'
    assert not queue.is_paused
    assert len(queue.list_jobs()) == 1


# =============================================================================
# Control and tuning
# =============================================================================

def test_cancel_deferred_and_clear_pending(transports):
    async def scenario():
        _, queue, _ = build(transports)
        queue.pause("maintenance")
        batched = [job(f'B{n}') for n in range(2)]
        urgent = job('U', priority=JobPriority.URGENT)
        for queued in batched + [urgent]:
            await queue.submit(queued)
        cleared = queue.clear_pending()
        return queue, cleared, batched, urgent

    queue, cleared, batched, urgent = asyncio.run(scenario())
    assert cleared == 3
    assert queue.get_batches() == []
    assert {queue.get_state(j.id) for j in batched + [urgent]} == {JobState.CANCELLED}


def test_adaptive_tuning_follows_load(transports):
    async def scenario():
        _, busy, _ = build(transports, strategy=QueueStrategy.ADAPTIVE, max_batch_size=10, max_wait_time=30)
        busy.processor.pause()
        await busy.add_jobs([BadgePayload(attendee_name=f'A{n}') for n in range(25)], DRAFT, printer_id='QL-1')
        grown = busy.optimize()

        _, idle, _ = build(transports, strategy=QueueStrategy.ADAPTIVE, max_batch_size=10, max_wait_time=30)
        shrunk = idle.optimize()

        _, fixed, _ = build(transports, strategy=QueueStrategy.BATCH, max_batch_size=10, max_wait_time=30)
        untouched = fixed.optimize()
        return grown, shrunk, untouched

    grown, shrunk, untouched = asyncio.run(scenario())
    assert (grown.max_batch_size, grown.max_wait_time) == (12, 35)
    assert (shrunk.max_batch_size, shrunk.max_wait_time) == (9, 25)
    assert (untouched.max_batch_size, untouched.max_wait_time) == (10, 30)


def test_update_batch_config(transports):
    async def scenario():
        _, queue, _ = build(transports, max_batch_size=10)
        queue.processor.pause()
        for n in range(3):
            await queue.submit(job(f'A{n}'))
        queue.update_batch_config(max_batch_size=3)
        return queue

    queue = asyncio.run(scenario())
    assert queue.config.max_batch_size == 3
    assert [b.state for b in queue.get_batches()] == [BatchState.PROCESSING]

    with pytest.raises(InvalidConfigurationError):
        queue.update_batch_config(batch_color='red')
    with pytest.raises(InvalidConfigurationError):
        BatchConfig(max_batch_size=0)


def test_shrinking_batch_size_splits_pending_batch(transports):
    async def scenario():
        _, queue, _ = build(transports, max_batch_size=10)
        queue.processor.pause()
        jobs = [await queue.add_job(BadgePayload(attendee_name=f'A{n}'), DRAFT, printer_id='QL-1')
                for n in range(7)]
        queue.update_batch_config(max_batch_size=3)
        return queue, jobs

    queue, jobs = asyncio.run(scenario())
    batches = queue.get_batches()
    assert all(b.job_count <= 3 for b in batches)
    assert [(b.state, b.job_count) for b in batches] == [
        (BatchState.PENDING, 1), (BatchState.PROCESSING, 3), (BatchState.PROCESSING, 3),
    ]
    names = [[j.payload.attendee_name for j in b.jobs] for b in batches]
    assert names == [['A6'], ['A0', 'A1', 'A2'], ['A3', 'A4', 'A5']]
    assert [j.id for j in queue.processor.list_jobs()] == [j.id for j in jobs[:6]]
    assert queue.get_state(jobs[6].id) == JobState.BATCHED


def test_statistics_track_throughput(transports):
    async def scenario():
        manager, queue, bus = build(transports, strategy=QueueStrategy.PRIORITY)
        await ready(manager)
        updates = []
        bus.subscribe(QueueStatisticsUpdated, updates.append)
        jobs = [job(f'A{n}', priority=JobPriority.HIGH) for n in range(3)]
        for queued in jobs:
            await queue.submit(queued)
        for queued in jobs:
            await queue.wait_for_result(queued.id, timeout=5)
        stats = queue.publish_statistics()
        return stats, updates

    stats, updates = asyncio.run(scenario())
    assert stats.completed_jobs == 3
    assert stats.total_jobs == 3
    assert stats.throughput_per_minute == 3
    assert stats.average_processing_time > 0
    assert stats.strategy == 'priority'
    assert updates[0].statistics is stats
    assert stats.to_dict()['total_jobs'] == 3
