import asyncio

from checkin_print_service.events import (
    EventBus, Event, JobStateChanged, JobCompleted, QueuePaused, PrinterConnected,
)
from checkin_print_service.models import JobState, PrintResult


def test_subscribers_receive_matching_events():
    bus = EventBus()
    states, everything = [], []
    bus.subscribe(JobStateChanged, states.append)
    unsubscribe = bus.subscribe(Event, everything.append)

    bus.publish(JobStateChanged(job_id='JOB-1', state=JobState.PENDING))
    bus.publish(QueuePaused(reason="Out of labels"))
    unsubscribe()
    bus.publish(QueuePaused(reason="again"))

    assert [e.job_id for e in states] == ['JOB-1']
    assert [e.name for e in everything] == ['JobStateChanged', 'QueuePaused']


def test_failing_subscriber_does_not_break_publish():
    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("boom")

    bus.subscribe(QueuePaused, broken)
    bus.subscribe(QueuePaused, received.append)
    bus.publish(QueuePaused(reason="x"))
    assert len(received) == 1


def test_stream_drops_oldest_when_full():
    async def scenario():
        bus = EventBus()
        queue = bus.stream(JobCompleted, maxsize=2)
        for n in range(3):
            bus.publish(JobCompleted(job_id=f'JOB-{n}', result=PrintResult.succeeded()))
        bus.publish(QueuePaused(reason="ignored"))
        first = await queue.get()
        second = await queue.get()
        bus.close_stream(queue)
        bus.publish(JobCompleted(job_id='JOB-9', result=PrintResult.succeeded()))
        return first, second, queue.qsize()

    first, second, remaining = asyncio.run(scenario())
    assert (first.job_id, second.job_id) == ('JOB-1', 'JOB-2')
    assert remaining == 0


def test_coroutine_subscribers_are_scheduled():
    async def scenario():
        bus = EventBus()
        seen = []

        async def on_connected(event):
            seen.append(event.printer_id)

        bus.subscribe(PrinterConnected, on_connected)
        bus.publish(PrinterConnected(printer_id='QL-1', connection_id='conn_QL-1'))
        await asyncio.sleep(0)
        return seen

    assert asyncio.run(scenario()) == ['QL-1']


def test_event_to_dict_and_history():
    bus = EventBus(history_size=2)
    for n in range(3):
        bus.publish(JobStateChanged(job_id=f'JOB-{n}', state=JobState.ACTIVE))

    recent = bus.recent()
    assert [e.job_id for e in recent] == ['JOB-1', 'JOB-2']
    data = recent[-1].to_dict()
    assert data['event'] == 'JobStateChanged'
    assert data['state'] == 'active'
    assert isinstance(data['timestamp'], str)
