import asyncio

from qobuz_jobs.core.progress import ProgressChannel
from qobuz_jobs.models.job import EventKind


def collect(channel):
    events = []
    channel.subscribe(events.append)
    return events


def test_update_never_goes_backwards_within_a_stage():
    channel = ProgressChannel()
    events = collect(channel)

    channel.stage("Downloading...")
    channel.update(40)
    channel.update(25)
    channel.update(140)

    assert [e.percent for e in events] == [0.0, 40.0, 100.0]
    assert channel.percent == 100.0


def test_stage_resets_percentage_with_a_message():
    channel = ProgressChannel()
    channel.update(80, "Downloading...")
    channel.stage("Applying metadata...")

    assert channel.percent == 0.0
    assert channel.message == "Applying metadata..."


def test_no_events_after_a_terminal_event():
    channel = ProgressChannel()
    events = collect(channel)

    channel.error("boom")
    channel.update(50, "late")
    channel.complete("late")

    assert [e.kind for e in events] == [EventKind.ERROR]
    assert channel.closed


def test_events_replays_history_to_late_subscribers():
    channel = ProgressChannel()
    channel.stage("one")
    channel.warn("careful")
    channel.complete("done")

    async def drain():
        return [e async for e in channel.events()]

    kinds = [e.kind for e in asyncio.run(drain())]
    assert kinds == [EventKind.PROGRESS, EventKind.WARNING, EventKind.COMPLETE]


def test_events_ends_when_the_channel_is_closed():
    channel = ProgressChannel()

    async def scenario():
        seen = []

        async def consume():
            async for event in channel.events():
                seen.append(event.message)

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0)
        channel.stage("working")
        channel.close()
        await asyncio.wait_for(consumer, 1)
        return seen

    assert asyncio.run(scenario()) == ["working"]


def test_scoped_progress_maps_onto_the_parent_range():
    channel = ProgressChannel()
    scoped = channel.scoped(50, 25)

    scoped.update(50)
    assert channel.percent == 62.5
    scoped.stage("Embedding album art...")
    assert channel.percent == 62.5
    assert channel.message == "Embedding album art..."
    scoped.update(100)
    assert channel.percent == 75.0


def test_failing_subscriber_does_not_break_the_channel():
    channel = ProgressChannel()

    def broken(event):
        raise RuntimeError("nope")

    channel.subscribe(broken)
    events = collect(channel)
    channel.stage("still here")

    assert [e.message for e in events] == ["still here"]
