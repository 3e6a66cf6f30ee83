import asyncio
import io
import threading
import time

import typer
from rich.console import Console

from qobuz_jobs.cli.progress_manager import ProgressManager
from qobuz_jobs.exceptions import DurationAnomaly


def test_anomaly_prompts_are_asked_one_at_a_time(monkeypatch):
    manager = ProgressManager(Console(file=io.StringIO()))
    lock = threading.Lock()
    state = {"asking": 0, "peak": 0}
    live_during_prompts = []

    def fake_confirm(text, default=False):
        with lock:
            state["asking"] += 1
            state["peak"] = max(state["peak"], state["asking"])
        live_during_prompts.append(manager._live.is_started)
        time.sleep(0.05)
        with lock:
            state["asking"] -= 1
        return "Keep" in text

    monkeypatch.setattr(typer, "confirm", fake_confirm)

    async def scenario():
        async with manager:
            answers = await asyncio.gather(
                manager.confirm_anomaly(DurationAnomaly("Keep me", 200, 30)),
                manager.confirm_anomaly(DurationAnomaly("Drop me", 200, 30)),
            )
            return answers, manager._live.is_started

    answers, live_after = asyncio.run(scenario())

    assert answers == [True, False]
    assert state["peak"] == 1
    assert live_during_prompts == [False, False]
    assert live_after is True
