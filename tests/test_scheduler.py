import asyncio
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest
from apscheduler.triggers.interval import IntervalTrigger

from tradie_sms.config import reload_settings
from tradie_sms.datastore import CONNECTOR
from tradie_sms.scheduler import Scheduler, build_scheduler


def test_tasks_fire_after_stagger_and_repeat():
    calls = []

    async def scenario():
        sched = Scheduler(record_runs=False)
        sched.add("tick", lambda: calls.append("tick") or {"ok": True}, interval=0.05, stagger=0.1)
        sched.start()
        await asyncio.sleep(0.03)
        before_stagger = len(calls)
        await asyncio.sleep(0.4)
        await sched.stop()
        return before_stagger

    before = asyncio.run(scenario())

    assert before == 0
    assert len(calls) >= 3


def test_jobs_are_interval_jobs_that_never_overlap_themselves():
    async def scenario():
        sched = Scheduler(record_runs=False)
        sched.add("archival", lambda: None, interval=300, stagger=20)
        sched.start()
        job = sched.scheduler.get_job("archival")
        await sched.stop()
        return job

    job = asyncio.run(scenario())

    assert isinstance(job.trigger, IntervalTrigger)
    assert job.trigger.interval == timedelta(seconds=300)
    assert job.max_instances == 1
    assert job.coalesce is True
    delay = (job.next_run_time - datetime.now(timezone.utc)).total_seconds()
    assert 15 < delay <= 20


def test_slow_pass_does_not_run_concurrently_with_itself():
    lock = threading.Lock()
    state = {"active": 0, "peak": 0, "runs": 0}

    def slow():
        with lock:
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
        time.sleep(0.08)
        with lock:
            state["active"] -= 1
            state["runs"] += 1

    async def scenario():
        sched = Scheduler(record_runs=False)
        sched.add("slow", slow, interval=0.02)
        sched.start()
        await asyncio.sleep(0.4)
        await sched.stop()

    asyncio.run(scenario())

    assert state["runs"] >= 2
    assert state["peak"] == 1


def test_failing_task_does_not_block_others():
    good = []

    def boom():
        raise RuntimeError("pass exploded")

    async def scenario():
        sched = Scheduler(record_runs=False)
        bad = sched.add("bad", boom, interval=0.02)
        sched.add("good", lambda: good.append(1), interval=0.02)
        sched.start()
        await asyncio.sleep(0.25)
        await sched.stop()
        return bad

    bad = asyncio.run(scenario())

    assert bad.failures >= 2
    assert bad.last_result["ok"] is False
    assert "pass exploded" in bad.last_result["error"]
    assert len(good) >= 2


def test_cancel_single_task_by_name():
    a_calls, b_calls = [], []

    async def scenario():
        sched = Scheduler(record_runs=False)
        sched.add("a", lambda: a_calls.append(1), interval=0.02)
        sched.add("b", lambda: b_calls.append(1), interval=0.02)
        sched.start()
        await asyncio.sleep(0.08)
        assert sched.cancel("a") is True
        assert sched.cancel("a") is False
        await asyncio.sleep(0.05)
        frozen = len(a_calls)
        await asyncio.sleep(0.15)
        running = sched.status()
        await sched.stop()
        return frozen, running

    frozen, running = asyncio.run(scenario())

    assert len(a_calls) == frozen
    assert len(b_calls) > frozen
    assert running["a"]["running"] is False
    assert running["b"]["running"] is True


def test_stop_shuts_the_scheduler_down():
    async def scenario():
        sched = Scheduler(record_runs=False)
        sched.add("x", lambda: None, interval=60)
        sched.start()
        started = sched.running
        await sched.stop()
        await sched.stop()
        return started, sched.running, sched.status()

    started, running, status = asyncio.run(scenario())

    assert started is True
    assert running is False
    assert status["x"]["running"] is False


def test_add_rejects_duplicates_and_bad_intervals():
    sched = Scheduler(record_runs=False)
    sched.add("x", lambda: None, interval=1)
    with pytest.raises(ValueError):
        sched.add("x", lambda: None, interval=1)
    with pytest.raises(ValueError):
        sched.add("y", lambda: None, interval=0)


def test_build_scheduler_registers_builtins_and_host_handlers(monkeypatch):
    monkeypatch.setenv("SCHEDULE_REMINDERS_INTERVAL_SEC", "120")
    reload_settings()

    sched = build_scheduler({"reminders": lambda: {"ok": True}})

    assert {"sms_automation", "archival", "pending_reconciliation", "reminders"} <= set(sched.tasks)
    assert "billing_reminders" not in sched.tasks
    assert sched.tasks["reminders"].interval == 120


def test_pass_results_are_recorded_as_runs():
    async def scenario():
        sched = Scheduler()
        task = sched.add("archival_test", lambda: {"ok": True, "processed": 3}, interval=60)
        await sched.run_once(task)

    asyncio.run(scenario())

    rows = CONNECTOR.runs().table.all()
    assert len(rows) == 1
    assert rows[0]["fields"]["Type"] == "ARCHIVAL_TEST"
    assert rows[0]["fields"]["Processed"] == 3.0
