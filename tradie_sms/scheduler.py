"""
⏰ Scheduler
------------
APScheduler interval jobs, one per background concern, each on its own cadence.

A job first fires after its startup stagger, then repeats on its interval.
Passes are synchronous and run in a worker thread; a job never overlaps
itself (``max_instances=1``, missed ticks coalesced) while different jobs may
run side by side. A failing pass is logged and recorded; the next tick
proceeds as normal.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tradie_sms.automation import evaluate_rules
from tradie_sms.config import settings
from tradie_sms.conversations import archive_stale
from tradie_sms.outbound import reconcile_pending
from tradie_sms.run_logger import log_run
from tradie_sms.runtime import get_logger, iso_now

logger = get_logger("scheduler")

PassFn = Callable[[], Any]


@dataclass
class PeriodicTask:
    name: str
    func: PassFn
    interval: float
    stagger: float = 0.0
    runs: int = 0
    failures: int = 0
    last_result: Optional[Dict[str, Any]] = None
    last_run_at: Optional[str] = None


class Scheduler:
    def __init__(self, record_runs: bool = True) -> None:
        self.tasks: Dict[str, PeriodicTask] = {}
        self.record_runs = record_runs
        self.scheduler = AsyncIOScheduler(timezone="UTC")

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def add(self, name: str, func: PassFn, interval: float, stagger: float = 0.0) -> PeriodicTask:
        if name in self.tasks:
            raise ValueError(f"Task {name!r} already registered")
        if interval <= 0:
            raise ValueError(f"Task {name!r} needs a positive interval")
        task = PeriodicTask(name=name, func=func, interval=interval, stagger=max(stagger, 0.0))
        self.tasks[name] = task
        if self.running:
            self._schedule(task)
        return task

    async def run_once(self, task: PeriodicTask) -> Dict[str, Any]:
        try:
            res = await asyncio.to_thread(task.func)
            result = res if isinstance(res, dict) else {"ok": True, "result": res}
        except Exception as e:
            task.failures += 1
            logger.exception("❌ Scheduled pass %s failed", task.name)
            result = {"ok": False, "error": str(e)}
        task.runs += 1
        task.last_result = result
        task.last_run_at = iso_now()
        if self.record_runs:
            await asyncio.to_thread(log_run, task.name.upper(), result)
        return result

    def _schedule(self, task: PeriodicTask) -> None:
        first_run = datetime.now(timezone.utc) + timedelta(seconds=task.stagger)
        self.scheduler.add_job(
            self.run_once,
            IntervalTrigger(seconds=task.interval, start_date=first_run, timezone="UTC"),
            args=[task],
            id=task.name,
            name=f"scheduler:{task.name}",
            next_run_time=first_run,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

    def start(self) -> None:
        """Schedule every registered task and start the scheduler on the running event loop."""
        if self.running:
            return
        for task in self.tasks.values():
            self._schedule(task)
        self.scheduler.start()
        logger.info("⏰ Scheduler started: %s", ", ".join(sorted(self.tasks)) or "<no tasks>")

    def cancel(self, name: str) -> bool:
        try:
            self.scheduler.remove_job(name)
        except JobLookupError:
            return False
        logger.info("Cancelled scheduled task %s", name)
        return True

    async def stop(self) -> None:
        if not self.running:
            return
        self.scheduler.shutdown(wait=False)
        # Let cancelled in-flight passes unwind before the loop moves on.
        await asyncio.sleep(0)
        logger.info("🛑 Scheduler stopped")

    def status(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {
                "interval": t.interval,
                "running": self.running and self.scheduler.get_job(name) is not None,
                "runs": t.runs,
                "failures": t.failures,
                "last_run_at": t.last_run_at,
            }
            for name, t in self.tasks.items()
        }


def _sms_automation_pass() -> Dict[str, Any]:
    report = evaluate_rules()
    return {"ok": not report.errors, "processed": report.sent, **report.as_dict()}


def _archival_pass() -> Dict[str, Any]:
    return {"ok": True, **archive_stale()}


def _reconcile_pass() -> Dict[str, Any]:
    return {"ok": True, **reconcile_pending()}


BUILTIN_HANDLERS: Dict[str, PassFn] = {
    "sms_automation": _sms_automation_pass,
    "archival": _archival_pass,
    "pending_reconciliation": _reconcile_pass,
}


def build_scheduler(handlers: Optional[Mapping[str, PassFn]] = None, record_runs: bool = True) -> Scheduler:
    """
    Register every configured concern that has a handler.

    Host-owned concerns (reminders, recurring documents, billing...) are passed
    in ``handlers``; they override the built-ins on name clashes.
    """
    merged: Dict[str, PassFn] = dict(BUILTIN_HANDLERS)
    merged.update(handlers or {})
    scheduler = Scheduler(record_runs=record_runs)
    for name, (interval, stagger) in settings().SCHEDULE.items():
        func = merged.get(name)
        if func is None:
            logger.debug("No handler registered for %s; not scheduled", name)
            continue
        scheduler.add(name, func, interval, stagger)
    return scheduler
