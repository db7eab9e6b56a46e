"""
Scheduler core: fires each active schedule at most once per calendar day.

A schedule is due once the wall clock has reached its HH:MM and it has not
run yet today, so a tick that misses the exact minute still catches up.
last_run_at is written after every attempt, whatever the report outcome.
"""

import logging
from datetime import datetime, tzinfo
from typing import Optional

from sqlalchemy.orm import sessionmaker

from chatdigest import storage
from chatdigest.logging_utils import work_context
from chatdigest.metrics import record_schedule_run
from chatdigest.report import ReportGenerator, ReportOutcome, ReportTarget, ReportWindow
from chatdigest.utils import from_utc_naive, parse_time_of_day

logger = logging.getLogger(__name__)


class Scheduler:
    def __init__(self, session_factory: sessionmaker, report_generator: ReportGenerator, tz: tzinfo):
        self.session_factory = session_factory
        self.report_generator = report_generator
        self.tz = tz

    def is_due(self, schedule, now: datetime) -> bool:
        """
        Raises ValueError if the schedule's time_of_day is malformed.
        """
        due_at = parse_time_of_day(schedule.time_of_day)
        if (now.hour, now.minute) < (due_at.hour, due_at.minute):
            return False
        if schedule.last_run_at is None:
            return True
        last_run_day = from_utc_naive(schedule.last_run_at).astimezone(self.tz).date()
        return last_run_day != now.date()

    async def evaluate_schedules(self, now: Optional[datetime] = None) -> list:
        """
        Run every due schedule once.

        Returns:
            List of (schedule_id, ReportOutcome) for the schedules that fired.
        """
        now = now.astimezone(self.tz) if now is not None else datetime.now(self.tz)

        with self.session_factory() as db:
            if not storage.table_exists(db, "schedules"):
                logger.debug("schedules table missing, scheduler disabled")
                return []
            due = []
            for schedule in storage.list_active_schedules(db):
                try:
                    if self.is_due(schedule, now):
                        due.append((schedule.id, ReportTarget.from_schedule(schedule)))
                except ValueError as e:
                    logger.error(f"Skipping schedule {schedule.id}: {e}")

        if due:
            logger.info(f"{len(due)} schedule(s) due at {now.strftime('%H:%M')}")

        results = []
        for schedule_id, target in due:
            with work_context("schedule", schedule_id):
                outcome = await self._fire(schedule_id, target, now)
            results.append((schedule_id, outcome))
        return results

    async def _fire(self, schedule_id: str, target: ReportTarget, now: datetime) -> ReportOutcome:
        outcome = ReportOutcome.ERROR
        try:
            outcome = await self.report_generator.generate_and_deliver(target, ReportWindow.day_until(now))
            logger.info(f"Schedule {schedule_id} ran: {outcome.value}")
        except Exception as e:
            logger.exception(f"Schedule {schedule_id} failed: {e}")
        finally:
            # Consume today's slot even on failure: no repeat attempts the same day
            try:
                with self.session_factory() as db:
                    storage.mark_schedule_run(db, schedule_id, now)
            except Exception as e:
                logger.exception(f"Could not record last_run_at for schedule {schedule_id}: {e}")
        record_schedule_run(outcome.value)
        return outcome
