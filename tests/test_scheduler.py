"""
Tests for the scheduler core.

Tests cover:
- Firing once the time of day is reached, at most once per day
- Catch-up after a missed minute
- last_run_at recorded whatever the report outcome
- Per-schedule failure isolation
"""

from datetime import datetime

import pytest

from chatdigest.report import ReportOutcome
from chatdigest.utils import to_utc_naive

from conftest import SELF_ID, run, utc


class TestDueEvaluation:
    """Test when a schedule counts as due."""

    def test_fires_after_time_of_day_and_records_run(self, services, db, add_schedule, add_message, transport):
        """A 09:00 schedule evaluated at 09:01 fires and sets last_run_at to today."""
        schedule = add_schedule("09:00")
        add_message(timestamp=utc(2025, 1, 15, 8, 30))
        now = utc(2025, 1, 15, 9, 1)

        results = run(services.scheduler.evaluate_schedules(now))

        assert results == [(schedule.id, ReportOutcome.SENT)]
        assert len(transport.sent) == 1
        assert transport.sent[0][0] == SELF_ID
        db.refresh(schedule)
        assert schedule.last_run_at == to_utc_naive(now)

    def test_does_not_fire_twice_same_day(self, services, db, add_schedule, add_message, transport):
        """Evaluating again at 09:30 the same day does not trigger again."""
        add_schedule("09:00")
        add_message(timestamp=utc(2025, 1, 15, 8, 30))

        run(services.scheduler.evaluate_schedules(utc(2025, 1, 15, 9, 1)))
        results = run(services.scheduler.evaluate_schedules(utc(2025, 1, 15, 9, 30)))

        assert results == []
        assert len(transport.sent) == 1

    def test_catch_up_after_missed_minute(self, services, add_schedule, add_message, transport):
        """A schedule due at 09:00 first evaluated at 09:10 still fires once."""
        add_schedule("09:00")
        add_message(timestamp=utc(2025, 1, 15, 8, 30))

        first = run(services.scheduler.evaluate_schedules(utc(2025, 1, 15, 9, 10)))
        second = run(services.scheduler.evaluate_schedules(utc(2025, 1, 15, 9, 11)))

        assert len(first) == 1
        assert second == []
        assert len(transport.sent) == 1

    def test_not_due_before_time_of_day(self, services, add_schedule):
        add_schedule("09:00")

        results = run(services.scheduler.evaluate_schedules(utc(2025, 1, 15, 8, 59)))

        assert results == []

    def test_fires_again_next_day(self, services, add_schedule):
        add_schedule("09:00", last_run_at=datetime(2025, 1, 14, 9, 0))

        results = run(services.scheduler.evaluate_schedules(utc(2025, 1, 15, 9, 0)))

        assert len(results) == 1

    def test_inactive_schedule_ignored(self, services, add_schedule):
        add_schedule("09:00", is_active=False)

        results = run(services.scheduler.evaluate_schedules(utc(2025, 1, 15, 12, 0)))

        assert results == []

    def test_malformed_time_is_skipped(self, services, add_schedule):
        """A bad time_of_day does not stop other schedules being evaluated."""
        add_schedule("9am")
        good = add_schedule("09:00")

        results = run(services.scheduler.evaluate_schedules(utc(2025, 1, 15, 9, 5)))

        assert [schedule_id for schedule_id, _ in results] == [good.id]

    def test_is_due_uses_schedule_timezone(self, services, add_schedule):
        """last_run_at late on the previous UTC day is still 'today' in a UTC+ zone."""
        from zoneinfo import ZoneInfo

        scheduler = services.scheduler
        scheduler.tz = ZoneInfo("Asia/Singapore")
        # 2025-01-15 01:30 SGT, stored as UTC on the 14th
        schedule = add_schedule("00:30", last_run_at=datetime(2025, 1, 14, 17, 30))

        now = utc(2025, 1, 15, 2, 0).astimezone(scheduler.tz)  # 10:00 SGT on the 15th

        assert scheduler.is_due(schedule, now) is False


class TestRunRecording:
    """Test that every attempt consumes the daily slot."""

    def test_no_messages_still_records_run(self, services, db, add_schedule, transport):
        schedule = add_schedule("09:00")
        now = utc(2025, 1, 15, 9, 1)

        results = run(services.scheduler.evaluate_schedules(now))

        assert results == [(schedule.id, ReportOutcome.NO_MESSAGES)]
        assert transport.sent == []
        db.refresh(schedule)
        assert schedule.last_run_at == to_utc_naive(now)

    def test_generation_failure_still_records_run(self, services, db, add_schedule, add_message,
                                                   generator_client, transport):
        """Credential exhaustion consumes the slot: no retry later the same day."""
        generator_client.results = {k: RuntimeError("quota") for k in ("k1", "k2", "k3")}
        schedule = add_schedule("09:00")
        add_message(timestamp=utc(2025, 1, 15, 8, 30))

        first = run(services.scheduler.evaluate_schedules(utc(2025, 1, 15, 9, 1)))
        second = run(services.scheduler.evaluate_schedules(utc(2025, 1, 15, 9, 2)))

        assert first == [(schedule.id, ReportOutcome.ERROR)]
        assert second == []
        assert transport.sent == []
        db.refresh(schedule)
        assert schedule.last_run_at is not None

    def test_failure_isolated_per_schedule(self, services, add_schedule, add_message, transport):
        """One schedule's failure does not prevent the others from running."""
        add_schedule("08:00", target_type="chat", target_id=None)  # unresolvable target
        ok = add_schedule("09:00")
        add_message(timestamp=utc(2025, 1, 15, 7, 30))

        results = dict(run(services.scheduler.evaluate_schedules(utc(2025, 1, 15, 9, 5))))

        assert ReportOutcome.ERROR in results.values()
        assert results[ok.id] == ReportOutcome.SENT
        assert len(transport.sent) == 1

    def test_external_number_without_digits_consumes_slot(self, services, db, add_schedule,
                                                          add_message, transport):
        schedule = add_schedule("09:00", target_type="external_number", target_id="john")
        add_message(timestamp=utc(2025, 1, 15, 8, 0))

        results = run(services.scheduler.evaluate_schedules(utc(2025, 1, 15, 9, 5)))

        assert results == [(schedule.id, ReportOutcome.ERROR)]
        assert transport.sent == []
        db.refresh(schedule)
        assert schedule.last_run_at is not None

    def test_missing_table_is_skipped(self, services):
        from chatdigest.models import Schedule

        Schedule.__table__.drop(bind=services.engine)

        assert run(services.scheduler.evaluate_schedules(utc(2025, 1, 15, 9, 5))) == []

        Schedule.__table__.create(bind=services.engine)


@pytest.mark.parametrize("time_of_day,hour,minute,expected", [
    ("09:00", 9, 0, True),
    ("09:00", 8, 59, False),
    ("23:59", 23, 59, True),
    ("00:00", 0, 0, True),
])
def test_due_boundaries(services, add_schedule, time_of_day, hour, minute, expected):
    schedule = add_schedule(time_of_day)

    assert services.scheduler.is_due(schedule, utc(2025, 1, 15, hour, minute)) is expected
