"""Tests for medreminder.core.reconciler — startup repair of Ledger and triggers."""

from datetime import datetime, timedelta, timezone

import pytest

from medreminder.core.scheduling_engine import build_payload
from medreminder.core.status_rules import to_epoch_ms
from medreminder.data.models import ReminderStatus, ScheduledTrigger
from medreminder.ports.trigger_port import LiveTrigger

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
T0_MS = to_epoch_ms(T0)


class TestColdStart:
    @pytest.mark.asyncio
    async def test_prunes_stale_rows_and_restores_future(
        self, reconciler, repository, ledger, backend, make_reminder,
    ):
        future = make_reminder(id="future", time="10:00")
        past = make_reminder(id="past", time="08:00")
        await repository.add_many([future, past])
        await ledger.upsert([
            ScheduledTrigger("past", "past", T0_MS - 3_600_000),
            ScheduledTrigger("future", "future", T0_MS + 3_600_000),
        ])

        report = await reconciler.run()

        assert report.pruned == 1
        assert report.restored == ["future"]
        assert set(backend.live) == {"future", "future_repeat_5", "future_repeat_10", "future_repeat_15"}
        assert {row.reminder_id for row in await ledger.all()} == {"future"}

    @pytest.mark.asyncio
    async def test_terminal_reminders_are_not_scheduled(self, reconciler, repository, backend, make_reminder):
        await repository.add_many([make_reminder(id="t", time="10:00", status=ReminderStatus.TAKEN)])
        report = await reconciler.run()
        assert report.restored == []
        assert backend.live == {}

    @pytest.mark.asyncio
    async def test_second_run_changes_nothing(self, reconciler, repository, ledger, make_reminder):
        await repository.add_many([make_reminder(id="a", time="10:00"), make_reminder(id="b", time="11:00")])
        await reconciler.run()
        before = sorted((r.trigger_id, r.fire_at) for r in await ledger.all())

        report = await reconciler.run()

        assert report.restored == []
        assert report.adopted == 0
        assert report.pruned == 0
        assert sorted((r.trigger_id, r.fire_at) for r in await ledger.all()) == before

    @pytest.mark.asyncio
    async def test_registration_failure_is_reported(self, reconciler, repository, backend, make_reminder):
        await repository.add_many([make_reminder(id="a", time="10:00")])
        backend.fail_all_requests = True
        report = await reconciler.run()
        assert report.failed == ["a"]
        assert report.restored == []


class TestLiveTriggers:
    @pytest.mark.asyncio
    async def test_orphans_are_cancelled(self, reconciler, repository, backend, ledger, make_reminder):
        taken = make_reminder(id="done", time="10:00", status=ReminderStatus.TAKEN)
        await repository.add_many([taken])
        for trigger_id, rid in (("done", "done"), ("gone", "gone")):
            backend.live[trigger_id] = LiveTrigger(
                trigger_id, T0_MS + 3_600_000, build_payload(make_reminder(id=rid)),
            )

        report = await reconciler.run()

        assert report.orphans == ["done", "gone"]
        assert backend.live == {}
        assert await ledger.all() == []

    @pytest.mark.asyncio
    async def test_live_triggers_are_adopted_not_duplicated(
        self, reconciler, repository, backend, ledger, make_reminder,
    ):
        r = make_reminder(id="r", time="10:00")
        await repository.add_many([r])
        backend.live["r"] = LiveTrigger("r", T0_MS + 3_600_000, build_payload(r))

        report = await reconciler.run()

        assert report.adopted == 1
        assert report.restored == []
        assert backend.requested == []
        assert [row.trigger_id for row in await ledger.all()] == ["r"]

    @pytest.mark.asyncio
    async def test_list_failure_assumes_no_live_triggers(
        self, reconciler, repository, backend, make_reminder,
    ):
        await repository.add_many([make_reminder(id="r", time="10:00")])
        backend.fail_list = True

        report = await reconciler.run()

        assert report.restored == ["r"]
        assert "r" in backend.live
