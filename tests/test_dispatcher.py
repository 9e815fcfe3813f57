"""
调度触发测试
"""
import asyncio
import pytest
from datetime import datetime, timezone

from recipe_engine.core import ScheduleDispatcher
from recipe_engine.exceptions import NotFoundError
from recipe_engine.models import Schedule, ExecutionStatus

from conftest import SCOPE


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
async def recipe(recipe_store, linear_steps):
    return await recipe_store.create("bob", "Digest", scope_id=SCOPE, steps=linear_steps)


class TestDueSweep:
    """到期扫描"""

    async def test_fires_due_schedule_once(self, dispatcher, registry, recipe, clock):
        schedule = await registry.create("bob", recipe.id, "morning", cron="0 9 * * *")

        assert await dispatcher.process_due_schedules() == []

        clock.advance(hours=1)
        started = await dispatcher.process_due_schedules()

        assert len(started) == 1
        execution = started[0]
        assert execution.recipe_id == recipe.id
        assert execution.status == ExecutionStatus.RUNNING
        assert execution.context == {
            "triggered_by": "cron",
            "schedule_id": schedule.id,
            "scheduled_for": "2024-01-15T09:00:00+00:00",
        }

        fired = await registry.get(schedule.id, "bob")
        assert fired.last_run_at == utc(2024, 1, 15, 9, 0)
        assert fired.next_run_at == utc(2024, 1, 16, 9, 0)

        # 同一时刻再次扫描不会重复触发
        assert await dispatcher.process_due_schedules() == []

    async def test_concurrent_sweeps_fire_once(self, registry, engine, recipe, clock):
        await registry.create("bob", recipe.id, "morning", cron="0 9 * * *")
        clock.advance(hours=1)
        sweepers = [ScheduleDispatcher(registry, engine, clock=clock) for _ in range(3)]

        results = await asyncio.gather(*(s.process_due_schedules() for s in sweepers))

        assert sum(len(started) for started in results) == 1

    async def test_stale_claim_does_not_fire(self, dispatcher, registry, recipe, clock, repositories):
        schedule = await registry.create("bob", recipe.id, "morning", cron="0 9 * * *")
        clock.advance(hours=1)
        # 另一个扫描者已经认领了本次触发
        (stale,) = await registry.list_due(clock.now)
        assert await registry.claim(stale, clock.now)

        started = await dispatcher.process_due_schedules()

        assert started == []
        assert await repositories["executions"].list_by_recipe(recipe.id) == []
        assert (await registry.get(schedule.id, "bob")).next_run_at == utc(2024, 1, 16, 9, 0)

    async def test_malformed_schedule_is_skipped(self, dispatcher, registry, recipe, clock, repositories):
        broken = Schedule(
            recipe_id=recipe.id,
            name="broken",
            cron="61 * * * *",
            next_run_at=utc(2024, 1, 15, 8, 30),
            created_at=clock.now,
        )
        await repositories["schedules"].save(broken)
        healthy = await registry.create("bob", recipe.id, "morning", cron="0 9 * * *")
        clock.advance(hours=1)

        started = await dispatcher.process_due_schedules()

        assert [e.context["schedule_id"] for e in started] == [healthy.id]
        assert (await repositories["schedules"].get(broken.id)).next_run_at is None

    async def test_failing_schedule_does_not_abort_sweep(self, dispatcher, registry, recipe_store, recipe, clock, repositories):
        orphan = Schedule(
            recipe_id="deleted-recipe",
            name="orphan",
            cron="0 9 * * *",
            next_run_at=utc(2024, 1, 15, 9, 0),
            created_at=clock.now,
        )
        await repositories["schedules"].save(orphan)
        healthy = await registry.create("bob", recipe.id, "morning", cron="0 9 * * *")
        clock.advance(hours=1)

        started = await dispatcher.process_due_schedules()

        assert [e.context["schedule_id"] for e in started] == [healthy.id]

    async def test_disabled_schedule_is_not_due(self, dispatcher, registry, recipe, clock):
        schedule = await registry.create("bob", recipe.id, "morning", cron="0 9 * * *")
        await registry.disable(schedule.id, "bob")
        clock.advance(days=1)

        assert await dispatcher.process_due_schedules() == []

    async def test_publishes_schedule_fired(self, dispatcher, registry, recipe, clock, published):
        await registry.create("bob", recipe.id, "morning", cron="0 9 * * *")
        clock.advance(hours=1)

        await dispatcher.process_due_schedules()

        assert published == ["execution.started", "schedule.fired"]


class TestEventAndManualTriggers:
    """事件触发与手动触发"""

    async def test_emit_event_starts_subscribed_schedules(self, dispatcher, registry, recipe, clock):
        subscribed = await registry.create("bob", recipe.id, "on deploy", event_trigger="deploy")
        disabled = await registry.create("bob", recipe.id, "muted", event_trigger="deploy", enabled=False)
        await registry.create("bob", recipe.id, "other", event_trigger="rollback")

        started = await dispatcher.emit_event("deploy", {"version": "1.4.0"})

        assert len(started) == 1
        assert started[0].context == {
            "triggered_by": "event",
            "schedule_id": subscribed.id,
            "event_name": "deploy",
            "payload": {"version": "1.4.0"},
        }
        assert (await registry.get(subscribed.id, "bob")).last_run_at == clock.now
        assert (await registry.get(disabled.id, "bob")).last_run_at is None

    async def test_emit_unknown_event(self, dispatcher):
        assert await dispatcher.emit_event("nobody-listens") == []

    async def test_manual_trigger_requires_editor(self, dispatcher, registry, recipe, clock):
        schedule = await registry.create("bob", recipe.id, "morning", cron="0 9 * * *")

        with pytest.raises(NotFoundError):
            await dispatcher.trigger_schedule(schedule.id, "carol")

        clock.advance(hours=2)
        execution = await dispatcher.trigger_schedule(schedule.id, "bob")

        assert execution.context["triggered_by"] == "manual"
        assert execution.context["actor_user_id"] == "bob"
        triggered = await registry.get(schedule.id, "bob")
        assert triggered.last_run_at == clock.now
        # 手动触发不改变 cron 节奏，错过的 09:00 仍由扫描补发
        assert triggered.next_run_at == utc(2024, 1, 15, 9, 0)

        (missed,) = await dispatcher.process_due_schedules()
        assert missed.context["scheduled_for"] == "2024-01-15T09:00:00+00:00"
        assert (await registry.get(schedule.id, "bob")).next_run_at == utc(2024, 1, 16, 9, 0)
