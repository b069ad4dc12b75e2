"""
Unit tests for sequencer/scheduler.py

Tests cover:
- A day of one-minute ticks against a fresh LinkedIn account
- Connect, wait, then branch on acceptance across several days
- No execution dispatched twice when two schedulers share a store
- Tenant in-flight caps and round-robin fairness
- Per (tenant, platform) concurrency lanes
- Unhandled dispatcher errors
- Enrollment (idempotent, tenant caps)
- Daily maintenance and the run loop
"""

import asyncio
import unittest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sequencer.dispatcher import DispatchOutcome, Dispatcher
from sequencer.execution_store import ExecutionStatus
from sequencer.rate_limits import CONNECTION_REQUEST
from sequencer.scheduler import Scheduler, TickReport
from sequencer.sequences import END, SequenceDefinition
from tests.fakes import FakeContacts, FakeGateway, FakeSequences, FakeStore, make_tenants


def run_async(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


DAY = datetime(2026, 3, 3)

CONNECT_ONLY = SequenceDefinition.from_dict({
    "id": "connect-only",
    "platforms": ["linkedin"],
    "steps": [{"id": "connect", "kind": "send", "channel": "linkedin",
               "action": CONNECTION_REQUEST, "body": "Hi {{first_name}}"}],
})

MESSAGE_ONLY = SequenceDefinition.from_dict({
    "id": "message-only",
    "platforms": ["linkedin"],
    "steps": [{"id": "msg", "kind": "send", "channel": "linkedin", "body": "Hello"}],
})

CONNECT_THEN_FOLLOW_UP = SequenceDefinition.from_dict({
    "id": "connect-then-follow-up",
    "platforms": ["linkedin"],
    "steps": [
        {"id": "connect", "kind": "send", "channel": "linkedin",
         "action": CONNECTION_REQUEST, "body": "Hi {{first_name}}"},
        {"id": "wait-2d", "kind": "wait", "delay": {"delay": 2, "unit": "days"}},
        {"id": "check", "kind": "branch", "channel": "linkedin", "branches": [["accepted", END]]},
        {"id": "reminder", "kind": "send", "channel": "linkedin", "body": "Following up, {{first_name}}"},
    ],
})


def build(definition, connected_at, enforce_cooldown=False, gateway=None, tenant_ids=("t1",), **scheduler_kwargs):
    store = FakeStore()
    tenants = make_tenants(store)
    contacts = FakeContacts()
    for tenant_id in tenant_ids:
        tenants.accounts.connect(tenant_id, "linkedin", f"acc-{tenant_id}", connected_at=connected_at)
    gateway = gateway or FakeGateway()
    dispatcher = Dispatcher(
        store, FakeSequences(definition), tenants, gateway,
        contacts=contacts,
        timeout=1,
        enforce_cooldown=enforce_cooldown,
        alert_config_error=AsyncMock(),
        alert_restricted=AsyncMock(),
    )
    scheduler = Scheduler(store, dispatcher, tenants, **scheduler_kwargs)
    return scheduler, store, tenants, contacts, gateway


def enroll(scheduler, contacts, tenant_id, count, definition, now, campaign_id="camp"):
    for i in range(1, count + 1):
        contact_id = f"{tenant_id}-c{i}"
        contacts.add(tenant_id, contact_id, first_name=f"Contact {i}",
                     linkedin_url=f"https://linkedin.com/in/{contact_id}")
        scheduler.enroll(tenant_id, campaign_id, contact_id, definition, now=now)


class TestDailyPacing(unittest.TestCase):

    def test_fresh_account_sends_daily_limit_then_waits_for_tomorrow(self):
        """New account: 20 connection requests x 0.2 = 4 per day, 2 min apart."""
        start = DAY.replace(hour=9)
        scheduler, store, tenants, contacts, gateway = build(
            CONNECT_ONLY, connected_at=start, enforce_cooldown=True,
        )
        enroll(scheduler, contacts, "t1", 5, CONNECT_ONLY, start)

        async def one_day():
            now = start
            while now < DAY + timedelta(days=1):
                await scheduler.tick(now)
                now += timedelta(minutes=1)

        run_async(one_day())

        self.assertEqual(len(gateway.sent), 4)
        self.assertEqual(tenants.counters.count("t1", "linkedin", CONNECTION_REQUEST, start), 4)

        statuses = [d["status"] for d in store.executions.values()]
        self.assertEqual(statuses.count(ExecutionStatus.COMPLETED), 4)
        waiting = [d for d in store.executions.values() if d["status"] == ExecutionStatus.SCHEDULED]
        self.assertEqual(len(waiting), 1)
        self.assertEqual(waiting[0]["next_due_at"], DAY + timedelta(days=1))
        self.assertEqual(waiting[0]["attempts"], 0)

    def test_next_day_sends_the_remaining_contact(self):
        start = DAY.replace(hour=9)
        scheduler, store, tenants, contacts, gateway = build(
            CONNECT_ONLY, connected_at=start, enforce_cooldown=True,
        )
        enroll(scheduler, contacts, "t1", 5, CONNECT_ONLY, start)

        async def ticks():
            now = start
            while now < start + timedelta(minutes=10):
                await scheduler.tick(now)
                now += timedelta(minutes=1)
            await scheduler.tick(DAY + timedelta(days=1))

        run_async(ticks())
        self.assertEqual(len(gateway.sent), 5)


class TestConnectWaitBranch(unittest.TestCase):

    def setUp(self):
        self.start = DAY.replace(hour=9)
        self.scheduler, self.store, self.tenants, contacts, self.gateway = build(
            CONNECT_THEN_FOLLOW_UP, connected_at=self.start, gateway=FakeGateway(delay=0.01),
            per_tenant_platform=5, max_concurrency=10,
        )
        enroll(self.scheduler, contacts, "t1", 5, CONNECT_THEN_FOLLOW_UP, self.start)

    def by_contact(self, contact_id):
        return next(d for d in self.store.executions.values() if d["contact_id"] == contact_id)

    def test_simultaneous_sends_stop_at_fresh_account_budget(self):
        report = run_async(self.scheduler.tick(self.start))

        self.assertEqual(report.claimed, 5)
        self.assertEqual(report.outcomes, {DispatchOutcome.ADVANCED: 4, DispatchOutcome.RATE_LIMITED: 1})
        self.assertEqual(len(self.gateway.sent), 4)
        self.assertEqual(self.gateway.max_active, 4)
        self.assertEqual(self.tenants.counters.count("t1", "linkedin", CONNECTION_REQUEST, self.start), 4)

        denied = [d for d in self.store.executions.values() if d["current_step"] == "connect"]
        self.assertEqual(len(denied), 1)
        self.assertEqual(denied[0]["status"], ExecutionStatus.SCHEDULED)
        self.assertEqual(denied[0]["next_due_at"], DAY + timedelta(days=1))
        self.assertEqual(denied[0]["attempts"], 0)

        waiting = [d for d in self.store.executions.values() if d["current_step"] == "wait-2d"]
        self.assertEqual(len(waiting), 4)
        self.assertTrue(all(d["next_due_at"] == self.start + timedelta(days=2) for d in waiting))

    def test_accepted_contacts_complete_and_others_get_the_reminder(self):
        run_async(self.scheduler.tick(self.start))
        late = next(d["contact_id"] for d in self.store.executions.values() if d["current_step"] == "connect")
        on_time = sorted(d["contact_id"] for d in self.store.executions.values() if d["contact_id"] != late)
        for contact_id in on_time[:2]:
            self.gateway.signals[f"https://linkedin.com/in/{contact_id}"] = {"accepted": True}

        report = run_async(self.scheduler.tick(DAY + timedelta(days=1)))
        self.assertEqual(report.claimed, 1)
        self.assertEqual(len(self.gateway.sent), 5)

        check_at = self.start + timedelta(days=2)
        run_async(self.scheduler.tick(check_at))
        self.assertTrue(all(self.by_contact(c)["current_step"] == "check" for c in on_time))
        run_async(self.scheduler.tick(check_at))

        for contact_id in on_time[:2]:
            self.assertEqual(self.by_contact(contact_id)["status"], ExecutionStatus.COMPLETED)
        for contact_id in on_time[2:]:
            doc = self.by_contact(contact_id)
            self.assertEqual(doc["current_step"], "reminder")
            self.assertEqual(doc["status"], ExecutionStatus.SCHEDULED)
        self.assertEqual(self.by_contact(late)["current_step"], "wait-2d")
        self.assertEqual(self.by_contact(late)["status"], ExecutionStatus.WAITING)
        # Branch lookups never send
        self.assertEqual(len(self.gateway.sent), 5)


class TestClaiming(unittest.TestCase):

    def test_two_schedulers_never_send_twice(self):
        now = DAY.replace(hour=15)
        first, store, tenants, contacts, gateway = build(
            MESSAGE_ONLY, connected_at=now - timedelta(days=200), batch_size=3,
        )
        second = Scheduler(store, first.dispatcher, tenants, batch_size=3)
        enroll(first, contacts, "t1", 6, MESSAGE_ONLY, now)

        async def both():
            return await asyncio.gather(first.tick(now), second.tick(now))

        reports = run_async(both())

        self.assertEqual(sum(r.claimed for r in reports), 6)
        self.assertEqual(len(gateway.sent), 6)
        self.assertEqual(len({s["key"] for s in gateway.sent}), 6)

    def test_claimed_execution_not_reclaimed(self):
        now = DAY.replace(hour=15)
        scheduler, store, _, contacts, _ = build(MESSAGE_ONLY, connected_at=now - timedelta(days=200))
        enroll(scheduler, contacts, "t1", 2, MESSAGE_ONLY, now)

        self.assertEqual(len(store.claim_due(now, 10)), 2)
        self.assertEqual(store.claim_due(now, 10), [])

    def test_empty_tick(self):
        now = DAY.replace(hour=15)
        scheduler, *_ = build(MESSAGE_ONLY, connected_at=now)
        report = run_async(scheduler.tick(now))
        self.assertEqual(report, TickReport())


class TestTenantCaps(unittest.TestCase):

    def test_capped_tenant_claims_only_its_room(self):
        now = DAY.replace(hour=15)
        scheduler, store, tenants, contacts, gateway = build(
            MESSAGE_ONLY, connected_at=now - timedelta(days=200),
        )
        tenants.accounts.limits["t1"] = {"max_in_flight": 2}
        enroll(scheduler, contacts, "t1", 5, MESSAGE_ONLY, now)

        report = run_async(scheduler.tick(now))

        self.assertEqual(report.claimed, 2)
        self.assertEqual(report.dispatched, 2)
        self.assertEqual(report.deferred, 0)
        self.assertEqual(len(gateway.sent), 2)
        scheduled = [d for d in store.executions.values() if d["status"] == ExecutionStatus.SCHEDULED]
        self.assertEqual(len(scheduled), 3)
        self.assertTrue(all(d["next_due_at"] == now for d in scheduled))
        self.assertTrue(all("claimed_from" not in d for d in scheduled))

    def test_backlogged_tenant_does_not_lock_out_others(self):
        now = DAY.replace(hour=15)
        scheduler, store, tenants, contacts, gateway = build(
            MESSAGE_ONLY, connected_at=now - timedelta(days=200), tenant_ids=("t1", "t2"), batch_size=10,
        )
        tenants.accounts.limits["t1"] = {"max_in_flight": 2}
        enroll(scheduler, contacts, "t1", 40, MESSAGE_ONLY, now - timedelta(minutes=10))
        enroll(scheduler, contacts, "t2", 1, MESSAGE_ONLY, now - timedelta(minutes=5))

        report = run_async(scheduler.tick(now))

        self.assertEqual(report.claimed, 3)
        recipients = [s["recipient"] for s in gateway.sent]
        self.assertIn("https://linkedin.com/in/t2-c1", recipients)
        self.assertEqual(sum(1 for r in recipients if "/t1-" in r), 2)

    def test_tenant_already_at_cap_is_not_claimed(self):
        now = DAY.replace(hour=15)
        scheduler, store, tenants, contacts, gateway = build(
            MESSAGE_ONLY, connected_at=now - timedelta(days=200), tenant_ids=("t1", "t2"),
        )
        tenants.accounts.limits["t1"] = {"max_in_flight": 2}
        enroll(scheduler, contacts, "t1", 4, MESSAGE_ONLY, now - timedelta(minutes=10))
        enroll(scheduler, contacts, "t2", 1, MESSAGE_ONLY, now - timedelta(minutes=5))
        # Another scheduler holds t1's two slots
        held = store.claim_due(now, 2)

        report = run_async(scheduler.tick(now))

        self.assertEqual(report.claimed, 1)
        self.assertEqual([s["recipient"] for s in gateway.sent], ["https://linkedin.com/in/t2-c1"])
        for execution in held:
            self.assertEqual(store.get(execution["_id"])["status"], ExecutionStatus.IN_FLIGHT)

    def test_busy_tenant_does_not_starve_another(self):
        now = DAY.replace(hour=15)
        scheduler, store, tenants, contacts, gateway = build(
            MESSAGE_ONLY, connected_at=now - timedelta(days=200), tenant_ids=("t1", "t2"),
        )
        tenants.accounts.limits["t1"] = {"max_in_flight": 3}
        enroll(scheduler, contacts, "t1", 8, MESSAGE_ONLY, now)
        enroll(scheduler, contacts, "t2", 1, MESSAGE_ONLY, now + timedelta(seconds=1))

        run_async(scheduler.tick(now + timedelta(seconds=1)))

        recipients = [s["recipient"] for s in gateway.sent]
        self.assertIn("https://linkedin.com/in/t2-c1", recipients)
        self.assertEqual(sum(1 for r in recipients if "/t1-" in r), 3)

    def test_waiting_execution_released_back_to_waiting(self):
        now = DAY.replace(hour=15)
        wait_first = SequenceDefinition.from_dict({
            "id": "wait-first",
            "platforms": ["linkedin"],
            "steps": [{"id": "w", "kind": "wait"}, {"id": "msg", "kind": "send", "channel": "linkedin"}],
        })
        scheduler, store, tenants, contacts, _ = build(wait_first, connected_at=now)
        tenants.accounts.limits["t1"] = {"max_in_flight": 0}
        enroll(scheduler, contacts, "t1", 1, wait_first, now)

        run_async(scheduler.tick(now))

        doc = next(iter(store.executions.values()))
        self.assertEqual(doc["status"], ExecutionStatus.WAITING)


class TestConcurrency(unittest.TestCase):

    def test_lane_bounds_sends_per_tenant_platform(self):
        now = DAY.replace(hour=15)
        gateway = FakeGateway(delay=0.01)
        scheduler, store, _, contacts, _ = build(
            MESSAGE_ONLY, connected_at=now - timedelta(days=200), gateway=gateway,
            per_tenant_platform=2, max_concurrency=10,
        )
        enroll(scheduler, contacts, "t1", 6, MESSAGE_ONLY, now)

        report = run_async(scheduler.tick(now))

        self.assertEqual(report.dispatched, 6)
        self.assertEqual(len(gateway.sent), 6)
        self.assertLessEqual(gateway.max_active, 2)

    def test_global_limit(self):
        now = DAY.replace(hour=15)
        gateway = FakeGateway(delay=0.01)
        scheduler, store, _, contacts, _ = build(
            MESSAGE_ONLY, connected_at=now - timedelta(days=200), gateway=gateway,
            tenant_ids=("t1", "t2", "t3"), per_tenant_platform=5, max_concurrency=1,
        )
        for tenant_id in ("t1", "t2", "t3"):
            enroll(scheduler, contacts, tenant_id, 2, MESSAGE_ONLY, now)

        run_async(scheduler.tick(now))

        self.assertEqual(len(gateway.sent), 6)
        self.assertEqual(gateway.max_active, 1)


class TestErrorHandling(unittest.TestCase):

    def test_unhandled_dispatch_error_is_rescheduled(self):
        now = DAY.replace(hour=15)
        scheduler, store, _, contacts, _ = build(MESSAGE_ONLY, connected_at=now)
        enroll(scheduler, contacts, "t1", 2, MESSAGE_ONLY, now)
        scheduler.dispatcher.execute = AsyncMock(side_effect=RuntimeError("boom"))

        report = run_async(scheduler.tick(now))

        self.assertEqual(report.errors, 2)
        self.assertEqual(report.dispatched, 0)
        for doc in store.executions.values():
            self.assertEqual(doc["status"], ExecutionStatus.SCHEDULED)
            self.assertEqual(doc["attempts"], 1)
            self.assertEqual(doc["last_error"], "RuntimeError: boom")
            self.assertGreater(doc["next_due_at"], now)

    def test_failed_reschedule_does_not_lose_the_batch(self):
        now = DAY.replace(hour=15)
        scheduler, store, _, contacts, gateway = build(MESSAGE_ONLY, connected_at=now - timedelta(days=200))
        enroll(scheduler, contacts, "t1", 2, MESSAGE_ONLY, now)
        execute = scheduler.dispatcher.execute

        async def flaky_execute(execution, at):
            if execution["contact_id"] == "t1-c1":
                raise RuntimeError("boom")
            return await execute(execution, at)

        scheduler.dispatcher.execute = flaky_execute
        store.reschedule = MagicMock(side_effect=RuntimeError("store unavailable"))

        report = run_async(scheduler.tick(now))

        self.assertEqual(report.claimed, 2)
        self.assertEqual(report.errors, 1)
        self.assertEqual(report.dispatched, 1)
        self.assertEqual(report.outcomes, {DispatchOutcome.COMPLETED: 1})
        self.assertEqual([s["recipient"] for s in gateway.sent], ["https://linkedin.com/in/t1-c2"])
        self.assertEqual(scheduler.summary()["totals"]["completed"], 1)

    def test_outcomes_are_counted(self):
        now = DAY.replace(hour=15)
        scheduler, _, _, contacts, _ = build(MESSAGE_ONLY, connected_at=now - timedelta(days=200))
        enroll(scheduler, contacts, "t1", 3, MESSAGE_ONLY, now)

        report = run_async(scheduler.tick(now))

        self.assertEqual(report.outcomes, {DispatchOutcome.COMPLETED: 3})
        summary = scheduler.summary()
        self.assertEqual(summary["totals"]["sent"], 3)
        self.assertEqual(summary["tenants"]["t1"]["completed"], 3)


class TestEnrollment(unittest.TestCase):

    def test_enroll_is_idempotent(self):
        now = DAY.replace(hour=15)
        scheduler, store, tenants, contacts, _ = build(MESSAGE_ONLY, connected_at=now)
        tenants.accounts.limits["t1"] = {"max_contacts_per_campaign": 1}

        first = scheduler.enroll("t1", "camp", "c1", MESSAGE_ONLY, now=now)
        again = scheduler.enroll("t1", "camp", "c1", MESSAGE_ONLY, now=now)

        self.assertEqual(first["_id"], again["_id"])
        self.assertEqual(len(store.executions), 1)

    def test_enroll_many_stops_at_campaign_cap(self):
        now = DAY.replace(hour=15)
        scheduler, store, tenants, _, _ = build(MESSAGE_ONLY, connected_at=now)
        tenants.accounts.limits["t1"] = {"max_contacts_per_campaign": 2}

        result = scheduler.enroll_many("t1", "camp", ["c1", "c2", "c3", "c4"], MESSAGE_ONLY)

        self.assertEqual(result, {"enrolled": 2, "skipped": 2})
        self.assertEqual(len(store.executions), 2)

    def test_reenroll_after_completion_creates_new_execution(self):
        now = DAY.replace(hour=15)
        scheduler, store, _, contacts, _ = build(MESSAGE_ONLY, connected_at=now - timedelta(days=200))
        enroll(scheduler, contacts, "t1", 1, MESSAGE_ONLY, now)
        run_async(scheduler.tick(now))

        scheduler.enroll("t1", "camp", "t1-c1", MESSAGE_ONLY, now=now)

        self.assertEqual(len(store.executions), 2)


class TestMaintenance(unittest.TestCase):

    @patch("sequencer.scheduler.send_daily_summary", new_callable=AsyncMock)
    def test_day_change_sends_summary_and_sweeps(self, mock_summary):
        now = DAY.replace(hour=23, minute=59)
        scheduler, _, tenants, _, _ = build(MESSAGE_ONLY, connected_at=now)
        tenants.counters.seed("t1", "linkedin", "message", DAY - timedelta(days=30), 5)
        scheduler._totals["sent"] = 7

        run_async(scheduler._maintenance(now))
        mock_summary.assert_not_awaited()
        self.assertEqual(tenants.counters.buckets, {})

        run_async(scheduler._maintenance(now + timedelta(minutes=1)))
        mock_summary.assert_awaited_once()
        self.assertEqual(mock_summary.await_args[0][0]["totals"], {"sent": 7})
        self.assertEqual(scheduler.summary()["totals"], {})

    def test_stale_claims_released(self):
        now = DAY.replace(hour=15)
        scheduler, store, _, contacts, _ = build(MESSAGE_ONLY, connected_at=now)
        enroll(scheduler, contacts, "t1", 1, MESSAGE_ONLY, now)
        store.claim_due(now, 1)
        scheduler._day = now.strftime("%Y-%m-%d")

        run_async(scheduler._maintenance(now + timedelta(hours=1)))

        doc = next(iter(store.executions.values()))
        self.assertEqual(doc["status"], ExecutionStatus.SCHEDULED)


class TestRunLoop(unittest.TestCase):

    def test_run_stops_on_shutdown(self):
        now = DAY.replace(hour=15)
        scheduler, _, _, contacts, gateway = build(
            MESSAGE_ONLY, connected_at=now - timedelta(days=200), tick_interval=0.01,
        )
        scheduler.clock = lambda: now
        enroll(scheduler, contacts, "t1", 2, MESSAGE_ONLY, now)

        async def run_briefly():
            shutdown = asyncio.Event()
            task = asyncio.create_task(scheduler.run(shutdown))
            await asyncio.sleep(0.05)
            shutdown.set()
            await asyncio.wait_for(task, timeout=1)

        with patch("sequencer.scheduler.send_daily_summary", new_callable=AsyncMock):
            run_async(run_briefly())

        self.assertEqual(len(gateway.sent), 2)

    def test_graceful_shutdown_closes_gateway_and_beats(self):
        now = DAY.replace(hour=15)
        heartbeat = MagicMock()
        scheduler, _, _, _, gateway = build(MESSAGE_ONLY, connected_at=now, heartbeat=heartbeat)

        run_async(scheduler._graceful_shutdown())

        self.assertTrue(gateway.closed)
        self.assertEqual(heartbeat.beat.call_args.kwargs["status"], "stopped")


if __name__ == "__main__":
    unittest.main()
