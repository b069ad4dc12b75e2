"""
Scheduler: polls for due executions and fans them out to the Dispatcher.

One tick:
    count in-flight per tenant
    → claim_due (atomic, oldest due first, tenants at their cap skipped)
    → fair_order (round-robin by tenant)
    → tenant caps (anything over a cap released untouched)
    → bounded worker pool: global semaphore + one semaphore per
      (tenant, platform) so a single tenant cannot monopolise a platform

The clock is injectable so tests can drive days of activity in
milliseconds. Waits are never slept through: a delayed step is simply an
execution whose next_due_at lies in the future.

Lifecycle:
    scheduler = Scheduler(store, dispatcher, tenants)
    await scheduler.start()   # blocks until SIGTERM/SIGINT
"""

import asyncio
import logging
import signal
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

import config
from database import Heartbeat
from sequencer.alerts import send_daily_summary
from sequencer.dispatcher import DispatchOutcome, DispatchResult, Dispatcher, compute_backoff
from sequencer.errors import TenantLimitExceeded
from sequencer.execution_store import ExecutionStore
from sequencer.sequences import SequenceDefinition
from sequencer.tenants import TenantDirectory, TenantLimits, apply_tenant_caps, fair_order

logger = logging.getLogger("sequencer.scheduler")


@dataclass
class TickReport:
    claimed: int = 0
    dispatched: int = 0
    deferred: int = 0
    errors: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)


class Scheduler:

    def __init__(
        self,
        store: ExecutionStore,
        dispatcher: Dispatcher,
        tenants: TenantDirectory,
        clock: Callable[[], datetime] = None,
        heartbeat: Heartbeat = None,
        batch_size: int = None,
        max_concurrency: int = None,
        per_tenant_platform: int = None,
        tick_interval: float = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.tenants = tenants
        self.clock = clock or datetime.utcnow
        self.heartbeat = heartbeat
        self.batch_size = batch_size or config.CLAIM_BATCH_SIZE
        self.max_concurrency = max_concurrency or config.MAX_CONCURRENT_DISPATCHES
        self.per_tenant_platform = per_tenant_platform or config.MAX_INFLIGHT_PER_TENANT_PLATFORM
        self.tick_interval = tick_interval or config.TICK_INTERVAL_SECONDS

        self._global: Optional[asyncio.Semaphore] = None
        self._lanes: Dict[Tuple[str, str], asyncio.Semaphore] = {}
        self._shutdown = asyncio.Event()
        self._tasks: list = []

        # Activity since the last daily summary
        self._day: Optional[str] = None
        self._totals: Counter = Counter()
        self._per_tenant: Dict[str, Counter] = defaultdict(Counter)

    # ── Enrollment ───────────────────────────────────────────────────

    def enroll(self, tenant_id: str, campaign_id: str, contact_id: str,
               definition: SequenceDefinition, variables: Dict = None, now: datetime = None) -> Dict:
        """
        Enroll a contact, enforcing tenant caps. Enrolling a contact that
        already has an active execution returns it without touching caps.
        """
        now = now or self.clock()
        existing = self.store.find_active(tenant_id, campaign_id, contact_id)
        if existing:
            return existing
        self.tenants.check_enrollment(tenant_id, campaign_id, now)
        return self.store.enroll_contact(tenant_id, campaign_id, contact_id, definition, now, variables)

    def enroll_many(self, tenant_id: str, campaign_id: str, contact_ids: List[str],
                    definition: SequenceDefinition, variables: Dict = None) -> Dict[str, int]:
        enrolled, skipped = 0, 0
        for contact_id in contact_ids:
            try:
                self.enroll(tenant_id, campaign_id, contact_id, definition, variables)
                enrolled += 1
            except TenantLimitExceeded as e:
                logger.warning(f"Enrollment stopped for campaign {campaign_id}: {e}")
                skipped = len(contact_ids) - enrolled
                break
        return {"enrolled": enrolled, "skipped": skipped}

    # ── Tick ─────────────────────────────────────────────────────────

    def _lane(self, tenant_id: str, platform: str) -> asyncio.Semaphore:
        key = (tenant_id, platform)
        if key not in self._lanes:
            self._lanes[key] = asyncio.Semaphore(self.per_tenant_platform)
        return self._lanes[key]

    def _platform_of(self, execution: Dict) -> str:
        definition = self.dispatcher.sequences.get(execution["sequence_id"], execution["sequence_version"])
        if definition is None or not definition.has_step(execution["current_step"]):
            return "none"
        return definition.step(execution["current_step"]).channel or "none"

    async def _dispatch_one(self, execution: Dict, now: datetime) -> Optional[DispatchResult]:
        lane = self._lane(execution["tenant_id"], self._platform_of(execution))
        async with self._global:
            async with lane:
                try:
                    return await self.dispatcher.execute(execution, now)
                except Exception as e:
                    # Dispatcher should never raise; keep the batch going if it does
                    logger.error(f"Unhandled dispatch error for {execution.get('_id')}: {e}", exc_info=True)
                    attempts = execution.get("attempts", 0) + 1
                    self.store.reschedule(
                        execution["_id"], now + compute_backoff(attempts),
                        attempts=attempts, last_error=f"{type(e).__name__}: {e}",
                    )
                    return None

    async def tick(self, now: datetime = None) -> TickReport:
        now = now or self.clock()
        if self._global is None:
            self._global = asyncio.Semaphore(self.max_concurrency)
        report = TickReport()

        in_flight = self.store.count_in_flight()
        limits: Dict[str, TenantLimits] = {}

        def room(tenant_id: str) -> int:
            if tenant_id not in limits:
                limits[tenant_id] = self.tenants.limits_for(tenant_id)
            return limits[tenant_id].max_in_flight - in_flight.get(tenant_id, 0)

        # Tenants at their cap are left out of the claim entirely
        full = {tenant_id for tenant_id in in_flight if room(tenant_id) <= 0}
        claimed = self.store.claim_due(now, self.batch_size, exclude_tenants=full, tenant_room=room)
        report.claimed = len(claimed)
        if not claimed:
            return report

        ordered = fair_order(claimed)
        for execution in ordered:
            room(execution["tenant_id"])
        dispatchable, deferred = apply_tenant_caps(ordered, in_flight, limits)
        for execution in deferred:
            self.store.release(execution["_id"])
        report.deferred = len(deferred)

        results = await asyncio.gather(
            *(self._dispatch_one(e, now) for e in dispatchable), return_exceptions=True
        )
        outcomes: Counter = Counter()
        for execution, result in zip(dispatchable, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"Dispatch of {execution.get('_id')} could not be recorded: {result}",
                    exc_info=result,
                )
                report.errors += 1
                continue
            if result is None:
                report.errors += 1
                continue
            report.dispatched += 1
            outcomes[result.outcome] += 1
            self._record(execution["tenant_id"], result)
        report.outcomes = dict(outcomes)

        logger.info(
            "tick_complete",
            extra={
                "claimed": report.claimed,
                "dispatched": report.dispatched,
                "deferred": report.deferred,
                "errors": report.errors,
            },
        )
        return report

    def _record(self, tenant_id: str, result: DispatchResult) -> None:
        keys = ["dispatched"]
        if result.sent:
            keys.append("sent")
        if result.outcome == DispatchOutcome.RATE_LIMITED:
            keys.append("rate_limited")
        elif result.outcome == DispatchOutcome.RETRY:
            keys.append("retried")
        elif result.outcome in (DispatchOutcome.COMPLETED, DispatchOutcome.FAILED):
            keys.append(result.outcome)
        for key in keys:
            self._totals[key] += 1
            self._per_tenant[tenant_id][key] += 1

    def summary(self) -> Dict:
        return {
            "totals": dict(self._totals),
            "tenants": {t: dict(c) for t, c in self._per_tenant.items()},
        }

    # ── Maintenance ──────────────────────────────────────────────────

    async def _maintenance(self, now: datetime) -> None:
        """Stale-claim recovery every tick; counter sweep and summary once a day."""
        self.store.release_stale(now, config.STALE_CLAIM_MINUTES)

        today = now.strftime("%Y-%m-%d")
        if self._day is None:
            self._day = today
            self.tenants.sweep_counters(now)
        elif today != self._day:
            await send_daily_summary(self.summary())
            self._totals.clear()
            self._per_tenant.clear()
            self._day = today
            self.tenants.sweep_counters(now)

    async def run(self, shutdown: asyncio.Event = None) -> None:
        """Tick every TICK_INTERVAL_SECONDS until `shutdown` is set."""
        if shutdown is not None:
            self._shutdown = shutdown
        logger.info("Scheduler loop started")

        while not self._shutdown.is_set():
            report = None
            try:
                now = self.clock()
                await self._maintenance(now)
                report = await self.tick(now)
            except Exception as e:
                logger.error(f"Scheduler loop error: {e}", exc_info=True)

            # A full batch means more work is due: go again without sleeping
            if report is not None and report.claimed >= self.batch_size:
                continue
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self.tick_interval)
                break
            except asyncio.TimeoutError:
                continue

        logger.info("Scheduler loop stopped")

    async def _heartbeat_loop(self):
        """Write a heartbeat every 5 minutes for health monitoring."""
        while not self._shutdown.is_set():
            try:
                self.heartbeat.beat("sequencer", status="running", totals=dict(self._totals))
            except Exception as e:
                logger.error(f"Heartbeat write failed: {e}")

            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=300)
                break
            except asyncio.TimeoutError:
                continue

    # ── Process lifecycle ────────────────────────────────────────────

    def _handle_signal(self, sig):
        logger.info(f"Received signal {sig.name}: initiating graceful shutdown")
        self._shutdown.set()

    def request_shutdown(self):
        self._shutdown.set()

    async def start(self):
        """Install signal handlers, run the loop, shut down cleanly."""
        logger.info("=" * 60)
        logger.info("Outreach Sequencer: Starting")
        logger.info("=" * 60)
        logger.info(f"Tick interval: {self.tick_interval}s, batch: {self.batch_size}")
        logger.info(f"Concurrency: {self.max_concurrency} global, {self.per_tenant_platform} per tenant+platform")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_signal, sig)

        released = self.store.release_stale(self.clock(), config.STALE_CLAIM_MINUTES)
        logger.info(f"Startup: released {released} stale claims")

        self._tasks = [asyncio.create_task(self.run(), name="scheduler_loop")]
        if self.heartbeat is not None:
            self._tasks.append(asyncio.create_task(self._heartbeat_loop(), name="heartbeat"))

        await self._shutdown.wait()
        await self._graceful_shutdown()

    async def _graceful_shutdown(self):
        logger.info("── Graceful Shutdown ──")
        if self._tasks:
            done, pending = await asyncio.wait(self._tasks, timeout=15)
            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        await self.dispatcher.gateway.close()

        if self.heartbeat is not None:
            try:
                self.heartbeat.beat("sequencer", status="stopped", stopped_at=datetime.utcnow())
            except Exception as e:
                logger.warning(f"Final heartbeat failed: {e}")

        logger.info("Shutdown complete")


def build_scheduler(db=None) -> Scheduler:
    """Wire the production object graph against MongoDB."""
    from database import CampaignStats, Contacts, DeliveryLog, ensure_indexes, get_db
    from sequencer.execution_store import SequenceStore
    from sequencer.gateway import GatewayRouter, RestGateway, SmtpGateway

    db = db if db is not None else get_db()
    ensure_indexes(db)

    stats = CampaignStats(db)
    store = ExecutionStore(db, stats=stats)
    tenants = TenantDirectory(db, store=store)
    gateway = GatewayRouter(RestGateway(), SmtpGateway(delivery_log=DeliveryLog(db)))
    dispatcher = Dispatcher(
        store, SequenceStore(db), tenants, gateway, contacts=Contacts(db), stats=stats,
    )
    return Scheduler(store, dispatcher, tenants, heartbeat=Heartbeat(db))


async def main():
    """Entry point for the sequencer process."""
    scheduler = build_scheduler()
    await scheduler.start()
