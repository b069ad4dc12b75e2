"""
Tenant Isolation: every piece of shared capacity is keyed by tenant.

- Accounts and send counters are (tenant, platform) scoped, so one tenant
  exhausting LinkedIn never affects another tenant's LinkedIn budget.
- Counter reservations are atomic increment-with-ceiling updates on a single
  Mongo document, safe across processes.
- Claimed batches are interleaved round-robin by tenant and trimmed to each
  tenant's in-flight cap before dispatch.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional, Tuple

import config
from database import SendCounters, TenantAccounts, day_key, get_db
from sequencer.errors import ConfigurationError, TenantLimitExceeded
from sequencer.rate_limits import (
    PLATFORM_LIMITS,
    AccountState,
    RateLimitBudget,
    cooldown_for,
    window_days,
)

logger = logging.getLogger("sequencer.tenants")


@dataclass(frozen=True)
class TenantLimits:
    max_in_flight: int = config.TENANT_MAX_IN_FLIGHT
    max_campaigns: int = config.TENANT_MAX_CAMPAIGNS
    max_contacts_per_campaign: int = config.TENANT_MAX_CONTACTS_PER_CAMPAIGN
    max_executions_per_day: int = config.TENANT_MAX_EXECUTIONS_PER_DAY

    @classmethod
    def from_overrides(cls, overrides: Mapping) -> "TenantLimits":
        known = {k: int(v) for k, v in (overrides or {}).items() if k in cls.__dataclass_fields__}
        return cls(**known)


class TenantDirectory:
    """Tenant accounts, hard caps and per-tenant send counters."""

    def __init__(self, db=None, store=None):
        db = db if db is not None else get_db()
        self.accounts = TenantAccounts(db)
        self.counters = SendCounters(db)
        # ExecutionStore, only needed for enrollment caps
        self.store = store

    # ── Accounts ─────────────────────────────────────────────────────

    def resolve_account(self, tenant_id: str, platform: str, now: datetime) -> AccountState:
        """
        Snapshot of the tenant's account on `platform` with today's and the
        trailing week's counters for every action kind the platform limits.
        """
        account = self.accounts.get(tenant_id, platform)
        if not account:
            raise ConfigurationError(f"Tenant {tenant_id} has no {platform} account connected")
        if account.get("status") != TenantAccounts.STATUS_CONNECTED:
            raise ConfigurationError(f"Tenant {tenant_id} {platform} account is {account.get('status')}")

        connected_at = account.get("connected_at") or now
        age_days = max(0, (now - connected_at).days)

        days = window_days(now)
        today = days[-1]
        daily, weekly, history, last_action = {}, {}, {}, {}
        for kind in PLATFORM_LIMITS.get(platform, {}).get("daily", {}):
            window = self.counters.get_window(tenant_id, platform, kind, days)
            history[kind] = window
            daily[kind] = window.get(today, 0)
            weekly[kind] = sum(window.values())
            last = self.counters.last_action_at(tenant_id, platform, kind)
            if last is not None:
                last_action[kind] = last

        return AccountState(
            tenant_id=tenant_id,
            platform=platform,
            account_ref=account["account_ref"],
            account_age_days=age_days,
            violation_count=account.get("violation_count", 0),
            warmed_up=account.get("warmed_up", False),
            daily_counts=daily,
            weekly_counts=weekly,
            history=history,
            last_action_at=last_action,
        )

    def record_violation(self, tenant_id: str, platform: str) -> None:
        self.accounts.record_violation(tenant_id, platform)
        logger.warning("account_violation_recorded", extra={"tenant_id": tenant_id, "platform": platform})

    # ── Counters ─────────────────────────────────────────────────────

    def reserve_send(self, tenant_id: str, platform: str, kind: str, budget: RateLimitBudget,
                     now: datetime, enforce_cooldown: bool = None) -> Optional[int]:
        """
        Atomically take one unit of today's budget. Returns the new count,
        or None when another dispatcher got there first.
        """
        if enforce_cooldown is None:
            enforce_cooldown = config.ENFORCE_ACTION_COOLDOWN
        not_before = None
        if enforce_cooldown:
            not_before = now - cooldown_for(platform)

        count = self.counters.reserve(tenant_id, platform, kind, now, budget.ceiling, not_before)
        if count is None:
            logger.debug(
                "reservation_refused",
                extra={"tenant_id": tenant_id, "platform": platform, "kind": kind, "ceiling": budget.ceiling},
            )
        return count

    def increment_counter(self, tenant_id: str, platform: str, kind: str, now: datetime) -> int:
        return self.counters.increment(tenant_id, platform, kind, now)

    def release_send(self, tenant_id: str, platform: str, kind: str, now: datetime) -> None:
        self.counters.release(tenant_id, platform, kind, now)

    def sweep_counters(self, now: datetime, retention_days: int = None) -> int:
        """Drop counter buckets that fell out of the rolling window."""
        retention_days = retention_days or config.COUNTER_RETENTION_DAYS
        cutoff = day_key(now - timedelta(days=retention_days))
        removed = self.counters.sweep(cutoff)
        if removed:
            logger.info(f"Swept {removed} expired counter buckets (before {cutoff})")
        return removed

    # ── Hard caps ────────────────────────────────────────────────────

    def limits_for(self, tenant_id: str) -> TenantLimits:
        return TenantLimits.from_overrides(self.accounts.get_limits(tenant_id))

    def check_enrollment(self, tenant_id: str, campaign_id: str, now: datetime) -> None:
        """Raise TenantLimitExceeded if enrolling one more contact would break a cap."""
        if self.store is None:
            raise ConfigurationError("TenantDirectory needs an ExecutionStore to check enrollment caps")
        limits = self.limits_for(tenant_id)

        campaigns = self.store.active_campaigns(tenant_id)
        if campaign_id not in campaigns and len(campaigns) >= limits.max_campaigns:
            raise TenantLimitExceeded(
                f"Tenant {tenant_id} already runs {len(campaigns)} campaigns (max {limits.max_campaigns})"
            )

        contacts = self.store.count_campaign_contacts(tenant_id, campaign_id)
        if contacts >= limits.max_contacts_per_campaign:
            raise TenantLimitExceeded(
                f"Campaign {campaign_id} has {contacts} contacts (max {limits.max_contacts_per_campaign})"
            )

        start_of_day = datetime(now.year, now.month, now.day)
        today = self.store.count_enrolled_since(tenant_id, start_of_day)
        if today >= limits.max_executions_per_day:
            raise TenantLimitExceeded(
                f"Tenant {tenant_id} enrolled {today} executions today (max {limits.max_executions_per_day})"
            )


# ==============================================================================
# Batch fairness
# ==============================================================================

def fair_order(executions: List[Dict]) -> List[Dict]:
    """
    Interleave a claimed batch round-robin by tenant, keeping each tenant's
    own order. Tenants appear in order of their first execution.
    """
    queues: "OrderedDict[str, List[Dict]]" = OrderedDict()
    for execution in executions:
        queues.setdefault(execution["tenant_id"], []).append(execution)

    ordered = []
    while queues:
        for tenant_id in list(queues):
            queue = queues[tenant_id]
            ordered.append(queue.pop(0))
            if not queue:
                del queues[tenant_id]
    return ordered


def apply_tenant_caps(executions: List[Dict], in_flight_counts: Mapping[str, int],
                      limits: Mapping[str, TenantLimits]) -> Tuple[List[Dict], List[Dict]]:
    """
    Split a batch into (dispatchable, deferred) so no tenant goes above its
    max_in_flight. `in_flight_counts` is work already running elsewhere.
    """
    running = dict(in_flight_counts)
    dispatchable, deferred = [], []
    for execution in executions:
        tenant_id = execution["tenant_id"]
        cap = limits.get(tenant_id, TenantLimits()).max_in_flight
        if running.get(tenant_id, 0) >= cap:
            deferred.append(execution)
            continue
        running[tenant_id] = running.get(tenant_id, 0) + 1
        dispatchable.append(execution)
    return dispatchable, deferred
