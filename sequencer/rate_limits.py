"""
Rate Limit Policy: safe per-tenant, per-platform send budgets.

Everything here is a pure function of an AccountState snapshot and an
explicit `now`. Nothing is persisted: budgets are recomputed on demand so
they can never go stale. The only mutable state (the counters) lives in
database.SendCounters and is reserved atomically by the tenant directory.

Budget = floor(base_limit × multiplier), at least 1 when the platform allows
the action at all, where the multiplier comes from account age and the
number of previous platform violations.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple


# ==============================================================================
# Platform base limits
# ==============================================================================

CONNECTION_REQUEST = "connection_request"
MESSAGE = "message"
PROFILE_VIEW = "profile_view"
GROUP_MESSAGE = "group_message"

ACTION_KINDS = (CONNECTION_REQUEST, MESSAGE, PROFILE_VIEW, GROUP_MESSAGE)

# Conservative defaults; LinkedIn allows ~100 connection requests/week before
# restricting, WhatsApp Business tier 1 is 256 conversations/day.
PLATFORM_LIMITS: Dict[str, Dict] = {
    "linkedin": {
        "daily": {CONNECTION_REQUEST: 20, MESSAGE: 50, PROFILE_VIEW: 150, GROUP_MESSAGE: 15},
        "weekly": {CONNECTION_REQUEST: 100, MESSAGE: 250},
        "cooldown_minutes": 2,
    },
    "whatsapp": {
        "daily": {MESSAGE: 256},
        "weekly": {MESSAGE: 1000},
        "cooldown_minutes": 1,
    },
    "messenger": {
        "daily": {MESSAGE: 100},
        "weekly": {MESSAGE: 500},
        "cooldown_minutes": 1,
    },
    "telegram": {
        "daily": {MESSAGE: 200, GROUP_MESSAGE: 20},
        "weekly": {MESSAGE: 1000},
        "cooldown_minutes": 0.5,
    },
    "email": {
        "daily": {MESSAGE: 500},
        "weekly": {MESSAGE: 2500},
        "cooldown_minutes": 0.1,
    },
}

SUPPORTED_PLATFORMS = tuple(PLATFORM_LIMITS)

WEEKLY_WINDOW_DAYS = 7


def window_days(now: datetime, days: int = WEEKLY_WINDOW_DAYS) -> List[str]:
    """Day keys of the trailing window ending today, oldest first."""
    return [(now - timedelta(days=offset)).strftime("%Y-%m-%d") for offset in range(days - 1, -1, -1)]


def start_of_next_day(now: datetime) -> datetime:
    return datetime(now.year, now.month, now.day) + timedelta(days=1)


# ==============================================================================
# Account snapshot + budget
# ==============================================================================

@dataclass(frozen=True)
class AccountState:
    """
    Read-only snapshot of one tenant account on one platform.

    daily_counts / weekly_counts are keyed by action kind. history holds the
    per-day counts of the trailing weekly window (kind -> {day: count}) and
    is only needed to find the next weekly boundary.
    """

    tenant_id: str
    platform: str
    account_ref: str
    account_age_days: int
    violation_count: int = 0
    warmed_up: bool = False
    daily_counts: Dict[str, int] = field(default_factory=dict)
    weekly_counts: Dict[str, int] = field(default_factory=dict)
    history: Dict[str, Dict[str, int]] = field(default_factory=dict)
    last_action_at: Dict[str, datetime] = field(default_factory=dict)


@dataclass(frozen=True)
class RateLimitBudget:
    daily_limit: int
    weekly_limit: Optional[int]
    daily_remaining: int
    weekly_remaining: Optional[int]
    cooldown_until: Optional[datetime]

    @property
    def exhausted(self) -> bool:
        if self.daily_remaining <= 0:
            return True
        return self.weekly_remaining is not None and self.weekly_remaining <= 0

    @property
    def ceiling(self) -> int:
        """Highest value today's counter may reach without breaking either window."""
        return self.daily_limit - self.daily_remaining + self.remaining

    @property
    def remaining(self) -> int:
        if self.weekly_remaining is None:
            return self.daily_remaining
        return max(0, min(self.daily_remaining, self.weekly_remaining))


def account_multiplier(account_age_days: int, violation_count: int = 0, warmed_up: bool = False) -> float:
    """Fraction of the base limits a given account may use."""
    if account_age_days < 7:
        multiplier = 0.2
    elif account_age_days < 30:
        multiplier = 0.5
    elif account_age_days < 90:
        multiplier = 0.75
    else:
        multiplier = 1.0

    if violation_count > 0:
        multiplier *= max(0.3, 1 - violation_count * 0.2)

    # Well-behaved, warmed-up accounts get a small boost
    if warmed_up and account_age_days > 30:
        multiplier = min(1.2, multiplier * 1.1)

    return multiplier


def _scale(base: Optional[int], multiplier: float) -> Optional[int]:
    if base is None:
        return None
    if base <= 0:
        return 0
    # round() first so 20 * 0.2 does not floor to 3 on float noise
    return max(1, int(math.floor(round(base * multiplier, 6))))


def safe_limits(platform: str, kind: str, account_age_days: int,
                violation_count: int = 0, warmed_up: bool = False) -> Tuple[int, Optional[int]]:
    """
    (daily_limit, weekly_limit) for an action on a platform.

    Unknown platforms or action kinds allow nothing. A weekly limit of None
    means the platform has no weekly cap for that kind.
    """
    table = PLATFORM_LIMITS.get(platform)
    if not table:
        return 0, 0
    base_daily = table["daily"].get(kind, 0)
    if not base_daily:
        return 0, 0

    multiplier = account_multiplier(account_age_days, violation_count, warmed_up)
    daily = _scale(base_daily, multiplier)
    weekly = _scale(table["weekly"].get(kind), multiplier)
    return daily, weekly


def cooldown_for(platform: str) -> timedelta:
    table = PLATFORM_LIMITS.get(platform, {})
    return timedelta(minutes=table.get("cooldown_minutes", 0))


def compute_budget(account: AccountState, platform: str = None, kind: str = MESSAGE) -> RateLimitBudget:
    """
    Remaining daily/weekly budget for `kind` plus the end of the current
    between-actions cooldown (None when the account has not acted yet).
    """
    platform = platform or account.platform
    daily_limit, weekly_limit = safe_limits(
        platform, kind, account.account_age_days, account.violation_count, account.warmed_up
    )

    used_today = account.daily_counts.get(kind, 0)
    daily_remaining = max(0, daily_limit - used_today)

    weekly_remaining = None
    if weekly_limit is not None:
        weekly_remaining = max(0, weekly_limit - account.weekly_counts.get(kind, 0))

    cooldown_until = None
    last = account.last_action_at.get(kind)
    if last is not None:
        cooldown_until = last + cooldown_for(platform)

    return RateLimitBudget(
        daily_limit=daily_limit,
        weekly_limit=weekly_limit,
        daily_remaining=daily_remaining,
        weekly_remaining=weekly_remaining,
        cooldown_until=cooldown_until,
    )


def should_deny(kind: str, account: AccountState, now: datetime, enforce_cooldown: bool = True) -> bool:
    """True when today's or this week's counter is at budget (or still cooling down)."""
    budget = compute_budget(account, account.platform, kind)
    if budget.exhausted:
        return True
    if enforce_cooldown and budget.cooldown_until is not None and now < budget.cooldown_until:
        return True
    return False


def _next_weekly_boundary(history: Dict[str, int], weekly_limit: int, now: datetime) -> datetime:
    """First future day whose trailing 7-day window drops below the weekly limit."""
    today = datetime(now.year, now.month, now.day)
    for ahead in range(1, WEEKLY_WINDOW_DAYS + 1):
        day = today + timedelta(days=ahead)
        keys = set(window_days(day))
        used = sum(count for key, count in history.items() if key in keys)
        if used < weekly_limit:
            return day
    return today + timedelta(days=WEEKLY_WINDOW_DAYS)


def deny_until(kind: str, account: AccountState, now: datetime, enforce_cooldown: bool = True) -> Optional[datetime]:
    """
    When a denied action may be retried: the next rolling-window boundary
    that lifts every active restriction. None when the action is allowed now.
    """
    budget = compute_budget(account, account.platform, kind)
    if budget.daily_limit <= 0:
        # Platform never allows this action; re-check tomorrow so a config
        # change is picked up without manual intervention.
        return start_of_next_day(now)

    candidates = []
    if budget.daily_remaining <= 0:
        candidates.append(start_of_next_day(now))

    if budget.weekly_remaining is not None and budget.weekly_remaining <= 0:
        candidates.append(
            _next_weekly_boundary(account.history.get(kind, {}), budget.weekly_limit, now)
        )

    if enforce_cooldown and budget.cooldown_until is not None and now < budget.cooldown_until:
        candidates.append(budget.cooldown_until)

    if not candidates:
        return None
    return max(candidates)


# ==============================================================================
# Planning helpers
# ==============================================================================

BUSINESS_HOURS = [9, 10, 11, 12, 14, 15, 16, 17]


def recommended_schedule(platform: str, total_contacts: int, campaign_duration_days: int) -> Dict:
    """
    Contacts/day that stays within a mature account's daily limits, spread
    over business hours, with a warning when the campaign cannot finish in
    the planned duration.
    """
    table = PLATFORM_LIMITS.get(platform)
    if not table:
        return {
            "contacts_per_day": 10,
            "estimated_completion_days": math.ceil(total_contacts / 10),
            "schedule": [{"hour": 10, "count": 10}],
            "warning": None,
        }

    daily = table["daily"]
    daily_limit = min(daily.get(CONNECTION_REQUEST, 1000), daily.get(MESSAGE, 1000))
    duration = max(1, campaign_duration_days)
    contacts_per_day = max(1, min(daily_limit, math.ceil(total_contacts / duration)))
    estimated = math.ceil(total_contacts / contacts_per_day)

    per_hour = max(1, contacts_per_day // len(BUSINESS_HOURS))
    schedule = [{"hour": hour, "count": per_hour} for hour in BUSINESS_HOURS]
    remainder = contacts_per_day - per_hour * len(BUSINESS_HOURS)
    if remainder > 0:
        schedule[0]["count"] += remainder

    warning = None
    if estimated > duration:
        warning = (
            f"Campaign will take {estimated} days to complete safely "
            f"(longer than planned {duration} days)"
        )

    return {
        "contacts_per_day": contacts_per_day,
        "estimated_completion_days": estimated,
        "schedule": schedule,
        "warning": warning,
    }


def validate_channel_mix(channels: List[str]) -> Dict:
    """Warnings for risky channel combinations. Mixing is always allowed."""
    warnings = []

    if "linkedin" in channels and "email" in channels:
        warnings.append("LinkedIn + Email: ensure email addresses were sourced outside LinkedIn")
    if "whatsapp" in channels and "email" not in channels:
        warnings.append("WhatsApp requires phone numbers and recipient consent")
    if len(channels) > 2:
        warnings.append("Multi-channel campaigns are complex; consider one campaign per channel")

    has_messaging = any(c in ("whatsapp", "messenger", "telegram") for c in channels)
    has_professional = "linkedin" in channels or "email" in channels
    if has_messaging and has_professional:
        warnings.append("Mixing professional channels with messaging apps may seem unprofessional")

    for channel in channels:
        if channel not in PLATFORM_LIMITS:
            warnings.append(f"Unknown channel '{channel}': no sends will be allowed")

    if len(channels) == 1:
        recommendation = f"Single-channel campaign is safest for {channels[0]}"
    else:
        recommendation = "Consider separate campaigns per channel for better control"

    return {"valid": True, "warnings": warnings, "recommendation": recommendation}
