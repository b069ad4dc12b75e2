"""
Dispatcher: executes exactly one step of one claimed execution.

The Dispatcher never raises out of execute(); every outcome becomes a
single store transition:

    wait    → advance to the following step
    branch  → one bounded signal lookup, then advance along the table
    send    → rate check, atomic reservation, gateway send, then
              advance (success) / reschedule (denied, transient) / fail

Sends carry the idempotency key "{execution_id}:{step_id}:{version}". A
send intent is recorded before the gateway call so a retry after a crash
can ask a non-idempotent gateway (SMTP) whether the message already went
out instead of sending it twice.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

import config
from database import CampaignStats, Contacts
from sequencer import alerts
from sequencer.errors import (
    ConfigurationError,
    PermanentGatewayError,
    RateLimited,
    TransientGatewayError,
)
from sequencer.execution_store import ExecutionStore, SequenceStore
from sequencer.gateway import MessagingGateway, recipient_for
from sequencer.rate_limits import AccountState, compute_budget, cooldown_for, deny_until, should_deny
from sequencer.sending_window import next_business_time
from sequencer.sequences import (
    Outcome,
    SequenceDefinition,
    Step,
    StepKind,
    branch_candidates,
    default_next,
    next_step,
    observed_outcome,
    resolve,
)
from sequencer.tenants import TenantDirectory

logger = logging.getLogger("sequencer.dispatcher")


class DispatchOutcome:
    ADVANCED = "advanced"
    COMPLETED = "completed"
    RATE_LIMITED = "rate_limited"
    RETRY = "retry"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class DispatchResult:
    execution_id: str
    step_id: str
    outcome: str
    detail: str = ""
    next_due_at: Optional[datetime] = None
    sent: bool = False


def compute_backoff(attempt: int, base_seconds: int = None, max_seconds: int = None) -> timedelta:
    """Exponential backoff for the n-th failed attempt (1-based), capped."""
    base_seconds = config.RETRY_BASE_SECONDS if base_seconds is None else base_seconds
    max_seconds = config.RETRY_MAX_SECONDS if max_seconds is None else max_seconds
    exponent = max(0, attempt - 1)
    return timedelta(seconds=min(max_seconds, base_seconds * 2 ** exponent))


def idempotency_key(execution: Dict) -> str:
    return f"{execution['_id']}:{execution['current_step']}:{execution['sequence_version']}"


class Dispatcher:
    """
    Lifecycle:
        dispatcher = Dispatcher(store, sequences, tenants, gateway)
        result = await dispatcher.execute(execution, now)
    """

    def __init__(
        self,
        store: ExecutionStore,
        sequences: SequenceStore,
        tenants: TenantDirectory,
        gateway: MessagingGateway,
        contacts: Contacts = None,
        stats: CampaignStats = None,
        timeout: float = None,
        max_attempts: int = None,
        enforce_cooldown: bool = None,
        alert_config_error: Callable = None,
        alert_restricted: Callable = None,
    ):
        self.store = store
        self.sequences = sequences
        self.tenants = tenants
        self.gateway = gateway
        self.contacts = contacts if contacts is not None else Contacts()
        self.stats = stats
        self.timeout = timeout or config.GATEWAY_TIMEOUT_SECONDS
        self.max_attempts = max_attempts or config.MAX_SEND_ATTEMPTS
        self.enforce_cooldown = config.ENFORCE_ACTION_COOLDOWN if enforce_cooldown is None else enforce_cooldown
        self._alert_config_error = alert_config_error or alerts.alert_configuration_error
        self._alert_restricted = alert_restricted or alerts.alert_account_restricted

    # ── Entry point ──────────────────────────────────────────────────

    async def execute(self, execution: Dict, now: datetime) -> DispatchResult:
        try:
            return await self._execute(execution, now)
        except Exception as e:
            logger.error(f"dispatch_error: {execution.get('_id')} {e}", exc_info=True)
            return self._retry(execution, now, f"{type(e).__name__}: {e}")

    async def _execute(self, execution: Dict, now: datetime) -> DispatchResult:
        definition = self.sequences.get(execution["sequence_id"], execution["sequence_version"])
        if definition is None:
            return await self._fail_config(
                execution,
                f"Unknown sequence {execution['sequence_id']}@v{execution['sequence_version']}",
            )

        step_id = execution["current_step"]
        if definition.is_terminal(step_id):
            return self._complete(execution)
        if not definition.has_step(step_id):
            return await self._fail_config(execution, f"Step '{step_id}' not in {definition.id}")

        if self.store.is_cancelled(execution["_id"]):
            return self._result(execution, DispatchOutcome.CANCELLED)

        step = definition.step(step_id)
        if step.kind == StepKind.WAIT:
            return self._advance(execution, definition, default_next(definition, step.id), now)
        if step.kind == StepKind.BRANCH:
            return await self._branch(execution, definition, step, now)
        return await self._send(execution, definition, step, now)

    # ── Transitions ──────────────────────────────────────────────────

    def _result(self, execution: Dict, outcome: str, detail: str = "",
                next_due_at: datetime = None, sent: bool = False) -> DispatchResult:
        return DispatchResult(
            execution_id=str(execution["_id"]),
            step_id=execution["current_step"],
            outcome=outcome,
            detail=detail,
            next_due_at=next_due_at,
            sent=sent,
        )

    def _advance(self, execution: Dict, definition: SequenceDefinition, target_id: str,
                 now: datetime, sent: bool = False) -> DispatchResult:
        if definition.is_terminal(target_id):
            return self._complete(execution, sent=sent)

        target = definition.step(target_id)
        due = now + target.delay
        if target.business_hours:
            due = next_business_time(due)
        self.store.advance(execution["_id"], target_id, due, waiting=target.kind == StepKind.WAIT)
        return self._result(execution, DispatchOutcome.ADVANCED, target_id, next_due_at=due, sent=sent)

    def _complete(self, execution: Dict, sent: bool = False) -> DispatchResult:
        self.store.complete(execution["_id"])
        return self._result(execution, DispatchOutcome.COMPLETED, sent=sent)

    def _fail(self, execution: Dict, reason: str) -> DispatchResult:
        self.store.fail(execution["_id"], reason)
        return self._result(execution, DispatchOutcome.FAILED, reason)

    async def _fail_config(self, execution: Dict, message: str) -> DispatchResult:
        reason = f"ConfigurationError: {message}"
        logger.error(
            "configuration_error",
            extra={"tenant_id": execution["tenant_id"], "execution_id": str(execution["_id"]), "error": message},
        )
        await self._alert_config_error(execution["tenant_id"], str(execution["_id"]), message)
        return self._fail(execution, reason)

    def _retry(self, execution: Dict, now: datetime, error: str) -> DispatchResult:
        attempts = execution.get("attempts", 0) + 1
        if attempts >= self.max_attempts:
            return self._fail(execution, "TransientGatewayError: attempts exhausted")
        due = now + compute_backoff(attempts)
        self.store.reschedule(execution["_id"], due, attempts=attempts, last_error=error)
        logger.warning(
            "transient_retry",
            extra={"execution_id": str(execution["_id"]), "attempt": attempts, "retry_at": due.isoformat()},
        )
        return self._result(execution, DispatchOutcome.RETRY, error, next_due_at=due)

    def _rate_limited(self, execution: Dict, retry_at: datetime, kind: str) -> DispatchResult:
        """Denials are backpressure: reschedule without spending an attempt."""
        self.store.reschedule(execution["_id"], retry_at)
        logger.info(
            "rate_limited",
            extra={"execution_id": str(execution["_id"]), "kind": kind, "retry_at": retry_at.isoformat()},
        )
        return self._result(execution, DispatchOutcome.RATE_LIMITED, kind, next_due_at=retry_at)

    def _bump(self, execution: Dict, stat: str) -> None:
        if self.stats is not None:
            self.stats.increment(execution["tenant_id"], execution["campaign_id"], stat)

    def _take_budget(self, tenant_id: str, platform: str, action: str,
                     account: AccountState, now: datetime) -> None:
        """Reserve one unit of the account's budget, or raise RateLimited with the retry time."""
        if should_deny(action, account, now, self.enforce_cooldown):
            raise RateLimited(
                f"{platform} {action} budget spent for {tenant_id}",
                deny_until(action, account, now, self.enforce_cooldown),
            )

        budget = compute_budget(account, platform, action)
        if self.tenants.reserve_send(tenant_id, platform, action, budget, now, self.enforce_cooldown) is None:
            # Another dispatcher took the last unit (or acted inside the cooldown)
            fresh = self.tenants.resolve_account(tenant_id, platform, now)
            retry_at = deny_until(action, fresh, now, self.enforce_cooldown)
            if retry_at is None:
                retry_at = now + max(cooldown_for(platform), timedelta(minutes=1))
            raise RateLimited(f"{platform} {action} reservation lost for {tenant_id}", retry_at)

    # ── Gateway lookups ──────────────────────────────────────────────

    async def _observe(self, execution: Dict, platform: str, account_ref: str,
                       recipient_ref: str, candidates) -> str:
        """Single bounded signal lookup; timeouts surface as transient errors."""
        try:
            signal = await asyncio.wait_for(
                self.gateway.get_signal(platform, account_ref, recipient_ref), self.timeout
            )
        except asyncio.TimeoutError as e:
            raise TransientGatewayError(f"get_signal timed out after {self.timeout}s") from e
        return observed_outcome(signal, candidates)

    def _contact_and_recipient(self, execution: Dict, platform: str):
        contact = self.contacts.get(execution["tenant_id"], execution["contact_id"])
        if not contact:
            raise ConfigurationError(f"Contact {execution['contact_id']} not found")
        recipient = recipient_for(contact, platform)
        if not recipient:
            raise PermanentGatewayError(f"Contact {execution['contact_id']} has no {platform} address")
        return contact, recipient

    # ── Step kinds ───────────────────────────────────────────────────

    async def _branch(self, execution: Dict, definition: SequenceDefinition, step: Step,
                      now: datetime) -> DispatchResult:
        try:
            _, recipient = self._contact_and_recipient(execution, step.channel)
            account = self.tenants.resolve_account(execution["tenant_id"], step.channel, now)
            outcome = await self._observe(
                execution, step.channel, account.account_ref, recipient, branch_candidates(step)
            )
        except ConfigurationError as e:
            return await self._fail_config(execution, str(e))
        except TransientGatewayError as e:
            return self._retry(execution, now, f"TransientGatewayError: {e}")
        except PermanentGatewayError as e:
            return self._fail(execution, f"PermanentGatewayError: {e}")

        if outcome in (Outcome.ACCEPTED, Outcome.REPLIED):
            self._bump(execution, outcome)
        target = next_step(definition, step.id, outcome)
        logger.info(
            "branch_resolved",
            extra={"execution_id": str(execution["_id"]), "step": step.id, "outcome": outcome, "target": target},
        )
        return self._advance(execution, definition, target, now)

    async def _send(self, execution: Dict, definition: SequenceDefinition, step: Step,
                    now: datetime) -> DispatchResult:
        tenant_id = execution["tenant_id"]
        platform = step.channel

        try:
            contact, recipient = self._contact_and_recipient(execution, platform)
            account = self.tenants.resolve_account(tenant_id, platform, now)
        except ConfigurationError as e:
            return await self._fail_config(execution, str(e))
        except PermanentGatewayError as e:
            return self._fail(execution, f"PermanentGatewayError: {e}")

        # "Skip if already replied" style redirects
        if step.condition:
            try:
                outcome = await self._observe(
                    execution, platform, account.account_ref, recipient, [step.condition.outcome]
                )
            except TransientGatewayError as e:
                return self._retry(execution, now, f"TransientGatewayError: {e}")
            except PermanentGatewayError as e:
                return self._fail(execution, f"PermanentGatewayError: {e}")
            if outcome == step.condition.outcome:
                logger.info(
                    "step_skipped",
                    extra={"execution_id": str(execution["_id"]), "step": step.id, "outcome": outcome},
                )
                return self._advance(execution, definition, step.condition.on_skip, now)

        try:
            self._take_budget(tenant_id, platform, step.action, account, now)
        except RateLimited as e:
            return self._rate_limited(execution, e.retry_at, step.action)

        # The execution may have been cancelled while we were checking budgets
        if self.store.is_cancelled(execution["_id"]):
            self.tenants.release_send(tenant_id, platform, step.action, now)
            return self._result(execution, DispatchOutcome.CANCELLED)

        key = idempotency_key(execution)
        try:
            result = await self._deliver(execution, step, account.account_ref, recipient, contact, key)
        except (TransientGatewayError, asyncio.TimeoutError) as e:
            self.tenants.release_send(tenant_id, platform, step.action, now)
            return self._retry(execution, now, f"TransientGatewayError: {e}")
        except PermanentGatewayError as e:
            self.tenants.release_send(tenant_id, platform, step.action, now)
            if e.restricted:
                self.tenants.record_violation(tenant_id, platform)
                await self._alert_restricted(tenant_id, platform, str(e))
            return self._fail(execution, f"PermanentGatewayError: {e}")
        except ConfigurationError as e:
            self.tenants.release_send(tenant_id, platform, step.action, now)
            return await self._fail_config(execution, str(e))

        self._bump(execution, "sent")
        logger.info(
            "step_sent",
            extra={
                "execution_id": str(execution["_id"]),
                "tenant_id": tenant_id,
                "platform": platform,
                "step": step.id,
                "message_id": result.id,
                "status": result.status,
            },
        )
        return self._advance(execution, definition, default_next(definition, step.id), now, sent=True)

    async def _deliver(self, execution: Dict, step: Step, account_ref: str, recipient: str,
                       contact: Dict, key: str):
        platform = step.channel
        prior_intent = (execution.get("send_intents") or {}).get(step.id) == key
        if prior_intent and not self.gateway.supports_idempotency(platform):
            earlier = await asyncio.wait_for(
                self.gateway.delivery_status(platform, account_ref, key), self.timeout
            )
            if earlier is not None:
                logger.info("send_already_delivered", extra={"execution_id": str(execution["_id"]), "key": key})
                return earlier

        self.store.record_send_intent(execution["_id"], step.id, key)
        content = resolve(step, contact, execution.get("variables"))
        return await asyncio.wait_for(
            self.gateway.send(platform, account_ref, recipient, content,
                              idempotency_key=key, action=step.action),
            self.timeout,
        )
