"""
Execution State Store: durable progress of every (contact, sequence) pair.

This is the only module that writes execution status. Every transition is a
single-document conditional update, so two scheduler processes can never
both act on one execution:

    scheduled / waiting ──claim_due──▶ in_flight
    in_flight ──advance──▶ scheduled / waiting
    in_flight ──reschedule / release──▶ scheduled
    in_flight ──complete / fail──▶ completed / failed
    any non-terminal ──cancel──▶ cancelled

Non-terminal executions carry `active: True`; a partial unique index on
(tenant_id, campaign_id, contact_id) over that flag keeps enrollment unique.
"""

import logging
import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import CampaignStats, get_db
from sequencer.errors import ConfigurationError
from sequencer.sequences import SequenceDefinition, StepKind

logger = logging.getLogger("sequencer.execution_store")


class ExecutionStatus:
    SCHEDULED = "scheduled"
    IN_FLIGHT = "in_flight"
    WAITING = "waiting"  # delay step pending, claimable like scheduled
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    CLAIMABLE = (SCHEDULED, WAITING)
    ACTIVE = (SCHEDULED, IN_FLIGHT, WAITING)
    TERMINAL = (COMPLETED, FAILED, CANCELLED)


def _oid(execution_id) -> ObjectId:
    if isinstance(execution_id, ObjectId):
        return execution_id
    return ObjectId(str(execution_id))


# Returns a claim to the status it was claimed from
_RETURN_CLAIM = [
    {"$set": {"status": {"$ifNull": ["$claimed_from", ExecutionStatus.SCHEDULED]}}},
    {"$unset": ["claim_token", "claimed_at", "claimed_from"]},
]


class ExecutionStore:
    """CRUD + state transitions for the executions collection."""

    def __init__(self, db=None, stats: CampaignStats = None):
        db = db if db is not None else get_db()
        self._collection = db["executions"]
        self._stats = stats

    def _bump(self, execution: Optional[Dict], stat: str, value: int = 1) -> None:
        if self._stats is not None and execution and value:
            self._stats.increment(execution["tenant_id"], execution["campaign_id"], stat, value)

    # ── Enrollment ───────────────────────────────────────────────────

    def enroll_contact(self, tenant_id: str, campaign_id: str, contact_id: str,
                       definition: SequenceDefinition, now: datetime = None,
                       variables: Dict = None) -> Dict:
        """
        Create the execution for a contact at the first step. If an active
        execution already exists for (tenant, campaign, contact) that one is
        returned unchanged.
        """
        now = now or datetime.utcnow()
        first = definition.first_step
        doc = {
            "tenant_id": tenant_id,
            "campaign_id": campaign_id,
            "contact_id": contact_id,
            "sequence_id": definition.id,
            "sequence_version": definition.version,
            "current_step": first.id,
            "status": ExecutionStatus.WAITING if first.kind == StepKind.WAIT else ExecutionStatus.SCHEDULED,
            "next_due_at": now + first.delay,
            "attempts": 0,
            "last_error": None,
            "active": True,
            "variables": variables or {},
            "send_intents": {},
            "enrolled_at": now,
            "updated_at": now,
        }

        try:
            result = self._collection.insert_one(doc)
        except DuplicateKeyError:
            existing = self._collection.find_one({
                "tenant_id": tenant_id,
                "campaign_id": campaign_id,
                "contact_id": contact_id,
                "active": True,
            })
            logger.info(
                "enrollment_exists",
                extra={"tenant_id": tenant_id, "campaign_id": campaign_id, "contact_id": contact_id},
            )
            if existing is None:
                # The active execution finished between insert and lookup
                raise ConfigurationError(
                    f"Enrollment race for contact {contact_id} in campaign {campaign_id}; retry"
                )
            return existing

        doc["_id"] = result.inserted_id
        self._bump(doc, "enrolled")
        logger.info(
            f"contact_enrolled: {contact_id} campaign={campaign_id} "
            f"sequence={definition.id}@v{definition.version}",
        )
        return doc

    # ── Claiming ─────────────────────────────────────────────────────

    def claim_one(self, now: datetime, exclude_tenants: Iterable[str] = None) -> Optional[Dict]:
        """Atomically move the oldest due execution to in_flight."""
        query = {"status": {"$in": list(ExecutionStatus.CLAIMABLE)}, "next_due_at": {"$lte": now}}
        if exclude_tenants:
            query["tenant_id"] = {"$nin": sorted(exclude_tenants)}
        return self._collection.find_one_and_update(
            query,
            [{"$set": {
                "claimed_from": "$status",
                "status": ExecutionStatus.IN_FLIGHT,
                "claimed_at": now,
                "claim_token": uuid.uuid4().hex,
                "updated_at": now,
            }}],
            sort=[("next_due_at", 1)],
            return_document=ReturnDocument.AFTER,
        )

    def claim_due(self, now: datetime, limit: int, exclude_tenants: Iterable[str] = None,
                  tenant_room: Callable[[str], int] = None) -> List[Dict]:
        """
        Claim up to `limit` due executions, oldest due first.

        Tenants in `exclude_tenants` are skipped. `tenant_room(tenant_id)` is
        how many claims a tenant may take this round; once a tenant has that
        many it is skipped too, so a backlogged tenant cannot fill the batch
        and push everyone else's due work out of it.
        """
        excluded = set(exclude_tenants or ())
        taken: Counter = Counter()
        claimed = []
        while len(claimed) < limit:
            doc = self.claim_one(now, excluded)
            if not doc:
                break
            claimed.append(doc)
            tenant_id = doc.get("tenant_id")
            taken[tenant_id] += 1
            if tenant_room is not None and taken[tenant_id] >= tenant_room(tenant_id):
                excluded.add(tenant_id)
        if claimed:
            logger.info("executions_claimed", extra={"count": len(claimed)})
        else:
            logger.debug("no_due_executions")
        return claimed

    def release(self, execution_id) -> bool:
        """Return an unprocessed claim to the status it was claimed from."""
        result = self._collection.update_one(
            {"_id": _oid(execution_id), "status": ExecutionStatus.IN_FLIGHT},
            _RETURN_CLAIM,
        )
        return result.modified_count > 0

    def release_stale(self, now: datetime, timeout_minutes: int = 30) -> int:
        """Release executions claimed by a process that never finished them (crash)."""
        cutoff = now - timedelta(minutes=timeout_minutes)
        result = self._collection.update_many(
            {"status": ExecutionStatus.IN_FLIGHT, "claimed_at": {"$lt": cutoff}},
            _RETURN_CLAIM,
        )
        if result.modified_count:
            logger.warning(f"Released {result.modified_count} stale in-flight executions")
        return result.modified_count

    # ── Transitions out of in_flight ─────────────────────────────────

    def advance(self, execution_id, next_step_id: str, next_due_at: datetime,
                waiting: bool = False) -> bool:
        """
        Move a claimed execution to its next step. Matches only in_flight, so
        repeating the call after it succeeded changes nothing.
        """
        now = datetime.utcnow()
        result = self._collection.update_one(
            {"_id": _oid(execution_id), "status": ExecutionStatus.IN_FLIGHT},
            {
                "$set": {
                    "current_step": next_step_id,
                    "next_due_at": next_due_at,
                    "status": ExecutionStatus.WAITING if waiting else ExecutionStatus.SCHEDULED,
                    "attempts": 0,
                    "last_error": None,
                    "updated_at": now,
                },
                "$unset": {"claim_token": "", "claimed_at": "", "claimed_from": ""},
            },
        )
        if result.modified_count:
            logger.debug(f"execution_advanced: {execution_id} -> {next_step_id} due={next_due_at}")
        return result.modified_count > 0

    def _finish(self, execution_id, status: str, fields: Dict) -> Optional[Dict]:
        now = datetime.utcnow()
        return self._collection.find_one_and_update(
            {"_id": _oid(execution_id), "status": ExecutionStatus.IN_FLIGHT},
            {
                "$set": {"status": status, "active": False, "updated_at": now, **fields},
                "$unset": {"claim_token": "", "claimed_at": "", "claimed_from": ""},
            },
            return_document=ReturnDocument.AFTER,
        )

    def complete(self, execution_id) -> bool:
        doc = self._finish(execution_id, ExecutionStatus.COMPLETED, {"completed_at": datetime.utcnow()})
        if doc:
            self._bump(doc, "completed")
            logger.info(f"execution_completed: {execution_id}")
        return doc is not None

    def fail(self, execution_id, reason: str) -> bool:
        doc = self._finish(
            execution_id, ExecutionStatus.FAILED,
            {"last_error": reason, "failed_at": datetime.utcnow()},
        )
        if doc:
            self._bump(doc, "failed")
            logger.error(f"execution_failed: {execution_id} reason={reason[:200]}")
        return doc is not None

    def reschedule(self, execution_id, next_due_at: datetime, attempts: int = None,
                   last_error: str = None) -> bool:
        """Put a claimed execution back on the same step, due later."""
        fields = {
            "status": ExecutionStatus.SCHEDULED,
            "next_due_at": next_due_at,
            "updated_at": datetime.utcnow(),
        }
        if attempts is not None:
            fields["attempts"] = attempts
        if last_error is not None:
            fields["last_error"] = last_error
        result = self._collection.update_one(
            {"_id": _oid(execution_id), "status": ExecutionStatus.IN_FLIGHT},
            {"$set": fields, "$unset": {"claim_token": "", "claimed_at": "", "claimed_from": ""}},
        )
        return result.modified_count > 0

    def record_send_intent(self, execution_id, step_id: str, key: str) -> bool:
        """Note that a gateway send for `step_id` is about to start."""
        result = self._collection.update_one(
            {"_id": _oid(execution_id), "status": ExecutionStatus.IN_FLIGHT},
            {"$set": {f"send_intents.{step_id}": key, "updated_at": datetime.utcnow()}},
        )
        return result.modified_count > 0

    # ── Cancellation ─────────────────────────────────────────────────

    def cancel(self, execution_id) -> bool:
        """Cancel from any non-terminal status, including in_flight."""
        doc = self._collection.find_one_and_update(
            {"_id": _oid(execution_id), "status": {"$in": list(ExecutionStatus.ACTIVE)}},
            {"$set": {
                "status": ExecutionStatus.CANCELLED,
                "active": False,
                "cancelled_at": datetime.utcnow(),
            }},
            return_document=ReturnDocument.AFTER,
        )
        if doc:
            self._bump(doc, "cancelled")
            logger.info(f"execution_cancelled: {execution_id}")
        return doc is not None

    def _cancel_many(self, query: Dict) -> int:
        query["status"] = {"$in": list(ExecutionStatus.ACTIVE)}
        result = self._collection.update_many(
            query,
            {"$set": {
                "status": ExecutionStatus.CANCELLED,
                "active": False,
                "cancelled_at": datetime.utcnow(),
            }},
        )
        return result.modified_count

    def cancel_campaign(self, tenant_id: str, campaign_id: str) -> int:
        count = self._cancel_many({"tenant_id": tenant_id, "campaign_id": campaign_id})
        if self._stats is not None and count:
            self._stats.increment(tenant_id, campaign_id, "cancelled", count)
        logger.info("campaign_cancelled", extra={"tenant_id": tenant_id, "campaign_id": campaign_id, "count": count})
        return count

    def cancel_contact(self, tenant_id: str, contact_id: str, campaign_id: str = None) -> int:
        """
        Stop every active execution for a contact (opt-out), or just one
        campaign's. Each execution is cancelled on its own so the cancelled
        stat lands on the right campaign.
        """
        query = {
            "tenant_id": tenant_id,
            "contact_id": contact_id,
            "status": {"$in": list(ExecutionStatus.ACTIVE)},
        }
        if campaign_id:
            query["campaign_id"] = campaign_id
        count = sum(1 for doc in self._collection.find(query, {"_id": 1}) if self.cancel(doc["_id"]))
        logger.info("contact_cancelled", extra={"tenant_id": tenant_id, "contact_id": contact_id, "count": count})
        return count

    # ── Read-only views ──────────────────────────────────────────────

    def get(self, execution_id) -> Optional[Dict]:
        return self._collection.find_one({"_id": _oid(execution_id)})

    def find_active(self, tenant_id: str, campaign_id: str, contact_id: str) -> Optional[Dict]:
        return self._collection.find_one({
            "tenant_id": tenant_id,
            "campaign_id": campaign_id,
            "contact_id": contact_id,
            "active": True,
        })

    def is_cancelled(self, execution_id) -> bool:
        doc = self._collection.find_one({"_id": _oid(execution_id)}, {"status": 1})
        return bool(doc) and doc.get("status") == ExecutionStatus.CANCELLED

    def campaign_status_counts(self, tenant_id: str, campaign_id: str) -> Dict[str, int]:
        pipeline = [
            {"$match": {"tenant_id": tenant_id, "campaign_id": campaign_id}},
            {"$group": {"_id": "$status", "count": {"$sum": 1}}},
        ]
        counts = {status: 0 for status in ExecutionStatus.ACTIVE + ExecutionStatus.TERMINAL}
        for r in self._collection.aggregate(pipeline):
            counts[r["_id"]] = r["count"]
        return counts

    def count_in_flight(self, tenant_ids: List[str] = None) -> Dict[str, int]:
        """In-flight executions per tenant."""
        match = {"status": ExecutionStatus.IN_FLIGHT}
        if tenant_ids:
            match["tenant_id"] = {"$in": list(tenant_ids)}
        pipeline = [
            {"$match": match},
            {"$group": {"_id": "$tenant_id", "count": {"$sum": 1}}},
        ]
        return {r["_id"]: r["count"] for r in self._collection.aggregate(pipeline)}

    def count_enrolled_since(self, tenant_id: str, since: datetime) -> int:
        return self._collection.count_documents({"tenant_id": tenant_id, "enrolled_at": {"$gte": since}})

    def count_campaign_contacts(self, tenant_id: str, campaign_id: str) -> int:
        return self._collection.count_documents({"tenant_id": tenant_id, "campaign_id": campaign_id})

    def active_campaigns(self, tenant_id: str) -> List[str]:
        return list(self._collection.distinct(
            "campaign_id", {"tenant_id": tenant_id, "active": True}
        ))


class SequenceStore:
    """Immutable, versioned sequence definitions."""

    def __init__(self, db=None):
        db = db if db is not None else get_db()
        self._collection = db["sequence_definitions"]
        self._cache: Dict = {}

    def _latest_version(self, sequence_id: str) -> int:
        doc = self._collection.find_one({"sequence_id": sequence_id}, sort=[("version", -1)])
        return doc["version"] if doc else 0

    def publish(self, definition: SequenceDefinition) -> SequenceDefinition:
        """
        Store `definition` as the next version of its sequence. Existing
        versions are never modified; running executions keep theirs.
        """
        for _ in range(3):
            published = definition.with_version(self._latest_version(definition.id) + 1)
            try:
                self._collection.insert_one({
                    "sequence_id": published.id,
                    "version": published.version,
                    "definition": published.to_dict(),
                    "published_at": datetime.utcnow(),
                })
            except DuplicateKeyError:
                # Another publisher took this version number
                continue
            self._cache[(published.id, published.version)] = published
            logger.info(f"sequence_published: {published.id}@v{published.version}")
            return published
        raise ConfigurationError(f"Could not publish sequence {definition.id}: version conflict")

    def get(self, sequence_id: str, version: int) -> Optional[SequenceDefinition]:
        key = (sequence_id, version)
        if key not in self._cache:
            doc = self._collection.find_one({"sequence_id": sequence_id, "version": version})
            if not doc:
                return None
            self._cache[key] = SequenceDefinition.from_dict(doc["definition"])
        return self._cache[key]

    def latest(self, sequence_id: str) -> Optional[SequenceDefinition]:
        version = self._latest_version(sequence_id)
        if not version:
            return None
        return self.get(sequence_id, version)
