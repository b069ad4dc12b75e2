from pymongo import MongoClient, ReturnDocument, ASCENDING
from pymongo.errors import DuplicateKeyError
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any
import os
import config

_client: Optional[MongoClient] = None


def get_client() -> MongoClient:
    """Lazily create the shared MongoClient (no I/O happens at import)."""
    global _client
    if _client is None:
        _client = MongoClient(config.DATABASE_URL)
    return _client


def get_db():
    return get_client().get_database()


def day_key(moment: datetime) -> str:
    """Bucket key for per-day counters (UTC calendar day)."""
    return moment.strftime("%Y-%m-%d")


def ensure_indexes(db) -> None:
    """Create every index the engine relies on. Safe to call repeatedly."""
    executions = db["executions"]
    # At most one non-terminal execution per (tenant, campaign, contact)
    executions.create_index(
        [("tenant_id", ASCENDING), ("campaign_id", ASCENDING), ("contact_id", ASCENDING)],
        unique=True,
        partialFilterExpression={"active": True},
        name="one_active_execution",
    )
    executions.create_index([("status", ASCENDING), ("next_due_at", ASCENDING)])
    executions.create_index([("tenant_id", ASCENDING), ("campaign_id", ASCENDING), ("status", ASCENDING)])

    db["sequence_definitions"].create_index(
        [("sequence_id", ASCENDING), ("version", ASCENDING)], unique=True
    )
    db["send_counters"].create_index(
        [("tenant_id", ASCENDING), ("platform", ASCENDING), ("kind", ASCENDING), ("date", ASCENDING)],
        unique=True,
    )
    db["tenant_accounts"].create_index(
        [("tenant_id", ASCENDING), ("platform", ASCENDING)], unique=True
    )
    db["campaign_stats"].create_index(
        [("tenant_id", ASCENDING), ("campaign_id", ASCENDING)], unique=True
    )
    db["contacts"].create_index([("tenant_id", ASCENDING), ("contact_id", ASCENDING)], unique=True)
    db["delivery_log"].create_index("idempotency_key", unique=True)
    db["delivery_log"].create_index(
        [("platform", ASCENDING), ("account_ref", ASCENDING), ("recipient_ref", ASCENDING)]
    )


class TenantAccounts:
    """Connected messaging accounts, one per (tenant, platform)"""

    STATUS_CONNECTED = "connected"
    STATUS_DISCONNECTED = "disconnected"

    def __init__(self, db=None):
        db = db if db is not None else get_db()
        self._collection = db["tenant_accounts"]
        self._tenants = db["tenants"]

    def get(self, tenant_id: str, platform: str) -> Optional[Dict]:
        return self._collection.find_one({"tenant_id": tenant_id, "platform": platform})

    def connect(self, tenant_id: str, platform: str, account_ref: str,
                connected_at: datetime = None, warmed_up: bool = False) -> None:
        """Register (or re-connect) the account a tenant sends from on a platform"""
        now = datetime.utcnow()
        self._collection.update_one(
            {"tenant_id": tenant_id, "platform": platform},
            {
                "$set": {
                    "account_ref": account_ref,
                    "status": TenantAccounts.STATUS_CONNECTED,
                    "warmed_up": warmed_up,
                    "updated_at": now,
                },
                "$setOnInsert": {
                    "connected_at": connected_at or now,
                    "violation_count": 0,
                },
            },
            upsert=True,
        )

    def disconnect(self, tenant_id: str, platform: str) -> None:
        self._collection.update_one(
            {"tenant_id": tenant_id, "platform": platform},
            {"$set": {"status": TenantAccounts.STATUS_DISCONNECTED, "updated_at": datetime.utcnow()}},
        )

    def record_violation(self, tenant_id: str, platform: str) -> None:
        """Platform pushed back on this account (restriction / warning)"""
        self._collection.update_one(
            {"tenant_id": tenant_id, "platform": platform},
            {"$inc": {"violation_count": 1}, "$set": {"last_violation_at": datetime.utcnow()}},
        )

    def get_limits(self, tenant_id: str) -> Dict[str, Any]:
        """Per-tenant hard-cap overrides ({} when the tenant uses defaults)"""
        tenant = self._tenants.find_one({"tenant_id": tenant_id}, {"limits": 1})
        if not tenant:
            return {}
        return tenant.get("limits") or {}


class SendCounters:
    """
    Per (tenant, platform, action kind, UTC day) send counters.

    Each bucket is a single document, so every mutation is an atomic
    single-document update. Weekly usage is the sum of the trailing 7 buckets.
    """

    def __init__(self, db=None):
        db = db if db is not None else get_db()
        self._collection = db["send_counters"]

    @staticmethod
    def _key(tenant_id: str, platform: str, kind: str, day: str) -> Dict:
        return {"tenant_id": tenant_id, "platform": platform, "kind": kind, "date": day}

    def get_window(self, tenant_id: str, platform: str, kind: str, days: List[str]) -> Dict[str, int]:
        """Counts for the given day keys (missing buckets are 0)"""
        records = self._collection.find({
            "tenant_id": tenant_id,
            "platform": platform,
            "kind": kind,
            "date": {"$in": days},
        })
        counts = {day: 0 for day in days}
        for r in records:
            counts[r["date"]] = r.get("count", 0)
        return counts

    def last_action_at(self, tenant_id: str, platform: str, kind: str) -> Optional[datetime]:
        record = self._collection.find_one(
            {"tenant_id": tenant_id, "platform": platform, "kind": kind},
            sort=[("date", -1)],
        )
        if record:
            return record.get("last_action_at")
        return None

    def increment(self, tenant_id: str, platform: str, kind: str, now: datetime) -> int:
        """Unconditional increment, returns the new count for today"""
        doc = self._collection.find_one_and_update(
            self._key(tenant_id, platform, kind, day_key(now)),
            {
                "$inc": {"count": 1},
                "$set": {"last_action_at": now},
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return doc["count"]

    def reserve(self, tenant_id: str, platform: str, kind: str, now: datetime,
                ceiling: int, not_before: Optional[datetime] = None) -> Optional[int]:
        """
        Increment-with-ceiling. Returns the new count, or None when today's
        bucket is already at `ceiling` (or the last action is newer than
        `not_before`). The filter and the $inc are one atomic operation, so
        concurrent callers can never push the count past the ceiling.
        """
        if ceiling <= 0:
            return None

        query = self._key(tenant_id, platform, kind, day_key(now))
        query["count"] = {"$lt": ceiling}
        if not_before is not None:
            query["$or"] = [
                {"last_action_at": {"$exists": False}},
                {"last_action_at": {"$lte": not_before}},
            ]
        update = {
            "$inc": {"count": 1},
            "$set": {"last_action_at": now},
            "$setOnInsert": {"created_at": now},
        }

        try:
            doc = self._collection.find_one_and_update(
                query, update, upsert=True, return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError:
            # Bucket exists but did not match: at ceiling, in cooldown, or a
            # concurrent upsert created it first. Retry once without upsert.
            doc = self._collection.find_one_and_update(
                query, update, return_document=ReturnDocument.AFTER
            )
        if not doc:
            return None
        return doc["count"]

    def release(self, tenant_id: str, platform: str, kind: str, now: datetime) -> None:
        """Give back a reservation whose send never happened"""
        query = self._key(tenant_id, platform, kind, day_key(now))
        query["count"] = {"$gt": 0}
        self._collection.update_one(query, {"$inc": {"count": -1}})

    def sweep(self, cutoff_day: str) -> int:
        """Drop buckets older than the rolling window"""
        result = self._collection.delete_many({"date": {"$lt": cutoff_day}})
        return result.deleted_count


class CampaignStats:
    """Aggregate counters per campaign (read by the reporting layer)"""

    STATS = ("enrolled", "sent", "accepted", "replied", "failed", "completed", "cancelled")

    def __init__(self, db=None):
        db = db if db is not None else get_db()
        self._collection = db["campaign_stats"]

    def increment(self, tenant_id: str, campaign_id: str, stat_name: str, value: int = 1) -> None:
        self._collection.update_one(
            {"tenant_id": tenant_id, "campaign_id": campaign_id},
            {
                "$inc": {f"stats.{stat_name}": value},
                "$set": {"updated_at": datetime.utcnow()},
            },
            upsert=True,
        )

    def get(self, tenant_id: str, campaign_id: str) -> Dict[str, int]:
        record = self._collection.find_one({"tenant_id": tenant_id, "campaign_id": campaign_id})
        stats = {name: 0 for name in CampaignStats.STATS}
        if record:
            stats.update(record.get("stats", {}))
        return stats


class Contacts:
    """Read-only access to tenant contacts"""

    def __init__(self, db=None):
        db = db if db is not None else get_db()
        self._collection = db["contacts"]

    def get(self, tenant_id: str, contact_id: str) -> Optional[Dict]:
        return self._collection.find_one({"tenant_id": tenant_id, "contact_id": contact_id})


class DeliveryLog:
    """
    Local record of messages handed to a gateway that has no native
    idempotency (SMTP). Also holds engagement flags written by tracking hooks.
    """

    SIGNALS = ("accepted", "replied", "opened", "clicked")

    def __init__(self, db=None):
        db = db if db is not None else get_db()
        self._collection = db["delivery_log"]

    def record(self, idempotency_key: str, platform: str, account_ref: str,
               recipient_ref: str, message_id: str) -> None:
        self._collection.update_one(
            {"idempotency_key": idempotency_key},
            {
                "$set": {
                    "platform": platform,
                    "account_ref": account_ref,
                    "recipient_ref": recipient_ref,
                    "message_id": message_id,
                },
                "$setOnInsert": {"sent_at": datetime.utcnow()},
            },
            upsert=True,
        )

    def find(self, idempotency_key: str) -> Optional[Dict]:
        return self._collection.find_one({"idempotency_key": idempotency_key})

    def mark_signal(self, platform: str, account_ref: str, recipient_ref: str, signal: str) -> None:
        if signal not in DeliveryLog.SIGNALS:
            raise ValueError(f"Unknown signal: {signal}")
        self._collection.update_many(
            {"platform": platform, "account_ref": account_ref, "recipient_ref": recipient_ref},
            {"$set": {signal: True, f"{signal}_at": datetime.utcnow()}},
        )

    def get_signal(self, platform: str, account_ref: str, recipient_ref: str) -> Dict[str, bool]:
        records = self._collection.find(
            {"platform": platform, "account_ref": account_ref, "recipient_ref": recipient_ref}
        )
        flags = {name: False for name in DeliveryLog.SIGNALS}
        for r in records:
            for name in DeliveryLog.SIGNALS:
                if r.get(name):
                    flags[name] = True
        return flags


class Heartbeat:
    """Liveness record for monitoring"""

    def __init__(self, db=None):
        db = db if db is not None else get_db()
        self._collection = db["heartbeat"]

    def beat(self, name: str, **fields) -> None:
        self._collection.update_one(
            {"_id": name},
            {"$set": {"last_heartbeat": datetime.utcnow(), "pid": os.getpid(), **fields}},
            upsert=True,
        )
