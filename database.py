from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError
from bson import ObjectId
from datetime import datetime
from typing import Optional, List, Dict, Any, Iterable
import logging

import config

logger = logging.getLogger("outreach.database")

# Collection names
LEADS = "leads"
OWNERS = "owners"
COMPANIES = "companies"
OWNER_SUMMARIES = "owner_summaries"
EMAILS = "emails"
CAMPAIGNS = "campaigns"
CAMPAIGN_LEADS = "campaign_leads"
JOBS = "jobs"

_client: Optional[MongoClient] = None
_db: Optional[Database] = None


def get_db() -> Database:
    """Return the shared database handle, connecting on first use."""
    global _client, _db
    if _db is None:
        _client = MongoClient(config.DATABASE_URL)
        _db = _client.get_database()
    return _db


def use_database(database: Optional[Database]):
    """Swap the database handle (tests, scripts pointing at another cluster)."""
    global _db
    _db = database


def get_collection(name: str):
    return get_db()[name]


def ensure_indexes():
    """Create indexes. Called once at startup by the CLI and the workers."""
    db = get_db()
    db[LEADS].create_index([("owner_id", ASCENDING), ("email", ASCENDING)], unique=True)
    db[LEADS].create_index([("owner_id", ASCENDING), ("created_at", DESCENDING)])
    db[OWNERS].create_index("external_id", unique=True)
    db[COMPANIES].create_index("owner_id", unique=True)
    db[OWNER_SUMMARIES].create_index("owner_id", unique=True)
    db[EMAILS].create_index([("lead_id", ASCENDING), ("created_at", DESCENDING)])
    # One inbound record per provider message id
    db[EMAILS].create_index("external_id", unique=True, sparse=True)
    db[CAMPAIGNS].create_index([("owner_id", ASCENDING), ("created_at", DESCENDING)])
    # Lookup by campaign + lead (workers, orchestrator)
    db[CAMPAIGN_LEADS].create_index(
        [("campaign_id", ASCENDING), ("lead_id", ASCENDING)], unique=True
    )
    # Pending-lead existence checks by the aggregator
    db[CAMPAIGN_LEADS].create_index([("campaign_id", ASCENDING), ("status", ASCENDING)])
    db[JOBS].create_index([("queue", ASCENDING), ("status", ASCENDING), ("run_at", ASCENDING)])
    logger.info("indexes_ensured")


def to_object_id(value: Any) -> Optional[ObjectId]:
    """Parse an id, returning None when it is not a valid ObjectId."""
    if isinstance(value, ObjectId):
        return value
    if value is None:
        return None
    value = str(value).strip()
    if not ObjectId.is_valid(value):
        return None
    return ObjectId(value)


class Owner:
    """Internal owner record keyed by an external identity token"""

    @staticmethod
    def find_or_create(external_id: str, name: str = None) -> Dict:
        now = datetime.utcnow()
        update = {"$setOnInsert": {"external_id": external_id, "created_at": now}}
        if name:
            update["$set"] = {"name": name, "updated_at": now}
        get_collection(OWNERS).update_one({"external_id": external_id}, update, upsert=True)
        return get_collection(OWNERS).find_one({"external_id": external_id})

    @staticmethod
    def get_by_id(owner_id: ObjectId) -> Optional[Dict]:
        return get_collection(OWNERS).find_one({"_id": owner_id})


class Lead:
    """Lead/Contact owned by a single owner"""

    @staticmethod
    def create(owner_id: ObjectId, name: str, email: str, additional_info: Dict[str, str] = None) -> str:
        """Create or update a lead (unique per owner + email)"""
        now = datetime.utcnow()
        email = (email or "").strip().lower()
        result = get_collection(LEADS).update_one(
            {"owner_id": owner_id, "email": email},
            {
                "$set": {
                    "name": (name or "").strip(),
                    "additional_info": additional_info or {},
                    "updated_at": now,
                },
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
        )
        if result.upserted_id:
            OwnerSummary.increment(owner_id, lead_count=1)
            return str(result.upserted_id)
        existing = get_collection(LEADS).find_one({"owner_id": owner_id, "email": email})
        return str(existing["_id"])

    @staticmethod
    def get_by_id(lead_id: ObjectId) -> Optional[Dict]:
        return get_collection(LEADS).find_one({"_id": lead_id})

    @staticmethod
    def get_many(lead_ids: Iterable[ObjectId]) -> Dict[ObjectId, Dict]:
        leads = get_collection(LEADS).find({"_id": {"$in": list(lead_ids)}})
        return {lead["_id"]: lead for lead in leads}

    @staticmethod
    def count_owned_by(owner_id: ObjectId, lead_ids: List[ObjectId]) -> int:
        if not lead_ids:
            return 0
        return get_collection(LEADS).count_documents({"_id": {"$in": lead_ids}, "owner_id": owner_id})


class Company:
    """Owner's company profile. Holds the recipient allowlist."""

    @staticmethod
    def get_by_owner(owner_id: ObjectId) -> Optional[Dict]:
        return get_collection(COMPANIES).find_one({"owner_id": owner_id})

    @staticmethod
    def upsert(owner_id: ObjectId, name: str, website: str = None, description: str = None,
               allowed_email_recipients: List[str] = None):
        fields = {"name": name, "updated_at": datetime.utcnow()}
        if website is not None:
            fields["website"] = website
        if description is not None:
            fields["description"] = description
        if allowed_email_recipients is not None:
            fields["allowed_email_recipients"] = [e.strip().lower() for e in allowed_email_recipients if e.strip()]
        get_collection(COMPANIES).update_one(
            {"owner_id": owner_id},
            {"$set": fields, "$setOnInsert": {"created_at": datetime.utcnow()}},
            upsert=True,
        )

    @staticmethod
    def get_allowed_recipients(owner_id: ObjectId) -> List[str]:
        company = Company.get_by_owner(owner_id)
        if not company:
            return []
        return [e.lower() for e in company.get("allowed_email_recipients") or []]


class OwnerSummary:
    """Per-owner counters shown on the dashboard"""

    @staticmethod
    def increment(owner_id: ObjectId, **counts: int):
        if not owner_id or not counts:
            return
        get_collection(OWNER_SUMMARIES).update_one(
            {"owner_id": owner_id},
            {
                "$inc": counts,
                "$set": {"updated_at": datetime.utcnow()},
                "$setOnInsert": {"created_at": datetime.utcnow()},
            },
            upsert=True,
        )

    @staticmethod
    def get(owner_id: ObjectId) -> Dict[str, int]:
        doc = get_collection(OWNER_SUMMARIES).find_one({"owner_id": owner_id}) or {}
        return {
            key: doc.get(key, 0)
            for key in ("lead_count", "campaign_count", "email_drafts_count",
                        "email_sent_count", "email_received_count")
        }


class EmailLog:
    """Audit trail of every message sent to or received from a lead"""

    OUTBOUND = "OUTBOUND"
    INBOUND = "INBOUND"

    @staticmethod
    def create(lead_id: ObjectId, campaign_id: ObjectId, direction: str,
               subject: str, body: str, delivered: bool = True) -> str:
        now = datetime.utcnow()
        result = get_collection(EMAILS).insert_one({
            "lead_id": lead_id,
            "campaign_id": campaign_id,
            "direction": direction,
            "subject": subject,
            "body": body,
            "delivered": delivered,
            "created_at": now,
            "updated_at": now,
        })
        return str(result.inserted_id)

    @staticmethod
    def create_inbound_once(external_id: str, lead_id: ObjectId, campaign_id: ObjectId,
                            subject: str, body: str) -> bool:
        """
        Record an inbound message keyed by the provider's message id.
        Returns False when that message was already recorded (webhook redelivery).
        """
        now = datetime.utcnow()
        try:
            result = get_collection(EMAILS).update_one(
                {"direction": EmailLog.INBOUND, "external_id": external_id},
                {"$setOnInsert": {
                    "lead_id": lead_id,
                    "campaign_id": campaign_id,
                    "subject": subject,
                    "body": body,
                    "delivered": True,
                    "created_at": now,
                    "updated_at": now,
                }},
                upsert=True,
            )
        except DuplicateKeyError:
            return False
        return result.upserted_id is not None

    @staticmethod
    def get_by_lead(lead_id: ObjectId) -> List[Dict]:
        return list(get_collection(EMAILS).find({"lead_id": lead_id}).sort("created_at", DESCENDING))
