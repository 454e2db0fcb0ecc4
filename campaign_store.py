"""
Campaign state store.

Owns the `campaigns` and `campaign_leads` collections and every status
transition on them. Two levels of state:

    Campaign      NOT_STARTED → DRAFTS_STARTED → DRAFTS_COMPLETED
                  → SEND_STARTED → SEND_COMPLETED → COMPLETED   (or STOPPED)
    CampaignLead  same vocabulary, one row per (campaign, lead)

Phase starts are written by the orchestrator (campaign_manager.py). Phase
completions are written only by `Campaign.try_advance_if_phase_done`, the
completion aggregator, which workers call after every lead-level change.

There is no lock anywhere in here. Coordination relies on MongoDB's atomic
single-document updates plus the fact that every aggregator write sets a
status that is already the target when repeated.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, FrozenSet

from bson import ObjectId
from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from database import (
    CAMPAIGNS,
    CAMPAIGN_LEADS,
    Lead,
    Owner,
    OwnerSummary,
    get_collection,
    to_object_id,
)
from followup_delay import VALID_DELAYS

logger = logging.getLogger("outreach.campaign_store")


class CampaignError(Exception):
    """Base class for errors surfaced synchronously to the caller."""


class ValidationError(CampaignError):
    pass


class NotFoundError(CampaignError):
    pass


class CampaignStatus:
    NOT_STARTED = "not_started"
    DRAFTS_STARTED = "drafts_started"
    DRAFTS_COMPLETED = "drafts_completed"
    SEND_STARTED = "send_started"
    SEND_COMPLETED = "send_completed"
    COMPLETED = "completed"
    STOPPED = "stopped"


# Lead rows use the campaign vocabulary at finer grain
LeadStatus = CampaignStatus


class Tone:
    PROFESSIONAL = "PROFESSIONAL"
    FRIENDLY = "FRIENDLY"
    CASUAL = "CASUAL"
    FORMAL = "FORMAL"

    ALL = frozenset({PROFESSIONAL, FRIENDLY, CASUAL, FORMAL})


class EmailLength:
    SHORT = "SHORT"
    MEDIUM = "MEDIUM"
    LONG = "LONG"

    ALL = frozenset({SHORT, MEDIUM, LONG})


SETTINGS_FIELDS = frozenset({
    "tone",
    "email_length",
    "description",
    "sender_name",
    "signature",
    "is_follow_up_enabled",
    "follow_up_delay",
    "subject",
    "subject_from_user",
})


@dataclass(frozen=True)
class Phase:
    """
    One asynchronous stage of a campaign.

    lead_done is a set because leads legitimately finish the send phase in
    different statuses: SEND_COMPLETED when a follow-up is still pending,
    COMPLETED when there is nothing left to do.
    """
    name: str
    lead_started: Optional[str]
    lead_done: FrozenSet[str]
    campaign_started: Optional[str]
    campaign_completed: str
    advance_from: FrozenSet[str]


DRAFTS = Phase(
    name="drafts",
    lead_started=LeadStatus.DRAFTS_STARTED,
    lead_done=frozenset({LeadStatus.DRAFTS_COMPLETED}),
    campaign_started=CampaignStatus.DRAFTS_STARTED,
    campaign_completed=CampaignStatus.DRAFTS_COMPLETED,
    advance_from=frozenset({CampaignStatus.DRAFTS_STARTED}),
)

SEND = Phase(
    name="send",
    lead_started=LeadStatus.SEND_STARTED,
    lead_done=frozenset({LeadStatus.SEND_COMPLETED, LeadStatus.COMPLETED}),
    campaign_started=CampaignStatus.SEND_STARTED,
    campaign_completed=CampaignStatus.SEND_COMPLETED,
    advance_from=frozenset({CampaignStatus.SEND_STARTED}),
)

COMPLETION = Phase(
    name="completion",
    lead_started=None,
    lead_done=frozenset({LeadStatus.COMPLETED}),
    campaign_started=None,
    campaign_completed=CampaignStatus.COMPLETED,
    advance_from=frozenset({CampaignStatus.SEND_STARTED, CampaignStatus.SEND_COMPLETED}),
)

PHASES = {p.name: p for p in (DRAFTS, SEND, COMPLETION)}


def _require_id(value: Any, what: str) -> ObjectId:
    oid = to_object_id(value)
    if oid is None:
        raise ValidationError(f"Invalid {what} id: {value}")
    return oid


def validate_settings_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    """Reject unknown keys and out-of-range enum values."""
    unknown = set(patch) - SETTINGS_FIELDS
    if unknown:
        raise ValidationError(f"Unknown settings: {', '.join(sorted(unknown))}")
    if "tone" in patch and patch["tone"] not in Tone.ALL:
        raise ValidationError(f"Invalid tone: {patch['tone']}")
    if "email_length" in patch and patch["email_length"] not in EmailLength.ALL:
        raise ValidationError(f"Invalid email length: {patch['email_length']}")
    if "follow_up_delay" in patch and patch["follow_up_delay"] not in VALID_DELAYS:
        raise ValidationError(f"Invalid follow-up delay: {patch['follow_up_delay']}")
    for flag in ("is_follow_up_enabled", "subject_from_user"):
        if flag in patch and not isinstance(patch[flag], bool):
            raise ValidationError(f"{flag} must be a boolean")
    return dict(patch)


def default_settings(owner: Optional[Dict], description: str = None) -> Dict[str, Any]:
    owner_name = ((owner or {}).get("name") or "").strip()
    settings = {
        "tone": Tone.PROFESSIONAL,
        "is_follow_up_enabled": False,
    }
    if owner_name:
        settings["sender_name"] = owner_name
        settings["signature"] = f"Best regards,\n{owner_name}"
    if description:
        settings["description"] = description
    return settings


class Campaign:
    """Campaign records and campaign-level transitions"""

    @staticmethod
    def create(owner_id: ObjectId, name: str, lead_ids: List[Any],
               settings: Dict[str, Any] = None, description: str = None) -> Dict:
        """
        Create a campaign and one CampaignLead per distinct lead id.

        Every id must parse and belong to the owner; a single bad id rejects
        the whole call. Lead rows are inserted after the campaign; if that
        insert fails the campaign and any partial rows are removed again.
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("Campaign name is required")

        raw_ids = [i for i in (lead_ids or []) if i is not None and str(i).strip() != ""]
        parsed = [_require_id(raw, "lead") for raw in raw_ids]
        unique_ids = list(dict.fromkeys(parsed))

        if not unique_ids:
            raise ValidationError("At least one valid lead id is required")

        if Lead.count_owned_by(owner_id, unique_ids) != len(unique_ids):
            raise ValidationError("All lead ids must exist and belong to the current owner")

        merged = default_settings(Owner.get_by_id(owner_id), description)
        merged.update(validate_settings_patch(settings or {}))

        now = datetime.utcnow()
        campaign = {
            "owner_id": owner_id,
            "name": name,
            "lead_count": len(unique_ids),
            "settings": merged,
            "status": CampaignStatus.NOT_STARTED,
            "created_at": now,
            "updated_at": now,
        }
        campaign["_id"] = get_collection(CAMPAIGNS).insert_one(campaign).inserted_id

        rows = [
            {
                "campaign_id": campaign["_id"],
                "lead_id": lead_id,
                "status": LeadStatus.NOT_STARTED,
                "is_reply_received": False,
                "is_follow_up_email_sent": False,
                "created_at": now,
                "updated_at": now,
            }
            for lead_id in unique_ids
        ]
        try:
            get_collection(CAMPAIGN_LEADS).insert_many(rows)
        except PyMongoError:
            logger.error(f"campaign_lead_insert_failed: rolling back campaign={campaign['_id']}")
            get_collection(CAMPAIGN_LEADS).delete_many({"campaign_id": campaign["_id"]})
            get_collection(CAMPAIGNS).delete_one({"_id": campaign["_id"]})
            raise

        OwnerSummary.increment(owner_id, campaign_count=1)
        logger.info(f"campaign_created: {campaign['_id']} leads={len(unique_ids)} owner={owner_id}")
        return campaign

    @staticmethod
    def get(campaign_id: Any, owner_id: ObjectId) -> Dict:
        oid = _require_id(campaign_id, "campaign")
        campaign = get_collection(CAMPAIGNS).find_one({"_id": oid, "owner_id": owner_id})
        if not campaign:
            raise NotFoundError("Campaign not found")
        return campaign

    @staticmethod
    def get_internal(campaign_id: Any) -> Optional[Dict]:
        """Worker-side lookup. No ownership check; None when missing or malformed."""
        oid = to_object_id(campaign_id)
        if oid is None:
            return None
        return get_collection(CAMPAIGNS).find_one({"_id": oid})

    @staticmethod
    def list_by_owner(owner_id: ObjectId) -> List[Dict]:
        return list(get_collection(CAMPAIGNS).find({"owner_id": owner_id}).sort("created_at", DESCENDING))

    @staticmethod
    def update_settings(campaign_id: Any, owner_id: ObjectId, patch: Dict[str, Any]) -> Dict:
        """Merge patch into the stored settings. Leads keep their own snapshot."""
        existing = Campaign.get(campaign_id, owner_id)
        settings = dict(existing.get("settings") or {})
        settings.update(validate_settings_patch(patch))
        get_collection(CAMPAIGNS).update_one(
            {"_id": existing["_id"], "owner_id": owner_id},
            {"$set": {"settings": settings, "updated_at": datetime.utcnow()}},
        )
        existing["settings"] = settings
        return existing

    @staticmethod
    def mark_phase_started(campaign_id: ObjectId, owner_id: ObjectId, phase: Phase,
                           from_statuses: Optional[List[str]] = None) -> bool:
        """Returns False when from_statuses was given and the campaign is in none of them."""
        query: Dict[str, Any] = {"_id": campaign_id, "owner_id": owner_id}
        if from_statuses is not None:
            query["status"] = {"$in": list(from_statuses)}
        result = get_collection(CAMPAIGNS).update_one(
            query, {"$set": {"status": phase.campaign_started, "updated_at": datetime.utcnow()}},
        )
        if not result.matched_count:
            return False
        logger.info(f"campaign_phase_started: {campaign_id} phase={phase.name}")
        return True

    @staticmethod
    def try_advance_if_phase_done(campaign_id: ObjectId, phase: Phase) -> bool:
        """
        Completion aggregator.

        Looks for any lead of the campaign whose status is outside the
        phase's accepted set. If there is none, moves the campaign to the
        phase's completed status. The move only applies from the statuses in
        `phase.advance_from`, so a late duplicate job can never pull a
        campaign backwards or out of STOPPED.

        Returns True when the campaign sits at the phase's completed status.
        """
        pending = get_collection(CAMPAIGN_LEADS).find_one(
            {"campaign_id": campaign_id, "status": {"$nin": list(phase.lead_done)}},
            {"_id": 1, "status": 1},
        )
        if pending:
            logger.debug(f"phase_pending: campaign={campaign_id} phase={phase.name} lead={pending['_id']}")
            return False

        result = get_collection(CAMPAIGNS).update_one(
            {"_id": campaign_id, "status": {"$in": list(phase.advance_from)}},
            {"$set": {"status": phase.campaign_completed, "updated_at": datetime.utcnow()}},
        )
        if result.modified_count:
            logger.info(f"campaign_advanced: {campaign_id} → {phase.campaign_completed}")
            return True

        current = get_collection(CAMPAIGNS).find_one({"_id": campaign_id}, {"status": 1})
        return bool(current) and current.get("status") == phase.campaign_completed

    @staticmethod
    def get_poll_snapshot(campaign_id: Any, owner_id: ObjectId) -> Dict:
        """Cheap projection for UI polling: campaign status + per-lead status and drafts."""
        oid = _require_id(campaign_id, "campaign")
        campaign = get_collection(CAMPAIGNS).find_one({"_id": oid, "owner_id": owner_id}, {"_id": 1, "status": 1})
        if not campaign:
            raise NotFoundError("Campaign not found")
        rows = get_collection(CAMPAIGN_LEADS).find(
            {"campaign_id": oid},
            {
                "lead_id": 1,
                "status": 1,
                "email_draft": 1,
                "subject_draft": 1,
                "followup_email_draft": 1,
                "followup_subject_draft": 1,
            },
        )
        return {
            "campaign": {"_id": campaign["_id"], "status": campaign["status"]},
            "leads": [
                {
                    "lead_id": row["lead_id"],
                    "status": row.get("status"),
                    "email_draft": row.get("email_draft"),
                    "subject_draft": row.get("subject_draft"),
                    "followup_email_draft": row.get("followup_email_draft"),
                    "followup_subject_draft": row.get("followup_subject_draft"),
                }
                for row in rows
            ],
        }


class CampaignLead:
    """Per-recipient progress rows"""

    @staticmethod
    def get(campaign_id: Any, lead_id: Any) -> Optional[Dict]:
        campaign_oid, lead_oid = to_object_id(campaign_id), to_object_id(lead_id)
        if campaign_oid is None or lead_oid is None:
            return None
        return get_collection(CAMPAIGN_LEADS).find_one({"campaign_id": campaign_oid, "lead_id": lead_oid})

    @staticmethod
    def get_by_id(campaign_lead_id: Any) -> Optional[Dict]:
        oid = to_object_id(campaign_lead_id)
        if oid is None:
            return None
        return get_collection(CAMPAIGN_LEADS).find_one({"_id": oid})

    @staticmethod
    def list_lead_ids(campaign_id: ObjectId) -> List[ObjectId]:
        rows = get_collection(CAMPAIGN_LEADS).find({"campaign_id": campaign_id}, {"lead_id": 1})
        return [row["lead_id"] for row in rows]

    @staticmethod
    def list_with_leads(campaign_id: Any, owner_id: ObjectId) -> List[Dict]:
        campaign = Campaign.get(campaign_id, owner_id)
        rows = list(get_collection(CAMPAIGN_LEADS).find({"campaign_id": campaign["_id"]}))
        leads = Lead.get_many(row["lead_id"] for row in rows)
        for row in rows:
            row["lead"] = leads.get(row["lead_id"])
        return rows

    @staticmethod
    def mark_phase_started(campaign_id: ObjectId, phase: Phase, settings_snapshot: Dict = None) -> int:
        """
        Bulk-move every lead of the campaign to the phase's started status.
        With a snapshot, the campaign settings are copied onto each lead so
        later edits don't reach drafts that are already in flight.
        """
        fields = {"status": phase.lead_started, "updated_at": datetime.utcnow()}
        if settings_snapshot is not None:
            fields["settings"] = dict(settings_snapshot)
        result = get_collection(CAMPAIGN_LEADS).update_many({"campaign_id": campaign_id}, {"$set": fields})
        return result.modified_count

    @staticmethod
    def mark_terminal(campaign_lead_id: ObjectId, outcome: str, fields: Dict[str, Any] = None,
                      from_statuses: Optional[List[str]] = None) -> bool:
        """
        Single-lead transition to `outcome`.

        from_statuses restricts the write to leads currently in one of those
        statuses. Returns False when the guard did not match.
        """
        update = dict(fields or {})
        update.update({"status": outcome, "updated_at": datetime.utcnow()})
        query: Dict[str, Any] = {"_id": campaign_lead_id}
        if from_statuses is not None:
            query["status"] = {"$in": list(from_statuses)}
        result = get_collection(CAMPAIGN_LEADS).update_one(query, {"$set": update})
        if not result.matched_count:
            logger.warning(f"lead_transition_skipped: {campaign_lead_id} → {outcome} (status guard)")
        return bool(result.matched_count)

    @staticmethod
    def mark_follow_up_sent(campaign_lead_id: ObjectId):
        now = datetime.utcnow()
        get_collection(CAMPAIGN_LEADS).update_one(
            {"_id": campaign_lead_id},
            {
                "$set": {
                    "is_follow_up_email_sent": True,
                    "follow_up_email_sent_at": now,
                    "status": LeadStatus.COMPLETED,
                    "updated_at": now,
                }
            },
        )

    @staticmethod
    def mark_reply_received(campaign_id: ObjectId, lead_id: ObjectId) -> bool:
        """Record an inbound reply, complete the lead, then re-check the campaign."""
        now = datetime.utcnow()
        result = get_collection(CAMPAIGN_LEADS).update_one(
            {"campaign_id": campaign_id, "lead_id": lead_id},
            {
                "$set": {
                    "is_reply_received": True,
                    "reply_received_at": now,
                    "status": LeadStatus.COMPLETED,
                    "updated_at": now,
                }
            },
        )
        if not result.matched_count:
            return False
        logger.info(f"reply_recorded: campaign={campaign_id} lead={lead_id}")
        Campaign.try_advance_if_phase_done(campaign_id, COMPLETION)
        return True
