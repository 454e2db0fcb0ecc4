"""
Tests for campaign_store.py

Tests cover:
- Campaign creation (validation, dedup, ownership, rollback)
- Settings defaults and patch validation
- Completion aggregator (idempotence, no regression, STOPPED is sticky)
- Lead transitions (status guard, follow-up sent, reply received)
"""

import os
import sys
import unittest
from unittest.mock import patch

from bson import ObjectId
from pymongo.errors import PyMongoError

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from helpers import MongoTestCase

from campaign_store import (
    COMPLETION,
    DRAFTS,
    SEND,
    Campaign,
    CampaignLead,
    CampaignStatus,
    LeadStatus,
    NotFoundError,
    Tone,
    ValidationError,
    validate_settings_patch,
)
from database import CAMPAIGN_LEADS, CAMPAIGNS, OwnerSummary


class TestCampaignCreate(MongoTestCase):

    def setUp(self):
        super().setUp()
        self.owner = self.make_owner()
        self.lead_ids = self.make_leads(self.owner, "a@x.com", "b@x.com")

    def test_one_row_per_distinct_lead(self):
        ids = [str(self.lead_ids[0]), str(self.lead_ids[1]), str(self.lead_ids[0])]
        campaign = Campaign.create(self.owner["_id"], "Q3", ids)

        self.assertEqual(campaign["lead_count"], 2)
        self.assertEqual(campaign["status"], CampaignStatus.NOT_STARTED)
        rows = list(self.db[CAMPAIGN_LEADS].find({"campaign_id": campaign["_id"]}))
        self.assertEqual(len(rows), 2)
        self.assertEqual({r["lead_id"] for r in rows}, set(self.lead_ids))
        for row in rows:
            self.assertEqual(row["status"], LeadStatus.NOT_STARTED)
            self.assertFalse(row["is_reply_received"])
            self.assertFalse(row["is_follow_up_email_sent"])

    def test_blank_ids_are_dropped(self):
        campaign = Campaign.create(self.owner["_id"], "Q3", [self.lead_ids[0], "", None, "  "])
        self.assertEqual(campaign["lead_count"], 1)

    def test_default_settings(self):
        campaign = Campaign.create(self.owner["_id"], "Q3", self.lead_ids, description="We build APIs")
        settings = campaign["settings"]
        self.assertEqual(settings["tone"], Tone.PROFESSIONAL)
        self.assertFalse(settings["is_follow_up_enabled"])
        self.assertEqual(settings["sender_name"], "Ada Lovelace")
        self.assertEqual(settings["signature"], "Best regards,\nAda Lovelace")
        self.assertEqual(settings["description"], "We build APIs")

    def test_settings_override_defaults(self):
        campaign = Campaign.create(
            self.owner["_id"], "Q3", self.lead_ids,
            settings={"tone": Tone.CASUAL, "is_follow_up_enabled": True, "follow_up_delay": "ONE_MINUTE"},
        )
        self.assertEqual(campaign["settings"]["tone"], Tone.CASUAL)
        self.assertTrue(campaign["settings"]["is_follow_up_enabled"])

    def test_counts_campaign_for_owner(self):
        Campaign.create(self.owner["_id"], "Q3", self.lead_ids)
        self.assertEqual(OwnerSummary.get(self.owner["_id"])["campaign_count"], 1)

    def test_name_required(self):
        with self.assertRaises(ValidationError):
            Campaign.create(self.owner["_id"], "   ", self.lead_ids)

    def test_no_leads_rejected(self):
        with self.assertRaises(ValidationError):
            Campaign.create(self.owner["_id"], "Q3", [])

    def test_malformed_id_rejects_everything(self):
        with self.assertRaises(ValidationError):
            Campaign.create(self.owner["_id"], "Q3", [self.lead_ids[0], "not-an-id"])
        self.assertEqual(self.db[CAMPAIGNS].count_documents({}), 0)
        self.assertEqual(self.db[CAMPAIGN_LEADS].count_documents({}), 0)

    def test_unowned_lead_rejects_everything(self):
        other = self.make_owner("owner-2", "Grace")
        foreign = self.make_leads(other, "c@y.com")
        with self.assertRaises(ValidationError):
            Campaign.create(self.owner["_id"], "Q3", self.lead_ids + foreign)
        self.assertEqual(self.db[CAMPAIGNS].count_documents({}), 0)

    def test_unknown_lead_rejected(self):
        with self.assertRaises(ValidationError):
            Campaign.create(self.owner["_id"], "Q3", [ObjectId()])

    def test_invalid_settings_rejected(self):
        with self.assertRaises(ValidationError):
            Campaign.create(self.owner["_id"], "Q3", self.lead_ids, settings={"tone": "ANGRY"})

    def test_lead_insert_failure_rolls_back_campaign(self):
        collection = self.db[CAMPAIGN_LEADS]
        with patch.object(type(collection), "insert_many", side_effect=PyMongoError("boom")):
            with self.assertRaises(PyMongoError):
                Campaign.create(self.owner["_id"], "Q3", self.lead_ids)
        self.assertEqual(self.db[CAMPAIGNS].count_documents({}), 0)


class TestSettings(MongoTestCase):

    def test_validate_patch(self):
        self.assertEqual(validate_settings_patch({"tone": Tone.FORMAL}), {"tone": Tone.FORMAL})
        with self.assertRaises(ValidationError):
            validate_settings_patch({"colour": "blue"})
        with self.assertRaises(ValidationError):
            validate_settings_patch({"follow_up_delay": "NEXT_WEEK"})
        with self.assertRaises(ValidationError):
            validate_settings_patch({"is_follow_up_enabled": "yes"})
        with self.assertRaises(ValidationError):
            validate_settings_patch({"email_length": "HUGE"})

    def test_update_merges_and_leaves_snapshots_alone(self):
        owner = self.make_owner()
        leads = self.make_leads(owner, "a@x.com")
        campaign = Campaign.create(owner["_id"], "Q3", leads)
        CampaignLead.mark_phase_started(campaign["_id"], DRAFTS, settings_snapshot=campaign["settings"])

        updated = Campaign.update_settings(campaign["_id"], owner["_id"], {"is_follow_up_enabled": True})

        self.assertTrue(updated["settings"]["is_follow_up_enabled"])
        self.assertEqual(updated["settings"]["tone"], Tone.PROFESSIONAL)
        row = CampaignLead.get(campaign["_id"], leads[0])
        self.assertFalse(row["settings"]["is_follow_up_enabled"])

    def test_other_owner_cannot_read(self):
        owner = self.make_owner()
        campaign = Campaign.create(owner["_id"], "Q3", self.make_leads(owner, "a@x.com"))
        with self.assertRaises(NotFoundError):
            Campaign.get(campaign["_id"], ObjectId())
        with self.assertRaises(ValidationError):
            Campaign.get("nope", owner["_id"])


class TestAggregator(MongoTestCase):

    def setUp(self):
        super().setUp()
        self.owner = self.make_owner()
        self.leads = self.make_leads(self.owner, "a@x.com", "b@x.com")
        self.campaign = Campaign.create(self.owner["_id"], "Q3", self.leads)
        self.cid = self.campaign["_id"]
        Campaign.mark_phase_started(self.cid, self.owner["_id"], DRAFTS)
        CampaignLead.mark_phase_started(self.cid, DRAFTS, settings_snapshot={})

    def _row(self, lead_id):
        return CampaignLead.get(self.cid, lead_id)

    def _status(self):
        return self.db[CAMPAIGNS].find_one({"_id": self.cid})["status"]

    def test_pending_lead_blocks_advance(self):
        CampaignLead.mark_terminal(self._row(self.leads[0])["_id"], LeadStatus.DRAFTS_COMPLETED)
        self.assertFalse(Campaign.try_advance_if_phase_done(self.cid, DRAFTS))
        self.assertEqual(self._status(), CampaignStatus.DRAFTS_STARTED)

    def test_advance_is_idempotent(self):
        for lead_id in self.leads:
            CampaignLead.mark_terminal(self._row(lead_id)["_id"], LeadStatus.DRAFTS_COMPLETED)

        self.assertTrue(Campaign.try_advance_if_phase_done(self.cid, DRAFTS))
        self.assertTrue(Campaign.try_advance_if_phase_done(self.cid, DRAFTS))
        self.assertEqual(self._status(), CampaignStatus.DRAFTS_COMPLETED)

    def test_late_duplicate_never_regresses(self):
        for lead_id in self.leads:
            CampaignLead.mark_terminal(self._row(lead_id)["_id"], LeadStatus.DRAFTS_COMPLETED)
        Campaign.try_advance_if_phase_done(self.cid, DRAFTS)

        Campaign.mark_phase_started(self.cid, self.owner["_id"], SEND)
        CampaignLead.mark_phase_started(self.cid, SEND)
        for lead_id in self.leads:
            CampaignLead.mark_terminal(self._row(lead_id)["_id"], LeadStatus.COMPLETED)
        self.assertTrue(Campaign.try_advance_if_phase_done(self.cid, COMPLETION))

        # A stale drafts job re-running the drafts aggregator
        self.assertFalse(Campaign.try_advance_if_phase_done(self.cid, DRAFTS))
        self.assertEqual(self._status(), CampaignStatus.COMPLETED)

    def test_send_phase_accepts_both_lead_outcomes(self):
        Campaign.mark_phase_started(self.cid, self.owner["_id"], SEND)
        CampaignLead.mark_phase_started(self.cid, SEND)
        CampaignLead.mark_terminal(self._row(self.leads[0])["_id"], LeadStatus.SEND_COMPLETED)
        CampaignLead.mark_terminal(self._row(self.leads[1])["_id"], LeadStatus.COMPLETED)

        self.assertTrue(Campaign.try_advance_if_phase_done(self.cid, SEND))
        self.assertFalse(Campaign.try_advance_if_phase_done(self.cid, COMPLETION))
        self.assertEqual(self._status(), CampaignStatus.SEND_COMPLETED)

    def test_stopped_is_sticky(self):
        self.db[CAMPAIGNS].update_one({"_id": self.cid}, {"$set": {"status": CampaignStatus.STOPPED}})
        for lead_id in self.leads:
            CampaignLead.mark_terminal(self._row(lead_id)["_id"], LeadStatus.DRAFTS_COMPLETED)
        self.assertFalse(Campaign.try_advance_if_phase_done(self.cid, DRAFTS))
        self.assertEqual(self._status(), CampaignStatus.STOPPED)


class TestLeadTransitions(MongoTestCase):

    def setUp(self):
        super().setUp()
        owner = self.make_owner()
        self.leads = self.make_leads(owner, "a@x.com")
        self.campaign = Campaign.create(owner["_id"], "Q3", self.leads)
        Campaign.mark_phase_started(self.campaign["_id"], owner["_id"], SEND)
        CampaignLead.mark_phase_started(self.campaign["_id"], SEND)
        self.row = CampaignLead.get(self.campaign["_id"], self.leads[0])

    def test_status_guard(self):
        self.assertFalse(CampaignLead.mark_terminal(
            self.row["_id"], LeadStatus.DRAFTS_COMPLETED, from_statuses=[LeadStatus.DRAFTS_STARTED],
        ))
        self.assertEqual(CampaignLead.get_by_id(self.row["_id"])["status"], LeadStatus.SEND_STARTED)

    def test_terminal_writes_fields(self):
        self.assertTrue(CampaignLead.mark_terminal(
            self.row["_id"], LeadStatus.SEND_COMPLETED, fields={"subject_draft": "Hi"},
            from_statuses=[LeadStatus.SEND_STARTED],
        ))
        row = CampaignLead.get_by_id(self.row["_id"])
        self.assertEqual(row["status"], LeadStatus.SEND_COMPLETED)
        self.assertEqual(row["subject_draft"], "Hi")

    def test_follow_up_sent(self):
        CampaignLead.mark_follow_up_sent(self.row["_id"])
        row = CampaignLead.get_by_id(self.row["_id"])
        self.assertTrue(row["is_follow_up_email_sent"])
        self.assertIsNotNone(row["follow_up_email_sent_at"])
        self.assertEqual(row["status"], LeadStatus.COMPLETED)

    def test_reply_completes_lead_and_campaign(self):
        self.assertTrue(CampaignLead.mark_reply_received(self.campaign["_id"], self.leads[0]))
        row = CampaignLead.get_by_id(self.row["_id"])
        self.assertTrue(row["is_reply_received"])
        self.assertEqual(row["status"], LeadStatus.COMPLETED)
        self.assertEqual(Campaign.get_internal(self.campaign["_id"])["status"], CampaignStatus.COMPLETED)

    def test_reply_for_unknown_lead(self):
        self.assertFalse(CampaignLead.mark_reply_received(self.campaign["_id"], ObjectId()))

    def test_poll_snapshot(self):
        snapshot = Campaign.get_poll_snapshot(self.campaign["_id"], self.campaign["owner_id"])
        self.assertEqual(snapshot["campaign"]["status"], CampaignStatus.SEND_STARTED)
        self.assertEqual(len(snapshot["leads"]), 1)
        self.assertEqual(snapshot["leads"][0]["status"], LeadStatus.SEND_STARTED)


if __name__ == "__main__":
    unittest.main()
