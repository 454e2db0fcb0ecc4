#!/usr/bin/env python3
"""
Outreach Campaign Orchestration
===============================

Drafts are generated by the LLM worker, sends and follow-ups by the send
worker. This CLI creates campaigns, kicks off phases and runs the workers.

Usage:
    python main.py lead-add "Jane Doe" jane@acme.com --info company=Acme
    python main.py company-set "Acme" --allow jane@acme.com
    python main.py create "Q3 founders" <lead_id> <lead_id> --follow-up --delay TWO_DAYS
    python main.py generate-drafts <campaign_id>
    python main.py poll <campaign_id>
    python main.py launch <campaign_id>
    python main.py workers
"""

import argparse
import asyncio
import json
import logging
import sys

import config
from campaign_manager import CampaignManager
from campaign_store import CampaignError
from database import Company, Lead, Owner, OwnerSummary, ensure_indexes
from followup_delay import DEFAULT_FOLLOW_UP_DELAY, VALID_DELAYS
from reply_detector import ReplyHandler, WebhookVerificationError
from utils.logging_utils import setup_logging
from workers.job_queue import EMAIL_DRAFTS_QUEUE, SEND_EMAIL_QUEUE, JobQueue

logger = logging.getLogger("outreach.main")

STATUS_EMOJI = {
    "not_started": "⚪",
    "drafts_started": "✍️",
    "drafts_completed": "📝",
    "send_started": "📤",
    "send_completed": "📬",
    "completed": "✅",
    "stopped": "⏹️",
}


def _parse_pairs(pairs):
    """key=value list → dict. Values that parse as JSON (true, 3) keep their type."""
    result = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep:
            raise CampaignError(f"Expected key=value, got: {pair}")
        try:
            result[key.strip()] = json.loads(value)
        except json.JSONDecodeError:
            result[key.strip()] = value
    return result


def add_lead(owner, name: str, email: str, info):
    lead_id = Lead.create(owner["_id"], name, email, additional_info=_parse_pairs(info))
    print(f"✅ Lead saved: {lead_id}")


def set_company(owner, name: str, website: str, description: str, allow):
    Company.upsert(owner["_id"], name, website=website, description=description,
                   allowed_email_recipients=allow)
    allowed = Company.get_allowed_recipients(owner["_id"])
    print(f"✅ Company saved: {name}")
    print(f"   Allowlist ({len(allowed)}): {', '.join(allowed) or '(empty, no real sends)'}")


def create_campaign(manager: CampaignManager, owner, args):
    settings = {}
    if args.tone:
        settings["tone"] = args.tone
    if args.follow_up:
        settings["is_follow_up_enabled"] = True
        settings["follow_up_delay"] = args.delay
    if args.subject:
        settings["subject"] = args.subject
        settings["subject_from_user"] = True

    campaign = manager.create_campaign(owner["_id"], args.name, args.lead_ids,
                                       description=args.description, settings=settings)
    print(f"\n✅ Campaign created!")
    print(f"   ID: {campaign['_id']}")
    print(f"   Leads: {campaign['lead_count']}")
    print(f"\n📧 Next steps:")
    print(f"   1. Drafts:  python main.py generate-drafts {campaign['_id']}")
    print(f"   2. Launch:  python main.py launch {campaign['_id']}")


def list_campaigns(manager: CampaignManager, owner):
    campaigns = manager.list_campaigns(owner["_id"])
    if not campaigns:
        print("\n📭 No campaigns yet. Create one with:")
        print('   python main.py create "name" <lead_id> ...')
        return

    print(f"\n📋 Campaigns ({len(campaigns)})\n")
    for c in campaigns:
        print(f"{STATUS_EMOJI.get(c['status'], '•')} {c['name']}")
        print(f"   ID: {c['_id']}")
        print(f"   Status: {c['status']} | Leads: {c.get('lead_count', 0)}")
        print()


def show_campaign(manager: CampaignManager, owner, campaign_id: str):
    campaign = manager.get_campaign(campaign_id, owner["_id"])
    print(f"\n📊 Campaign: {campaign['name']}")
    print(f"   Status: {campaign['status']}")
    print(f"   Created: {campaign['created_at']}")
    print(f"\n   Settings:")
    for key, value in sorted((campaign.get("settings") or {}).items()):
        print(f"   - {key}: {value!r}")

    summary = OwnerSummary.get(owner["_id"])
    print(f"\n   Owner totals:")
    for key, value in summary.items():
        print(f"   - {key.replace('_', ' ').title()}: {value}")


def poll_campaign(manager: CampaignManager, owner, campaign_id: str):
    data = manager.get_poll_data(campaign_id, owner["_id"])
    print(json.dumps(data, indent=2, default=str))


def show_leads(manager: CampaignManager, owner, campaign_id: str):
    rows = manager.get_campaign_leads(campaign_id, owner["_id"])
    print(f"\n👥 Leads ({len(rows)})\n")
    for row in rows:
        lead = row.get("lead") or {}
        flags = []
        if row.get("is_reply_received"):
            flags.append("replied")
        if row.get("is_follow_up_email_sent"):
            flags.append("followed-up")
        print(f"{STATUS_EMOJI.get(row.get('status'), '•')} {lead.get('name') or '?'} <{lead.get('email') or '-'}>")
        print(f"   Status: {row.get('status')} {' '.join(flags)}")
        if row.get("subject_draft"):
            print(f"   Subject: {row['subject_draft']}")


def update_settings(manager: CampaignManager, owner, campaign_id: str, pairs):
    campaign = manager.update_settings(campaign_id, owner["_id"], _parse_pairs(pairs))
    print(f"✅ Settings updated for {campaign['_id']}")


def run_workers():
    from workers.scheduler import main as scheduler_main

    print("=" * 60)
    print("  Outreach workers — email-drafts + send-email")
    print("=" * 60)
    print(f"✅ LLM provider: {config.LLM_PROVIDER}")
    print(f"✅ Allowlist mode: {'on' if config.ALLOWLIST_MODE else 'off'}")
    print()
    asyncio.run(scheduler_main())


def handle_reply_webhook(payload_file: str, headers_file: str):
    with open(payload_file, "r", encoding="utf-8") as f:
        payload = f.read()
    with open(headers_file, "r", encoding="utf-8") as f:
        headers = json.load(f)
    result = asyncio.run(ReplyHandler().handle_webhook(payload, headers))
    print(json.dumps(result))


def show_queue_stats():
    for name in (EMAIL_DRAFTS_QUEUE, SEND_EMAIL_QUEUE):
        stats = JobQueue(name).get_stats()
        print(f"📦 {name}: " + (", ".join(f"{k}={v}" for k, v in sorted(stats.items())) or "empty"))


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Outreach campaign orchestration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create "Q3 founders" 64f0... 64f1... --follow-up --delay ONE_MINUTE
  python main.py generate-drafts <campaign_id>
  python main.py launch <campaign_id>

  # Workers (drafts + sends + follow-ups)
  python main.py workers
        """
    )
    parser.add_argument("--owner", default="cli", help="External owner identity")
    parser.add_argument("--owner-name", help="Owner display name (used for default signature)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Leads / company
    lead_parser = subparsers.add_parser("lead-add", help="Create or update a lead")
    lead_parser.add_argument("name")
    lead_parser.add_argument("email")
    lead_parser.add_argument("--info", nargs="*", help="Additional info as key=value")

    company_parser = subparsers.add_parser("company-set", help="Set company profile and allowlist")
    company_parser.add_argument("name")
    company_parser.add_argument("--website")
    company_parser.add_argument("--description")
    company_parser.add_argument("--allow", nargs="*", help="Allowed recipient emails")

    # Campaigns
    create_parser = subparsers.add_parser("create", help="Create a campaign for existing leads")
    create_parser.add_argument("name")
    create_parser.add_argument("lead_ids", nargs="+")
    create_parser.add_argument("--description")
    create_parser.add_argument("--tone")
    create_parser.add_argument("--subject", help="Fixed subject line for every initial email")
    create_parser.add_argument("--follow-up", action="store_true", help="Enable the delayed follow-up")
    create_parser.add_argument("--delay", default=DEFAULT_FOLLOW_UP_DELAY, choices=sorted(VALID_DELAYS))

    subparsers.add_parser("list", help="List campaigns")

    for name, help_text in (
        ("show", "Show campaign details"),
        ("poll", "Campaign + lead statuses as JSON"),
        ("leads", "Show campaign leads"),
        ("generate-drafts", "Start draft generation"),
        ("launch", "Start sending"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("campaign_id")

    settings_parser = subparsers.add_parser("settings", help="Update campaign settings")
    settings_parser.add_argument("campaign_id")
    settings_parser.add_argument("pairs", nargs="+", help="key=value")

    # Runtime
    subparsers.add_parser("workers", help="Run draft + send workers until SIGTERM")
    subparsers.add_parser("queue-stats", help="Job counts per queue and status")

    webhook_parser = subparsers.add_parser("reply-webhook", help="Process a signed inbound email webhook")
    webhook_parser.add_argument("payload_file")
    webhook_parser.add_argument("headers_file", help="JSON object of request headers")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    setup_logging(config.LOG_LEVEL, config.LOG_FILE, structured=config.LOG_JSON)
    ensure_indexes()

    manager = CampaignManager()
    owner = Owner.find_or_create(args.owner, args.owner_name)

    try:
        if args.command == "lead-add":
            add_lead(owner, args.name, args.email, args.info)
        elif args.command == "company-set":
            set_company(owner, args.name, args.website, args.description, args.allow)
        elif args.command == "create":
            create_campaign(manager, owner, args)
        elif args.command == "list":
            list_campaigns(manager, owner)
        elif args.command == "show":
            show_campaign(manager, owner, args.campaign_id)
        elif args.command == "poll":
            poll_campaign(manager, owner, args.campaign_id)
        elif args.command == "leads":
            show_leads(manager, owner, args.campaign_id)
        elif args.command == "settings":
            update_settings(manager, owner, args.campaign_id, args.pairs)
        elif args.command == "generate-drafts":
            job_id = manager.enqueue_draft_generation(args.campaign_id, owner["_id"])
            print(f"✍️  Draft generation queued (job {job_id or '-'})")
        elif args.command == "launch":
            job_id = manager.launch(args.campaign_id, owner["_id"])
            print(f"📤 Sending queued (job {job_id or '-'})")
        elif args.command == "workers":
            run_workers()
        elif args.command == "queue-stats":
            show_queue_stats()
        elif args.command == "reply-webhook":
            handle_reply_webhook(args.payload_file, args.headers_file)
    except (CampaignError, WebhookVerificationError) as e:
        print(f"❌ {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
