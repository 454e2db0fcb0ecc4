"""
Shared test fixtures: an in-memory MongoDB per test, plus fake generator
and mail transport that record what they were asked to do.
"""

import asyncio
import json
import os
import sys
import unittest
from datetime import datetime, timedelta

import mongomock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import database
from database import Company, Lead, Owner


def run_async(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def draft_json(subject="Quick question", body="Hi there,\nShort note.", followup=None):
    data = {"subject": subject, "body": body}
    if followup:
        data["followupSubject"], data["followupBody"] = followup
    return json.dumps(data)


class FakeGenerator:
    """
    Answers by recipient email found in the prompt. A value that is an
    exception instance is raised instead of returned.
    """

    def __init__(self, responses=None, default=None):
        self.responses = dict(responses or {})
        self.default = default if default is not None else draft_json()
        self.prompts = []

    async def generate(self, prompt):
        self.prompts.append(prompt)
        for email, response in self.responses.items():
            if f"({email})" in prompt:
                if isinstance(response, Exception):
                    raise response
                return response
        return self.default


class FakeTransport:
    def __init__(self, error=None):
        self.sent = []
        self.error = error

    async def send(self, from_addr, to, subject, html, reply_to=None):
        if self.error:
            raise self.error
        self.sent.append({"from": from_addr, "to": to, "subject": subject, "html": html, "reply_to": reply_to})
        return f"<msg-{len(self.sent)}@test>"


class MongoTestCase(unittest.TestCase):
    """Gives every test a fresh mongomock database behind database.get_db()."""

    def setUp(self):
        super().setUp()
        self.db = mongomock.MongoClient().get_database("outreach_test")
        database.use_database(self.db)
        self.addCleanup(database.use_database, None)

    def make_owner(self, external_id="owner-1", name="Ada Lovelace"):
        return Owner.find_or_create(external_id, name)

    def make_leads(self, owner, *emails):
        ids = []
        for email in emails:
            name = email.split("@")[0].title()
            ids.append(database.to_object_id(Lead.create(owner["_id"], name, email)))
        return ids

    def allow(self, owner, *emails):
        Company.upsert(owner["_id"], "Acme", allowed_email_recipients=list(emails))


def later(**kwargs):
    return datetime.utcnow() + timedelta(**kwargs)
