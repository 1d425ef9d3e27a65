"""
tests/test_leads.py -- Newsletter and contact-form capture.

Covers:
  - LeadStore: subscriber lifecycle (create, unsubscribe, reactivate),
    duplicate emails, contact lookup and the per-IP recency query
  - POST /api/v1/newsletter: new, duplicate, reactivation, honeypot, bad email
  - POST /api/v1/contact: validation errors, honeypot, success, per-IP cooldown

TestClient always reports its peer as "testclient", so every contact post in
this module shares one cooldown window. The cooldown test is the only one
that submits a valid message.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from auth.store import format_ts
from leads.models import ContactSubmission, NewsletterSubscriber
from leads.store import LeadStore


@pytest.fixture
def lead_store():
    s = LeadStore("sqlite:///:memory:")
    yield s
    s.close()


class TestLeadStore:
    def test_subscriber_lifecycle(self, lead_store: LeadStore) -> None:
        sub_id = lead_store.create_subscriber(NewsletterSubscriber(email="ana@x.com", name="Ana"))
        sub = lead_store.get_subscriber_by_email("ana@x.com")
        assert sub.id == sub_id
        assert sub.status == "active"
        assert sub.verified is True
        assert sub.subscription_date

        assert lead_store.unsubscribe("ana@x.com") is True
        assert lead_store.unsubscribe("ana@x.com") is False
        sub = lead_store.get_subscriber_by_email("ana@x.com")
        assert sub.status == "inactive"
        assert sub.unsubscription_date is not None

        lead_store.reactivate_subscriber(sub_id, "Ana Lee", "footer", "203.0.113.7")
        sub = lead_store.get_subscriber_by_email("ana@x.com")
        assert sub.status == "active"
        assert sub.unsubscription_date is None
        assert sub.name == "Ana Lee"
        assert sub.source == "footer"

    def test_duplicate_subscriber(self, lead_store: LeadStore) -> None:
        lead_store.create_subscriber(NewsletterSubscriber(email="ana@x.com"))
        with pytest.raises(IntegrityError):
            lead_store.create_subscriber(NewsletterSubscriber(email="ana@x.com"))

    def test_contact_round_trip(self, lead_store: LeadStore) -> None:
        sub_id = lead_store.create_contact(
            ContactSubmission(name="Ana", email="ana@x.com", message="Need a quote please", type="quote")
        )
        contact = lead_store.get_contact(sub_id)
        assert contact.type == "quote"
        assert contact.status == "new"
        assert lead_store.get_contact(sub_id + 1) is None

    def test_recent_submission_window(self, lead_store: LeadStore) -> None:
        now = datetime.now(timezone.utc)
        sub_id = lead_store.create_contact(
            ContactSubmission(
                name="Ana",
                email="ana@x.com",
                message="Hello there team",
                ip_address="203.0.113.7",
                created_at=format_ts(now),
            )
        )
        assert lead_store.recent_submission_from_ip("203.0.113.7", format_ts(now - timedelta(minutes=5))) == sub_id
        assert lead_store.recent_submission_from_ip("203.0.113.7", format_ts(now + timedelta(seconds=1))) is None
        assert lead_store.recent_submission_from_ip("198.51.100.1", format_ts(now - timedelta(minutes=5))) is None


class TestNewsletterRoute:
    def test_subscribe_duplicate_and_reactivate(self, client) -> None:
        resp = client.post("/api/v1/newsletter", json={"email": "reader@tlc-consult.com", "name": "Rae"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["message"] == "Thank you for subscribing! You will receive our latest updates and insights."
        assert isinstance(body["data"]["subscription_id"], int)

        again = client.post("/api/v1/newsletter", json={"email": "reader@tlc-consult.com"})
        assert again.status_code == 400
        assert again.json()["message"] == "This email address is already subscribed to our newsletter"

        client.app.state.lead_store.unsubscribe("reader@tlc-consult.com")
        back = client.post("/api/v1/newsletter", json={"email": "reader@tlc-consult.com"})
        assert back.status_code == 200
        assert back.json()["message"] == "Welcome back! Your newsletter subscription has been reactivated."

    @pytest.mark.parametrize(
        "payload,message",
        [
            ({"email": ""}, "Email address is required"),
            ({"email": "not-an-email"}, "Please enter a valid email address"),
            ({"email": "jos\u00e9@tlc-consult.com"}, "Please enter a valid email address"),
            ({"email": "bot@tlc-consult.com", "website": "http://spam.example"}, "Spam detected"),
        ],
    )
    def test_rejections(self, client, payload, message) -> None:
        resp = client.post("/api/v1/newsletter", json=payload)
        assert resp.status_code == 400
        assert resp.json() == {"success": False, "message": message}

    def test_honeypot_writes_nothing(self, client) -> None:
        client.post("/api/v1/newsletter", json={"email": "bot2@tlc-consult.com", "website": "x"})
        assert client.app.state.lead_store.get_subscriber_by_email("bot2@tlc-consult.com") is None


class TestContactRoute:
    _VALID = {
        "name": "Cara Client",
        "email": "cara@tlc-consult.com",
        "message": "We would like ISO 9001 training for our staff.",
        "type": "not-a-type",
    }

    def test_validation_errors(self, client) -> None:
        resp = client.post("/api/v1/contact", json={"email": "bad", "message": "short"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["message"] == "Validation failed"
        assert body["errors"]["name"] == ["Name is required"]
        assert body["errors"]["email"] == ["Please enter a valid email address"]
        assert body["errors"]["message"] == ["Message must be at least 10 characters"]

    def test_honeypot(self, client) -> None:
        resp = client.post("/api/v1/contact", json={**self._VALID, "website": "filled"})
        assert resp.status_code == 400
        assert resp.json()["message"] == "Spam detected"

    def test_submit_then_cooldown(self, client) -> None:
        resp = client.post("/api/v1/contact", json=self._VALID, headers={"User-Agent": "pytest-agent"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["message"] == "Thank you for your message. We will get back to you soon!"

        stored = client.app.state.lead_store.get_contact(body["data"]["submission_id"])
        assert stored.type == "general"
        assert stored.user_agent == "pytest-agent"
        assert stored.status == "new"

        second = client.post("/api/v1/contact", json=self._VALID)
        assert second.status_code == 429
        assert second.json()["message"] == "Please wait a few minutes before submitting another message"
