"""
api/routes/v1/leads.py -- Public lead-capture endpoints.

Routes:
  POST /api/v1/newsletter -- subscribe, or reactivate a lapsed subscription
  POST /api/v1/contact    -- contact form; one message per IP per cooldown

Spam controls:
  Both forms carry a hidden "website" honeypot field. Browsers leave it
  empty; naive bots fill every input. A non-empty value is rejected.
  The contact form additionally refuses a second submission from the same
  IP within CONTACT_COOLDOWN_SECONDS (429).
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.models import ContactRequest, NewsletterRequest
from api.responses import envelope, form_body
from auth.store import format_ts
from auth.tokens import generate_token
from auth.validator import Email, Max, Min, Required, Validator, sanitize
from core.config import get_settings
from leads.models import CONTACT_TYPES, ContactSubmission, NewsletterSubscriber
from leads.store import LeadStore

logger = logging.getLogger("tlcportal.leads")

# Auth policy:
# - POST /api/v1/newsletter, POST /api/v1/contact: public
router = APIRouter()

_CONTACT_RULES = {
    "name": [Required(), Max(100)],
    "email": [Required(), Email()],
    "message": [Required(), Min(10), Max(5000)],
    "phone": [Max(20)],
    "company": [Max(100)],
    "subject": [Max(200)],
}


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


@router.post("/newsletter")
def subscribe(request: Request, body: NewsletterRequest = Depends(form_body(NewsletterRequest))) -> JSONResponse:
    if not body.email.strip():
        return envelope("Email address is required", success=False, status_code=400)

    email = body.email.strip()
    if not Validator().validate({"email": email}, {"email": [Email()]}).valid:
        return envelope("Please enter a valid email address", success=False, status_code=400)
    if body.website:
        logger.info("Newsletter honeypot triggered from %s", _client_ip(request))
        return envelope("Spam detected", success=False, status_code=400)

    store: LeadStore = request.app.state.lead_store
    name = sanitize(body.name)
    source = sanitize(body.source) or "website"
    ip = _client_ip(request)

    existing = store.get_subscriber_by_email(email)
    if existing is not None:
        if existing.status == "active":
            return envelope(
                "This email address is already subscribed to our newsletter",
                success=False,
                status_code=400,
            )
        store.reactivate_subscriber(existing.id, name, source, ip)
        return envelope("Welcome back! Your newsletter subscription has been reactivated.")

    sub_id = store.create_subscriber(
        NewsletterSubscriber(
            email=email,
            name=name,
            source=source,
            verification_token=generate_token(),
            ip_address=ip,
        )
    )
    return envelope(
        "Thank you for subscribing! You will receive our latest updates and insights.",
        data={"subscription_id": sub_id},
    )


@router.post("/contact")
def contact(request: Request, body: ContactRequest = Depends(form_body(ContactRequest))) -> JSONResponse:
    fields = body.model_dump(exclude={"csrf_token", "website"})
    fields["email"] = body.email.strip()
    result = Validator().validate(fields, _CONTACT_RULES)
    if not result.valid:
        return envelope("Validation failed", success=False, status_code=400, errors=result.errors)
    if body.website:
        logger.info("Contact honeypot triggered from %s", _client_ip(request))
        return envelope("Spam detected", success=False, status_code=400)

    store: LeadStore = request.app.state.lead_store
    ip = _client_ip(request)
    now = datetime.now(timezone.utc)
    since = format_ts(now - timedelta(seconds=get_settings().contact_cooldown_seconds))
    if store.recent_submission_from_ip(ip, since) is not None:
        return envelope(
            "Please wait a few minutes before submitting another message",
            success=False,
            status_code=429,
        )

    kind = body.type if body.type in CONTACT_TYPES else "general"
    sub_id = store.create_contact(
        ContactSubmission(
            name=sanitize(body.name),
            email=fields["email"],
            phone=sanitize(body.phone),
            company=sanitize(body.company),
            subject=sanitize(body.subject),
            message=sanitize(body.message),
            type=kind,
            ip_address=ip,
            user_agent=request.headers.get("user-agent"),
            created_at=format_ts(now),
        )
    )
    logger.info("Contact submission %d received (type=%s)", sub_id, kind)
    return envelope(
        "Thank you for your message. We will get back to you soon!",
        data={"submission_id": sub_id},
    )
