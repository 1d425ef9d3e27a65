"""
leads/models.py -- Domain dataclasses for marketing lead capture.

Pure data containers. Validation and the honeypot / cooldown policy live in
api/routes/v1/leads.py; persistence lives in leads/store.py.
"""

from dataclasses import dataclass
from typing import Optional

CONTACT_TYPES: tuple[str, ...] = ("general", "quote", "support", "training")


@dataclass
class NewsletterSubscriber:
    """A newsletter signup.

    Unsubscribing flips status to "inactive" rather than deleting the row, so
    a later signup with the same email reactivates it.

    id is None before the record is written to the database.
    """

    email: str
    name: str = ""
    status: str = "active"  # "active" | "inactive"
    source: str = "website"
    verification_token: Optional[str] = None
    verified: bool = True
    ip_address: Optional[str] = None
    subscription_date: str = ""  # ISO 8601, set by store
    unsubscription_date: Optional[str] = None
    id: Optional[int] = None


@dataclass
class ContactSubmission:
    """A contact-form message awaiting follow-up by staff."""

    name: str
    email: str
    message: str
    phone: str = ""
    company: str = ""
    subject: str = ""
    type: str = "general"  # one of CONTACT_TYPES
    status: str = "new"
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: str = ""  # ISO 8601, set by store
    id: Optional[int] = None
