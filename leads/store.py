"""
leads/store.py -- SQLAlchemy Core persistence for newsletter and contact leads.

Pattern: Repository + Data Mapper, same as auth/store.py. Timestamps use
auth.store.format_ts so the contact cooldown query can compare ISO strings.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = LeadStore()
    sub_id = store.create_subscriber(NewsletterSubscriber(email="ana@x.com"))
    if store.recent_submission_from_ip("203.0.113.7", since_iso) is None:
        store.create_contact(submission)
    store.close()
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Engine

from auth.store import format_ts
from core.config import get_settings
from leads.models import ContactSubmission, NewsletterSubscriber

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_subscribers = Table(
    "newsletter_subscribers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(100)),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("source", String(50), nullable=False, server_default="website"),
    Column("verification_token", String(64)),
    Column("verified", Boolean, nullable=False, server_default="1"),
    Column("ip_address", String(45)),
    Column("subscription_date", String(32), nullable=False),
    Column("unsubscription_date", String(32)),
)

_contacts = Table(
    "contact_submissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("email", String(255), nullable=False),
    Column("phone", String(20)),
    Column("company", String(100)),
    Column("subject", String(200)),
    Column("message", Text, nullable=False),
    Column("type", String(20), nullable=False, server_default="general"),
    Column("status", String(20), nullable=False, server_default="new"),
    Column("ip_address", String(45), index=True),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return format_ts(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class LeadStore:
    """Repository for newsletter subscribers and contact submissions."""

    def __init__(self, db_url: Optional[str] = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Newsletter
    # ------------------------------------------------------------------

    def get_subscriber_by_email(self, email: str) -> Optional[NewsletterSubscriber]:
        with self.engine.connect() as conn:
            row = conn.execute(_subscribers.select().where(_subscribers.c.email == email)).fetchone()
        return _row_to_subscriber(row) if row is not None else None

    def create_subscriber(self, sub: NewsletterSubscriber) -> int:
        """Insert a subscriber. Raises IntegrityError if the email is already present."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _subscribers.insert().values(
                    email=sub.email,
                    name=sub.name,
                    status=sub.status,
                    source=sub.source,
                    verification_token=sub.verification_token,
                    verified=sub.verified,
                    ip_address=sub.ip_address,
                    subscription_date=sub.subscription_date or _now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def reactivate_subscriber(self, sub_id: int, name: str, source: str, ip_address: Optional[str]) -> bool:
        """Flip an inactive subscriber back to active with fresh signup details."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _subscribers.update()
                .where(_subscribers.c.id == sub_id)
                .values(
                    status="active",
                    subscription_date=_now_iso(),
                    unsubscription_date=None,
                    name=name,
                    source=source,
                    ip_address=ip_address,
                )
            )
            conn.commit()
        return result.rowcount > 0

    def unsubscribe(self, email: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _subscribers.update()
                .where((_subscribers.c.email == email) & (_subscribers.c.status == "active"))
                .values(status="inactive", unsubscription_date=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Contact form
    # ------------------------------------------------------------------

    def recent_submission_from_ip(self, ip_address: str, since: str) -> Optional[int]:
        """Return the id of a submission from ip_address newer than since, else None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_contacts.c.id)
                .where((_contacts.c.ip_address == ip_address) & (_contacts.c.created_at > since))
                .limit(1)
            ).first()
        return row.id if row is not None else None

    def create_contact(self, submission: ContactSubmission) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _contacts.insert().values(
                    name=submission.name,
                    email=submission.email,
                    phone=submission.phone,
                    company=submission.company,
                    subject=submission.subject,
                    message=submission.message,
                    type=submission.type,
                    status=submission.status,
                    ip_address=submission.ip_address,
                    user_agent=submission.user_agent,
                    created_at=submission.created_at or _now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_contact(self, submission_id: int) -> Optional[ContactSubmission]:
        with self.engine.connect() as conn:
            row = conn.execute(_contacts.select().where(_contacts.c.id == submission_id)).fetchone()
        return _row_to_contact(row) if row is not None else None

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_subscriber(row) -> NewsletterSubscriber:
    return NewsletterSubscriber(
        id=row.id,
        email=row.email,
        name=row.name or "",
        status=row.status,
        source=row.source,
        verification_token=row.verification_token,
        verified=bool(row.verified),
        ip_address=row.ip_address,
        subscription_date=row.subscription_date,
        unsubscription_date=row.unsubscription_date,
    )


def _row_to_contact(row) -> ContactSubmission:
    return ContactSubmission(
        id=row.id,
        name=row.name,
        email=row.email,
        phone=row.phone or "",
        company=row.company or "",
        subject=row.subject or "",
        message=row.message,
        type=row.type,
        status=row.status,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=row.created_at,
    )
