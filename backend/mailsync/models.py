"""SQLAlchemy models."""
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Text,
    Index,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy import JSON

from .jobs import JobStatus, utcnow

Base = declarative_base()


class AccountRecord(Base):
    """Provider account. Written by account management; read-only for the scheduler."""
    __tablename__ = "accounts"

    id = Column(String(36), primary_key=True)
    provider = Column(String(64), nullable=False)  # gmail, outlook, fastmail, caldav, ...
    display_name = Column(String, nullable=True)
    protocols = Column(JSON, nullable=True)  # {"email": "imap", "calendar": "caldav", ...}
    credential_ref = Column(String, nullable=True)  # handle into the credential store
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class SyncJobRecord(Base):
    """Durable sync queue row. Mutated only through JobStore."""
    __tablename__ = "sync_jobs"

    id = Column(String(36), primary_key=True)
    account_id = Column(String(36), nullable=False, index=True)
    domain = Column(String(16), nullable=False)  # email, calendar, tasks
    status = Column(String(16), nullable=False, default=JobStatus.PENDING.value)  # pending, running, succeeded, dead_letter
    payload = Column(JSON, nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)
    run_after = Column(DateTime, nullable=False)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


# Due-job lookup
Index("ix_sync_jobs_status_run_after", SyncJobRecord.status, SyncJobRecord.run_after)
Index("ix_sync_jobs_account_domain_status", SyncJobRecord.account_id, SyncJobRecord.domain, SyncJobRecord.status)
