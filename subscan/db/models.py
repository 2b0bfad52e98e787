"""SQLAlchemy database models."""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from subscan.db.encryption import EncryptedString
from subscan.db.states import ScanStage, TaskStatus


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class ScanJob(Base):
    """One mailbox sweep for one user, coordinated through its stage column."""

    __tablename__ = "scan_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    scan_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    trigger: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)  # 'manual' | 'scheduled'
    stage: Mapped[str] = mapped_column(
        String(32), default=ScanStage.PENDING.value, nullable=False, index=True
    )
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Counters
    emails_found: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    emails_to_process: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    emails_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    subscriptions_found: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tasks_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    degraded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Watchdog bookkeeping
    redispatch_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_pending_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class EmailRecord(Base):
    """A candidate message pulled from the mailbox. Written once."""

    __tablename__ = "email_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    scan_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("scan_jobs.scan_id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider_message_id: Mapped[str] = mapped_column(String(128), nullable=False)
    subject: Mapped[str] = mapped_column(Text, default="", nullable=False)
    sender: Mapped[str] = mapped_column(Text, default="", nullable=False)
    date: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)  # Raw Date header
    content: Mapped[str] = mapped_column(Text, default="", nullable=False)
    content_preview: Mapped[str] = mapped_column(String(500), default="", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    analysis: Mapped[Optional["AnalysisTask"]] = relationship(
        "AnalysisTask", back_populates="email", uselist=False
    )

    __table_args__ = (
        UniqueConstraint("scan_id", "provider_message_id", name="uq_email_scan_message"),
    )


class AnalysisTask(Base):
    """One classification attempt for one email record."""

    __tablename__ = "analysis_tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email_record_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("email_records.id"), unique=True, nullable=False
    )
    scan_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20), default=TaskStatus.PENDING.value, nullable=False, index=True
    )

    # Extracted verdict
    subscription_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    billing_cycle: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    next_billing_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    provider: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    raw_model_output: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Set by the sweeper once the verdict has been promoted or matched
    subscription_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("subscriptions.id"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    email: Mapped["EmailRecord"] = relationship("EmailRecord", back_populates="analysis")


class Subscription(Base):
    """Durable subscription record shown to the user."""

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=Decimal("0.00"), nullable=False
    )
    currency: Mapped[str] = mapped_column(String(8), default="USD", nullable=False)
    billing_cycle: Mapped[str] = mapped_column(String(16), default="monthly", nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    provider: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    next_billing_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    is_manual: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Lowercased, punctuation- and suffix-free name; set on auto-detected rows
    normalized_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    source_analysis_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index(
            "uq_subscription_user_normalized",
            "user_id",
            "normalized_name",
            unique=True,
            postgresql_where=text("is_manual = false"),
            sqlite_where=text("is_manual = 0"),
        ),
    )


class MailboxToken(Base):
    """Mailbox access token issued by the OAuth flow (read-only here)."""

    __tablename__ = "mailbox_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    access_token: Mapped[Optional[str]] = mapped_column(EncryptedString(2048), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
