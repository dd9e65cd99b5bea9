"""SQLAlchemy database models for the creator payout engine."""
import enum
import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JsonType = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(12, 2)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Rail(str, enum.Enum):
    """Disbursement channels."""

    ACH = "ach"
    PAYPAL = "paypal"
    CRYPTO = "crypto"


class Platform(str, enum.Enum):
    """Social platforms content links can point at."""

    INSTAGRAM = "instagram"
    TIKTOK = "tiktok"


class VerificationStatus(str, enum.Enum):
    UNVERIFIED = "unverified"
    PENDING = "pending"
    VERIFIED = "verified"


class PayoutStatus(str, enum.Enum):
    """Lifecycle of a view-tracking payout."""

    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    REJECTED = "rejected"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Campaign(Base):
    """
    Campaign monetization terms.

    Owned by the surrounding platform; the payout engine only reads them.
    """

    __tablename__ = "campaigns"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    brand_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_model: Mapped[str] = mapped_column(String(20), nullable=False, default="cpm")
    cpm_rate: Mapped[Decimal] = mapped_column(Money, nullable=False)
    max_views: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint("cpm_rate >= 0", name="non_negative_cpm_rate"),
        CheckConstraint("max_views >= 0", name="non_negative_max_views"),
    )

    @property
    def total_budget_calculated(self) -> Decimal:
        """Hard budget cap: max_views / 1000 * cpm_rate, rounded half-up like every payout."""
        rate = Decimal(str(self.cpm_rate))
        return (Decimal(self.max_views) / Decimal(1000) * rate).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )

    def __repr__(self) -> str:
        return f"<Campaign(id={self.id}, cpm_rate={self.cpm_rate}, max_views={self.max_views})>"


class ContentLink(Base):
    """
    One tracked post or video for one campaign and creator.

    `views_tracked` is the raw current total reported by the platform and
    never decreases.
    """

    __tablename__ = "content_links"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("campaigns.id"), nullable=False, index=True
    )
    creator_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    content_url: Mapped[str] = mapped_column(Text, nullable=False)
    post_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_selected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    views_tracked: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_view_check: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    link_metadata: Mapped[Optional[Dict[str, Any]]] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint("platform IN ('instagram', 'tiktok')", name="valid_platform"),
        CheckConstraint("views_tracked >= 0", name="non_negative_link_views"),
        Index("idx_content_links_campaign_creator", "campaign_id", "creator_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<ContentLink(id={self.id}, platform={self.platform}, "
            f"views={self.views_tracked}, selected={self.is_selected})>"
        )


class ViewTrackingRecord(Base):
    """
    Aggregate views and payout for one creator in one campaign.

    `views_observed` is the raw sum over the creator's links; `views_tracked`
    is that sum clamped to the campaign's max_views and is what the payout
    is computed from.
    """

    __tablename__ = "view_tracking"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("campaigns.id"), nullable=False, index=True
    )
    creator_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    views_observed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    views_tracked: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    instagram_views: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tiktok_views: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    payout_calculated: Mapped[Decimal] = mapped_column(
        Money, nullable=False, default=Decimal("0.00")
    )
    payout_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PayoutStatus.PENDING.value, index=True
    )
    last_checked_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("campaign_id", "creator_id", name="uq_view_tracking_campaign_creator"),
        CheckConstraint(
            "payout_status IN ('pending', 'approved', 'paid', 'rejected')",
            name="valid_payout_status",
        ),
        CheckConstraint("views_tracked <= views_observed", name="tracked_within_observed"),
    )

    def __repr__(self) -> str:
        return (
            f"<ViewTrackingRecord(id={self.id}, views={self.views_tracked}, "
            f"payout={self.payout_calculated}, status={self.payout_status})>"
        )


class PaymentMethod(Base):
    """
    A creator's payout destination on one rail.

    `details` holds rail-specific data and never the full bank account number.
    """

    __tablename__ = "payment_methods"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    details: Mapped[Dict[str, Any]] = mapped_column(JsonType, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=VerificationStatus.UNVERIFIED.value
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("type IN ('ach', 'paypal', 'crypto')", name="valid_rail"),
        CheckConstraint(
            "status IN ('unverified', 'pending', 'verified')", name="valid_verification_status"
        ),
        Index(
            "uq_payment_methods_one_default",
            "owner_id",
            unique=True,
            sqlite_where=text("is_default"),
            postgresql_where=text("is_default"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentMethod(id={self.id}, owner_id={self.owner_id}, type={self.type}, "
            f"status={self.status}, default={self.is_default})>"
        )


class Transaction(Base):
    """
    Payout transaction.

    Created and mutated only by the orchestrator. Status transitions (and the
    fields recorded alongside them) are the only updates.
    """

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    source_record_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    campaign_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    payment_method_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payment_methods.id"), nullable=False
    )
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    payment_method_snapshot: Mapped[Dict[str, Any]] = mapped_column(JsonType, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False, default="payout")
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Money, nullable=False)
    processing_fee: Mapped[Decimal] = mapped_column(Money, nullable=False)
    fee: Mapped[Decimal] = mapped_column(Money, nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionStatus.PENDING.value, index=True
    )
    external_id: Mapped[Optional[str]] = mapped_column(String(512), nullable=True, index=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'refunded')",
            name="valid_transaction_status",
        ),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_transactions_owner_status", "owner_id", "status"),
        # At most one live transaction per source payout record
        Index(
            "uq_transactions_live_source",
            "source_record_id",
            unique=True,
            sqlite_where=text("status != 'failed' AND source_record_id IS NOT NULL"),
            postgresql_where=text("status != 'failed' AND source_record_id IS NOT NULL"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Transaction(id={self.id}, owner_id={self.owner_id}, "
            f"amount={self.amount}, rail={self.payment_method}, status={self.status})>"
        )


class TransactionEvent(Base):
    """
    Transaction events audit trail table.

    One row per state change. Immutable once written.
    """

    __tablename__ = "transaction_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JsonType, nullable=False)
    correlation_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    def __repr__(self) -> str:
        return (
            f"<TransactionEvent(id={self.id}, transaction_id={self.transaction_id}, "
            f"type={self.event_type})>"
        )


class WebhookEvent(Base):
    """Provider webhook deliveries already processed."""

    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
    )
