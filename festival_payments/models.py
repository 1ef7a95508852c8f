from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from festival_payments.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Festival(Base):
    """Owning festival; only the running budget is touched by this service."""

    __tablename__ = "festivals"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    user_id = Column(Integer, nullable=False)
    current_budget = Column(Numeric(18, 4), nullable=False, default=Decimal("0"))


class PaymentIntegration(Base):
    __tablename__ = "payment_integrations"
    __table_args__ = (
        # at most one active integration per (provider, account)
        Index(
            "uq_active_integration_account",
            "provider",
            "account_id",
            unique=True,
            sqlite_where=text("active"),
            postgresql_where=text("active"),
        ),
    )

    id = Column(Integer, primary_key=True)
    provider = Column(String, nullable=False, index=True)  # ProviderKind value
    name = Column(String, nullable=False, default="")
    account_id = Column(String, nullable=False)            # merchant / account id
    location_id = Column(String, nullable=True, index=True)
    webhook_secret = Column(String, nullable=True)
    public_key = Column(Text, nullable=True)               # PEM, PayPal only
    webhook_id = Column(String, nullable=True)             # PayPal webhook id
    notification_url = Column(String, nullable=True)       # Square signed URL
    api_key = Column(String, nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    user_id = Column(Integer, nullable=False)
    festival_id = Column(Integer, ForeignKey("festivals.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    festival = relationship(Festival)
    transactions = relationship("PaymentTransaction", back_populates="integration")


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"
    __table_args__ = (
        UniqueConstraint("integration_id", "external_id", name="uq_transaction_external_id"),
    )

    id = Column(Integer, primary_key=True)
    integration_id = Column(Integer, ForeignKey("payment_integrations.id"), nullable=False)
    external_id = Column(String, nullable=False)        # provider transaction id
    order_id = Column(String, nullable=True, index=True)
    amount = Column(Numeric(18, 4), nullable=True)
    currency = Column(String(3), nullable=True)
    status = Column(String, nullable=False)             # TransactionStatus value
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    integration = relationship(PaymentIntegration, back_populates="transactions")

    __mapper_args__ = {"version_id_col": version}


class ProcessedEvent(Base):
    """Dedup ledger keyed by (integration, provider event id)."""

    __tablename__ = "processed_events"
    __table_args__ = (
        UniqueConstraint("integration_id", "provider_event_id", name="uq_processed_event"),
    )

    id = Column(Integer, primary_key=True)
    integration_id = Column(Integer, ForeignKey("payment_integrations.id"), nullable=False)
    provider_event_id = Column(String, nullable=False)
    kind = Column(String, nullable=False)
    outcome = Column(String, nullable=False)
    payload_digest = Column(String(64), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class SideEffect(Base):
    """Outbox row: one planned notification, ledger adjustment or delivery."""

    __tablename__ = "side_effects"

    id = Column(Integer, primary_key=True)
    kind = Column(String, nullable=False)               # notification | ledger | outbound
    dedup_key = Column(String, nullable=False, unique=True)
    integration_id = Column(Integer, ForeignKey("payment_integrations.id"), nullable=False)
    transaction_id = Column(Integer, ForeignKey("payment_transactions.id"), nullable=True)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(String, nullable=False, default="pending", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    dispatched_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Notification(Base):
    """In-app notification sink."""

    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    kind = Column(String, nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    related_type = Column(String, nullable=True)
    related_id = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class WebhookSubscription(Base):
    """External system subscribed to canonical payment events."""

    __tablename__ = "webhook_subscriptions"

    id = Column(Integer, primary_key=True)
    url = Column(String, nullable=False)
    secret = Column(String, nullable=False)
    events = Column(JSON, nullable=False, default=list)  # empty list = all events
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
