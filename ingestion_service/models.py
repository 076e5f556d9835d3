from sqlalchemy import Column, Integer, String, BigInteger, DateTime, Index, UniqueConstraint, func
from sqlalchemy.orm import declarative_base

Base = declarative_base()

class PaymentRecord(Base):
    __tablename__ = "payment_records"
    __table_args__ = (UniqueConstraint("provider", "external_id", name="uq_payment_provider_external"),)

    id = Column(String(36), primary_key=True)
    provider = Column(String(16), nullable=False)
    external_id = Column(String(128), nullable=False)
    amount = Column(BigInteger, nullable=False)  # minor units
    currency = Column(String(3), nullable=False)
    owner_ref = Column(String(64))
    status = Column(String(16), nullable=False)  # PENDING|COMPLETED|FAILED|REFUNDED
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True))
    version = Column(Integer, nullable=False, default=1)

class SubscriptionRecord(Base):
    __tablename__ = "subscription_records"
    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_subscription_provider_external"),
        Index("ix_subscription_owner_plan", "owner_ref", "plan"),
    )

    id = Column(String(36), primary_key=True)
    provider = Column(String(16), nullable=False)
    external_id = Column(String(128), nullable=False)
    owner_ref = Column(String(64), nullable=False)
    plan = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False)  # INCOMPLETE|TRIALING|ACTIVE|PAST_DUE|CANCELED
    current_period_end = Column(DateTime(timezone=True))
    cancel_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True))
    version = Column(Integer, nullable=False, default=1)

class SubscriptionSlot(Base):
    __tablename__ = "subscription_slots"

    # Guard row per owner and plan; every write that leaves a subscription
    # ACTIVE or TRIALING bumps its version in the same transaction
    owner_ref = Column(String(64), primary_key=True)
    plan = Column(String(64), primary_key=True)
    version = Column(Integer, nullable=False, default=1)

class ProcessedEvent(Base):
    __tablename__ = "processed_events"

    # "<provider>:<event id>"; the primary key is what serializes redeliveries
    event_key = Column(String(191), primary_key=True)
    provider = Column(String(16), nullable=False)
    event_id = Column(String(160), nullable=False)
    event_type = Column(String(64))
    outcome = Column(String(24))
    first_seen_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
