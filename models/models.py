# billsync/models.py
from typing import Optional, List
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4
from sqlmodel import SQLModel, Field, Relationship
from sqlalchemy import UniqueConstraint, Index
from pydantic import EmailStr


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every datetime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_unix(timestamp: Optional[int]) -> Optional[datetime]:
    """Convert a Stripe unix timestamp to a naive UTC datetime."""
    if timestamp is None:
        return None
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid4().hex


# ============================================================
# ENUMS
# ============================================================
class UserRole(str, Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    MEMBER = "member"


class BillingStatus(str, Enum):
    # Mirrors Stripe subscription statuses
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    PAUSED = "paused"

    # Business states driven by payment/setup intents
    PENDING_3DS = "pending_3ds"
    SETUP_REQUIRED = "setup_required"
    PAYMENT_FAILED = "payment_failed"
    TRIAL_ENDING = "trial_ending"


class BillingCadence(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


# ============================================================
# PLAN CATALOGUE
# ============================================================
class Plan(SQLModel, table=True):
    __tablename__ = "plan"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=64)
    name: str = Field(max_length=100, nullable=False)
    description: Optional[str] = Field(default=None, max_length=500)

    # Pricing
    currency: str = Field(default="GBP", max_length=3)
    unit_amount: int = Field(default=0, description="Price in minor units")
    cadence: str = Field(default=BillingCadence.MONTHLY.value, max_length=20)

    # Stripe integration
    stripe_product_id: Optional[str] = Field(default=None, max_length=255)
    stripe_price_id: Optional[str] = Field(default=None, max_length=255, index=True)

    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    organizations: List["Organization"] = Relationship(back_populates="plan")


# ============================================================
# ORGANIZATION (tenant) with its billing sub-record
# ============================================================
class Organization(SQLModel, table=True):
    __tablename__ = "organization"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=64)
    name: str = Field(max_length=100)
    created_at: datetime = Field(default_factory=utcnow)

    # Billing
    billing_status: Optional[str] = Field(
        default=BillingStatus.SETUP_REQUIRED.value, max_length=30, index=True
    )
    plan_id: Optional[str] = Field(default=None, foreign_key="plan.id", index=True)
    stripe_customer_id: Optional[str] = Field(default=None, max_length=255, index=True)
    stripe_subscription_id: Optional[str] = Field(default=None, max_length=255, index=True)
    stripe_subscription_item_id: Optional[str] = Field(default=None, max_length=255)
    active_user_count: int = Field(default=0, description="Licensed seats")
    current_period_end: Optional[datetime] = None
    last_billing_sync: Optional[datetime] = None

    plan: Optional["Plan"] = Relationship(back_populates="organizations")
    users: List["User"] = Relationship(back_populates="organization")


# ============================================================
# USER (only admins are read, for notifications)
# ============================================================
class User(SQLModel, table=True):
    __tablename__ = "user"
    __table_args__ = (UniqueConstraint("organization_id", "email", name="uq_org_email"),)

    id: str = Field(default_factory=new_id, primary_key=True, max_length=64)
    organization_id: str = Field(foreign_key="organization.id", index=True)
    full_name: str = Field(max_length=100)
    email: EmailStr = Field(index=True, max_length=100, nullable=False)
    role: str = Field(default=UserRole.MEMBER.value, max_length=20)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)

    organization: Optional["Organization"] = Relationship(back_populates="users")


# ============================================================
# WEBHOOK EVENT LEDGER (idempotency)
# ============================================================
class WebhookEvent(SQLModel, table=True):
    __tablename__ = "webhook_event"
    __table_args__ = (Index("idx_webhook_event_processed_at", "processed_at"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    stripe_event_id: str = Field(unique=True, index=True, max_length=255)
    event_type: str = Field(max_length=100, index=True)

    success: bool = Field(default=False)
    error_message: Optional[str] = None
    correlation_id: Optional[str] = Field(default=None, max_length=255)

    processed_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================
# WEBHOOK ORDERING CHECKPOINT
# ============================================================
class WebhookCheckpoint(SQLModel, table=True):
    __tablename__ = "webhook_checkpoint"
    __table_args__ = (
        UniqueConstraint("event_type", "resource_id", name="uq_checkpoint_type_resource"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    event_type: str = Field(max_length=100)
    resource_id: str = Field(max_length=255)
    last_event_created: int = Field(description="Stripe event.created, unix seconds")
    updated_at: datetime = Field(default_factory=utcnow)


# ============================================================
# EXPORTS
# ============================================================
__all__ = [
    "Organization",
    "Plan",
    "User",
    "WebhookEvent",
    "WebhookCheckpoint",
    "UserRole",
    "BillingStatus",
    "BillingCadence",
    "utcnow",
    "from_unix",
    "new_id",
]
