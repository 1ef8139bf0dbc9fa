# webhook_schema.py
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any, Literal, Union, Annotated
from enum import Enum


# ---------------------------
# Inbound Stripe event
# ---------------------------
class StripeEvent(BaseModel):
    """The parts of a Stripe event envelope the engine reads."""

    id: str
    type: str
    created: int
    data: Dict[str, Any] = Field(default_factory=dict)
    livemode: bool = False
    api_version: Optional[str] = None

    model_config = ConfigDict(extra="allow")

    @property
    def data_object(self) -> Dict[str, Any]:
        return self.data.get("object") or {}


# ---------------------------
# Handler result
# ---------------------------
class HandlerResult(BaseModel):
    success: bool
    message: str
    retryable: bool = False

    @classmethod
    def ok(cls, message: str) -> "HandlerResult":
        return cls(success=True, message=message)

    @classmethod
    def rejected(cls, message: str) -> "HandlerResult":
        """Business rejection: acked to Stripe, never retried."""
        return cls(success=False, message=message, retryable=False)

    @classmethod
    def retry(cls, message: str) -> "HandlerResult":
        return cls(success=False, message=message, retryable=True)


# ---------------------------
# Processing outcome (tagged union)
# ---------------------------
class OutcomeKind(str, Enum):
    ACCEPTED = "accepted"
    ALREADY_PROCESSED = "already_processed"
    REJECTED = "rejected"
    TRANSIENT_FAILURE = "transient_failure"


class Accepted(BaseModel):
    kind: Literal[OutcomeKind.ACCEPTED] = OutcomeKind.ACCEPTED
    message: str


class AlreadyProcessed(BaseModel):
    kind: Literal[OutcomeKind.ALREADY_PROCESSED] = OutcomeKind.ALREADY_PROCESSED
    message: str = "Event already processed"


class Rejected(BaseModel):
    kind: Literal[OutcomeKind.REJECTED] = OutcomeKind.REJECTED
    reason: str


class TransientFailure(BaseModel):
    kind: Literal[OutcomeKind.TRANSIENT_FAILURE] = OutcomeKind.TRANSIENT_FAILURE
    cause: str
    attempts: int


WebhookOutcome = Annotated[
    Union[Accepted, AlreadyProcessed, Rejected, TransientFailure],
    Field(discriminator="kind"),
]


def outcome_detail(outcome: WebhookOutcome) -> str:
    if isinstance(outcome, Rejected):
        return outcome.reason
    if isinstance(outcome, TransientFailure):
        return outcome.cause
    return outcome.message


# ---------------------------
# HTTP response
# ---------------------------
class WebhookResponse(BaseModel):
    status: OutcomeKind
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    detail: Optional[str] = None
