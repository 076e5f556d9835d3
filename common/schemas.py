from datetime import datetime
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional, Union

# Side effects produced by a committed state transition. effect_id is derived
# from the event key so consumers can deduplicate redeliveries.

class SendConfirmationEmail(BaseModel):
    kind: Literal["send_confirmation_email"] = "send_confirmation_email"
    effect_id: str
    recipient_ref: Optional[str] = None
    template: str
    context: Dict[str, Any] = Field(default_factory=dict)

class RecordAnalyticsEvent(BaseModel):
    kind: Literal["record_analytics_event"] = "record_analytics_event"
    effect_id: str
    name: str
    properties: Dict[str, Any] = Field(default_factory=dict)

class InvalidateCache(BaseModel):
    kind: Literal["invalidate_cache"] = "invalidate_cache"
    effect_id: str
    keys: List[str]

Effect = Union[SendConfirmationEmail, RecordAnalyticsEvent, InvalidateCache]

class OpenPayment(BaseModel):
    provider: str
    external_id: str = Field(min_length=1, max_length=128)
    amount: int = Field(ge=0)
    currency: str = Field(min_length=3, max_length=3)
    owner_ref: Optional[str] = None

class PaymentView(BaseModel):
    id: str
    provider: str
    external_id: str
    amount: int
    currency: str
    status: str
    owner_ref: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    version: int

class SubscriptionView(BaseModel):
    id: str
    provider: str
    external_id: str
    owner_ref: str
    plan: str
    status: str
    current_period_end: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    version: int

class WebhookAck(BaseModel):
    status: Literal["received"] = "received"
