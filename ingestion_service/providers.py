"""
Provider adapters: the closed set of webhook providers, each pairing its
signature verifier with a parser that turns a verified event into a ledger
event. Adding a provider means adding a Provider member plus an adapter here.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Union

from common.settings import Settings
from ingestion_service.domain import (
    PaymentEvent,
    PaymentStatus,
    Provider,
    SubscriptionEvent,
    SubscriptionStatus,
    VerifiedEvent,
)
from ingestion_service.verification import MalformedPayload, verify_provider_a, verify_provider_b

logger = logging.getLogger(__name__)

LedgerEvent = Union[PaymentEvent, SubscriptionEvent]


def _from_epoch(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        raise MalformedPayload(f"invalid epoch timestamp: {value!r}")


def _from_iso(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise MalformedPayload(f"invalid ISO-8601 timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _minor_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MalformedPayload(f"invalid amount: {value!r}")


def _require(obj: Dict[str, Any], name: str) -> str:
    value = obj.get(name)
    if value is None or value == "":
        raise MalformedPayload(f"event object is missing {name}")
    return str(value)


def _check_creation(event: SubscriptionEvent) -> SubscriptionEvent:
    if event.creates and not (event.owner_ref and event.plan):
        raise MalformedPayload("subscription creation without owner and plan")
    return event


class CardProviderAdapter:
    """Provider A: card-network style events with unix timestamps."""

    provider = Provider.PROVIDER_A
    signature_header = "x-providera-signature"

    PAYMENT_EVENTS = {
        "payment.succeeded": PaymentStatus.COMPLETED,
        "payment.failed": PaymentStatus.FAILED,
        "payment.refunded": PaymentStatus.REFUNDED,
    }
    SUBSCRIPTION_EVENTS = {
        "subscription.created",
        "subscription.updated",
        "subscription.deleted",
    }
    SUBSCRIPTION_STATUSES = {
        "incomplete": SubscriptionStatus.INCOMPLETE,
        "trialing": SubscriptionStatus.TRIALING,
        "active": SubscriptionStatus.ACTIVE,
        "past_due": SubscriptionStatus.PAST_DUE,
        "canceled": SubscriptionStatus.CANCELED,
    }

    def secret(self, cfg: Settings) -> str:
        return cfg.provider_a_webhook_secret

    def verify(self, raw_body: bytes, header_signature: Optional[str], cfg: Settings) -> VerifiedEvent:
        return verify_provider_a(
            raw_body,
            header_signature,
            self.secret(cfg),
            tolerance=cfg.provider_a_timestamp_tolerance,
        )

    def parse(self, event: VerifiedEvent) -> Optional[LedgerEvent]:
        data = event.payload.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        occurred_at = _from_epoch(event.payload.get("created"))

        if event.event_type in self.PAYMENT_EVENTS:
            if not isinstance(obj, dict):
                raise MalformedPayload("payment event without data.object")
            amount = obj.get("amount")
            currency = obj.get("currency")
            return PaymentEvent(
                provider=self.provider,
                event_id=event.event_id,
                event_type=event.event_type,
                external_id=_require(obj, "id"),
                target_status=self.PAYMENT_EVENTS[event.event_type],
                amount=_minor_int(amount),
                currency=str(currency).upper() if currency else None,
                occurred_at=occurred_at,
            )

        if event.event_type in self.SUBSCRIPTION_EVENTS:
            if not isinstance(obj, dict):
                raise MalformedPayload("subscription event without data.object")
            if event.event_type == "subscription.deleted":
                status = SubscriptionStatus.CANCELED
            else:
                raw_status = _require(obj, "status").lower()
                status = self.SUBSCRIPTION_STATUSES.get(raw_status)
                if status is None:
                    raise MalformedPayload(f"unknown subscription status: {raw_status}")
            return _check_creation(SubscriptionEvent(
                provider=self.provider,
                event_id=event.event_id,
                event_type=event.event_type,
                external_id=_require(obj, "id"),
                target_status=status,
                owner_ref=obj.get("customer"),
                plan=obj.get("plan"),
                current_period_end=_from_epoch(obj.get("current_period_end")),
                cancel_at=_from_epoch(obj.get("cancel_at")),
                creates=event.event_type == "subscription.created",
                occurred_at=occurred_at,
            ))

        return None


class AccountProviderAdapter:
    """Provider B: account-based style events with ISO-8601 timestamps."""

    provider = Provider.PROVIDER_B
    signature_header = "x-providerb-signature"

    PAYMENT_EVENTS = {
        "PAYMENT.CAPTURE.COMPLETED": PaymentStatus.COMPLETED,
        "PAYMENT.CAPTURE.DENIED": PaymentStatus.FAILED,
        "PAYMENT.CAPTURE.DECLINED": PaymentStatus.FAILED,
        "PAYMENT.CAPTURE.REFUNDED": PaymentStatus.REFUNDED,
    }
    # None -> take the status from the resource
    SUBSCRIPTION_EVENTS = {
        "BILLING.SUBSCRIPTION.CREATED": None,
        "BILLING.SUBSCRIPTION.UPDATED": None,
        "BILLING.SUBSCRIPTION.ACTIVATED": SubscriptionStatus.ACTIVE,
        "BILLING.SUBSCRIPTION.SUSPENDED": SubscriptionStatus.PAST_DUE,
        "BILLING.SUBSCRIPTION.CANCELLED": SubscriptionStatus.CANCELED,
        "BILLING.SUBSCRIPTION.EXPIRED": SubscriptionStatus.CANCELED,
    }
    SUBSCRIPTION_STATUSES = {
        "APPROVAL_PENDING": SubscriptionStatus.INCOMPLETE,
        "APPROVED": SubscriptionStatus.INCOMPLETE,
        "ACTIVE": SubscriptionStatus.ACTIVE,
        "SUSPENDED": SubscriptionStatus.PAST_DUE,
        "CANCELLED": SubscriptionStatus.CANCELED,
        "EXPIRED": SubscriptionStatus.CANCELED,
    }

    def secret(self, cfg: Settings) -> str:
        return cfg.provider_b_public_key

    def verify(self, raw_body: bytes, header_signature: Optional[str], cfg: Settings) -> VerifiedEvent:
        return verify_provider_b(raw_body, header_signature, self.secret(cfg))

    @staticmethod
    def _minor_units(amount: Dict[str, Any]) -> Optional[int]:
        value = amount.get("value")
        if value is None:
            return None
        try:
            return int((Decimal(str(value)) * 100).to_integral_value())
        except InvalidOperation:
            raise MalformedPayload(f"invalid amount value: {value!r}")

    def parse(self, event: VerifiedEvent) -> Optional[LedgerEvent]:
        resource = event.payload.get("resource")
        occurred_at = _from_iso(event.payload.get("create_time"))

        if event.event_type in self.PAYMENT_EVENTS:
            if not isinstance(resource, dict):
                raise MalformedPayload("payment event without resource")
            amount = resource.get("amount") or {}
            currency = amount.get("currency_code")
            return PaymentEvent(
                provider=self.provider,
                event_id=event.event_id,
                event_type=event.event_type,
                external_id=_require(resource, "id"),
                target_status=self.PAYMENT_EVENTS[event.event_type],
                amount=self._minor_units(amount),
                currency=str(currency).upper() if currency else None,
                occurred_at=occurred_at,
            )

        if event.event_type in self.SUBSCRIPTION_EVENTS:
            if not isinstance(resource, dict):
                raise MalformedPayload("subscription event without resource")
            status = self.SUBSCRIPTION_EVENTS[event.event_type]
            if status is None:
                raw_status = _require(resource, "status").upper()
                status = self.SUBSCRIPTION_STATUSES.get(raw_status)
                if status is None:
                    raise MalformedPayload(f"unknown subscription status: {raw_status}")
            subscriber = resource.get("subscriber") or {}
            billing_info = resource.get("billing_info") or {}
            return _check_creation(SubscriptionEvent(
                provider=self.provider,
                event_id=event.event_id,
                event_type=event.event_type,
                external_id=_require(resource, "id"),
                target_status=status,
                owner_ref=subscriber.get("payer_id"),
                plan=resource.get("plan_id"),
                current_period_end=_from_iso(billing_info.get("next_billing_time")),
                cancel_at=_from_iso(resource.get("cancel_time")),
                creates=event.event_type == "BILLING.SUBSCRIPTION.CREATED",
                occurred_at=occurred_at,
            ))

        return None


ADAPTERS = {
    Provider.PROVIDER_A: CardProviderAdapter(),
    Provider.PROVIDER_B: AccountProviderAdapter(),
}


def resolve_provider(provider_id: str) -> Optional[Provider]:
    try:
        return Provider(provider_id)
    except ValueError:
        return None


def get_adapter(provider: Provider):
    return ADAPTERS[provider]
