"""
State reconciliation for payment and subscription records.

Both reconcile functions are pure: they take the stored state (or None), the
incoming event and the clock reading, and return a Transition describing the
writes and the side effects to emit once those writes commit. Nothing here
touches storage.
"""
import dataclasses
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional

from common.schemas import Effect, InvalidateCache, RecordAnalyticsEvent, SendConfirmationEmail
from ingestion_service.domain import (
    ACTIVE_LIKE,
    IngestOutcome,
    PaymentEvent,
    PaymentState,
    PaymentStatus,
    SubscriptionEvent,
    SubscriptionState,
    SubscriptionStatus,
)


PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

SUBSCRIPTION_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    SubscriptionStatus.INCOMPLETE: frozenset({
        SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED,
    }),
    SubscriptionStatus.TRIALING: frozenset({
        SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED, SubscriptionStatus.PAST_DUE,
    }),
    SubscriptionStatus.ACTIVE: frozenset({SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELED}),
    SubscriptionStatus.PAST_DUE: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED}),
    SubscriptionStatus.CANCELED: frozenset(),
}

PAYMENT_EMAILS = {
    PaymentStatus.COMPLETED: "payment_completed",
    PaymentStatus.FAILED: "payment_failed",
    PaymentStatus.REFUNDED: "payment_refunded",
}

SUBSCRIPTION_EMAILS = {
    SubscriptionStatus.ACTIVE: "subscription_activated",
    SubscriptionStatus.CANCELED: "subscription_canceled",
    SubscriptionStatus.PAST_DUE: "subscription_past_due",
}


@dataclass
class Transition:
    outcome: IngestOutcome
    payment: Optional[PaymentState] = None
    subscription: Optional[SubscriptionState] = None
    # subscription is new and must be inserted rather than compare-and-set
    created: bool = False
    demoted: List[SubscriptionState] = field(default_factory=list)
    effects: List[Effect] = field(default_factory=list)
    anomalies: List[str] = field(default_factory=list)

    @property
    def record_id(self) -> Optional[str]:
        record = self.payment or self.subscription
        return record.id if record else None


def payment_cache_key(state: PaymentState) -> str:
    return f"payment:{state.provider.value}:{state.external_id}"


def subscription_cache_key(state: SubscriptionState) -> str:
    return f"subscription:{state.provider.value}:{state.external_id}"


def entitlements_cache_key(owner_ref: str) -> str:
    return f"entitlements:{owner_ref}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def reconcile_payment(state: Optional[PaymentState], event: PaymentEvent, now: datetime) -> Transition:
    if state is None:
        return Transition(IngestOutcome.ORPHAN, anomalies=[f"no payment {event.provider.value}:{event.external_id}"])

    target = event.target_status
    if target not in PAYMENT_TRANSITIONS[state.status]:
        return Transition(IngestOutcome.NO_OP)

    anomalies = []
    if target is PaymentStatus.COMPLETED:
        if event.amount is not None and event.amount != state.amount:
            anomalies.append(f"amount mismatch: record {state.amount}, event {event.amount}")
        if event.currency is not None and event.currency != state.currency:
            anomalies.append(f"currency mismatch: record {state.currency}, event {event.currency}")

    completed_at = state.completed_at
    if target is PaymentStatus.COMPLETED and completed_at is None:
        completed_at = now

    new = dataclasses.replace(state, status=target, completed_at=completed_at, version=state.version + 1)

    effects: List[Effect] = [
        SendConfirmationEmail(
            effect_id=f"{event.key}:email",
            recipient_ref=state.owner_ref,
            template=PAYMENT_EMAILS[target],
            context={
                "payment_id": state.id,
                "external_id": state.external_id,
                "amount": state.amount,
                "currency": state.currency,
            },
        ),
        RecordAnalyticsEvent(
            effect_id=f"{event.key}:analytics",
            name=f"payment.{target.value.lower()}",
            properties={
                "payment_id": state.id,
                "provider": state.provider.value,
                "from_status": state.status.value,
                "amount": state.amount,
                "currency": state.currency,
                "occurred_at": _iso(event.occurred_at),
            },
        ),
        InvalidateCache(effect_id=f"{event.key}:cache", keys=[payment_cache_key(state)]),
    ]
    return Transition(IngestOutcome.APPLIED, payment=new, effects=effects, anomalies=anomalies)


def _demote(siblings: List[SubscriptionState], keep_id: str, now: datetime) -> List[SubscriptionState]:
    return [
        dataclasses.replace(
            sibling,
            status=SubscriptionStatus.CANCELED,
            cancel_at=now,
            updated_at=now,
            version=sibling.version + 1,
        )
        for sibling in siblings
        if sibling.id != keep_id and sibling.status in ACTIVE_LIKE
    ]


def _subscription_effects(
    event: SubscriptionEvent,
    previous: Optional[SubscriptionState],
    new: SubscriptionState,
    demoted: List[SubscriptionState],
) -> List[Effect]:
    effects: List[Effect] = []
    status_changed = previous is None or previous.status is not new.status

    template = SUBSCRIPTION_EMAILS.get(new.status)
    if status_changed and template:
        effects.append(SendConfirmationEmail(
            effect_id=f"{event.key}:email",
            recipient_ref=new.owner_ref,
            template=template,
            context={
                "subscription_id": new.id,
                "plan": new.plan,
                "current_period_end": _iso(new.current_period_end),
            },
        ))

    if previous is None:
        name = "subscription.created"
    elif status_changed:
        name = f"subscription.{new.status.value.lower()}"
    elif new.current_period_end != previous.current_period_end:
        name = "subscription.renewed"
    else:
        name = "subscription.updated"
    effects.append(RecordAnalyticsEvent(
        effect_id=f"{event.key}:analytics",
        name=name,
        properties={
            "subscription_id": new.id,
            "provider": new.provider.value,
            "plan": new.plan,
            "from_status": previous.status.value if previous else None,
            "to_status": new.status.value,
            "occurred_at": _iso(event.occurred_at),
        },
    ))

    for sibling in demoted:
        effects.append(RecordAnalyticsEvent(
            effect_id=f"{event.key}:superseded:{sibling.id}",
            name="subscription.superseded",
            properties={
                "subscription_id": sibling.id,
                "provider": sibling.provider.value,
                "plan": sibling.plan,
                "superseded_by": new.id,
            },
        ))

    keys = [subscription_cache_key(new)]
    keys.extend(subscription_cache_key(sibling) for sibling in demoted)
    keys.append(entitlements_cache_key(new.owner_ref))
    effects.append(InvalidateCache(effect_id=f"{event.key}:cache", keys=keys))
    return effects


def _create_subscription(
    siblings: List[SubscriptionState],
    event: SubscriptionEvent,
    now: datetime,
) -> Transition:
    new = SubscriptionState(
        id=str(uuid.uuid4()),
        provider=event.provider,
        external_id=event.external_id,
        owner_ref=event.owner_ref,
        plan=event.plan,
        status=event.target_status,
        current_period_end=event.current_period_end,
        created_at=now,
        version=1,
        cancel_at=event.cancel_at or (now if event.target_status is SubscriptionStatus.CANCELED else None),
        updated_at=now,
    )
    demoted = _demote(siblings, new.id, now) if new.status in ACTIVE_LIKE else []
    return Transition(
        IngestOutcome.APPLIED,
        subscription=new,
        created=True,
        demoted=demoted,
        effects=_subscription_effects(event, None, new, demoted),
    )


def reconcile_subscription(
    state: Optional[SubscriptionState],
    siblings: List[SubscriptionState],
    event: SubscriptionEvent,
    now: datetime,
) -> Transition:
    """Next subscription state for an event.

    ``siblings`` are the ACTIVE/TRIALING records sharing the owner and plan;
    any of them still active when this transition lands on ACTIVE or
    TRIALING is demoted to CANCELED in the same write.
    """
    if state is None:
        if not event.creates:
            return Transition(
                IngestOutcome.ORPHAN,
                anomalies=[f"no subscription {event.provider.value}:{event.external_id}"],
            )
        return _create_subscription(siblings, event, now)

    if (
        event.current_period_end is not None
        and state.current_period_end is not None
        and event.current_period_end < state.current_period_end
    ):
        return Transition(IngestOutcome.STALE)

    target = event.target_status
    period_end = event.current_period_end or state.current_period_end

    if target is state.status:
        # Renewals and scheduled cancellations keep the status
        advanced = period_end != state.current_period_end
        rescheduled = event.cancel_at is not None and event.cancel_at != state.cancel_at
        if state.status is SubscriptionStatus.CANCELED or not (advanced or rescheduled):
            return Transition(IngestOutcome.NO_OP)
        new = dataclasses.replace(
            state,
            current_period_end=period_end,
            cancel_at=event.cancel_at if rescheduled else state.cancel_at,
            updated_at=now,
            version=state.version + 1,
        )
        return Transition(
            IngestOutcome.APPLIED,
            subscription=new,
            effects=_subscription_effects(event, state, new, []),
        )

    if target not in SUBSCRIPTION_TRANSITIONS[state.status]:
        return Transition(IngestOutcome.NO_OP)

    if target is SubscriptionStatus.CANCELED:
        cancel_at = event.cancel_at or now
    else:
        cancel_at = event.cancel_at if event.cancel_at is not None else state.cancel_at

    new = dataclasses.replace(
        state,
        status=target,
        current_period_end=period_end,
        cancel_at=cancel_at,
        updated_at=now,
        version=state.version + 1,
    )
    demoted = _demote(siblings, new.id, now) if target in ACTIVE_LIKE else []
    return Transition(
        IngestOutcome.APPLIED,
        subscription=new,
        demoted=demoted,
        effects=_subscription_effects(event, state, new, demoted),
    )
