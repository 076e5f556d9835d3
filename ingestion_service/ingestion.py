"""
Webhook ingestion: verify -> reserve event id -> reconcile -> commit -> effects.

Each delivery is applied in a single database transaction that starts by
inserting the processed-event row. Everything after that insert (record
reads, compare-and-set writes, outcome finalization) commits or rolls back
with it, so a failed attempt never leaves a reservation behind and a
committed record change always has its processed-event row.

Units of work run in worker threads behind the storage circuit breaker with
a bounded timeout. A timed-out unit that has not started committing is
marked abandoned and rolls back as soon as it gets there; one that already
started committing finishes, and its effects are dispatched from the
completion callback.
"""
import asyncio
import logging
import threading
from typing import Mapping, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from common.circuit_breaker import CircuitBreaker, CircuitBreakerException, storage_breaker_config
from common.settings import Settings
from common.tracing import ingestion_tracer
from ingestion_service.dedup import DedupStore
from ingestion_service.dispatcher import SideEffectDispatcher
from ingestion_service.domain import (
    ACTIVE_LIKE,
    IngestOutcome,
    IngestResult,
    PaymentEvent,
    VerifiedEvent,
    utcnow,
)
from ingestion_service.errors import (
    ConflictRetryExhausted,
    StorageUnavailable,
    Unauthorized,
    UnknownProvider,
    UnprocessablePayload,
    VersionConflict,
)
from ingestion_service.ledger import Ledger, Slot
from ingestion_service.providers import LedgerEvent, get_adapter, resolve_provider
from ingestion_service.reconciler import Transition, reconcile_payment, reconcile_subscription
from ingestion_service.verification import MalformedPayload, VerificationError

logger = logging.getLogger(__name__)


class _Attempt:
    """Hand-off between the request coroutine and its storage worker thread"""

    def __init__(self):
        self.lock = threading.Lock()
        self.abandoned = False
        self.committing = False


class IngestionService:

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker,
        dispatcher: SideEffectDispatcher,
        ledger: Optional[Ledger] = None,
        dedup: Optional[DedupStore] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.ledger = ledger or Ledger()
        self.dedup = dedup or DedupStore()
        self.breaker = breaker or CircuitBreaker(
            "storage",
            storage_breaker_config(settings.storage_timeout_seconds, ignored_exceptions=(VersionConflict,)),
        )

    async def ingest(self, provider_id: str, raw_body: bytes, headers: Mapping[str, str]) -> IngestResult:
        """Apply one webhook delivery. Raises IngestError subclasses on failure."""
        with ingestion_tracer.start_child_span("ingest_webhook") as span:
            span.add_tag("provider", provider_id)
            provider = resolve_provider(provider_id)
            if provider is None:
                logger.warning(f"WEBHOOK_AUDIT provider={provider_id} event=- outcome=UNKNOWN_PROVIDER")
                raise UnknownProvider(provider_id)

            adapter = get_adapter(provider)
            try:
                verified = adapter.verify(raw_body, headers.get(adapter.signature_header), self.settings)
                ledger_event = adapter.parse(verified)
            except MalformedPayload as e:
                logger.warning(
                    f"WEBHOOK_AUDIT provider={provider.value} event=- outcome=MALFORMED_PAYLOAD reason={e.reason}: {e}"
                )
                raise UnprocessablePayload(e)
            except VerificationError as e:
                # Possible forgery or a secret out of sync with the provider
                logger.warning(
                    f"WEBHOOK_AUDIT provider={provider.value} event=- outcome=REJECTED reason={e.reason}: {e}"
                )
                raise Unauthorized(e)

            span.add_tag("event_key", verified.key)
            span.add_tag("event_type", verified.event_type)

            if ledger_event is None:
                result = IngestResult(IngestOutcome.IGNORED, event_key=verified.key)
            else:
                result = await self._apply_with_retries(verified, ledger_event)

            span.add_tag("outcome", result.outcome.value)
            logger.info(
                f"WEBHOOK_AUDIT provider={provider.value} event={verified.event_id} "
                f"type={verified.event_type} outcome={result.outcome.value}"
            )
            return result

    async def _apply_with_retries(self, verified: VerifiedEvent, ledger_event: LedgerEvent) -> IngestResult:
        attempts = self.settings.cas_max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                result = await self._run_unit(verified, ledger_event)
            except VersionConflict as e:
                logger.warning(f"Version conflict on {verified.key} (attempt {attempt}/{attempts}): {e}")
                continue
            if result.effects:
                self.dispatcher.dispatch_many(result.effects)
            return result
        raise ConflictRetryExhausted(verified.key, attempts)

    async def _run_unit(self, verified: VerifiedEvent, ledger_event: LedgerEvent) -> IngestResult:
        attempt = _Attempt()

        def on_timeout(future: asyncio.Future):
            with attempt.lock:
                if not attempt.committing:
                    attempt.abandoned = True
            if attempt.abandoned:
                future.add_done_callback(self._discard_abandoned)
            else:
                logger.warning(f"Commit of {verified.key} outlived its timeout; effects follow on completion")
                future.add_done_callback(self._dispatch_late_commit)

        try:
            return await self.breaker.call(self._apply, verified, ledger_event, attempt, on_timeout=on_timeout)
        except asyncio.TimeoutError as e:
            raise StorageUnavailable(
                f"Storage did not answer within {self.settings.storage_timeout_seconds}s", original_error=e
            )
        except CircuitBreakerException as e:
            raise StorageUnavailable(original_error=e)
        except SQLAlchemyError as e:
            logger.error(f"Storage failure while applying {verified.key}: {e}")
            raise StorageUnavailable(original_error=e)

    def _apply(self, verified: VerifiedEvent, ledger_event: LedgerEvent, attempt: _Attempt) -> Optional[IngestResult]:
        """One unit of work. Runs in a worker thread."""
        with self.session_factory() as db:
            if not self.dedup.insert_if_absent(db, verified):
                return IngestResult(IngestOutcome.ALREADY_PROCESSED, event_key=verified.key)

            transition, slot = self._reconcile(db, ledger_event)
            for anomaly in transition.anomalies:
                logger.warning(f"WEBHOOK_ANOMALY event={verified.key} outcome={transition.outcome.value}: {anomaly}")

            self._write(db, transition, slot)
            self.dedup.finalize(db, verified.key, transition.outcome)

            with attempt.lock:
                if attempt.abandoned:
                    db.rollback()
                    logger.warning(f"Abandoned unit of work for {verified.key} rolled back")
                    return None
                attempt.committing = True
            db.commit()

        return IngestResult(
            transition.outcome,
            event_key=verified.key,
            record_id=transition.record_id,
            effects=list(transition.effects),
        )

    def _reconcile(self, db: Session, ledger_event: LedgerEvent) -> Tuple[Transition, Optional[Slot]]:
        now = utcnow()
        if isinstance(ledger_event, PaymentEvent):
            current = self.ledger.get_payment(db, ledger_event.provider, ledger_event.external_id)
            return reconcile_payment(current, ledger_event, now), None

        current = self.ledger.get_subscription(db, ledger_event.provider, ledger_event.external_id)
        owner_ref = current.owner_ref if current else ledger_event.owner_ref
        plan = current.plan if current else ledger_event.plan
        slot = None
        siblings = []
        if owner_ref and plan:
            # Slot before siblings: an activation committed after this read
            # moves the slot version and fails our claim
            slot = self.ledger.get_slot(db, owner_ref, plan)
            siblings = self.ledger.find_active_siblings(
                db, owner_ref, plan, exclude_id=current.id if current else None
            )
        return reconcile_subscription(current, siblings, ledger_event, now), slot

    def _write(self, db: Session, transition: Transition, slot: Optional[Slot] = None):
        subscription = transition.subscription
        if slot is not None and subscription is not None and subscription.status in ACTIVE_LIKE:
            self.ledger.claim_slot(db, slot)
        if transition.payment is not None:
            self.ledger.compare_and_set_payment(db, transition.payment)
        if subscription is not None:
            if transition.created:
                self.ledger.insert_subscription(db, subscription)
            else:
                self.ledger.compare_and_set_subscription(db, subscription)
        self.ledger.save_subscriptions(db, transition.demoted)

    def _dispatch_late_commit(self, future: asyncio.Future):
        if future.cancelled() or future.exception() is not None:
            logger.error(f"Late commit did not complete: {None if future.cancelled() else future.exception()}")
            return
        result = future.result()
        if result is not None and result.effects:
            self.dispatcher.dispatch_many(result.effects)

    @staticmethod
    def _discard_abandoned(future: asyncio.Future):
        if not future.cancelled() and future.exception() is not None:
            logger.info(f"Abandoned unit of work ended with: {future.exception()}")
