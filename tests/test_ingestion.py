"""
Integration tests for the webhook ingestion service (SQLite storage,
recording dispatcher).
"""
import asyncio
import time
import unittest
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from common.circuit_breaker import CircuitState
from common.error_handling import ErrorCodes
from common.schemas import OpenPayment, SendConfirmationEmail
from ingestion_service.dedup import DedupStore
from ingestion_service.domain import (
    IngestOutcome,
    PaymentStatus,
    Provider,
    SubscriptionEvent,
    SubscriptionStatus,
)
from ingestion_service.errors import (
    ConflictRetryExhausted,
    StorageUnavailable,
    Unauthorized,
    UnknownProvider,
    UnprocessablePayload,
    VersionConflict,
)
from ingestion_service.ingestion import IngestionService
from ingestion_service.ledger import Ledger
from ingestion_service.models import PaymentRecord, SubscriptionRecord
from tests.support import (
    RecordingDispatcher,
    SqliteDatabase,
    headers_a,
    headers_b,
    provider_a_payment,
    provider_a_subscription,
    provider_b_payment,
    provider_b_subscription,
)

PERIOD_1 = int(datetime(2024, 7, 1, tzinfo=timezone.utc).timestamp())
PERIOD_2 = int(datetime(2024, 8, 1, tzinfo=timezone.utc).timestamp())


class IngestionTestCase(unittest.IsolatedAsyncioTestCase):

    db_overrides = {}

    async def asyncSetUp(self):
        self.db = SqliteDatabase(**self.db_overrides)
        self.dispatcher = RecordingDispatcher()
        self.ledger = Ledger()
        self.service = self.make_service()

    async def asyncTearDown(self):
        self.db.close()

    def make_service(self, **kwargs):
        kwargs.setdefault("ledger", self.ledger)
        return IngestionService(self.db.settings, self.db.session_factory, self.dispatcher, **kwargs)

    def open_payment(self, external_id="pay_1", provider="providerA", amount=1000, currency="USD"):
        with self.db.session_factory() as s:
            return self.ledger.open_payment(s, OpenPayment(
                provider=provider, external_id=external_id, amount=amount, currency=currency, owner_ref="cus_1",
            ))

    def payment(self, external_id="pay_1", provider=Provider.PROVIDER_A):
        with self.db.session_factory() as s:
            return self.ledger.get_payment(s, provider, external_id)

    def subscription(self, external_id, provider=Provider.PROVIDER_A):
        with self.db.session_factory() as s:
            return self.ledger.get_subscription(s, provider, external_id)

    def processed_count(self, key=None):
        with self.db.session_factory() as s:
            return DedupStore().count(s, key)

    def active_count(self, owner_ref="cus_1", plan="pro"):
        with self.db.session_factory() as s:
            return s.execute(
                select(func.count()).select_from(SubscriptionRecord).where(
                    SubscriptionRecord.owner_ref == owner_ref,
                    SubscriptionRecord.plan == plan,
                    SubscriptionRecord.status.in_(["ACTIVE", "TRIALING"]),
                )
            ).scalar_one()

    async def ingest_a(self, body):
        return await self.service.ingest("providerA", body, headers_a(body))


class TestPaymentScenarios(IngestionTestCase):

    async def test_scenario_a_pending_payment_completes(self):
        self.open_payment()
        body = provider_a_payment("evt_1", "payment.succeeded", "pay_1")
        result = await self.ingest_a(body)

        self.assertEqual(result.outcome, IngestOutcome.APPLIED)
        self.assertEqual(result.event_key, "providerA:evt_1")
        record = self.payment()
        self.assertEqual(record.status, PaymentStatus.COMPLETED)
        self.assertIsNotNone(record.completed_at)
        self.assertEqual(record.version, 2)
        self.assertEqual(self.processed_count("providerA:evt_1"), 1)

    async def test_scenario_b_redelivery_is_already_processed(self):
        self.open_payment()
        body = provider_a_payment("evt_1", "payment.succeeded", "pay_1")
        await self.ingest_a(body)
        completed_at = self.payment().completed_at
        dispatched = len(self.dispatcher.dispatched)

        result = await self.ingest_a(body)

        self.assertEqual(result.outcome, IngestOutcome.ALREADY_PROCESSED)
        record = self.payment()
        self.assertEqual(record.version, 2)
        self.assertEqual(record.completed_at, completed_at)
        self.assertEqual(self.processed_count(), 1)
        self.assertEqual(len(self.dispatcher.dispatched), dispatched)

    async def test_scenario_c_orphan_event_is_recorded(self):
        body = provider_a_payment("evt_9", "payment.succeeded", "pay_999")
        result = await self.ingest_a(body)

        self.assertEqual(result.outcome, IngestOutcome.ORPHAN)
        self.assertEqual(self.processed_count("providerA:evt_9"), 1)
        with self.db.session_factory() as s:
            self.assertEqual(s.execute(select(func.count()).select_from(PaymentRecord)).scalar_one(), 0)
        self.assertEqual(self.dispatcher.dispatched, [])

    async def test_scenario_e_bad_signature_writes_nothing(self):
        self.open_payment()
        body = provider_a_payment("evt_1", "payment.succeeded", "pay_1")
        headers = {"x-providera-signature": f"t={int(time.time())},v1={'0' * 64}"}

        with self.assertRaises(Unauthorized) as ctx:
            await self.service.ingest("providerA", body, headers)

        self.assertEqual(ctx.exception.code, ErrorCodes.UNAUTHORIZED)
        self.assertEqual(self.processed_count(), 0)
        self.assertEqual(self.payment().status, PaymentStatus.PENDING)
        self.assertEqual(self.payment().version, 1)

    async def test_missing_signature_header_is_malformed(self):
        body = provider_a_payment("evt_1", "payment.succeeded", "pay_1")
        with self.assertRaises(Unauthorized) as ctx:
            await self.service.ingest("providerA", body, {})
        self.assertEqual(ctx.exception.code, ErrorCodes.MALFORMED_SIGNATURE)
        self.assertEqual(self.processed_count(), 0)

    async def test_unreadable_signed_payload_is_not_a_signature_failure(self):
        body = provider_a_subscription("evt_1", "subscription.updated", "sub_1", "paused", PERIOD_1)
        with self.assertLogs("ingestion_service.ingestion", level="WARNING") as logs:
            with self.assertRaises(UnprocessablePayload) as ctx:
                await self.ingest_a(body)

        self.assertEqual(ctx.exception.code, ErrorCodes.MALFORMED_PAYLOAD)
        self.assertEqual(ctx.exception.reason, "malformed_payload")
        self.assertIn("outcome=MALFORMED_PAYLOAD", logs.output[0])
        self.assertFalse(any("REJECTED" in line for line in logs.output))
        self.assertEqual(self.processed_count(), 0)

    async def test_unknown_provider(self):
        body = provider_a_payment("evt_1", "payment.succeeded", "pay_1")
        with self.assertRaises(UnknownProvider):
            await self.service.ingest("providerZ", body, headers_a(body))
        self.assertEqual(self.processed_count(), 0)

    async def test_unrecognized_event_type_is_ignored(self):
        body = provider_a_payment("evt_5", "customer.created", "cus_1")
        result = await self.ingest_a(body)
        self.assertEqual(result.outcome, IngestOutcome.IGNORED)
        self.assertEqual(self.processed_count(), 0)

    async def test_failed_payment_is_terminal(self):
        self.open_payment()
        await self.ingest_a(provider_a_payment("evt_1", "payment.failed", "pay_1"))
        result = await self.ingest_a(provider_a_payment("evt_2", "payment.succeeded", "pay_1"))

        self.assertEqual(result.outcome, IngestOutcome.NO_OP)
        record = self.payment()
        self.assertEqual(record.status, PaymentStatus.FAILED)
        self.assertIsNone(record.completed_at)
        self.assertEqual(self.processed_count(), 2)

    async def test_refund_after_completion(self):
        self.open_payment()
        await self.ingest_a(provider_a_payment("evt_1", "payment.succeeded", "pay_1"))
        result = await self.ingest_a(provider_a_payment("evt_2", "payment.refunded", "pay_1"))
        self.assertEqual(result.outcome, IngestOutcome.APPLIED)
        self.assertEqual(self.payment().status, PaymentStatus.REFUNDED)

    async def test_effects_are_dispatched_after_commit(self):
        self.open_payment()
        result = await self.ingest_a(provider_a_payment("evt_1", "payment.succeeded", "pay_1"))
        self.assertEqual(self.dispatcher.dispatched, result.effects)
        emails = [e for e in self.dispatcher.dispatched if isinstance(e, SendConfirmationEmail)]
        self.assertEqual(len(emails), 1)
        self.assertEqual(emails[0].template, "payment_completed")

    async def test_provider_b_capture_completes_payment(self):
        self.open_payment("ORDER-1", provider="providerB")
        body = provider_b_payment("WH-1", "PAYMENT.CAPTURE.COMPLETED", "ORDER-1", value="10.00")
        result = await self.service.ingest("providerB", body, headers_b(body))
        self.assertEqual(result.outcome, IngestOutcome.APPLIED)
        self.assertEqual(self.payment("ORDER-1", Provider.PROVIDER_B).status, PaymentStatus.COMPLETED)

    async def test_same_event_id_from_both_providers_is_distinct(self):
        self.open_payment("pay_1")
        self.open_payment("pay_1", provider="providerB")
        body_a = provider_a_payment("shared-1", "payment.succeeded", "pay_1")
        body_b = provider_b_payment("shared-1", "PAYMENT.CAPTURE.COMPLETED", "pay_1")
        a = await self.ingest_a(body_a)
        b = await self.service.ingest("providerB", body_b, headers_b(body_b))
        self.assertEqual((a.outcome, b.outcome), (IngestOutcome.APPLIED, IngestOutcome.APPLIED))
        self.assertEqual(self.processed_count(), 2)


class TestIdempotency(IngestionTestCase):

    async def test_sequential_redeliveries(self):
        self.open_payment()
        body = provider_a_payment("evt_1", "payment.succeeded", "pay_1")
        outcomes = [(await self.ingest_a(body)).outcome for _ in range(4)]
        self.assertEqual(outcomes.count(IngestOutcome.APPLIED), 1)
        self.assertEqual(outcomes.count(IngestOutcome.ALREADY_PROCESSED), 3)
        self.assertEqual(self.payment().version, 2)

    async def test_concurrent_redeliveries(self):
        self.open_payment()
        body = provider_a_payment("evt_1", "payment.succeeded", "pay_1")
        results = await asyncio.gather(*[self.ingest_a(body) for _ in range(5)])
        outcomes = [r.outcome for r in results]

        self.assertEqual(outcomes.count(IngestOutcome.APPLIED), 1)
        self.assertEqual(outcomes.count(IngestOutcome.ALREADY_PROCESSED), 4)
        self.assertEqual(self.payment().version, 2)
        self.assertEqual(self.processed_count(), 1)
        emails = [e for e in self.dispatcher.dispatched if isinstance(e, SendConfirmationEmail)]
        self.assertEqual(len(emails), 1)


class TestSubscriptionScenarios(IngestionTestCase):

    async def test_creation_then_update(self):
        created = await self.ingest_a(provider_a_subscription("evt_1", "subscription.created", "sub_A", "trialing", PERIOD_1))
        self.assertEqual(created.outcome, IngestOutcome.APPLIED)
        updated = await self.ingest_a(provider_a_subscription("evt_2", "subscription.updated", "sub_A", "active", PERIOD_2))
        self.assertEqual(updated.outcome, IngestOutcome.APPLIED)
        record = self.subscription("sub_A")
        self.assertEqual(record.status, SubscriptionStatus.ACTIVE)
        self.assertEqual(record.current_period_end, datetime(2024, 8, 1, tzinfo=timezone.utc))
        self.assertEqual(record.version, 2)

    async def test_update_for_unknown_subscription_is_orphan(self):
        result = await self.ingest_a(provider_a_subscription("evt_1", "subscription.updated", "sub_X", "active", PERIOD_1))
        self.assertEqual(result.outcome, IngestOutcome.ORPHAN)
        self.assertIsNone(self.subscription("sub_X"))
        self.assertEqual(self.processed_count(), 1)

    async def test_stale_period_end_is_ignored(self):
        await self.ingest_a(provider_a_subscription("evt_1", "subscription.created", "sub_A", "active", PERIOD_2))
        result = await self.ingest_a(provider_a_subscription("evt_2", "subscription.updated", "sub_A", "past_due", PERIOD_1))

        self.assertEqual(result.outcome, IngestOutcome.STALE)
        record = self.subscription("sub_A")
        self.assertEqual(record.status, SubscriptionStatus.ACTIVE)
        self.assertEqual(record.version, 1)
        self.assertEqual(self.processed_count(), 2)

    async def test_scenario_d_new_subscription_supersedes_active_one(self):
        await self.ingest_a(provider_a_subscription("evt_1", "subscription.created", "sub_A", "active", PERIOD_1))
        result = await self.ingest_a(provider_a_subscription("evt_2", "subscription.created", "sub_B", "active", PERIOD_2))

        self.assertEqual(result.outcome, IngestOutcome.APPLIED)
        self.assertEqual(self.subscription("sub_A").status, SubscriptionStatus.CANCELED)
        self.assertIsNotNone(self.subscription("sub_A").cancel_at)
        self.assertEqual(self.subscription("sub_B").status, SubscriptionStatus.ACTIVE)
        self.assertEqual(self.active_count(), 1)

    async def test_at_most_one_active_across_event_sequence(self):
        async def send_b(event_id, event_type, sub_id, status, next_billing):
            body = provider_b_subscription(event_id, event_type, sub_id, status, next_billing)
            return await self.service.ingest("providerB", body, headers_b(body))

        steps = [
            lambda: self.ingest_a(provider_a_subscription("e1", "subscription.created", "sub_A", "trialing", PERIOD_1)),
            lambda: self.ingest_a(provider_a_subscription("e2", "subscription.created", "sub_B", "incomplete", PERIOD_1)),
            lambda: self.ingest_a(provider_a_subscription("e3", "subscription.updated", "sub_B", "active", PERIOD_1)),
            lambda: send_b("WH-1", "BILLING.SUBSCRIPTION.CREATED", "I-1", "ACTIVE", "2024-07-15T00:00:00Z"),
            # sub_B was superseded; canceled is terminal
            lambda: self.ingest_a(provider_a_subscription("e4", "subscription.updated", "sub_B", "active", PERIOD_2)),
            lambda: send_b("WH-2", "BILLING.SUBSCRIPTION.SUSPENDED", "I-1", "SUSPENDED", "2024-07-15T00:00:00Z"),
            lambda: send_b("WH-3", "BILLING.SUBSCRIPTION.ACTIVATED", "I-1", "ACTIVE", "2024-07-15T00:00:00Z"),
            lambda: self.ingest_a(provider_a_subscription("e5", "subscription.created", "sub_C", "trialing", PERIOD_2)),
        ]
        for step in steps:
            await step()
            self.assertLessEqual(self.active_count(), 1)

        self.assertEqual(self.subscription("sub_C").status, SubscriptionStatus.TRIALING)
        self.assertEqual(self.subscription("I-1", Provider.PROVIDER_B).status, SubscriptionStatus.CANCELED)
        self.assertEqual(self.subscription("sub_B").status, SubscriptionStatus.CANCELED)
        self.assertEqual(self.subscription("sub_A").status, SubscriptionStatus.CANCELED)
        self.assertEqual(self.active_count(), 1)


class TestConcurrentActivations(IngestionTestCase):
    """Two subscriptions of one owner and plan activating in overlapping units"""

    def created(self, event_id, sub_id):
        return SubscriptionEvent(
            provider=Provider.PROVIDER_A,
            event_id=event_id,
            event_type="subscription.created",
            external_id=sub_id,
            target_status=SubscriptionStatus.ACTIVE,
            owner_ref="cus_1",
            plan="pro",
            current_period_end=datetime(2024, 7, 1, tzinfo=timezone.utc),
            creates=True,
        )

    def race(self, first, second):
        """Both units read before either writes; the later writer must lose"""
        with self.db.session_factory() as s1, self.db.session_factory() as s2:
            t1, slot1 = self.service._reconcile(s1, first)
            t2, slot2 = self.service._reconcile(s2, second)
            self.assertEqual(t1.demoted, [])
            self.assertEqual(t2.demoted, [])

            self.service._write(s1, t1, slot1)
            s1.commit()
            with self.assertRaises(VersionConflict):
                self.service._write(s2, t2, slot2)
        self.assertEqual(self.active_count(), 1)

    async def test_first_activations_conflict(self):
        self.race(self.created("evt_b", "sub_B"), self.created("evt_c", "sub_C"))

        # The provider's redelivery reconciles against the committed sibling
        result = await self.ingest_a(provider_a_subscription("evt_c", "subscription.created", "sub_C", "active", PERIOD_1))
        self.assertEqual(result.outcome, IngestOutcome.APPLIED)
        self.assertEqual(self.subscription("sub_B").status, SubscriptionStatus.CANCELED)
        self.assertEqual(self.subscription("sub_C").status, SubscriptionStatus.ACTIVE)
        self.assertEqual(self.active_count(), 1)

    async def test_activations_conflict_on_existing_slot(self):
        await self.ingest_a(provider_a_subscription("evt_1", "subscription.created", "sub_A", "active", PERIOD_1))
        await self.ingest_a(provider_a_subscription("evt_2", "subscription.deleted", "sub_A", "canceled", PERIOD_1))
        self.assertEqual(self.active_count(), 0)

        self.race(self.created("evt_b", "sub_B"), self.created("evt_c", "sub_C"))
        self.assertEqual(self.subscription("sub_B").status, SubscriptionStatus.ACTIVE)
        self.assertIsNone(self.subscription("sub_C"))

    async def test_concurrent_creations_through_ingest(self):
        bodies = [
            provider_a_subscription(f"evt_{n}", "subscription.created", f"sub_{n}", "active", PERIOD_1)
            for n in range(4)
        ]
        results = await asyncio.gather(*[self.ingest_a(body) for body in bodies])

        self.assertTrue(all(r.outcome is IngestOutcome.APPLIED for r in results))
        self.assertEqual(self.active_count(), 1)


class _ConflictingLedger(Ledger):
    """Loses the compare-and-set race a fixed number of times"""

    def __init__(self, conflicts):
        self.conflicts = conflicts
        self.calls = 0

    def compare_and_set_payment(self, db, new):
        self.calls += 1
        if self.calls <= self.conflicts:
            raise VersionConflict("payment_records", new.id, new.version - 1)
        super().compare_and_set_payment(db, new)


class TestConcurrencyControl(IngestionTestCase):

    async def test_conflict_is_retried(self):
        self.open_payment()
        ledger = _ConflictingLedger(conflicts=2)
        service = self.make_service(ledger=ledger)
        result = await service.ingest("providerA", *self._signed("evt_1"))

        self.assertEqual(result.outcome, IngestOutcome.APPLIED)
        self.assertEqual(ledger.calls, 3)
        self.assertEqual(self.processed_count(), 1)
        self.assertEqual(service.breaker.state, CircuitState.CLOSED)

    async def test_conflict_retry_exhausted(self):
        self.open_payment()
        ledger = _ConflictingLedger(conflicts=100)
        service = self.make_service(ledger=ledger)

        with self.assertRaises(ConflictRetryExhausted) as ctx:
            await service.ingest("providerA", *self._signed("evt_1"))

        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(ledger.calls, self.db.settings.cas_max_retries + 1)
        # Every attempt rolled back, reservation included
        self.assertEqual(self.processed_count(), 0)
        self.assertEqual(self.payment().status, PaymentStatus.PENDING)
        self.assertEqual(self.dispatcher.dispatched, [])

    async def test_open_breaker_is_storage_unavailable(self):
        self.service.breaker.state = CircuitState.OPEN
        self.service.breaker.last_failure_time = time.time()
        with self.assertRaises(StorageUnavailable) as ctx:
            await self.service.ingest("providerA", *self._signed("evt_1"))
        self.assertTrue(ctx.exception.retryable)

    def _signed(self, event_id):
        body = provider_a_payment(event_id, "payment.succeeded", "pay_1")
        return body, headers_a(body)


class _SlowDedupStore(DedupStore):

    def __init__(self, delay):
        self.delay = delay

    def insert_if_absent(self, db, event):
        inserted = super().insert_if_absent(db, event)
        time.sleep(self.delay)
        return inserted


class _SlowCommitSession(Session):

    def commit(self):
        time.sleep(0.6)
        super().commit()


class TestStorageTimeout(IngestionTestCase):

    db_overrides = {"storage_timeout_seconds": 0.2}

    async def test_timeout_before_commit_releases_reservation(self):
        self.open_payment()
        service = self.make_service(dedup=_SlowDedupStore(0.6))
        body = provider_a_payment("evt_1", "payment.succeeded", "pay_1")

        with self.assertRaises(StorageUnavailable) as ctx:
            await service.ingest("providerA", body, headers_a(body))
        self.assertTrue(ctx.exception.retryable)

        # Let the abandoned worker reach its rollback
        await asyncio.sleep(1.0)
        self.assertEqual(self.processed_count(), 0)
        self.assertEqual(self.payment().status, PaymentStatus.PENDING)
        self.assertEqual(self.dispatcher.dispatched, [])

        # The provider's redelivery goes through
        result = await self.ingest_a(body)
        self.assertEqual(result.outcome, IngestOutcome.APPLIED)

    async def test_commit_in_flight_completes_and_dispatches(self):
        self.open_payment()
        slow_sessions = sessionmaker(bind=self.db.engine, class_=_SlowCommitSession, expire_on_commit=False)
        service = IngestionService(self.db.settings, slow_sessions, self.dispatcher, ledger=self.ledger)
        body = provider_a_payment("evt_1", "payment.succeeded", "pay_1")

        with self.assertRaises(StorageUnavailable):
            await service.ingest("providerA", body, headers_a(body))

        await asyncio.sleep(1.2)
        self.assertEqual(self.payment().status, PaymentStatus.COMPLETED)
        self.assertEqual(self.processed_count(), 1)
        self.assertTrue(self.dispatcher.dispatched)

        result = await self.ingest_a(body)
        self.assertEqual(result.outcome, IngestOutcome.ALREADY_PROCESSED)


if __name__ == "__main__":
    unittest.main()
