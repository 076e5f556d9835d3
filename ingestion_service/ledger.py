"""
Ledger access layer for payment and subscription records.

Reads return frozen domain states. Writes go through compare-and-set on the
version column: the new state carries ``stored version + 1`` and the UPDATE
only matches while the row is still at the stored version. Losing that race
raises VersionConflict and the caller retries its whole unit of work.
"""
import logging
import uuid
from typing import Iterable, List, NamedTuple, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from common.error_handling import ErrorCodes, ServiceError
from common.schemas import OpenPayment
from ingestion_service.domain import (
    ACTIVE_LIKE,
    PaymentState,
    PaymentStatus,
    Provider,
    SubscriptionState,
    SubscriptionStatus,
    as_utc,
    utcnow,
)
from ingestion_service.errors import VersionConflict
from ingestion_service.models import PaymentRecord, SubscriptionRecord, SubscriptionSlot

logger = logging.getLogger(__name__)


class Slot(NamedTuple):
    owner_ref: str
    plan: str
    # 0 while the guard row does not exist
    version: int


def payment_state(row: PaymentRecord) -> PaymentState:
    return PaymentState(
        id=row.id,
        provider=Provider(row.provider),
        external_id=row.external_id,
        amount=row.amount,
        currency=row.currency,
        status=PaymentStatus(row.status),
        created_at=as_utc(row.created_at),
        version=row.version,
        owner_ref=row.owner_ref,
        completed_at=as_utc(row.completed_at),
    )


def subscription_state(row: SubscriptionRecord) -> SubscriptionState:
    return SubscriptionState(
        id=row.id,
        provider=Provider(row.provider),
        external_id=row.external_id,
        owner_ref=row.owner_ref,
        plan=row.plan,
        status=SubscriptionStatus(row.status),
        current_period_end=as_utc(row.current_period_end),
        created_at=as_utc(row.created_at),
        version=row.version,
        cancel_at=as_utc(row.cancel_at),
        updated_at=as_utc(row.updated_at),
    )


class Ledger:

    # Reads
    def get_payment(self, db: Session, provider: Provider, external_id: str) -> Optional[PaymentState]:
        row = db.execute(
            select(PaymentRecord).where(
                PaymentRecord.provider == provider.value,
                PaymentRecord.external_id == external_id,
            )
        ).scalar_one_or_none()
        return payment_state(row) if row else None

    def get_subscription(self, db: Session, provider: Provider, external_id: str) -> Optional[SubscriptionState]:
        row = db.execute(
            select(SubscriptionRecord).where(
                SubscriptionRecord.provider == provider.value,
                SubscriptionRecord.external_id == external_id,
            )
        ).scalar_one_or_none()
        return subscription_state(row) if row else None

    def find_active_siblings(
        self,
        db: Session,
        owner_ref: str,
        plan: str,
        exclude_id: Optional[str] = None,
    ) -> List[SubscriptionState]:
        """ACTIVE/TRIALING subscriptions of the same owner and plan, any provider"""
        stmt = select(SubscriptionRecord).where(
            SubscriptionRecord.owner_ref == owner_ref,
            SubscriptionRecord.plan == plan,
            SubscriptionRecord.status.in_([s.value for s in ACTIVE_LIKE]),
        )
        if exclude_id is not None:
            stmt = stmt.where(SubscriptionRecord.id != exclude_id)
        return [subscription_state(row) for row in db.execute(stmt).scalars()]

    def get_slot(self, db: Session, owner_ref: str, plan: str) -> Slot:
        version = db.execute(
            select(SubscriptionSlot.version).where(
                SubscriptionSlot.owner_ref == owner_ref,
                SubscriptionSlot.plan == plan,
            )
        ).scalar_one_or_none()
        return Slot(owner_ref, plan, version or 0)

    # Writes
    def compare_and_set_payment(self, db: Session, new: PaymentState) -> None:
        expected = new.version - 1
        result = db.execute(
            update(PaymentRecord)
            .where(PaymentRecord.id == new.id, PaymentRecord.version == expected)
            .values(
                status=new.status.value,
                completed_at=new.completed_at,
                version=new.version,
            )
        )
        if result.rowcount != 1:
            raise VersionConflict(PaymentRecord.__tablename__, new.id, expected)

    def compare_and_set_subscription(self, db: Session, new: SubscriptionState) -> None:
        expected = new.version - 1
        result = db.execute(
            update(SubscriptionRecord)
            .where(SubscriptionRecord.id == new.id, SubscriptionRecord.version == expected)
            .values(
                status=new.status.value,
                current_period_end=new.current_period_end,
                cancel_at=new.cancel_at,
                updated_at=new.updated_at,
                version=new.version,
            )
        )
        if result.rowcount != 1:
            raise VersionConflict(SubscriptionRecord.__tablename__, new.id, expected)

    def insert_subscription(self, db: Session, new: SubscriptionState) -> None:
        """Create a subscription first seen through a creation event.

        A concurrent creation of the same (provider, external_id) surfaces as
        a version conflict so the retry reconciles against the stored row.
        """
        db.add(SubscriptionRecord(
            id=new.id,
            provider=new.provider.value,
            external_id=new.external_id,
            owner_ref=new.owner_ref,
            plan=new.plan,
            status=new.status.value,
            current_period_end=new.current_period_end,
            cancel_at=new.cancel_at,
            created_at=new.created_at,
            updated_at=new.updated_at,
            version=new.version,
        ))
        try:
            db.flush()
        except IntegrityError as e:
            raise VersionConflict(SubscriptionRecord.__tablename__, new.id, 0) from e

    def claim_slot(self, db: Session, slot: Slot) -> None:
        """Compare-and-set the owner/plan guard row.

        Two units activating different subscriptions of the same owner and
        plan both claim the slot, so the later one conflicts and re-reads the
        siblings the earlier one committed.
        """
        slot_id = f"{slot.owner_ref}/{slot.plan}"
        if slot.version == 0:
            db.add(SubscriptionSlot(owner_ref=slot.owner_ref, plan=slot.plan, version=1))
            try:
                db.flush()
            except IntegrityError as e:
                raise VersionConflict(SubscriptionSlot.__tablename__, slot_id, 0) from e
            return

        result = db.execute(
            update(SubscriptionSlot)
            .where(
                SubscriptionSlot.owner_ref == slot.owner_ref,
                SubscriptionSlot.plan == slot.plan,
                SubscriptionSlot.version == slot.version,
            )
            .values(version=slot.version + 1)
        )
        if result.rowcount != 1:
            raise VersionConflict(SubscriptionSlot.__tablename__, slot_id, slot.version)

    def save_subscriptions(self, db: Session, states: Iterable[SubscriptionState]) -> None:
        for state in states:
            self.compare_and_set_subscription(db, state)

    def open_payment(self, db: Session, request: OpenPayment) -> PaymentState:
        """Open a PENDING payment that later provider events will settle"""
        provider = Provider(request.provider)
        row = PaymentRecord(
            id=str(uuid.uuid4()),
            provider=provider.value,
            external_id=request.external_id,
            amount=request.amount,
            currency=request.currency.upper(),
            owner_ref=request.owner_ref,
            status=PaymentStatus.PENDING.value,
            created_at=utcnow(),
            version=1,
        )
        db.add(row)
        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise ServiceError(
                ErrorCodes.RECORD_EXISTS,
                f"Payment {provider.value}:{request.external_id} already exists",
                original_error=e,
            )
        logger.info(f"Opened payment {row.id} for {provider.value}:{request.external_id}")
        return payment_state(row)
