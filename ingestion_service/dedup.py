"""
Processed-event store.

The reservation is an uncommitted insert into processed_events inside the
caller's transaction: a concurrent delivery of the same key blocks on the
primary key until that transaction ends, then either sees a duplicate (the
first delivery committed) or wins the insert (the first one rolled back).
Rolling back the transaction is therefore also the release of the
reservation.
"""
import logging
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ingestion_service.domain import IngestOutcome, VerifiedEvent
from ingestion_service.models import ProcessedEvent

logger = logging.getLogger(__name__)


class DedupStore:

    def insert_if_absent(self, db: Session, event: VerifiedEvent) -> bool:
        """Reserve the event key. Returns False when it was already recorded.

        Must be the first write of the transaction: a duplicate rolls the
        whole session back.
        """
        db.add(ProcessedEvent(
            event_key=event.key,
            provider=event.provider.value,
            event_id=event.event_id,
            event_type=event.event_type[:64],
        ))
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            logger.info(f"Duplicate webhook event: {event.key}")
            return False
        return True

    def finalize(self, db: Session, key: str, outcome: IngestOutcome) -> None:
        db.execute(
            update(ProcessedEvent)
            .where(ProcessedEvent.event_key == key)
            .values(outcome=outcome.value)
        )

    def get(self, db: Session, key: str) -> Optional[ProcessedEvent]:
        return db.get(ProcessedEvent, key)

    def count(self, db: Session, key: Optional[str] = None) -> int:
        stmt = select(func.count()).select_from(ProcessedEvent)
        if key is not None:
            stmt = stmt.where(ProcessedEvent.event_key == key)
        return db.execute(stmt).scalar_one()
