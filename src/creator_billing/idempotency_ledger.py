import logging

from sqlalchemy.orm import Session

from creator_billing.models.base import dialect_insert, utcnow
from creator_billing.models.processed_event import ProcessedEvent


def claim_event(db: Session, event_id: str, event_type: str) -> bool:
    """
    Atomically record that ``event_id`` is being applied.

    Runs ``INSERT ... ON CONFLICT DO NOTHING`` inside the caller's
    transaction, so the claim commits or rolls back together with the
    mutation it guards. A concurrent claim of the same id blocks on the
    primary key until the first transaction finishes.

    :return: True if this call inserted the record, False if the event was
        already applied.
    """
    if not event_id:
        raise ValueError("event_id cannot be empty")

    insert = dialect_insert(db)
    statement = (
        insert(ProcessedEvent.__table__)
        .values(event_id=event_id, event_type=event_type, processed_at=utcnow())
        .on_conflict_do_nothing(index_elements=['event_id'])
    )
    result = db.execute(statement)
    claimed = result.rowcount == 1
    if not claimed:
        logging.info(f"Event {event_id} ({event_type}) already processed, skipping.")
    return claimed


def is_processed(db: Session, event_id: str) -> bool:
    return db.get(ProcessedEvent, event_id) is not None
