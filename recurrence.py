import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from models import Frequency, RecurringTransaction, Transaction
from schemas import RecurringTransactionOut


logger = logging.getLogger(__name__)


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    # Snap to the last valid day: Jan 31 + 1 month -> Feb 28/29.
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


def compute_next_due(
    start_date: date,
    frequency: Frequency,
    last_processed: Optional[date] = None,
) -> date:
    """Return the next due date of a schedule.

    The base is ``last_processed`` once the schedule has run at least once,
    otherwise ``start_date``. Unknown frequencies fall back to monthly.
    """
    base = last_processed or start_date
    if frequency == Frequency.weekly:
        return base + timedelta(weeks=1)
    if frequency == Frequency.yearly:
        return _add_months(base, 12)
    if frequency != Frequency.monthly:
        logger.warning(
            f"compute_next_due: unknown frequency={frequency!r}, using monthly"
        )
    return _add_months(base, 1)


@dataclass
class ProcessResult:
    processed: int = 0
    # Records are captured as they were when picked up, before advancing.
    items: list[tuple[RecurringTransactionOut, Transaction]] = field(
        default_factory=list
    )


class RecurringEngine:
    def __init__(self, session: Session) -> None:
        self.session = session

    def due_before(
        self, space_id: str, as_of: Optional[date] = None
    ) -> list[RecurringTransaction]:
        as_of = as_of or local_today()
        stmt = (
            select(RecurringTransaction)
            .where(
                RecurringTransaction.space_id == space_id,
                RecurringTransaction.is_active.is_(True),
                RecurringTransaction.next_due_date <= as_of,
            )
            .order_by(RecurringTransaction.next_due_date, RecurringTransaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def advance(
        self, recurring_id: str, last_processed: date, frequency: Frequency
    ) -> Optional[RecurringTransaction]:
        record = self.session.get(RecurringTransaction, recurring_id)
        if record is None:
            logger.warning(f"recurring_advance: missing recurring_id={recurring_id}")
            return None
        record.last_processed = last_processed
        record.next_due_date = compute_next_due(last_processed, frequency)
        self.session.flush()
        return record

    def process_due(
        self, space_id: str, today: Optional[date] = None
    ) -> ProcessResult:
        today = today or local_today()
        due = self.due_before(space_id, today)
        logger.info(f"recurring_process: space_id={space_id} due={len(due)}")
        result = ProcessResult()
        for record in due:
            record_id = record.id
            try:
                snapshot = RecurringTransactionOut.model_validate(record)
                txn = self._materialize(record)
                self.advance(record_id, snapshot.next_due_date, snapshot.frequency)
                self.session.commit()
            except Exception:
                self.session.rollback()
                logger.exception(
                    f"recurring_process: failed recurring_id={record_id}, skipping"
                )
                continue
            result.items.append((snapshot, txn))
            result.processed += 1
        logger.info(
            f"recurring_process: space_id={space_id} processed={result.processed}"
        )
        return result

    def _materialize(self, record: RecurringTransaction) -> Transaction:
        # Materialized rows are plain transactions; they never spawn shadows.
        txn = Transaction(
            space_id=record.space_id,
            type=record.type,
            amount=record.amount,
            category=record.category,
            subcategory=record.subcategory,
            description=record.description,
            date=record.next_due_date,
            is_recurring=True,
            recurrence_frequency=record.frequency,
        )
        self.session.add(txn)
        self.session.flush()
        return txn
