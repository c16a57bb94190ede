"""Loan ledger. ``overdue`` is derived: reads run :func:`mark_overdue_loans` first."""

import logging
import math

from sqlalchemy import select, update

import notifications
from copies import set_status
from database import atomic, db
from errors import ConflictError, NotFoundError, ValidationError
from inventory import lock_inventory, recompute_counts
from models import OPEN_RECORD_STATUSES, RECORD_STATUSES, BorrowRecord, Copy, utcnow

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50
FEE_FIELDS = ('late_fee', 'damage_fee')


def parse_fees(fees, record_id=None):
    """Validate a fee adjustment; returns only the keys that were supplied."""
    if not fees:
        return {}
    if not isinstance(fees, dict):
        raise ValidationError('Fees must be an object', record_id)
    unknown = set(fees) - set(FEE_FIELDS) - {'currency'}
    if unknown:
        raise ValidationError(f"Unknown fee fields: {', '.join(sorted(unknown))}", record_id)
    parsed = {}
    for name in FEE_FIELDS:
        if fees.get(name) is None:
            continue
        value = fees[name]
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value) or value < 0:
            raise ValidationError(f'{name} must be a non-negative number', record_id)
        parsed[name] = float(value)
    currency = fees.get('currency')
    if currency is not None:
        if not isinstance(currency, str) or len(currency.strip()) != 3:
            raise ValidationError('Currency must be a 3-character code', record_id)
        parsed['currency'] = currency.strip().upper()
    return parsed


def _load(record_id):
    record = db.session.get(BorrowRecord, record_id)
    if record is None:
        logger.debug(f"Borrow record not found: id={record_id}")
        raise NotFoundError('Borrow record not found', record_id)
    return record


def mark_overdue_loans(now=None, library_id=None, user_id=None, record_id=None, library_ids=None):
    """Flip ``borrowed`` loans past their due date to ``overdue``.

    Returns the ids that this call flipped. A loan flipped by a concurrent
    caller is not reported twice.
    """
    now = now or utcnow()
    query = select(BorrowRecord.id, BorrowRecord.user_id, BorrowRecord.library_id, BorrowRecord.due_date).where(
        BorrowRecord.status == 'borrowed',
        BorrowRecord.due_date < now,
    )
    if library_id is not None:
        query = query.where(BorrowRecord.library_id == library_id)
    if library_ids is not None:
        query = query.where(BorrowRecord.library_id.in_(library_ids))
    if user_id is not None:
        query = query.where(BorrowRecord.user_id == user_id)
    if record_id is not None:
        query = query.where(BorrowRecord.id == record_id)

    flipped = []
    with atomic():
        for row in db.session.execute(query).all():
            result = db.session.execute(
                update(BorrowRecord)
                .where(BorrowRecord.id == row.id, BorrowRecord.status == 'borrowed')
                .values(status='overdue', updated_at=now)
            )
            if result.rowcount:
                flipped.append(row)
    for row in flipped:
        logger.debug(f"Loan overdue: id={row.id} due_date={row.due_date.isoformat()}")
        notifications.loan_overdue.send(
            __name__,
            record_id=row.id,
            user_id=row.user_id,
            library_id=row.library_id,
            due_date=row.due_date,
        )
    return [row.id for row in flipped]


def get_record(record_id, now=None):
    _load(record_id)
    mark_overdue_loans(now, record_id=record_id)
    return _load(record_id)


def find_active(user_id=None, library_id=None, library_ids=None, now=None):
    mark_overdue_loans(now, library_id=library_id, user_id=user_id, library_ids=library_ids)
    query = BorrowRecord.query.filter(BorrowRecord.status.in_(OPEN_RECORD_STATUSES))
    if user_id is not None:
        query = query.filter(BorrowRecord.user_id == user_id)
    if library_id is not None:
        query = query.filter(BorrowRecord.library_id == library_id)
    if library_ids is not None:
        query = query.filter(BorrowRecord.library_id.in_(library_ids))
    return query.order_by(BorrowRecord.borrow_date.desc(), BorrowRecord.id.desc())


def find_overdue(library_id=None, library_ids=None, now=None):
    now = now or utcnow()
    mark_overdue_loans(now, library_id=library_id, library_ids=library_ids)
    query = BorrowRecord.query.filter(
        BorrowRecord.status.in_(OPEN_RECORD_STATUSES),
        BorrowRecord.due_date < now,
    )
    if library_id is not None:
        query = query.filter(BorrowRecord.library_id == library_id)
    if library_ids is not None:
        query = query.filter(BorrowRecord.library_id.in_(library_ids))
    return query.order_by(BorrowRecord.due_date.asc(), BorrowRecord.id.asc())


def find_by_user(user_id, limit=DEFAULT_HISTORY_LIMIT, now=None):
    """A user's most recent ``limit`` loans, newest first.

    The cap is applied in a subquery so the result can still be paginated.
    """
    mark_overdue_loans(now, user_id=user_id)
    newest_first = (BorrowRecord.borrow_date.desc(), BorrowRecord.id.desc())
    capped = select(BorrowRecord.id).where(BorrowRecord.user_id == user_id).order_by(*newest_first).limit(limit)
    return BorrowRecord.query.filter(BorrowRecord.id.in_(capped)).order_by(*newest_first)


def list_records(library_id=None, library_ids=None, user_id=None, status=None, overdue=False, now=None):
    if status is not None and status not in RECORD_STATUSES:
        raise ValidationError(f"Invalid record status '{status}'")
    now = now or utcnow()
    mark_overdue_loans(now, library_id=library_id, user_id=user_id, library_ids=library_ids)
    query = BorrowRecord.query
    if library_id is not None:
        query = query.filter(BorrowRecord.library_id == library_id)
    if library_ids is not None:
        query = query.filter(BorrowRecord.library_id.in_(library_ids))
    if user_id is not None:
        query = query.filter(BorrowRecord.user_id == user_id)
    if overdue:
        query = query.filter(BorrowRecord.status.in_(OPEN_RECORD_STATUSES), BorrowRecord.due_date < now)
    elif status is not None:
        query = query.filter(BorrowRecord.status == status)
    return query.order_by(BorrowRecord.borrow_date.desc(), BorrowRecord.id.desc())


def _close_open(record, status, values, copy_status):
    """Guarded open -> closed update plus the copy flip, in the caller's transaction."""
    result = db.session.execute(
        update(BorrowRecord)
        .where(BorrowRecord.id == record.id, BorrowRecord.status.in_(OPEN_RECORD_STATUSES))
        .values(status=status, **values)
    )
    if result.rowcount != 1:
        raise ConflictError('Loan is already closed', record.id)
    copy = db.session.get(Copy, record.copy_id) if record.copy_id else None
    if copy is not None:
        set_status(copy, copy_status)
    else:
        recompute_counts(record.inventory_id)


def mark_returned(record_id, fees=None, actor=None, now=None):
    """Close a loan as returned, merge fee adjustments, shelve the copy again."""
    fee_values = parse_fees(fees, record_id)
    now = now or utcnow()
    record = _load(record_id)
    if actor is not None:
        actor.require_library(record.library_id, record_id)
    if record.status == 'returned':
        logger.debug(f"Loan already returned: id={record_id}")
        raise ConflictError('Book is already returned', record_id)
    if record.status == 'lost':
        raise ConflictError('Loan was closed as lost', record_id)

    with atomic():
        lock_inventory(record.inventory_id)
        _close_open(record, 'returned', dict(fee_values, return_date=now, updated_at=now), 'available')
    db.session.refresh(record)
    logger.debug(f"Loan returned: id={record_id} copy_id={record.copy_id} total_fees={record.total_fees}")
    notifications.loan_returned.send(
        __name__,
        record_id=record.id,
        user_id=record.user_id,
        library_id=record.library_id,
        copy_id=record.copy_id,
    )
    return record


def mark_lost(record_id, fees=None, actor=None, now=None):
    """Close a loan as lost; the copy stays ``lost`` until staff restore it."""
    fee_values = parse_fees(fees, record_id)
    now = now or utcnow()
    record = _load(record_id)
    if actor is not None:
        actor.require_library(record.library_id, record_id)
    if record.status in ('returned', 'lost'):
        logger.debug(f"Loan already closed: id={record_id} status={record.status}")
        raise ConflictError(f'Loan is already {record.status}', record_id)

    with atomic():
        lock_inventory(record.inventory_id)
        _close_open(record, 'lost', dict(fee_values, updated_at=now), 'lost')
    db.session.refresh(record)
    logger.debug(f"Loan marked lost: id={record_id} copy_id={record.copy_id}")
    notifications.loan_lost.send(
        __name__,
        record_id=record.id,
        user_id=record.user_id,
        library_id=record.library_id,
        copy_id=record.copy_id,
    )
    return record
