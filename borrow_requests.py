"""Borrow request workflow."""

import logging
from datetime import timedelta

from sqlalchemy import update

import notifications
from catalog import get_library, get_title, get_user
from copies import claim_available_copy
from database import atomic, db
from errors import ConflictError, ForbiddenError, InsufficientAvailabilityError, NotFoundError, ValidationError
from inventory import find_inventory, lock_inventory, recompute_counts
from models import REQUEST_STATUSES, BorrowRecord, BorrowRequest, utcnow

logger = logging.getLogger(__name__)

LOAN_PERIOD = timedelta(days=14)
DECISIONS = ('approved', 'rejected')
MAX_NOTES_LENGTH = 500


def _check_notes(notes):
    if notes is not None and not isinstance(notes, str):
        raise ValidationError('Notes must be a string')
    if notes is not None and len(notes) > MAX_NOTES_LENGTH:
        raise ValidationError(f'Notes cannot exceed {MAX_NOTES_LENGTH} characters')
    return notes.strip() if notes else notes


def get_request(request_id):
    borrow_request = db.session.get(BorrowRequest, request_id)
    if borrow_request is None:
        logger.debug(f"Borrow request not found: id={request_id}")
        raise NotFoundError('Borrow request not found', request_id)
    return borrow_request


def create_request(user_id, library_id, title_id, notes=None, now=None):
    notes = _check_notes(notes)
    get_user(user_id)
    get_library(library_id)
    get_title(title_id)
    inventory = find_inventory(library_id, title_id)
    if inventory is None:
        logger.debug(f"No inventory for library_id={library_id} title_id={title_id}")
        raise NotFoundError('This title is not available in the selected library')
    if inventory.available_copies <= 0:
        logger.debug(f"No copies available: inventory_id={inventory.id}")
        raise InsufficientAvailabilityError('No copies available for this title', inventory.id)
    existing = BorrowRequest.query.filter_by(
        user_id=user_id, library_id=library_id, title_id=title_id, status='pending'
    ).first()
    if existing:
        logger.debug(f"Duplicate pending request: user_id={user_id} existing id={existing.id}")
        raise ConflictError('You already have a pending request for this title', existing.id)

    with atomic('You already have a pending request for this title'):
        borrow_request = BorrowRequest(
            user_id=user_id,
            library_id=library_id,
            title_id=title_id,
            inventory_id=inventory.id,
            status='pending',
            requested_at=now or utcnow(),
            notes=notes,
        )
        db.session.add(borrow_request)
    logger.debug(f"Borrow request created: id={borrow_request.id} user_id={user_id} inventory_id={inventory.id}")
    return borrow_request


def _close_pending(request_id, status, decided_at, decided_by=None, notes=None):
    """Conditional pending -> terminal update; False if someone got there first."""
    values = {'status': status, 'decided_at': decided_at}
    if decided_by is not None:
        values['decided_by'] = decided_by
    if notes:
        values['notes'] = notes
    result = db.session.execute(
        update(BorrowRequest)
        .where(BorrowRequest.id == request_id, BorrowRequest.status == 'pending')
        .values(**values)
    )
    return result.rowcount == 1


def decide_request(request_id, decider, status, notes=None, now=None):
    """Approve or reject a pending request.

    ``decider`` is either a caller object (``user_id`` plus a
    ``require_library`` capability check) or a bare user id.

    Approval claims a copy, opens a loan due in 14 days and recounts the
    inventory; if no copy can be claimed the request stays pending and
    ``InsufficientAvailabilityError`` is raised.
    """
    if status not in DECISIONS:
        raise ValidationError(f"Decision must be one of {', '.join(DECISIONS)}", request_id)
    notes = _check_notes(notes)
    now = now or utcnow()
    decider_id = getattr(decider, 'user_id', decider)
    borrow_request = get_request(request_id)
    if hasattr(decider, 'require_library'):
        decider.require_library(borrow_request.library_id, request_id)
    if borrow_request.status != 'pending':
        logger.debug(f"Request already processed: id={request_id} status={borrow_request.status}")
        raise ConflictError('Request has already been processed', request_id)

    record = None
    with atomic('Copy is already on loan'):
        if not _close_pending(request_id, status, now, decider_id, notes):
            raise ConflictError('Request has already been processed', request_id)
        if status == 'approved':
            inventory_id = borrow_request.inventory_id
            lock_inventory(inventory_id)
            copy = claim_available_copy(inventory_id)
            if copy is None:
                logger.debug(f"Approval failed, no copy left: request_id={request_id} inventory_id={inventory_id}")
                raise InsufficientAvailabilityError('No available copies found', request_id)
            record = BorrowRecord(
                user_id=borrow_request.user_id,
                library_id=borrow_request.library_id,
                title_id=borrow_request.title_id,
                inventory_id=inventory_id,
                copy_id=copy.id,
                borrow_date=now,
                due_date=now + LOAN_PERIOD,
                status='borrowed',
                approved_by=decider_id,
            )
            db.session.add(record)
            db.session.flush()
            borrow_request.copy_id = copy.id
            borrow_request.record_id = record.id
            recompute_counts(inventory_id)

    logger.debug(f"Borrow request {status}: id={request_id} decided_by={decider_id}")
    notifications.request_decided.send(
        __name__,
        request_id=borrow_request.id,
        user_id=borrow_request.user_id,
        library_id=borrow_request.library_id,
        title_id=borrow_request.title_id,
        status=status,
        record_id=record.id if record else None,
    )
    return borrow_request


def cancel_request(request_id, caller_id, now=None):
    borrow_request = get_request(request_id)
    if borrow_request.user_id != caller_id:
        logger.error(f"Cancel denied: user_id={caller_id} does not own request id={request_id}")
        raise ForbiddenError('Access denied', request_id)
    if borrow_request.status != 'pending':
        raise ConflictError('Only pending requests can be cancelled', request_id)
    with atomic():
        if not _close_pending(request_id, 'cancelled', now or utcnow()):
            raise ConflictError('Only pending requests can be cancelled', request_id)
    logger.debug(f"Borrow request cancelled: id={request_id}")
    return borrow_request


def find_pending(library_id=None, library_ids=None):
    query = BorrowRequest.query.filter_by(status='pending')
    if library_id is not None:
        query = query.filter(BorrowRequest.library_id == library_id)
    if library_ids is not None:
        query = query.filter(BorrowRequest.library_id.in_(library_ids))
    return query.order_by(BorrowRequest.requested_at.asc(), BorrowRequest.id.asc())


def find_by_user(user_id, status=None):
    query = BorrowRequest.query.filter_by(user_id=user_id)
    if status is not None:
        query = query.filter_by(status=status)
    return query.order_by(BorrowRequest.requested_at.desc(), BorrowRequest.id.desc())


def find_by_title(title_id, library_id=None, library_ids=None):
    query = BorrowRequest.query.filter_by(title_id=title_id)
    if library_id is not None:
        query = query.filter(BorrowRequest.library_id == library_id)
    if library_ids is not None:
        query = query.filter(BorrowRequest.library_id.in_(library_ids))
    return query.order_by(BorrowRequest.requested_at.asc(), BorrowRequest.id.asc())


def list_requests(library_id=None, library_ids=None, user_id=None, title_id=None, status=None):
    if status is not None and status not in REQUEST_STATUSES:
        raise ValidationError(f"Invalid request status '{status}'")
    query = BorrowRequest.query
    for column, value in (
        (BorrowRequest.library_id, library_id),
        (BorrowRequest.user_id, user_id),
        (BorrowRequest.title_id, title_id),
        (BorrowRequest.status, status),
    ):
        if value is not None:
            query = query.filter(column == value)
    if library_ids is not None:
        query = query.filter(BorrowRequest.library_id.in_(library_ids))
    return query.order_by(BorrowRequest.requested_at.desc(), BorrowRequest.id.desc())
