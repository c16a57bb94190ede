"""Copy registry. Every change is followed by an inventory recount in the same transaction."""

import logging

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from catalog import get_library, get_title
from database import atomic, db
from errors import ConflictError, NotFoundError, ValidationError
from inventory import ensure_inventory, get_inventory, lock_inventory, recompute_counts
from models import COPY_CONDITIONS, COPY_STATUSES, BorrowRecord, BorrowRequest, Copy, utcnow

logger = logging.getLogger(__name__)

BARCODE_ATTEMPTS = 5
UPDATABLE_FIELDS = ('barcode', 'status', 'condition', 'shelf_location', 'acquired_at')


def get_copy(copy_id):
    copy = db.session.get(Copy, copy_id)
    if copy is None:
        logger.debug(f"Copy not found: id={copy_id}")
        raise NotFoundError('Copy not found', copy_id)
    return copy


def _check_status(status, entity_id=None):
    if status not in COPY_STATUSES:
        raise ValidationError(f"Invalid copy status '{status}'", entity_id)


def _check_condition(condition, entity_id=None):
    if condition not in COPY_CONDITIONS:
        raise ValidationError(f"Invalid copy condition '{condition}'", entity_id)


def _barcode_taken(library_id, barcode, exclude_id=None):
    query = Copy.query.filter_by(library_id=library_id, barcode=barcode.strip().upper())
    if exclude_id is not None:
        query = query.filter(Copy.id != exclude_id)
    return query.first() is not None


def next_barcode(library, year=None):
    """``{CODE}-{YEAR}-{NNNN}``: one past the number of barcodes with that prefix.

    Skips forward past sequences already in use, which happens once copies
    have been deleted.
    """
    year = year or utcnow().year
    prefix = f'{library.code}-{year}-'
    existing = db.session.scalar(
        select(func.count()).select_from(Copy).where(
            Copy.library_id == library.id,
            Copy.barcode.startswith(prefix, autoescape=True),
        )
    )
    sequence = existing + 1
    while _barcode_taken(library.id, f'{prefix}{sequence:04d}'):
        sequence += 1
    return f'{prefix}{sequence:04d}'


def create_copy(library_id, title_id, inventory_id=None, barcode=None, status='available',
                condition='good', shelf_location=None, acquired_at=None):
    """Register a physical copy and recount its inventory.

    Without ``inventory_id`` the inventory for the library and title is
    created on first use. Without ``barcode`` one is generated; if a
    concurrent writer takes the same barcode first, generation is retried.
    """
    _check_status(status)
    _check_condition(condition)
    library = get_library(library_id)
    get_title(title_id)
    if inventory_id is not None:
        inventory = get_inventory(inventory_id)
        if inventory.library_id != library_id or inventory.title_id != title_id:
            raise ValidationError('Inventory does not belong to this library and title', inventory_id)
    if barcode and _barcode_taken(library_id, barcode):
        logger.debug(f"Duplicate barcode {barcode} in library_id={library_id}")
        raise ConflictError('Copy with this barcode already exists in this library')

    for attempt in range(1, BARCODE_ATTEMPTS + 1):
        try:
            with atomic():
                if inventory_id is None:
                    inventory = ensure_inventory(library_id, title_id, shelf_location)
                lock_inventory(inventory.id)
                copy = Copy(
                    inventory_id=inventory.id,
                    library_id=library_id,
                    title_id=title_id,
                    barcode=barcode or next_barcode(library),
                    status=status,
                    condition=condition,
                    shelf_location=shelf_location or inventory.shelf_location,
                    acquired_at=acquired_at or utcnow(),
                )
                db.session.add(copy)
                recompute_counts(inventory.id)
        except IntegrityError:
            if barcode:
                raise ConflictError('Copy with this barcode already exists in this library')
            logger.debug(f"Generated barcode collided, retrying ({attempt}/{BARCODE_ATTEMPTS})")
            continue
        logger.debug(f"Copy created: id={copy.id} barcode={copy.barcode} inventory_id={copy.inventory_id}")
        return copy
    raise ConflictError('Could not allocate a unique barcode', library_id)


def assign_barcode(copy_id):
    """Give a copy without a barcode a generated one; an existing barcode is kept."""
    copy = get_copy(copy_id)
    if copy.barcode:
        logger.debug(f"Copy already has a barcode: id={copy_id} barcode={copy.barcode}")
        return copy
    library = get_library(copy.library_id)
    for attempt in range(1, BARCODE_ATTEMPTS + 1):
        try:
            with atomic():
                copy = get_copy(copy_id)
                if not copy.barcode:
                    copy.barcode = next_barcode(library)
        except IntegrityError:
            logger.debug(f"Generated barcode collided, retrying ({attempt}/{BARCODE_ATTEMPTS})")
            continue
        logger.debug(f"Barcode assigned: id={copy_id} barcode={copy.barcode}")
        return copy
    raise ConflictError('Could not allocate a unique barcode', copy_id)


def update_copy_status(copy_id, status):
    """Set a copy's status outright and recount; commits."""
    _check_status(status, copy_id)
    copy = get_copy(copy_id)
    with atomic():
        lock_inventory(copy.inventory_id)
        set_status(copy, status)
    return copy


def set_status(copy, status):
    """Status change inside a caller's transaction."""
    previous = copy.status
    copy.status = status
    recompute_counts(copy.inventory_id)
    logger.debug(f"Copy status changed: id={copy.id} {previous} -> {status}")


def update_copy(copy_id, **fields):
    unknown = set(fields) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown copy fields: {', '.join(sorted(unknown))}", copy_id)
    copy = get_copy(copy_id)
    if fields.get('status') is not None:
        _check_status(fields['status'], copy_id)
    if fields.get('condition') is not None:
        _check_condition(fields['condition'], copy_id)
    if fields.get('barcode') and _barcode_taken(copy.library_id, fields['barcode'], exclude_id=copy_id):
        raise ConflictError('Copy with this barcode already exists in this library', copy_id)
    with atomic('Copy with this barcode already exists in this library'):
        lock_inventory(copy.inventory_id)
        status = fields.pop('status', None)
        for name, value in fields.items():
            if value is not None:
                setattr(copy, name, value)
        if status is not None and status != copy.status:
            set_status(copy, status)
    logger.debug(f"Copy updated: id={copy_id}")
    return copy


def delete_copy(copy_id):
    copy = get_copy(copy_id)
    if copy.status == 'borrowed':
        logger.debug(f"Refusing to delete borrowed copy: id={copy_id}")
        raise ConflictError('Cannot delete a copy that is currently borrowed', copy_id)
    inventory_id = copy.inventory_id
    with atomic():
        lock_inventory(inventory_id)
        # loan history outlives the physical item
        db.session.execute(update(BorrowRequest).where(BorrowRequest.copy_id == copy_id).values(copy_id=None))
        db.session.execute(update(BorrowRecord).where(BorrowRecord.copy_id == copy_id).values(copy_id=None))
        # the guard is repeated in the DELETE itself in case the copy went out meanwhile
        deleted = db.session.execute(
            Copy.__table__.delete().where(Copy.id == copy_id, Copy.status != 'borrowed')
        ).rowcount
        if not deleted:
            raise ConflictError('Cannot delete a copy that is currently borrowed', copy_id)
        db.session.expunge(copy)
        recompute_counts(inventory_id)
    logger.debug(f"Copy deleted: id={copy_id} inventory_id={inventory_id}")


def claim_available_copy(inventory_id):
    """Atomically move one available copy of an inventory to ``borrowed``.

    Candidates are tried in id order; each claim is a conditional UPDATE that
    only matches while the copy is still available, so two transactions can
    never both win the same copy. Returns the claimed copy, or None when
    nothing is left. Does not commit and does not recount.
    """
    candidates = db.session.scalars(
        select(Copy.id).where(Copy.inventory_id == inventory_id, Copy.status == 'available').order_by(Copy.id)
    ).all()
    for candidate_id in candidates:
        claimed = db.session.execute(
            update(Copy)
            .where(Copy.id == candidate_id, Copy.status == 'available')
            .values(status='borrowed', updated_at=utcnow())
            .execution_options(synchronize_session=False)
        ).rowcount
        if claimed:
            copy = db.session.get(Copy, candidate_id)
            db.session.refresh(copy)
            logger.debug(f"Copy claimed: id={candidate_id} inventory_id={inventory_id}")
            return copy
        logger.debug(f"Copy id={candidate_id} was taken concurrently, trying next")
    return None


def find_available_copies(library_id=None, title_id=None):
    query = Copy.query.filter(Copy.status == 'available')
    if library_id is not None:
        query = query.filter(Copy.library_id == library_id)
    if title_id is not None:
        query = query.filter(Copy.title_id == title_id)
    return query.order_by(Copy.id)


def find_by_barcode(barcode, library_id=None):
    query = Copy.query.filter(Copy.barcode == barcode.strip().upper())
    if library_id is not None:
        query = query.filter(Copy.library_id == library_id)
    return query.first()


def list_copies(library_id=None, title_id=None, inventory_id=None, status=None, condition=None):
    query = Copy.query
    for column, value in (
        (Copy.library_id, library_id),
        (Copy.title_id, title_id),
        (Copy.inventory_id, inventory_id),
        (Copy.status, status),
        (Copy.condition, condition),
    ):
        if value is not None:
            query = query.filter(column == value)
    return query.order_by(Copy.created_at.desc(), Copy.id.desc())
