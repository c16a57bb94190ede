"""Inventory ledger. Counts are always recomputed from copy rows, never adjusted."""

import logging

from sqlalchemy import case, func, select, update

from catalog import get_library, get_title
from database import atomic, db
from errors import ConflictError, NotFoundError, ValidationError
from models import BorrowRecord, BorrowRequest, Copy, Inventory

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ('total_copies', 'available_copies', 'shelf_location', 'notes')


def get_inventory(inventory_id):
    inventory = db.session.get(Inventory, inventory_id)
    if inventory is None:
        logger.debug(f"Inventory not found: id={inventory_id}")
        raise NotFoundError('Inventory not found', inventory_id)
    return inventory


def find_inventory(library_id, title_id):
    return Inventory.query.filter_by(library_id=library_id, title_id=title_id).first()


def lock_inventory(inventory_id):
    """Take the row lock that serializes copy changes under one inventory.

    ``FOR UPDATE`` is a no-op on SQLite, where the write lock already
    serializes writers.
    """
    inventory = db.session.execute(
        select(Inventory).where(Inventory.id == inventory_id).with_for_update()
    ).scalar_one_or_none()
    if inventory is None:
        raise NotFoundError('Inventory not found', inventory_id)
    return inventory


def recompute_counts(inventory_id):
    """Recount copies under an inventory and store the totals.

    Flushes but does not commit; callers own the transaction.
    """
    inventory = get_inventory(inventory_id)
    db.session.flush()
    total, available = db.session.execute(
        select(
            func.count(Copy.id),
            func.coalesce(func.sum(case((Copy.status == 'available', 1), else_=0)), 0),
        ).where(Copy.inventory_id == inventory_id)
    ).one()
    inventory.total_copies = total
    inventory.available_copies = available
    db.session.flush()
    logger.debug(f"Inventory recomputed: id={inventory_id} total={total} available={available}")
    return inventory


def find_available(library_id=None):
    query = Inventory.query.filter(Inventory.available_copies > 0)
    if library_id is not None:
        query = query.filter(Inventory.library_id == library_id)
    return query.order_by(Inventory.id)


def list_inventories(library_id=None, title_id=None, available_only=False, library_ids=None):
    query = Inventory.query
    if library_id is not None:
        query = query.filter(Inventory.library_id == library_id)
    if library_ids is not None:
        query = query.filter(Inventory.library_id.in_(library_ids))
    if title_id is not None:
        query = query.filter(Inventory.title_id == title_id)
    if available_only:
        query = query.filter(Inventory.available_copies > 0)
    return query.order_by(Inventory.created_at.desc(), Inventory.id.desc())


def ensure_inventory(library_id, title_id, shelf_location=None):
    """Return the inventory for a library and title, creating an empty one if needed.

    Flushes but does not commit.
    """
    inventory = find_inventory(library_id, title_id)
    if inventory is None:
        get_library(library_id)
        get_title(title_id)
        inventory = Inventory(
            library_id=library_id,
            title_id=title_id,
            total_copies=0,
            available_copies=0,
            shelf_location=shelf_location,
        )
        db.session.add(inventory)
        db.session.flush()
        logger.debug(f"Inventory created lazily: id={inventory.id} library_id={library_id} title_id={title_id}")
    return inventory


def create_inventory(library_id, title_id, shelf_location=None, notes=None):
    get_library(library_id)
    get_title(title_id)
    if find_inventory(library_id, title_id):
        raise ConflictError('Inventory already exists for this library and title')
    with atomic('Inventory already exists for this library and title'):
        inventory = Inventory(
            library_id=library_id,
            title_id=title_id,
            total_copies=0,
            available_copies=0,
            shelf_location=shelf_location,
            notes=notes,
        )
        db.session.add(inventory)
    logger.debug(f"Inventory created: id={inventory.id} library_id={library_id} title_id={title_id}")
    return inventory


def update_inventory(inventory_id, **fields):
    """Manual correction of an inventory row.

    Available copies above the total are clamped down to the total when the
    row is written.
    """
    unknown = set(fields) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown inventory fields: {', '.join(sorted(unknown))}", inventory_id)
    for name in ('total_copies', 'available_copies'):
        value = fields.get(name)
        if value is not None and (not isinstance(value, int) or isinstance(value, bool) or value < 0):
            raise ValidationError(f'{name} must be a non-negative integer', inventory_id)
    with atomic():
        inventory = lock_inventory(inventory_id)
        for name, value in fields.items():
            if value is not None:
                setattr(inventory, name, value)
    logger.debug(f"Inventory updated: id={inventory_id} fields={sorted(fields)}")
    return inventory


def delete_inventory(inventory_id):
    """Delete an empty inventory; refuse while copies, loans or pending requests reference it."""
    inventory = get_inventory(inventory_id)
    copy_count = db.session.scalar(select(func.count()).select_from(Copy).where(Copy.inventory_id == inventory_id))
    if copy_count:
        logger.debug(f"Inventory delete blocked: id={inventory_id} has {copy_count} copies")
        raise ConflictError('Cannot delete inventory with existing copies', inventory_id)
    if BorrowRecord.query.filter_by(inventory_id=inventory_id).first():
        raise ConflictError('Cannot delete inventory with loan history', inventory_id)
    if BorrowRequest.query.filter_by(inventory_id=inventory_id, status='pending').first():
        raise ConflictError('Cannot delete inventory with pending requests', inventory_id)
    with atomic():
        lock_inventory(inventory_id)
        db.session.execute(
            update(BorrowRequest).where(BorrowRequest.inventory_id == inventory_id).values(inventory_id=None)
        )
        # a copy registered meanwhile keeps the row
        deleted = db.session.execute(
            Inventory.__table__.delete().where(
                Inventory.id == inventory_id,
                ~select(Copy.id).where(Copy.inventory_id == inventory_id).exists(),
            )
        ).rowcount
        if not deleted:
            raise ConflictError('Cannot delete inventory with existing copies', inventory_id)
        db.session.expunge(inventory)
    logger.debug(f"Inventory deleted: id={inventory_id}")


def refresh_inventory(inventory_id):
    """Recount an inventory on demand and commit the result."""
    with atomic():
        lock_inventory(inventory_id)
        inventory = recompute_counts(inventory_id)
    return inventory
