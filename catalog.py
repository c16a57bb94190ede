"""Library, title and user records."""

import logging

import bcrypt
from sqlalchemy import delete, func, or_, select

from database import atomic, db
from errors import ConflictError, NotFoundError, ValidationError
from models import (
    OPEN_RECORD_STATUSES,
    ROLES,
    USER_STATUSES,
    BorrowRecord,
    BorrowRequest,
    Copy,
    Inventory,
    Library,
    Title,
    User,
    user_libraries,
)

logger = logging.getLogger(__name__)

SELF_REGISTER_ROLES = ('student', 'guest')


def _get_or_404(model, entity_id, label):
    entity = db.session.get(model, entity_id)
    if entity is None:
        logger.debug(f"{label} not found: id={entity_id}")
        raise NotFoundError(f'{label} not found', entity_id)
    return entity


def _require_text(message, *values):
    if not all(isinstance(value, str) and value.strip() for value in values):
        raise ValidationError(message)


# libraries

def get_library(library_id):
    return _get_or_404(Library, library_id, 'Library')


def list_libraries():
    return Library.query.order_by(Library.code)


def create_library(code, name, **contact):
    _require_text('Library code and name are required', code, name)
    if Library.query.filter(func.upper(Library.code) == code.strip().upper()).first():
        raise ConflictError('A library with this code already exists')
    with atomic('A library with this code already exists'):
        library = Library(code=code, name=name, **contact)
        db.session.add(library)
    logger.debug(f"Library created: id={library.id} code={library.code}")
    return library


def delete_library(library_id):
    """Delete a branch that holds no stock; refuse otherwise."""
    library = get_library(library_id)
    stock = db.session.scalar(
        select(func.count()).select_from(Inventory).where(Inventory.library_id == library_id)
    ) + db.session.scalar(
        select(func.count()).select_from(Copy).where(Copy.library_id == library_id)
    )
    if stock:
        logger.debug(f"Library delete blocked: id={library_id} has inventory or copies")
        raise ConflictError('Library still has inventory or copies', library_id)
    with atomic():
        db.session.execute(user_libraries.delete().where(user_libraries.c.library_id == library_id))
        db.session.delete(library)
    logger.debug(f"Library deleted: id={library_id}")


# titles

def get_title(title_id):
    return _get_or_404(Title, title_id, 'Title')


def search_titles(text=''):
    query = Title.query
    if text:
        pattern = f'%{text}%'
        query = query.filter(or_(
            Title.title.ilike(pattern),
            Title.isbn13.ilike(pattern),
            Title.isbn10.ilike(pattern),
        ))
    return query.order_by(Title.title)


def create_title(title, authors, isbn13=None, isbn10=None, **metadata):
    if not title:
        raise ValidationError('Title is required')
    if isinstance(authors, str):
        authors = [authors]
    authors = [a.strip() for a in (authors or []) if a and a.strip()]
    if not authors:
        raise ValidationError('At least one author is required')
    if isbn13 and Title.query.filter_by(isbn13=isbn13).first():
        raise ConflictError('A title with this ISBN-13 already exists')
    if isbn10 and Title.query.filter_by(isbn10=isbn10).first():
        raise ConflictError('A title with this ISBN-10 already exists')
    with atomic('A title with this ISBN already exists'):
        record = Title(title=title, authors=authors, isbn13=isbn13 or None, isbn10=isbn10 or None, **metadata)
        db.session.add(record)
    logger.debug(f"Title created: id={record.id} title={record.title}")
    return record


def delete_title(title_id):
    """Delete a title and everything stocked under it, unless a loan is still open."""
    get_title(title_id)
    open_loans = db.session.scalar(
        select(func.count()).select_from(BorrowRecord).where(
            BorrowRecord.title_id == title_id,
            BorrowRecord.status.in_(OPEN_RECORD_STATUSES),
        )
    )
    if open_loans:
        logger.debug(f"Title delete blocked: id={title_id} has {open_loans} open loans")
        raise ConflictError('Title has copies out on loan', title_id)
    with atomic():
        db.session.execute(delete(BorrowRequest).where(BorrowRequest.title_id == title_id))
        db.session.execute(delete(BorrowRecord).where(BorrowRecord.title_id == title_id))
        db.session.execute(delete(Copy).where(Copy.title_id == title_id))
        db.session.execute(delete(Inventory).where(Inventory.title_id == title_id))
        db.session.execute(delete(Title).where(Title.id == title_id))
    logger.debug(f"Title deleted with its stock: id={title_id}")


# users

def get_user(user_id):
    return _get_or_404(User, user_id, 'User')


def find_pending_users(role='student'):
    """Self-registered users waiting for approval, newest first."""
    return User.query.filter_by(role=role, status='pending').order_by(User.created_at.desc(), User.id.desc())


def register_user(name, email, password, role='guest', student_id=None):
    _require_text('Missing required fields', name, email, password)
    if role not in SELF_REGISTER_ROLES:
        raise ValidationError(f"Role must be one of {', '.join(SELF_REGISTER_ROLES)}")
    if User.query.filter(User.email.ilike(email)).first():
        raise ConflictError('Email already exists')
    return _create_user(name, email, password, role, student_id=student_id)


def create_staff_user(name, email, password, role='admin', library_ids=()):
    _require_text('Missing required fields', name, email, password)
    if role not in ROLES:
        raise ValidationError(f'Invalid role {role}')
    if User.query.filter(User.email.ilike(email)).first():
        raise ConflictError('Email already exists')
    return _create_user(name, email, password, role, library_ids=library_ids)


def _create_user(name, email, password, role, student_id=None, library_ids=()):
    hashed_password = bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt())
    # students wait for approval, everyone else starts active
    status = 'pending' if role == 'student' else 'active'
    with atomic('Email already exists'):
        user = User(
            name=name,
            email=email,
            password_hash=hashed_password.decode('utf-8'),
            role=role,
            status=status,
            student_id=student_id,
        )
        user.libraries = [get_library(library_id) for library_id in library_ids]
        db.session.add(user)
    logger.debug(f"User registered: {email} role={role} status={status}")
    return user


def authenticate(email, password):
    """Return the active user for these credentials, or None."""
    if not isinstance(email, str) or not isinstance(password, str):
        raise ValidationError('Email and password must be strings')
    user = User.query.filter(User.email.ilike(email)).first()
    if not user:
        logger.debug(f"No user found for email (case-insensitive): {email}")
        return None
    if not bcrypt.checkpw(password.encode('utf-8'), user.password_hash.encode('utf-8')):
        logger.debug(f"Password mismatch for user: {email}")
        return None
    if user.status != 'active':
        logger.debug(f"Login refused for {user.status} user: {email}")
        return None
    return user


def update_user_access(user_id, status=None, library_ids=None):
    """Approve, reject or suspend a user, and set an admin's libraries."""
    user = get_user(user_id)
    if status is not None and status not in USER_STATUSES:
        raise ValidationError(f'Invalid status {status}', user_id)
    libraries = None
    if library_ids is not None:
        if user.role != 'admin':
            raise ValidationError('Only admins are assigned to libraries', user_id)
        libraries = [get_library(library_id) for library_id in library_ids]
    with atomic():
        if status is not None:
            user.status = status
        if libraries is not None:
            user.libraries = libraries
    logger.debug(f"User access updated: id={user_id} status={user.status} libraries={user.library_ids}")
    return user
