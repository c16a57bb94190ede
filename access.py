import functools
import logging

from flask import g, jsonify, session

from database import db
from errors import ForbiddenError
from models import User

logger = logging.getLogger(__name__)

STAFF_ROLES = ('superadmin', 'admin')
PATRON_ROLES = ('student', 'guest')


class Caller:
    """Who is calling, as far as the circulation core needs to know."""

    def __init__(self, user_id, role, libraries=frozenset()):
        self.user_id = user_id
        self.role = role
        self.libraries = frozenset(libraries)

    @classmethod
    def from_user(cls, user):
        return cls(user_id=user.id, role=user.role, libraries=user.library_ids)

    @property
    def is_staff(self):
        return self.role in STAFF_ROLES

    def can_manage(self, library_id):
        if self.role == 'superadmin':
            return True
        return self.role == 'admin' and library_id in self.libraries

    def require_library(self, library_id, entity_id=None):
        if not self.can_manage(library_id):
            logger.error(f"Access denied: user_id={self.user_id} outside library_id={library_id}")
            raise ForbiddenError('Access denied to this library', entity_id)

    def library_scope(self, library_id=None):
        """Libraries a listing may cover; None means unrestricted."""
        if self.role != 'admin':
            return None if library_id is None else frozenset([library_id])
        if library_id is None:
            return self.libraries
        return frozenset([library_id]) & self.libraries

    def user_scope(self, user_id=None):
        """Patrons only ever see their own requests and loans."""
        if self.role in PATRON_ROLES:
            return self.user_id
        return user_id


def current_caller():
    return g.get('caller')


# Authentication decorator
def login_required(*roles):
    def decorator(f):
        @functools.wraps(f)
        def wrapped(*args, **kwargs):
            if 'user_id' not in session:
                logger.error("Unauthorized access: No user session")
                return jsonify({'error': 'Unauthorized access'}), 401
            user = db.session.get(User, session['user_id'])
            if not user or user.status != 'active':
                logger.error("Unauthorized access: Invalid or inactive user")
                return jsonify({'error': 'Unauthorized access'}), 401
            if roles and user.role not in roles:
                logger.error(f"Access denied: Required role {roles}, got {user.role}")
                return jsonify({'error': 'Insufficient permissions'}), 403
            g.caller = Caller.from_user(user)
            return f(*args, **kwargs)
        return wrapped
    return decorator
