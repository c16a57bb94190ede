from datetime import datetime, timezone

from sqlalchemy import event, text
from sqlalchemy.orm import validates

from database import db

ROLES = ('superadmin', 'admin', 'student', 'guest')
USER_STATUSES = ('pending', 'active', 'rejected', 'suspended')
COPY_STATUSES = ('available', 'borrowed', 'reserved', 'lost', 'maintenance')
COPY_CONDITIONS = ('new', 'good', 'used', 'worn', 'damaged')
REQUEST_STATUSES = ('pending', 'approved', 'rejected', 'cancelled')
RECORD_STATUSES = ('borrowed', 'returned', 'overdue', 'lost')
OPEN_RECORD_STATUSES = ('borrowed', 'overdue')


def utcnow():
    """Naive UTC timestamp; every stored datetime uses this clock."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value else None


def _check_choice(field, value, choices):
    if value not in choices:
        raise ValueError(f"Invalid {field} '{value}', expected one of {', '.join(choices)}")
    return value


user_libraries = db.Table(
    'user_libraries',
    db.Column('user_id', db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), primary_key=True),
    db.Column('library_id', db.Integer, db.ForeignKey('library.id', ondelete='CASCADE'), primary_key=True),
)


class Library(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(20), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    address = db.Column(db.String(200))
    city = db.Column(db.String(100))
    country = db.Column(db.String(100))
    email = db.Column(db.String(120))
    phone = db.Column(db.String(40))
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    @validates('code')
    def _upper_code(self, key, value):
        return value.strip().upper()

    def to_dict(self):
        return {
            'id': self.id,
            'code': self.code,
            'name': self.name,
            'address': self.address,
            'city': self.city,
            'country': self.country,
            'email': self.email,
            'phone': self.phone,
        }


class Title(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    isbn13 = db.Column(db.String(13), unique=True)
    isbn10 = db.Column(db.String(10), unique=True)
    title = db.Column(db.String(300), nullable=False)
    subtitle = db.Column(db.String(300))
    authors = db.Column(db.JSON, nullable=False, default=list)
    categories = db.Column(db.JSON, nullable=False, default=list)
    language = db.Column(db.String(10), default='en')
    publisher = db.Column(db.String(200))
    published_year = db.Column(db.Integer)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'isbn13': self.isbn13,
            'isbn10': self.isbn10,
            'title': self.title,
            'subtitle': self.subtitle,
            'authors': list(self.authors or []),
            'categories': list(self.categories or []),
            'language': self.language,
            'publisher': self.publisher,
            'published_year': self.published_year,
            'description': self.description,
        }


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default='guest')
    status = db.Column(db.String(20), nullable=False, default='active')
    student_id = db.Column(db.String(50))
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    libraries = db.relationship('Library', secondary=user_libraries, lazy='selectin')

    @validates('role')
    def _validate_role(self, key, value):
        return _check_choice(key, value, ROLES)

    @validates('status')
    def _validate_status(self, key, value):
        return _check_choice(key, value, USER_STATUSES)

    @property
    def library_ids(self):
        return sorted(library.id for library in self.libraries)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'role': self.role,
            'status': self.status,
            'student_id': self.student_id,
            'libraries': self.library_ids,
        }


class Inventory(db.Model):
    __table_args__ = (
        db.UniqueConstraint('library_id', 'title_id', name='uq_inventory_library_title'),
    )

    id = db.Column(db.Integer, primary_key=True)
    library_id = db.Column(db.Integer, db.ForeignKey('library.id'), nullable=False, index=True)
    title_id = db.Column(db.Integer, db.ForeignKey('title.id'), nullable=False, index=True)
    total_copies = db.Column(db.Integer, nullable=False, default=0)
    available_copies = db.Column(db.Integer, nullable=False, default=0, index=True)
    shelf_location = db.Column(db.String(100))
    notes = db.Column(db.String(500))
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    library = db.relationship('Library')
    title = db.relationship('Title')

    @property
    def is_available(self):
        return self.available_copies > 0

    def to_dict(self):
        return {
            'id': self.id,
            'library_id': self.library_id,
            'title_id': self.title_id,
            'total_copies': self.total_copies,
            'available_copies': self.available_copies,
            'shelf_location': self.shelf_location,
            'notes': self.notes,
            'is_available': self.is_available,
        }


@event.listens_for(Inventory, 'before_insert')
@event.listens_for(Inventory, 'before_update')
def _clamp_available_copies(mapper, connection, target):
    total = target.total_copies or 0
    available = target.available_copies or 0
    if available > total:
        target.available_copies = total
    elif available < 0:
        target.available_copies = 0


class Copy(db.Model):
    __table_args__ = (
        db.UniqueConstraint('library_id', 'barcode', name='uq_copy_library_barcode'),
        db.Index('ix_copy_library_status', 'library_id', 'status'),
    )

    id = db.Column(db.Integer, primary_key=True)
    inventory_id = db.Column(db.Integer, db.ForeignKey('inventory.id'), nullable=False, index=True)
    library_id = db.Column(db.Integer, db.ForeignKey('library.id'), nullable=False)
    title_id = db.Column(db.Integer, db.ForeignKey('title.id'), nullable=False, index=True)
    barcode = db.Column(db.String(50))
    status = db.Column(db.String(20), nullable=False, default='available')
    condition = db.Column(db.String(20), nullable=False, default='good')
    shelf_location = db.Column(db.String(100))
    acquired_at = db.Column(db.DateTime, default=utcnow)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @validates('status')
    def _validate_status(self, key, value):
        return _check_choice(key, value, COPY_STATUSES)

    @validates('condition')
    def _validate_condition(self, key, value):
        return _check_choice(key, value, COPY_CONDITIONS)

    @validates('barcode')
    def _upper_barcode(self, key, value):
        return value.strip().upper() if value else None

    def to_dict(self):
        return {
            'id': self.id,
            'inventory_id': self.inventory_id,
            'library_id': self.library_id,
            'title_id': self.title_id,
            'barcode': self.barcode,
            'status': self.status,
            'condition': self.condition,
            'shelf_location': self.shelf_location,
            'acquired_at': _iso(self.acquired_at),
        }


class BorrowRequest(db.Model):
    __table_args__ = (
        db.Index('ix_borrow_request_library_status', 'library_id', 'status', 'requested_at'),
        db.Index('ix_borrow_request_user_status', 'user_id', 'status'),
        db.Index('ix_borrow_request_title_status', 'title_id', 'status'),
        # at most one pending request per user, library and title
        db.Index(
            'uq_borrow_request_pending',
            'user_id', 'library_id', 'title_id',
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    library_id = db.Column(db.Integer, db.ForeignKey('library.id'), nullable=False)
    title_id = db.Column(db.Integer, db.ForeignKey('title.id'), nullable=False)
    inventory_id = db.Column(db.Integer, db.ForeignKey('inventory.id'))
    copy_id = db.Column(db.Integer, db.ForeignKey('copy.id'))
    record_id = db.Column(db.Integer, db.ForeignKey('borrow_record.id'))
    status = db.Column(db.String(20), nullable=False, default='pending')
    requested_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    decided_at = db.Column(db.DateTime)
    decided_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    notes = db.Column(db.String(500))

    @validates('status')
    def _validate_status(self, key, value):
        return _check_choice(key, value, REQUEST_STATUSES)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'library_id': self.library_id,
            'title_id': self.title_id,
            'inventory_id': self.inventory_id,
            'copy_id': self.copy_id,
            'record_id': self.record_id,
            'status': self.status,
            'requested_at': _iso(self.requested_at),
            'decided_at': _iso(self.decided_at),
            'decided_by': self.decided_by,
            'notes': self.notes,
        }


class BorrowRecord(db.Model):
    __table_args__ = (
        db.Index('ix_borrow_record_user_borrow_date', 'user_id', 'borrow_date'),
        db.Index('ix_borrow_record_library_status', 'library_id', 'status'),
        db.Index('ix_borrow_record_due_status', 'due_date', 'status'),
        # a copy can be on at most one open loan
        db.Index(
            'uq_borrow_record_open_copy',
            'copy_id',
            unique=True,
            sqlite_where=text("status IN ('borrowed', 'overdue')"),
            postgresql_where=text("status IN ('borrowed', 'overdue')"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    library_id = db.Column(db.Integer, db.ForeignKey('library.id'), nullable=False)
    title_id = db.Column(db.Integer, db.ForeignKey('title.id'), nullable=False)
    inventory_id = db.Column(db.Integer, db.ForeignKey('inventory.id'), nullable=False)
    copy_id = db.Column(db.Integer, db.ForeignKey('copy.id'))
    borrow_date = db.Column(db.DateTime, default=utcnow, nullable=False)
    due_date = db.Column(db.DateTime, nullable=False)
    return_date = db.Column(db.DateTime)
    status = db.Column(db.String(20), nullable=False, default='borrowed')
    approved_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    late_fee = db.Column(db.Float, nullable=False, default=0.0)
    damage_fee = db.Column(db.Float, nullable=False, default=0.0)
    currency = db.Column(db.String(3), nullable=False, default='USD')
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @validates('status')
    def _validate_status(self, key, value):
        return _check_choice(key, value, RECORD_STATUSES)

    @property
    def is_open(self):
        return self.status in OPEN_RECORD_STATUSES

    @property
    def total_fees(self):
        return (self.late_fee or 0.0) + (self.damage_fee or 0.0)

    def days_overdue(self, now=None):
        if not self.is_open:
            return 0
        now = now or utcnow()
        return max(0, (now - self.due_date).days)

    def loan_duration(self, now=None):
        end = self.return_date or now or utcnow()
        return (end - self.borrow_date).days

    def to_dict(self, now=None):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'library_id': self.library_id,
            'title_id': self.title_id,
            'inventory_id': self.inventory_id,
            'copy_id': self.copy_id,
            'borrow_date': _iso(self.borrow_date),
            'due_date': _iso(self.due_date),
            'return_date': _iso(self.return_date),
            'status': self.status,
            'approved_by': self.approved_by,
            'fees': {
                'late_fee': self.late_fee,
                'damage_fee': self.damage_fee,
                'currency': self.currency,
            },
            'total_fees': self.total_fees,
            'days_overdue': self.days_overdue(now),
        }
