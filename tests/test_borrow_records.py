from datetime import datetime, timedelta

import pytest

import borrow_records
import borrow_requests
import copies
import inventory
import notifications
from access import Caller
from database import db
from errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from models import BorrowRecord, Copy, utcnow


@pytest.fixture
def open_loan(library, title, admin, student, add_copies):
    """A loan approved 20 days ago, so its due date has passed."""
    add_copies(library, title, 2)
    request = borrow_requests.create_request(student.id, library.id, title.id)
    decided = borrow_requests.decide_request(request.id, admin.id, 'approved', now=utcnow() - timedelta(days=20))
    return db.session.get(BorrowRecord, decided.record_id)


def test_find_overdue_flips_status(open_loan, library):
    assert open_loan.status == 'borrowed'

    overdue = borrow_records.find_overdue().all()

    assert [r.id for r in overdue] == [open_loan.id]
    assert overdue[0].status == 'overdue'
    assert overdue[0].days_overdue() == 6
    assert borrow_records.find_overdue(library_ids=set()).all() == []


def test_every_read_derives_overdue(open_loan, student):
    assert borrow_records.get_record(open_loan.id).status == 'overdue'
    assert borrow_records.find_active(user_id=student.id)[0].status == 'overdue'


def test_loan_not_yet_due_stays_borrowed(library, title, admin, student, add_copies):
    add_copies(library, title, 1)
    request = borrow_requests.create_request(student.id, library.id, title.id)
    decided = borrow_requests.decide_request(request.id, admin.id, 'approved')

    assert borrow_records.find_overdue().all() == []
    assert borrow_records.get_record(decided.record_id).status == 'borrowed'


def test_mark_overdue_loans_reports_each_loan_once(open_loan):
    received = []

    def receiver(sender, **identifiers):
        received.append(identifiers['record_id'])

    with notifications.loan_overdue.connected_to(receiver):
        assert borrow_records.mark_overdue_loans() == [open_loan.id]
        assert borrow_records.mark_overdue_loans() == []

    assert received == [open_loan.id]


def test_return_overdue_loan(open_loan, library, title):
    borrow_records.find_overdue()
    inv = inventory.find_inventory(library.id, title.id)
    assert inv.available_copies == 1

    now = utcnow()
    returned = borrow_records.mark_returned(open_loan.id, fees={'late_fee': 3.5}, now=now)

    assert returned.status == 'returned'
    assert returned.return_date == now
    assert returned.late_fee == 3.5
    assert returned.total_fees == 3.5
    assert db.session.get(Copy, returned.copy_id).status == 'available'
    assert inventory.get_inventory(inv.id).available_copies == 2


def test_return_twice_conflicts(open_loan, library, title):
    borrow_records.mark_returned(open_loan.id)
    returned = borrow_records.get_record(open_loan.id)
    return_date = returned.return_date

    with pytest.raises(ConflictError):
        borrow_records.mark_returned(open_loan.id)

    again = borrow_records.get_record(open_loan.id)
    assert again.status == 'returned'
    assert again.return_date == return_date
    assert inventory.find_inventory(library.id, title.id).available_copies == 2


def test_mark_lost(open_loan, library, title):
    received = []

    def receiver(sender, **identifiers):
        received.append(identifiers)

    with notifications.loan_lost.connected_to(receiver):
        lost = borrow_records.mark_lost(open_loan.id, fees={'damage_fee': 25, 'currency': 'eur'})

    assert lost.status == 'lost'
    assert lost.return_date is None
    assert lost.damage_fee == 25.0
    assert lost.currency == 'EUR'
    assert copies.get_copy(lost.copy_id).status == 'lost'
    assert inventory.find_inventory(library.id, title.id).available_copies == 1
    assert received[0]['record_id'] == open_loan.id

    with pytest.raises(ConflictError):
        borrow_records.mark_returned(open_loan.id)
    with pytest.raises(ConflictError):
        borrow_records.mark_lost(open_loan.id)


def test_returned_signal(open_loan):
    received = []

    def receiver(sender, **identifiers):
        received.append(identifiers)

    with notifications.loan_returned.connected_to(receiver):
        borrow_records.mark_returned(open_loan.id)

    assert [r['record_id'] for r in received] == [open_loan.id]


@pytest.mark.parametrize(
    'fees',
    [
        {'late_fee': -1},
        {'damage_fee': 'ten'},
        {'late_fee': True},
        {'currency': 'EURO'},
        {'tip': 5},
        ['late_fee'],
        {'late_fee': float('nan')},
        {'damage_fee': float('inf')},
    ],
)
def test_invalid_fees_are_rejected(open_loan, fees):
    with pytest.raises(ValidationError):
        borrow_records.mark_returned(open_loan.id, fees=fees)
    assert db.session.get(BorrowRecord, open_loan.id).status == 'borrowed'


def test_admin_outside_library_cannot_close(open_loan, other_library):
    stranger = Caller(user_id=999, role='admin', libraries=frozenset([other_library.id]))
    with pytest.raises(ForbiddenError):
        borrow_records.mark_returned(open_loan.id, actor=stranger)


def test_unknown_record(app):
    with pytest.raises(NotFoundError):
        borrow_records.get_record(12345)


def test_history_and_listings(open_loan, library, title, admin, student, guest):
    borrow_records.mark_returned(open_loan.id)
    request = borrow_requests.create_request(student.id, library.id, title.id)
    second = borrow_requests.decide_request(request.id, admin.id, 'approved')
    request = borrow_requests.create_request(guest.id, library.id, title.id)
    third = borrow_requests.decide_request(request.id, admin.id, 'approved')

    history = borrow_records.find_by_user(student.id)
    assert [r.id for r in history] == [second.record_id, open_loan.id]
    assert [r.id for r in borrow_records.find_by_user(student.id, limit=1)] == [second.record_id]
    assert {r.id for r in borrow_records.find_active(library_id=library.id)} == {second.record_id, third.record_id}
    assert [r.id for r in borrow_records.list_records(status='returned')] == [open_loan.id]
    assert borrow_records.list_records(overdue=True).all() == []
    with pytest.raises(ValidationError):
        borrow_records.list_records(status='gone')


def test_record_dict(open_loan):
    now = open_loan.due_date + timedelta(days=2)
    data = open_loan.to_dict(now)
    assert data['fees'] == {'late_fee': 0.0, 'damage_fee': 0.0, 'currency': 'USD'}
    assert data['days_overdue'] == 2
    assert data['due_date'] == open_loan.due_date.isoformat()
    assert open_loan.loan_duration(datetime(2100, 1, 1)) > 0
