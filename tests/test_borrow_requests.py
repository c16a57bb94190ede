from datetime import datetime

import pytest

import borrow_requests
import catalog
import inventory
import notifications
from access import Caller
from database import db
from errors import ConflictError, ForbiddenError, InsufficientAvailabilityError, NotFoundError, ValidationError
from models import BorrowRecord, BorrowRequest, Copy


def test_approval_claims_copy_and_opens_loan(library, title, admin, student, add_copies):
    add_copies(library, title, 3)
    inv = inventory.find_inventory(library.id, title.id)
    assert (inv.total_copies, inv.available_copies) == (3, 3)

    request = borrow_requests.create_request(student.id, library.id, title.id, notes='for the exam')
    assert request.status == 'pending'

    now = datetime(2024, 3, 1, 10, 0)
    decided = borrow_requests.decide_request(request.id, admin.id, 'approved', now=now)

    assert decided.status == 'approved'
    assert decided.decided_by == admin.id
    assert decided.decided_at == now
    copy = db.session.get(Copy, decided.copy_id)
    assert copy.status == 'borrowed'
    record = db.session.get(BorrowRecord, decided.record_id)
    assert record.status == 'borrowed'
    assert record.copy_id == copy.id
    assert record.borrow_date == now
    assert record.due_date == datetime(2024, 3, 15, 10, 0)
    assert record.approved_by == admin.id
    assert inventory.get_inventory(inv.id).available_copies == 2


def test_create_request_with_no_available_copies(library, title, admin, student, guest, add_copies):
    add_copies(library, title, 1)
    first = borrow_requests.create_request(guest.id, library.id, title.id)
    borrow_requests.decide_request(first.id, admin.id, 'approved')
    assert inventory.find_inventory(library.id, title.id).available_copies == 0

    with pytest.raises(InsufficientAvailabilityError):
        borrow_requests.create_request(student.id, library.id, title.id)
    assert BorrowRequest.query.filter_by(user_id=student.id).count() == 0


def test_create_request_without_inventory(library, title, student):
    with pytest.raises(NotFoundError):
        borrow_requests.create_request(student.id, library.id, title.id)


def test_duplicate_pending_request_conflicts(library, other_library, title, student, add_copies):
    add_copies(library, title, 2)
    add_copies(other_library, title, 1)
    borrow_requests.create_request(student.id, library.id, title.id)

    with pytest.raises(ConflictError):
        borrow_requests.create_request(student.id, library.id, title.id)
    # another branch is a different request
    borrow_requests.create_request(student.id, other_library.id, title.id)


def test_new_request_allowed_once_previous_is_closed(library, title, student, add_copies):
    add_copies(library, title, 1)
    first = borrow_requests.create_request(student.id, library.id, title.id)
    borrow_requests.cancel_request(first.id, student.id)
    second = borrow_requests.create_request(student.id, library.id, title.id)
    assert second.id != first.id


def test_notes_length_is_validated(library, title, student, add_copies):
    add_copies(library, title, 1)
    with pytest.raises(ValidationError):
        borrow_requests.create_request(student.id, library.id, title.id, notes='x' * 501)


@pytest.mark.parametrize('notes', [12345, ['a'], {'text': 'x'}])
def test_notes_must_be_text(library, title, admin, student, add_copies, notes):
    add_copies(library, title, 1)
    with pytest.raises(ValidationError):
        borrow_requests.create_request(student.id, library.id, title.id, notes=notes)

    request = borrow_requests.create_request(student.id, library.id, title.id)
    with pytest.raises(ValidationError):
        borrow_requests.decide_request(request.id, admin.id, 'rejected', notes=notes)
    assert borrow_requests.get_request(request.id).status == 'pending'


def test_reject_leaves_copies_untouched(library, title, admin, student, add_copies):
    add_copies(library, title, 2)
    request = borrow_requests.create_request(student.id, library.id, title.id)
    rejected = borrow_requests.decide_request(request.id, admin.id, 'rejected', notes='damaged card')

    assert rejected.status == 'rejected'
    assert rejected.notes == 'damaged card'
    assert rejected.copy_id is None
    assert BorrowRecord.query.count() == 0
    assert inventory.find_inventory(library.id, title.id).available_copies == 2


@pytest.mark.parametrize('decision', ['approved', 'rejected'])
def test_decide_non_pending_request_conflicts(library, title, admin, student, add_copies, decision):
    add_copies(library, title, 2)
    request = borrow_requests.create_request(student.id, library.id, title.id)
    borrow_requests.decide_request(request.id, admin.id, 'rejected')

    with pytest.raises(ConflictError):
        borrow_requests.decide_request(request.id, admin.id, decision)
    assert BorrowRecord.query.count() == 0


def test_decide_with_unknown_status(library, title, admin, student, add_copies):
    add_copies(library, title, 1)
    request = borrow_requests.create_request(student.id, library.id, title.id)
    with pytest.raises(ValidationError):
        borrow_requests.decide_request(request.id, admin.id, 'cancelled')


def test_failed_approval_keeps_nothing(library, title, admin, student, guest, add_copies):
    add_copies(library, title, 1)
    first = borrow_requests.create_request(student.id, library.id, title.id)
    second = borrow_requests.create_request(guest.id, library.id, title.id)
    borrow_requests.decide_request(first.id, admin.id, 'approved')

    with pytest.raises(InsufficientAvailabilityError):
        borrow_requests.decide_request(second.id, admin.id, 'approved')

    assert borrow_requests.get_request(second.id).status == 'pending'
    assert borrow_requests.get_request(second.id).copy_id is None
    assert BorrowRecord.query.count() == 1
    assert Copy.query.filter_by(status='borrowed').count() == 1
    assert inventory.find_inventory(library.id, title.id).available_copies == 0


def test_admin_outside_library_is_forbidden(library, other_library, title, admin, student, add_copies):
    add_copies(other_library, title, 1)
    request = borrow_requests.create_request(student.id, other_library.id, title.id)
    caller = Caller.from_user(admin)

    with pytest.raises(ForbiddenError):
        borrow_requests.decide_request(request.id, caller, 'approved')
    assert borrow_requests.get_request(request.id).status == 'pending'


def test_cancel_request(library, title, student, guest, add_copies):
    add_copies(library, title, 1)
    request = borrow_requests.create_request(student.id, library.id, title.id)

    with pytest.raises(ForbiddenError):
        borrow_requests.cancel_request(request.id, guest.id)

    cancelled = borrow_requests.cancel_request(request.id, student.id)
    assert cancelled.status == 'cancelled'
    with pytest.raises(ConflictError):
        borrow_requests.cancel_request(request.id, student.id)


def test_request_decided_signal(library, title, admin, student, add_copies):
    add_copies(library, title, 1)
    request = borrow_requests.create_request(student.id, library.id, title.id)
    received = []

    def receiver(sender, **identifiers):
        received.append(identifiers)

    with notifications.request_decided.connected_to(receiver):
        decided = borrow_requests.decide_request(request.id, admin.id, 'approved')

    assert len(received) == 1
    assert received[0]['request_id'] == request.id
    assert received[0]['status'] == 'approved'
    assert received[0]['record_id'] == decided.record_id


def test_listings(library, other_library, title, admin, student, guest, add_copies):
    add_copies(library, title, 2)
    add_copies(other_library, title, 1)
    first = borrow_requests.create_request(student.id, library.id, title.id, now=datetime(2024, 1, 1))
    second = borrow_requests.create_request(guest.id, library.id, title.id, now=datetime(2024, 1, 2))
    third = borrow_requests.create_request(student.id, other_library.id, title.id, now=datetime(2024, 1, 3))
    borrow_requests.decide_request(second.id, admin.id, 'rejected')

    assert [r.id for r in borrow_requests.find_pending()] == [first.id, third.id]
    assert [r.id for r in borrow_requests.find_pending(library_id=library.id)] == [first.id]
    assert [r.id for r in borrow_requests.find_by_user(student.id)] == [third.id, first.id]
    assert [r.id for r in borrow_requests.find_by_user(guest.id, status='rejected')] == [second.id]
    assert borrow_requests.find_by_title(title.id, library_ids={library.id}).count() == 2
    assert [r.id for r in borrow_requests.list_requests(status='rejected')] == [second.id]
    with pytest.raises(ValidationError):
        borrow_requests.list_requests(status='unknown')


def test_decide_accepts_bare_user_id(library, title, student, add_copies):
    staff = catalog.create_staff_user('Desk', 'desk@example.com', 'desk123', role='superadmin')
    add_copies(library, title, 1)
    request = borrow_requests.create_request(student.id, library.id, title.id)
    decided = borrow_requests.decide_request(request.id, staff.id, 'approved')
    assert db.session.get(BorrowRecord, decided.record_id).approved_by == staff.id
