from datetime import timedelta

import borrow_requests
import scheduler
from models import utcnow


def test_sweep_marks_overdue_loans(app, library, title, admin, student, add_copies):
    add_copies(library, title, 1)
    request = borrow_requests.create_request(student.id, library.id, title.id)
    decided = borrow_requests.decide_request(request.id, admin.id, 'approved', now=utcnow() - timedelta(days=15))

    assert scheduler.sweep_overdue_loans(app) == [decided.record_id]
    assert scheduler.sweep_overdue_loans(app) == []


def test_scheduler_is_off_in_tests(app):
    assert app.config['SCHEDULER_ENABLED'] is False
    assert not scheduler.scheduler.running
