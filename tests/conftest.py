import pytest

import catalog
import copies
from app import create_app
from database import db

TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite://',
    'SQLALCHEMY_ENGINE_OPTIONS': {},
    'SESSION_TYPE': None,
    'SESSION_COOKIE_SECURE': False,
    'SCHEDULER_ENABLED': False,
}


def make_app(**overrides):
    return create_app(dict(TEST_CONFIG, **overrides))


@pytest.fixture
def app():
    app = make_app()
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def library(app):
    return catalog.create_library('cen', 'Central Library', city='Springfield')


@pytest.fixture
def other_library(app):
    return catalog.create_library('NTH', 'North Branch')


@pytest.fixture
def title(app):
    return catalog.create_title('Clean Code', ['Robert C. Martin'], isbn13='9780132350884')


@pytest.fixture
def superadmin(app):
    return catalog.create_staff_user('Super Admin', 'root@example.com', 'root123', role='superadmin')


@pytest.fixture
def admin(app, library):
    return catalog.create_staff_user('Branch Admin', 'admin@example.com', 'admin123', library_ids=[library.id])


@pytest.fixture
def student(app):
    user = catalog.register_user('Student One', 'student@example.com', 'student123', role='student')
    return catalog.update_user_access(user.id, status='active')


@pytest.fixture
def guest(app):
    return catalog.register_user('Guest One', 'guest@example.com', 'guest123')


@pytest.fixture
def add_copies(app):
    def add(library, title, count, **fields):
        return [copies.create_copy(library.id, title.id, **fields) for _ in range(count)]
    return add
