import pytest

from access import Caller
from errors import ForbiddenError


def test_superadmin_manages_everything():
    caller = Caller(user_id=1, role='superadmin')
    assert caller.can_manage(7)
    assert caller.library_scope() is None
    assert caller.library_scope(7) == frozenset([7])


def test_admin_is_limited_to_assigned_libraries():
    caller = Caller(user_id=2, role='admin', libraries=frozenset([1, 2]))
    assert caller.can_manage(1)
    assert not caller.can_manage(3)
    assert caller.library_scope() == frozenset([1, 2])
    assert caller.library_scope(2) == frozenset([2])
    assert caller.library_scope(3) == frozenset()
    with pytest.raises(ForbiddenError) as e:
        caller.require_library(3, entity_id=10)
    assert e.value.entity_id == 10


@pytest.mark.parametrize('role', ['student', 'guest'])
def test_patrons_only_see_themselves(role):
    caller = Caller(user_id=5, role=role)
    assert not caller.is_staff
    assert not caller.can_manage(1)
    assert caller.user_scope(9) == 5
    assert caller.user_scope() == 5


def test_staff_may_filter_by_user():
    caller = Caller(user_id=1, role='superadmin')
    assert caller.is_staff
    assert caller.user_scope(9) == 9
    assert caller.user_scope() is None


def test_from_user(admin, library):
    caller = Caller.from_user(admin)
    assert caller.role == 'admin'
    assert caller.libraries == frozenset([library.id])


def test_caller_libraries_are_a_frozenset():
    caller = Caller(user_id=3, role='admin', libraries=[2, 1, 2])
    assert caller.libraries == frozenset([1, 2])
    assert Caller(user_id=4, role='guest').libraries == frozenset()
