import pytest

from errors import (
    ConflictError,
    ForbiddenError,
    InsufficientAvailabilityError,
    LibraryError,
    NotFoundError,
    ValidationError,
)


def test_notfounderror():
    with pytest.raises(NotFoundError) as e:
        raise NotFoundError("Copy not found", 42)
    assert str(e.value) == "Copy not found"
    assert e.value.entity_id == 42
    assert e.value.status_code == 404
    assert e.value.to_dict() == {"error": "Copy not found", "kind": "not_found", "entityId": 42}


def test_insufficient_availability_is_not_a_conflict():
    error = InsufficientAvailabilityError("No copies available")
    assert isinstance(error, LibraryError)
    assert not isinstance(error, ConflictError)
    assert error.kind == "insufficient_availability"
    assert error.status_code == 409


@pytest.mark.parametrize(
    "error_class, kind, status_code",
    [
        (ConflictError, "conflict", 409),
        (ForbiddenError, "forbidden", 403),
        (ValidationError, "validation", 400),
    ],
)
def test_error_kinds(error_class, kind, status_code):
    error = error_class("message")
    assert error.kind == kind
    assert error.status_code == status_code
    assert error.to_dict()["entityId"] is None
