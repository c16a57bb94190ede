"""Helpers for parsing request input."""

from datetime import datetime, timezone

from errors import ValidationError

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


def parse_id(value, field, required=True):
    """Coerce an identifier from JSON or a query string to a positive int."""
    if value is None or value == '':
        if required:
            raise ValidationError(f'Missing {field}')
        return None
    if isinstance(value, bool):
        raise ValidationError(f'Invalid {field}')
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'Invalid {field}')
    if parsed < 1:
        raise ValidationError(f'Invalid {field}')
    return parsed


def parse_int(value, field, default, minimum=0, maximum=None):
    if value is None or value == '':
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be an integer')
    if parsed < minimum or (maximum is not None and parsed > maximum):
        raise ValidationError(f'{field} is out of range')
    return parsed


def parse_bool(value):
    return str(value).lower() in ('1', 'true', 'yes')


def parse_datetime(value, field):
    if value is None or value == '':
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f'Invalid {field} date format')
    # stored datetimes are naive UTC
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
