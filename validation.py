"""
Write-time checks for incoming records.

The aggregators refuse bad data at read time; these helpers keep it out of
the store in the first place and convert request strings to model values.
"""
from datetime import datetime
from decimal import Decimal, InvalidOperation

from errors import InvalidEntry

EMPTY = ('', 'null', 'undefined', None)

BUDGET_TYPES = ('Income', 'Expense')
CROP_HEALTH = ('healthy', 'needs-attention', 'critical')
CROP_STAGES = ('seedling', 'growing', 'mature', 'harvested')
CROP_STATUSES = ('growing', 'ready', 'harvested', 'failed')
HARVEST_QUALITY = ('Excellent', 'Good', 'Fair', 'Poor')
POLL_STATUSES = ('active', 'closed')
TASK_STATUSES = ('pending', 'in-progress', 'completed')
TASK_PRIORITIES = ('low', 'medium', 'high')


def is_empty(value):
    return value in EMPTY


def require(data, *fields):
    """Required text fields: present, a string, and not blank."""
    missing = [f for f in fields if is_empty(data.get(f))]
    if missing:
        raise InvalidEntry(f"Missing required field(s): {', '.join(missing)}")
    not_text = [f for f in fields if not isinstance(data[f], str) or not data[f].strip()]
    if not_text:
        raise InvalidEntry(f"Field(s) must be non-empty text: {', '.join(not_text)}")


def parse_date(value, field, required=True):
    if is_empty(value):
        if required:
            raise InvalidEntry(f"{field} is required")
        return None
    try:
        return datetime.strptime(str(value)[:10], '%Y-%m-%d').date()
    except (ValueError, TypeError):
        raise InvalidEntry(f"{field} must be a YYYY-MM-DD date, got {value!r}")


def parse_datetime(value, field, required=True):
    if is_empty(value):
        if required:
            raise InvalidEntry(f"{field} is required")
        return None
    try:
        return datetime.fromisoformat(str(value).replace('Z', '+00:00')).replace(tzinfo=None)
    except (ValueError, TypeError):
        raise InvalidEntry(f"{field} must be an ISO datetime, got {value!r}")


def positive_amount(value, field='amount'):
    if isinstance(value, bool) or is_empty(value):
        raise InvalidEntry(f"{field} must be a positive number")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise InvalidEntry(f"{field} must be a positive number, got {value!r}")
    if not amount.is_finite() or amount <= 0:
        raise InvalidEntry(f"{field} must be a positive number, got {value!r}")
    return amount


def non_negative(value, field):
    if is_empty(value):
        return 0
    if isinstance(value, bool):
        raise InvalidEntry(f"{field} must be a non-negative number")
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        raise InvalidEntry(f"{field} must be a non-negative number, got {value!r}")
    if not number.is_finite() or number < 0:
        raise InvalidEntry(f"{field} must be a non-negative number, got {value!r}")
    return number


def one_of(value, allowed, field, default=None):
    if is_empty(value):
        if default is None:
            raise InvalidEntry(f"{field} is required")
        return default
    if value not in allowed:
        raise InvalidEntry(f"{field} must be one of {', '.join(allowed)}, got {value!r}")
    return value


def check_crop_dates(planting_date, expected_harvest_date):
    if expected_harvest_date < planting_date:
        raise InvalidEntry("expected_harvest_date cannot be before planting_date")


def check_harvest_date(harvest_date, crop):
    planted = parse_date(crop.get('planting_date'), 'planting_date')
    if harvest_date < planted:
        raise InvalidEntry(f"harvest_date cannot be before {crop.get('name')} was planted ({planted.isoformat()})")


def check_location(data):
    city = data.get('city')
    if not city or not isinstance(city, str):
        raise InvalidEntry("City name is required")

    latitude, longitude = data.get('latitude'), data.get('longitude')
    if isinstance(latitude, bool) or not isinstance(latitude, (int, float)) or not -90 <= latitude <= 90:
        raise InvalidEntry("Latitude must be between -90 and 90")
    if isinstance(longitude, bool) or not isinstance(longitude, (int, float)) or not -180 <= longitude <= 180:
        raise InvalidEntry("Longitude must be between -180 and 180")

    return {
        'city': city.strip(),
        'latitude': float(latitude),
        'longitude': float(longitude),
        'country': data.get('country') or 'PH',
    }
