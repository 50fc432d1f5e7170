import re
from datetime import date, datetime

from email_validator import EmailNotValidError, validate_email

from .errors import ValidationError


def normalize_isbn(isbn):
    return re.sub(r"[-\s]", "", isbn or "")


def is_valid_isbn(isbn):
    """Check an ISBN-10 or ISBN-13 (hyphens and spaces ignored) by checksum."""
    clean = normalize_isbn(isbn).upper()

    if re.fullmatch(r"\d{9}[\dX]", clean):
        total = sum(int(d) * (10 - i) for i, d in enumerate(clean[:9]))
        check = (11 - total % 11) % 11
        last = 10 if clean[9] == "X" else int(clean[9])
        return check == last

    if re.fullmatch(r"\d{13}", clean):
        total = sum(int(d) * (1 if i % 2 == 0 else 3) for i, d in enumerate(clean[:12]))
        return (10 - total % 10) % 10 == int(clean[12])

    return False


def clean_email(email):
    """Return the trimmed, lower-cased address or raise ValidationError."""
    if not email or not isinstance(email, str):
        raise ValidationError("email is required")
    email = email.strip().lower()
    if "@" not in email:
        raise ValidationError("email must contain @ symbol")
    if len(email) > 255:
        raise ValidationError("email address is too long (maximum 255 characters)")
    try:
        return validate_email(email, check_deliverability=False).normalized
    except EmailNotValidError as e:
        raise ValidationError(f"email format is invalid: {e}")


def require_text(data, field, max_length=255):
    value = data.get(field)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required and cannot be empty")
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"{field} must be {max_length} characters or less")
    return value


def optional_text(data, field, max_length):
    value = data.get(field)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    if len(value) > max_length:
        raise ValidationError(f"{field} must be {max_length} characters or less")
    return value


def require_choice(value, choices, field):
    if value not in choices:
        raise ValidationError(
            f"invalid {field}. Must be one of: {', '.join(choices)}"
        )
    return value


def check_publication_year(year, today=None):
    if year is None:
        return None
    latest = (today or date.today()).year + 1
    if isinstance(year, bool) or not isinstance(year, int) or year < 1000 or year > latest:
        raise ValidationError(f"publication_year must be between 1000 and {latest}")
    return year


def check_max_books(value):
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 10:
        raise ValidationError("max_books must be an integer between 1 and 10")
    return value


def parse_date(value, field):
    """Accept a date, a datetime, an ISO ``YYYY-MM-DD`` string or a full ISO datetime string."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value)
        except ValueError:
            pass
        try:
            return datetime.fromisoformat(value).date()
        except ValueError:
            pass
    raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD)")


def parse_int(value, field):
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(f"{field} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer")
