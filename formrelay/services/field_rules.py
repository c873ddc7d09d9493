"""
Field Rule Tables
==================

Static per-field validation predicates and transformation functions for the
form shape accepted by formrelay.

Rules are keyed by explicit field name. Nothing here guesses which field a
pattern applies to: configuration that names a field missing from
``KNOWN_FIELDS`` is rejected when it is loaded (see ``require_known_fields``).

Every function is pure. ``validate`` returns ``None`` for a passing value and
a human-readable reason otherwise. Transformers are a named library that
endpoint configs pick from per field, and ``transform`` applies the one an
endpoint picked; a field it gives no transformer is delivered as submitted.
Transformers may raise, and callers wrap that as ``TransformationFailure``.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from datetime import UTC, date, datetime
from typing import Any

from formrelay.core.exceptions import ConfigurationError
from formrelay.core.types import DateFormat, Rule, Transformer

# ── Enumerations ───────────────────────────────────────────────────

EMPLOYMENT_STATUSES = ("Employed", "Self-employed", "Unemployed", "Retired", "Student")
INCOME_RANGES = ("$0-$25k", "$25k-$50k", "$50k-$75k", "$75k-$100k", "$100k+")
PRODUCT_CATEGORIES = ("Loans", "Insurance", "Investments", "Banking", "Credit Cards")
PRIORITY_LEVELS = ("Low", "Medium", "High", "Urgent")
CONTACT_METHODS = ("Email", "Phone", "Mail", "SMS")
ACCOUNT_TYPES = ("Personal", "Business", "Joint", "Trust")
DOCUMENT_TYPES = ("Application", "Verification", "Statement", "Contract")
APPROVAL_STATUSES = ("Pending", "Approved", "Rejected", "Under Review")
DEVICE_TYPES = ("Desktop", "Mobile", "Tablet", "Other")

MIN_AGE_YEARS = 18
MAX_NOTES_LENGTH = 500

_ID_RE = re.compile(r"^[A-Z0-9]{8,}$")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_RE = re.compile(r"^[\d\s\-()]+$")
_AGENT_RE = re.compile(r"^[A-Z]{3}\d{3}$")
_IPV4_RE = re.compile(r"^(?:[0-9]{1,3}\.){3}[0-9]{1,3}$")

# ── Date helpers ───────────────────────────────────────────────────


def parse_datetime(value: Any) -> datetime:
    """Parse an ISO-8601 date or timestamp. Naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.strip())
    else:
        raise ValueError(f"not a date: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def format_date(value: Any, fmt: DateFormat) -> str:
    """Render a date in the format an endpoint selected."""
    parsed = parse_datetime(value)
    if fmt is DateFormat.ISO:
        return parsed.date().isoformat()
    if fmt is DateFormat.UNIX:
        return str(int(parsed.timestamp()))
    if fmt is DateFormat.US:
        return f"{parsed.month}/{parsed.day}/{parsed.year}"
    if fmt is DateFormat.EU:
        return f"{parsed.day}/{parsed.month}/{parsed.year}"
    raise ValueError(f"unknown date format {fmt!r}")


# ── Predicate builders ─────────────────────────────────────────────


def _missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def present(message: str) -> Rule:
    return lambda value: message if _missing(value) else None


def matches(pattern: re.Pattern[str], message: str) -> Rule:
    return lambda value: None if isinstance(value, str) and pattern.match(value) else message


def one_of(choices: Iterable[str], message: str) -> Rule:
    allowed = frozenset(choices)
    return lambda value: None if value in allowed else message


def contains(token: str, message: str) -> Rule:
    return lambda value: None if isinstance(value, str) and token in value else message


def is_bool(message: str) -> Rule:
    return lambda value: None if isinstance(value, bool) else message


def max_length(limit: int, message: str) -> Rule:
    return lambda value: None if isinstance(value, str) and len(value) <= limit else message


def in_range(low: float, high: float, message: str) -> Rule:
    def check(value: Any) -> str | None:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return message
        return None if low <= value <= high else message

    return check


def parses_as_date(message: str) -> Rule:
    def check(value: Any) -> str | None:
        try:
            parse_datetime(value)
        except (TypeError, ValueError):
            return message
        return None

    return check


def minimum_age(years: int, message: str) -> Rule:
    def check(value: Any) -> str | None:
        try:
            born = parse_datetime(value)
        except (TypeError, ValueError):
            return message
        return None if date.today().year - born.year >= years else message

    return check


# ── Validators ─────────────────────────────────────────────────────

VALIDATORS: Mapping[str, tuple[Rule, ...]] = {
    "personalName": (
        present("Name is required"),
        contains(" ", "Full name must include first and last name"),
    ),
    "customerID": (
        present("Customer ID is required"),
        matches(_ID_RE, "Invalid customer ID format"),
    ),
    "emailAddress": (
        present("Email is required"),
        matches(_EMAIL_RE, "Invalid email format"),
    ),
    "phoneNumber": (
        present("Phone number is required"),
        matches(_PHONE_RE, "Invalid phone number format"),
    ),
    "dateOfBirth": (
        present("Date of birth is required"),
        parses_as_date("Invalid date format"),
        minimum_age(MIN_AGE_YEARS, f"Must be at least {MIN_AGE_YEARS} years old"),
    ),
    "currentAddress": (
        present("Current address is required"),
        contains(",", "Address must include city and state"),
    ),
    "mailingAddress": (
        present("Mailing address is required"),
        contains(",", "Address must include city and state"),
    ),
    "employmentStatus": (
        present("Employment status is required"),
        one_of(EMPLOYMENT_STATUSES, "Invalid employment status"),
    ),
    "incomeRange": (
        present("Income range is required"),
        one_of(INCOME_RANGES, "Invalid income range"),
    ),
    "creditScore": (
        present("Credit score is required"),
        in_range(300, 850, "Credit score must be between 300 and 850"),
    ),
    "productCategory": (
        present("Product category is required"),
        one_of(PRODUCT_CATEGORIES, "Invalid product category"),
    ),
    "requestDate": (
        present("Request date is required"),
        parses_as_date("Invalid date format"),
    ),
    "priorityLevel": (
        present("Priority level is required"),
        one_of(PRIORITY_LEVELS, "Invalid priority level"),
    ),
    "preferredContactMethod": (
        present("Preferred contact method is required"),
        one_of(CONTACT_METHODS, "Invalid contact method"),
    ),
    "accountType": (
        present("Account type is required"),
        one_of(ACCOUNT_TYPES, "Invalid account type"),
    ),
    "documentType": (
        present("Document type is required"),
        one_of(DOCUMENT_TYPES, "Invalid document type"),
    ),
    "documentID": (
        present("Document ID is required"),
        matches(_ID_RE, "Invalid document ID format"),
    ),
    "approvalStatus": (
        present("Approval status is required"),
        one_of(APPROVAL_STATUSES, "Invalid approval status"),
    ),
    "processingNotes": (
        present("Processing notes are required"),
        max_length(MAX_NOTES_LENGTH, f"Processing notes must be {MAX_NOTES_LENGTH} characters or less"),
    ),
    "consentGiven": (
        present("Consent status is required"),
        is_bool("Consent must be true or false"),
    ),
    "marketingOptIn": (
        present("Marketing opt-in status is required"),
        is_bool("Marketing opt-in must be true or false"),
    ),
    "lastUpdated": (
        present("Last updated timestamp is required"),
        parses_as_date("Invalid timestamp format"),
    ),
    "agentID": (
        present("Agent ID is required"),
        matches(_AGENT_RE, "Invalid agent ID format"),
    ),
    "deviceType": (
        present("Device type is required"),
        one_of(DEVICE_TYPES, "Invalid device type"),
    ),
    "ipAddress": (
        present("IP address is required"),
        matches(_IPV4_RE, "Invalid IP address format"),
    ),
}

KNOWN_FIELDS: frozenset[str] = frozenset(VALIDATORS)

DATE_FIELDS: frozenset[str] = frozenset({"dateOfBirth", "requestDate", "lastUpdated"})


def is_known_field(name: str) -> bool:
    return name in KNOWN_FIELDS


def is_missing(value: Any) -> bool:
    return _missing(value)


def validate(field_name: str, value: Any) -> str | None:
    """Run the field's predicates in order; return the first failure reason."""
    for rule in VALIDATORS.get(field_name, ()):
        reason = rule(value)
        if reason is not None:
            return reason
    return None


def require_known_fields(names: Iterable[str], where: str) -> None:
    """Raise ``ConfigurationError`` if any name is not a known form field."""
    unknown = sorted(set(names) - KNOWN_FIELDS)
    if unknown:
        raise ConfigurationError(f"{where} references unknown field(s): {', '.join(unknown)}")


# ── Transformers ───────────────────────────────────────────────────


def split_name(value: str) -> dict[str, str]:
    first, _, rest = value.strip().partition(" ")
    return {"firstName": first, "lastName": rest.strip()}


def parse_address(value: str) -> dict[str, str]:
    """``"123 Main St, City, ST 12345"`` → street/city/state/zip."""
    parts = [p.strip() for p in value.split(",")]
    if len(parts) < 3:
        raise ValueError(f"address needs street, city and 'STATE ZIP': {value!r}")
    state, _, zip_code = parts[2].partition(" ")
    return {"street": parts[0], "city": parts[1], "state": state, "zip": zip_code.strip()}


def iso_date(value: Any) -> str:
    return format_date(value, DateFormat.ISO)


def us_date(value: Any) -> str:
    return format_date(value, DateFormat.US)


def iso_timestamp(value: Any) -> str:
    parsed = parse_datetime(value).astimezone(UTC)
    return parsed.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def unix_timestamp(value: Any) -> int:
    return int(parse_datetime(value).timestamp())


def lookup(table: Mapping[str, Any]) -> Transformer:
    """Map a value through a code table; unknown values are an error."""
    frozen = dict(table)

    def transform(value: Any) -> Any:
        try:
            return frozen[value]
        except KeyError:
            raise ValueError(f"no code for {value!r}") from None

    return transform


def truncate(limit: int) -> Transformer:
    return lambda value: value[:limit]


def credit_band(value: float) -> str:
    if value >= 740:
        return "Excellent"
    if value >= 670:
        return "Good"
    if value >= 580:
        return "Fair"
    return "Poor"


def yes_no(value: bool) -> str:
    return "Y" if value else "N"


def bool_string(value: bool) -> str:
    return "true" if value else "false"


def transform(
    field_name: str,
    value: Any,
    transformers: Mapping[str, Transformer],
    date_format: DateFormat | None = None,
) -> Any:
    """Apply the transformer ``transformers`` holds for ``field_name``.

    Without one, a date field is rendered in ``date_format`` when that is
    set; anything else passes through unchanged.
    """
    transformer = transformers.get(field_name)
    if transformer is not None:
        return transformer(value)
    if date_format is not None and field_name in DATE_FIELDS:
        return format_date(value, date_format)
    return value


EMPLOYMENT_CODES = {
    "Employed": "FT",
    "Self-employed": "SE",
    "Unemployed": "UE",
    "Retired": "RT",
    "Student": "ST",
}
INCOME_FLOORS = {
    "$0-$25k": 0,
    "$25k-$50k": 25000,
    "$50k-$75k": 50000,
    "$75k-$100k": 75000,
    "$100k+": 100000,
}
INCOME_BANDS = {
    "$0-$25k": "0-25000",
    "$25k-$50k": "25000-50000",
    "$50k-$75k": "50000-75000",
    "$75k-$100k": "75000-100000",
    "$100k+": "100000+",
}
PRODUCT_CODES = {
    "Loans": "LN",
    "Insurance": "IN",
    "Investments": "IV",
    "Banking": "BK",
    "Credit Cards": "CC",
}
PRIORITY_CODES = {"Low": 1, "Medium": 2, "High": 3, "Urgent": 4}
CONTACT_CODES = {"Email": "E", "Phone": "P", "Mail": "M", "SMS": "S"}
ACCOUNT_CODES = {"Personal": 1, "Business": 2, "Joint": 3, "Trust": 4}
DOCUMENT_CODES = {"Application": "A", "Verification": "V", "Statement": "S", "Contract": "C"}
APPROVAL_CODES = {"Pending": 0, "Approved": 1, "Rejected": 2, "Under Review": 3}
DEVICE_CODES = {"Desktop": "D", "Mobile": "M", "Tablet": "T", "Other": "O"}
