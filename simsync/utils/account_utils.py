import math
import re
from typing import Any, Union

from pydantic import BaseModel

from simsync.domain.accounts import AccountRecord
from simsync.errors import ValidationError

MSISDN_PATTERN = re.compile(r"^\d{10}$")

RECORD_FIELDS = tuple(
    field.alias or name for name, field in AccountRecord.model_fields.items()
)


def _sanitize_value(value: Any) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {key: _sanitize_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize_value(item) for item in value]
    return value


def sanitize_record(record: Union[AccountRecord, dict]) -> dict:
    """
    Return the wire form of a record with every known field present.

    Fields that were never set come back as ``None`` and non-finite floats are
    nulled, since the remote mirror rejects both missing values and NaN.
    """
    if isinstance(record, BaseModel):
        data = record.model_dump(by_alias=True, mode="json")
    else:
        data = dict(record)
    for key in RECORD_FIELDS:
        data.setdefault(key, None)
    return {key: _sanitize_value(value) for key, value in data.items()}


def normalize_to_record_list(raw: Any) -> list[dict]:
    """
    Flatten a mirror read into an ordered list of record dicts.

    The mirror returns an object keyed by user_id, or an array (which may hold
    nulls for removed slots) when keys look like indexes.
    """
    if raw is None:
        return []
    if isinstance(raw, dict):
        items = raw.values()
    elif isinstance(raw, list):
        items = raw
    else:
        raise TypeError(f"Unexpected mirror payload type: {type(raw).__name__}")
    return [item for item in items if isinstance(item, dict)]


def validate_msisdn(msisdn: Any) -> str:
    value = str(msisdn or "").strip().replace(" ", "")
    if not MSISDN_PATTERN.match(value):
        raise ValidationError("Please enter a valid 10-digit phone number")
    return value


def validate_amount(amount: Any) -> int:
    if isinstance(amount, bool):
        raise ValidationError("Amount must be a whole number")
    try:
        value = int(str(amount).strip())
    except (TypeError, ValueError):
        raise ValidationError("Amount must be a whole number")
    if value <= 0:
        raise ValidationError("Amount must be greater than zero")
    return value


def validate_price(price: Any) -> float:
    if isinstance(price, bool):
        raise ValidationError("Sale price must be a number")
    try:
        value = float(str(price).strip())
    except (TypeError, ValueError):
        raise ValidationError("Sale price must be a number")
    if not math.isfinite(value) or value < 0:
        raise ValidationError("Sale price must be zero or more")
    return value
