"""
Document conversion between engine values, MongoDB and JSON responses.

- to_bson(): Decimal -> Decimal128 (precision kept), date -> datetime, enums -> value
- serialize_doc(): ObjectId -> str, Decimal128 -> float, datetime -> ISO string,
  snake_case keys -> camelCase, _id -> id

Money is rounded where it is computed. Quantity, rate and tax_percent are
stored exactly as entered so a re-derived amount matches the staged one.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
from bson import ObjectId, Decimal128
from bson.errors import InvalidId
from pydantic.alias_generators import to_camel

from core.billing_errors import EntityNotFoundError
from core.financial_precision import round_financial


def to_bson(value: Any) -> Any:
    """Convert engine values into types the MongoDB driver can encode."""
    if isinstance(value, dict):
        return {k: to_bson(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_bson(v) for v in value]
    if isinstance(value, bool):
        return value
    if isinstance(value, Decimal):
        return Decimal128(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return value


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Serialize MongoDB document for JSON response (handles Decimal128, ObjectId, datetime)"""
    if doc is None:
        return None
    result = {}
    for key, value in doc.items():
        out_key = "id" if key == "_id" else to_camel(key)
        result[out_key] = _serialize_value(value)
    return result


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, Decimal128):
        return float(value.to_decimal())
    if isinstance(value, Decimal):
        return float(round_financial(value))
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(item) for item in value]
    return value


def parse_object_id(value: str, entity_type: str) -> ObjectId:
    """ObjectId from a path parameter; malformed ids are reported as not found."""
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise EntityNotFoundError(entity_type, str(value))
