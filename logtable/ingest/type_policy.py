"""
Type coercion policy.

Decides the storage type of a new column from the first non-null value
seen for its path, and how later values of a different JSON type are
stored in that column.

Known data-quality caveat: SQLite keeps the declared type of a column
fixed, so a column may hold text values next to its declared type once a
record presents a conflicting value. Prior rows are never rewritten.
Column affinity still applies to such text: numeric-looking text in an
INTEGER or FLOAT column is stored as a number, and integers beyond 64
bits in those columns lose precision.
"""

import json
from enum import Enum
from typing import Any, Dict

from sqlalchemy import BigInteger, Boolean, Float, Integer, Numeric, String, Text
from sqlalchemy.types import TypeEngine

from logtable.ingest.flattener import JsonType

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

# JSON types that can declare a column
COLUMN_JSON_TYPES = (
    JsonType.INTEGER,
    JsonType.FLOAT,
    JsonType.STRING,
    JsonType.BOOLEAN,
)


class Reconciliation(str, Enum):
    """How a value is stored relative to its column's declared type."""
    ACCEPT = "accept"  # Store as is
    WIDEN = "widen"  # integer column becomes float-capable
    STRINGIFY = "stringify"  # Store the text form for this row only


def sql_type_for(json_type: JsonType) -> TypeEngine:
    """
    Map a JSON type to the SQL column type used in DDL.

    Args:
        json_type: Type of the first non-null value for the path

    Returns:
        SQLAlchemy type instance
    """
    type_mapping: Dict[JsonType, TypeEngine] = {
        JsonType.INTEGER: BigInteger(),
        JsonType.FLOAT: Float(),
        JsonType.STRING: Text(),
        JsonType.BOOLEAN: Boolean(create_constraint=False),
    }
    return type_mapping.get(json_type, Text())


def json_type_for(sql_type: TypeEngine) -> JsonType:
    """
    Map a reflected SQL column type back to the JSON type it was created for.

    Args:
        sql_type: Type reported by table reflection

    Returns:
        JsonType of the column (STRING for anything unrecognised)
    """
    # Boolean before Integer: some dialects reflect BOOLEAN as an integer type
    if isinstance(sql_type, Boolean):
        return JsonType.BOOLEAN
    if isinstance(sql_type, Integer):
        return JsonType.INTEGER
    if isinstance(sql_type, (Float, Numeric)):
        return JsonType.FLOAT
    if isinstance(sql_type, String):
        return JsonType.STRING
    return JsonType.STRING


def reconcile(declared: JsonType, observed: JsonType) -> Reconciliation:
    """
    Decide how a value of `observed` type goes into a `declared` column.

    Args:
        declared: Declared type of the existing column
        observed: Type of the incoming value (never NULL)

    Returns:
        Reconciliation decision
    """
    if declared == observed:
        return Reconciliation.ACCEPT
    if declared == JsonType.INTEGER and observed == JsonType.FLOAT:
        return Reconciliation.WIDEN
    if declared == JsonType.FLOAT and observed == JsonType.INTEGER:
        return Reconciliation.ACCEPT
    return Reconciliation.STRINGIFY


def to_text(value: Any) -> Any:
    """
    Render a scalar in its most permissive form.

    Booleans and numbers use their JSON spelling; strings and None are
    returned unchanged.
    """
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value)


def to_storage(value: Any, json_type: JsonType) -> Any:
    """
    Convert a scalar to the value bound in the INSERT.

    Booleans are stored as 0/1; integers outside the 64-bit range SQLite
    can hold are stored as text.

    Args:
        value: Scalar from a FlatField
        json_type: Its detected JSON type

    Returns:
        Value suitable for the SQLite driver
    """
    if json_type == JsonType.BOOLEAN:
        return 1 if value else 0
    if json_type == JsonType.INTEGER and not INT64_MIN <= value <= INT64_MAX:
        return to_text(value)
    return value
