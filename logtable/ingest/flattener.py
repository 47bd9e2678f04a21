"""
JSON flattener and column naming.

Turns one decoded JSON value into the ordered sequence of its scalar
leaves, each addressed by the path of keys and indexes leading to it,
and maps those paths to column names and back.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Tuple, Union

PathSegment = Union[str, int]
Path = Tuple[PathSegment, ...]

SEPARATOR = "."
ESCAPE = "\\"
ROOT_COLUMN = "$"  # Column for a record that is itself a scalar
# Leading characters reserved for engine metadata columns and the root column
_RESERVED_LEADS = ("#", "$")


class JsonType(str, Enum):
    """Enumeration of JSON data types."""
    NULL = "null"
    BOOLEAN = "boolean"
    INTEGER = "integer"
    FLOAT = "float"
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"


def detect_json_type(value: Any) -> JsonType:
    """
    Detect the JSON type of a decoded value.

    Args:
        value: The value to check

    Returns:
        JsonType enum value
    """
    if value is None:
        return JsonType.NULL
    elif isinstance(value, bool):
        return JsonType.BOOLEAN
    elif isinstance(value, int):
        return JsonType.INTEGER
    elif isinstance(value, float):
        return JsonType.FLOAT
    elif isinstance(value, str):
        return JsonType.STRING
    elif isinstance(value, list):
        return JsonType.ARRAY
    elif isinstance(value, dict):
        return JsonType.OBJECT
    else:
        return JsonType.STRING  # Fallback


@dataclass(frozen=True)
class FlatField:
    """One scalar leaf of a record and the path that reaches it."""
    path: Path
    value: Any
    json_type: JsonType

    @property
    def column_name(self) -> str:
        return encode_path(self.path)

    @property
    def is_null(self) -> bool:
        return self.json_type == JsonType.NULL


def flatten(value: Any, prefix: Path = ()) -> Iterator[FlatField]:
    """
    Flatten a decoded JSON value into its scalar leaves.

    Objects recurse per key and arrays per zero-based index, in document
    order. Empty objects and arrays produce nothing.

    Args:
        value: Decoded JSON value (any type)
        prefix: Path of the value inside the enclosing record

    Yields:
        FlatField for every scalar leaf
    """
    json_type = detect_json_type(value)

    if json_type == JsonType.OBJECT:
        for key, child in value.items():
            yield from flatten(child, prefix + (key,))
    elif json_type == JsonType.ARRAY:
        for index, child in enumerate(value):
            yield from flatten(child, prefix + (index,))
    else:
        yield FlatField(path=prefix, value=value, json_type=json_type)


def _escape_segment(segment: PathSegment) -> str:
    text = str(segment)
    return text.replace(ESCAPE, ESCAPE * 2).replace(SEPARATOR, ESCAPE + SEPARATOR)


def encode_path(path: Path) -> str:
    """
    Build the column name for a path.

    Segments are joined with ``.``; a literal ``.`` or ``\\`` inside a key
    is backslash-escaped, and a name that would start with ``#`` or ``$``
    gets a leading backslash. Distinct key paths never share a name.

    Args:
        path: Tuple of keys and indexes

    Returns:
        Column name
    """
    if not path:
        return ROOT_COLUMN

    name = SEPARATOR.join(_escape_segment(segment) for segment in path)
    if name.startswith(_RESERVED_LEADS):
        name = ESCAPE + name
    return name


def decode_column_name(name: str) -> Tuple[str, ...]:
    """
    Split a column name back into its path segments.

    Indexes come back as strings; the name alone cannot tell ``a.0`` the
    key from ``a.0`` the index.

    Args:
        name: Column name produced by encode_path

    Returns:
        Tuple of segment strings
    """
    if name == ROOT_COLUMN:
        return ()

    segments: List[str] = []
    current: List[str] = []
    chars = iter(name)
    for char in chars:
        if char == ESCAPE:
            current.append(next(chars, ""))
        elif char == SEPARATOR:
            segments.append("".join(current))
            current = []
        else:
            current.append(char)
    segments.append("".join(current))
    return tuple(segments)


def unflatten(fields: Iterable[FlatField]) -> Any:
    """
    Re-nest flattened fields into a JSON value.

    Integer segments rebuild lists and string segments rebuild objects.
    Empty containers of the original are not recoverable.

    Args:
        fields: FlatFields of one record

    Returns:
        The reconstructed value (None when there are no fields)
    """
    root: Dict[str, Any] = {}
    for field in fields:
        _assign(root, ("",) + field.path, field.value)
    return root.get("")


def _assign(container: Any, path: Path, value: Any) -> None:
    head, rest = path[0], path[1:]
    if not rest:
        _set_slot(container, head, value)
        return

    child = _get_slot(container, head)
    if child is None:
        child = [] if isinstance(rest[0], int) else {}
        _set_slot(container, head, child)
    _assign(child, rest, value)


def _get_slot(container: Any, key: PathSegment) -> Any:
    if isinstance(container, list):
        return container[key] if key < len(container) else None
    return container.get(key)


def _set_slot(container: Any, key: PathSegment, value: Any) -> None:
    if isinstance(container, list):
        while len(container) <= key:
            container.append(None)
        container[key] = value
    else:
        container[key] = value
