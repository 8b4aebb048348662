"""Key/Value Extraction - Turns caller records into ordered string pairs.

Query strings, headers, cookies and form fields are all configured from
"records": mappings, sequences of pairs, dataclasses, pydantic models, named
tuples, slotted classes or plain objects. The extractor flattens any of these
into (name, value) string pairs in a stable order.

Declared shapes (models, dataclasses, named tuples, slotted classes) have
their field lists memoized per type in a ShapeCache, so repeated calls with
instances of the same type skip the field discovery.

See DESIGN.md "Key/Value Extraction" for the supported shapes.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterator, Mapping
from enum import Enum
from threading import Lock
from typing import Any, Callable

from pydantic import BaseModel

from fluent_request.errors import InvalidArgumentError

Pair = tuple[str, str]
KeyTransform = Callable[[str], str]

# Values of these types are not records and cannot be flattened.
_SCALAR_TYPES = (str, bytes, bytearray, int, float, bool)


def to_str(value: Any) -> str:
    """Convert a field value to its canonical, locale-invariant string form.

    None becomes "", booleans become "true"/"false", enums use their value,
    bytes are decoded as UTF-8. Everything else goes through str(), which
    renders numbers in base-10 ASCII regardless of locale.
    """
    if value is None:
        return ""
    if isinstance(value, Enum):
        return to_str(value.value)
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    return str(value)


def _slot_names(record_type: type) -> tuple[str, ...] | None:
    """Collect public slot names across the MRO, base classes first.

    Returns None if any class in the hierarchy lacks __slots__, since its
    instances then carry a __dict__ whose contents vary per instance.
    """
    names: list[str] = []
    for klass in reversed(record_type.__mro__):
        if klass is object:
            continue
        if "__slots__" not in klass.__dict__:
            return None
        slots = klass.__dict__["__slots__"]
        if isinstance(slots, str):
            slots = (slots,)
        for slot in slots:
            if slot.startswith("_") or slot in names:
                continue
            names.append(slot)
    return tuple(names) if names else None


def declared_fields(record_type: type) -> tuple[str, ...] | None:
    """Return the declared field names of a record type, or None if it has none.

    Only types whose fields are fixed at class definition time have declared
    fields. Plain classes and SimpleNamespace store fields per instance.
    """
    if issubclass(record_type, BaseModel):
        return tuple(record_type.model_fields)
    if dataclasses.is_dataclass(record_type):
        return tuple(f.name for f in dataclasses.fields(record_type))
    if issubclass(record_type, tuple) and hasattr(record_type, "_fields"):
        return tuple(record_type._fields)
    return _slot_names(record_type)


class ShapeCache:
    """Append-only map from record type to its declared field names.

    Population is get-or-insert under a lock, so concurrent callers with the
    same type never create duplicate entries. Lookups of already-cached types
    do not take the lock.
    """

    def __init__(self) -> None:
        self._fields: dict[type, tuple[str, ...]] = {}
        self._lock = Lock()

    @property
    def size(self) -> int:
        """Number of cached record types."""
        return len(self._fields)

    def __contains__(self, record_type: object) -> bool:
        return record_type in self._fields

    def get_fields(self, record_type: type) -> tuple[str, ...] | None:
        """Return cached field names for record_type, discovering them on first use.

        Types without declared fields return None and are not cached.
        """
        fields = self._fields.get(record_type)
        if fields is not None:
            return fields

        with self._lock:
            fields = self._fields.get(record_type)
            if fields is None:
                fields = declared_fields(record_type)
                if fields is None:
                    return None
                self._fields[record_type] = fields
        return fields

    def clear(self) -> None:
        with self._lock:
            self._fields.clear()


class KeyValueExtractor:
    """Flattens records into ordered (name, value) string pairs.

    Usage:
        extractor = KeyValueExtractor()
        extractor.extract({"page": 2, "q": "shoes"})
        # (("page", "2"), ("q", "shoes"))
    """

    def __init__(self, cache: ShapeCache | None = None) -> None:
        self._cache = cache if cache is not None else ShapeCache()

    @property
    def cache(self) -> ShapeCache:
        return self._cache

    def iter_pairs(
        self,
        record: Any,
        key_transform: KeyTransform | None = None,
    ) -> Iterator[Pair]:
        """Lazily yield the record's (name, value) pairs in a stable order.

        Args:
            record: The record to flatten.
            key_transform: Optional function applied to every name.

        Returns:
            Iterator of string pairs.

        Raises:
            InvalidArgumentError: If record is None or a scalar value. A
                sequence element that is not a 2-item pair raises during
                iteration.
        """
        if record is None:
            raise InvalidArgumentError("record must not be None")
        if isinstance(record, _SCALAR_TYPES):
            raise InvalidArgumentError(
                f"Cannot extract key/value pairs from {type(record).__name__} value"
            )
        return self._generate(record, key_transform)

    def extract(
        self,
        record: Any,
        key_transform: KeyTransform | None = None,
    ) -> tuple[Pair, ...]:
        """Eagerly extract all pairs of a record into a tuple."""
        return tuple(self.iter_pairs(record, key_transform))

    def _generate(
        self,
        record: Any,
        key_transform: KeyTransform | None,
    ) -> Iterator[Pair]:
        for name, value in self._raw_items(record):
            key = key_transform(name) if key_transform is not None else name
            yield key, to_str(value)

    def _raw_items(self, record: Any) -> Iterator[tuple[str, Any]]:
        if isinstance(record, Mapping):
            for key, value in record.items():
                yield to_str(key), value
            return

        fields = self._cache.get_fields(type(record))
        if fields is not None:
            for name in fields:
                yield name, getattr(record, name)
            return

        if isinstance(record, (list, tuple)) or (
            not hasattr(record, "__dict__") and hasattr(record, "__iter__")
        ):
            yield from _iter_pair_items(record)
            return

        if hasattr(record, "__dict__"):
            for name, value in vars(record).items():
                if not name.startswith("_"):
                    yield name, value
            return

        raise InvalidArgumentError(
            f"Cannot extract key/value pairs from {type(record).__name__} value"
        )


def _iter_pair_items(items: Any) -> Iterator[tuple[str, Any]]:
    for item in items:
        if not isinstance(item, (tuple, list)) or len(item) != 2:
            raise InvalidArgumentError(
                f"Expected (name, value) pairs, got {item!r}"
            )
        name, value = item
        yield to_str(name), value


# Process-wide extractor shared by every Request builder.
default_extractor = KeyValueExtractor()


def extract_pairs(
    record: Any,
    key_transform: KeyTransform | None = None,
) -> tuple[Pair, ...]:
    """Extract pairs using the process-wide extractor and its shape cache."""
    return default_extractor.extract(record, key_transform)
