"""
Deterministic input hashes for cached generation results.

A hash covers exactly the fields that change a generated payload. Fields
outside the list (a record's own updated_at, for instance) never affect
it, so unrelated profile edits do not force recomputation.
"""

import hashlib
from typing import Any, Mapping, Sequence

# Fields that determine a birth-data derived payload, in hash order
BIRTH_INPUT_FIELDS = ("birth_date", "birth_time", "birth_lat", "birth_lon", "timezone")

# Keeps "a"+"bc" and "ab"+"c" from hashing alike
_SEPARATOR = "|"


def _render(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def compute_input_hash(fields: Sequence[Any]) -> str:
    """SHA-256 hex digest of the ordered field values (None counts as "")."""
    joined = _SEPARATOR.join(_render(v) for v in fields)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def compute_fields_hash(record: Mapping[str, Any], field_names: Sequence[str]) -> str:
    """Hash only `field_names` of `record`; absent fields count as ""."""
    return compute_input_hash([record.get(name) for name in field_names])


def compute_birth_input_hash(profile: Mapping[str, Any]) -> str:
    """Hash of the birth data that placements and chart readings depend on."""
    return compute_fields_hash(profile, BIRTH_INPUT_FIELDS)
