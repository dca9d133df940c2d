# devstate/core/canon.py
import json
from typing import Any

try:
    import jcs
except ImportError:
    raise ImportError("Please install jcs: pip install jcs")

from devstate.core.errors import ValidationError


def canonical_json(obj: Any) -> bytes:
    """
    Produce deterministic UTF-8 bytes according to RFC 8785 (JSON Canonicalization Scheme).
    Used for state checksums and ledger HMAC input, so both are stable across processes.
    """
    try:
        return jcs.canonicalize(obj)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Value is not JSON-serializable: {e}") from e


def canonical_json_str(obj: Any) -> str:
    """Same as above, but returns string (mostly for debugging)."""
    return canonical_json(obj).decode("utf-8")


def normalize(obj: Any) -> Any:
    """
    Round-trip through canonical JSON so the value we hash is exactly the value
    that comes back out of storage (tuples become lists, 1.0 becomes 1, ...).
    """
    return json.loads(canonical_json(obj))
