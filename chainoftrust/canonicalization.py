"""
Chain of Trust Document Serialization

Renders an attestation as stable, human-diffable text. Identical inputs
always produce identical bytes, which is what the signature covers.

Rules:
- Two-space indented JSON, UTF-8, no BOM
- Key order as given by the caller (the attestation fixes its schema order)
- Arrays preserve order
- NaN and Infinity rejected
- Exactly one trailing line break
"""

import json
import math
from typing import Any, Dict, List, Union


class SerializationError(ValueError):
    """Raised when an object cannot be rendered as a document."""
    pass


def serialize_document(obj: Any) -> bytes:
    """
    Serialize a JSON-compatible object to document bytes.

    Returns:
        UTF-8 encoded, indented JSON terminated by a single newline
    """
    checked = _check_value(obj, "$")
    text = json.dumps(checked, indent=2, ensure_ascii=False, allow_nan=False)
    return (text + "\n").encode('utf-8')


def _check_value(value: Any, path: str) -> Any:
    """Recursively validate a value, returning plain dict/list copies."""
    if value is None or isinstance(value, (bool, str, int)):
        return value
    elif isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise SerializationError(f"Invalid number at {path}: NaN or Inf not allowed")
        return value
    elif isinstance(value, dict):
        return _check_object(value, path)
    elif isinstance(value, (list, tuple)):
        return _check_array(value, path)
    else:
        raise SerializationError(f"Cannot serialize type at {path}: {type(value).__name__}")


def _check_object(obj: Dict[str, Any], path: str) -> Dict[str, Any]:
    """Validate an object; keys must be strings and insertion order is kept."""
    result = {}
    for key, item in obj.items():
        if not isinstance(key, str):
            raise SerializationError(f"Non-string key at {path}: {key!r}")
        result[key] = _check_value(item, f"{path}.{key}")
    return result


def _check_array(arr: Union[List, tuple], path: str) -> List:
    """Validate an array, preserving order."""
    return [_check_value(item, f"{path}[{i}]") for i, item in enumerate(arr)]
