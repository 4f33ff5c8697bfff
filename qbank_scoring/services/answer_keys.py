"""
Decoding of stored answer keys and option manifests.

Answer keys are stored as serialized JSON, but legacy rows hold bare
scalars such as ``B`` that are not valid JSON. Values are decoded once,
at the boundary, into a tagged union so grading never has to guess.
"""
import json
from dataclasses import dataclass
from typing import Any, Dict, Union


@dataclass(frozen=True)
class StructuredValue:
    """A stored value that decoded as JSON."""
    value: Any


@dataclass(frozen=True)
class RawScalar:
    """A stored value that is not JSON; used as-is."""
    raw: Any

    @property
    def value(self) -> Any:
        return self.raw


DecodedValue = Union[StructuredValue, RawScalar]


def decode_stored(raw: Any) -> DecodedValue:
    if raw is None or raw == "":
        return RawScalar(None)
    if not isinstance(raw, (str, bytes, bytearray)):
        # JSON columns come back already decoded
        return StructuredValue(raw)
    try:
        return StructuredValue(json.loads(raw))
    except (ValueError, TypeError):
        return RawScalar(raw)


def decode_options(raw: Any) -> Dict[str, Any]:
    decoded = decode_stored(raw).value
    return decoded if isinstance(decoded, dict) else {}


def encode(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)
