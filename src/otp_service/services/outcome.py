"""Outcome value object returned by the coordinators."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

INTERNAL_ERROR_REASON = "Internal Server Error"


@dataclass(frozen=True)
class Outcome:
    """Status classification plus JSON-serializable payload.

    The status uses HTTP codes so the boundary layer can deliver it as-is.
    """

    status: int
    payload: dict[str, Any] = field(default_factory=dict)

    def serialize_payload(self) -> str:
        return json.dumps(self.payload, separators=(",", ":"))

    @classmethod
    def from_cache(cls, status: int, serialized_payload: str) -> Outcome:
        return cls(status=status, payload=json.loads(serialized_payload))

    @classmethod
    def internal_error(cls) -> Outcome:
        return cls(status=500, payload={"reason": INTERNAL_ERROR_REASON})
