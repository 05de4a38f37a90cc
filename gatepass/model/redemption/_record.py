from __future__ import annotations
import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

from ...helpers import to_iso

STATUS_USED = "USED"
STATUS_REVOKED = "REVOKED"


@dataclass
class RedemptionRecord:
    serial: str
    used_at: float
    used_by: str = ""
    gate: str = ""
    venue: str = ""
    ip: str = ""
    user_agent: str = ""
    status: str = STATUS_USED
    purchase_id: Optional[str] = None
    # snapshots taken at claim time; immutable afterwards
    attendee: Dict[str, Any] = field(default_factory=dict)
    payment: Dict[str, Any] = field(default_factory=dict)

    def usage(self) -> Dict[str, Any]:
        return {
            "usedAt": to_iso(self.used_at),
            "usedBy": self.used_by,
            "gate": self.gate,
            "venue": self.venue,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "serial": self.serial,
            "status": self.status,
            **self.usage(),
            "attendee": dict(self.attendee),
            "payment": dict(self.payment),
        }

    # redis stores the record as one JSON string
    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, s: str) -> "RedemptionRecord":
        return cls(**json.loads(s))
