"""Error taxonomy for webhook reconciliation.

Gates return a ``Rejection`` instead of raising; the engine maps each
``ErrorKind`` to a structured result and an HTTP status.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    TRANSPORT = "transport"
    AUTHENTICITY = "authenticity"
    DUPLICATE = "duplicate"
    VALIDATION = "validation"
    INTEGRITY_ANOMALY = "integrity_anomaly"
    INFRASTRUCTURE = "infrastructure"


# Kinds answered with HTTP 400; nothing is persisted for them.
TRANSPORT_LEVEL_KINDS = frozenset({ErrorKind.TRANSPORT, ErrorKind.AUTHENTICITY})


@dataclass
class Rejection:
    kind: ErrorKind
    message: str
    error: Optional[str] = None
    detail: dict[str, Any] = field(default_factory=dict)

    @property
    def is_transport_level(self) -> bool:
        return self.kind in TRANSPORT_LEVEL_KINDS
