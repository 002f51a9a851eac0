"""Request-level data model shared by every component of the core.

An adapter describes each call site with an ``OperationDescriptor`` and hands
the pipeline a payload; the pipeline builds a ``Request`` per physical attempt
and the transport answers with a ``Response``.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SimulationMode(str, Enum):
    """Record/replay behaviour of the simulation layer."""

    DISABLED = "disabled"        # Straight to the network
    RECORD = "record"            # Execute, then persist keyed by fingerprint
    REPLAY = "replay"            # Never touch the network
    PASSTHROUGH = "passthrough"  # Record and execute; never serve stored records


@dataclass(frozen=True)
class OperationDescriptor:
    """Immutable description of one call site.

    Attributes:
        name: Logical operation name (``"issue.get"``, ``"vectors.upsert"``)
        target: Remote target the operation addresses (path, collection, ...)
        idempotent: Whether repeating the call is safe after an ambiguous failure
    """

    name: str
    target: str = ""
    idempotent: bool = True


@dataclass
class Request:
    """One physical attempt's request as seen by the transport."""

    descriptor: OperationDescriptor
    payload: Any = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def operation(self) -> str:
        return self.descriptor.name


@dataclass(frozen=True)
class Response:
    """Transport response. ``body`` must be JSON-serializable."""

    status: int = 200
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def to_dict(self) -> dict[str, Any]:
        """Detached copy; later changes to ``body`` do not leak into it."""
        return {"status": self.status, "body": copy.deepcopy(self.body), "headers": dict(self.headers)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Response:
        return cls(
            status=int(data.get("status", 200)),
            body=data.get("body"),
            headers=dict(data.get("headers") or {}),
        )


__all__ = [
    "SimulationMode",
    "OperationDescriptor",
    "Request",
    "Response",
]
