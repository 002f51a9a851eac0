"""
Collaborator protocols consumed by the execution core.

The core never knows which provider it is talking to. It reaches the outside
world through three structural contracts that each adapter satisfies.

Manifesto:
    Protocols define contracts without inheritance. They enable:
    - **Decoupling:** The pipeline depends on shape, not on a provider SDK
    - **Testability:** A twenty-line fake transport exercises the whole core
    - **Portability:** Same pipeline for HTTP, gRPC or database transports

Architecture:
    ::

        protocols.py
        ├── Transport         - open / send / close transport handles
        ├── CredentialHandle  - attach, classify auth expiry, refresh
        └── RecordStore       - simulation fixture storage (get / put)

    Consumers:
        execution/pool.py      (Transport.open / close)
        execution/pipeline.py  (Transport.send, CredentialHandle)
        simulation/layer.py    (RecordStore)

Guardrails:
    ❌ DON'T: Add implementation logic to protocol classes
    ✅ DO: Keep protocols minimal, one concern each

Tags:
    protocols, typing, structural-subtyping, bulwark

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from bulwark.core.models import Request, Response

if TYPE_CHECKING:
    from bulwark.simulation.storage import SimulationRecord


@runtime_checkable
class Transport(Protocol):
    """Transport to one remote endpoint.

    ``open()`` creates the handle the pool leases out (an HTTP session, a
    channel, a DB connection). ``send()`` returns a ``Response`` for any
    status the remote answered with; non-2xx responses are classified by the
    pipeline. Exceptions raised by ``send()`` are classified with
    ``classify_exception`` unless they are already ``BulwarkError``.
    """

    async def open(self) -> Any:
        """Create a new transport handle."""
        ...

    async def send(self, handle: Any, request: Request) -> Response:
        """Send one request over ``handle``."""
        ...

    async def close(self, handle: Any) -> None:
        """Dispose of a handle."""
        ...


@runtime_checkable
class CredentialHandle(Protocol):
    """Opaque credential supplied by the authentication collaborator."""

    def attach(self, request: Request) -> None:
        """Attach credentials to ``request`` (typically a header)."""
        ...

    def is_auth_expired(self, error: BaseException) -> bool:
        """Return True if ``error`` means the credential must be refreshed."""
        ...

    async def refresh(self) -> None:
        """Refresh the credential; raise on failure."""
        ...


@runtime_checkable
class RecordStore(Protocol):
    """Simulation fixture storage."""

    def get(self, fingerprint: str) -> SimulationRecord | None:
        ...

    def put(self, record: SimulationRecord) -> bool:
        """Persist ``record``; return False if the fingerprint already exists."""
        ...


__all__ = ["Transport", "CredentialHandle", "RecordStore"]
