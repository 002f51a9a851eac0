"""Record/replay in front of the request pipeline.

Modes:
    DISABLED     every call goes to the network; nothing is stored
    RECORD       every call goes to the network; successful responses are
                 stored keyed by fingerprint
    REPLAY       no call goes to the network; an unknown fingerprint raises
                 SimulationRecordMissingError
    PASSTHROUGH  record and execute: every call goes to the network and
                 successful responses are stored; stored records are never
                 served back

The fingerprint covers the operation name, the descriptor target and the
payload. Headers are excluded so attached credentials never influence it.
In the writing modes it is computed before the network call, so a payload
that cannot be fingerprinted fails without reaching the remote.
"""

from __future__ import annotations

from typing import Any

from bulwark.core.errors import SimulationModeMismatchError, SimulationRecordMissingError
from bulwark.core.hashing import DEFAULT_FLOAT_PRECISION, canonical_json, canonicalize, compute_hash
from bulwark.core.logging import get_logger
from bulwark.core.models import OperationDescriptor, Response, SimulationMode
from bulwark.core.protocols import RecordStore
from bulwark.core.settings import SimulationConfig
from bulwark.simulation.storage import InMemoryRecordStore, JsonFileRecordStore, SimulationRecord

logger = get_logger(__name__)


class SimulationLayer:
    """Looks up and stores responses according to ``mode``."""

    def __init__(
        self,
        mode: SimulationMode = SimulationMode.DISABLED,
        store: RecordStore | None = None,
        *,
        precision: int = DEFAULT_FLOAT_PRECISION,
    ):
        self.mode = SimulationMode(mode)
        self.store = store if store is not None else InMemoryRecordStore()
        self.precision = precision
        self.recorded = 0
        self.replayed = 0
        self.misses = 0

        if self.writes and getattr(self.store, "read_only", False):
            raise SimulationModeMismatchError(
                f"Simulation mode '{self.mode.value}' needs a writable record store"
            )

    @classmethod
    def from_config(cls, config: SimulationConfig) -> SimulationLayer:
        """Build a layer from config; ``path`` selects a JSON fixture store."""
        store: RecordStore
        if config.path is not None and config.mode != SimulationMode.DISABLED:
            store = JsonFileRecordStore(config.path, read_only=config.mode == SimulationMode.REPLAY)
        else:
            store = InMemoryRecordStore()
        return cls(config.mode, store, precision=config.float_precision)

    @property
    def enabled(self) -> bool:
        return self.mode != SimulationMode.DISABLED

    @property
    def writes(self) -> bool:
        return self.mode in (SimulationMode.RECORD, SimulationMode.PASSTHROUGH)

    def serialize_request(self, descriptor: OperationDescriptor, payload: Any) -> str:
        """Canonical JSON of the fingerprinted part of a request.

        Raises:
            SimulationModeMismatchError: The payload holds a value that has
                no canonical form
        """
        try:
            view = canonicalize({"target": descriptor.target, "payload": payload}, self.precision)
        except TypeError as e:
            raise SimulationModeMismatchError(
                f"Request for '{descriptor.name}' cannot be fingerprinted: {e}"
            ).with_context(operation=descriptor.name) from e
        return canonical_json(view)

    def fingerprint(self, descriptor: OperationDescriptor, payload: Any) -> str:
        return compute_hash(descriptor.name, self.serialize_request(descriptor, payload))

    def _replay(self, record: SimulationRecord, descriptor: OperationDescriptor) -> Response:
        if record.operation_name != descriptor.name:
            raise SimulationModeMismatchError(
                f"Record {record.fingerprint} was captured for '{record.operation_name}', "
                f"not '{descriptor.name}'"
            ).with_context(operation=descriptor.name, fingerprint=record.fingerprint)
        self.replayed += 1
        logger.debug("simulation.replayed", operation=descriptor.name, fingerprint=record.fingerprint)
        return record.response()

    def lookup(self, descriptor: OperationDescriptor, payload: Any) -> Response | None:
        """Return the stored response to short-circuit with, or None to go live.

        In the writing modes this only checks that the request can be
        fingerprinted, so the failure happens before the network call.

        Raises:
            SimulationRecordMissingError: REPLAY mode and nothing recorded
            SimulationModeMismatchError: Stored record belongs to another
                operation, or the request cannot be fingerprinted
        """
        match self.mode:
            case SimulationMode.DISABLED:
                return None
            case SimulationMode.RECORD | SimulationMode.PASSTHROUGH:
                self.serialize_request(descriptor, payload)
                return None
            case SimulationMode.REPLAY:
                fp = self.fingerprint(descriptor, payload)
                record = self.store.get(fp)
                if record is None:
                    self.misses += 1
                    logger.warning("simulation.record_missing", operation=descriptor.name, fingerprint=fp)
                    raise SimulationRecordMissingError(fp, descriptor.name)
                return self._replay(record, descriptor)

    def record(self, descriptor: OperationDescriptor, payload: Any, response: Response) -> bool:
        """Store ``response`` when the mode records; True if a record was added."""
        match self.mode:
            case SimulationMode.DISABLED | SimulationMode.REPLAY:
                return False
            case SimulationMode.RECORD | SimulationMode.PASSTHROUGH:
                serialized = self.serialize_request(descriptor, payload)
                record = SimulationRecord(
                    fingerprint=compute_hash(descriptor.name, serialized),
                    operation_name=descriptor.name,
                    serialized_request=serialized,
                    serialized_response=response.to_dict(),
                )
                added = self.store.put(record)
                if added:
                    self.recorded += 1
                    logger.debug(
                        "simulation.recorded",
                        operation=descriptor.name,
                        fingerprint=record.fingerprint,
                    )
                return added

    def stats(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "recorded": self.recorded,
            "replayed": self.replayed,
            "misses": self.misses,
        }


__all__ = ["SimulationLayer"]
