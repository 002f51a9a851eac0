"""
Deterministic record/replay for the request pipeline.

Exports:
    SimulationLayer: Mode-driven lookup and recording
    SimulationRecord: One stored response
    InMemoryRecordStore / JsonFileRecordStore: Storage backends
"""

from bulwark.simulation.layer import SimulationLayer
from bulwark.simulation.storage import InMemoryRecordStore, JsonFileRecordStore, SimulationRecord

__all__ = [
    "SimulationLayer",
    "SimulationRecord",
    "InMemoryRecordStore",
    "JsonFileRecordStore",
]
