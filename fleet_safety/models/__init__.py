"""Fleet safety data models."""

from fleet_safety.models.node import (
    BondState,
    DecisionKind,
    FleetDecision,
    NodeRecord,
    CycleResult,
    FATAL_MESSAGE,
)
from fleet_safety.models.heartbeat import Heartbeat

__all__ = [
    "BondState",
    "DecisionKind",
    "FleetDecision",
    "NodeRecord",
    "CycleResult",
    "FATAL_MESSAGE",
    "Heartbeat",
]
