"""
Fleet Safety Monitor
====================

Priority-ordered liveness monitor for a fleet of cooperating control
nodes. Tracks each node over a heartbeat bond and a shared safety
broadcast, and announces which single node holds authority to act, or
FATAL when no node is safe.

Architecture:
    Bond             - Bidirectional heartbeat link with one peer
    NodeLink         - Bond + safety broadcast -> per-node safety flags
    Arbiter          - Polls all links, computes and publishes the decision
    BroadcastChannel - Shared publish/subscribe surface

Degradation is permanent: flags are never cleared and the lowest safe
priority only ratchets down.
"""

from fleet_safety.models.node import (
    BondState, NodeRecord, FleetDecision, DecisionKind, CycleResult, FATAL_MESSAGE,
)
from fleet_safety.models.heartbeat import Heartbeat
from fleet_safety.errors import (
    FleetSafetyError, ConfigurationError, InternalConsistencyError,
)
from fleet_safety.channel import BroadcastChannel, SystemClock, SAFETY_TOPIC, BOND_TOPIC
from fleet_safety.bond import Bond
from fleet_safety.link import NodeLink
from fleet_safety.config import MonitorConfig, load_config
from fleet_safety.arbiter import Arbiter, evaluate_priorities, decide
from fleet_safety.daemon import MonitorDaemon

__all__ = [
    # Models
    "BondState", "NodeRecord", "FleetDecision", "DecisionKind", "CycleResult",
    "FATAL_MESSAGE", "Heartbeat",
    # Errors
    "FleetSafetyError", "ConfigurationError", "InternalConsistencyError",
    # Core
    "BroadcastChannel", "SystemClock", "SAFETY_TOPIC", "BOND_TOPIC",
    "Bond",
    "NodeLink",
    "MonitorConfig", "load_config",
    "Arbiter", "evaluate_priorities", "decide",
    "MonitorDaemon",
]

__version__ = "0.1.0"
