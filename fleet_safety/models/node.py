"""
Node Models
===========

Per-node safety record and the fleet decision derived from all records.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


# Sentinel broadcast when no node is safe to act
FATAL_MESSAGE = "FATAL"


class BondState(str, Enum):
    """Bond lifecycle. Transitions only move forward; BROKEN is absorbing."""
    FORMING = "forming"
    ALIVE = "alive"
    BROKEN = "broken"


class DecisionKind(str, Enum):
    """What the arbiter announces for a cycle."""
    STEADY = "steady"        # nothing degraded, nothing published
    AUTHORITY = "authority"  # hand control to a node
    FATAL = "fatal"          # no node is trustworthy


@dataclass
class NodeRecord:
    """
    Safety view of one monitored node.

    The flags only ever go from False to True. Setting fatal also sets
    safety, and a broken bond forces both.
    """
    id: str
    priority: int = 0
    bond_state: BondState = BondState.FORMING
    safety_active: bool = False
    fatal_active: bool = False

    def flag_safety(self) -> bool:
        """Set safety. Returns True if this call raised the flag."""
        if self.safety_active:
            return False
        self.safety_active = True
        return True

    def flag_fatal(self) -> bool:
        """Set fatal (and safety). Returns True if this call raised fatal."""
        self.flag_safety()
        if self.fatal_active:
            return False
        self.fatal_active = True
        return True

    def mark_alive(self) -> bool:
        """FORMING -> ALIVE. Ignored in any other state."""
        if self.bond_state != BondState.FORMING:
            return False
        self.bond_state = BondState.ALIVE
        return True

    def mark_broken(self) -> bool:
        """Move to BROKEN and force both flags. Idempotent."""
        self.flag_fatal()
        if self.bond_state == BondState.BROKEN:
            return False
        self.bond_state = BondState.BROKEN
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "priority": self.priority,
            "bond_state": self.bond_state.value,
            "safety_active": self.safety_active,
            "fatal_active": self.fatal_active,
        }


@dataclass(frozen=True)
class FleetDecision:
    """Fleet-wide decision for one cycle. Derived, never stored."""
    kind: DecisionKind
    node_id: Optional[str] = None

    @classmethod
    def steady(cls) -> FleetDecision:
        return cls(DecisionKind.STEADY)

    @classmethod
    def authority(cls, node_id: str) -> FleetDecision:
        return cls(DecisionKind.AUTHORITY, node_id)

    @classmethod
    def fatal(cls) -> FleetDecision:
        return cls(DecisionKind.FATAL)

    @property
    def message(self) -> Optional[str]:
        """Broadcast payload, or None when nothing is published."""
        if self.kind == DecisionKind.AUTHORITY:
            return self.node_id
        if self.kind == DecisionKind.FATAL:
            return FATAL_MESSAGE
        return None

    def __str__(self) -> str:
        if self.kind == DecisionKind.AUTHORITY:
            return f"authority({self.node_id})"
        return self.kind.value


@dataclass
class CycleResult:
    """Result of one arbitration cycle."""
    timestamp: float
    lowest_safe_priority: int
    decision: FleetDecision
    flagged: List[str] = field(default_factory=list)
    cycle_time_ms: float = 0.0
