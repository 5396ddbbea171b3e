"""
Fleet Simulation
================

Simulated monitored nodes sharing the arbiter's channel, with scheduled
fault injection. Used by `fleet-safety run` when the config carries a
`simulation` section, and by the tests.

Fault actions:
    report       node publishes its own id (self-reported trouble)
    crash        node stops heartbeating silently; arbiter times out
    stop         node breaks its bond explicitly
    never_start  node never starts its bond; formation fails
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from fleet_safety.channel import BroadcastChannel, Timer
from fleet_safety.config import FaultSpec, MonitorConfig
from fleet_safety.link import NodeLink
from fleet_safety.models.node import FATAL_MESSAGE

logger = logging.getLogger(__name__)


@dataclass
class NodeEvent:
    """Something a simulated node did or heard."""
    at: float
    kind: str
    detail: str = ""


class SimulatedNode:
    """A monitored node: bonds with the arbiter and listens for orders."""

    def __init__(self, channel: BroadcastChannel, node_id: str, config: MonitorConfig):
        self.channel = channel
        self.link = NodeLink(
            channel,
            node_id,
            heartbeat_period=config.heartbeat_period,
            heartbeat_timeout=config.heartbeat_timeout,
            connect_timeout=config.connect_timeout,
            safety_topic=config.safety_topic,
            bond_topic=config.bond_topic,
            on_safety=self._on_safety,
            on_fatal=self._on_fatal,
        )
        self.running = False
        self.events: List[NodeEvent] = []

    @property
    def id(self) -> str:
        return self.link.id

    def start(self) -> None:
        self.link.start()
        self.running = True
        self._record("started")

    def report_safety(self) -> bool:
        if not self.running:
            return False
        self.link.report_safety()
        self._record("reported")
        return True

    def crash(self) -> bool:
        if not self.running:
            return False
        self.link.silence()
        self.running = False
        self._record("crashed")
        return True

    def stop(self) -> bool:
        """Break the bond. A node that is not running just stops listening."""
        if not self.running:
            self.link.silence()
            return False
        self.link.close()
        self.running = False
        self._record("stopped")
        return True

    def _on_safety(self, link: NodeLink) -> None:
        if not link.is_fatal_active():
            logger.warning(f"Node {link.id}: safety active, taking safety action")
            self._record("safety")

    def _on_fatal(self, link: NodeLink) -> None:
        reason = FATAL_MESSAGE if not link.bond.is_broken() else "bond broken"
        logger.error(f"Node {link.id}: fatal ({reason}), exiting")
        self._record("fatal", reason)

    def _record(self, kind: str, detail: str = "") -> None:
        self.events.append(NodeEvent(at=self.channel.now(), kind=kind, detail=detail))


class FleetSimulation:
    """
    One simulated node per configured bond id, plus a fault schedule
    applied from a channel timer so faults land between arbiter cycles.
    """

    def __init__(
        self,
        config: MonitorConfig,
        channel: BroadcastChannel,
        faults: Optional[Tuple[FaultSpec, ...]] = None,
    ):
        self.config = config
        self.channel = channel
        self.nodes: Dict[str, SimulatedNode] = {
            bond_id: SimulatedNode(channel, bond_id, config)
            for bond_id in config.bond_ids
        }
        if faults is None:
            faults = config.simulation.faults
        self._pending: List[FaultSpec] = sorted(
            (f for f in faults if f.action != "never_start"), key=lambda f: f.at
        )
        self._never_start = {f.node for f in faults if f.action == "never_start"}
        self.applied: List[FaultSpec] = []

        self._t0: Optional[float] = None
        self._timer: Optional[Timer] = None

    def start(self) -> None:
        """Start every node's bond; must happen before the arbiter forms bonds."""
        self._t0 = self.channel.now()
        for bond_id, node in self.nodes.items():
            if bond_id in self._never_start:
                logger.info(f"Simulated node {bond_id} will never start")
                continue
            node.start()
        self._timer = self.channel.create_timer(self.config.loop_period, self.apply_due_faults)
        logger.info(f"Fleet simulation started: {len(self.nodes)} nodes, "
                    f"{len(self._pending)} scheduled faults")

    def elapsed(self) -> float:
        if self._t0 is None:
            return 0.0
        return self.channel.now() - self._t0

    def apply_due_faults(self) -> None:
        elapsed = self.elapsed()
        while self._pending and self._pending[0].at <= elapsed:
            fault = self._pending.pop(0)
            self.apply(fault)

    def apply(self, fault: FaultSpec) -> bool:
        """Inject one fault. Returns False if the node was not running."""
        node = self.nodes[fault.node]
        if fault.action == "report":
            acted = node.report_safety()
        elif fault.action == "crash":
            acted = node.crash()
        elif fault.action == "stop":
            acted = node.stop()
        else:
            raise ValueError(f"Unsupported fault action: {fault.action}")

        if not acted:
            logger.info(f"Skipping fault at {self.elapsed():.2f}s: "
                        f"{fault.action} {fault.node} (node not running)")
            return False
        logger.warning(f"Injected fault at {self.elapsed():.2f}s: {fault.action} {fault.node}")
        self.applied.append(fault)
        return True

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for node in self.nodes.values():
            node.stop()
