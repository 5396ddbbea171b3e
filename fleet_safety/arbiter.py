"""
Arbiter
=======

Owns the priority-ordered fleet, polls every node link each cycle and
broadcasts which node holds authority, or FATAL when none is safe.

Priority is list position: index 0 is the most senior node. The lowest
safe priority is the most junior index still trusted; -1 means none.
It only ever ratchets down over the life of the process.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from fleet_safety.channel import BroadcastChannel
from fleet_safety.config import MonitorConfig
from fleet_safety.errors import InternalConsistencyError
from fleet_safety.link import NodeLink
from fleet_safety.models.node import CycleResult, DecisionKind, FleetDecision

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────
# Arbitration
# ─────────────────────────────────────────────────────────────────────

def evaluate_priorities(flags: Sequence[Tuple[bool, bool]], seed: int) -> int:
    """
    One evaluation pass over (safety_active, fatal_active) pairs in
    priority order, starting from the previous lowest safe priority.

    A node with safety active caps trust at its own index; a fatal node
    caps it one above. The result never exceeds the seed.
    """
    lowest = seed
    for i, (safety_active, fatal_active) in enumerate(flags):
        if safety_active:
            lowest = min(i, lowest)
        if fatal_active:
            lowest = min(i - 1, lowest)
    return lowest


def check_priority_range(lowest: int, node_count: int) -> int:
    """Fail fast unless -1 <= lowest < node_count. Never clamps."""
    if not (-1 <= lowest < node_count):
        raise InternalConsistencyError(lowest, node_count)
    return lowest


def decide(lowest: int, node_ids: Sequence[str]) -> FleetDecision:
    """
    Turn the lowest safe priority into the broadcast for this cycle.

        lowest == N - 1       -> steady, publish nothing
        -1 < lowest < N - 1   -> authority to the node at that index
        lowest == -1          -> FATAL
    """
    check_priority_range(lowest, len(node_ids))
    if lowest < 0:
        return FleetDecision.fatal()
    if lowest < len(node_ids) - 1:
        return FleetDecision.authority(node_ids[lowest])
    return FleetDecision.steady()


# ─────────────────────────────────────────────────────────────────────
# Arbiter
# ─────────────────────────────────────────────────────────────────────

class Arbiter:
    """
    Single arbiter for the fleet.

    Everything runs on the thread calling start()/step()/run(); bond and
    broadcast callbacks are delivered from channel.spin_once() inside
    step(), so node records have a single writer.
    """

    def __init__(
        self,
        config: MonitorConfig,
        channel: Optional[BroadcastChannel] = None,
    ):
        self.config = config.validate()
        self.channel = channel or BroadcastChannel()

        self.links: List[NodeLink] = []
        self.lowest_safe_priority: Optional[int] = None
        self.startup_failed = False

        # State
        self._started = False
        self._shut_down = False
        self._cycle_count = 0
        self._last_result: Optional[CycleResult] = None
        self._last_decision: Optional[FleetDecision] = None
        self._reported_safety: Set[str] = set()
        self._reported_fatal: Set[str] = set()

    # ─────────────────────────────────────────────────────────────────
    # Startup
    # ─────────────────────────────────────────────────────────────────

    def start(self, stop_event: Optional[threading.Event] = None) -> bool:
        """
        Form every bond in priority order.

        Stops at the first bond that fails to form, keeps that link and
        seeds the fleet as fatal. Setting stop_event abandons startup the
        same way. Returns True if every bond formed.
        """
        if self._started:
            logger.warning("Arbiter already started")
            return not self.startup_failed

        self._started = True
        cfg = self.config

        for priority, bond_id in enumerate(cfg.bond_ids):
            logger.info(f"Starting bond: {bond_id} (priority {priority})")
            link = NodeLink(
                self.channel,
                bond_id,
                priority=priority,
                heartbeat_period=cfg.heartbeat_period,
                heartbeat_timeout=cfg.heartbeat_timeout,
                connect_timeout=cfg.connect_timeout,
                formation_poll=cfg.formation_poll_interval,
                safety_topic=cfg.safety_topic,
                bond_topic=cfg.bond_topic,
            )
            self.links.append(link)

            if link.form_bond(stop_event):
                logger.info(f"Made bond: {bond_id}")
            elif stop_event is not None and stop_event.is_set():
                logger.warning(f"Startup interrupted while forming bond: {bond_id}")
                self.startup_failed = True
                break
            else:
                logger.error(f"Could not make bond: {bond_id}")
                # The fleet did not start correctly: nothing is safe
                self.startup_failed = True
                break

        if self.startup_failed:
            self.lowest_safe_priority = -1
        else:
            self.lowest_safe_priority = len(cfg.bond_ids) - 1

        logger.info(
            f"Arbiter started: {len(self.links)}/{len(cfg.bond_ids)} bonds, "
            f"lowest safe priority {self.lowest_safe_priority}"
        )
        return not self.startup_failed

    # ─────────────────────────────────────────────────────────────────
    # Cycle
    # ─────────────────────────────────────────────────────────────────

    @property
    def node_ids(self) -> List[str]:
        return [link.id for link in self.links]

    def step(self) -> CycleResult:
        """
        Run one cycle: deliver pending events, re-evaluate, publish.
        """
        if not self._started:
            raise RuntimeError("Arbiter.step() called before start()")
        if self._shut_down:
            raise RuntimeError("Arbiter.step() called after shutdown()")

        start_time = time.time()
        self.channel.spin_once()

        lowest = evaluate_priorities(
            [(link.is_safety_active(), link.is_fatal_active()) for link in self.links],
            self.lowest_safe_priority,
        )
        self._log_flags()

        decision = decide(lowest, self.node_ids)
        self.lowest_safe_priority = lowest

        if decision.message is not None:
            self.channel.publish(self.config.safety_topic, decision.message)
        self._log_decision(decision, lowest)

        result = CycleResult(
            timestamp=start_time,
            lowest_safe_priority=lowest,
            decision=decision,
            flagged=[link.id for link in self.links if link.is_safety_active()],
            cycle_time_ms=(time.time() - start_time) * 1000,
        )
        self._cycle_count += 1
        self._last_result = result
        return result

    def run(
        self,
        stop_event: Optional[threading.Event] = None,
        duration: Optional[float] = None,
    ) -> int:
        """
        Run cycles at the configured rate until stop_event is set or
        duration (channel clock seconds) elapses. Returns cycles run.
        """
        stop_event = stop_event or threading.Event()
        if not self._started:
            self.start(stop_event)

        period = self.config.loop_period
        began = self.channel.now()
        cycles = 0

        logger.info(f"Arbiter loop running at {self.config.loop_frequency_hz:.1f} Hz")

        while not stop_event.is_set():
            tick = self.channel.now()
            self.step()
            cycles += 1

            if duration is not None and self.channel.now() - began >= duration:
                break
            if stop_event.is_set():
                break
            self.channel.sleep(period - (self.channel.now() - tick))

        return cycles

    def shutdown(self) -> None:
        """
        Tear down every bond. Peers observe the break and go fatal on
        their own, so no FATAL is published here.
        """
        if self._shut_down:
            return
        self._shut_down = True

        for link in self.links:
            link.close()
        # Push the breaking heartbeats out to peers
        self.channel.spin_once()
        logger.info(f"Arbiter shut down after {self._cycle_count} cycles")

    # ─────────────────────────────────────────────────────────────────
    # Logging
    # ─────────────────────────────────────────────────────────────────

    def _log_flags(self) -> None:
        for link in self.links:
            if link.is_safety_active() and link.id not in self._reported_safety:
                self._reported_safety.add(link.id)
                logger.error(f"Safety status read when checking bond: {link.id}")
            if link.is_fatal_active() and link.id not in self._reported_fatal:
                self._reported_fatal.add(link.id)
                logger.error(f"Fatal status read when checking bond: {link.id}")

    def _log_decision(self, decision: FleetDecision, lowest: int) -> None:
        changed = decision != self._last_decision
        self._last_decision = decision

        if decision.kind == DecisionKind.AUTHORITY:
            msg = f"safety event: current priority: {lowest} bondId: {decision.node_id}"
        elif decision.kind == DecisionKind.FATAL:
            msg = f"FATAL event: current priority: {lowest}"
        else:
            return

        if changed:
            logger.error(msg)
        else:
            logger.debug(msg)

    # ─────────────────────────────────────────────────────────────────
    # Status
    # ─────────────────────────────────────────────────────────────────

    def get_stats(self) -> Dict[str, Any]:
        """Get arbiter statistics."""
        last = self._last_result
        return {
            "started": self._started,
            "startup_failed": self.startup_failed,
            "shut_down": self._shut_down,
            "cycle_count": self._cycle_count,
            "lowest_safe_priority": self.lowest_safe_priority,
            "decision": str(last.decision) if last else None,
            "last_cycle_time_ms": last.cycle_time_ms if last else None,
            "loop_frequency_hz": self.config.loop_frequency_hz,
        }

    def get_status(self) -> Dict[str, Any]:
        """Stats plus every node record, most senior first."""
        status = self.get_stats()
        status["nodes"] = [link.record.to_dict() for link in self.links]
        status["channel"] = self.channel.get_stats()
        return status
