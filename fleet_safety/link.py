"""
Node Link
=========

Combines one Bond with a subscription to the safety broadcast, producing
the per-node safety view the arbiter polls.

The same class is used on both ends: the arbiter holds one link per
monitored node, and a monitored node holds a link under its own id to
bond with the arbiter and to hear authority grants and FATAL.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from fleet_safety.bond import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_HEARTBEAT_PERIOD,
    DEFAULT_HEARTBEAT_TIMEOUT,
    Bond,
)
from fleet_safety.channel import BOND_TOPIC, SAFETY_TOPIC, BroadcastChannel
from fleet_safety.models.node import FATAL_MESSAGE, BondState, NodeRecord

logger = logging.getLogger(__name__)

# Interval between channel spins while waiting for a bond to form
DEFAULT_FORMATION_POLL = 0.1


class NodeLink:
    """
    Safety view of one node.

    Flags come from two sources and are OR-ed together:
      - the safety broadcast: our own id sets safety, "FATAL" sets both
      - the bond: a broken bond sets both, permanently

    Neither flag is ever cleared.
    """

    def __init__(
        self,
        channel: BroadcastChannel,
        node_id: str,
        priority: int = 0,
        heartbeat_period: float = DEFAULT_HEARTBEAT_PERIOD,
        heartbeat_timeout: float = DEFAULT_HEARTBEAT_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        formation_poll: float = DEFAULT_FORMATION_POLL,
        safety_topic: str = SAFETY_TOPIC,
        bond_topic: str = BOND_TOPIC,
        on_safety: Optional[Callable[[NodeLink], None]] = None,
        on_fatal: Optional[Callable[[NodeLink], None]] = None,
    ):
        self.channel = channel
        self.record = NodeRecord(id=node_id, priority=priority)
        self.safety_topic = safety_topic
        self.formation_poll = formation_poll

        # Rising-edge listeners
        self.on_safety = on_safety
        self.on_fatal = on_fatal

        self.bond = Bond(
            channel,
            node_id,
            on_broken=self._on_broken,
            on_formed=self._on_formed,
            heartbeat_period=heartbeat_period,
            heartbeat_timeout=heartbeat_timeout,
            connect_timeout=connect_timeout,
            topic=bond_topic,
        )
        self._subscription = channel.subscribe(safety_topic, self.process_safety_message)

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def priority(self) -> int:
        return self.record.priority

    @property
    def bond_state(self) -> BondState:
        return self.record.bond_state

    def start(self) -> None:
        """Start the bond without waiting for it to form."""
        self.bond.start()

    def form_bond(self, stop_event: Optional[threading.Event] = None) -> bool:
        """
        Start the bond and wait until it either forms or breaks.

        Spins the channel between checks so heartbeats keep flowing.
        The wait is bounded by the bond's connect timeout, and ends early
        once stop_event is set.
        """
        logger.info(f"Trying to form bond {self.id}")
        self.bond.start()
        return self.wait_until_safe(stop_event)

    def wait_until_safe(self, stop_event: Optional[threading.Event] = None) -> bool:
        """
        Spin until the bond is formed (True), broken or stopped (False).
        """
        while not self._settled():
            if stop_event is not None and stop_event.is_set():
                logger.warning(f"Stopped waiting for bond {self.id}")
                break
            self.channel.spin_once()
            if not self._settled():
                self.channel.sleep(self.formation_poll)
        return self.bond.is_formed()

    def _settled(self) -> bool:
        return self.bond.is_broken() or self.bond.is_formed()

    def process_safety_message(self, message: object) -> None:
        """Handle one safety broadcast."""
        if message == self.id:
            self._raise_safety()
        elif message == FATAL_MESSAGE:
            self._raise_fatal()

    def report_safety(self) -> None:
        """Self-report trouble by publishing our own id."""
        logger.warning(f"Node {self.id} reporting safety event")
        self.channel.publish(self.safety_topic, self.id)

    def is_safety_active(self) -> bool:
        return self.record.safety_active

    def is_fatal_active(self) -> bool:
        return self.record.fatal_active

    def close(self) -> None:
        """Break the bond and stop listening."""
        self.bond.break_bond()
        self._subscription.cancel()

    def silence(self) -> None:
        """Go quiet without breaking the bond, as a crashed process would."""
        self.bond.silence()
        self._subscription.cancel()

    # ─────────────────────────────────────────────────────────────────
    # Callbacks
    # ─────────────────────────────────────────────────────────────────

    def _on_formed(self) -> None:
        self.record.mark_alive()
        logger.info(f"Bond formed: {self.id}")

    def _on_broken(self) -> None:
        safety_was_active = self.record.safety_active
        fatal_was_active = self.record.fatal_active
        self.record.mark_broken()
        logger.error(f"Bond broken: {self.id} ({self.bond.broken_reason})")
        self._notify(safety_was_active, raised_fatal=not fatal_was_active)

    def _raise_safety(self) -> None:
        if self.record.flag_safety():
            self._notify(False, raised_fatal=False)

    def _raise_fatal(self) -> None:
        safety_was_active = self.record.safety_active
        if self.record.flag_fatal():
            self._notify(safety_was_active, raised_fatal=True)

    def _notify(self, safety_was_active: bool, raised_fatal: bool) -> None:
        if not safety_was_active and self.on_safety is not None:
            self.on_safety(self)
        if raised_fatal and self.on_fatal is not None:
            self.on_fatal(self)

    def __repr__(self) -> str:
        r = self.record
        return (
            f"NodeLink(id={r.id!r}, priority={r.priority}, bond={r.bond_state.value}, "
            f"safety={r.safety_active}, fatal={r.fatal_active})"
        )
