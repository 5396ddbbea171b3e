"""
Bond
====

Bidirectional heartbeat link between exactly two endpoints that share a
bond id. Both the monitor and the monitored node run an identical Bond;
each one detects the disappearance of the other.

    FORMING ──(peer heartbeat)──> ALIVE
       │                            │
       └─(connect timeout)──┐       ├─(peer timeout)
                            v       v
                            BROKEN <┴─(break_bond / peer breaking)

BROKEN is absorbing: a broken bond is never revived. A restarted peer
needs a new Bond.
"""

from __future__ import annotations

import logging
import uuid
from typing import Callable, Optional

from pydantic import ValidationError

from fleet_safety.channel import BOND_TOPIC, BroadcastChannel, Subscription, Timer
from fleet_safety.models.heartbeat import Heartbeat
from fleet_safety.models.node import BondState

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_PERIOD = 0.2
DEFAULT_HEARTBEAT_TIMEOUT = 0.5
DEFAULT_CONNECT_TIMEOUT = 10.0


class Bond:
    """
    One endpoint of a heartbeat bond.

    on_formed and on_broken each fire at most once, from inside
    BroadcastChannel.spin_once() or from break_bond().
    """

    def __init__(
        self,
        channel: BroadcastChannel,
        bond_id: str,
        on_broken: Optional[Callable[[], None]] = None,
        on_formed: Optional[Callable[[], None]] = None,
        heartbeat_period: float = DEFAULT_HEARTBEAT_PERIOD,
        heartbeat_timeout: float = DEFAULT_HEARTBEAT_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        topic: str = BOND_TOPIC,
    ):
        if not bond_id:
            raise ValueError("Bond id must be a non-empty string")
        if heartbeat_period <= 0:
            raise ValueError(f"heartbeat_period must be positive, got {heartbeat_period}")
        if heartbeat_timeout <= heartbeat_period:
            raise ValueError(
                f"heartbeat_timeout ({heartbeat_timeout}) must exceed "
                f"heartbeat_period ({heartbeat_period})"
            )
        if connect_timeout <= 0:
            raise ValueError(f"connect_timeout must be positive, got {connect_timeout}")

        self.channel = channel
        self.bond_id = bond_id
        self.instance_id = uuid.uuid4().hex
        self.topic = topic

        self.heartbeat_period = heartbeat_period
        self.heartbeat_timeout = heartbeat_timeout
        self.connect_timeout = connect_timeout

        self._on_broken = on_broken
        self._on_formed = on_formed

        # State
        self._state = BondState.FORMING
        self._started = False
        self._started_at: Optional[float] = None
        self._last_heard: Optional[float] = None
        self._peer_instance_id: Optional[str] = None
        self.broken_reason: Optional[str] = None

        self._timer: Optional[Timer] = None
        self._subscription: Optional[Subscription] = None

    @property
    def state(self) -> BondState:
        return self._state

    @property
    def peer_instance_id(self) -> Optional[str]:
        return self._peer_instance_id

    def is_formed(self) -> bool:
        return self._state == BondState.ALIVE

    def is_broken(self) -> bool:
        return self._state == BondState.BROKEN

    def start(self) -> Bond:
        """Begin forming the bond. Returns self as the handle."""
        if self._started:
            logger.warning(f"Bond {self.bond_id} already started")
            return self

        self._started = True
        self._started_at = self.channel.now()
        self._subscription = self.channel.subscribe(self.topic, self._on_heartbeat)
        self._timer = self.channel.create_timer(self.heartbeat_period, self._tick)
        self._publish(active=True)

        logger.debug(f"Bond {self.bond_id} started (instance {self.instance_id[:8]})")
        return self

    def break_bond(self) -> None:
        """Tear the bond down and tell the peer. Idempotent."""
        if self._state == BondState.BROKEN:
            return
        if self._started:
            self._publish(active=False)
        self._set_broken("broken locally")

    def silence(self) -> None:
        """
        Stop heartbeating and listening without telling the peer.

        Models an endpoint that died abruptly; the peer only learns about
        it through its heartbeat timeout. Local state is left untouched.
        """
        self._teardown()

    # ─────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────

    def _tick(self) -> None:
        """Periodic deadline check and heartbeat."""
        if self._state == BondState.BROKEN:
            return

        now = self.channel.now()
        if self._state == BondState.FORMING:
            if now - self._started_at > self.connect_timeout:
                self._set_broken(
                    f"not formed within connect timeout ({self.connect_timeout}s)"
                )
                return
        elif self._state == BondState.ALIVE:
            if now - self._last_heard > self.heartbeat_timeout:
                self._set_broken(
                    f"no heartbeat for {now - self._last_heard:.3f}s "
                    f"(timeout {self.heartbeat_timeout}s)"
                )
                return

        self._publish(active=True)

    def _on_heartbeat(self, message: object) -> None:
        if self._state == BondState.BROKEN:
            return

        if not isinstance(message, Heartbeat):
            try:
                message = Heartbeat.model_validate(message)
            except ValidationError as e:
                logger.warning(f"Bond {self.bond_id}: dropping malformed heartbeat: {e}")
                return

        if message.bond_id != self.bond_id or message.instance_id == self.instance_id:
            return

        # Lock onto the first peer instance; a second peer is not our peer
        if self._peer_instance_id is None:
            self._peer_instance_id = message.instance_id
        elif message.instance_id != self._peer_instance_id:
            logger.warning(
                f"Bond {self.bond_id}: ignoring heartbeat from unknown "
                f"instance {message.instance_id[:8]}"
            )
            return

        if not message.active:
            self._set_broken("peer broke the bond")
            return

        self._last_heard = self.channel.now()

        if self._state == BondState.FORMING:
            self._state = BondState.ALIVE
            logger.debug(f"Bond {self.bond_id} formed")
            if self._on_formed is not None:
                self._on_formed()

    def _publish(self, active: bool) -> None:
        self.channel.publish(self.topic, Heartbeat(
            bond_id=self.bond_id,
            instance_id=self.instance_id,
            active=active,
            heartbeat_period=self.heartbeat_period,
            heartbeat_timeout=self.heartbeat_timeout,
        ))

    def _set_broken(self, reason: str) -> None:
        if self._state == BondState.BROKEN:
            return
        self._state = BondState.BROKEN
        self.broken_reason = reason
        self._teardown()

        logger.warning(f"Bond {self.bond_id} broken: {reason}")
        if self._on_broken is not None:
            self._on_broken()

    def _teardown(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    def __repr__(self) -> str:
        return f"Bond(id={self.bond_id!r}, state={self._state.value})"
