"""
Monitor Daemon
==============

Process wrapper around the Arbiter: signal handling, optional simulated
fleet, startup and teardown.
"""

from __future__ import annotations

import logging
import signal
import threading
import time
from typing import Any, Dict, Optional

from fleet_safety.arbiter import Arbiter
from fleet_safety.channel import BroadcastChannel
from fleet_safety.config import MonitorConfig
from fleet_safety.simulation import FleetSimulation

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging once for the process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )


class MonitorDaemon:
    """
    Runs the safety monitor until signaled to stop.

    Shutdown does not publish FATAL: dropping the bonds is the signal,
    and every bonded node goes fatal on its own.
    """

    def __init__(
        self,
        config: MonitorConfig,
        channel: Optional[BroadcastChannel] = None,
        install_signal_handlers: bool = True,
    ):
        self.config = config.validate()
        self.channel = channel or BroadcastChannel()
        self.arbiter = Arbiter(self.config, self.channel)

        self.simulation: Optional[FleetSimulation] = None
        if self.config.simulation.enabled:
            self.simulation = FleetSimulation(self.config, self.channel)

        self._install_signal_handlers = install_signal_handlers
        self._shutdown_event = threading.Event()
        self._running = False
        self._start_time: Optional[float] = None

    def start(self) -> bool:
        """Start the simulated fleet (if any) and form all bonds."""
        if self._running:
            logger.warning("Daemon already running")
            return not self.arbiter.startup_failed

        logger.info("Starting fleet safety monitor...")

        if self._install_signal_handlers:
            signal.signal(signal.SIGTERM, self._signal_handler)
            signal.signal(signal.SIGINT, self._signal_handler)

        if self.simulation is not None:
            self.simulation.start()

        self._running = True
        self._start_time = time.time()
        return self.arbiter.start(self._shutdown_event)

    def stop(self) -> None:
        """Tear down bonds and the simulated fleet."""
        if not self._running:
            return

        logger.info("Stopping fleet safety monitor...")
        self.arbiter.shutdown()
        if self.simulation is not None:
            self.simulation.stop()
            self.channel.spin_once()

        self._running = False
        logger.info("Fleet safety monitor stopped")

    def run(self, duration: Optional[float] = None) -> int:
        """
        Run until signaled (or for `duration` seconds). Returns the
        number of arbitration cycles.

        InternalConsistencyError propagates after teardown.
        """
        if duration is None:
            duration = self.config.simulation.duration

        self.start()
        try:
            return self.arbiter.run(self._shutdown_event, duration=duration)
        finally:
            self.stop()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _signal_handler(self, signum: int, frame: Any) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, shutting down...")
        self._shutdown_event.set()

    def get_status(self) -> Dict[str, Any]:
        """Get daemon status."""
        uptime = time.time() - self._start_time if self._start_time else 0
        status = {
            "running": self._running,
            "uptime_sec": uptime,
            "arbiter": self.arbiter.get_status(),
        }
        if self.simulation is not None:
            status["simulation"] = {
                "elapsed_sec": self.simulation.elapsed(),
                "faults_applied": len(self.simulation.applied),
                "nodes": {
                    node_id: [e.kind for e in node.events]
                    for node_id, node in self.simulation.nodes.items()
                },
            }
        return status
