"""
Tests for arbitration: the pure priority functions, startup, the cycle,
and the fleet scenarios.

Run with: pytest tests/test_arbiter.py -v
"""

import logging
import random
import threading

import pytest

from fleet_safety.arbiter import (
    Arbiter,
    check_priority_range,
    decide,
    evaluate_priorities,
)
from fleet_safety.channel import SAFETY_TOPIC
from fleet_safety.config import MonitorConfig
from fleet_safety.errors import ConfigurationError, InternalConsistencyError
from fleet_safety.models.node import FATAL_MESSAGE, BondState, DecisionKind


SAFE = (False, False)
SAFETY = (True, False)
FATAL = (True, True)


# =============================================================================
# Pure functions
# =============================================================================

class TestEvaluatePriorities:

    def test_nothing_flagged_keeps_seed(self):
        assert evaluate_priorities([SAFE, SAFE, SAFE], 2) == 2

    def test_safety_caps_at_own_index(self):
        assert evaluate_priorities([SAFE, SAFETY, SAFE], 2) == 1

    def test_fatal_caps_one_above(self):
        assert evaluate_priorities([SAFE, SAFE, FATAL], 2) == 1
        assert evaluate_priorities([SAFE, FATAL, SAFE], 2) == 0
        assert evaluate_priorities([FATAL, SAFE, SAFE], 2) == -1

    def test_most_senior_flag_wins(self):
        assert evaluate_priorities([SAFE, SAFETY, FATAL], 2) == 1
        assert evaluate_priorities([SAFETY, FATAL, FATAL], 2) == 0

    def test_never_exceeds_seed(self):
        assert evaluate_priorities([SAFE, SAFE, SAFETY], 0) == 0
        assert evaluate_priorities([SAFE, SAFE, SAFE], -1) == -1

    def test_never_below_minus_one(self):
        assert evaluate_priorities([FATAL, FATAL, FATAL], 2) == -1


class TestDecide:

    def test_steady_when_nothing_degraded(self):
        decision = decide(2, ["A", "B", "C"])
        assert decision.kind == DecisionKind.STEADY
        assert decision.message is None

    def test_authority_to_node_at_lowest_safe_priority(self):
        decision = decide(1, ["A", "B", "C"])
        assert decision.kind == DecisionKind.AUTHORITY
        assert decision.node_id == "B"
        assert decision.message == "B"

        assert decide(0, ["A", "B", "C"]).message == "A"

    def test_fatal(self):
        decision = decide(-1, ["A", "B", "C"])
        assert decision.kind == DecisionKind.FATAL
        assert decision.message == FATAL_MESSAGE

    def test_single_node_is_steady_or_fatal(self):
        assert decide(0, ["A"]).kind == DecisionKind.STEADY
        assert decide(-1, ["A"]).kind == DecisionKind.FATAL

    @pytest.mark.parametrize("lowest", [-2, 3, 10])
    def test_out_of_range_aborts(self, lowest):
        with pytest.raises(InternalConsistencyError) as exc:
            decide(lowest, ["A", "B", "C"])
        assert exc.value.lowest_safe_priority == lowest
        assert exc.value.node_count == 3

    def test_range_check_does_not_clamp(self):
        assert check_priority_range(-1, 3) == -1
        assert check_priority_range(2, 3) == 2
        with pytest.raises(InternalConsistencyError):
            check_priority_range(-2, 3)


# =============================================================================
# Startup
# =============================================================================

class TestStartup:

    def test_empty_list_is_fatal(self, channel):
        with pytest.raises(ConfigurationError):
            Arbiter(MonitorConfig(bond_ids=()), channel)

    def test_all_bonds_form(self, make_fleet):
        fleet = make_fleet(["A", "B", "C"])
        arbiter = fleet.arbiter
        assert not arbiter.startup_failed
        assert arbiter.lowest_safe_priority == 2
        assert arbiter.node_ids == ["A", "B", "C"]
        assert [l.priority for l in arbiter.links] == [0, 1, 2]
        assert all(l.bond_state == BondState.ALIVE for l in arbiter.links)
        assert all(n.bond_state == BondState.ALIVE for n in fleet.nodes.values())

    def test_first_failure_stops_startup(self, make_fleet):
        fleet = make_fleet(["A", "B", "C"], never_start=["B"])
        arbiter = fleet.arbiter
        assert arbiter.startup_failed
        assert arbiter.lowest_safe_priority == -1
        # The failed link is kept, later nodes are never attempted
        assert arbiter.node_ids == ["A", "B"]
        assert arbiter.links[1].bond_state == BondState.BROKEN

    def test_formation_failure_is_logged(self, make_fleet, caplog):
        with caplog.at_level(logging.ERROR, logger="fleet_safety"):
            make_fleet(["A", "B"], never_start=["B"])
        assert "Could not make bond: B" in caplog.text

    def test_stop_event_abandons_formation(self, make_fleet, clock, caplog):
        fleet = make_fleet(["A", "B"], never_start=["B"], start=False, connect_timeout=10.0)
        stop = threading.Event()
        stop.set()
        started = clock.now()

        with caplog.at_level(logging.WARNING, logger="fleet_safety"):
            assert fleet.arbiter.start(stop) is False
        assert clock.now() - started < 1.0
        assert fleet.arbiter.startup_failed
        assert fleet.arbiter.lowest_safe_priority == -1
        assert fleet.arbiter.node_ids == ["A"]
        assert "Startup interrupted" in caplog.text

    def test_step_requires_start(self, make_fleet):
        fleet = make_fleet(start=False)
        with pytest.raises(RuntimeError):
            fleet.arbiter.step()

    def test_start_twice(self, make_fleet):
        fleet = make_fleet()
        assert fleet.arbiter.start() is True
        assert len(fleet.arbiter.links) == 3


# =============================================================================
# Scenarios
# =============================================================================

class TestScenarios:

    def test_steady_state_publishes_nothing(self, make_fleet):
        fleet = make_fleet(["A", "B", "C"])
        results = fleet.run_for(2.0)

        assert all(r.decision.kind == DecisionKind.STEADY for r in results)
        assert all(r.lowest_safe_priority == 2 for r in results)
        assert fleet.broadcasts == []

    def test_self_report_hands_authority(self, make_fleet):
        fleet = make_fleet(["A", "B", "C"])
        fleet.cycle()

        fleet.nodes["B"].report_safety()
        result = fleet.cycle()

        assert result.lowest_safe_priority == 1
        assert result.decision.kind == DecisionKind.AUTHORITY
        assert result.decision.message == "B"
        assert result.flagged == ["B"]

        # Keeps announcing while degraded
        assert fleet.cycle().decision.message == "B"
        fleet.channel.spin_once()
        assert fleet.broadcasts.count("B") >= 3

    def test_most_junior_self_report_changes_nothing(self, make_fleet):
        fleet = make_fleet(["A", "B", "C"])
        fleet.nodes["C"].report_safety()
        result = fleet.cycle()
        assert result.lowest_safe_priority == 2
        assert result.decision.kind == DecisionKind.STEADY

    def test_junior_crash_hands_authority_upward(self, make_fleet):
        fleet = make_fleet(["A", "B", "C"])
        fleet.nodes["C"].silence()

        results = fleet.run_for(1.0)
        assert results[-1].lowest_safe_priority == 1
        assert results[-1].decision.message == "B"

    def test_senior_bond_break_is_fatal(self, make_fleet):
        fleet = make_fleet(["A", "B", "C"])
        fleet.cycle()

        fleet.nodes["A"].close()
        result = fleet.cycle()

        assert result.lowest_safe_priority == -1
        assert result.decision.kind == DecisionKind.FATAL
        assert result.decision.message == FATAL_MESSAGE

    def test_fatal_reaches_every_node(self, make_fleet):
        fleet = make_fleet(["A", "B", "C"])
        fleet.nodes["A"].silence()
        fleet.run_for(1.5)

        for bond_id in ("B", "C"):
            assert fleet.nodes[bond_id].is_fatal_active()
        assert FATAL_MESSAGE in fleet.broadcasts

    def test_failed_startup_is_fatal_on_first_cycle(self, make_fleet):
        fleet = make_fleet(["A", "B"], never_start=["B"])
        result = fleet.cycle()

        assert result.lowest_safe_priority == -1
        assert result.decision.kind == DecisionKind.FATAL

        fleet.channel.spin_once()
        assert fleet.broadcasts == [FATAL_MESSAGE]
        assert fleet.nodes["A"].is_fatal_active()

    def test_degradation_is_permanent(self, make_fleet):
        fleet = make_fleet(["A", "B", "C", "D"])
        fleet.nodes["C"].report_safety()
        assert fleet.cycle().lowest_safe_priority == 2

        results = fleet.run_for(2.0)
        assert all(r.lowest_safe_priority == 2 for r in results)
        assert fleet.arbiter.links[2].is_safety_active()


# =============================================================================
# Properties
# =============================================================================

class TestProperties:

    @pytest.mark.parametrize("seed", [1, 7, 42, 1234])
    def test_random_event_sequences(self, make_fleet, seed):
        rng = random.Random(seed)
        ids = ["A", "B", "C", "D", "E"]
        fleet = make_fleet(ids)
        previous = fleet.arbiter.lowest_safe_priority

        for _ in range(60):
            event = rng.choice(["none", "none", "report", "crash", "close", "publish"])
            node = fleet.nodes[rng.choice(ids)]
            if event == "report":
                node.report_safety()
            elif event == "crash":
                node.silence()
            elif event == "close":
                node.close()
            elif event == "publish":
                fleet.channel.publish(SAFETY_TOPIC, rng.choice(ids))

            result = fleet.cycle()

            # Monotonic and in range
            assert result.lowest_safe_priority <= previous
            assert -1 <= result.lowest_safe_priority < len(ids)
            previous = result.lowest_safe_priority

            # Only valid ids, FATAL, or nothing
            assert result.decision.message in ids + [FATAL_MESSAGE, None]

            for link in fleet.arbiter.links:
                record = link.record
                if record.fatal_active:
                    assert record.safety_active
                if record.bond_state == BondState.BROKEN:
                    assert record.safety_active and record.fatal_active

    def test_corrupted_state_aborts(self, make_fleet):
        fleet = make_fleet(["A", "B", "C"])
        fleet.arbiter.lowest_safe_priority = 5
        with pytest.raises(InternalConsistencyError):
            fleet.arbiter.step()


# =============================================================================
# Loop and shutdown
# =============================================================================

class TestLoop:

    def test_run_for_duration(self, make_fleet, clock):
        fleet = make_fleet(["A", "B", "C"])
        began = clock.now()
        cycles = fleet.arbiter.run(duration=1.0)

        # 15 Hz for one second of channel time
        assert 14 <= cycles <= 17
        assert clock.now() - began >= 1.0

    def test_run_stops_on_event(self, make_fleet):
        fleet = make_fleet()
        stop = threading.Event()
        stop.set()
        assert fleet.arbiter.run(stop) == 0

    def test_run_starts_if_needed(self, make_fleet):
        fleet = make_fleet(start=False)
        fleet.arbiter.run(duration=0.2)
        assert fleet.arbiter.get_stats()["started"]

    def test_run_detects_crash(self, make_fleet):
        fleet = make_fleet(["A", "B", "C"])
        fleet.nodes["B"].silence()
        fleet.arbiter.run(duration=1.0)
        assert fleet.arbiter.lowest_safe_priority == 0

    def test_shutdown_breaks_peers_without_fatal_broadcast(self, make_fleet):
        fleet = make_fleet(["A", "B", "C"])
        fleet.run_for(0.5)

        fleet.arbiter.shutdown()

        for node in fleet.nodes.values():
            assert node.bond_state == BondState.BROKEN
            assert node.is_fatal_active()
        assert FATAL_MESSAGE not in fleet.broadcasts

    def test_step_after_shutdown(self, make_fleet):
        fleet = make_fleet()
        fleet.arbiter.shutdown()
        fleet.arbiter.shutdown()
        with pytest.raises(RuntimeError):
            fleet.arbiter.step()

    def test_status(self, make_fleet):
        fleet = make_fleet(["A", "B", "C"])
        fleet.nodes["B"].report_safety()
        fleet.cycle()

        status = fleet.arbiter.get_status()
        assert status["cycle_count"] == 1
        assert status["lowest_safe_priority"] == 1
        assert status["decision"] == "authority(B)"
        assert [n["id"] for n in status["nodes"]] == ["A", "B", "C"]
        assert status["nodes"][1]["safety_active"] is True
