"""
Fleet Safety Errors
===================

Only conditions that must stop the monitor are exceptions. Bond
formation failures and bond breaks are absorbed into node flags.
"""


class FleetSafetyError(Exception):
    """Base class for fleet safety errors."""


class ConfigurationError(FleetSafetyError):
    """The monitor configuration is missing or invalid. Fatal at startup."""


class InternalConsistencyError(FleetSafetyError):
    """
    An arbitration invariant was breached.

    Raised when the computed lowest safe priority leaves its legal range.
    This is a logic defect, so the value is never clamped and the
    process aborts.
    """

    def __init__(self, lowest_safe_priority: int, node_count: int):
        self.lowest_safe_priority = lowest_safe_priority
        self.node_count = node_count
        super().__init__(
            f"Lowest safe priority is outside of possible range, "
            f"value: {lowest_safe_priority} (nodes: {node_count})"
        )
