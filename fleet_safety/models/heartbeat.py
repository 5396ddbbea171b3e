"""
Heartbeat message exchanged by the two ends of a bond.
"""

import time

from pydantic import BaseModel, ConfigDict, Field


class Heartbeat(BaseModel):
    """Liveness status published by one bond endpoint."""

    model_config = ConfigDict(frozen=True)

    bond_id: str = Field(..., min_length=1, description="Bond shared by both endpoints")
    instance_id: str = Field(..., min_length=1, description="Unique id of the sending endpoint")
    active: bool = Field(True, description="False when the sender is breaking the bond")
    heartbeat_period: float = Field(..., gt=0, description="Sender heartbeat interval (s)")
    heartbeat_timeout: float = Field(..., gt=0, description="Sender peer timeout (s)")
    timestamp: float = Field(default_factory=time.time)
