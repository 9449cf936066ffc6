"""Pydantic models for LAN device discovery."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class DeviceRecord(BaseModel):
    """A peer currently believed reachable on the LAN."""
    device_id: str
    device_name: str
    email: str
    ip: str  # source address of the last presence message
    last_seen: float  # monotonic timestamp


class PresenceMessage(BaseModel):
    """The JSON payload broadcast over UDP."""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["presence"]
    device_id: str = Field(alias="deviceId")
    device_name: str = Field(alias="deviceName")
    email: str
    timestamp: float = 0  # ms since epoch, informational only

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")
