"""Pydantic models for file transfer."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class TransferState(str, Enum):
    """All possible states for a file transfer."""
    CONNECTED = "connected"
    HEADER_PENDING = "header_pending"
    QUEUED = "queued"  # waiting behind another offer
    OFFER_PRESENTED = "offer_presented"
    ACCEPTED = "accepted"
    STREAMING = "streaming"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            TransferState.COMPLETED,
            TransferState.REJECTED,
            TransferState.CANCELLED,
            TransferState.FAILED,
        )


class TransferDirection(str, Enum):
    SEND = "send"
    RECEIVE = "receive"


class TransferDescriptor(BaseModel):
    """State of a single transfer attempt, exposed to the host."""
    transfer_id: str
    file_name: str
    file_size: int
    sender_email: str
    direction: TransferDirection
    state: TransferState = TransferState.CONNECTED
    transferred_bytes: int = 0
    progress: int = 0
    peer_ip: str = ""
    error_message: str | None = None


class SendResult(BaseModel):
    accepted: bool
    transfer_id: str
    reason: str | None = None


# --- Wire protocol messages ---

class OfferHeader(BaseModel):
    """Sent by the sender right after connecting."""
    model_config = ConfigDict(populate_by_name=True)

    transfer_id: str = Field(alias="transferId", min_length=1)
    file_name: str = Field(alias="fileName")
    file_size: int = Field(alias="fileSize", ge=0)
    sender_email: str = Field(alias="senderEmail")


class AckHeader(BaseModel):
    """The receiver's decision on an offer."""
    accepted: bool
    reason: str | None = None  # "busy" | "timeout" | "duplicate" | "error"


class RejectReason:
    BUSY = "busy"
    TIMEOUT = "timeout"
    DUPLICATE = "duplicate"
    ERROR = "error"
