"""
Wire protocol helpers for the transfer stream.

Each control message is a UTF-8 JSON document terminated by a single
NUL byte:

    [ N bytes: JSON ][ 0x00 ]

Raw file bytes follow the accept ack with no further framing.
"""

import asyncio
import math
import os
import re

from pydantic import BaseModel, ValidationError

from fileway.config import MAX_HEADER_SIZE
from fileway.transfer.errors import ProtocolError

DELIMITER = b"\x00"

# Windows reserved device names that must never be used as filenames.
_WINDOWS_RESERVED = re.compile(
    r"^(CON|PRN|AUX|NUL|COM[1-9]|LPT[1-9])(\.|$)", re.IGNORECASE
)


def encode_frame(message: BaseModel) -> bytes:
    """Serialize a message with its wire field names plus the delimiter."""
    return message.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8") + DELIMITER


async def send_frame(writer: asyncio.StreamWriter, message: BaseModel) -> None:
    writer.write(encode_frame(message))
    await writer.drain()


async def recv_frame(
    reader: asyncio.StreamReader,
    model: type[BaseModel],
    max_size: int = MAX_HEADER_SIZE,
):
    """Read one delimited frame and parse it as *model*.

    Only bytes up to and including the delimiter are consumed; anything the
    peer sent after it stays buffered in *reader* for the data phase.
    """
    buffer = bytearray()
    while True:
        try:
            chunk = await reader.readuntil(DELIMITER)
        except asyncio.IncompleteReadError as e:
            raise ProtocolError(
                f"Connection closed after {len(buffer) + len(e.partial)} header bytes"
            ) from e
        except asyncio.LimitOverrunError as e:
            # No delimiter within the reader's buffer yet: take what is there
            # and keep scanning
            buffer += await reader.readexactly(e.consumed)
            if len(buffer) > max_size:
                raise ProtocolError(f"Header exceeds {max_size} bytes") from e
            continue

        buffer += chunk[:-1]
        break

    if len(buffer) > max_size:
        raise ProtocolError(f"Header exceeds {max_size} bytes")

    try:
        return model.model_validate_json(bytes(buffer))
    except ValidationError as e:
        raise ProtocolError(f"Invalid {model.__name__}: {e.error_count()} error(s)") from e


def compute_progress(done: int, total: int) -> int:
    """Whole-number percentage, rounded half up and clamped to 0..100."""
    if total <= 0:
        return 100
    percent = math.floor(done * 100 / total + 0.5)
    return max(0, min(100, percent))


def safe_filename(filename: str, fallback: str = "received_file") -> str:
    """Reduce an untrusted file name to a bare name inside the receive dir."""
    name = filename.replace("\x00", "").replace("\\", "/")
    name = os.path.basename(name)
    if name in ("", ".", ".."):
        return fallback
    if _WINDOWS_RESERVED.match(name):
        return fallback
    return name
