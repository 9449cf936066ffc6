"""
TCP-based file transfer service.

Receives files offered by peers (only after the user accepts them) and
sends local files to peers. Each connection carries exactly one file:

    sender                         receiver
      | -- offer header \\0 -------> |   offer presented to the user
      | <------- ack header \\0 ---- |   {"accepted": true|false}
      | -- fileSize raw bytes -----> |   only when accepted
      | -- close ------------------> |

Only one offer is presented to the user at a time; further offers wait
unread (so TCP backpressure holds their senders) in arrival order.
"""

import asyncio
import logging
import os
import stat
import uuid
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO

from fileway.config import (
    CHUNK_SIZE,
    CONNECT_TIMEOUT,
    DEFAULT_RECEIVE_DIR,
    MAX_HEADER_SIZE,
    OFFER_QUEUE_LIMIT,
    OFFER_TIMEOUT,
    STALL_TIMEOUT,
    TRANSFER_PORT,
)
from fileway.events import EventChannel, EventType
from fileway.transfer.errors import TransferError
from fileway.transfer.models import (
    AckHeader,
    OfferHeader,
    RejectReason,
    SendResult,
    TransferDescriptor,
    TransferDirection,
    TransferState,
)
from fileway.transfer.protocol import compute_progress, recv_frame, safe_filename, send_frame

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class InboundTransfer:
    """Receiver-side state of one inbound connection."""
    descriptor: TransferDescriptor
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    decision: asyncio.Future
    presented: asyncio.Event = field(default_factory=asyncio.Event)
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    task: asyncio.Task | None = None
    file: BinaryIO | None = None
    file_path: Path | None = None
    cancelled: bool = False

    @property
    def transfer_id(self) -> str:
        return self.descriptor.transfer_id


class TransferService:
    """Consent-based file transfer over TCP."""

    def __init__(
        self,
        port: int = TRANSFER_PORT,
        host: str = "0.0.0.0",
        receive_path: str = DEFAULT_RECEIVE_DIR,
        chunk_size: int = CHUNK_SIZE,
        max_header_size: int = MAX_HEADER_SIZE,
        offer_timeout: float | None = OFFER_TIMEOUT,
        stall_timeout: float | None = STALL_TIMEOUT,
        connect_timeout: float | None = CONNECT_TIMEOUT,
        offer_queue_limit: int = OFFER_QUEUE_LIMIT,
        peer_port: int = TRANSFER_PORT,
        events: EventChannel | None = None,
    ) -> None:
        self.port = port
        self.host = host
        self.peer_port = peer_port
        self.chunk_size = chunk_size
        self.max_header_size = max_header_size
        self.offer_timeout = offer_timeout
        self.stall_timeout = stall_timeout
        self.connect_timeout = connect_timeout
        self.offer_queue_limit = offer_queue_limit
        self.events = events if events is not None else EventChannel()

        self._receive_path = str(receive_path)
        self._email = ""
        self._server: asyncio.Server | None = None
        self._handlers: set[asyncio.Task] = set()

        # Guards the offer slot, the offer queue and the active map
        self._lock = asyncio.Lock()
        self._presented: InboundTransfer | None = None
        self._queue: deque[InboundTransfer] = deque()
        self._active: dict[str, InboundTransfer] = {}
        self._outbound: dict[str, TransferDescriptor] = {}

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def email(self) -> str:
        return self._email

    def get_receive_path(self) -> str:
        return self._receive_path

    def set_receive_path(self, path: str) -> None:
        try:
            os.makedirs(path, exist_ok=True)
        except OSError as e:
            raise TransferError(f"Cannot create receive directory {path}: {e}") from e
        self._receive_path = str(path)

    def get_transfers(self) -> list[TransferDescriptor]:
        """Snapshot of every transfer that has not reached a terminal state."""
        inbound = list(self._queue) + list(self._active.values())
        if self._presented:
            inbound.insert(0, self._presented)
        descriptors = [t.descriptor for t in inbound] + list(self._outbound.values())
        return [d.model_copy() for d in descriptors]

    # --- Server lifecycle ---

    async def start_server(self, email: str) -> None:
        """Listen for inbound offers on the transfer port."""
        if self._server:
            return

        self._email = email
        self.set_receive_path(self._receive_path)

        try:
            self._server = await asyncio.start_server(
                self._handle_connection,
                self.host,
                self.port,
                reuse_address=True,
            )
        except OSError as e:
            raise TransferError(f"Cannot listen on {self.host}:{self.port}: {e}") from e

        self.port = self._server.sockets[0].getsockname()[1]
        logger.info(f"Transfer receiver listening on port {self.port}")

    async def stop_server(self) -> None:
        """Stop listening and drop every inbound connection."""
        if not self._server:
            return

        server = self._server
        self._server = None
        server.close()

        handlers = list(self._handlers)
        for task in handlers:
            task.cancel()
        if handlers:
            await asyncio.gather(*handlers, return_exceptions=True)

        await server.wait_closed()
        logger.info("Transfer receiver stopped")

    # --- Receiving ---

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Run one inbound connection from offer header to terminal state."""
        task = asyncio.current_task()
        self._handlers.add(task)
        peer = writer.get_extra_info("peername") or ("unknown", 0)
        inbound: InboundTransfer | None = None

        try:
            try:
                header = await asyncio.wait_for(
                    recv_frame(reader, OfferHeader, self.max_header_size),
                    self.stall_timeout,
                )
            except (TransferError, OSError, asyncio.TimeoutError) as e:
                logger.warning(f"Dropping connection from {peer[0]}: {e}")
                return

            descriptor = TransferDescriptor(
                transfer_id=header.transfer_id,
                file_name=header.file_name,
                file_size=header.file_size,
                sender_email=header.sender_email,
                direction=TransferDirection.RECEIVE,
                state=TransferState.HEADER_PENDING,
                peer_ip=peer[0],
            )
            inbound = InboundTransfer(
                descriptor=descriptor,
                reader=reader,
                writer=writer,
                decision=asyncio.get_running_loop().create_future(),
                task=task,
            )

            async with self._lock:
                reason = self._enqueue(inbound)
            if reason:
                logger.info(f"Refusing offer {header.transfer_id} from {peer[0]}: {reason}")
                descriptor.state = TransferState.REJECTED
                await send_frame(writer, AckHeader(accepted=False, reason=reason))
                return

            await inbound.presented.wait()
            try:
                accepted = await asyncio.wait_for(
                    asyncio.shield(inbound.decision), self.offer_timeout
                )
            except asyncio.TimeoutError:
                accepted = await self._expire_offer(inbound)

            if accepted:
                await self._receive_stream(inbound)

        except asyncio.CancelledError:
            if inbound and not inbound.cancelled:
                self._fail(inbound.descriptor, "Receiver stopped")
            raise
        except (TransferError, OSError) as e:
            if inbound:
                self._fail(inbound.descriptor, str(e))
            else:
                logger.warning(f"Connection from {peer[0]} failed: {e}")
        finally:
            self._handlers.discard(task)
            if inbound:
                await self._release(inbound)
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass

    def _enqueue(self, inbound: InboundTransfer) -> str | None:
        """Present or queue an offer. Returns a reject reason when refused."""
        if self._is_known(inbound.transfer_id):
            return RejectReason.DUPLICATE
        if self._presented is None:
            self._present(inbound)
            return None
        if len(self._queue) >= self.offer_queue_limit:
            return RejectReason.BUSY

        inbound.descriptor.state = TransferState.QUEUED
        self._queue.append(inbound)
        logger.info(
            f"Offer {inbound.transfer_id} queued behind "
            f"{self._presented.transfer_id} ({len(self._queue)} waiting)"
        )
        return None

    def _is_known(self, transfer_id: str) -> bool:
        if self._presented and self._presented.transfer_id == transfer_id:
            return True
        if any(t.transfer_id == transfer_id for t in self._queue):
            return True
        return transfer_id in self._active or transfer_id in self._outbound

    def _present(self, inbound: InboundTransfer) -> None:
        self._presented = inbound
        descriptor = inbound.descriptor
        descriptor.state = TransferState.OFFER_PRESENTED
        inbound.presented.set()
        logger.info(
            f"Incoming offer {descriptor.transfer_id}: '{descriptor.file_name}' "
            f"({descriptor.file_size} bytes) from {descriptor.sender_email}"
        )
        self.events.publish(EventType.TRANSFER_OFFERED, {
            "transfer_id": descriptor.transfer_id,
            "sender_email": descriptor.sender_email,
            "file_name": descriptor.file_name,
            "file_size": descriptor.file_size,
        })

    def _present_next(self) -> None:
        while self._presented is None and self._queue:
            self._present(self._queue.popleft())

    def _claim_path(self, file_name: str) -> Path:
        """Destination for *file_name* that no active transfer is writing to.

        Existing files are overwritten; only in-flight name clashes get a
        numbered name such as ``f (1).bin``.
        """
        directory = Path(self._receive_path)
        name = safe_filename(file_name)
        taken = {t.file_path for t in self._active.values()}
        stem, suffix = os.path.splitext(name)
        path = directory / name
        n = 1
        while path in taken:
            path = directory / f"{stem} ({n}){suffix}"
            n += 1
        return path

    def _take_presented(self, transfer_id: str) -> InboundTransfer | None:
        """Remove the presented offer if it has *transfer_id*."""
        inbound = self._presented
        if inbound is None or inbound.transfer_id != transfer_id:
            return None
        self._presented = None
        self._present_next()
        return inbound

    async def _expire_offer(self, inbound: InboundTransfer) -> bool:
        """No decision in time: refuse the offer unless one is in flight."""
        async with self._lock:
            expired = self._take_presented(inbound.transfer_id) is inbound
        if not expired:
            return await inbound.decision

        logger.warning(f"Offer {inbound.transfer_id} timed out waiting for a decision")
        self._fail(inbound.descriptor, f"No decision within {self.offer_timeout}s")
        await send_frame(inbound.writer, AckHeader(accepted=False, reason=RejectReason.TIMEOUT))
        _decide(inbound, False)
        return False

    async def accept_transfer(self, transfer_id: str) -> bool:
        """Accept the presented offer and start streaming it to disk."""
        async with self._lock:
            inbound = self._take_presented(transfer_id)
            if inbound is None:
                return False
            # Claimed under the lock so concurrent accepts never share a path
            file_path = self._claim_path(inbound.descriptor.file_name)
            inbound.file_path = file_path
            inbound.descriptor.state = TransferState.ACCEPTED
            self._active[transfer_id] = inbound

        descriptor = inbound.descriptor
        try:
            inbound.file = await asyncio.to_thread(open, file_path, "wb")
        except OSError as e:
            async with self._lock:
                self._active.pop(transfer_id, None)
            self._fail(descriptor, f"Cannot open {file_path}: {e}")
            try:
                await send_frame(inbound.writer, AckHeader(accepted=False, reason=RejectReason.ERROR))
            except OSError as send_error:
                logger.warning(f"Could not refuse {transfer_id}: {send_error}")
            _decide(inbound, False)
            raise TransferError(f"Cannot open {file_path}: {e}") from e

        if inbound.decision.done():
            # The connection went away while the file was being opened
            async with self._lock:
                self._active.pop(transfer_id, None)
            await _close_file(inbound)
            raise TransferError(f"Connection for {transfer_id} closed before it was accepted")

        try:
            await send_frame(inbound.writer, AckHeader(accepted=True))
        except OSError as e:
            # The stream loop will see the dead connection and fail the transfer
            logger.warning(f"Could not acknowledge {transfer_id}: {e}")

        descriptor.state = TransferState.STREAMING
        _decide(inbound, True)
        logger.info(f"Accepted '{descriptor.file_name}' into {file_path}")
        return True

    async def reject_transfer(self, transfer_id: str) -> bool:
        """Refuse the presented offer and close its connection."""
        async with self._lock:
            inbound = self._take_presented(transfer_id)
        if inbound is None:
            return False

        descriptor = inbound.descriptor
        descriptor.state = TransferState.REJECTED
        try:
            await send_frame(inbound.writer, AckHeader(accepted=False))
        except OSError as e:
            logger.warning(f"Could not send rejection for {transfer_id}: {e}")
        _decide(inbound, False)

        logger.info(f"Rejected '{descriptor.file_name}' from {descriptor.sender_email}")
        self.events.publish(EventType.TRANSFER_REJECTED, {
            "transfer_id": transfer_id,
            "file_name": descriptor.file_name,
            "direction": descriptor.direction.value,
        })
        return True

    async def cancel_transfer(self, transfer_id: str) -> bool:
        """Stop an inbound stream and delete the partial file."""
        async with self._lock:
            inbound = self._active.get(transfer_id)
            if inbound is None or inbound.descriptor.state != TransferState.STREAMING:
                return False
            del self._active[transfer_id]
            inbound.cancelled = True
            inbound.descriptor.state = TransferState.CANCELLED

        # Waits for an in-flight chunk write before releasing the file
        async with inbound.write_lock:
            await _close_file(inbound)

        inbound.writer.close()
        task = inbound.task
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        try:
            await asyncio.to_thread(os.remove, inbound.file_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise TransferError(f"Cannot delete partial file {inbound.file_path}: {e}") from e
        finally:
            logger.info(f"Cancelled '{inbound.descriptor.file_name}'")
            self.events.publish(EventType.TRANSFER_CANCELLED, {
                "transfer_id": transfer_id,
                "file_name": inbound.descriptor.file_name,
            })
        return True

    async def _receive_stream(self, inbound: InboundTransfer) -> None:
        """Append inbound bytes to the destination file until fileSize is reached."""
        descriptor = inbound.descriptor
        total = descriptor.file_size
        last_progress = None

        if total == 0:
            last_progress = self._report_progress(descriptor, last_progress)

        while descriptor.transferred_bytes < total:
            wanted = min(self.chunk_size, total - descriptor.transferred_bytes)
            try:
                chunk = await asyncio.wait_for(inbound.reader.read(wanted), self.stall_timeout)
            except asyncio.TimeoutError:
                raise TransferError(
                    f"No data for {self.stall_timeout}s after "
                    f"{descriptor.transferred_bytes} of {total} bytes"
                )
            if not chunk:
                raise TransferError(
                    f"Connection closed after {descriptor.transferred_bytes} of {total} bytes"
                )

            async with inbound.write_lock:
                if inbound.cancelled:
                    return
                await asyncio.to_thread(inbound.file.write, chunk)

            descriptor.transferred_bytes += len(chunk)
            last_progress = self._report_progress(descriptor, last_progress)

        # Completion and cancellation race for the same lock; only one wins
        async with self._lock:
            if inbound.cancelled:
                return
            self._active.pop(descriptor.transfer_id, None)
            descriptor.state = TransferState.COMPLETED

        async with inbound.write_lock:
            await _close_file(inbound)
        logger.info(f"Received '{descriptor.file_name}' ({total} bytes)")
        self.events.publish(EventType.TRANSFER_COMPLETED, {
            "transfer_id": descriptor.transfer_id,
            "file_name": descriptor.file_name,
            "file_path": str(inbound.file_path),
            "file_size": total,
        })

    async def _release(self, inbound: InboundTransfer) -> None:
        """Drop every reference the service holds to a finished connection."""
        async with self._lock:
            if self._presented is inbound:
                self._presented = None
                self._present_next()
            if inbound in self._queue:
                self._queue.remove(inbound)
            if self._active.get(inbound.transfer_id) is inbound:
                del self._active[inbound.transfer_id]
        _decide(inbound, False)
        async with inbound.write_lock:
            await _close_file(inbound)

    # --- Sending ---

    async def send_file(
        self,
        destination_ip: str,
        local_file_path: str,
        sender_email: str | None = None,
        port: int | None = None,
    ) -> SendResult:
        """
        Offer a local file to a peer and stream it if the peer accepts.

        Args:
            destination_ip: IP address of the receiving device.
            local_file_path: Path of the file to send.
            sender_email: Identity shown to the receiver (defaults to ours).
            port: Receiver's transfer port (defaults to ``peer_port``).

        Raises:
            TransferError: the file is unreadable or the connection failed
                at any stage. Nothing is retried.
        """
        path = Path(local_file_path)
        try:
            info = await asyncio.to_thread(path.stat)
        except OSError as e:
            raise TransferError(f"Cannot read {path}: {e}") from e
        if not stat.S_ISREG(info.st_mode):
            raise TransferError(f"{path} is not a regular file")

        descriptor = TransferDescriptor(
            transfer_id=str(uuid.uuid4()),
            file_name=path.name,
            file_size=info.st_size,
            sender_email=sender_email if sender_email is not None else self._email,
            direction=TransferDirection.SEND,
            peer_ip=destination_ip,
        )
        transfer_id = descriptor.transfer_id
        self._outbound[transfer_id] = descriptor
        writer: asyncio.StreamWriter | None = None

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(destination_ip, port or self.peer_port),
                self.connect_timeout,
            )

            await send_frame(writer, OfferHeader(
                transfer_id=transfer_id,
                file_name=descriptor.file_name,
                file_size=descriptor.file_size,
                sender_email=descriptor.sender_email,
            ))
            descriptor.state = TransferState.OFFER_PRESENTED

            ack = await recv_frame(reader, AckHeader, self.max_header_size)
            if not ack.accepted:
                descriptor.state = TransferState.REJECTED
                logger.info(f"'{descriptor.file_name}' rejected by {destination_ip} ({ack.reason or 'declined'})")
                self.events.publish(EventType.TRANSFER_REJECTED, {
                    "transfer_id": transfer_id,
                    "file_name": descriptor.file_name,
                    "direction": descriptor.direction.value,
                    "reason": ack.reason,
                })
                return SendResult(accepted=False, transfer_id=transfer_id, reason=ack.reason)

            descriptor.state = TransferState.ACCEPTED
            self.events.publish(EventType.TRANSFER_ACCEPTED, {
                "transfer_id": transfer_id,
                "file_name": descriptor.file_name,
            })

            descriptor.state = TransferState.STREAMING
            await self._send_stream(path, writer, descriptor)

            descriptor.state = TransferState.COMPLETED
            logger.info(f"Sent '{descriptor.file_name}' to {destination_ip}")
            self.events.publish(EventType.SEND_COMPLETED, {
                "transfer_id": transfer_id,
                "file_name": descriptor.file_name,
                "file_path": str(path),
            })
            return SendResult(accepted=True, transfer_id=transfer_id)

        except (TransferError, OSError, asyncio.TimeoutError) as e:
            reason = str(e) or type(e).__name__
            self._fail(descriptor, reason)
            raise TransferError(
                f"Sending '{descriptor.file_name}' to {destination_ip} failed: {reason}"
            ) from e
        finally:
            self._outbound.pop(transfer_id, None)
            if writer:
                writer.close()
                try:
                    await writer.wait_closed()
                except Exception:
                    pass

    async def _send_stream(
        self, path: Path, writer: asyncio.StreamWriter, descriptor: TransferDescriptor
    ) -> None:
        """Write exactly fileSize bytes, awaiting drain after every chunk."""
        total = descriptor.file_size
        last_progress = None

        if total == 0:
            self._report_progress(descriptor, last_progress)
            return

        with open(path, "rb") as f:
            while descriptor.transferred_bytes < total:
                wanted = min(self.chunk_size, total - descriptor.transferred_bytes)
                chunk = await asyncio.to_thread(f.read, wanted)
                if not chunk:
                    raise TransferError(
                        f"{path.name} shrank to {descriptor.transferred_bytes} bytes during the transfer"
                    )

                writer.write(chunk)
                await writer.drain()

                descriptor.transferred_bytes += len(chunk)
                last_progress = self._report_progress(descriptor, last_progress)

    # --- Helpers ---

    def _report_progress(self, descriptor: TransferDescriptor, last: int | None) -> int:
        """Publish progress when the whole-number percentage changes."""
        progress = compute_progress(descriptor.transferred_bytes, descriptor.file_size)
        descriptor.progress = progress
        if progress != last:
            self.events.publish(EventType.TRANSFER_PROGRESS, {
                "transfer_id": descriptor.transfer_id,
                "bytes": descriptor.transferred_bytes,
                "total": descriptor.file_size,
                "progress": progress,
                "direction": descriptor.direction.value,
            })
        return progress

    def _fail(self, descriptor: TransferDescriptor, message: str) -> None:
        if descriptor.state.is_terminal:
            return
        descriptor.state = TransferState.FAILED
        descriptor.error_message = message
        logger.error(f"Transfer of '{descriptor.file_name}' failed: {message}")
        self.events.publish(EventType.TRANSFER_FAILED, {
            "transfer_id": descriptor.transfer_id,
            "file_name": descriptor.file_name,
            "direction": descriptor.direction.value,
            "error": message,
        })


def _decide(inbound: InboundTransfer, accepted: bool) -> None:
    if not inbound.decision.done():
        inbound.decision.set_result(accepted)


async def _close_file(inbound: InboundTransfer) -> None:
    if inbound.file is not None:
        f, inbound.file = inbound.file, None
        await asyncio.to_thread(f.close)
