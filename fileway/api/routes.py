"""REST API routes for the Fileway UI."""

import logging
import os

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from fileway.transfer.errors import TransferError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# Injected by main.create_app()
_host = None


def init_routes(host) -> None:
    """Inject the service host into the routes module."""
    global _host
    _host = host


# --- Session ---

class SessionBody(BaseModel):
    email: str


@router.post("/session/start")
async def start_session(body: SessionBody):
    """Sign in and start discovery and the transfer receiver."""
    try:
        await _host.start(body.email)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (TransferError, OSError) as e:
        raise HTTPException(status_code=500, detail=f"Could not start services: {e}")
    return {"status": "started"}


@router.post("/session/logout")
async def logout():
    await _host.logout()
    return {"status": "logged_out"}


# --- Device Discovery ---

@router.get("/devices")
async def list_devices():
    """Return the devices currently visible on the LAN."""
    devices = _host.discovery.get_device_list()
    return {"devices": [d.model_dump() for d in devices]}


@router.get("/devices/by-email/{email}")
async def find_device_by_email(email: str):
    device = _host.discovery.find_by_email(email)
    if not device:
        raise HTTPException(status_code=404, detail="Device not found")
    return {"device": device.model_dump()}


# --- Transfers ---

class SendBody(BaseModel):
    device_id: str
    file_path: str


@router.get("/transfers")
async def list_transfers():
    """Return offers awaiting a decision and transfers in progress."""
    transfers = _host.transfer.get_transfers()
    return {"transfers": [t.model_dump() for t in transfers]}


@router.post("/transfers")
async def send_file(body: SendBody):
    """Offer a local file to a discovered device and wait for the outcome."""
    if not os.path.isfile(body.file_path):
        raise HTTPException(status_code=400, detail="File not found")

    try:
        result = await _host.send_to_device(body.device_id, body.file_path)
    except LookupError:
        raise HTTPException(status_code=404, detail="Device not found")
    except TransferError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return result.model_dump()


@router.post("/transfers/{transfer_id}/accept")
async def accept_transfer(transfer_id: str):
    try:
        success = await _host.transfer.accept_transfer(transfer_id)
    except TransferError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"success": success}


@router.post("/transfers/{transfer_id}/reject")
async def reject_transfer(transfer_id: str):
    return {"success": await _host.transfer.reject_transfer(transfer_id)}


@router.post("/transfers/{transfer_id}/cancel")
async def cancel_transfer(transfer_id: str):
    try:
        success = await _host.transfer.cancel_transfer(transfer_id)
    except TransferError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"success": success}


# --- Settings ---

class SettingsBody(BaseModel):
    device_name: str | None = None
    email: str | None = None
    receive_path: str | None = None


@router.get("/settings")
async def get_settings():
    profile = _host.store.profile
    return {
        "device_id": profile.device_id,
        "device_name": profile.device_name,
        "email": profile.email,
        "receive_path": _host.transfer.get_receive_path(),
    }


@router.put("/settings")
async def update_settings(body: SettingsBody):
    if body.receive_path is not None:
        try:
            _host.set_receive_path(body.receive_path)
        except TransferError as e:
            raise HTTPException(status_code=400, detail=f"Invalid directory: {e}")
    if body.device_name is not None or body.email is not None:
        _host.update_identity(device_name=body.device_name, email=body.email)
    return {"status": "updated"}
