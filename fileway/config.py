"""Application-wide configuration constants.

Every value can be overridden through a ``FILEWAY_*`` environment variable;
the services also accept each one as a keyword argument.
"""

import os
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


# --- Identity ---
CONFIG_DIR = Path(os.environ.get("FILEWAY_HOME", Path.home() / ".fileway"))
PROFILE_FILE = "profile.json"

# --- Networking ---
API_HOST = os.environ.get("FILEWAY_API_HOST", "127.0.0.1")
API_PORT = _env_int("FILEWAY_API_PORT", 8765)
DISCOVERY_PORT = _env_int("FILEWAY_DISCOVERY_PORT", 41234)  # UDP
TRANSFER_PORT = _env_int("FILEWAY_TRANSFER_PORT", 41235)  # TCP
LIMITED_BROADCAST = "255.255.255.255"

# --- Discovery ---
BROADCAST_INTERVAL = _env_float("FILEWAY_BROADCAST_INTERVAL", 3)  # seconds
SWEEP_INTERVAL = _env_float("FILEWAY_SWEEP_INTERVAL", 5)  # seconds
DEVICE_TIMEOUT = _env_float("FILEWAY_DEVICE_TIMEOUT", 10)  # seconds before a device is dropped

# --- Transfer ---
CHUNK_SIZE = 64 * 1024  # 64 KB
MAX_HEADER_SIZE = 64 * 1024
OFFER_TIMEOUT = _env_float("FILEWAY_OFFER_TIMEOUT", 120)  # seconds a user has to decide
STALL_TIMEOUT = _env_float("FILEWAY_STALL_TIMEOUT", 30)  # seconds without inbound bytes
CONNECT_TIMEOUT = _env_float("FILEWAY_CONNECT_TIMEOUT", 10)
OFFER_QUEUE_LIMIT = _env_int("FILEWAY_OFFER_QUEUE_LIMIT", 8)

# --- Events ---
EVENT_QUEUE_SIZE = 1024

# --- Storage ---
DEFAULT_RECEIVE_DIR = str(Path.home() / "Downloads" / "Fileway")
