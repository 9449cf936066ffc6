"""Local persistence of the device identity and user profile."""

import json
import logging
import platform
import uuid
from pathlib import Path

from pydantic import BaseModel, ValidationError

from fileway.config import CONFIG_DIR, DEFAULT_RECEIVE_DIR, PROFILE_FILE

logger = logging.getLogger(__name__)


class Profile(BaseModel):
    """Who this device is and who is signed in on it."""
    device_id: str
    device_name: str
    email: str | None = None
    receive_path: str = DEFAULT_RECEIVE_DIR


class ProfileStore:
    """Persists the profile as JSON, creating the device identity on first use."""

    def __init__(self, config_dir: Path | str = CONFIG_DIR):
        self._store_path = Path(config_dir) / PROFILE_FILE
        self._profile = self._load()

    def _load(self) -> Profile:
        if self._store_path.exists():
            try:
                data = json.loads(self._store_path.read_text())
                return Profile(**data)
            except (OSError, ValueError, TypeError, ValidationError) as e:
                logger.error(f"Failed to load profile from {self._store_path}: {e}")

        profile = Profile(
            device_id=str(uuid.uuid4()),
            device_name=platform.node() or "Fileway device",
        )
        logger.info(f"Initialized device {profile.device_id} ({profile.device_name})")
        self._save(profile)
        return profile

    def _save(self, profile: Profile) -> None:
        try:
            self._store_path.parent.mkdir(parents=True, exist_ok=True)
            self._store_path.write_text(json.dumps(profile.model_dump(), indent=2))
        except OSError as e:
            logger.error(f"Failed to save profile: {e}")

    def _update(self, **changes) -> Profile:
        self._profile = self._profile.model_copy(update=changes)
        self._save(self._profile)
        return self.profile

    @property
    def profile(self) -> Profile:
        return self._profile.model_copy()

    def is_logged_in(self) -> bool:
        return bool(self._profile.email)

    def set_email(self, email: str) -> Profile:
        return self._update(email=email)

    def set_device_name(self, name: str) -> Profile:
        return self._update(device_name=name)

    def set_receive_path(self, path: str) -> Profile:
        return self._update(receive_path=str(path))

    def logout(self) -> Profile:
        return self._update(email=None)
