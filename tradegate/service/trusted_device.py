from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from tradegate.config import Settings
from tradegate.logging import get_logger
from tradegate.service.errors import NotFoundError
from tradegate.service.passwords import keyed_token_hash
from tradegate.storage.models import TrustedDevice, new_id, utcnow

logger = get_logger(__name__)

DEVICE_TRUST_COOKIE = "device_trust"
UNKNOWN_DEVICE = "Unknown Device"


def _parse_browser(user_agent: str) -> Optional[str]:
    # order matters: Edge and Opera UAs also contain "Chrome/"
    if "Edg/" in user_agent:
        return "Edge"
    if "OPR/" in user_agent or "Opera" in user_agent:
        return "Opera"
    if "Chrome/" in user_agent and "Chromium/" not in user_agent:
        return "Chrome"
    if "Safari/" in user_agent and "Chrome/" not in user_agent:
        return "Safari"
    if "Firefox/" in user_agent:
        return "Firefox"
    if "MSIE" in user_agent or "Trident/" in user_agent:
        return "IE"
    return None


def _parse_os(user_agent: str) -> Optional[str]:
    if "iPhone" in user_agent or "iPad" in user_agent:
        return "iOS"
    if "Android" in user_agent:
        return "Android"
    if "Mac OS X" in user_agent or "Macintosh" in user_agent:
        return "MacOS"
    if "Windows" in user_agent:
        return "Windows"
    if "Linux" in user_agent:
        return "Linux"
    if "CrOS" in user_agent:
        return "ChromeOS"
    return None


def device_name(user_agent: Optional[str]) -> str:
    """Human-readable label such as ``"Chrome on MacOS"``."""
    if not user_agent or not user_agent.strip():
        return UNKNOWN_DEVICE
    browser = _parse_browser(user_agent)
    os_name = _parse_os(user_agent)
    if browser and os_name:
        return f"{browser} on {os_name}"
    if browser:
        return browser
    if os_name:
        return f"Browser on {os_name}"
    return UNKNOWN_DEVICE


class TrustedDeviceService:
    """Browsers remembered as having passed the second factor."""

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def _hash(self, token: str) -> str:
        return keyed_token_hash(self.settings.token_secret, token)

    def trust(
        self,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[str, TrustedDevice]:
        """Create a device record; the plaintext token is returned once, for the cookie."""
        now = now or utcnow()
        token = secrets.token_hex(64)
        device = TrustedDevice(
            id=new_id(),
            user_id=user_id,
            token_hash=self._hash(token),
            name=device_name(user_agent),
            expires_at=now + timedelta(days=self.settings.trusted_device_days),
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
            last_used_at=now,
        )
        self.store.save_trusted_device(device)
        logger.info("device_trusted", user_id=user_id, device_id=device.id, name=device.name)
        return token, device

    def verify(
        self, user_id: str, token: Optional[str], *, now: Optional[datetime] = None
    ) -> Optional[TrustedDevice]:
        if not token:
            return None
        now = now or utcnow()
        device = self.store.get_trusted_device_by_hash(user_id, self._hash(token))
        if not device:
            return None
        if device.expires_at <= now:
            self.store.delete_trusted_device(device.id)
            logger.info("trusted_device_expired", user_id=user_id, device_id=device.id)
            return None
        self.store.touch_trusted_device(device.id, now)
        return device

    def list_for_user(self, user_id: str) -> List[TrustedDevice]:
        now = utcnow()
        return [d for d in self.store.list_trusted_devices(user_id) if d.expires_at > now]

    def revoke(self, user_id: str, device_id: str) -> None:
        owned = {d.id for d in self.store.list_trusted_devices(user_id)}
        if device_id not in owned or not self.store.delete_trusted_device(device_id):
            raise NotFoundError("Device not found", detail={"device_id": device_id})
        logger.info("trusted_device_revoked", user_id=user_id, device_id=device_id)

    def revoke_all(self, user_id: str) -> int:
        count = self.store.delete_user_trusted_devices(user_id)
        if count:
            logger.info("trusted_devices_revoked", user_id=user_id, count=count)
        return count
