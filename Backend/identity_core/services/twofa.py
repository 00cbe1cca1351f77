"""
Two-factor building blocks.

- TOTP secrets, provisioning URIs and QR codes (RFC 6238, SHA1, 6 digits, 30s)
- single-use backup codes stored as bcrypt hashes
- trusted devices that skip the second factor until they expire
"""

import base64
import io
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import pyotp
import qrcode
import qrcode.image.svg
import structlog

from identity_core.core.config import settings
from identity_core.core.exceptions import NotFoundError
from identity_core.core.security import PasswordHasher, TokenGenerator
from identity_core.models.identity import TrustedDevice
from identity_core.repositories.base import TrustedDeviceRepository


logger = structlog.get_logger(__name__)

UTC = timezone.utc


# ===========================================
# TOTP
# ===========================================

class TotpService:
    """TOTP secret handling."""

    def __init__(self, issuer_name: Optional[str] = None, valid_window: Optional[int] = None):
        self.issuer_name = issuer_name or settings.twofa.issuer_name
        self.valid_window = settings.twofa.valid_window if valid_window is None else valid_window

    @staticmethod
    def generate_secret() -> str:
        """A 160-bit base32 secret."""
        return pyotp.random_base32(length=32)

    def provisioning_uri(self, secret: str, account_name: str) -> str:
        return pyotp.TOTP(secret).provisioning_uri(name=account_name, issuer_name=self.issuer_name)

    @staticmethod
    def qr_code_data_url(uri: str) -> str:
        """Render the provisioning URI as an SVG data URL."""
        image = qrcode.make(uri, image_factory=qrcode.image.svg.SvgPathImage)
        buffer = io.BytesIO()
        image.save(buffer)
        encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
        return f"data:image/svg+xml;base64,{encoded}"

    def verify(self, secret: Optional[str], code: str, for_time: Optional[datetime] = None) -> bool:
        """Accept the code of the current time step or one step either side."""
        if not secret or not code or not code.isdigit() or len(code) != 6:
            return False
        return pyotp.TOTP(secret).verify(code, for_time=for_time, valid_window=self.valid_window)


# ===========================================
# Backup Codes
# ===========================================

class BackupCodeManager:
    """Generates and consumes hashed single-use backup codes."""

    def __init__(self, hasher: Optional[PasswordHasher] = None, count: Optional[int] = None):
        self.hasher = hasher or PasswordHasher(rounds=settings.security.backup_code_hash_rounds)
        self.count = count or settings.twofa.backup_code_count

    def generate(self) -> tuple[list[str], list[str]]:
        """Return (plaintext codes, hashes). Only the hashes are stored."""
        codes = [TokenGenerator.generate_backup_code() for _ in range(self.count)]
        return codes, [self.hasher.hash(code) for code in codes]

    def consume(self, hashes: Optional[list[str]], code: str) -> Optional[list[str]]:
        """
        Match code against the stored hashes.

        Returns the remaining hashes with the matched one removed, or None if
        no code matched.
        """
        for index, hashed in enumerate(hashes or []):
            if self.hasher.verify(code, hashed):
                return hashes[:index] + hashes[index + 1:]
        return None


# ===========================================
# Trusted Devices
# ===========================================

class TrustedDeviceStore:
    """Trusted device lifecycle with lazy expiry."""

    def __init__(
        self,
        devices: TrustedDeviceRepository,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.devices = devices
        self.clock = clock

    async def create(
        self,
        user_id: uuid.UUID,
        days: int,
        device_name: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TrustedDevice:
        now = self.clock()
        device = TrustedDevice(
            id=uuid.uuid4(),
            user_id=user_id,
            token=TokenGenerator.generate_device_token(),
            device_name=device_name,
            ip_address=ip_address,
            expires_at=now + timedelta(days=days),
            created_at=now,
        )
        device = await self.devices.add(device)
        logger.info("Trusted device registered", user_id=str(user_id), expires_at=device.expires_at.isoformat())
        return device

    async def check(self, token: Optional[str], user_id: uuid.UUID) -> Optional[TrustedDevice]:
        """Return the device if token belongs to user_id and has not expired."""
        if not token:
            return None
        device = await self.devices.find_by_token(token)
        if device is None:
            return None

        now = self.clock()
        if not device.is_valid_for(user_id, now):
            if device.user_id == user_id:
                # Expired: drop it on read
                await self.devices.delete(device)
            return None

        device.last_used_at = now
        await self.devices.save(device)
        return device

    async def list_for_user(self, user_id: uuid.UUID) -> list[TrustedDevice]:
        return await self.devices.list_active_for_user(user_id, self.clock())

    async def revoke(self, user_id: uuid.UUID, device_id: uuid.UUID) -> None:
        device = await self.devices.get(device_id)
        if device is None or device.user_id != user_id:
            raise NotFoundError("Trusted device not found")
        await self.devices.delete(device)

    async def revoke_all(self, user_id: uuid.UUID) -> int:
        count = await self.devices.delete_all_for_user(user_id)
        if count:
            logger.info("Trusted devices revoked", user_id=str(user_id), count=count)
        return count
