"""RTC join-token issuance.

Tokens use the media provider's "006" layout and are verified by the
provider, so every byte below has to stay exactly as it is::

    "006" + app_id + base64(
        u16 len(signature) + signature      # HMAC-SHA256(app_certificate, app_id + channel + uid + m)
        + u32 crc32(channel) + u32 crc32(uid)
        + u16 len(m) + m                    # m = salt, expiry, {privilege: expiry}
    )

All integers are little-endian. A uid of 0 means "assign on join" and is
encoded as the empty string.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import secrets
import struct
import time
import zlib
from dataclasses import dataclass, field
from datetime import timedelta

from ..core import config

logger = logging.getLogger(__name__)

VERSION = "006"
APP_ID_LENGTH = 32
PRIVILEGE_JOIN_CHANNEL = 1
MESSAGE_TTL = timedelta(hours=24)
PRIVILEGE_TTL = timedelta(hours=1)
UINT32_MAX = 0xFFFFFFFF


class CredentialConfigurationError(RuntimeError):
    """Raised when signed tokens are required but the app secrets are missing."""


@dataclass(slots=True)
class RtcToken:
    token: str
    app_id: str
    channel_id: str
    uid: int
    expires_in: int

    @property
    def signed(self) -> bool:
        return bool(self.token)


@dataclass(slots=True)
class PrivilegeMessage:
    salt: int
    expires_at: int
    privileges: dict[int, int] = field(default_factory=dict)

    def pack(self) -> bytes:
        parts = [struct.pack("<IIH", self.salt, self.expires_at, len(self.privileges))]
        for kind, expires_at in sorted(self.privileges.items()):
            parts.append(struct.pack("<HI", kind, expires_at))
        return b"".join(parts)

    @classmethod
    def unpack(cls, data: bytes) -> "PrivilegeMessage":
        try:
            salt, expires_at, count = struct.unpack_from("<IIH", data, 0)
            offset = struct.calcsize("<IIH")
            privileges: dict[int, int] = {}
            for _ in range(count):
                kind, privilege_expiry = struct.unpack_from("<HI", data, offset)
                privileges[kind] = privilege_expiry
                offset += struct.calcsize("<HI")
        except struct.error as exc:
            raise ValueError(f"Truncated privilege message: {exc}") from exc
        if offset != len(data):
            raise ValueError("Trailing bytes after privilege message")
        return cls(salt=salt, expires_at=expires_at, privileges=privileges)


@dataclass(slots=True)
class DecodedToken:
    version: str
    app_id: str
    signature: bytes
    crc_channel: int
    crc_uid: int
    message: PrivilegeMessage
    raw_message: bytes


def uid_text(uid: int) -> str:
    return "" if uid == 0 else str(uid)


def crc32(text: str) -> int:
    return zlib.crc32(text.encode("utf-8")) & UINT32_MAX


def sign(app_id: str, app_certificate: str, channel_id: str, uid: int, message: bytes) -> bytes:
    payload = app_id.encode("utf-8") + channel_id.encode("utf-8") + uid_text(uid).encode("utf-8") + message
    return hmac.new(app_certificate.encode("utf-8"), payload, hashlib.sha256).digest()


def _pack_bytes(value: bytes) -> bytes:
    return struct.pack("<H", len(value)) + value


def build_token(
    app_id: str,
    app_certificate: str,
    channel_id: str,
    uid: int = 0,
    *,
    salt: int | None = None,
    now: int | None = None,
) -> str:
    """Encode a join-channel token; returns "" when no certificate is configured."""

    if not app_certificate:
        return ""
    if not 0 <= uid <= UINT32_MAX:
        raise ValueError(f"uid {uid} does not fit in 32 bits")

    issued_at = int(time.time()) if now is None else now
    message = PrivilegeMessage(
        salt=secrets.randbits(32) if salt is None else salt,
        expires_at=(issued_at + int(MESSAGE_TTL.total_seconds())) & UINT32_MAX,
        privileges={PRIVILEGE_JOIN_CHANNEL: (issued_at + int(PRIVILEGE_TTL.total_seconds())) & UINT32_MAX},
    )
    raw_message = message.pack()
    signature = sign(app_id, app_certificate, channel_id, uid, raw_message)

    content = (
        _pack_bytes(signature)
        + struct.pack("<II", crc32(channel_id), crc32(uid_text(uid)))
        + _pack_bytes(raw_message)
    )
    return f"{VERSION}{app_id}{base64.b64encode(content).decode('ascii')}"


def parse_token(token: str, app_id_length: int = APP_ID_LENGTH) -> DecodedToken:
    """Split a token back into its fields. Raises ``ValueError`` on malformed input."""

    if not token.startswith(VERSION):
        raise ValueError("Unsupported token version")
    body = token[len(VERSION):]
    if len(body) <= app_id_length:
        raise ValueError("Token is too short")
    app_id, encoded = body[:app_id_length], body[app_id_length:]
    try:
        content = base64.b64decode(encoded, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"Token content is not base64: {exc}") from exc

    try:
        (signature_length,) = struct.unpack_from("<H", content, 0)
        offset = 2
        signature = content[offset:offset + signature_length]
        offset += signature_length
        crc_channel, crc_uid, message_length = struct.unpack_from("<IIH", content, offset)
        offset += struct.calcsize("<IIH")
    except struct.error as exc:
        raise ValueError(f"Truncated token content: {exc}") from exc
    raw_message = content[offset:offset + message_length]
    if len(signature) != signature_length or len(raw_message) != message_length:
        raise ValueError("Truncated token content")

    return DecodedToken(
        version=VERSION,
        app_id=app_id,
        signature=signature,
        crc_channel=crc_channel,
        crc_uid=crc_uid,
        message=PrivilegeMessage.unpack(raw_message),
        raw_message=raw_message,
    )


def verify_token(
    token: str,
    app_certificate: str,
    channel_id: str,
    uid: int = 0,
    *,
    now: int | None = None,
) -> bool:
    """Check signature, checksums and both expiries the way the media provider does."""

    try:
        decoded = parse_token(token)
    except ValueError:
        return False

    expected = sign(decoded.app_id, app_certificate, channel_id, uid, decoded.raw_message)
    if not hmac.compare_digest(expected, decoded.signature):
        return False
    if decoded.crc_channel != crc32(channel_id) or decoded.crc_uid != crc32(uid_text(uid)):
        return False

    current = int(time.time()) if now is None else now
    if current >= decoded.message.expires_at:
        return False
    privilege_expiry = decoded.message.privileges.get(PRIVILEGE_JOIN_CHANNEL)
    return privilege_expiry is not None and current < privilege_expiry


def ensure_configured(settings: config.Settings) -> None:
    """Fail fast when signed tokens are mandatory but the secrets are missing."""

    if settings.agora_app_certificate and not settings.agora_app_id:
        raise CredentialConfigurationError("AGORA_APP_CERTIFICATE is set but AGORA_APP_ID is missing")
    if settings.require_signed_tokens and not settings.agora_app_certificate:
        raise CredentialConfigurationError("Signed tokens are required but AGORA_APP_CERTIFICATE is missing")


async def issue_token(channel_id: str, uid: int = 0) -> RtcToken:
    """Produce a join token for ``channel_id`` with the configured app secrets.

    Without a certificate the token is empty, which the media provider accepts
    for projects running in testing mode.
    """

    settings = config.settings
    ensure_configured(settings)

    if not settings.agora_app_certificate:
        logger.warning("No app certificate configured; issuing unsigned token for %s", channel_id)
        return RtcToken(token="", app_id=settings.agora_app_id, channel_id=channel_id, uid=uid, expires_in=0)

    token = build_token(settings.agora_app_id, settings.agora_app_certificate, channel_id, uid)
    return RtcToken(
        token=token,
        app_id=settings.agora_app_id,
        channel_id=channel_id,
        uid=uid,
        expires_in=int(PRIVILEGE_TTL.total_seconds()),
    )
