"""
QR Token Service

Mints the opaque token printed on every order's QR code and resolves a
scanned code back to exactly one order.

Scanned payloads come in several shapes: a bare token string, raw bytes
from a camera decoder, a JSON object, or an already-parsed mapping. They
are decoded as a small tagged variant with an explicit field priority,
falling back to the raw string when no known field is present.

Author: Khalil Bannouri
Version: 4.0.0
"""

import enum
import json
import logging
import secrets
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import qrcode
import qrcode.image.svg

from app.core.config import Settings, get_settings
from app.core.exceptions import ConflictError, DuplicateTokenError, NotFoundError, ValidationError
from app.services.store import BaseOrderStore, Order, within_budget

logger = logging.getLogger(__name__)


# Field names a structured payload may carry the token under, highest priority first
TOKEN_FIELD_PRIORITY = (
    "qr_token",
    "qrToken",
    "qr_code",
    "qrCode",
    "token",
    "orderToken",
)


class PayloadSource(str, enum.Enum):
    """Where the token in a scanned payload came from."""
    RAW = "raw"
    JSON_FIELD = "json_field"
    MAPPING_FIELD = "mapping_field"


@dataclass(frozen=True)
class DecodedPayload:
    token: str
    source: PayloadSource
    field_name: Optional[str] = None


def _token_from_mapping(payload: Mapping) -> Optional[tuple[str, str]]:
    for name in TOKEN_FIELD_PRIORITY:
        value = payload.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip(), name
    return None


def decode_payload(presented: Any) -> DecodedPayload:
    """
    Extract the token from a scanned value.

    Args:
        presented: str, bytes or mapping as produced by a scanner

    Returns:
        DecodedPayload with the token and how it was found

    Raises:
        ValidationError: empty or unsupported payload
    """
    if isinstance(presented, (bytes, bytearray)):
        presented = bytes(presented).decode("utf-8", errors="replace")

    if isinstance(presented, Mapping):
        found = _token_from_mapping(presented)
        if found:
            return DecodedPayload(found[0], PayloadSource.MAPPING_FIELD, found[1])
        raw = json.dumps(presented, sort_keys=True, default=str)
        return DecodedPayload(raw, PayloadSource.RAW)

    if not isinstance(presented, str):
        raise ValidationError(f"Unsupported QR payload type: {type(presented).__name__}")

    text = presented.strip()
    if not text:
        raise ValidationError("QR payload is empty")

    if text.startswith("{"):
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            found = _token_from_mapping(parsed)
            if found:
                return DecodedPayload(found[0], PayloadSource.JSON_FIELD, found[1])

    return DecodedPayload(text, PayloadSource.RAW)


class QRTokenService:
    """
    Issues unique order tokens and resolves scanned codes.

    Uniqueness is enforced by the store: a colliding insert is rejected
    and retried with a fresh token, never overwritten.
    """

    def __init__(
        self,
        store: BaseOrderStore,
        settings: Optional[Settings] = None,
        token_factory: Optional[Callable[[], str]] = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self._token_factory = token_factory or self.generate_token

    def generate_token(self) -> str:
        """Mint a new opaque token, e.g. ALAN-3F9A0C1B7E2D4A6C8B0E1F23."""
        return f"{self.settings.qr_token_prefix}-{secrets.token_hex(12).upper()}"

    async def issue(self, persist: Callable[[str], Awaitable[Order]]) -> Order:
        """
        Persist an order under a freshly minted token.

        Args:
            persist: Inserts the order carrying the given token

        Raises:
            ConflictError: no unique token after qr_token_max_attempts
        """
        attempts = self.settings.qr_token_max_attempts
        for attempt in range(1, attempts + 1):
            token = self._token_factory()
            try:
                return await persist(token)
            except DuplicateTokenError:
                logger.warning(f"QR token collision (attempt {attempt}/{attempts}), minting a new one")
        raise ConflictError(f"Could not issue a unique QR token after {attempts} attempts")

    async def resolve(self, presented: Any) -> Order:
        """
        Resolve a scanned value to its order.

        Raises:
            ValidationError: empty or unsupported payload
            NotFoundError: no order carries this token
            TransientError: store did not answer within budget
        """
        decoded = decode_payload(presented)
        order = await within_budget(
            self.store.get_order_by_token(decoded.token),
            self.settings.store_timeout_seconds,
            "QR token lookup",
        )
        if order is None:
            # Stale or foreign codes are routine
            logger.info(f"Scanned QR code matched no order (source={decoded.source.value})")
            raise NotFoundError("No order matches this QR code")

        logger.info(f"QR code resolved to order {order.id} ({order.status.value})")
        return order

    @staticmethod
    def render_svg(token: str) -> bytes:
        """Render the token as a scannable QR code; the payload is the raw token."""
        image = qrcode.make(token, image_factory=qrcode.image.svg.SvgPathImage)
        return image.to_string()
