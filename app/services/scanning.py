"""
Scan Verification Sessions

A staff device scans customer QR codes through a capture source (camera
decoder, handheld scanner, or codes typed/pushed over a socket). Each
staff client owns at most one verification session; starting a new one
stops the previous capture first.

A session delivers at most one resolved order, then stops its capture.
Codes that match no order are reported and scanning continues.

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from app.core.exceptions import NotFoundError, OrderingError, TransientError, ValidationError
from app.models import ActorRole, OrderStatus
from app.services.ledger import OrderLedger
from app.services.qr_tokens import QRTokenService
from app.services.store import Order

logger = logging.getLogger(__name__)

DecodeHandler = Callable[[Any], Awaitable[None]]


@dataclass(frozen=True)
class ScanResult:
    order: Order
    payload: Any


# =============================================================================
# CAPTURE SOURCES
# =============================================================================

class BaseScanCapture(ABC):
    """Produces decoded QR payloads while running."""

    @abstractmethod
    async def start(self, on_decode: DecodeHandler) -> None:
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop producing payloads. Safe to call more than once."""
        pass

    @property
    @abstractmethod
    def is_running(self) -> bool:
        pass


class ManualScanCapture(BaseScanCapture):
    """Capture fed by hand: tests, typed codes, or payloads sent over a WebSocket."""

    def __init__(self):
        self._on_decode: Optional[DecodeHandler] = None

    @property
    def is_running(self) -> bool:
        return self._on_decode is not None

    async def start(self, on_decode: DecodeHandler) -> None:
        self._on_decode = on_decode

    async def stop(self) -> None:
        self._on_decode = None

    async def submit(self, payload: Any) -> bool:
        """Push one decoded payload. Returns False when the capture is stopped."""
        if self._on_decode is None:
            return False
        await self._on_decode(payload)
        return True


# =============================================================================
# SESSIONS
# =============================================================================

class VerificationSession:
    """One staff client's scan, from capture start to a resolved order."""

    def __init__(
        self,
        staff_client_id: str,
        capture: BaseScanCapture,
        tokens: QRTokenService,
        ledger: OrderLedger,
        actor_role: ActorRole = ActorRole.RESTAURANT_STAFF,
    ):
        self.staff_client_id = staff_client_id
        self.capture = capture
        self.tokens = tokens
        self.ledger = ledger
        self.actor_role = actor_role
        self.last_error: Optional[OrderingError] = None
        self._result: Optional[ScanResult] = None
        self._done = asyncio.Event()
        self._closed = False

    @property
    def result(self) -> Optional[ScanResult]:
        return self._result

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        await self.capture.start(self._on_decode)
        if self._closed:
            # Closed while the capture was starting up
            await self.capture.stop()
            return
        logger.info(f"Scan session started for {self.staff_client_id}")

    async def _on_decode(self, payload: Any) -> None:
        if self._closed or self._result is not None:
            return
        try:
            order = await self.tokens.resolve(payload)
        except (NotFoundError, ValidationError) as e:
            self.last_error = e
            return
        except TransientError as e:
            logger.warning(f"Scan lookup for {self.staff_client_id} failed, keep scanning: {e}")
            self.last_error = e
            return

        self._result = ScanResult(order=order, payload=payload)
        await self.capture.stop()
        self._done.set()

    async def wait_result(self, timeout: Optional[float] = None) -> ScanResult:
        """
        Wait for the scanned order.

        Raises:
            asyncio.TimeoutError: nothing resolved within `timeout`
            ValidationError: the session was closed before a result
        """
        await asyncio.wait_for(self._done.wait(), timeout=timeout)
        if self._result is None:
            raise ValidationError("Scan session closed before a code was resolved")
        return self._result

    async def confirm(self) -> Order:
        """Complete the scanned order. Scanning an already completed order is a no-op."""
        if self._result is None:
            raise ValidationError("No order has been scanned yet")
        order = await self.ledger.transition(self._result.order.id, OrderStatus.COMPLETED, self.actor_role)
        self._result = ScanResult(order=order, payload=self._result.payload)
        return order

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.capture.stop()
        self._done.set()
        logger.info(f"Scan session closed for {self.staff_client_id}")


class VerificationSessionRegistry:
    """At most one live session per staff client."""

    def __init__(self, tokens: QRTokenService, ledger: OrderLedger):
        self.tokens = tokens
        self.ledger = ledger
        self._sessions: dict[str, VerificationSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, staff_client_id: str) -> asyncio.Lock:
        return self._locks.setdefault(staff_client_id, asyncio.Lock())

    async def start(
        self,
        staff_client_id: str,
        capture: BaseScanCapture,
        actor_role: ActorRole = ActorRole.RESTAURANT_STAFF,
    ) -> VerificationSession:
        async with self._lock_for(staff_client_id):
            await self._close(staff_client_id)
            session = VerificationSession(staff_client_id, capture, self.tokens, self.ledger, actor_role)
            self._sessions[staff_client_id] = session
            await session.start()
        return session

    def get(self, staff_client_id: str) -> Optional[VerificationSession]:
        return self._sessions.get(staff_client_id)

    async def stop(self, staff_client_id: str) -> None:
        async with self._lock_for(staff_client_id):
            await self._close(staff_client_id)

    async def _close(self, staff_client_id: str) -> None:
        session = self._sessions.pop(staff_client_id, None)
        if session is not None:
            await session.close()

    async def close_all(self) -> None:
        for staff_client_id in list(self._sessions):
            await self.stop(staff_client_id)
