"""Escrow gateway: hold, capture and refund task payments.

The marketplace only talks to the payment side through :class:`EscrowGateway`.
The bundled :class:`InMemoryEscrowGateway` stands in for a card processor's
manual-capture payment intents and is what the service uses unless another
gateway is installed with :func:`set_gateway`.

Settlement semantics:

- ``capture`` is idempotent. Capturing an already captured hold returns the
  same record; capturing a refunded hold raises :class:`EscrowError`.
- ``refund`` is idempotent and lenient. Refunding an unknown or already
  refunded reference returns a settled record and logs a warning.
- ``capture`` of an unknown reference is treated as already settled, which
  covers references evicted from the registry after a long TTL.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

from pydantic import BaseModel, Field

from errandly.config import settings
from errandly.ids import escrow_ref
from errandly.utils import utcnow

logger = logging.getLogger("errandly.escrow")


class EscrowError(Exception):
    """The payment provider refused or failed an escrow operation."""


class HoldStatus(str, enum.Enum):
    requires_capture = "requires_capture"
    succeeded = "succeeded"
    refunded = "refunded"


class HoldRecord(BaseModel):
    ref: str
    amount: int
    status: HoldStatus
    metadata: dict = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    synthetic: bool = False


class EscrowGateway(Protocol):
    async def hold(
        self, amount: int, *, metadata: dict | None = None, idempotency_key: str | None = None
    ) -> HoldRecord: ...

    async def capture(self, ref: str) -> HoldRecord: ...

    async def refund(self, ref: str) -> HoldRecord: ...


class InMemoryEscrowGateway:
    """Process-local hold registry with TTL eviction."""

    def __init__(
        self,
        ttl: timedelta | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.ttl = ttl if ttl is not None else timedelta(hours=settings.escrow_registry_ttl_hours)
        self._clock = clock
        self._holds: dict[str, HoldRecord] = {}
        self._idempotency: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._holds)

    def get(self, ref: str) -> HoldRecord | None:
        self.evict_expired()
        return self._holds.get(ref)

    def evict_expired(self) -> int:
        cutoff = self._clock() - self.ttl
        expired = [ref for ref, rec in self._holds.items() if rec.updated_at < cutoff]
        for ref in expired:
            del self._holds[ref]
        if expired:
            self._idempotency = {k: v for k, v in self._idempotency.items() if v in self._holds}
            logger.debug("Evicted %d expired holds", len(expired))
        return len(expired)

    async def hold(
        self, amount: int, *, metadata: dict | None = None, idempotency_key: str | None = None
    ) -> HoldRecord:
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise EscrowError(f"Invalid hold amount: {amount!r}")
        self.evict_expired()

        if idempotency_key and idempotency_key in self._idempotency:
            existing = self._holds[self._idempotency[idempotency_key]]
            if existing.amount != amount:
                raise EscrowError("Idempotency key reused with a different amount")
            return existing

        now = self._clock()
        record = HoldRecord(
            ref=escrow_ref(),
            amount=amount,
            status=HoldStatus.requires_capture,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        self._holds[record.ref] = record
        if idempotency_key:
            self._idempotency[idempotency_key] = record.ref
        logger.info("Hold %s placed for %d", record.ref, amount)
        return record

    async def capture(self, ref: str) -> HoldRecord:
        self.evict_expired()
        record = self._holds.get(ref)
        if record is None:
            logger.warning("Capture of unknown hold %s, treating as settled", ref)
            now = self._clock()
            return HoldRecord(
                ref=ref,
                amount=0,
                status=HoldStatus.succeeded,
                created_at=now,
                updated_at=now,
                synthetic=True,
            )
        if record.status == HoldStatus.succeeded:
            return record
        if record.status == HoldStatus.refunded:
            raise EscrowError(f"Hold {ref} was refunded and cannot be captured")

        record.status = HoldStatus.succeeded
        record.updated_at = self._clock()
        logger.info("Hold %s captured", ref)
        return record

    async def refund(self, ref: str) -> HoldRecord:
        self.evict_expired()
        record = self._holds.get(ref)
        if record is None:
            logger.warning("Refund of unknown hold %s, treating as settled", ref)
            now = self._clock()
            return HoldRecord(
                ref=ref,
                amount=0,
                status=HoldStatus.refunded,
                created_at=now,
                updated_at=now,
                synthetic=True,
            )
        if record.status == HoldStatus.refunded:
            logger.warning("Hold %s already refunded", ref)
            return record
        if record.status == HoldStatus.succeeded:
            raise EscrowError(f"Hold {ref} was already captured")

        record.status = HoldStatus.refunded
        record.updated_at = self._clock()
        logger.info("Hold %s refunded", ref)
        return record


_gateway: EscrowGateway = InMemoryEscrowGateway()


def get_gateway() -> EscrowGateway:
    return _gateway


def set_gateway(gateway: EscrowGateway) -> EscrowGateway:
    """Install a gateway and return the previous one."""
    global _gateway
    previous = _gateway
    _gateway = gateway
    return previous


async def refund_quietly(ref: str | None, *, task_id: str | None = None) -> bool:
    """Refund a hold without raising. Returns False when the provider refused.

    Callers have already moved the task on; a failed refund is left for
    manual reconciliation.
    """
    if not ref:
        return False
    try:
        await get_gateway().refund(ref)
    except EscrowError as e:
        logger.warning("Refund of %s for task %s failed: %s", ref, task_id, e)
        return False
    return True


def compute_fee(price: int, fee_pct: float) -> tuple[int, int]:
    """Split a captured price into (platform_fee, tasker_payout).

    The fee is ``price * fee_pct / 100`` rounded half-up to a whole minor unit
    and clamped to ``[0, price]``.
    """
    raw = Decimal(price) * Decimal(str(fee_pct)) / Decimal(100)
    fee = int(raw.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    fee = max(0, min(fee, price))
    return fee, price - fee
