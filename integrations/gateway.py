"""
Payment gateway contract.

A charge has exactly three outcomes. Indeterminate means the gateway may or
may not have taken the money; callers must never treat it as a decline.
"""
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, Union


class GatewayError(Exception):
    """
    Raised inside gateway clients for transport or protocol failures.

    Never surfaces from checkout: the orchestrator maps it to an
    indeterminate outcome.
    """

    pass


@dataclass(frozen=True)
class Succeeded:
    """The gateway captured the charge."""

    reference: str


@dataclass(frozen=True)
class Declined:
    """The gateway definitively refused the charge."""

    reason: str
    reference: Optional[str] = None


@dataclass(frozen=True)
class Indeterminate:
    """No definitive answer: timeout, transport failure, or an unsettled charge."""

    reason: str
    reference: Optional[str] = None


ChargeOutcome = Union[Succeeded, Declined, Indeterminate]


class GatewayStatus(Enum):
    """Status of an earlier charge as reported by the gateway."""

    SUCCEEDED = "succeeded"
    DECLINED = "declined"
    UNKNOWN = "unknown"


class PaymentGateway(Protocol):
    """What the checkout orchestrator needs from a payment provider."""

    async def charge(
        self,
        order_id: uuid.UUID,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
    ) -> ChargeOutcome:
        """
        Charge an order.

        Calling again with the same idempotency_key must not charge twice;
        the gateway replays its first answer.
        """
        ...

    async def query_status(self, reference: str) -> GatewayStatus:
        """Look up a charge previously returned with this reference."""
        ...


def outcome_label(outcome: ChargeOutcome) -> str:
    """Short label for logs and metrics."""
    if isinstance(outcome, Succeeded):
        return "succeeded"
    if isinstance(outcome, Declined):
        return "declined"
    return "indeterminate"
