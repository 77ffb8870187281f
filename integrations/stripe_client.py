"""
Stripe payment gateway.

Implements:
- Tri-state charge outcomes from PaymentIntent create-and-confirm
- Idempotent charges via Stripe idempotency keys
- Circuit breaker around all Stripe calls
- Exponential backoff for status lookups (never for charges)
"""
import asyncio
import time
import uuid
from enum import Enum
from typing import Any, Callable, Optional, Tuple, Type

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config import Settings, get_settings
from integrations.gateway import (
    ChargeOutcome,
    Declined,
    GatewayError,
    GatewayStatus,
    Indeterminate,
    Succeeded,
    outcome_label,
)
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# PaymentIntent statuses that settle a charge one way or the other
SUCCEEDED_STATUSES = frozenset({"succeeded"})
DECLINED_STATUSES = frozenset({"requires_payment_method", "canceled"})


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class StripeGatewayError(GatewayError):
    """Transport-level Stripe failure; safe to retry for reads."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize Stripe error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Original Stripe exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold. Only exceptions listed in
    failure_exceptions count as failures; a card decline is a healthy
    answer from Stripe.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
        failure_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
            failure_exceptions: Exception types that count as failures
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_exceptions = failure_exceptions
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)

    async def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Run a blocking function in a worker thread with circuit breaker protection.

        Args:
            func: Function to execute
            *args: Positional arguments
            **kwargs: Keyword arguments

        Returns:
            Function result

        Raises:
            StripeGatewayError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise StripeGatewayError(
                    "Circuit breaker is open",
                    StripeErrorType.TRANSIENT,
                )

        try:
            result = await asyncio.to_thread(func, *args, **kwargs)
        except self.failure_exceptions:
            self.on_failure()
            raise
        except Exception:
            self.on_success()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


class StripeGateway:
    """
    Payment gateway backed by Stripe PaymentIntents.

    A charge creates and confirms a PaymentIntent in one call, with the
    attempt's gateway idempotency key, so a replay returns Stripe's stored
    answer instead of charging again.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        """Initialize Stripe gateway."""
        settings = settings or get_settings()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_exceptions=(
                stripe.APIConnectionError,
                stripe.APIError,
                stripe.RateLimitError,
            ),
        )

        logger.info(
            "stripe_gateway_initialized",
            api_version=stripe.api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
            ),
        ):
            return StripeErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return StripeErrorType.TRANSIENT

    @staticmethod
    def _decline_reference(error: stripe.CardError) -> Optional[str]:
        payment_intent = getattr(error.error, "payment_intent", None) if error.error else None
        if payment_intent:
            return payment_intent.get("id")
        return None

    @staticmethod
    def _outcome_from_intent(payment_intent: Any) -> ChargeOutcome:
        status = payment_intent.status
        if status in SUCCEEDED_STATUSES:
            return Succeeded(reference=payment_intent.id)
        if status in DECLINED_STATUSES:
            last_error = getattr(payment_intent, "last_payment_error", None)
            reason = getattr(last_error, "message", None) if last_error else None
            return Declined(
                reason=reason or f"payment intent {status}",
                reference=payment_intent.id,
            )
        # processing, requires_action, requires_confirmation, requires_capture
        return Indeterminate(
            reason=f"payment intent {status}",
            reference=payment_intent.id,
        )

    async def charge(
        self,
        order_id: uuid.UUID,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
    ) -> ChargeOutcome:
        """
        Create and confirm a PaymentIntent for an order.

        Never raises for gateway failures; anything without a definitive
        answer is returned as Indeterminate.

        Args:
            order_id: Order being charged
            amount_cents: Amount in cents
            currency: Currency code (e.g., 'USD')
            idempotency_key: Gateway idempotency key of this attempt

        Returns:
            ChargeOutcome: Succeeded, Declined or Indeterminate
        """
        logger.info(
            "creating_payment_intent",
            order_id=str(order_id),
            amount_cents=amount_cents,
            currency=currency,
            idempotency_key=idempotency_key,
        )
        start_time = time.time()

        def _create() -> stripe.PaymentIntent:
            return stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency.lower(),
                confirm=True,
                payment_method=self.settings.stripe_default_payment_method,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                metadata={"order_id": str(order_id)},
                idempotency_key=idempotency_key,
            )

        try:
            payment_intent = await self.circuit_breaker.call(_create)
            outcome = self._outcome_from_intent(payment_intent)
        except stripe.CardError as e:
            outcome = Declined(
                reason=e.user_message or str(e),
                reference=self._decline_reference(e),
            )
        except StripeGatewayError as e:
            metrics.record_gateway_error(e.error_type.value)
            outcome = Indeterminate(reason=str(e))
        except stripe.StripeError as e:
            error_type = self._classify_error(e)
            logger.error(
                "stripe_api_error",
                error_type=error_type.value,
                error_code=getattr(e, "code", None),
                error_message=str(e),
                order_id=str(order_id),
            )
            metrics.record_gateway_error(error_type.value)
            outcome = Indeterminate(reason=str(e))

        duration = time.time() - start_time
        metrics.record_gateway_call("charge", outcome_label(outcome), duration)
        logger.info(
            "payment_intent_outcome",
            order_id=str(order_id),
            outcome=outcome_label(outcome),
            reference=outcome.reference,
            duration_seconds=duration,
        )
        return outcome

    @retry(
        retry=retry_if_exception_type(StripeGatewayError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _retrieve_payment_intent(self, payment_intent_id: str) -> stripe.PaymentIntent:
        """
        Retrieve a PaymentIntent by ID.

        Raises:
            StripeGatewayError: On transient failures (retried)
            stripe.StripeError: On permanent failures
        """
        try:
            return await self.circuit_breaker.call(
                stripe.PaymentIntent.retrieve, payment_intent_id
            )
        except stripe.StripeError as e:
            error_type = self._classify_error(e)
            if error_type == StripeErrorType.PERMANENT:
                raise
            logger.warning(
                "stripe_retrieve_retrying",
                error_type=error_type.value,
                payment_intent_id=payment_intent_id,
            )
            raise StripeGatewayError(str(e), error_type, original_error=e) from e

    async def query_status(self, reference: str) -> GatewayStatus:
        """
        Look up the status of an earlier charge.

        Args:
            reference: PaymentIntent ID

        Returns:
            GatewayStatus: SUCCEEDED, DECLINED, or UNKNOWN when Stripe cannot tell us
        """
        logger.info("retrieving_payment_intent", payment_intent_id=reference)
        start_time = time.time()
        try:
            payment_intent = await self._retrieve_payment_intent(reference)
        except StripeGatewayError as e:
            metrics.record_gateway_error(e.error_type.value)
            status = GatewayStatus.UNKNOWN
        except stripe.StripeError as e:
            logger.error(
                "stripe_api_error",
                error_type=StripeErrorType.PERMANENT.value,
                error_code=getattr(e, "code", None),
                error_message=str(e),
                payment_intent_id=reference,
            )
            metrics.record_gateway_error(StripeErrorType.PERMANENT.value)
            status = GatewayStatus.UNKNOWN
        else:
            if payment_intent.status in SUCCEEDED_STATUSES:
                status = GatewayStatus.SUCCEEDED
            elif payment_intent.status in DECLINED_STATUSES:
                status = GatewayStatus.DECLINED
            else:
                status = GatewayStatus.UNKNOWN

        metrics.record_gateway_call("query_status", status.value, time.time() - start_time)
        return status
