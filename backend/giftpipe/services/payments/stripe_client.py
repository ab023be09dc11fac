"""
Stripe API client wrapper with error handling and retry logic.

This module wraps the handful of Stripe calls the pipeline needs: reading a
payment intent's authoritative status, creating off-session payment intents
for approved auto-gifts, and verifying webhook signatures. The API key is
passed per request so several clients with different keys can coexist in
one process.
"""

import time
from typing import Any, Optional

import stripe

from giftpipe.core.config import get_settings
from giftpipe.core.logging import get_logger

logger = get_logger(__name__)


class StripeClientError(Exception):
    """Base exception for Stripe client errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        stripe_error: Optional[stripe.StripeError] = None,
        **context: Any,
    ):
        super().__init__(message)
        self.code = code
        self.stripe_error = stripe_error
        self.context = context


class StripePaymentError(StripeClientError):
    """Exception for payment processing errors."""

    pass


class StripeAuthenticationError(StripeClientError):
    """Exception for authentication errors."""

    pass


class StripeRateLimitError(StripeClientError):
    """Exception for rate limit errors."""

    pass


class StripeConnectionError(StripeClientError):
    """Exception for connection errors."""

    pass


class StripeClient:
    """
    Stripe API client with error handling and retry logic.

    Transient failures (connection, rate limit, 5xx) are retried with
    exponential backoff up to ``max_retries``; everything else is mapped
    onto the ``StripeClientError`` family immediately.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        max_retries: int = 2,
        initial_backoff: float = 0.5,
        max_backoff: float = 8.0,
        backoff_multiplier: float = 2.0,
    ):
        """
        Initialize Stripe client with configuration.

        Args:
            api_key: Stripe secret API key (defaults to settings)
            webhook_secret: Stripe webhook signing secret (defaults to settings)
            max_retries: Maximum number of retry attempts
            initial_backoff: Initial backoff delay in seconds
            max_backoff: Maximum backoff delay in seconds
            backoff_multiplier: Backoff multiplier for exponential backoff
        """
        settings = get_settings()
        self.api_key = api_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.backoff_multiplier = backoff_multiplier

    def _calculate_backoff(self, attempt: int) -> float:
        return min(
            self.initial_backoff * (self.backoff_multiplier**attempt),
            self.max_backoff,
        )

    def _should_retry(self, error: stripe.StripeError, attempt: int) -> bool:
        if attempt >= self.max_retries:
            return False
        return isinstance(
            error,
            (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError),
        )

    def _execute_with_retry(
        self,
        operation: str,
        func: Any,
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """
        Execute Stripe API call with exponential backoff retry logic.

        Args:
            operation: Operation name for logging
            func: Stripe API function to execute
            *args: Positional arguments for the function
            **kwargs: Keyword arguments for the function

        Returns:
            Result from Stripe API call

        Raises:
            StripeClientError: If operation fails after all retries
        """
        kwargs.setdefault("api_key", self.api_key)

        for attempt in range(self.max_retries + 1):
            try:
                result = func(*args, **kwargs)
                if attempt > 0:
                    logger.info(
                        "Stripe operation succeeded after retry",
                        operation=operation,
                        attempt=attempt,
                    )
                return result

            except stripe.AuthenticationError as e:
                logger.error(
                    "Stripe authentication error",
                    operation=operation,
                    error=str(e),
                )
                raise StripeAuthenticationError(
                    f"Authentication failed: {e.user_message or str(e)}",
                    code=e.code,
                    stripe_error=e,
                ) from e

            except stripe.CardError as e:
                logger.warning(
                    "Stripe card error",
                    operation=operation,
                    code=e.code,
                    decline_code=getattr(e, "decline_code", None),
                )
                raise StripePaymentError(
                    f"Card error: {e.user_message or str(e)}",
                    code=e.code,
                    stripe_error=e,
                    decline_code=getattr(e, "decline_code", None),
                ) from e

            except (stripe.InvalidRequestError, stripe.IdempotencyError) as e:
                logger.error(
                    "Stripe request rejected",
                    operation=operation,
                    error=str(e),
                    code=e.code,
                )
                raise StripeClientError(
                    f"Invalid request: {e.user_message or str(e)}",
                    code=e.code,
                    stripe_error=e,
                ) from e

            except (
                stripe.RateLimitError,
                stripe.APIConnectionError,
                stripe.APIError,
            ) as e:
                if not self._should_retry(e, attempt):
                    logger.error(
                        "Stripe operation failed",
                        operation=operation,
                        error=str(e),
                        error_type=type(e).__name__,
                        attempt=attempt,
                    )
                    if isinstance(e, stripe.RateLimitError):
                        error_cls = StripeRateLimitError
                    elif isinstance(e, stripe.APIConnectionError):
                        error_cls = StripeConnectionError
                    else:
                        error_cls = StripeClientError
                    raise error_cls(
                        f"{type(e).__name__}: {e.user_message or str(e)}",
                        code=e.code,
                        stripe_error=e,
                        attempts=attempt + 1,
                    ) from e

                backoff = self._calculate_backoff(attempt)
                logger.warning(
                    "Transient Stripe error, retrying",
                    operation=operation,
                    error_type=type(e).__name__,
                    attempt=attempt,
                    backoff_seconds=backoff,
                )
                time.sleep(backoff)

            except stripe.StripeError as e:
                logger.error(
                    "Unexpected Stripe error",
                    operation=operation,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise StripeClientError(
                    f"Stripe error: {e.user_message or str(e)}",
                    code=getattr(e, "code", None),
                    stripe_error=e,
                ) from e

        raise StripeClientError(f"Operation {operation} exhausted retries")

    def retrieve_payment_intent(self, payment_intent_id: str) -> stripe.PaymentIntent:
        """
        Retrieve a payment intent by ID.

        Args:
            payment_intent_id: Stripe payment intent ID

        Returns:
            Stripe PaymentIntent object

        Raises:
            StripeClientError: If retrieval fails
        """
        payment_intent = self._execute_with_retry(
            "retrieve_payment_intent",
            stripe.PaymentIntent.retrieve,
            payment_intent_id,
        )

        logger.debug(
            "Payment intent retrieved",
            payment_intent_id=payment_intent.id,
            status=payment_intent.status,
        )

        return payment_intent

    def create_off_session_payment(
        self,
        amount: int,
        currency: str,
        customer_id: str,
        payment_method_id: str,
        metadata: Optional[dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> stripe.PaymentIntent:
        """
        Create and confirm a payment intent against a saved payment method.

        Used for approved auto-gifts, where the customer is not present.

        Args:
            amount: Payment amount in cents
            currency: Three-letter ISO currency code
            customer_id: Stripe customer owning the payment method
            payment_method_id: Saved Stripe payment method
            metadata: Metadata stored on the intent (order id, execution id)
            idempotency_key: Idempotency key for safe retries

        Returns:
            Stripe PaymentIntent object

        Raises:
            StripeClientError: If creation or confirmation fails
        """
        logger.info(
            "Creating off-session payment intent",
            amount=amount,
            currency=currency,
            customer_id=customer_id,
        )

        params: dict[str, Any] = {
            "amount": amount,
            "currency": currency.lower(),
            "customer": customer_id,
            "payment_method": payment_method_id,
            "off_session": True,
            "confirm": True,
            "metadata": metadata or {},
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        payment_intent = self._execute_with_retry(
            "create_off_session_payment",
            stripe.PaymentIntent.create,
            **params,
        )

        logger.info(
            "Off-session payment intent created",
            payment_intent_id=payment_intent.id,
            status=payment_intent.status,
        )

        return payment_intent

    def construct_webhook_event(self, payload: bytes, signature: str) -> stripe.Event:
        """
        Construct and verify a webhook event from Stripe.

        Args:
            payload: Raw webhook payload bytes
            signature: Stripe signature header value

        Returns:
            Verified Stripe Event object

        Raises:
            StripeClientError: If webhook verification fails
        """
        try:
            event = stripe.Webhook.construct_event(
                payload,
                signature,
                self.webhook_secret,
            )
        except ValueError as e:
            logger.error("Invalid webhook payload", error=str(e))
            raise StripeClientError(
                "Invalid webhook payload",
                code="INVALID_PAYLOAD",
            ) from e
        except stripe.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed", error=str(e))
            raise StripeClientError(
                "Webhook signature verification failed",
                code="INVALID_SIGNATURE",
                stripe_error=e,
            ) from e

        logger.info(
            "Webhook event verified",
            event_id=event.id,
            event_type=event.type,
        )
        return event


def get_stripe_client(max_retries: int = 2) -> StripeClient:
    """
    Build a Stripe client from settings.

    Args:
        max_retries: Transient-error retries; the payment verifier uses 0

    Returns:
        Configured StripeClient instance
    """
    return StripeClient(max_retries=max_retries)
