"""
Stripe implementation of the ChargeGateway protocol.

All Stripe calls made by the recovery engine go through this adapter so
that timeouts, idempotency, logging and error translation are consistent.

Outcome mapping for off-session charges:
    PaymentIntent status succeeded              -> succeeded
    PaymentIntent status requires_action        -> requires_action
    CardError code authentication_required      -> requires_action (pi kept)
    CardError (any other decline)               -> declined (+ decline_code)
    InvalidRequestError on payment_method/customer
        or resource_missing                     -> no_payment_method
    RateLimit / APIConnection / APIError / auth -> GatewayError (raised)

Configuration (via settings):
- STRIPE_SECRET_KEY: Stripe API secret key
- STRIPE_API_TIMEOUT_SECONDS: API call timeout (default: 10)
- STRIPE_MAX_RETRIES: Network retries inside the Stripe client (default: 2)
- STRIPE_STATEMENT_DESCRIPTOR_SUFFIX: Suffix on the chef's statement
- RECOVERY_FRONTEND_URL: Base URL for recovery pages

Usage:
    from recovery.adapters import StripeChargeGateway, IdempotencyKeyGenerator

    charge = StripeChargeGateway.charge(
        obligation.id,
        obligation.amount_cents,
        obligation.currency,
        obligation.payment_method_ref,
        customer_ref=obligation.customer_ref,
        idempotency_key=IdempotencyKeyGenerator.generate(
            "obligation_charge", obligation.id, attempt=1
        ),
    )
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import stripe
from django.conf import settings
from django.utils import timezone

from core.helpers import hash_string
from recovery.conf import get_policy
from recovery.exceptions import (
    GatewayRateLimitError,
    GatewayRequestError,
    GatewayTimeoutError,
    GatewayUnavailableError,
)
from recovery.protocols import GatewayCharge, GatewaySessionLink
from recovery.state_machines import AttemptOutcome

if TYPE_CHECKING:
    from datetime import datetime

# Stripe rejects Checkout expiry more than 24h ahead of the request time
CHECKOUT_MAX_LIFETIME = timedelta(hours=23, minutes=55)
CHECKOUT_MIN_LIFETIME = timedelta(minutes=31)

NO_INSTRUMENT_PARAMS = {"payment_method", "customer"}


# =============================================================================
# Idempotency Key Generator
# =============================================================================


class IdempotencyKeyGenerator:
    """
    Generate idempotency keys for Stripe API calls.

    Format: "{operation}:{entity_id}:{attempt}:{hash}"

    The same (operation, entity, attempt) always produces the same key, so a
    worker that crashes after calling Stripe and is re-run for the same
    attempt number cannot charge twice.

    Example:
        key = IdempotencyKeyGenerator.generate(
            operation="obligation_charge",
            entity_id=obligation.id,
            attempt=2,
        )
        # "obligation_charge:550e8400-e29b-41d4-a716-446655440000:2:a1b2c3d4"
    """

    @staticmethod
    def generate(
        operation: str,
        entity_id: uuid.UUID | str,
        attempt: int | str = 1,
    ) -> str:
        entity_str = str(entity_id)
        short_hash = hash_string(
            f"{operation}:{entity_str}:{attempt}:{settings.SECRET_KEY}"
        )[:8]
        return f"{operation}:{entity_str}:{attempt}:{short_hash}"


# =============================================================================
# Stripe Charge Gateway
# =============================================================================


class StripeChargeGateway:
    """
    Stripe adapter for off-session charges and recovery links.

    All methods are classmethods - no instance state is maintained.
    Thread-safe for use from Celery workers.
    """

    # =========================================================================
    # Configuration
    # =========================================================================

    @staticmethod
    def _configure_stripe() -> None:
        """Configure Stripe client with API key, timeout and network retries."""
        stripe.api_key = settings.STRIPE_SECRET_KEY
        timeout = getattr(settings, "STRIPE_API_TIMEOUT_SECONDS", 10)
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
        stripe.max_network_retries = getattr(settings, "STRIPE_MAX_RETRIES", 2)

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    # =========================================================================
    # Off-session Charge
    # =========================================================================

    @classmethod
    def charge(
        cls,
        obligation_id: Any,
        amount_cents: int,
        currency: str,
        instrument_ref: str,
        *,
        idempotency_key: str,
        customer_ref: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> GatewayCharge:
        """
        Confirm an off-session PaymentIntent against a stored payment method.

        Returns:
            GatewayCharge with the business outcome

        Raises:
            GatewayUnavailableError: Stripe unreachable or 5xx
            GatewayTimeoutError: Request timed out
            GatewayRateLimitError: Rate limited
            GatewayRequestError: Bad credentials or malformed request
        """
        cls._configure_stripe()
        logger = cls.get_logger()

        log_context = {
            "operation": "off_session_charge",
            "obligation_id": str(obligation_id),
            "amount_cents": amount_cents,
            "currency": currency,
            "idempotency_key": idempotency_key,
        }

        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)

        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency,
                customer=customer_ref,
                payment_method=instrument_ref,
                payment_method_types=["card"],
                off_session=True,
                confirm=True,
                metadata={
                    "type": "obligation_recovery",
                    "obligation_id": str(obligation_id),
                    **(metadata or {}),
                },
                statement_descriptor_suffix=getattr(
                    settings, "STRIPE_STATEMENT_DESCRIPTOR_SUFFIX", "KITCHEN FEE"
                ),
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as e:
            return cls._card_error_outcome(e, log_context, start_time)
        except stripe.InvalidRequestError as e:
            if cls._is_missing_instrument(e):
                logger.warning(
                    "Stored payment method unusable",
                    extra={**log_context, "stripe_code": e.code, "param": e.param},
                )
                return GatewayCharge(
                    outcome=AttemptOutcome.NO_PAYMENT_METHOD,
                    decline_code=e.code or "",
                    failure_message=e.user_message or str(e),
                )
            cls._handle_stripe_error(e, log_context, cls._elapsed_ms(start_time))
            raise
        except Exception as e:
            cls._handle_stripe_error(e, log_context, cls._elapsed_ms(start_time))
            raise  # Never reached, but satisfies type checker

        logger.info(
            "Stripe operation completed",
            extra={
                **log_context,
                "payment_intent_id": intent.id,
                "status": intent.status,
                "duration_ms": cls._elapsed_ms(start_time),
            },
        )

        if intent.status == "succeeded":
            outcome = AttemptOutcome.SUCCEEDED
            decline_code = ""
        elif intent.status == "requires_action":
            outcome = AttemptOutcome.REQUIRES_ACTION
            decline_code = "authentication_required"
        else:
            # processing, requires_payment_method, ...: not collected
            outcome = AttemptOutcome.DECLINED
            decline_code = "processing_error"

        return GatewayCharge(
            outcome=outcome,
            processor_reference=intent.id,
            decline_code=decline_code,
            raw=intent.to_dict(),
        )

    @classmethod
    def _card_error_outcome(
        cls,
        error: stripe.CardError,
        log_context: dict[str, Any],
        start_time: float,
    ) -> GatewayCharge:
        body = (getattr(error, "json_body", None) or {}).get("error") or {}
        intent = body.get("payment_intent") or {}
        intent_id = intent.get("id", "") if isinstance(intent, dict) else str(intent)
        decline_code = (
            getattr(error, "decline_code", None) or body.get("decline_code") or error.code or ""
        )

        cls.get_logger().warning(
            "Card error from Stripe",
            extra={
                **log_context,
                "stripe_code": error.code,
                "decline_code": decline_code,
                "payment_intent_id": intent_id,
                "duration_ms": cls._elapsed_ms(start_time),
            },
        )

        if error.code == "authentication_required":
            return GatewayCharge(
                outcome=AttemptOutcome.REQUIRES_ACTION,
                processor_reference=intent_id,
                decline_code="authentication_required",
                failure_message=error.user_message or str(error),
                raw=body,
            )

        return GatewayCharge(
            outcome=AttemptOutcome.DECLINED,
            processor_reference=intent_id,
            decline_code=decline_code,
            failure_message=error.user_message or str(error),
            raw=body,
        )

    @staticmethod
    def _is_missing_instrument(error: stripe.InvalidRequestError) -> bool:
        return error.param in NO_INSTRUMENT_PARAMS or error.code == "resource_missing"

    # =========================================================================
    # Recovery Links
    # =========================================================================

    @classmethod
    def create_session(
        cls,
        obligation_id: Any,
        auth_ref: str | None,
        amount_cents: int,
        currency: str,
        *,
        token: str,
        expires_at: datetime,
        customer_ref: str | None = None,
        description: str = "",
    ) -> GatewaySessionLink:
        """
        Open an on-session recovery link.

        With auth_ref, the link points at the hosted recovery page that
        confirms the existing PaymentIntent (3DS), so the chef completes the
        same charge. Without it, a Stripe Checkout session collects a new
        card, charges it and saves it for future off-session use.

        Raises:
            GatewayError: Stripe could not open the link
        """
        cls._configure_stripe()
        logger = cls.get_logger()
        frontend_url = get_policy().frontend_url
        recovery_url = f"{frontend_url}/recovery/{token}"

        log_context = {
            "operation": "create_recovery_session",
            "obligation_id": str(obligation_id),
            "auth_ref": auth_ref,
            "amount_cents": amount_cents,
        }

        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)

        try:
            if auth_ref:
                intent = stripe.PaymentIntent.retrieve(auth_ref)
                link = GatewaySessionLink(
                    url=f"{recovery_url}?payment_intent={intent.id}",
                    gateway_reference=intent.id,
                    expires_at=expires_at,
                )
            else:
                expires_at = cls._clamp_checkout_expiry(expires_at)
                session = stripe.checkout.Session.create(
                    mode="payment",
                    customer=customer_ref,
                    line_items=[
                        {
                            "price_data": {
                                "currency": currency,
                                "unit_amount": amount_cents,
                                "product_data": {
                                    "name": description or "Outstanding kitchen charge",
                                },
                            },
                            "quantity": 1,
                        }
                    ],
                    payment_intent_data={
                        "setup_future_usage": "off_session",
                        "metadata": {
                            "type": "obligation_recovery",
                            "obligation_id": str(obligation_id),
                            "recovery_token": token,
                        },
                    },
                    metadata={"obligation_id": str(obligation_id), "recovery_token": token},
                    success_url=f"{recovery_url}?status=success",
                    cancel_url=f"{recovery_url}?status=cancelled",
                    expires_at=int(expires_at.timestamp()),
                    idempotency_key=IdempotencyKeyGenerator.generate(
                        "recovery_checkout", obligation_id, attempt=token
                    ),
                )
                link = GatewaySessionLink(
                    url=session.url,
                    gateway_reference=session.id,
                    expires_at=expires_at,
                )
        except Exception as e:
            cls._handle_stripe_error(e, log_context, cls._elapsed_ms(start_time))
            raise

        logger.info(
            "Stripe operation completed",
            extra={
                **log_context,
                "gateway_reference": link.gateway_reference,
                "duration_ms": cls._elapsed_ms(start_time),
            },
        )
        return link

    @staticmethod
    def _clamp_checkout_expiry(expires_at: datetime) -> datetime:
        now = timezone.now()
        return max(
            min(expires_at, now + CHECKOUT_MAX_LIFETIME),
            now + CHECKOUT_MIN_LIFETIME,
        )

    # =========================================================================
    # Error Handling
    # =========================================================================

    @staticmethod
    def _elapsed_ms(start_time: float) -> float:
        return (time.time() - start_time) * 1000

    @classmethod
    def _handle_stripe_error(
        cls,
        error: Exception,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Translate Stripe infrastructure errors to gateway exceptions.

        Card declines never reach here; they are business outcomes.

        Raises:
            GatewayRateLimitError: Rate limited
            GatewayTimeoutError: Request timed out
            GatewayUnavailableError: Network failure, 5xx or unknown error
            GatewayRequestError: Invalid request or credentials
        """
        logger = cls.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms}

        if isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            raise GatewayRateLimitError(
                "Stripe rate limit exceeded",
                processor_code="rate_limit",
            )

        elif isinstance(error, stripe.APIConnectionError):
            logger.error("Connection error to Stripe", extra=log_context, exc_info=True)
            if "timed out" in str(error).lower():
                raise GatewayTimeoutError(
                    "Stripe request timed out",
                    processor_code="timeout",
                )
            raise GatewayUnavailableError(
                "Could not connect to Stripe",
                processor_code="api_connection_error",
            )

        elif isinstance(error, stripe.APIError):
            logger.error("Stripe API error", extra=log_context, exc_info=True)
            raise GatewayUnavailableError(
                "Stripe service error",
                processor_code="api_error",
            )

        elif isinstance(error, stripe.AuthenticationError):
            logger.critical(
                "Stripe authentication failed - check API key",
                extra=log_context,
            )
            raise GatewayRequestError(
                "Stripe authentication failed",
                processor_code="authentication_error",
            )

        elif isinstance(error, stripe.InvalidRequestError):
            logger.error(
                "Invalid request to Stripe",
                extra={**log_context, "stripe_code": error.code},
            )
            raise GatewayRequestError(str(error), processor_code=error.code)

        else:
            logger.error(
                f"Unexpected error from Stripe: {type(error).__name__}",
                extra=log_context,
                exc_info=True,
            )
            raise GatewayUnavailableError(
                f"Unexpected Stripe error: {error}",
                processor_code="unknown_error",
            )
