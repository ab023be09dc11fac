"""
Tests for the Stripe client wrapper: retries and error mapping.
"""

from unittest.mock import Mock, patch

import pytest
import stripe

from giftpipe.services.payments.stripe_client import (
    StripeAuthenticationError,
    StripeClient,
    StripeClientError,
    StripeConnectionError,
    StripePaymentError,
)


@pytest.fixture
def client():
    return StripeClient(
        api_key="sk_test_123",
        webhook_secret="whsec_test",
        max_retries=2,
        initial_backoff=0.01,
    )


class TestRetrievePaymentIntent:
    @patch("giftpipe.services.payments.stripe_client.stripe.PaymentIntent.retrieve")
    def test_passes_api_key_per_request(self, mock_retrieve: Mock, client):
        mock_retrieve.return_value = Mock(id="pi_1", status="succeeded")

        intent = client.retrieve_payment_intent("pi_1")

        assert intent.status == "succeeded"
        mock_retrieve.assert_called_once_with("pi_1", api_key="sk_test_123")

    @patch("giftpipe.services.payments.stripe_client.time.sleep")
    @patch("giftpipe.services.payments.stripe_client.stripe.PaymentIntent.retrieve")
    def test_transient_errors_are_retried(
        self, mock_retrieve: Mock, mock_sleep: Mock, client
    ):
        mock_retrieve.side_effect = [
            stripe.APIConnectionError("connection reset"),
            Mock(id="pi_1", status="succeeded"),
        ]

        intent = client.retrieve_payment_intent("pi_1")

        assert intent.id == "pi_1"
        assert mock_retrieve.call_count == 2
        mock_sleep.assert_called_once_with(0.01)

    @patch("giftpipe.services.payments.stripe_client.time.sleep")
    @patch("giftpipe.services.payments.stripe_client.stripe.PaymentIntent.retrieve")
    def test_retries_are_bounded(self, mock_retrieve: Mock, mock_sleep: Mock, client):
        mock_retrieve.side_effect = stripe.APIConnectionError("down")

        with pytest.raises(StripeConnectionError):
            client.retrieve_payment_intent("pi_1")

        assert mock_retrieve.call_count == 3

    @patch("giftpipe.services.payments.stripe_client.stripe.PaymentIntent.retrieve")
    def test_no_retry_without_budget(self, mock_retrieve: Mock):
        mock_retrieve.side_effect = stripe.APIConnectionError("down")
        client = StripeClient(api_key="sk_test_123", max_retries=0)

        with pytest.raises(StripeConnectionError):
            client.retrieve_payment_intent("pi_1")

        assert mock_retrieve.call_count == 1

    @patch("giftpipe.services.payments.stripe_client.stripe.PaymentIntent.retrieve")
    def test_authentication_error(self, mock_retrieve: Mock, client):
        mock_retrieve.side_effect = stripe.AuthenticationError("bad key")

        with pytest.raises(StripeAuthenticationError):
            client.retrieve_payment_intent("pi_1")

        assert mock_retrieve.call_count == 1

    @patch("giftpipe.services.payments.stripe_client.stripe.PaymentIntent.retrieve")
    def test_invalid_request(self, mock_retrieve: Mock, client):
        mock_retrieve.side_effect = stripe.InvalidRequestError(
            "No such payment_intent", param="id", code="resource_missing"
        )

        with pytest.raises(StripeClientError) as exc_info:
            client.retrieve_payment_intent("pi_missing")

        assert exc_info.value.code == "resource_missing"


class TestCreateOffSessionPayment:
    @patch("giftpipe.services.payments.stripe_client.stripe.PaymentIntent.create")
    def test_confirms_off_session(self, mock_create: Mock, client):
        mock_create.return_value = Mock(id="pi_auto", status="succeeded")

        client.create_off_session_payment(
            amount=4900,
            currency="USD",
            customer_id="cus_1",
            payment_method_id="pm_1",
            metadata={"order_id": "o1"},
            idempotency_key="exec-1",
        )

        kwargs = mock_create.call_args.kwargs
        assert kwargs["off_session"] is True
        assert kwargs["confirm"] is True
        assert kwargs["currency"] == "usd"
        assert kwargs["idempotency_key"] == "exec-1"
        assert kwargs["api_key"] == "sk_test_123"

    @patch("giftpipe.services.payments.stripe_client.stripe.PaymentIntent.create")
    def test_card_declined(self, mock_create: Mock, client):
        mock_create.side_effect = stripe.CardError(
            "Your card was declined.", param=None, code="card_declined"
        )

        with pytest.raises(StripePaymentError) as exc_info:
            client.create_off_session_payment(
                amount=4900, currency="usd", customer_id="cus_1", payment_method_id="pm_1"
            )

        assert exc_info.value.code == "card_declined"


class TestConstructWebhookEvent:
    @patch("giftpipe.services.payments.stripe_client.stripe.Webhook.construct_event")
    def test_invalid_signature(self, mock_construct: Mock, client):
        mock_construct.side_effect = stripe.SignatureVerificationError(
            "No signatures found", sig_header="bogus"
        )

        with pytest.raises(StripeClientError) as exc_info:
            client.construct_webhook_event(b"{}", "bogus")

        assert exc_info.value.code == "INVALID_SIGNATURE"

    @patch("giftpipe.services.payments.stripe_client.stripe.Webhook.construct_event")
    def test_invalid_payload(self, mock_construct: Mock, client):
        mock_construct.side_effect = ValueError("Invalid payload")

        with pytest.raises(StripeClientError) as exc_info:
            client.construct_webhook_event(b"not json", "t=1,v1=x")

        assert exc_info.value.code == "INVALID_PAYLOAD"

    @patch("giftpipe.services.payments.stripe_client.stripe.Webhook.construct_event")
    def test_uses_configured_secret(self, mock_construct: Mock, client):
        mock_construct.return_value = Mock(id="evt_1", type="payment_intent.succeeded")

        event = client.construct_webhook_event(b"{}", "t=1,v1=x")

        assert event.id == "evt_1"
        mock_construct.assert_called_once_with(b"{}", "t=1,v1=x", "whsec_test")
