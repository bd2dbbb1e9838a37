"""
Tests for the payment orchestrator facade.
"""
import json
from decimal import Decimal

import pytest
from conftest import CINETPAY_BASE_URL, ORANGE_BASE_URL, SAMA_BASE_URL
from sqlalchemy import select

from memberpay.core.errors import (
    AttemptAlreadyFinal,
    AttemptNotFound,
    DuplicatePurchase,
    GatewayRejected,
    GatewayUnavailable,
    PaymentValidationError,
    StorageConflict,
)
from memberpay.core.orchestrator import InitiatePaymentCommand, build_orchestrator
from memberpay.core.types import Gateway, utcnow
from memberpay.database.models import ListingFee, PaymentAttempt, Subscription


def _command(**overrides) -> InitiatePaymentCommand:
    fields = dict(
        user_id="user-1",
        amount=Decimal("10000"),
        currency="XOF",
        gateway="orange_money",
        kind="membership_payment",
        payer_contact="70000000",
        metadata={"tier": "premium", "plan": "monthly"},
    )
    fields.update(overrides)
    return InitiatePaymentCommand(**fields)


async def _add_active_membership(session_factory, tier: str, is_child: bool = False) -> None:
    async with session_factory() as db:
        db.add(
            Subscription(
                user_id="user-1",
                plan="monthly",
                tier=tier,
                is_child=is_child,
                status="active",
                start_date=utcnow(),
                is_recurring=True,
            )
        )
        await db.commit()


async def _attempt(session_factory, attempt_id: str) -> PaymentAttempt:
    async with session_factory() as db:
        return await db.get(PaymentAttempt, attempt_id)


class TestInitiate:
    """Starting payments."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_initiate_records_pending_attempt(
        self, orchestrator, session_factory, provider
    ) -> None:
        response = await orchestrator.initiate(_command(description="Premium membership"))

        assert response.status == "pending"
        assert response.redirect_url == "https://webpayment.orange.test/REF123"
        assert response.token == "REF123"

        attempt = await _attempt(session_factory, response.attempt_id)
        assert attempt.status == "pending"
        assert attempt.amount == Decimal("10000")
        assert attempt.external_reference == "REF123"
        assert attempt.attempt_metadata["tier"] == "premium"
        assert attempt.attempt_metadata["payer_contact"] == "70000000"
        assert attempt.attempt_metadata["redirect_url"] == response.redirect_url
        assert len(provider.calls("POST", f"{ORANGE_BASE_URL}/webpayment")) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_caller_chosen_attempt_id(self, orchestrator) -> None:
        response = await orchestrator.initiate(_command(attempt_id="order-2026-0001"))
        assert response.attempt_id == "order-2026-0001"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_resubmitted_attempt_id_returns_first_initiation(
        self, orchestrator, provider, count_rows
    ) -> None:
        first = await orchestrator.initiate(_command(attempt_id="client-attempt-1"))
        again = await orchestrator.initiate(_command(attempt_id="client-attempt-1"))

        assert again == first
        assert again.redirect_url == "https://webpayment.orange.test/REF123"
        assert len(provider.calls("POST", f"{ORANGE_BASE_URL}/webpayment")) == 1
        assert await count_rows(PaymentAttempt) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_attempt_id_reused_for_other_payment(
        self, orchestrator, provider, count_rows
    ) -> None:
        await orchestrator.initiate(_command(attempt_id="client-attempt-1"))

        with pytest.raises(StorageConflict) as exc_info:
            await orchestrator.initiate(
                _command(attempt_id="client-attempt-1", amount=Decimal("25000"))
            )

        assert exc_info.value.code == "attempt_id_in_use"
        assert len(provider.calls("POST", f"{ORANGE_BASE_URL}/webpayment")) == 1
        assert await count_rows(PaymentAttempt) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_membership_rejected_before_gateway_call(
        self, orchestrator, session_factory, provider, count_rows
    ) -> None:
        """A premium member buying premium again never reaches the gateway."""
        await _add_active_membership(session_factory, "premium")

        with pytest.raises(DuplicatePurchase):
            await orchestrator.initiate(_command())

        assert provider.requests == []
        assert await count_rows(PaymentAttempt) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lower_tier_is_duplicate(self, orchestrator, session_factory) -> None:
        await _add_active_membership(session_factory, "elite")

        with pytest.raises(DuplicatePurchase):
            await orchestrator.initiate(_command(metadata={"tier": "essential", "plan": "yearly"}))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_upgrade_allowed(self, orchestrator, session_factory) -> None:
        await _add_active_membership(session_factory, "premium")

        response = await orchestrator.initiate(
            _command(amount=Decimal("20000"), metadata={"tier": "elite", "plan": "monthly"})
        )

        assert response.status == "pending"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_child_membership_not_blocked_by_adult(
        self, orchestrator, session_factory
    ) -> None:
        await _add_active_membership(session_factory, "premium")

        response = await orchestrator.initiate(
            _command(metadata={"tier": "premium", "plan": "monthly", "is_child": True})
        )

        assert response.status == "pending"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_listing_fee_paid_once(self, orchestrator, session_factory) -> None:
        async with session_factory() as db:
            db.add(
                ListingFee(
                    listing_id="listing-7",
                    user_id="user-1",
                    payment_id="p-1",
                    amount=Decimal("2500"),
                    confirmed_at=utcnow(),
                )
            )
            await db.commit()

        with pytest.raises(DuplicatePurchase, match="Listing fee"):
            await orchestrator.initiate(
                _command(
                    amount=Decimal("2500"),
                    kind="marketplace_listing_fee",
                    metadata={"listing_id": "listing-7"},
                )
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejected_by_gateway(self, orchestrator, session_factory, provider) -> None:
        provider.json(
            "POST", f"{SAMA_BASE_URL}/marchand/pay", {"status": "0", "msg": "Solde insuffisant"}
        )

        with pytest.raises(GatewayRejected, match="Solde insuffisant"):
            await orchestrator.initiate(_command(gateway="sama_money", attempt_id="a-rejected"))

        attempt = await _attempt(session_factory, "a-rejected")
        assert attempt.status == "failed"
        assert attempt.failure_reason == "rejected"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gateway_unavailable(self, orchestrator, session_factory, provider) -> None:
        provider.json("POST", f"{ORANGE_BASE_URL}/webpayment", {}, status_code=503)

        with pytest.raises(GatewayUnavailable):
            await orchestrator.initiate(_command(attempt_id="a-down"))

        attempt = await _attempt(session_factory, "a-down")
        assert attempt.status == "failed"
        assert attempt.failure_reason == "gateway_error"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_disabled_gateway(self, test_settings, session_factory, gateways) -> None:
        orange_only = {Gateway.ORANGE_MONEY: gateways[Gateway.ORANGE_MONEY]}
        orchestrator = build_orchestrator(test_settings, session_factory, orange_only)

        with pytest.raises(PaymentValidationError) as exc_info:
            await orchestrator.initiate(
                _command(gateway="cinetpay", payer_contact="member@example.com")
            )
        assert exc_info.value.code == "gateway_disabled"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_card_payment_accepts_email(self, orchestrator, provider) -> None:
        response = await orchestrator.initiate(
            _command(gateway="cinetpay", payer_contact="member@example.com")
        )
        assert response.redirect_url == "https://checkout.cinetpay.test/cp-token"


class TestValidation:
    """Malformed requests are refused before anything is recorded."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides, message",
        [
            ({"user_id": ""}, "User ID is required"),
            ({"currency": "GBP"}, "Unsupported currency"),
            ({"amount": Decimal("-5")}, "Amount must be positive"),
            ({"amount": Decimal("10000.50")}, "more precision"),
            ({"payer_contact": "not-a-phone"}, "Invalid phone number"),
            ({"gateway": "paypal"}, "Unknown gateway"),
            ({"kind": "donation"}, "Unknown payment kind"),
            ({"metadata": {"tier": "platinum", "plan": "monthly"}}, "Membership tier"),
            ({"metadata": {"tier": "premium", "plan": "weekly"}}, "Membership plan"),
            (
                {"kind": "token_purchase", "metadata": {"service_type": "spaceflight"}},
                "Service type",
            ),
            (
                {
                    "kind": "token_purchase",
                    "amount": Decimal("700"),
                    "metadata": {"service_type": "auto"},
                },
                "single token",
            ),
            ({"kind": "marketplace_listing_fee", "metadata": {}}, "listing_id"),
            (
                {"gateway": "cinetpay", "payer_contact": "someone at example"},
                "e-mail",
            ),
        ],
    )
    async def test_invalid_requests(
        self, orchestrator, provider, count_rows, overrides, message
    ) -> None:
        with pytest.raises(PaymentValidationError, match=message):
            await orchestrator.initiate(_command(**overrides))

        assert provider.requests == []
        assert await count_rows(PaymentAttempt) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "gateway, contact",
        [
            ("orange_money", "70000000"),
            ("sama_money", "+22370000000"),
            ("cinetpay", "member@example.com"),
        ],
    )
    async def test_fractional_amount_refused_by_whole_unit_gateways(
        self, orchestrator, provider, count_rows, gateway, contact
    ) -> None:
        command = _command(
            gateway=gateway,
            payer_contact=contact,
            currency="EUR",
            amount=Decimal("10.50"),
        )

        with pytest.raises(PaymentValidationError) as exc_info:
            await orchestrator.initiate(command)

        assert exc_info.value.code == "unsupported_amount"
        assert provider.requests == []
        assert await count_rows(PaymentAttempt) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_whole_euro_amount_sent_exactly(self, orchestrator, provider) -> None:
        await orchestrator.initiate(
            _command(
                gateway="cinetpay",
                payer_contact="member@example.com",
                currency="EUR",
                amount=Decimal("25.00"),
            )
        )

        (request,) = provider.calls("POST", f"{CINETPAY_BASE_URL}/payment")
        body = json.loads(request.content)
        assert body["amount"] == 25
        assert body["currency"] == "EUR"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_phone_code(self, orchestrator) -> None:
        with pytest.raises(PaymentValidationError) as exc_info:
            await orchestrator.initiate(_command(payer_contact="12"))
        assert exc_info.value.code == "invalid_phone"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_currency_case_insensitive(self, orchestrator) -> None:
        response = await orchestrator.initiate(_command(currency="xof"))
        assert response.status == "pending"


class TestStatusAndCancel:
    """Polling and abandoning attempts."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pending_attempt_polls_gateway(self, orchestrator, provider) -> None:
        provider.json("GET", f"{ORANGE_BASE_URL}/payment/REF123", {"status": "PENDING"})
        response = await orchestrator.initiate(_command())

        view = await orchestrator.check_status(response.attempt_id)

        assert view.status == "pending"
        assert view.payment_id is None
        assert len(provider.calls("GET", f"{ORANGE_BASE_URL}/payment/REF123")) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_poll_settles_payment(self, orchestrator, provider) -> None:
        provider.json(
            "GET",
            f"{ORANGE_BASE_URL}/payment/REF123",
            {"status": "SUCCESS", "amount": "10000", "txnid": "MP-1"},
        )
        response = await orchestrator.initiate(_command())

        view = await orchestrator.check_status(response.attempt_id)

        assert view.status == "completed"
        assert view.payment_id is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_attempt(self, orchestrator) -> None:
        with pytest.raises(AttemptNotFound):
            await orchestrator.check_status("missing")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_pending_attempt(self, orchestrator, session_factory) -> None:
        response = await orchestrator.initiate(_command())

        view = await orchestrator.cancel(response.attempt_id)

        assert view.status == "failed"
        assert view.failure_reason == "cancelled"
        with pytest.raises(AttemptAlreadyFinal):
            await orchestrator.cancel(response.attempt_id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_unknown_attempt(self, orchestrator) -> None:
        with pytest.raises(AttemptNotFound):
            await orchestrator.cancel("missing")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancelled_attempt_keeps_outcome_and_alerts_on_late_success(
        self, orchestrator, session_factory, notifier
    ) -> None:
        response = await orchestrator.initiate(_command())
        await orchestrator.cancel(response.attempt_id)

        outcome = await orchestrator.handle_webhook(
            "orange_money",
            {"status": "SUCCESS", "order_id": response.attempt_id, "amount": "10000"},
        )

        assert outcome.result == "conflict"
        async with session_factory() as db:
            attempt = (
                await db.execute(
                    select(PaymentAttempt).where(PaymentAttempt.id == response.attempt_id)
                )
            ).scalar_one()
        assert attempt.status == "failed"

        notifier.alert_operator.assert_awaited_once()
        _, data = notifier.alert_operator.await_args.args
        assert data["attempt_id"] == response.attempt_id
        assert data["failure_reason"] == "cancelled"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_late_failure_after_cancel_does_not_alert(self, orchestrator, notifier) -> None:
        response = await orchestrator.initiate(_command())
        await orchestrator.cancel(response.attempt_id)

        outcome = await orchestrator.handle_webhook(
            "orange_money", {"status": "FAILED", "order_id": response.attempt_id}
        )

        assert outcome.result == "duplicate"
        notifier.alert_operator.assert_not_awaited()
