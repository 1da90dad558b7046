"""
Transaction Orchestrator Component Tests

Tests paid credit purchases (promo redemption + gateway charge + ledger
write) as one all-or-nothing unit.

Coverage:
1. Bonus formula and history
2. Role policy and validation
3. Gateway request (payment method, customer, idempotency)
4. Credit pack purchases
5. Rollback on gateway failure and timeout
6. Compensation after a confirmed charge
7. Standalone promo code transactions

Usage:
    pytest tests/component/credit/test_transaction_service_component.py -v
"""

import asyncio

import pytest

from microservices.credit_service.protocols import (
    BusinessRuleViolation,
    ExternalServiceError,
    LegacyPromoCodeError,
    OperationFailedError,
    ResourceNotFound,
    ValidationError,
)

PM = "pm_card_visa"


def confirm_calls(mock_gateway):
    return [call for call in mock_gateway.method_calls if call[0] == "confirm_payment"]


# =============================================================================
# 1. Bonus and History
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestPaidPurchase:

    async def test_bonus_added_on_top(self, credit_service, mock_promo_repository, mock_repository, mock_gateway, data_factory):
        """final = amount + floor(amount * discount / 100); price is not discounted"""
        user_id = data_factory.make_user_id()
        promo = mock_promo_repository.seed(discount=15)

        result = await credit_service.add_credits_with_payment(
            user_id, 100, "MEMBER", promo_code=promo.code, price=9.99, payment_method_id=PM
        )

        assert result.bonus_amount == 15
        assert result.final_amount == 115
        assert result.discount == 15
        assert result.promo_code_used == promo.code
        assert result.credits.amount_demand == 115
        [(_, charged, metadata, _)] = confirm_calls(mock_gateway)
        assert charged == 9.99
        assert metadata["credits"] == 115

    async def test_bonus_rounds_down(self, credit_service, mock_promo_repository, data_factory):
        promo = mock_promo_repository.seed(discount=33)

        result = await credit_service.add_credits_with_payment(
            data_factory.make_user_id(), 10, "MEMBER", promo_code=promo.code
        )

        assert result.bonus_amount == 3
        assert result.final_amount == 13

    async def test_history_carries_payment_intent(self, credit_service, mock_promo_repository, mock_repository, data_factory):
        """One demand entry, tagged with the payment intent and the bonus"""
        user_id = data_factory.make_user_id()
        promo = mock_promo_repository.seed(discount=10)

        result = await credit_service.add_credits_with_payment(
            user_id, 50, "PROFESSIONAL", promo_code=promo.code, price=5, payment_method_id=PM
        )

        [entry] = mock_repository.history_for(user_id)
        assert entry["amount"] == 55
        assert entry["transaction_id"] == result.payment_intent_id
        assert entry["description"] == (
            f"Added 50 on demand credits. (with promo code {promo.code}) "
            f"(with 10% bonus from promo code {promo.code})"
        )

    async def test_usage_recorded_for_buyer(self, credit_service, mock_promo_repository, data_factory):
        user_id = data_factory.make_user_id()
        promo = mock_promo_repository.seed(amount_available=3)

        await credit_service.add_credits_with_payment(user_id, 10, "MEMBER", promo_code=promo.code)

        [usage] = await mock_promo_repository.get_usages_by_user_id(user_id)
        assert usage.promo_code_id == promo.promo_code_id
        assert usage.transaction_id.startswith("txn_")
        assert mock_promo_repository.row(promo.promo_code_id)["amount_available"] == 2

    async def test_free_purchase_skips_gateway(self, credit_service, mock_gateway, data_factory):
        """No price, no charge"""
        result = await credit_service.add_credits_with_payment(data_factory.make_user_id(), 10, "ADMIN")

        assert result.payment_intent_id is None
        assert result.final_amount == 10
        assert mock_gateway.method_calls == []

    async def test_events_after_commit(self, credit_service, mock_promo_repository, mock_event_bus, data_factory):
        promo = mock_promo_repository.seed()

        await credit_service.add_credits_with_payment(
            data_factory.make_user_id(), 10, "MEMBER", promo_code=promo.code, price=1, payment_method_id=PM
        )

        assert mock_event_bus.event_published("promo_code.used")
        assert mock_event_bus.event_published("credit.added")


# =============================================================================
# 2. Policy and Validation
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestPurchasePolicy:

    async def test_guest_cannot_purchase(self, credit_service, data_factory):
        with pytest.raises(BusinessRuleViolation, match="Invalid user role for credit purchase"):
            await credit_service.add_credits_with_payment(data_factory.make_user_id(), 10, "GUEST")

    async def test_unknown_code_literal(self, credit_service, mock_repository, data_factory):
        user_id = data_factory.make_user_id()

        with pytest.raises(LegacyPromoCodeError) as exc_info:
            await credit_service.add_credits_with_payment(
                user_id, 10, "MEMBER", promo_code="NOPE", price=2, payment_method_id=PM
            )

        assert str(exc_info.value) == "Promotional code does not exists."
        assert mock_repository.balance_of(user_id) is None

    async def test_reused_code_literal(self, credit_service, mock_promo_repository, data_factory):
        """One use per buyer, reported with the legacy literal"""
        user_id = data_factory.make_user_id()
        promo = mock_promo_repository.seed()
        await credit_service.add_credits_with_payment(user_id, 10, "MEMBER", promo_code=promo.code)

        with pytest.raises(LegacyPromoCodeError) as exc_info:
            await credit_service.add_credits_with_payment(user_id, 10, "MEMBER", promo_code=promo.code)

        assert str(exc_info.value) == "Unavailable promotional code."

    async def test_negative_price(self, credit_service, data_factory):
        with pytest.raises(ValidationError, match="Price must be a non-negative number"):
            await credit_service.add_credits_with_payment(data_factory.make_user_id(), 10, "MEMBER", price=-1)

    async def test_priced_purchase_needs_payment_method(self, credit_service, mock_gateway, mock_repository, data_factory):
        """A charge without a payment method is rejected before anything is touched"""
        user_id = data_factory.make_user_id()

        with pytest.raises(ValidationError) as exc_info:
            await credit_service.add_credits_with_payment(user_id, 10, "MEMBER", price=4)

        assert "payment_method_id" in exc_info.value.errors
        assert mock_gateway.method_calls == []
        assert mock_repository.balance_of(user_id) is None

    async def test_gateway_not_configured(self, transaction_service, data_factory):
        transaction_service.payment_gateway = None

        with pytest.raises(ExternalServiceError, match="Payment gateway is not configured"):
            await transaction_service.execute_payment_transaction(
                data_factory.make_user_id(), 10, "Purchase", price=3, payment_method_id=PM
            )


# =============================================================================
# 3. Gateway Request
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestGatewayRequest:
    """What the orchestrator sends to the payment gateway"""

    async def test_payment_method_and_customer_reach_gateway(
        self, credit_service, mock_membership_repository, mock_gateway, data_factory
    ):
        """The buyer's Stripe customer comes from their membership"""
        user_id = data_factory.make_user_id()
        customer_id = data_factory.make_customer_id()
        await mock_membership_repository.create_membership({"user_id": user_id, "stripe_customer_id": customer_id})

        await credit_service.add_credits_with_payment(user_id, 10, "MEMBER", price=4, payment_method_id="pm_saved")

        [(_, _, _, options)] = confirm_calls(mock_gateway)
        assert options["payment_method"] == "pm_saved"
        assert options["customer"] == customer_id

    async def test_buyer_without_membership_pays_as_guest(self, credit_service, mock_gateway, data_factory):
        await credit_service.add_credits_with_payment(
            data_factory.make_user_id(), 10, "MEMBER", price=4, payment_method_id=PM
        )

        [(_, _, _, options)] = confirm_calls(mock_gateway)
        assert options["customer"] is None

    async def test_idempotency_key_is_transaction_id(self, credit_service, mock_gateway, data_factory):
        """A retried gateway request cannot charge twice"""
        await credit_service.add_credits_with_payment(
            data_factory.make_user_id(), 10, "MEMBER", price=4, payment_method_id=PM
        )

        [(_, _, metadata, options)] = confirm_calls(mock_gateway)
        assert options["idempotency_key"] == metadata["transaction_id"]
        assert options["idempotency_key"].startswith("txn_")


# =============================================================================
# 4. Credit Packs
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestPackPurchase:

    async def test_pack_sets_amount_and_price(self, credit_service, mock_pack_repository, mock_gateway, data_factory):
        """The pack overrides whatever amount and price the request carried"""
        pack = mock_pack_repository.seed(amount=10, price=200.0)

        result = await credit_service.add_credits_with_payment(
            data_factory.make_user_id(), None, "MEMBER", pack_id=pack.pack_id, price=1, payment_method_id=PM
        )

        assert result.final_amount == 10
        assert result.price == 200.0
        [(_, charged, _, _)] = confirm_calls(mock_gateway)
        assert charged == 200.0

    async def test_pack_with_promo_bonus(self, credit_service, mock_pack_repository, mock_promo_repository, data_factory):
        pack = mock_pack_repository.seed(amount=20, price=360.0)
        promo = mock_promo_repository.seed(discount=10)

        result = await credit_service.add_credits_with_payment(
            data_factory.make_user_id(), None, "MEMBER", pack_id=pack.pack_id, promo_code=promo.code,
            payment_method_id=PM,
        )

        assert result.bonus_amount == 2
        assert result.final_amount == 22

    async def test_inactive_pack_rejected(self, credit_service, mock_pack_repository, mock_gateway, data_factory):
        pack = mock_pack_repository.seed(active=False)

        with pytest.raises(BusinessRuleViolation, match="Credit pack is not available"):
            await credit_service.add_credits_with_payment(
                data_factory.make_user_id(), None, "MEMBER", pack_id=pack.pack_id, payment_method_id=PM
            )

        assert mock_gateway.method_calls == []

    async def test_unknown_pack(self, credit_service, data_factory):
        with pytest.raises(ResourceNotFound):
            await credit_service.add_credits_with_payment(
                data_factory.make_user_id(), None, "MEMBER", pack_id="pack_missing", payment_method_id=PM
            )


# =============================================================================
# 5. Rollback
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestPurchaseRollback:

    async def test_gateway_failure_restores_promo(
        self, credit_service, mock_promo_repository, mock_repository, mock_gateway, mock_event_bus, data_factory
    ):
        """Declined charge reverts the promo decrement and its usage row"""
        user_id = data_factory.make_user_id()
        promo = mock_promo_repository.seed(amount_available=1)
        mock_gateway.confirm_error = RuntimeError("card_declined")

        with pytest.raises(ExternalServiceError, match="Payment confirmation failed"):
            await credit_service.add_credits_with_payment(
                user_id, 10, "MEMBER", promo_code=promo.code, price=4, payment_method_id=PM
            )

        assert mock_promo_repository.row(promo.promo_code_id)["amount_available"] == 1
        assert await mock_promo_repository.count_usages(promo.promo_code_id) == 0
        assert mock_repository.balance_of(user_id) is None
        assert mock_event_bus.published_events == []

    async def test_gateway_timeout_restores_promo(
        self, credit_service, transaction_service, mock_promo_repository, mock_gateway, data_factory
    ):
        """A hung gateway is cut off and treated as a failure"""
        promo = mock_promo_repository.seed(amount_available=2)
        mock_gateway.confirm_delay = 0.5

        with pytest.raises(ExternalServiceError, match="Payment confirmation timed out"):
            await credit_service.add_credits_with_payment(
                data_factory.make_user_id(), 10, "MEMBER", promo_code=promo.code, price=4, payment_method_id=PM
            )

        assert mock_promo_repository.row(promo.promo_code_id)["amount_available"] == 2
        await asyncio.gather(*transaction_service.pending_compensations)

    async def test_late_charge_is_voided(
        self, credit_service, transaction_service, mock_repository, mock_gateway, data_factory
    ):
        """A charge confirmed after the timeout is cancelled once it lands"""
        user_id = data_factory.make_user_id()
        mock_gateway.confirm_delay = 0.5

        with pytest.raises(ExternalServiceError, match="Payment confirmation timed out"):
            await credit_service.add_credits_with_payment(user_id, 10, "MEMBER", price=4, payment_method_id=PM)

        assert mock_gateway.cancelled_payments == []
        await asyncio.gather(*transaction_service.pending_compensations)

        assert len(mock_gateway.cancelled_payments) == 1
        assert mock_repository.balance_of(user_id) is None

    async def test_late_failure_needs_no_void(self, credit_service, transaction_service, mock_gateway, data_factory):
        mock_gateway.confirm_delay = 0.5
        mock_gateway.confirm_error = RuntimeError("card_declined")

        with pytest.raises(ExternalServiceError, match="Payment confirmation timed out"):
            await credit_service.add_credits_with_payment(
                data_factory.make_user_id(), 10, "MEMBER", price=4, payment_method_id=PM
            )
        await asyncio.gather(*transaction_service.pending_compensations)

        assert mock_gateway.cancelled_payments == []


# =============================================================================
# 6. Compensation
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestPurchaseCompensation:

    async def test_ledger_failure_cancels_charge(
        self, credit_service, mock_promo_repository, mock_repository, mock_gateway, mock_db, data_factory
    ):
        """Confirmed charge is cancelled when the credit write fails"""
        user_id = data_factory.make_user_id()
        mock_repository.seed(user_id, 5, 0)
        promo = mock_promo_repository.seed(amount_available=1)
        mock_db.fail_on("update_credits_amounts")

        with pytest.raises(OperationFailedError) as exc_info:
            await credit_service.add_credits_with_payment(
                user_id, 10, "MEMBER", promo_code=promo.code, price=4, payment_method_id=PM
            )

        [payment_intent_id] = mock_gateway.cancelled_payments
        assert exc_info.value.context["payment_intent_id"] == payment_intent_id
        assert mock_repository.balance_of(user_id) == {"demand": 5, "sub": 0}
        assert mock_promo_repository.row(promo.promo_code_id)["amount_available"] == 1


# =============================================================================
# 7. Promo Code Transactions
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestPromoCodeTransaction:
    """Redeeming a code on its own, once per user"""

    async def test_first_redemption_is_used(
        self, transaction_service, mock_promo_repository, mock_event_bus, data_factory
    ):
        user_id = data_factory.make_user_id()
        promo = mock_promo_repository.seed(amount_available=3)

        result = await transaction_service.execute_promo_code_transaction(promo.code, user_id, "txn_abc")

        assert result.used is True
        assert result.usage.user_id == user_id
        assert result.usage.transaction_id == "txn_abc"
        assert mock_promo_repository.row(promo.promo_code_id)["amount_available"] == 2
        assert mock_event_bus.event_published("promo_code.used")

    async def test_existing_usage_is_returned_unconsumed(
        self, transaction_service, mock_promo_repository, mock_event_bus, data_factory
    ):
        """A repeat returns the first usage and consumes nothing"""
        user_id = data_factory.make_user_id()
        promo = mock_promo_repository.seed(amount_available=3)
        first = await transaction_service.execute_promo_code_transaction(promo.code, user_id)
        mock_event_bus.reset()

        result = await transaction_service.execute_promo_code_transaction(promo.code, user_id)

        assert result.used is False
        assert result.usage.usage_id == first.usage.usage_id
        assert mock_promo_repository.row(promo.promo_code_id)["amount_available"] == 2
        assert mock_event_bus.published_events == []

    async def test_unknown_code_literal(self, transaction_service, data_factory):
        with pytest.raises(LegacyPromoCodeError) as exc_info:
            await transaction_service.execute_promo_code_transaction("NOPE", data_factory.make_user_id())

        assert str(exc_info.value) == "Promotional code does not exists."

    async def test_exhausted_code_literal(self, transaction_service, mock_promo_repository, data_factory):
        promo = mock_promo_repository.seed(amount_available=0)

        with pytest.raises(LegacyPromoCodeError) as exc_info:
            await transaction_service.execute_promo_code_transaction(promo.code, data_factory.make_user_id())

        assert str(exc_info.value) == "Unavailable promotional code."

    async def test_code_required(self, transaction_service, data_factory):
        with pytest.raises(ValidationError):
            await transaction_service.execute_promo_code_transaction("  ", data_factory.make_user_id())
