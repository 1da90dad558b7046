"""
Credit Ledger Rules Unit Tests

Pure functions of the ledger: priority split, promo bonus, input checks.

Usage:
    pytest tests/unit/credit -v
"""
import pytest

from microservices.credit_service.ledger import (
    cache_key,
    check_amount,
    check_description,
    check_user_id,
    compute_bonus,
    is_integer,
    plan_priority_consumption,
    raise_if_errors,
)
from microservices.credit_service.protocols import InsufficientCreditsError, ValidationError

pytestmark = [pytest.mark.unit]


class TestPlanPriorityConsumption:
    """Subscription credits first, then demand credits"""

    def test_covered_by_sub(self):
        assert plan_priority_consumption(amount_sub=50, amount_demand=100, total=30) == (30, 0)

    def test_spills_into_demand(self):
        assert plan_priority_consumption(amount_sub=20, amount_demand=100, total=50) == (20, 30)

    def test_exact_total(self):
        assert plan_priority_consumption(amount_sub=5, amount_demand=5, total=10) == (5, 5)

    def test_no_sub_credits(self):
        assert plan_priority_consumption(amount_sub=0, amount_demand=9, total=9) == (0, 9)

    def test_shortfall(self):
        with pytest.raises(InsufficientCreditsError) as exc_info:
            plan_priority_consumption(amount_sub=3, amount_demand=4, total=8)

        assert exc_info.value.details == "User has 7 total credits, but 8 is required"
        assert exc_info.value.available == 7
        assert exc_info.value.required == 8


class TestComputeBonus:
    """Bonus is floor(amount * discount / 100)"""

    @pytest.mark.parametrize(
        "amount,discount,expected",
        [(100, 15, 15), (10, 33, 3), (7, 50, 3), (50, 0, 0), (40, 100, 40), (1, 99, 0)],
    )
    def test_formula(self, amount, discount, expected):
        assert compute_bonus(amount, discount) == expected


class TestInputChecks:

    def test_bool_is_not_integer(self):
        assert is_integer(5) is True
        assert is_integer(True) is False
        assert is_integer(2.0) is False

    def test_amount_messages(self):
        errors = {}
        check_amount(errors, "a", "5")
        check_amount(errors, "b", -1)
        check_amount(errors, "c", 0, positive=True)
        check_amount(errors, "d", 0)

        assert errors == {
            "a": ["Amount must be an integer"],
            "b": ["Amount must be non-negative"],
            "c": ["Amount must be greater than zero"],
        }

    def test_description_limits(self):
        errors = {}
        check_description(errors, "empty", "   ")
        check_description(errors, "long", "x" * 256)
        check_description(errors, "ok", "x" * 255)

        assert errors["empty"] == ["Description is required"]
        assert errors["long"] == ["Description must be at most 255 characters"]
        assert "ok" not in errors

    def test_user_id_must_be_string(self):
        errors = {}
        check_user_id(errors, "user_id", 42)

        assert errors == {"user_id": ["User ID is required and must be a string"]}

    def test_raise_if_errors(self):
        raise_if_errors({})

        with pytest.raises(ValidationError) as exc_info:
            raise_if_errors({"amount": ["Amount must be an integer"]})

        assert exc_info.value.errors == {"amount": ["Amount must be an integer"]}
        assert "amount: Amount must be an integer" in exc_info.value.message

    def test_cache_key(self):
        assert cache_key("user_1") == "credits:user:user_1"
