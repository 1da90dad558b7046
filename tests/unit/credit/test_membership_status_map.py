"""
Membership Status Mapping Unit Tests

Usage:
    pytest tests/unit/credit -v
"""
import pytest

from core.config import ServiceConfig
from microservices.credit_service.membership_service import STRIPE_STATUS_MAP
from microservices.credit_service.models import PlanTypeEnum, SubscriptionStatusEnum

pytestmark = [pytest.mark.unit]


class TestStripeStatusMap:

    @pytest.mark.parametrize(
        "stripe_status,expected",
        [
            ("active", SubscriptionStatusEnum.ACTIVE),
            ("trialing", SubscriptionStatusEnum.ACTIVE),
            ("past_due", SubscriptionStatusEnum.PAST_DUE),
            ("unpaid", SubscriptionStatusEnum.UNPAID),
            ("canceled", SubscriptionStatusEnum.CANCELLED),
            ("incomplete", SubscriptionStatusEnum.INACTIVE),
            ("incomplete_expired", SubscriptionStatusEnum.INACTIVE),
            ("paused", SubscriptionStatusEnum.INACTIVE),
        ],
    )
    def test_mapping(self, stripe_status, expected):
        assert STRIPE_STATUS_MAP[stripe_status] == expected

    def test_past_due_wire_value(self):
        assert SubscriptionStatusEnum.PAST_DUE.value == "pastDue"


class TestPlanCredits:

    def test_every_plan_has_monthly_credits(self):
        plan_credits = ServiceConfig().plan_credits

        assert {plan.value for plan in PlanTypeEnum} <= set(plan_credits)
        assert plan_credits["basic"] < plan_credits["professional"] < plan_credits["premium"]
