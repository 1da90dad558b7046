"""
Credit Service Component Tests

Component tests for credit_service testing the services with in-memory
repositories sharing one transactional store.

Structure:
- conftest.py: Fixtures and mocks for credit service testing
- test_credit_service_component.py: Balances, grants and consumption
- test_transfer_component.py: Transfer policy, conservation and atomicity
- test_promo_code_component.py: Validation, redemption and admin lifecycle
- test_transaction_service_component.py: Paid purchases with promo bonus and rollback
- test_membership_component.py: Memberships and Stripe webhooks
- test_api_component.py: HTTP routes and error mapping

Markers:
- @pytest.mark.component: Component test marker
- @pytest.mark.asyncio: Async test marker

Usage:
    pytest tests/component/credit -v
    pytest tests/component/credit -k "transfer" -v
"""
