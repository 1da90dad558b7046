"""
Credit Service

Credit ledger service.

Features:
- Dual-bucket balances (demand and subscription credits) with history
- Consumption by bucket or subscription-credits-first
- Promo codes with per-user one-time use and legacy redemption
- Role-gated peer-to-peer transfers
- Paid purchases through the payment gateway
- Stripe memberships granting monthly subscription credits
"""

__version__ = "2.0.0"
