"""
Credit Service Client Module

Provides clients for external collaborators (payment gateway).
"""

from .stripe_client import StripeGateway

__all__ = [
    "StripeGateway",
]
