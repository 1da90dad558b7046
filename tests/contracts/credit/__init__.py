"""
Credit Service Contracts

This module provides the contracts for credit_service testing.
"""

from .data_contract import (
    # Request Contracts
    ConsumeCreditsRequestContract,
    TransferCreditsRequestContract,
    CreatePromoCodeRequestContract,
    # Response Contracts
    CreditBalanceResponseContract,
    TransferResponseContract,
    ErrorResponseContract,
    # Factory
    CreditTestDataFactory,
)

__all__ = [
    "ConsumeCreditsRequestContract",
    "TransferCreditsRequestContract",
    "CreatePromoCodeRequestContract",
    "CreditBalanceResponseContract",
    "TransferResponseContract",
    "ErrorResponseContract",
    "CreditTestDataFactory",
]
