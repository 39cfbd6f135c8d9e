"""
Gem economy core

This module provides:
- Multi-wallet gem balances with an append-only transaction log
- Referral lifecycle: clicked → signed_up → active → rewarded
- One-off referral bonuses for a first purchase and a subscription
- Deferred referrer payouts that vest exactly once
- Auto-suspension after reports from distinct users
"""

from .database import Database
from .ledger import GemLedger
from .models import (
    ReferralStatus,
    ReportCategory,
    TransactionType,
    Wallet,
    WalletBalance,
)
from .moderation import ReportService, SuspensionEngine
from .referrals import ReferralService
from .vesting import VestingEngine

__all__ = [
    "Database",
    "GemLedger",
    "ReferralService",
    "ReferralStatus",
    "ReportCategory",
    "ReportService",
    "SuspensionEngine",
    "TransactionType",
    "VestingEngine",
    "Wallet",
    "WalletBalance",
]
