from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Wallet(str, Enum):
    SPENDABLE = "spendable"
    CASHABLE = "cashable"
    PROMO = "promo"
    PENDING_REFERRAL = "pending_referral"


class TransactionType(str, Enum):
    CREDIT = "credit"
    PURCHASE = "purchase"
    SUBSCRIPTION_BONUS = "subscription_bonus"
    REFERRAL_BONUS = "referral_bonus"
    PROMO = "promo"
    VEST = "vest"
    ADJUSTMENT = "adjustment"


class ReferralStatus(str, Enum):
    CLICKED = "clicked"
    SIGNED_UP = "signed_up"
    ACTIVE = "active"
    REWARDED = "rewarded"

    @property
    def rank(self) -> int:
        return list(ReferralStatus).index(self)


class ReportCategory(str, Enum):
    INAPPROPRIATE = "inappropriate"
    HARASSMENT = "harassment"
    UNDERAGE = "underage"
    SPAM = "spam"
    OTHER = "other"


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class WalletBalance(CamelModel):
    user_id: str
    spendable: int = 0
    cashable: int = 0
    promo: int = 0
    pending_referral: int = 0
    updated_at: Optional[datetime] = None

    def get(self, wallet: Wallet) -> int:
        return getattr(self, Wallet(wallet).value)


class WalletSnapshot(CamelModel):
    pending: int
    cashable: int

    @classmethod
    def of(cls, balance: WalletBalance) -> "WalletSnapshot":
        return cls(pending=balance.pending_referral, cashable=balance.cashable)


class LedgerEntry(CamelModel):
    id: int
    user_id: str
    transaction_type: TransactionType
    amount: int
    wallet: Wallet
    source_wallet: Optional[Wallet] = None
    description: str
    created_at: datetime


class WalletMove(CamelModel):
    user_id: str
    requested: int
    moved: int
    before: WalletBalance
    after: WalletBalance
    entry: Optional[LedgerEntry] = None

    @property
    def clamped(self) -> bool:
        return self.moved < self.requested


class WalletReconciliation(CamelModel):
    wallet: Wallet
    ledger_total: int
    balance: int

    @property
    def in_sync(self) -> bool:
        return self.ledger_total == self.balance


class ReconciliationReport(CamelModel):
    user_id: str
    wallets: list[WalletReconciliation]

    @property
    def balanced(self) -> bool:
        return all(w.in_sync for w in self.wallets)


class LedgerHistoryResponse(CamelModel):
    user_id: str
    entries: list[LedgerEntry]
    total_count: int
    balance: WalletBalance


class CreditResult(CamelModel):
    user_id: str
    credited: int
    new_balance: int


class ReferralRecord(CamelModel):
    id: str
    referrer_user_id: str
    referred_user_id: Optional[str] = None
    referral_code: str
    status: ReferralStatus
    gems_awarded_referrer: int = 0
    gems_awarded_referred: int = 0
    vested: bool = False
    vested_at: Optional[datetime] = None
    vested_reason: Optional[str] = None
    first_purchase_rewarded: bool = False
    subscription_rewarded: bool = False
    created_at: datetime
    updated_at: datetime


class ReferralStats(CamelModel):
    user_id: str
    clicks: int = 0
    signups: int = 0
    active: int = 0
    gems_earned: int = 0
    gems_pending: int = 0
    gems_vested: int = 0


class VestResult(CamelModel):
    referrer_id: str
    referred_id: str
    vested_amount: int
    already_vested: bool = False
    before: WalletSnapshot
    after: WalletSnapshot
    referral: ReferralRecord


class VestedReferral(CamelModel):
    referrer_id: str
    referred_id: str
    gems_vested: int


class VestingSweep(CamelModel):
    vested_count: int = 0
    total_gems_vested: int = 0
    details: list[VestedReferral] = Field(default_factory=list)


class ReportOutcome(CamelModel):
    report_id: Optional[str] = None
    report_count: int
    user_suspended: bool


class SuspensionCheck(CamelModel):
    report_count: int
    suspended: bool


class SuspensionRecord(CamelModel):
    id: str
    user_id: str
    reason: str
    suspended_by: Optional[str] = None
    is_active: bool
    expires_at: Optional[datetime] = None
    created_at: datetime

    @property
    def is_permanent(self) -> bool:
        return self.expires_at is None


class SuspensionStatus(CamelModel):
    is_suspended: bool
    suspension: Optional[SuspensionRecord] = None


class CreditGemsRequest(CamelModel):
    user_id: str = Field(..., min_length=1)
    amount: Any = Field(..., description="Positive whole number of gems")
    reason: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "userId": "550e8400-e29b-41d4-a716-446655440000",
            "amount": 250,
            "reason": "Missing purchase credit",
        }
    })


class ReferralClickRequest(CamelModel):
    referrer_id: str = Field(..., min_length=1)
    referral_code: Optional[str] = None


class ReferralSignupRequest(CamelModel):
    referrer_id: str = Field(..., min_length=1)
    referred_id: str = Field(..., min_length=1)
    referral_code: Optional[str] = None


class ReferredUserRequest(CamelModel):
    referred_id: str = Field(..., min_length=1)


class VestRequest(CamelModel):
    referrer_id: str = Field(..., min_length=1)
    referred_id: str = Field(..., min_length=1)
    reason: Optional[str] = None


class SubmitReportRequest(CamelModel):
    reporter_id: str = Field(..., min_length=1)
    reported_id: str = Field(..., min_length=1)
    room_id: Optional[str] = None
    category: str
    description: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "reporterId": "550e8400-e29b-41d4-a716-446655440000",
            "reportedId": "660e8400-e29b-41d4-a716-446655440001",
            "roomId": "room-42",
            "category": "harassment",
            "description": "Repeated slurs on camera",
        }
    })


class PurchaseEventRequest(CamelModel):
    referred_id: str = Field(..., min_length=1)
    purchase_type: str = Field("gem_purchase", min_length=1)


class PurchaseEventResult(CamelModel):
    referred_id: str
    referral: Optional[ReferralRecord] = None
    vest: Optional[VestResult] = None
