import hmac
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, setup_logging
from .database import Database
from .errors import (
    DuplicateReportError,
    InvalidAmountError,
    ReferralNotFoundError,
    ReportError,
    SelfReferralError,
    StoreUnavailableError,
)
from .ledger import GemLedger
from .models import (
    CreditGemsRequest,
    CreditResult,
    LedgerHistoryResponse,
    PurchaseEventRequest,
    PurchaseEventResult,
    ReferralClickRequest,
    ReferralRecord,
    ReferralSignupRequest,
    ReferralStats,
    ReferredUserRequest,
    ReportOutcome,
    SubmitReportRequest,
    SuspensionStatus,
    VestingSweep,
    VestRequest,
    VestResult,
    WalletBalance,
)
from .moderation import ReportService, SuspensionEngine
from .referrals import ReferralService
from .tables import utc_now
from .vesting import VestingEngine, no_activity


@dataclass
class Services:
    ledger: GemLedger
    referrals: ReferralService
    vesting: VestingEngine
    suspensions: SuspensionEngine
    reports: ReportService


def build_services(
    settings: Settings,
    database: Database,
    conversation_count: Callable[[str], int] = no_activity,
    clock: Callable[[], datetime] = utc_now,
) -> Services:
    ledger = GemLedger(database, clock=clock)
    suspensions = SuspensionEngine(
        database,
        threshold=settings.reports_for_suspension,
        window_days=settings.report_window_days,
        clock=clock,
    )
    return Services(
        ledger=ledger,
        referrals=ReferralService(
            database,
            ledger,
            referrer_reward=settings.referral_reward_referrer,
            referred_reward=settings.referral_reward_referred,
            purchase_bonus_referrer=settings.purchase_bonus_referrer,
            purchase_bonus_referred=settings.purchase_bonus_referred,
            subscription_bonus_referrer=settings.subscription_bonus_referrer,
            subscription_bonus_referred=settings.subscription_bonus_referred,
            clock=clock,
        ),
        vesting=VestingEngine(
            database,
            ledger,
            conversation_count=conversation_count,
            days_required=settings.vesting_days_required,
            chats_required=settings.vesting_chats_required,
            clock=clock,
        ),
        suspensions=suspensions,
        reports=ReportService(
            database,
            suspensions,
            cooldown_hours=settings.report_cooldown_hours,
            clock=clock,
        ),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_admin(request: Request, x_admin_secret: Optional[str] = Header(default=None)) -> None:
    secret = request.app.state.settings.admin_secret
    if not secret:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server configuration error - admin secret not set",
        )
    if not x_admin_secret or not hmac.compare_digest(x_admin_secret, secret):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized - Invalid admin secret")


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    conversation_count: Callable[[str], int] = no_activity,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    settings = settings or Settings.from_env()
    database = database or Database(settings.database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database.create_all()
        yield
        database.dispose()

    app = FastAPI(
        title="Gem Economy API",
        description="Gem wallets, referral vesting and abuse-report suspensions",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.database = database
    app.state.services = build_services(settings, database, conversation_count, clock)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable(request: Request, exc: StoreUnavailableError):
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Data store unavailable, safe to retry"},
        )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "gem-economy"}

    @app.post("/gems/credit", response_model=CreditResult, tags=["Gems"], dependencies=[Depends(require_admin)])
    def credit_gems(body: CreditGemsRequest, services: Services = Depends(get_services)) -> CreditResult:
        try:
            return services.ledger.credit_gems(body.user_id, body.amount, body.reason)
        except InvalidAmountError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    @app.get("/users/{user_id}/wallet", response_model=WalletBalance, tags=["Gems"])
    def get_wallet(user_id: str, services: Services = Depends(get_services)) -> WalletBalance:
        return services.ledger.get_balance(user_id)

    @app.get("/users/{user_id}/transactions", response_model=LedgerHistoryResponse, tags=["Gems"])
    def get_transactions(
        user_id: str, limit: int = 50, offset: int = 0, services: Services = Depends(get_services)
    ) -> LedgerHistoryResponse:
        return services.ledger.get_history(user_id, limit, offset)

    @app.post("/referrals/click", response_model=ReferralRecord, status_code=status.HTTP_201_CREATED, tags=["Referrals"])
    def track_click(body: ReferralClickRequest, services: Services = Depends(get_services)) -> ReferralRecord:
        return services.referrals.record_click(body.referrer_id, body.referral_code)

    @app.post("/referrals/signup", response_model=ReferralRecord, tags=["Referrals"])
    def track_signup(body: ReferralSignupRequest, services: Services = Depends(get_services)) -> ReferralRecord:
        try:
            return services.referrals.record_signup(body.referrer_id, body.referred_id, body.referral_code)
        except SelfReferralError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    @app.post("/referrals/activate", response_model=ReferralRecord, tags=["Referrals"])
    def activate_referral(body: ReferredUserRequest, services: Services = Depends(get_services)) -> ReferralRecord:
        try:
            return services.referrals.mark_active(body.referred_id)
        except ReferralNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    @app.post("/referrals/reward", response_model=ReferralRecord, tags=["Referrals"])
    def reward_referral(body: ReferredUserRequest, services: Services = Depends(get_services)) -> ReferralRecord:
        try:
            return services.referrals.grant_rewards(body.referred_id)
        except ReferralNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    @app.post("/referrals/purchase", response_model=ReferralRecord, tags=["Referrals"])
    def purchase_bonus(body: ReferredUserRequest, services: Services = Depends(get_services)) -> ReferralRecord:
        try:
            return services.referrals.grant_purchase_bonus(body.referred_id)
        except ReferralNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    @app.post("/referrals/subscription", response_model=ReferralRecord, tags=["Referrals"])
    def subscription_bonus(body: ReferredUserRequest, services: Services = Depends(get_services)) -> ReferralRecord:
        try:
            return services.referrals.grant_subscription_bonus(body.referred_id)
        except ReferralNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    @app.get("/users/{user_id}/referrals/stats",response_model=ReferralStats, tags=["Referrals"])
    def referral_stats(user_id: str, services: Services = Depends(get_services)) -> ReferralStats:
        return services.referrals.get_stats(user_id)

    @app.post("/referrals/vest", response_model=VestResult, tags=["Vesting"], dependencies=[Depends(require_admin)])
    def vest_referral(body: VestRequest, services: Services = Depends(get_services)) -> VestResult:
        try:
            return services.vesting.vest(body.referrer_id, body.referred_id, body.reason)
        except ReferralNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    @app.post(
        "/referrals/purchase-event",
        response_model=PurchaseEventResult,
        tags=["Vesting"],
        dependencies=[Depends(require_admin)],
    )
    def purchase_event(body: PurchaseEventRequest, services: Services = Depends(get_services)) -> PurchaseEventResult:
        """Called by the payment webhook after a gem purchase or subscription succeeds."""
        try:
            if body.purchase_type == "subscription":
                referral = services.referrals.grant_subscription_bonus(body.referred_id)
            else:
                referral = services.referrals.grant_purchase_bonus(body.referred_id)
        except ReferralNotFoundError:
            # purchaser was not referred, or not yet rewarded
            referral = None
        vest = services.vesting.vest_for_purchase(body.referred_id, body.purchase_type)
        if vest is not None:
            referral = vest.referral
        return PurchaseEventResult(referred_id=body.referred_id, referral=referral, vest=vest)

    @app.get("/referrals/unvested",response_model=list[ReferralRecord], tags=["Vesting"], dependencies=[Depends(require_admin)])
    def list_unvested(services: Services = Depends(get_services)) -> list[ReferralRecord]:
        return services.vesting.list_unvested()

    @app.post("/referrals/vest-eligible", response_model=VestingSweep, tags=["Vesting"], dependencies=[Depends(require_admin)])
    def vest_eligible(user_id: Optional[str] = None, services: Services = Depends(get_services)) -> VestingSweep:
        return services.vesting.vest_all_eligible(user_id)

    @app.post("/reports", response_model=ReportOutcome, tags=["Moderation"])
    def submit_report(body: SubmitReportRequest, services: Services = Depends(get_services)) -> ReportOutcome:
        try:
            return services.reports.submit_report(
                body.reporter_id, body.reported_id, body.category, body.room_id, body.description
            )
        except DuplicateReportError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        except ReportError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    @app.get("/users/{user_id}/suspension", response_model=SuspensionStatus, tags=["Moderation"])
    def check_suspension(user_id: str, services: Services = Depends(get_services)) -> SuspensionStatus:
        return services.suspensions.check(user_id)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    setup_logging(app.state.settings.log_level)
    uvicorn.run(app, host="0.0.0.0", port=8000)
