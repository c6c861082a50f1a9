import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import LedgerSettings, configure_logging
from .currency import coins_to_cash
from .errors import (
    AccountExistsError,
    AccountNotFoundError,
    IdempotencyConflictError,
    InvalidCursorError,
    InvalidStateTransitionError,
    PayoutNotFoundError,
    StoreUnavailableError,
)
from .models import (
    Account,
    BalanceAudit,
    BalanceResponse,
    CancelPayoutRequest,
    CoinStats,
    CreateAccountRequest,
    CreatePayoutRequest,
    CreditRequest,
    DebitRequest,
    DistributionRequest,
    DistributionResult,
    GiftRequest,
    GiftResult,
    PayoutCallback,
    PayoutProfileRequest,
    PayoutRequest,
    PayoutResult,
    RedeemReferralRequest,
    ReferralStats,
    TipRequest,
    TransactionPage,
    TransferRequest,
    TransferResult,
)
from .payout import PayoutGateway, PayoutRequestManager
from .projections import CoinStatsProjection
from .queries import LedgerQueries
from .referral import ReferralProcessor
from .revenue import RevenueDistributor
from .service import LedgerService
from .store import AccountStore

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[LedgerSettings] = None,
    storage: Optional[AccountStore] = None,
    gateway: Optional[PayoutGateway] = None,
    root_path: str = "",
) -> FastAPI:
    settings = settings or LedgerSettings()
    configure_logging(settings.log_level)

    storage = storage or AccountStore()
    ledger_service = LedgerService(storage, settings)
    referrals = ReferralProcessor(ledger_service)
    payouts = PayoutRequestManager(ledger_service, gateway)
    revenue = RevenueDistributor(ledger_service)
    queries = LedgerQueries(storage, settings, CoinStatsProjection.attach(storage))

    app = FastAPI(
        title="Coin Ledger API",
        description="Virtual coin ledger: transfers, referral bonuses and payouts with an immutable audit trail",
        version="1.0.0",
        root_path=root_path,
    )
    app.state.ledger_service = ledger_service
    app.state.referrals = referrals
    app.state.payouts = payouts
    app.state.queries = queries
    app.state.revenue = revenue

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable(request: Request, exc: StoreUnavailableError):
        logger.error("store unavailable during %s %s", request.method, request.url.path)
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                            content={"detail": str(exc)}, headers={"Retry-After": "1"})

    @app.exception_handler(AccountNotFoundError)
    async def account_not_found(request: Request, exc: AccountNotFoundError):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(IdempotencyConflictError)
    async def idempotency_conflict(request: Request, exc: IdempotencyConflictError):
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy" if storage.ping() else "degraded", "service": "coin-ledger"}

    @app.post("/accounts", response_model=Account, status_code=status.HTTP_201_CREATED, tags=["Accounts"])
    def create_account(request: CreateAccountRequest) -> Account:
        try:
            return storage.create_account(request.account_id, request.payout_profile_ref)
        except AccountExistsError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    @app.get("/accounts/{account_id}", response_model=Account, tags=["Accounts"])
    def get_account(account_id: str) -> Account:
        return storage.get_account(account_id)

    @app.put("/accounts/{account_id}/payout-profile", response_model=Account, tags=["Accounts"])
    def set_payout_profile(account_id: str, request: PayoutProfileRequest) -> Account:
        return storage.set_payout_profile(account_id, request.payout_profile_ref)

    @app.get("/accounts/{account_id}/balance", response_model=BalanceResponse, tags=["Accounts"])
    def get_balance(account_id: str) -> BalanceResponse:
        balance = queries.get_balance(account_id)
        return BalanceResponse(
            account_id=account_id,
            balance=balance,
            cash_value=coins_to_cash(balance, settings),
            currency=settings.default_currency,
        )

    @app.get("/accounts/{account_id}/transactions", response_model=TransactionPage, tags=["Accounts"])
    def get_transactions(account_id: str, limit: int = 50, cursor: Optional[str] = None) -> TransactionPage:
        try:
            return queries.get_transaction_history(account_id, limit, cursor)
        except InvalidCursorError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    @app.get("/accounts/{account_id}/referral-stats", response_model=ReferralStats, tags=["Accounts"])
    def get_referral_stats(account_id: str) -> ReferralStats:
        return queries.get_referral_stats(account_id)

    @app.get("/accounts/{account_id}/stats", response_model=CoinStats, tags=["Accounts"])
    def get_coin_stats(account_id: str) -> CoinStats:
        return queries.get_coin_stats(account_id)

    @app.get("/accounts/{account_id}/audit", response_model=BalanceAudit, tags=["Accounts"])
    def audit_account(account_id: str) -> BalanceAudit:
        return queries.audit_balance(account_id)

    @app.post("/transfers", response_model=TransferResult, tags=["Ledger"])
    def transfer(request: TransferRequest) -> TransferResult:
        return ledger_service.transfer(
            request.from_account_id, request.to_account_id, request.amount, request.description,
            idempotency_key=request.idempotency_key, related_post_id=request.related_post_id,
        )

    @app.post("/tips", response_model=TransferResult, tags=["Ledger"])
    def send_tip(request: TipRequest) -> TransferResult:
        return ledger_service.send_tip(
            request.from_account_id, request.to_account_id, request.amount, request.post_id,
            idempotency_key=request.idempotency_key,
        )

    @app.post("/gifts", response_model=GiftResult, tags=["Ledger"])
    def send_gift(request: GiftRequest) -> GiftResult:
        return ledger_service.gift(
            request.from_account_id, request.to_account_id, request.amount, request.message,
            idempotency_key=request.idempotency_key,
        )

    @app.post("/accounts/{account_id}/credit", response_model=TransferResult, tags=["Ledger"])
    def credit(account_id: str, request: CreditRequest) -> TransferResult:
        try:
            return ledger_service.credit(
                account_id, request.amount, request.description, request.kind,
                idempotency_key=request.idempotency_key,
            )
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    @app.post("/accounts/{account_id}/debit", response_model=TransferResult, tags=["Ledger"])
    def debit(account_id: str, request: DebitRequest) -> TransferResult:
        try:
            return ledger_service.debit(
                account_id, request.amount, request.description, request.kind,
                idempotency_key=request.idempotency_key,
            )
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    @app.post("/referrals", response_model=TransferResult, tags=["Referrals"])
    def redeem_referral(request: RedeemReferralRequest) -> TransferResult:
        return referrals.apply_referral_bonus(
            request.account_id, request.referral_code, idempotency_key=request.idempotency_key,
        )

    @app.post("/payouts", response_model=PayoutResult, tags=["Payouts"])
    def request_payout(request: CreatePayoutRequest) -> PayoutResult:
        return payouts.request_payout(
            request.account_id, request.amount, request.currency, idempotency_key=request.idempotency_key,
        )

    @app.get("/payouts/{payout_id}", response_model=PayoutRequest, tags=["Payouts"])
    def get_payout(payout_id: str) -> PayoutRequest:
        try:
            return payouts.get_payout(payout_id)
        except PayoutNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Payout {payout_id} not found")

    @app.post("/payouts/{payout_id}/cancel", response_model=PayoutResult, tags=["Payouts"])
    def cancel_payout(payout_id: str, request: CancelPayoutRequest) -> PayoutResult:
        try:
            return payouts.cancel_payout(payout_id, request.reason)
        except PayoutNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Payout {payout_id} not found")
        except InvalidStateTransitionError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    @app.post("/payouts/webhook", response_model=PayoutRequest, tags=["Payouts"])
    def payout_webhook(callback: PayoutCallback) -> PayoutRequest:
        try:
            return payouts.handle_callback(callback)
        except PayoutNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        except InvalidStateTransitionError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    @app.post("/payouts/reconcile", response_model=list[PayoutRequest], tags=["Payouts"])
    def reconcile_payouts() -> list[PayoutRequest]:
        return payouts.reconcile()

    @app.post("/revenue/distributions", response_model=DistributionResult, tags=["Revenue"])
    def distribute_revenue(request: DistributionRequest) -> DistributionResult:
        try:
            return revenue.distribute(request.month, request.total_revenue, request.engagement_points)
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    @app.get("/leaderboard/receivers", response_model=list[CoinStats], tags=["Reporting"])
    def top_receivers(limit: int = 10) -> list[CoinStats]:
        return queries.top_receivers(limit)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(LedgerSettings.from_env()), host="0.0.0.0", port=8000)
