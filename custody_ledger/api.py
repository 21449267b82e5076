"""
FastAPI REST API Module

Exposes the custody ledger over HTTP: deposits, withdrawals, interest
accrual and read-only account queries. Amounts travel as decimal strings
of integer base units.
"""

from typing import Optional
from fastapi import FastAPI, HTTPException, Request, status
from pydantic import BaseModel, Field
import uvicorn

from . import __version__
from .asset import Asset, parse_base_units
from .config import get_config
from .errors import (
    LedgerError, InvalidAmount, InvalidRecipient, InsufficientBalance,
    TransferFailed, AccrualNotDue
)
from .ledger import Ledger, Account, create_ledger


ERROR_STATUS = {
    InvalidAmount: status.HTTP_400_BAD_REQUEST,
    InvalidRecipient: status.HTTP_400_BAD_REQUEST,
    InsufficientBalance: status.HTTP_409_CONFLICT,
    AccrualNotDue: status.HTTP_409_CONFLICT,
    TransferFailed: status.HTTP_502_BAD_GATEWAY,
}


class DepositRequest(BaseModel):
    user: str = Field(..., min_length=1)
    amount: str = Field(..., description="Integer amount of base units as string")


class WithdrawRequest(BaseModel):
    user: str = Field(..., min_length=1)
    amount: str = Field(..., description="Integer amount of base units as string")
    recipient: Optional[str] = Field(None, description="Payout address; defaults to user")


def _parse_amount(raw: str) -> int:
    try:
        return parse_base_units(raw)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def _raise_http(error: LedgerError):
    code = ERROR_STATUS.get(type(error), status.HTTP_500_INTERNAL_SERVER_ERROR)
    raise HTTPException(status_code=code, detail=error.to_dict())


def _account_view(account: Account, ledger: Ledger, asset: Asset) -> dict:
    next_accrual = None
    if account.has_accrual_history:
        next_accrual = account.last_accrual_time + ledger.annual_period
    return {
        "user": account.user,
        "balance": str(account.balance),
        "balance_display": asset.format_amount(account.balance),
        "last_accrual_time": account.last_accrual_time,
        "next_accrual_time": next_accrual
    }


def create_app(ledger: Optional[Ledger] = None, asset: Optional[Asset] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    config = get_config()
    app = FastAPI(
        title="Custody Ledger API",
        description="Pooled custody ledger with bounded deposits and annual interest",
        version=__version__
    )
    app.state.ledger = ledger or create_ledger(config)
    app.state.asset = asset or Asset(config.asset_symbol, config.asset_decimals)

    def get_ledger(request: Request) -> Ledger:
        return request.app.state.ledger

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "service": "custody_ledger", "version": __version__}

    @app.get("/ledger")
    def get_ledger_summary(request: Request):
        """Totals and the deposit bounds"""
        ledger = get_ledger(request)
        return {
            "total_deposited": str(ledger.total_deposited()),
            "accounts": len(ledger.list_accounts()),
            "min_deposit_amount": str(ledger.min_deposit_amount),
            "max_deposit_amount": str(ledger.max_deposit_amount),
            "annual_period": ledger.annual_period,
            "asset": request.app.state.asset.symbol
        }

    @app.get("/accounts/{user}")
    def get_account(user: str, request: Request):
        """Account position; unknown users report a zero balance"""
        ledger = get_ledger(request)
        return _account_view(ledger.get_account(user), ledger, request.app.state.asset)

    @app.post("/deposits", status_code=status.HTTP_201_CREATED)
    def deposit(body: DepositRequest, request: Request):
        """Pull a deposit into the pool and credit it"""
        ledger = get_ledger(request)
        amount = _parse_amount(body.amount)
        try:
            account = ledger.deposit(body.user, amount)
        except LedgerError as e:
            _raise_http(e)
        return _account_view(account, ledger, request.app.state.asset)

    @app.post("/withdrawals", status_code=status.HTTP_201_CREATED)
    def withdraw(body: WithdrawRequest, request: Request):
        """Debit a balance and push the amount to the recipient"""
        ledger = get_ledger(request)
        amount = _parse_amount(body.amount)
        try:
            account = ledger.withdraw(body.user, amount, recipient=body.recipient)
        except LedgerError as e:
            _raise_http(e)
        result = _account_view(account, ledger, request.app.state.asset)
        result["recipient"] = body.recipient if body.recipient is not None else body.user
        return result

    @app.post("/accounts/{user}/accrue")
    def accrue_interest(user: str, request: Request):
        """Pay one period of interest if it is due"""
        ledger = get_ledger(request)
        try:
            payment = ledger.accrue_interest(user)
        except LedgerError as e:
            _raise_http(e)
        return {
            "user": payment.user,
            "interest": str(payment.amount),
            "balance": str(payment.balance),
            "period_start": payment.period_start,
            "period_end": payment.period_end,
            "reference": payment.reference
        }

    @app.get("/audit/verify")
    def verify_audit(request: Request):
        """Verify the audit hash chain and the deposit invariant"""
        ledger = get_ledger(request)
        try:
            invariants = ledger.check_invariants()
        except LedgerError as e:
            _raise_http(e)
        audit = ledger.audit_trail.verify_integrity() if ledger.audit_trail else None
        return {
            "invariants": {k: str(v) if isinstance(v, int) and not isinstance(v, bool) else v
                           for k, v in invariants.items()},
            "audit": audit
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the API under uvicorn"""
    config = get_config()
    uvicorn.run(
        create_app(),
        host=host or config.api_host,
        port=port or config.api_port,
        log_level="debug" if debug else config.log_level.lower()
    )
