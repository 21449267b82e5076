"""
Custody Ledger Engine

Bookkeeping for a pooled custody account. Tracks each depositor's balance
and accrual timestamp, enforces deposit bounds, supports partial
withdrawal to any recipient, and pays a fixed annual interest bonus from
the pool once a full period has elapsed.

The ledger holds no asset itself: every movement goes through a
CustodyService. Ledger state and the custody transfer are committed
together or not at all, and after every operation
total_deposited == sum of all balances.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import logging
import threading

from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .config import LedgerConfig, get_config
from .custody import CustodyService, InMemoryCustodyService, TransferResult
from .custody_client import HttpCustodyClient
from .errors import (
    LedgerError, InvalidAmount, InvalidRecipient, InsufficientBalance,
    TransferFailed, AccrualNotDue, InvariantViolation
)
from .logging_config import log_action
from .storage import StorageInterface, StorageRecord, InMemoryStorage, create_storage


logger = logging.getLogger("custody_ledger.ledger")

MIN_DEPOSIT_AMOUNT = 1 * 10**18
MAX_DEPOSIT_AMOUNT = 10_000_000 * 10**18
ANNUAL_PERIOD = 365 * 24 * 60 * 60
INTEREST_RATE_NUMERATOR = 100      # 10% per annum
INTEREST_RATE_DENOMINATOR = 1000

ACCOUNTS_TABLE = "ledger_accounts"
STATE_TABLE = "ledger_state"
TOTALS_ID = "totals"


@dataclass(frozen=True)
class LedgerParameters:
    """Deposit bounds, accrual period and interest rate"""
    min_deposit_amount: int = MIN_DEPOSIT_AMOUNT
    max_deposit_amount: int = MAX_DEPOSIT_AMOUNT
    annual_period: int = ANNUAL_PERIOD
    interest_rate_numerator: int = INTEREST_RATE_NUMERATOR
    interest_rate_denominator: int = INTEREST_RATE_DENOMINATOR

    def __post_init__(self):
        if self.min_deposit_amount < 1:
            raise ValueError("Minimum deposit must be at least one base unit")
        if self.max_deposit_amount < self.min_deposit_amount:
            raise ValueError("Maximum deposit cannot be below the minimum deposit")
        if self.annual_period <= 0:
            raise ValueError("Annual period must be positive")
        if self.interest_rate_numerator < 0 or self.interest_rate_denominator <= 0:
            raise ValueError("Interest rate must be a non-negative fraction")

    @classmethod
    def from_config(cls, config: LedgerConfig) -> 'LedgerParameters':
        return cls(
            min_deposit_amount=int(config.min_deposit_amount),
            max_deposit_amount=int(config.max_deposit_amount),
            annual_period=config.annual_period_seconds,
            interest_rate_numerator=config.interest_rate_numerator,
            interest_rate_denominator=config.interest_rate_denominator
        )

    def interest_on(self, balance: int) -> int:
        """One period's interest, rounded down to a whole base unit"""
        return balance * self.interest_rate_numerator // self.interest_rate_denominator


@dataclass
class Account(StorageRecord):
    """
    Custodied position of one user. The record id is the user identity.
    last_accrual_time is 0 until the first deposit.
    """
    balance: int = 0
    last_accrual_time: int = 0

    @property
    def user(self) -> str:
        return self.id

    @property
    def has_accrual_history(self) -> bool:
        return self.last_accrual_time > 0

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['balance'] = str(self.balance)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        data['balance'] = int(data['balance'])
        data['last_accrual_time'] = int(data['last_accrual_time'])
        return super().from_dict(data)


@dataclass
class InterestPayment:
    """Interest paid out of the pool for one annual period"""
    user: str
    amount: int
    balance: int
    period_start: int
    period_end: int
    reference: Optional[str] = None


class Ledger:
    """
    Owns all balance and accrual state.

    Every public method runs under a single re-entrant lock, so operations
    are serializable across threads. A custody service that calls back into
    the ledger while a transfer is in flight is refused with LedgerError.
    """

    def __init__(
        self,
        custody: CustodyService,
        storage: Optional[StorageInterface] = None,
        clock: Optional[Clock] = None,
        audit_trail: Optional[AuditTrail] = None,
        parameters: Optional[LedgerParameters] = None
    ):
        self.custody = custody
        self.storage = storage or InMemoryStorage()
        self.clock = clock or SystemClock()
        self.audit_trail = audit_trail
        self.parameters = parameters or LedgerParameters()
        self._lock = threading.RLock()
        self._transfer_in_flight = False

    @property
    def min_deposit_amount(self) -> int:
        return self.parameters.min_deposit_amount

    @property
    def max_deposit_amount(self) -> int:
        return self.parameters.max_deposit_amount

    @property
    def annual_period(self) -> int:
        return self.parameters.annual_period

    # Operations

    def deposit(self, user: str, amount: int) -> Account:
        """
        Pull amount from the user's external holding into the pool and
        credit it to their balance. Restarts the user's accrual period.

        If the credit cannot be committed after a successful pull, the
        amount is pushed back to the user and the storage error re-raised.

        Raises:
            InvalidAmount: amount outside [min_deposit_amount, max_deposit_amount]
            TransferFailed: custody service refused the pull
        """
        with self._lock:
            self._refuse_reentry()
            self._require_integer(user, amount, "deposit")
            if not self.min_deposit_amount <= amount <= self.max_deposit_amount:
                self._reject(
                    InvalidAmount(
                        f"Deposit of {amount} outside [{self.min_deposit_amount}, "
                        f"{self.max_deposit_amount}]",
                        user=user, amount=amount
                    ),
                    "deposit"
                )

            result = self._transfer(self.custody.pull, user, amount)
            if not result.success:
                self._transfer_failed("deposit", "pull", user, user, amount, result.reason)

            try:
                with self.storage.atomic():
                    account = self._load_account(user)
                    account.balance += amount
                    account.last_accrual_time = self.clock.now()
                    account.updated_at = datetime.now(timezone.utc)
                    total = self._load_total() + amount
                    self._save_account(account)
                    self._save_total(total)
                    self._audit(AuditEventType.DEPOSIT, user, {
                        "amount": amount,
                        "balance": account.balance,
                        "total_deposited": total,
                        "last_accrual_time": account.last_accrual_time,
                        "reference": result.reference
                    })
            except Exception as e:
                self._reverse_deposit(user, amount, result.reference, e)
                raise

            log_action(logger, "info", f"Deposited {amount} for {user}",
                       user_id=user, action="deposit",
                       extra={"amount": str(amount), "balance": str(account.balance)})
            return account

    def withdraw(self, user: str, amount: int, recipient: Optional[str] = None) -> Account:
        """
        Debit amount from the user's balance and push it from the pool to
        recipient, which defaults to the user and may be any third party.

        Raises:
            InvalidAmount: amount is not a positive integer
            InvalidRecipient: recipient given but empty
            InsufficientBalance: amount exceeds the user's balance
            TransferFailed: custody service refused the push; the debit is undone
        """
        with self._lock:
            self._refuse_reentry()
            if recipient is None:
                recipient = user
            elif not recipient.strip():
                self._reject(
                    InvalidRecipient(f"Recipient for {user} must not be empty", user=user),
                    "withdraw"
                )
            self._require_integer(user, amount, "withdraw")
            if amount <= 0:
                self._reject(
                    InvalidAmount(f"Withdrawal amount must be positive, got {amount}",
                                  user=user, amount=amount),
                    "withdraw"
                )

            account = self._load_account(user)
            if amount > account.balance:
                self._reject(
                    InsufficientBalance(
                        f"Withdrawal of {amount} exceeds balance {account.balance} of {user}",
                        user=user, amount=amount, balance=account.balance
                    ),
                    "withdraw"
                )

            try:
                with self.storage.atomic():
                    account.balance -= amount
                    account.updated_at = datetime.now(timezone.utc)
                    total = self._load_total() - amount
                    self._save_account(account)
                    self._save_total(total)

                    result = self._transfer(self.custody.push, recipient, amount)
                    if not result.success:
                        raise TransferFailed(
                            f"Custody push of {amount} to {recipient} failed: {result.reason}",
                            user=user, amount=amount, reason=result.reason
                        )

                    self._audit(AuditEventType.WITHDRAWAL, user, {
                        "amount": amount,
                        "recipient": recipient,
                        "balance": account.balance,
                        "total_deposited": total,
                        "reference": result.reference
                    })
            except TransferFailed as e:
                self._record_transfer_failure("withdraw", "push", user, recipient, amount, e.reason)
                raise

            log_action(logger, "info", f"Withdrew {amount} for {user} to {recipient}",
                       user_id=user, action="withdraw",
                       extra={"amount": str(amount), "recipient": recipient,
                              "balance": str(account.balance)})
            return account

    def accrue_interest(self, user: str) -> InterestPayment:
        """
        Pay one period of interest on the user's current balance from the
        pool to the user. The balance and total_deposited are untouched;
        last_accrual_time advances by exactly one annual period, so a user
        who waited several periods can claim each of them in turn.

        Raises:
            AccrualNotDue: no deposit history, or less than a full period elapsed
            TransferFailed: custody service refused the push; the period is not consumed
        """
        with self._lock:
            self._refuse_reentry()
            now = self.clock.now()
            account = self._load_account(user)

            if not account.has_accrual_history:
                self._reject(
                    AccrualNotDue(f"{user} has no deposit history", user=user),
                    "accrue_interest"
                )

            period_start = account.last_accrual_time
            period_end = period_start + self.annual_period
            if now < period_end:
                self._reject(
                    AccrualNotDue(
                        f"Interest for {user} not due until {period_end} (now {now})",
                        user=user, next_accrual_time=period_end
                    ),
                    "accrue_interest"
                )

            interest = self.parameters.interest_on(account.balance)
            payment = InterestPayment(
                user=user,
                amount=interest,
                balance=account.balance,
                period_start=period_start,
                period_end=period_end
            )

            try:
                with self.storage.atomic():
                    account.last_accrual_time = period_end
                    account.updated_at = datetime.now(timezone.utc)
                    self._save_account(account)

                    # A zero payout still consumes the period
                    if interest > 0:
                        result = self._transfer(self.custody.push, user, interest)
                        if not result.success:
                            raise TransferFailed(
                                f"Custody push of {interest} interest to {user} failed: {result.reason}",
                                user=user, amount=interest, reason=result.reason
                            )
                        payment.reference = result.reference

                    self._audit(AuditEventType.INTEREST_PAID, user, {
                        "amount": interest,
                        "balance": account.balance,
                        "period_start": period_start,
                        "period_end": period_end,
                        "reference": payment.reference
                    })
            except TransferFailed as e:
                self._record_transfer_failure("accrue_interest", "push", user, user, interest, e.reason)
                raise

            log_action(logger, "info", f"Paid {interest} interest to {user}",
                       user_id=user, action="accrue_interest",
                       extra={"amount": str(interest), "period_end": period_end})
            return payment

    # Queries

    def balance_of(self, user: str) -> int:
        with self._lock:
            return self._load_account(user).balance

    def total_deposited(self) -> int:
        with self._lock:
            return self._load_total()

    def last_accrual_time_of(self, user: str) -> int:
        with self._lock:
            return self._load_account(user).last_accrual_time

    def get_account(self, user: str) -> Account:
        """Account for user; an unknown user gets a zero account"""
        with self._lock:
            return self._load_account(user)

    def list_accounts(self) -> List[Account]:
        with self._lock:
            accounts = [Account.from_dict(d) for d in self.storage.load_all(ACCOUNTS_TABLE)]
        return sorted(accounts, key=lambda a: a.id)

    def next_accrual_time(self, user: str) -> Optional[int]:
        """Earliest time accrue_interest can succeed, None without deposit history"""
        account = self.get_account(user)
        if not account.has_accrual_history:
            return None
        return account.last_accrual_time + self.annual_period

    def preview_interest(self, user: str) -> int:
        """Interest one accrual would pay on the current balance"""
        return self.parameters.interest_on(self.balance_of(user))

    def check_invariants(self) -> Dict[str, Any]:
        """
        Recompute the sum of balances and compare it with total_deposited

        Returns:
            Summary with the account count and both totals

        Raises:
            InvariantViolation: if the two totals differ or a balance is negative
        """
        with self._lock:
            accounts = [Account.from_dict(d) for d in self.storage.load_all(ACCOUNTS_TABLE)]
            total = self._load_total()
            summed = sum(a.balance for a in accounts)
            negative = [a.id for a in accounts if a.balance < 0]
            summary = {
                "accounts": len(accounts),
                "total_deposited": total,
                "sum_of_balances": summed,
                "valid": summed == total and not negative
            }
            self._audit(AuditEventType.INVARIANT_CHECK, "ledger", summary, entity_type="ledger")

        if negative:
            raise InvariantViolation(f"Negative balances for {', '.join(negative)}")
        if summed != total:
            raise InvariantViolation(
                f"total_deposited {total} does not match sum of balances {summed}"
            )
        return summary

    # Internals

    def _refuse_reentry(self) -> None:
        if self._transfer_in_flight:
            raise LedgerError("Ledger called back while a custody transfer is in flight")

    def _transfer(self, operation, party: str, amount: int) -> TransferResult:
        """Run one custody call; an exception from the service counts as a rejection"""
        self._transfer_in_flight = True
        try:
            return operation(party, amount)
        except LedgerError:
            raise
        except Exception as e:
            logger.error(f"Custody service raised during transfer of {amount} for {party}: {e}",
                         exc_info=True)
            return TransferResult.rejected(f"custody service error: {e}")
        finally:
            self._transfer_in_flight = False

    @staticmethod
    def _require_integer(user: str, amount: Any, action: str) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidAmount(
                f"{action} amount must be an integer number of base units, got {amount!r}",
                user=user
            )

    def _reject(self, error: LedgerError, action: str) -> None:
        log_action(logger, "warning", str(error), user_id=error.user,
                   action=action, extra={"error": error.code})
        raise error

    def _transfer_failed(self, action: str, direction: str, user: str,
                         party: str, amount: int, reason: str) -> None:
        self._record_transfer_failure(action, direction, user, party, amount, reason)
        raise TransferFailed(
            f"Custody {direction} of {amount} for {party} failed: {reason}",
            user=user, amount=amount, reason=reason
        )

    def _record_transfer_failure(self, action: str, direction: str, user: str,
                                 party: str, amount: int, reason: str) -> None:
        log_action(logger, "warning", f"Custody {direction} rejected: {reason}",
                   user_id=user, action=action,
                   extra={"amount": str(amount), "party": party, "error": TransferFailed.code})
        self._audit(AuditEventType.TRANSFER_FAILED, user, {
            "action": action,
            "direction": direction,
            "party": party,
            "amount": amount,
            "reason": reason
        })

    def _reverse_deposit(self, user: str, amount: int, reference: Optional[str],
                         error: Exception) -> None:
        """Return a pulled deposit whose credit could not be committed"""
        refund = self._transfer(self.custody.push, user, amount)
        extra = {"amount": str(amount), "pull_reference": reference, "error": str(error)}
        if refund.success:
            log_action(logger, "error",
                       f"Deposit of {amount} for {user} not recorded; returned to holder",
                       user_id=user, action="deposit", extra=extra)
        else:
            log_action(logger, "critical",
                       f"Deposit of {amount} for {user} not recorded and not returned: {refund.reason}",
                       user_id=user, action="deposit", extra=extra)

        try:
            self._audit(AuditEventType.DEPOSIT_REVERSED, user, {
                "amount": amount,
                "pull_reference": reference,
                "refunded": refund.success,
                "refund_reference": refund.reference,
                "error": str(error)
            })
        except Exception:
            logger.error(f"Could not audit reversed deposit for {user}", exc_info=True)

    def _audit(self, event_type: AuditEventType, entity_id: str,
               metadata: Dict[str, Any], entity_type: str = "account") -> None:
        if self.audit_trail is not None:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata=metadata
            )

    def _load_account(self, user: str) -> Account:
        data = self.storage.load(ACCOUNTS_TABLE, user)
        if data:
            return Account.from_dict(data)
        now = datetime.now(timezone.utc)
        return Account(id=user, created_at=now, updated_at=now)

    def _save_account(self, account: Account) -> None:
        self.storage.save(ACCOUNTS_TABLE, account.id, account.to_dict())

    def _load_total(self) -> int:
        data = self.storage.load(STATE_TABLE, TOTALS_ID)
        if data:
            return int(data['total_deposited'])
        return 0

    def _save_total(self, total: int) -> None:
        self.storage.save(STATE_TABLE, TOTALS_ID, {
            'id': TOTALS_ID,
            'total_deposited': str(total),
            'updated_at': datetime.now(timezone.utc).isoformat()
        })


def create_ledger(
    config: Optional[LedgerConfig] = None,
    custody: Optional[CustodyService] = None,
    clock: Optional[Clock] = None
) -> Ledger:
    """Wire a ledger from configuration"""
    config = config or get_config()
    storage = create_storage(config.storage_backend, config.database_path)

    if custody is None:
        if config.custody_url:
            custody = HttpCustodyClient(
                base_url=config.custody_url,
                timeout=config.custody_timeout,
                api_key=config.custody_api_key or None
            )
        else:
            custody = InMemoryCustodyService()

    audit_trail = AuditTrail(storage) if config.enable_audit_logging else None

    return Ledger(
        custody=custody,
        storage=storage,
        clock=clock,
        audit_trail=audit_trail,
        parameters=LedgerParameters.from_config(config)
    )
