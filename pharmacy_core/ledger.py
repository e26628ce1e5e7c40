"""
Wallet Ledger Module

One owner's balance plus an append-only transaction log. Every balance
mutation appends exactly one Transaction under the account lock, and a
failed validation leaves both balance and log untouched. The balance can
always be re-derived from the log:

    balance == sum(deposits + refunds) - sum(withdrawals + payments) >= 0
"""

import threading
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from .audit import AuditEventType, AuditTrail
from .currency import Currency, Money, decimal_from_string, format_signed
from .errors import ErrorKind, OperationResult
from .logging_config import get_logger, log_action


logger = get_logger("pharmacy.ledger")

AmountInput = Union[Decimal, int, str, Money]


class TransactionKind(Enum):
    """Kinds of ledger transactions"""
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    PAYMENT = "PAYMENT"
    REFUND = "REFUND"
    
    @property
    def is_credit(self) -> bool:
        """Deposits and refunds increase the balance"""
        return self in (TransactionKind.DEPOSIT, TransactionKind.REFUND)


_AUDIT_EVENTS = {
    TransactionKind.DEPOSIT: AuditEventType.LEDGER_DEPOSIT,
    TransactionKind.WITHDRAWAL: AuditEventType.LEDGER_WITHDRAWAL,
    TransactionKind.PAYMENT: AuditEventType.LEDGER_PAYMENT,
    TransactionKind.REFUND: AuditEventType.LEDGER_REFUND,
}


@dataclass(frozen=True)
class Transaction:
    """
    Immutable ledger entry. ``amount`` is the positive magnitude; the sign
    follows from ``kind``.
    """
    id: str
    owner_id: str
    sequence: int
    kind: TransactionKind
    amount: Money
    description: str
    created_at: datetime
    
    def __post_init__(self):
        if not self.amount.is_positive():
            raise ValueError("Transaction amount must be positive")
    
    @property
    def signed_amount(self) -> Money:
        return self.amount if self.kind.is_credit else -self.amount
    
    @property
    def formatted_amount(self) -> str:
        """Amount with sign, e.g. ``+100.00 LE`` or ``-60.00 LE``"""
        return format_signed(self.amount, negative=not self.kind.is_credit)
    
    def __str__(self) -> str:
        stamp = self.created_at.strftime("%Y-%m-%d %H:%M:%S")
        return f"{stamp}: {self.kind.value} - {self.formatted_amount} ({self.description})"
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'owner_id': self.owner_id,
            'sequence': self.sequence,
            'kind': self.kind.value,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'description': self.description,
            'created_at': self.created_at.isoformat(),
        }
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        currency = Currency[data.get('currency', Currency.EGP.code)]
        return cls(
            id=data['id'],
            owner_id=data['owner_id'],
            sequence=data['sequence'],
            kind=TransactionKind(data['kind']),
            amount=Money(Decimal(data['amount']), currency),
            description=data['description'],
            created_at=datetime.fromisoformat(data['created_at']),
        )


class LedgerHistory(Sequence):
    """
    Most-recent-first view over a snapshot of the log.
    
    The snapshot length is fixed at creation; appends made afterwards are not
    visible, and the view can be iterated any number of times.
    """
    
    def __init__(self, log: List[Transaction], snapshot_length: int, limit: int = 0):
        self._log = log
        self._end = snapshot_length
        if limit <= 0 or limit >= snapshot_length:
            self._size = snapshot_length
        else:
            self._size = limit
    
    def __len__(self) -> int:
        return self._size
    
    def __getitem__(self, index):
        if isinstance(index, slice):
            return [self[i] for i in range(*index.indices(self._size))]
        if index < 0:
            index += self._size
        if not 0 <= index < self._size:
            raise IndexError("history index out of range")
        return self._log[self._end - 1 - index]
    
    def __iter__(self):
        for offset in range(self._size):
            yield self._log[self._end - 1 - offset]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LedgerAccount:
    """
    Wallet balance and transaction log for a single owner.
    
    All mutations run under a per-account lock so check-then-mutate is
    atomic; concurrent withdrawals can never overdraw the account.
    """
    
    def __init__(self, owner_id: str, currency: Currency = Currency.EGP,
                 clock: Optional[Callable[[], datetime]] = None,
                 audit_trail: Optional[AuditTrail] = None):
        self.owner_id = owner_id
        self.currency = currency
        self.clock = clock or utc_now
        self.audit = audit_trail
        self._balance = Money.zero(currency)
        self._log: List[Transaction] = []
        self._lock = threading.RLock()
    
    @property
    def balance(self) -> Money:
        with self._lock:
            return self._balance
    
    @property
    def transaction_count(self) -> int:
        with self._lock:
            return len(self._log)
    
    def deposit(self, amount: AmountInput, description: str = "") -> OperationResult[Transaction]:
        """Credit the wallet"""
        return self._credit(TransactionKind.DEPOSIT, amount, description or "Deposit")
    
    def refund(self, amount: AmountInput, description: str = "") -> OperationResult[Transaction]:
        """Credit the wallet with a refund"""
        return self._credit(TransactionKind.REFUND, amount, description or "Refund")
    
    def withdraw(self, amount: AmountInput, description: str = "") -> OperationResult[Transaction]:
        """Debit the wallet; fails with INSUFFICIENT_FUNDS rather than overdrawing"""
        return self._debit(TransactionKind.WITHDRAWAL, amount, description or "Withdrawal")
    
    def pay(self, amount: AmountInput, description: str = "") -> OperationResult[Transaction]:
        """Debit the wallet to settle an order"""
        return self._debit(TransactionKind.PAYMENT, amount, description or "Payment")
    
    def history(self, limit: int = 0) -> LedgerHistory:
        """
        Transactions most-recent-first.
        
        ``limit <= 0`` or ``limit >= len(log)`` returns the full log,
        otherwise the most recent ``limit`` entries.
        """
        with self._lock:
            return LedgerHistory(self._log, len(self._log), limit)
    
    def balance_from_log(self) -> Money:
        """Recompute the balance from the committed transactions"""
        with self._lock:
            total = Money.zero(self.currency)
            for txn in self._log:
                total = total + txn.signed_amount
            return total
    
    def _credit(self, kind: TransactionKind, amount: AmountInput,
                description: str) -> OperationResult[Transaction]:
        money = self.parse_amount(amount)
        if isinstance(money, OperationResult):
            return money
        
        with self._lock:
            try:
                balance = self._balance + money
            except InvalidOperation:
                return OperationResult.failure(
                    ErrorKind.INVALID_INPUT,
                    "Amount would push the balance past the supported range."
                )
            txn = self._append(kind, money, description)
            self._balance = balance

        self._record(txn, balance)
        return OperationResult.success(txn, f"{kind.value.title()} successful. "
                                            f"New balance: {balance.to_string()}")
    
    def _debit(self, kind: TransactionKind, amount: AmountInput,
               description: str) -> OperationResult[Transaction]:
        money = self.parse_amount(amount)
        if isinstance(money, OperationResult):
            return money
        
        with self._lock:
            if money > self._balance:
                available = self._balance
                log_action(logger, "info", "Debit rejected: insufficient funds",
                           principal=self.owner_id, action=kind.value.lower(),
                           extra={'amount': str(money.amount),
                                  'balance': str(available.amount)})
                return OperationResult.failure(
                    ErrorKind.INSUFFICIENT_FUNDS,
                    f"Insufficient funds: balance is {available.to_string()}, "
                    f"requested {money.to_string()}.",
                    balance=available.amount,
                    requested=money.amount,
                )
            balance = self._balance - money
            txn = self._append(kind, money, description)
            self._balance = balance
        
        self._record(txn, balance)
        return OperationResult.success(txn, f"{kind.value.title()} successful. "
                                            f"New balance: {balance.to_string()}")
    
    def parse_amount(self, amount: AmountInput) -> Union[Money, OperationResult]:
        """Validated Money in this ledger's currency, or an INVALID_INPUT failure"""
        try:
            if isinstance(amount, Money):
                if amount.currency != self.currency:
                    return OperationResult.failure(
                        ErrorKind.INVALID_INPUT,
                        f"Amount must be in {self.currency.code}."
                    )
                value = amount.amount
            elif isinstance(amount, str):
                value = decimal_from_string(amount)
            elif isinstance(amount, (Decimal, int)) and not isinstance(amount, bool):
                value = Decimal(amount)
            else:
                raise TypeError(f"Unsupported amount type: {type(amount).__name__}")
        except ValueError:
            return OperationResult.failure(ErrorKind.INVALID_INPUT,
                                           f"'{amount}' is not a valid amount.")
        
        if not value.is_finite() or value <= 0:
            return OperationResult.failure(ErrorKind.INVALID_INPUT,
                                           "Amount must be greater than zero.")
        try:
            quantized = value.quantize(Decimal('0.1') ** self.currency.precision)
        except InvalidOperation:
            return OperationResult.failure(ErrorKind.INVALID_INPUT, "Amount is too large.")
        if value != quantized:
            return OperationResult.failure(
                ErrorKind.INVALID_INPUT,
                f"Amount cannot have more than {self.currency.precision} decimal places."
            )
        return Money(value, self.currency)
    
    def _append(self, kind: TransactionKind, money: Money, description: str) -> Transaction:
        # Caller holds self._lock
        now = self.clock()
        if self._log and now < self._log[-1].created_at:
            now = self._log[-1].created_at
        txn = Transaction(
            id=str(uuid.uuid4()),
            owner_id=self.owner_id,
            sequence=len(self._log) + 1,
            kind=kind,
            amount=money,
            description=description,
            created_at=now,
        )
        self._log.append(txn)
        return txn
    
    def _record(self, txn: Transaction, balance: Money) -> None:
        log_action(logger, "info", f"{txn.kind.value} committed",
                   principal=self.owner_id, action=txn.kind.value.lower(),
                   resource=txn.id,
                   extra={'amount': str(txn.amount.amount), 'balance': str(balance.amount)})
        if self.audit:
            self.audit.log_event(
                _AUDIT_EVENTS[txn.kind], 'ledger', self.owner_id,
                {'transaction_id': txn.id, 'amount': txn.amount.amount,
                 'balance': balance.amount, 'description': txn.description},
                self.owner_id
            )
    
    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'owner_id': self.owner_id,
                'currency': self.currency.code,
                'balance': str(self._balance.amount),
                'transactions': [txn.to_dict() for txn in self._log],
            }
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any],
                  clock: Optional[Callable[[], datetime]] = None,
                  audit_trail: Optional[AuditTrail] = None) -> 'LedgerAccount':
        """
        Rebuild an account from stored data.
        
        Raises:
            ValueError: If the stored balance disagrees with the log or the
                log would drive the balance negative.
        """
        currency = Currency[data.get('currency', Currency.EGP.code)]
        account = cls(data['owner_id'], currency, clock=clock, audit_trail=audit_trail)
        running = Money.zero(currency)
        transactions = sorted(
            (Transaction.from_dict(t) for t in data.get('transactions', [])),
            key=lambda t: (t.created_at, t.sequence)
        )
        for txn in transactions:
            if txn.owner_id != account.owner_id:
                raise ValueError(f"Transaction {txn.id} belongs to another owner")
            running = running + txn.signed_amount
            if running.is_negative():
                raise ValueError(f"Ledger for {account.owner_id} goes negative at {txn.id}")
            account._log.append(txn)
        
        stored = Money(Decimal(data.get('balance', '0')), currency)
        if stored != running:
            raise ValueError(
                f"Stored balance {stored.to_string()} does not match log total {running.to_string()}"
            )
        account._balance = running
        return account
