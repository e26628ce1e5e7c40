"""
Test suite for the wallet ledger

Tests the balance invariant, atomicity of rejected operations, history
ordering and snapshots, serialization checks and concurrent debits.
CRITICAL: the balance must always equal the signed sum of the log and
never go negative.
"""

import random
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from pharmacy_core.audit import AuditEventType, AuditTrail
from pharmacy_core.currency import Currency, Money
from pharmacy_core.errors import ErrorKind
from pharmacy_core.ledger import LedgerAccount, Transaction, TransactionKind
from pharmacy_core.storage import InMemoryStorage


def egp(value: str) -> Money:
    return Money(Decimal(value), Currency.EGP)


@pytest.fixture
def ledger():
    return LedgerAccount("patient-1")


class TestScenario:
    """Test the reference wallet scenario"""
    
    def test_deposit_overdraw_withdraw(self, ledger):
        """Test deposit, rejected overdraw, then a valid withdrawal"""
        result = ledger.deposit(Decimal("100.00"), "top-up")
        assert result.ok
        assert ledger.balance == egp("100.00")
        assert ledger.transaction_count == 1
        
        result = ledger.withdraw(Decimal("150.00"), "order")
        assert result.is_error(ErrorKind.INSUFFICIENT_FUNDS)
        assert ledger.balance == egp("100.00")
        assert ledger.transaction_count == 1
        
        result = ledger.withdraw(Decimal("60.00"), "order")
        assert result.ok
        assert ledger.balance == egp("40.00")
        assert ledger.transaction_count == 2
        
        latest = list(ledger.history(1))
        assert latest == [result.value]
        assert latest[0].kind == TransactionKind.WITHDRAWAL


class TestValidation:
    """Test amount validation"""
    
    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5"), 0, -1, "0.00", "-3"])
    def test_non_positive_rejected(self, ledger, amount):
        """Test zero and negative amounts are rejected for every operation"""
        for operation in (ledger.deposit, ledger.refund, ledger.withdraw, ledger.pay):
            result = operation(amount, "bad")
            assert result.is_error(ErrorKind.INVALID_INPUT)
        assert ledger.transaction_count == 0
    
    def test_too_many_decimals_rejected(self, ledger):
        """Test sub-piastre amounts are rejected, not rounded"""
        result = ledger.deposit(Decimal("10.005"))
        assert result.is_error(ErrorKind.INVALID_INPUT)
        assert ledger.balance == egp("0")
    
    def test_trailing_zeros_accepted(self, ledger):
        """Test amounts with redundant zeros are fine"""
        assert ledger.deposit(Decimal("10.500")).ok
        assert ledger.balance == egp("10.50")
    
    def test_string_amounts(self, ledger):
        """Test user-entered amount strings"""
        assert ledger.deposit("1,250.50").ok
        assert ledger.balance == egp("1250.50")
        assert ledger.deposit("abc").is_error(ErrorKind.INVALID_INPUT)
    
    def test_float_is_contract_violation(self, ledger):
        """Test floats are refused as a programming error"""
        with pytest.raises(TypeError):
            ledger.deposit(10.5)
    
    def test_currency_mismatch(self, ledger):
        """Test Money in another currency is rejected"""
        result = ledger.deposit(Money(Decimal("5"), Currency.USD))
        assert result.is_error(ErrorKind.INVALID_INPUT)
    
    def test_huge_amount_rejected(self, ledger):
        """Test amounts beyond decimal precision are rejected"""
        result = ledger.deposit(Decimal("1E+40"))
        assert result.is_error(ErrorKind.INVALID_INPUT)
    
    def test_balance_overflow_leaves_no_record(self, ledger):
        """Test a credit whose balance cannot be represented commits nothing"""
        assert ledger.deposit(Decimal("90000000000000000000000000")).ok

        result = ledger.deposit(Decimal("90000000000000000000000000"))

        assert result.is_error(ErrorKind.INVALID_INPUT)
        assert ledger.transaction_count == 1
        assert ledger.balance == egp("90000000000000000000000000")
        assert ledger.balance_from_log() == ledger.balance

    @pytest.mark.parametrize("text", ["1e2", "10 or 20", "5abc5", "1.2.3", "12,34,5"])
    def test_malformed_strings_rejected(self, ledger, text):
        """Test badly formed amount strings are not reinterpreted"""
        result = ledger.deposit(text)

        assert result.is_error(ErrorKind.INVALID_INPUT)
        assert ledger.transaction_count == 0
        assert ledger.balance.is_zero()

    def test_pay_more_than_balance(self, ledger):
        """Test payments cannot overdraw"""
        ledger.deposit(Decimal("20.00"))
        result = ledger.pay(Decimal("20.01"), "Order #7")
        
        assert result.is_error(ErrorKind.INSUFFICIENT_FUNDS)
        assert result.details["balance"] == Decimal("20.00")
        assert ledger.balance == egp("20.00")
    
    def test_exact_balance_withdrawal(self, ledger):
        """Test withdrawing the whole balance leaves zero"""
        ledger.deposit(Decimal("33.33"))
        assert ledger.withdraw(Decimal("33.33")).ok
        assert ledger.balance.is_zero()


class TestBalanceInvariant:
    """Test balance equals the signed sum of the log"""
    
    def test_random_sequence(self, ledger):
        """Test the invariant across a random mix of operations"""
        rng = random.Random(42)
        operations = [ledger.deposit, ledger.withdraw, ledger.pay, ledger.refund]
        
        for _ in range(300):
            operation = rng.choice(operations)
            amount = Decimal(rng.randint(1, 20000)) / Decimal(100)
            operation(amount, "random")
            
            credits = sum((t.amount.amount for t in ledger.history() if t.kind.is_credit), Decimal("0"))
            debits = sum((t.amount.amount for t in ledger.history() if not t.kind.is_credit), Decimal("0"))
            assert ledger.balance.amount == credits - debits
            assert ledger.balance.amount >= 0
            assert ledger.balance_from_log() == ledger.balance


class TestTransactions:
    """Test transaction records"""
    
    def test_kinds_and_signs(self, ledger):
        """Test each operation records its kind and sign"""
        ledger.deposit(Decimal("100"), "top-up")
        ledger.pay(Decimal("30"), "Payment for Order #12")
        ledger.refund(Decimal("10"), "Refund for Order #12")
        ledger.withdraw(Decimal("5"))
        
        oldest_first = list(reversed(list(ledger.history())))
        assert [t.kind for t in oldest_first] == [
            TransactionKind.DEPOSIT, TransactionKind.PAYMENT,
            TransactionKind.REFUND, TransactionKind.WITHDRAWAL
        ]
        assert [t.formatted_amount for t in oldest_first] == [
            "+100.00 LE", "-30.00 LE", "+10.00 LE", "-5.00 LE"
        ]
        assert oldest_first[3].description == "Withdrawal"
    
    def test_transactions_are_immutable(self, ledger):
        """Test that committed transactions cannot be edited"""
        txn = ledger.deposit(Decimal("5")).value
        with pytest.raises(Exception):
            txn.description = "edited"
    
    def test_non_positive_transaction_rejected(self):
        """Test constructing a zero transaction is a contract violation"""
        with pytest.raises(ValueError):
            Transaction("t", "o", 1, TransactionKind.DEPOSIT, egp("0"), "x",
                        datetime.now(timezone.utc))
    
    def test_ordering_with_backwards_clock(self):
        """Test timestamps never go backwards even if the clock does"""
        times = iter([
            datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc),
            datetime(2024, 1, 1, 11, 0, tzinfo=timezone.utc),
        ])
        ledger = LedgerAccount("p", clock=lambda: next(times))
        first = ledger.deposit(Decimal("1")).value
        second = ledger.deposit(Decimal("1")).value
        
        assert second.created_at >= first.created_at
        assert second.sequence == first.sequence + 1


class TestHistory:
    """Test history views"""
    
    def test_limits(self, ledger):
        """Test limit semantics"""
        for i in range(1, 6):
            ledger.deposit(Decimal(i))
        
        assert len(ledger.history()) == 5
        assert len(ledger.history(0)) == 5
        assert len(ledger.history(-3)) == 5
        assert len(ledger.history(5)) == 5
        assert len(ledger.history(99)) == 5
        assert [t.amount.amount for t in ledger.history(2)] == [Decimal("5.00"), Decimal("4.00")]
    
    def test_history_is_snapshot(self, ledger):
        """Test appends after taking a view are not visible and views restart"""
        ledger.deposit(Decimal("1"))
        ledger.deposit(Decimal("2"))
        view = ledger.history()
        
        ledger.deposit(Decimal("3"))
        
        assert len(view) == 2
        assert [t.amount.amount for t in view] == [Decimal("2.00"), Decimal("1.00")]
        assert [t.amount.amount for t in view] == [Decimal("2.00"), Decimal("1.00")]
        assert view[0].amount.amount == Decimal("2.00")
        assert view[-1].amount.amount == Decimal("1.00")
    
    def test_empty_history(self, ledger):
        """Test history of a fresh ledger"""
        assert list(ledger.history()) == []
        with pytest.raises(IndexError):
            ledger.history()[0]


class TestSerialization:
    """Test persistence round-trip and integrity checks"""
    
    def test_round_trip(self, ledger):
        """Test a ledger survives to_dict/from_dict"""
        ledger.deposit(Decimal("100"))
        ledger.pay(Decimal("25.50"))
        
        restored = LedgerAccount.from_dict(ledger.to_dict())
        
        assert restored.balance == ledger.balance
        assert list(restored.history()) == list(ledger.history())
    
    def test_tampered_balance_detected(self, ledger):
        """Test a silent balance edit is caught on load"""
        ledger.deposit(Decimal("100"))
        data = ledger.to_dict()
        data["balance"] = "1000.00"
        
        with pytest.raises(ValueError, match="does not match"):
            LedgerAccount.from_dict(data)
    
    def test_negative_log_detected(self, ledger):
        """Test a log that would overdraw is refused"""
        ledger.deposit(Decimal("10"))
        ledger.withdraw(Decimal("10"))
        data = ledger.to_dict()
        data["transactions"] = data["transactions"][1:]
        data["balance"] = "-10.00"
        
        with pytest.raises(ValueError):
            LedgerAccount.from_dict(data)


class TestAudit:
    """Test ledger audit events"""
    
    def test_mutations_audited(self):
        """Test each committed mutation writes one audit event"""
        audit = AuditTrail(InMemoryStorage())
        ledger = LedgerAccount("patient-9", audit_trail=audit)
        ledger.deposit(Decimal("50"))
        ledger.withdraw(Decimal("80"))
        ledger.pay(Decimal("20"))
        
        types = [e.event_type for e in audit.get_events_for_entity("ledger", "patient-9")]
        assert types == [AuditEventType.LEDGER_DEPOSIT, AuditEventType.LEDGER_PAYMENT]


class TestConcurrency:
    """Test per-account mutual exclusion"""
    
    def test_concurrent_withdrawals_never_overdraw(self, ledger):
        """Test parallel withdrawals succeed exactly as far as funds allow"""
        ledger.deposit(Decimal("100.00"))
        
        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(lambda _: ledger.withdraw(Decimal("7.00")), range(40)))
        
        successes = [r for r in results if r.ok]
        assert len(successes) == 14
        assert ledger.balance == egp("2.00")
        assert ledger.transaction_count == 15
        assert ledger.balance_from_log() == ledger.balance
    
    def test_reads_during_writes(self, ledger):
        """Test history reads stay consistent while deposits run"""
        stop = threading.Event()
        errors = []
        
        def reader():
            while not stop.is_set():
                view = ledger.history()
                items = list(view)
                if len(items) != len(view):
                    errors.append("length changed")
        
        thread = threading.Thread(target=reader)
        thread.start()
        for _ in range(500):
            ledger.deposit(Decimal("1"))
        stop.set()
        thread.join()
        
        assert errors == []
        assert ledger.balance == egp("500.00")
