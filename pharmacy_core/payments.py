"""
Payment Orchestration Module

Settles an order's payment either from the patient's wallet or from a
stored card. Wallet payments debit the ledger; card payments are
authorized and captured by the external card gateway and never touch the
wallet balance.
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .audit import AuditEventType, AuditTrail
from .cards import CardVault, CardView
from .currency import Money
from .errors import ErrorKind, OperationResult
from .gateway import CardPaymentGateway
from .ledger import AmountInput, LedgerAccount, Transaction
from .logging_config import get_logger, log_action


logger = get_logger("pharmacy.payments")


class PaymentMethod(Enum):
    WALLET = "wallet"
    CARD = "card"


@dataclass(frozen=True)
class PaymentReceipt:
    """Outcome of a settled payment"""
    method: PaymentMethod
    amount: Money
    reference: str
    transaction: Optional[Transaction] = None
    authorization_id: Optional[str] = None
    card: Optional[CardView] = None


class PaymentOrchestrator:
    """Composes ledger, card vault and card gateway for order settlement"""
    
    def __init__(self, gateway: Optional[CardPaymentGateway] = None,
                 audit_trail: Optional[AuditTrail] = None):
        self.gateway = gateway
        self.audit = audit_trail
    
    def pay_from_wallet(self, ledger: LedgerAccount, amount: AmountInput,
                        description: str = "",
                        reference: Optional[str] = None) -> OperationResult[PaymentReceipt]:
        """Debit the wallet; insufficient funds come back as a failed result"""
        reference = reference or str(uuid.uuid4())
        result = ledger.pay(amount, description or f"Payment {reference}")
        if not result:
            self._failed(ledger.owner_id, PaymentMethod.WALLET, reference, result.error.value)
            return OperationResult.failure(result.error, result.message, **result.details)
        
        txn = result.value
        receipt = PaymentReceipt(PaymentMethod.WALLET, txn.amount, reference, transaction=txn)
        self._succeeded(ledger.owner_id, receipt)
        return OperationResult.success(receipt, result.message)
    
    def pay_with_card(self, ledger: LedgerAccount, card_vault: CardVault, number: str,
                      amount: AmountInput,
                      reference: Optional[str] = None) -> OperationResult[PaymentReceipt]:
        """
        Charge a stored card through the gateway.
        
        The card must already be saved in ``card_vault``. The ledger only
        supplies the owner and currency; its balance is not changed.
        """
        reference = reference or str(uuid.uuid4())
        money = ledger.parse_amount(amount)
        if isinstance(money, OperationResult):
            return money
        
        card = card_vault.find(number)
        if card is None:
            self._failed(ledger.owner_id, PaymentMethod.CARD, reference, "card_not_saved")
            return OperationResult.failure(ErrorKind.NOT_FOUND,
                                           "This card is not saved in your wallet.")
        
        if self.gateway is None:
            self._failed(ledger.owner_id, PaymentMethod.CARD, reference, "gateway_not_configured")
            return OperationResult.failure(ErrorKind.PAYMENT_DECLINED,
                                           "Card payments are not available right now.")
        
        authorization = self.gateway.authorize(card.fingerprint, money, reference)
        if not authorization.approved or not authorization.authorization_id:
            self._failed(ledger.owner_id, PaymentMethod.CARD, reference, authorization.reason)
            return OperationResult.failure(
                ErrorKind.PAYMENT_DECLINED,
                f"Card {card.masked_number} was declined.",
                reason=authorization.reason,
            )
        
        capture = self.gateway.charge(authorization.authorization_id, money)
        if not capture.approved:
            self._failed(ledger.owner_id, PaymentMethod.CARD, reference, capture.reason)
            return OperationResult.failure(
                ErrorKind.PAYMENT_DECLINED,
                f"Charge on card {card.masked_number} failed.",
                reason=capture.reason,
            )
        
        receipt = PaymentReceipt(PaymentMethod.CARD, money, reference,
                                 authorization_id=authorization.authorization_id,
                                 card=card.view())
        self._succeeded(ledger.owner_id, receipt)
        return OperationResult.success(receipt, f"Paid {money.to_string()} with card {card.masked_number}.")
    
    def _succeeded(self, owner_id: str, receipt: PaymentReceipt) -> None:
        log_action(logger, "info", "Payment settled", principal=owner_id,
                   action="payment_succeeded", resource=receipt.reference,
                   extra={'method': receipt.method.value, 'amount': str(receipt.amount.amount)})
        if self.audit:
            self.audit.log_event(AuditEventType.PAYMENT_SUCCEEDED, 'payment', receipt.reference,
                                 {'method': receipt.method, 'amount': receipt.amount.amount},
                                 owner_id)
    
    def _failed(self, owner_id: str, method: PaymentMethod, reference: str, reason: str) -> None:
        log_action(logger, "warning", "Payment failed", principal=owner_id,
                   action="payment_failed", resource=reference,
                   extra={'method': method.value, 'reason': reason})
        if self.audit:
            self.audit.log_event(AuditEventType.PAYMENT_FAILED, 'payment', reference,
                                 {'method': method, 'reason': reason}, owner_id)
