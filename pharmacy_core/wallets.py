"""
Wallet Service Module

Per-patient wallets (ledger plus card vault) with persistence. The core
aggregates never write to storage themselves; this service persists each
aggregate after a successful mutation, holding the owner's lock across the
mutation and the write so saves cannot land out of order.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from .audit import AuditTrail
from .cards import CardVault, CardView
from .credentials import Principal, PrincipalKind
from .currency import Currency, Money
from .errors import ErrorKind, OperationResult
from .ledger import AmountInput, LedgerAccount, LedgerHistory, Transaction
from .lockout import KeyedLocks
from .payments import PaymentOrchestrator, PaymentReceipt
from .storage import StorageInterface
from .logging_config import get_logger


logger = get_logger("pharmacy.wallets")


@dataclass
class Wallet:
    """A patient's ledger and saved cards"""
    owner_id: str
    ledger: LedgerAccount
    cards: CardVault


class WalletRepository:
    """Saves and loads ledgers, card vaults and principals"""
    
    LEDGERS = "ledgers"
    CARD_VAULTS = "card_vaults"
    PRINCIPALS = "principals"
    
    def __init__(self, storage: StorageInterface, fingerprint_key: Optional[str] = None,
                 card_number_length: Optional[int] = None):
        self.storage = storage
        self.fingerprint_key = fingerprint_key
        self.card_number_length = card_number_length
    
    def save_ledger(self, ledger: LedgerAccount) -> None:
        self.storage.save(self.LEDGERS, ledger.owner_id, ledger.to_dict())
    
    def load_ledger(self, owner_id: str,
                    audit_trail: Optional[AuditTrail] = None) -> Optional[LedgerAccount]:
        data = self.storage.load(self.LEDGERS, owner_id)
        if data is None:
            return None
        return LedgerAccount.from_dict(data, audit_trail=audit_trail)
    
    def save_cards(self, vault: CardVault) -> None:
        self.storage.save(self.CARD_VAULTS, vault.owner_id, vault.to_dict())
    
    def load_cards(self, owner_id: str,
                   audit_trail: Optional[AuditTrail] = None) -> Optional[CardVault]:
        data = self.storage.load(self.CARD_VAULTS, owner_id)
        if data is None:
            return None
        return CardVault.from_dict(data, fingerprint_key=self.fingerprint_key,
                                   number_length=self.card_number_length,
                                   audit_trail=audit_trail)
    
    def save_principal(self, principal: Principal) -> None:
        record_id = f"{principal.kind.value}:{principal.identifier}"
        self.storage.save(self.PRINCIPALS, record_id, principal.to_dict())
    
    def load_principal(self, kind: PrincipalKind, identifier: str) -> Optional[Principal]:
        data = self.storage.load(self.PRINCIPALS, f"{kind.value}:{identifier}")
        if data is None:
            return None
        return Principal.from_dict(data)
    
    def lookup_for(self, kind: PrincipalKind) -> Callable[[str], Optional[Principal]]:
        """Registry lookup backed by storage, for CredentialVault.authenticate"""
        return lambda identifier: self.load_principal(kind, identifier)


class WalletService:
    """Wallet operations for patients, persisted after every change"""
    
    def __init__(self, repository: WalletRepository,
                 orchestrator: Optional[PaymentOrchestrator] = None,
                 audit_trail: Optional[AuditTrail] = None,
                 currency: Optional[Currency] = None,
                 max_deposit: Optional[Decimal] = None):
        from .config import get_config
        cfg = get_config()
        self.repository = repository
        self.audit = audit_trail if cfg.enable_audit_logging else None
        self.orchestrator = orchestrator or PaymentOrchestrator(audit_trail=self.audit)
        self.currency = currency or Currency[cfg.currency]
        self.max_deposit = Money(max_deposit if max_deposit is not None
                                 else Decimal(cfg.max_deposit_amount), self.currency)
        self._wallets: Dict[str, Wallet] = {}
        self._locks = KeyedLocks()
    
    def get_wallet(self, owner_id: str) -> Wallet:
        """Load the owner's wallet, creating an empty one on first use"""
        with self._locks.hold(owner_id):
            wallet = self._wallets.get(owner_id)
            if wallet is not None:
                return wallet
            
            ledger = self.repository.load_ledger(owner_id, audit_trail=self.audit)
            cards = self.repository.load_cards(owner_id, audit_trail=self.audit)
            created = ledger is None
            # Ledger and vault are created together or not at all
            with self.repository.storage.atomic():
                if ledger is None:
                    ledger = LedgerAccount(owner_id, self.currency, audit_trail=self.audit)
                    self.repository.save_ledger(ledger)
                if cards is None:
                    cards = CardVault(owner_id, fingerprint_key=self.repository.fingerprint_key,
                                      number_length=self.repository.card_number_length,
                                      audit_trail=self.audit)
                    self.repository.save_cards(cards)
            if created:
                logger.info(f"Created wallet for {owner_id}")
            
            wallet = Wallet(owner_id, ledger, cards)
            self._wallets[owner_id] = wallet
            return wallet
    
    def balance(self, owner_id: str) -> Money:
        return self.get_wallet(owner_id).ledger.balance
    
    def deposit(self, owner_id: str, amount: AmountInput,
                description: str = "") -> OperationResult[Transaction]:
        wallet = self.get_wallet(owner_id)
        money = wallet.ledger.parse_amount(amount)
        if isinstance(money, OperationResult):
            return money
        if money > self.max_deposit:
            return OperationResult.failure(
                ErrorKind.INVALID_INPUT,
                f"A single deposit cannot exceed {self.max_deposit.to_string()}."
            )
        return self._ledger_op(wallet, lambda: wallet.ledger.deposit(money, description))
    
    def withdraw(self, owner_id: str, amount: AmountInput,
                 description: str = "") -> OperationResult[Transaction]:
        wallet = self.get_wallet(owner_id)
        return self._ledger_op(wallet, lambda: wallet.ledger.withdraw(amount, description))
    
    def refund(self, owner_id: str, amount: AmountInput,
               description: str = "") -> OperationResult[Transaction]:
        wallet = self.get_wallet(owner_id)
        return self._ledger_op(wallet, lambda: wallet.ledger.refund(amount, description))
    
    def pay_for_order(self, owner_id: str, amount: AmountInput, order_id,
                      card_number: Optional[str] = None) -> OperationResult[PaymentReceipt]:
        """Pay an order from the wallet, or with a saved card when one is given"""
        wallet = self.get_wallet(owner_id)
        reference = f"order-{order_id}"
        if card_number:
            return self.orchestrator.pay_with_card(wallet.ledger, wallet.cards, card_number,
                                                   amount, reference=reference)
        return self._ledger_op(wallet, lambda: self.orchestrator.pay_from_wallet(
            wallet.ledger, amount, f"Payment for Order #{order_id}", reference=reference))
    
    def history(self, owner_id: str, limit: int = 20) -> LedgerHistory:
        return self.get_wallet(owner_id).ledger.history(limit)
    
    def add_card(self, owner_id: str, number: str, holder_name: str, expiry: str,
                 network: Optional[str] = "") -> OperationResult[CardView]:
        wallet = self.get_wallet(owner_id)
        return self._cards_op(wallet, lambda: wallet.cards.add_card(number, holder_name,
                                                                    expiry, network))
    
    def remove_card(self, owner_id: str, last_four: str) -> OperationResult[CardView]:
        wallet = self.get_wallet(owner_id)
        return self._cards_op(wallet, lambda: wallet.cards.remove_card(last_four))
    
    def remove_card_by_id(self, owner_id: str, card_id: str) -> OperationResult[CardView]:
        wallet = self.get_wallet(owner_id)
        return self._cards_op(wallet, lambda: wallet.cards.remove_card_by_id(card_id))
    
    def list_cards(self, owner_id: str) -> List[CardView]:
        return self.get_wallet(owner_id).cards.list_cards()
    
    def _ledger_op(self, wallet: Wallet, operation: Callable[[], OperationResult]) -> OperationResult:
        return self._persisting(wallet, operation,
                                lambda: self.repository.save_ledger(wallet.ledger))
    
    def _cards_op(self, wallet: Wallet, operation: Callable[[], OperationResult]) -> OperationResult:
        return self._persisting(wallet, operation,
                                lambda: self.repository.save_cards(wallet.cards))
    
    def _persisting(self, wallet: Wallet, operation: Callable[[], OperationResult],
                    save: Callable[[], None]) -> OperationResult:
        with self._locks.hold(wallet.owner_id):
            result = operation()
            if result:
                try:
                    save()
                except Exception:
                    # The cached aggregate is ahead of storage; reload on next access
                    self._wallets.pop(wallet.owner_id, None)
                    logger.error(f"Failed to persist wallet for {wallet.owner_id}")
                    raise
            return result
