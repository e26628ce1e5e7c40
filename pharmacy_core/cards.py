"""
Card Vault Module

Stores a wallet's payment cards as masked records. The raw card number is
never kept: duplicates are detected through a keyed HMAC fingerprint of the
number, and every accessor returns the masked view only.
"""

import hashlib
import hmac
import re
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .audit import AuditEventType, AuditTrail
from .errors import ErrorKind, OperationResult
from .logging_config import get_logger, log_action


logger = get_logger("pharmacy.cards")

EXPIRY_PATTERN = re.compile(r"^(0[1-9]|1[0-2])/(\d{2})$")

NETWORK_PREFIXES = (
    ("4", "Visa"),
    ("51", "Mastercard"), ("52", "Mastercard"), ("53", "Mastercard"),
    ("54", "Mastercard"), ("55", "Mastercard"), ("2", "Mastercard"),
    ("6", "Discover"),
)


def clean_card_number(number: str) -> str:
    """Strip the spaces and dashes people type between digit groups"""
    return re.sub(r"[ -]", "", number or "")


def mask_card_number(number: str) -> str:
    """Mask all but the last four digits, grouped in fours"""
    cleaned = clean_card_number(number)
    if len(cleaned) <= 4:
        return cleaned
    masked = "*" * (len(cleaned) - 4) + cleaned[-4:]
    return " ".join(masked[i:i + 4] for i in range(0, len(masked), 4))


def detect_network(number: str) -> str:
    cleaned = clean_card_number(number)
    for prefix, network in NETWORK_PREFIXES:
        if cleaned.startswith(prefix):
            return network
    return "Unknown"


@dataclass(frozen=True)
class CardView:
    """Non-sensitive view of a stored card"""
    card_id: str
    masked_number: str
    last_four: str
    holder_name: str
    expiry: str
    network: str
    
    def __str__(self) -> str:
        return f"{self.network} {self.masked_number} ({self.holder_name}, exp {self.expiry})"


@dataclass(frozen=True)
class StoredCard:
    """Masked card record; the number cannot be recovered from it"""
    card_id: str
    masked_number: str
    last_four: str
    holder_name: str
    expiry: str
    network: str
    added_at: datetime
    fingerprint: str = field(repr=False)
    
    def view(self) -> CardView:
        return CardView(
            card_id=self.card_id,
            masked_number=self.masked_number,
            last_four=self.last_four,
            holder_name=self.holder_name,
            expiry=self.expiry,
            network=self.network,
        )
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            'card_id': self.card_id,
            'masked_number': self.masked_number,
            'last_four': self.last_four,
            'holder_name': self.holder_name,
            'expiry': self.expiry,
            'network': self.network,
            'added_at': self.added_at.isoformat(),
            'fingerprint': self.fingerprint,
        }
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StoredCard':
        data = dict(data)
        data['added_at'] = datetime.fromisoformat(data['added_at'])
        return cls(**data)


class CardVault:
    """Masked payment cards belonging to one wallet owner"""
    
    def __init__(self, owner_id: str, fingerprint_key: Optional[str] = None,
                 number_length: Optional[int] = None,
                 audit_trail: Optional[AuditTrail] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        if fingerprint_key is None or number_length is None:
            from .config import get_config
            cfg = get_config()
            fingerprint_key = fingerprint_key if fingerprint_key is not None else cfg.card_fingerprint_key
            number_length = number_length if number_length is not None else cfg.card_number_length
        self.owner_id = owner_id
        self.number_length = number_length
        self.audit = audit_trail
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._key = hashlib.sha256(f"card-fingerprint:{fingerprint_key}".encode('utf-8')).digest()
        self._cards: List[StoredCard] = []
        self._lock = threading.Lock()
    
    def fingerprint(self, number: str) -> str:
        """Keyed, non-reversible fingerprint of a card number"""
        cleaned = clean_card_number(number)
        return hmac.new(self._key, cleaned.encode('utf-8'), hashlib.sha256).hexdigest()
    
    def add_card(self, number: str, holder_name: str, expiry: str,
                 network: Optional[str] = "") -> OperationResult[CardView]:
        """
        Validate and store a card as a masked record.
        
        Fails with INVALID_INPUT for a malformed number, holder or expiry and
        with DUPLICATE_RESOURCE when the same number is already stored.
        """
        cleaned = clean_card_number(number)
        problem = self._validate(cleaned, holder_name, expiry)
        if problem:
            return OperationResult.failure(ErrorKind.INVALID_INPUT, problem)
        
        fingerprint = self.fingerprint(cleaned)
        with self._lock:
            if any(hmac.compare_digest(card.fingerprint, fingerprint) for card in self._cards):
                return OperationResult.failure(
                    ErrorKind.DUPLICATE_RESOURCE,
                    f"Card ending in {cleaned[-4:]} is already saved."
                )
            card = StoredCard(
                card_id=str(uuid.uuid4()),
                masked_number=mask_card_number(cleaned),
                last_four=cleaned[-4:],
                holder_name=holder_name.strip(),
                expiry=expiry,
                network=(network or "").strip() or detect_network(cleaned),
                added_at=self.clock(),
                fingerprint=fingerprint,
            )
            self._cards.append(card)
        
        log_action(logger, "info", "Card added", principal=self.owner_id,
                   action="card_added", resource=card.card_id,
                   extra={'masked_number': card.masked_number})
        self._audit(AuditEventType.CARD_ADDED, card)
        return OperationResult.success(card.view(), f"Card {card.masked_number} saved.")
    
    def remove_card(self, last_four: str) -> OperationResult[CardView]:
        """Remove the first stored card whose last four digits match"""
        with self._lock:
            for index, card in enumerate(self._cards):
                if card.last_four == last_four:
                    del self._cards[index]
                    break
            else:
                return OperationResult.failure(
                    ErrorKind.NOT_FOUND, f"No saved card ends in {last_four}."
                )
        return self._removed(card)
    
    def remove_card_by_id(self, card_id: str) -> OperationResult[CardView]:
        """Remove the card with the given record identifier"""
        with self._lock:
            for index, card in enumerate(self._cards):
                if card.card_id == card_id:
                    del self._cards[index]
                    break
            else:
                return OperationResult.failure(ErrorKind.NOT_FOUND, "No such saved card.")
        return self._removed(card)
    
    def has_card(self, number: str) -> bool:
        return self.find(number) is not None
    
    def find(self, number: str) -> Optional[StoredCard]:
        """Stored record for a number, matched by fingerprint"""
        fingerprint = self.fingerprint(number)
        with self._lock:
            for card in self._cards:
                if hmac.compare_digest(card.fingerprint, fingerprint):
                    return card
        return None
    
    def list_cards(self) -> List[CardView]:
        with self._lock:
            return [card.view() for card in self._cards]
    
    def __len__(self) -> int:
        with self._lock:
            return len(self._cards)
    
    def _validate(self, cleaned: str, holder_name: str, expiry: str) -> Optional[str]:
        if not cleaned.isdigit() or not cleaned.isascii():
            return "Card number must contain digits only."
        if len(cleaned) != self.number_length:
            return f"Card number must be {self.number_length} digits."
        if not holder_name or not holder_name.strip():
            return "Card holder name cannot be empty."
        match = EXPIRY_PATTERN.match(expiry or "")
        if not match:
            return "Expiry date must be in MM/YY format."
        month, year = int(match.group(1)), 2000 + int(match.group(2))
        now = self.clock()
        if (year, month) < (now.year, now.month):
            return "Card has expired."
        return None
    
    def _removed(self, card: StoredCard) -> OperationResult[CardView]:
        log_action(logger, "info", "Card removed", principal=self.owner_id,
                   action="card_removed", resource=card.card_id,
                   extra={'masked_number': card.masked_number})
        self._audit(AuditEventType.CARD_REMOVED, card)
        return OperationResult.success(card.view(), f"Card {card.masked_number} removed.")
    
    def _audit(self, event_type: AuditEventType, card: StoredCard) -> None:
        if self.audit:
            self.audit.log_event(event_type, 'card_vault', self.owner_id,
                                 {'card_id': card.card_id, 'last_four': card.last_four},
                                 self.owner_id)
    
    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'owner_id': self.owner_id,
                'cards': [card.to_dict() for card in self._cards],
            }
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any], fingerprint_key: Optional[str] = None,
                  number_length: Optional[int] = None,
                  audit_trail: Optional[AuditTrail] = None) -> 'CardVault':
        vault = cls(data['owner_id'], fingerprint_key=fingerprint_key,
                    number_length=number_length, audit_trail=audit_trail)
        vault._cards = [StoredCard.from_dict(c) for c in data.get('cards', [])]
        return vault
