"""
Operation Results and Error Taxonomy

Expected, routine failures (bad input, locked accounts, wrong credentials,
insufficient funds, duplicates) are returned as values. Only a missing
cryptographic primitive and programming-contract violations are raised.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(Enum):
    """Reportable failure kinds"""
    INVALID_INPUT = "invalid_input"
    ACCOUNT_LOCKED = "account_locked"
    INVALID_CREDENTIALS = "invalid_credentials"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    DUPLICATE_RESOURCE = "duplicate_resource"
    NOT_FOUND = "not_found"
    PAYMENT_DECLINED = "payment_declined"
    CRYPTO_UNAVAILABLE = "crypto_unavailable"


class CryptoUnavailable(RuntimeError):
    """The hashing primitive could not run. Fatal configuration error."""


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """
    Tagged result of a core operation.
    
    Either ``ok`` with a ``value``, or not ok with an ``error`` kind and a
    one-line actionable ``message``. ``details`` carries structured extras
    such as remaining attempts or the lockout expiry.
    """
    ok: bool
    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    
    @classmethod
    def success(cls, value: Optional[T] = None, message: str = "",
                **details: Any) -> "OperationResult[T]":
        """Build a successful result"""
        return cls(ok=True, value=value, message=message, details=details)
    
    @classmethod
    def failure(cls, error: ErrorKind, message: str,
                **details: Any) -> "OperationResult[T]":
        """Build a failed result"""
        return cls(ok=False, error=error, message=message, details=details)
    
    def __bool__(self) -> bool:
        return self.ok
    
    def is_error(self, kind: ErrorKind) -> bool:
        """Check whether this result failed with the given kind"""
        return not self.ok and self.error == kind
    
    def unwrap(self) -> T:
        """Return the value of a successful result or raise ValueError"""
        if not self.ok:
            raise ValueError(f"{self.error.value}: {self.message}")
        return self.value
