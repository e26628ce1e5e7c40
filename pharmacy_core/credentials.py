"""
Credential Vault Module

Authenticates principals (admins, patients, doctors, pharmacists) against
caller-supplied registry lookups. One generic algorithm serves every
registry: input validation, lockout check, digest verification with
transparent upgrade of legacy secrets, and failure accounting.
"""

import hmac
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar

from .audit import AuditEventType, AuditTrail
from .errors import ErrorKind, OperationResult
from .hashing import PasswordHasher, is_digest
from .lockout import LockoutTracker
from .logging_config import get_logger, log_action


logger = get_logger("pharmacy.auth")

# Sequences that would be unsafe if an identifier were interpolated into a query
FORBIDDEN_SEQUENCES = (";", "'", '"', "`", "--")


class PrincipalKind(Enum):
    """Principal registries"""
    ADMIN = "admin"
    PATIENT = "patient"
    DOCTOR = "doctor"
    PHARMACIST = "pharmacist"


@dataclass
class Principal:
    """
    An identity that can authenticate.
    
    ``secret`` holds a digest string, or plaintext for accounts provisioned
    before hashing was introduced; those are upgraded on the next successful
    login. ``failed_attempts`` and ``locked_until`` mirror the lockout
    tracker so callers can persist them.
    """
    identifier: str
    secret: str = field(repr=False)
    kind: PrincipalKind = PrincipalKind.PATIENT
    display_name: str = ""
    active: bool = True
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    
    @property
    def has_legacy_secret(self) -> bool:
        return not is_digest(self.secret)
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            'identifier': self.identifier,
            'secret': self.secret,
            'kind': self.kind.value,
            'display_name': self.display_name,
            'active': self.active,
            'failed_attempts': self.failed_attempts,
            'locked_until': self.locked_until.isoformat() if self.locked_until else None,
        }
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Principal':
        locked_until = data.get('locked_until')
        return cls(
            identifier=data['identifier'],
            secret=data['secret'],
            kind=PrincipalKind(data.get('kind', PrincipalKind.PATIENT.value)),
            display_name=data.get('display_name', ""),
            active=data.get('active', True),
            failed_attempts=data.get('failed_attempts', 0),
            locked_until=datetime.fromisoformat(locked_until) if locked_until else None,
        )


P = TypeVar("P", bound=Principal)
RegistryLookup = Callable[[str], Optional[P]]


class PrincipalRegistry:
    """In-memory registry of one kind of principal, keyed by identifier"""
    
    def __init__(self, kind: PrincipalKind):
        self.kind = kind
        self._principals: Dict[str, Principal] = {}
        self._lock = threading.Lock()
    
    def add(self, principal: Principal) -> OperationResult[Principal]:
        with self._lock:
            if principal.identifier in self._principals:
                return OperationResult.failure(
                    ErrorKind.DUPLICATE_RESOURCE,
                    f"A {self.kind.value} named '{principal.identifier}' already exists."
                )
            self._principals[principal.identifier] = principal
            return OperationResult.success(principal)
    
    def lookup(self, identifier: str) -> Optional[Principal]:
        with self._lock:
            return self._principals.get(identifier)
    
    def remove(self, identifier: str) -> bool:
        with self._lock:
            return self._principals.pop(identifier, None) is not None
    
    def all(self) -> List[Principal]:
        with self._lock:
            return list(self._principals.values())
    
    def __len__(self) -> int:
        return len(self._principals)
    
    def __iter__(self) -> Iterator[Principal]:
        return iter(self.all())


def validate_login_input(identifier: Optional[str], secret: Optional[str],
                         min_length: int = 3) -> Optional[str]:
    """Return a one-line problem description, or None when input is acceptable"""
    if identifier is None or not identifier.strip():
        return "Username cannot be empty."
    if secret is None or not secret.strip():
        return "Password cannot be empty."
    if len(identifier) < min_length:
        return f"Username must be at least {min_length} characters long."
    if any(seq in identifier for seq in FORBIDDEN_SEQUENCES):
        return "Username contains invalid characters."
    return None


def _lockout_message(seconds: float) -> str:
    minutes = max(1, math.ceil(seconds / 60))
    return f"Account locked. Try again in {minutes} minute(s)."


class CredentialVault:
    """
    Registry-agnostic authentication.
    
    ``authenticate`` holds the identifier's lockout lock from the lockout
    check through failure accounting, so parallel attempts for one
    identifier are serialized while different identifiers proceed freely.
    """
    
    def __init__(self, hasher: Optional[PasswordHasher] = None,
                 tracker: Optional[LockoutTracker] = None,
                 audit_trail: Optional[AuditTrail] = None,
                 min_identifier_length: Optional[int] = None):
        self.hasher = hasher or PasswordHasher.from_config()
        self.tracker = tracker or LockoutTracker()
        self.audit = audit_trail
        if min_identifier_length is None:
            from .config import get_config
            min_identifier_length = get_config().identifier_min_length
        self.min_identifier_length = min_identifier_length
        self._dummy_digest: Optional[str] = None
    
    def authenticate(self, lookup: RegistryLookup, identifier: str,
                     secret: str) -> OperationResult[P]:
        """
        Authenticate ``identifier`` with ``secret`` against one registry.
        
        Returns a successful result carrying the principal, or a failure of
        kind INVALID_INPUT, ACCOUNT_LOCKED or INVALID_CREDENTIALS. A
        successful login may replace the principal's stored secret with a
        fresh digest (``details['secret_upgraded']``); callers must persist
        the principal in that case.
        
        Raises:
            CryptoUnavailable: If hashing cannot run.
        """
        problem = validate_login_input(identifier, secret, self.min_identifier_length)
        if problem:
            return OperationResult.failure(ErrorKind.INVALID_INPUT, problem)
        
        with self.tracker.guard(identifier):
            if self.tracker.is_locked(identifier):
                remaining = self.tracker.remaining_lockout(identifier)
                seconds = remaining.total_seconds() if remaining else 0.0
                state = self.tracker.get_state(identifier)
                log_action(logger, "warning", "Login rejected: identifier locked",
                           principal=identifier, action="login_locked")
                self._audit(AuditEventType.LOGIN_FAILED, identifier, {'reason': 'locked'})
                return OperationResult.failure(
                    ErrorKind.ACCOUNT_LOCKED,
                    _lockout_message(seconds),
                    retry_after_seconds=int(math.ceil(seconds)),
                    locked_until=state.locked_until,
                )
            
            principal = lookup(identifier)
            if principal is None:
                # Spend the same hashing work as a real check
                self.hasher.verify(secret, self._get_dummy_digest())
                return self._fail(identifier, None, reason='unknown_identifier')
            
            matched, upgraded = self._check_secret(principal, secret)
            if not matched or not principal.active:
                reason = 'invalid_secret' if not matched else 'inactive'
                return self._fail(identifier, principal, reason=reason)
            
            self.tracker.reset(identifier)
            self._sync_lockout(principal)
        
        log_action(logger, "info", "Login successful", principal=identifier,
                   action="login_success",
                   extra={'kind': principal.kind.value, 'secret_upgraded': upgraded})
        self._audit(AuditEventType.LOGIN_SUCCESS, identifier, {'kind': principal.kind})
        if upgraded:
            self._audit(AuditEventType.SECRET_UPGRADED, identifier, {})
        
        return OperationResult.success(principal, "Login successful.",
                                       secret_upgraded=upgraded)
    
    def set_secret(self, principal: P, new_secret: str) -> OperationResult[P]:
        """Store a fresh digest for ``new_secret``; lockout state is untouched"""
        if new_secret is None or not new_secret.strip():
            return OperationResult.failure(ErrorKind.INVALID_INPUT, "Password cannot be empty.")
        
        principal.secret = self.hasher.hash_to_string(new_secret)
        log_action(logger, "info", "Secret changed", principal=principal.identifier,
                   action="secret_changed")
        self._audit(AuditEventType.SECRET_CHANGED, principal.identifier, {})
        return OperationResult.success(principal, "Password updated.")
    
    def change_secret(self, principal: P, old_secret: str,
                      new_secret: str) -> OperationResult[P]:
        """Verify the current secret, then store a digest of the new one"""
        if not isinstance(old_secret, str) or not old_secret:
            return OperationResult.failure(ErrorKind.INVALID_INPUT, "Current password cannot be empty.")
        matched, _ = self._check_secret(principal, old_secret, upgrade=False)
        if not matched:
            return OperationResult.failure(
                ErrorKind.INVALID_CREDENTIALS, "Current password is incorrect."
            )
        return self.set_secret(principal, new_secret)
    
    def restore_lockout(self, principal: Principal) -> None:
        """Seed the tracker from lockout fields loaded with a principal"""
        self.tracker.restore(principal.identifier, principal.failed_attempts,
                             principal.locked_until)
    
    def _check_secret(self, principal: Principal, secret: str,
                      upgrade: bool = True):
        stored = principal.secret or ""
        if not is_digest(stored):
            matched = hmac.compare_digest(stored.encode('utf-8'), secret.encode('utf-8'))
        else:
            matched = self.hasher.verify(secret, stored)
        
        if matched and upgrade and principal.active and (
                not is_digest(stored) or self.hasher.needs_rehash(stored)):
            principal.secret = self.hasher.hash_to_string(secret)
            return True, True
        return matched, False
    
    def _fail(self, identifier: str, principal: Optional[Principal],
              reason: str) -> OperationResult:
        outcome = self.tracker.record_failure(identifier)
        if principal is not None:
            self._sync_lockout(principal)
        
        log_action(logger, "warning", "Login failed", principal=identifier,
                   action="login_failed",
                   extra={'reason': reason, 'remaining_attempts': outcome.remaining_attempts})
        self._audit(AuditEventType.LOGIN_FAILED, identifier,
                    {'reason': reason, 'failed_attempts': outcome.failed_attempts})
        if outcome.locked:
            self._audit(AuditEventType.ACCOUNT_LOCKED, identifier,
                        {'locked_until': outcome.locked_until})
        
        return OperationResult.failure(
            ErrorKind.INVALID_CREDENTIALS,
            f"Invalid username or password. {outcome.message}",
            remaining_attempts=outcome.remaining_attempts,
            locked=outcome.locked,
            locked_until=outcome.locked_until,
        )
    
    def _sync_lockout(self, principal: Principal) -> None:
        state = self.tracker.get_state(principal.identifier)
        principal.failed_attempts = state.failed_attempts
        principal.locked_until = state.locked_until
    
    def _get_dummy_digest(self) -> str:
        if self._dummy_digest is None:
            self._dummy_digest = self.hasher.hash_to_string("dummy-secret-for-timing")
        return self._dummy_digest
    
    def _audit(self, event_type: AuditEventType, identifier: str,
               metadata: Dict[str, Any]) -> None:
        if self.audit:
            self.audit.log_event(event_type, 'principal', identifier, metadata, identifier)
