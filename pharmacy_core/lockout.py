"""
Brute-Force Lockout Module

Per-identifier failed-attempt counters with time-bounded lockouts. Expired
lockouts are cleared lazily when queried, so no background timer is needed.
Each identifier is mutated under its own lock from a keyed lock arena, so
unrelated accounts never serialize on each other.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterator, List, Optional

from .logging_config import get_logger, log_action


logger = get_logger("pharmacy.auth")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LockoutPolicy:
    """Lockout policy configuration"""
    max_attempts: int = 5
    duration: timedelta = timedelta(minutes=15)
    
    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.duration <= timedelta(0):
            raise ValueError("Lockout duration must be positive")
    
    @classmethod
    def from_config(cls, cfg=None) -> 'LockoutPolicy':
        """Read threshold and duration from the deployment configuration"""
        if cfg is None:
            from .config import get_config
            cfg = get_config()
        return cls(
            max_attempts=cfg.lockout_max_attempts,
            duration=timedelta(minutes=cfg.lockout_duration_minutes),
        )


@dataclass
class LockoutState:
    """Failed-attempt counter and optional lockout expiry for one identifier"""
    identifier: str
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    
    def is_expired(self, now: datetime, window: timedelta) -> bool:
        """Lockout elapsed, or failures older than ``window`` with no lockout"""
        if self.locked_until is not None:
            return self.locked_until <= now
        return self.last_failure_at is None or self.last_failure_at + window <= now
    
    def is_clear(self) -> bool:
        return self.failed_attempts == 0 and self.locked_until is None


@dataclass(frozen=True)
class FailureOutcome:
    """What a recorded failure did to the identifier's lockout state"""
    failed_attempts: int
    remaining_attempts: int
    locked: bool
    locked_until: Optional[datetime] = None
    
    @property
    def message(self) -> str:
        if self.locked:
            return "Too many failed login attempts. Account locked."
        plural = "s" if self.remaining_attempts != 1 else ""
        return f"Login failed. {self.remaining_attempts} attempt{plural} remaining."


class KeyedLocks:
    """
    Arena of reentrant locks, one per key.
    
    Entries are reference counted: a key's lock exists only while some
    thread holds it or waits for it, so the arena stays as small as the
    number of keys in use.
    """
    
    def __init__(self):
        self._locks: Dict[str, List] = {}  # key -> [RLock, holders]
        self._registry_lock = threading.Lock()
    
    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[key] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._registry_lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]
    
    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)


class LockoutTracker:
    """
    Tracks failed authentication attempts per identifier.
    
    Reaching ``policy.max_attempts`` consecutive failures locks the
    identifier until ``now + policy.duration``. ``reset`` clears both the
    counter and the expiry. Counters below the threshold are forgotten once
    ``policy.duration`` has passed since the last failure, and expired
    entries are swept whenever the table doubles in size.
    """
    
    def __init__(self, policy: Optional[LockoutPolicy] = None,
                 clock: Optional[Clock] = None,
                 locks: Optional[KeyedLocks] = None,
                 sweep_threshold: int = 1024):
        self.policy = policy or LockoutPolicy.from_config()
        self.clock = clock or utc_now
        self.locks = locks or KeyedLocks()
        self.sweep_threshold = sweep_threshold
        self._states: Dict[str, LockoutState] = {}
        self._states_lock = threading.Lock()
        self._sweep_guard = threading.Lock()
        self._sweep_at = sweep_threshold
    
    def __len__(self) -> int:
        with self._states_lock:
            return len(self._states)
    
    @contextmanager
    def guard(self, identifier: str) -> Iterator[None]:
        """Hold the identifier's lock across several tracker calls"""
        with self.locks.hold(identifier):
            yield
    
    def record_failure(self, identifier: str) -> FailureOutcome:
        """Count a failed attempt, locking the identifier at the threshold"""
        with self.locks.hold(identifier):
            now = self.clock()
            state = self._current(identifier, now)
            if state is None:
                state = LockoutState(identifier)
                with self._states_lock:
                    self._states[identifier] = state
            state.failed_attempts += 1
            state.last_failure_at = now
            
            if state.failed_attempts >= self.policy.max_attempts:
                state.locked_until = now + self.policy.duration
                log_action(
                    logger, "warning", "Identifier locked after repeated failures",
                    principal=identifier, action="lockout",
                    extra={"failed_attempts": state.failed_attempts,
                           "locked_until": state.locked_until.isoformat()}
                )
                outcome = FailureOutcome(
                    failed_attempts=state.failed_attempts,
                    remaining_attempts=0,
                    locked=True,
                    locked_until=state.locked_until,
                )
            else:
                outcome = FailureOutcome(
                    failed_attempts=state.failed_attempts,
                    remaining_attempts=self.policy.max_attempts - state.failed_attempts,
                    locked=False,
                )
        
        self._maybe_sweep()
        return outcome
    
    def is_locked(self, identifier: str) -> bool:
        """True while a lockout is in force; clears expired lockouts"""
        with self.locks.hold(identifier):
            state = self._current(identifier, self.clock())
            return state is not None and state.locked_until is not None
    
    def remaining_lockout(self, identifier: str) -> Optional[timedelta]:
        """Time left on an active lockout, or None"""
        with self.locks.hold(identifier):
            if not self.is_locked(identifier):
                return None
            return self._states[identifier].locked_until - self.clock()
    
    def reset(self, identifier: str) -> None:
        """Clear the failure counter and lockout expiry"""
        with self.locks.hold(identifier):
            with self._states_lock:
                self._states.pop(identifier, None)
    
    def get_state(self, identifier: str) -> LockoutState:
        """Copy of the current state (a clear state when none is tracked)"""
        with self.locks.hold(identifier):
            state = self._current(identifier, self.clock())
            if state is None:
                return LockoutState(identifier)
            return replace(state)
    
    def restore(self, identifier: str, failed_attempts: int,
                locked_until: Optional[datetime] = None) -> None:
        """Rehydrate state loaded from persistence"""
        with self.locks.hold(identifier):
            with self._states_lock:
                if failed_attempts <= 0 and locked_until is None:
                    self._states.pop(identifier, None)
                    return
                self._states[identifier] = LockoutState(
                    identifier=identifier,
                    failed_attempts=max(failed_attempts, 0),
                    locked_until=locked_until,
                    last_failure_at=self.clock(),
                )
    
    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed"""
        now = self.clock()
        with self._states_lock:
            candidates = [identifier for identifier, state in self._states.items()
                          if state.is_expired(now, self.policy.duration)]
        
        removed = 0
        for identifier in candidates:
            with self.locks.hold(identifier):
                if self._current(identifier, self.clock()) is None:
                    removed += 1
        return removed
    
    def _current(self, identifier: str, now: datetime) -> Optional[LockoutState]:
        # Caller holds the identifier's lock
        with self._states_lock:
            state = self._states.get(identifier)
            if state is None or not state.is_expired(now, self.policy.duration):
                return state
            del self._states[identifier]
        
        if state.locked_until is not None:
            log_action(logger, "info", "Lockout expired",
                       principal=identifier, action="lockout_expired")
        return None
    
    def _maybe_sweep(self) -> None:
        with self._states_lock:
            due = len(self._states) >= self._sweep_at
        if not due or not self._sweep_guard.acquire(blocking=False):
            return
        try:
            removed = self.purge_expired()
            with self._states_lock:
                self._sweep_at = max(self.sweep_threshold, 2 * len(self._states))
            logger.debug(f"Lockout sweep removed {removed} expired entries")
        finally:
            self._sweep_guard.release()
