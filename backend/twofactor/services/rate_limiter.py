"""
Sliding-window lockout for verification attempts.

State machine per (identity, action):

    Closed(0) --failure--> Closed(n)            while n < max_attempts
    Closed(n) --failure--> Locked(now + lockout) when n reaches max_attempts
    Locked    --expiry or success--> Closed(0)

A lock blocks every attempt, correct ones included, until it elapses.
Verifiers call acquire_attempt before checking a code, so the count is
already taken when the check runs.
"""

import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from twofactor.services.rate_limit_store import RateLimitState, RateLimitStore

logger = logging.getLogger(__name__)

TWOFA_VERIFY_ACTION = "2fa-verify"


@dataclass(frozen=True)
class RateLimitPolicy:
    max_attempts: int = 3
    window_seconds: int = 15 * 60
    lockout_seconds: int = 15 * 60

    @property
    def ttl_seconds(self) -> int:
        return max(self.window_seconds, self.lockout_seconds)


@dataclass(frozen=True)
class RateLimitStatus:
    """Snapshot of a key as seen by the caller"""
    locked: bool
    locked_until: Optional[datetime]
    failure_count: int
    attempts_remaining: int
    just_locked: bool = False  # this call moved the key into Locked
    allowed: bool = True  # acquire_attempt only: False when refused by a lock


def policies_from_settings(settings) -> Dict[str, RateLimitPolicy]:
    """Per-action policies; other actions fall back to the 2fa-verify policy"""
    return {
        TWOFA_VERIFY_ACTION: RateLimitPolicy(
            max_attempts=settings.twofa_max_attempts,
            window_seconds=settings.twofa_window_minutes * 60,
            lockout_seconds=settings.twofa_lockout_minutes * 60,
        ),
    }


class RateLimiter:
    """Failure counters with lockout, backed by an external TTL store"""

    def __init__(
        self,
        store: RateLimitStore,
        policies: Optional[Dict[str, RateLimitPolicy]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.policies = dict(policies or {TWOFA_VERIFY_ACTION: RateLimitPolicy()})
        self.clock = clock

    def policy_for(self, action: str) -> RateLimitPolicy:
        policy = self.policies.get(action)
        if policy is None:
            logger.warning(f"No rate-limit policy for action '{action}', using {TWOFA_VERIFY_ACTION}")
            policy = self.policies.get(TWOFA_VERIFY_ACTION, RateLimitPolicy())
        return policy

    @staticmethod
    def _key(identity: str, action: str) -> str:
        return f"{action}:{identity}"

    @staticmethod
    def _effective(state: Optional[RateLimitState], policy: RateLimitPolicy, now: float) -> Optional[RateLimitState]:
        """Apply lockout expiry and window ageing; None means Closed(0)"""
        if state is None:
            return None
        if state.locked_until is not None:
            return state if now < state.locked_until else None
        if now - state.window_start >= policy.window_seconds:
            return None
        return state

    def _snapshot(self, state: Optional[RateLimitState], policy: RateLimitPolicy) -> RateLimitStatus:
        if state is None:
            return RateLimitStatus(False, None, 0, policy.max_attempts)
        if state.locked_until is not None:
            until = datetime.fromtimestamp(state.locked_until, tz=timezone.utc)
            return RateLimitStatus(True, until, state.failure_count, 0)
        remaining = max(0, policy.max_attempts - state.failure_count)
        return RateLimitStatus(False, None, state.failure_count, remaining)

    def status(self, identity: str, action: str) -> RateLimitStatus:
        policy = self.policy_for(action)
        state = self._effective(self.store.get(self._key(identity, action)), policy, self.clock())
        return self._snapshot(state, policy)

    def is_locked(self, identity: str, action: str) -> bool:
        return self.status(identity, action).locked

    def locked_until(self, identity: str, action: str) -> Optional[datetime]:
        return self.status(identity, action).locked_until

    def attempts_remaining(self, identity: str, action: str) -> int:
        return self.status(identity, action).attempts_remaining

    @staticmethod
    def _counted(state: Optional[RateLimitState], policy: RateLimitPolicy, now: float) -> RateLimitState:
        """Add one failure to an unlocked state, locking at the threshold"""
        if state is None:
            state = RateLimitState(window_start=now, failure_count=0)

        count = state.failure_count + 1
        locked_until = None
        if count >= policy.max_attempts:
            locked_until = now + policy.lockout_seconds
        return RateLimitState(window_start=state.window_start, failure_count=count, locked_until=locked_until)

    def record_failure(self, identity: str, action: str) -> RateLimitStatus:
        """
        Count a failed attempt atomically.

        Restarts the window when it has aged out, and locks the key once the
        count reaches the policy threshold. Failures while locked do not extend
        the lock.
        """
        policy = self.policy_for(action)
        transition = {}

        def _increment(current: Optional[RateLimitState]) -> Optional[RateLimitState]:
            now = self.clock()
            state = self._effective(current, policy, now)
            if state is not None and state.locked_until is not None:
                transition["locked"] = False
                return state
            new_state = self._counted(state, policy, now)
            transition["locked"] = new_state.locked_until is not None
            return new_state

        new_state = self.store.update(self._key(identity, action), _increment, policy.ttl_seconds)
        snapshot = self._snapshot(new_state, policy)

        if transition.get("locked"):
            snapshot = replace(snapshot, just_locked=True)
            logger.warning(
                f"Verification locked for identity {identity} on {action} until {snapshot.locked_until.isoformat()}"
            )

        return snapshot

    def acquire_attempt(self, identity: str, action: str) -> RateLimitStatus:
        """
        Reserve one verification attempt before the code is checked.

        In a single atomic update: refused (allowed=False) while the key is
        locked, otherwise the attempt is counted as a failure up front and the
        key locks once the count reaches the threshold. A successful attempt
        clears the key afterwards with record_success; a failed one needs no
        further call.

        Concurrent callers therefore never get more than max_attempts checks
        per window, and a lock set by one of them refuses all later callers.
        """
        policy = self.policy_for(action)
        reservation = {}

        def _reserve(current: Optional[RateLimitState]) -> Optional[RateLimitState]:
            now = self.clock()
            state = self._effective(current, policy, now)
            if state is not None and state.locked_until is not None:
                reservation["allowed"] = False
                reservation["locked"] = False
                return state
            new_state = self._counted(state, policy, now)
            reservation["allowed"] = True
            reservation["locked"] = new_state.locked_until is not None
            return new_state

        new_state = self.store.update(self._key(identity, action), _reserve, policy.ttl_seconds)
        return replace(
            self._snapshot(new_state, policy),
            allowed=reservation["allowed"],
            just_locked=reservation["locked"],
        )

    def record_success(self, identity: str, action: str) -> None:
        """Reset the key to Closed(0)"""
        self.store.delete(self._key(identity, action))

    def reset(self, identity: str, action: str) -> None:
        """Administrative unlock"""
        self.store.delete(self._key(identity, action))
        logger.info(f"Rate limit reset for identity {identity} on {action}")
