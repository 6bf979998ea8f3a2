"""
Withdraw policies: pluggable predicates consulted before an asset leaves a kiosk.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, Protocol, Sequence

from custody.registry import CustodyDomain


@dataclass(frozen=True)
class WithdrawRequest:
    asset_id: str
    asset_type: str
    kiosk_id: str
    from_domain: CustodyDomain
    to_domain: CustodyDomain


@dataclass(frozen=True)
class PolicyDecision:
    approved: bool
    reason: str = ""

    @classmethod
    def approve(cls) -> "PolicyDecision":
        return cls(approved=True)

    @classmethod
    def deny(cls, reason: str) -> "PolicyDecision":
        return cls(approved=False, reason=reason)


class WithdrawPolicy(Protocol):
    """A withdraw policy known to the ledger under ``policy_id``."""

    @property
    def policy_id(self) -> str:
        ...

    def evaluate(self, request: WithdrawRequest) -> PolicyDecision:
        ...

    def release(self, request: WithdrawRequest) -> None:
        """Return what an approval took once the ledger has definitely refused the withdrawal."""
        ...


class AllowAllPolicy:
    """Approves every withdrawal."""

    def __init__(self, policy_id: str):
        self._policy_id = policy_id

    @property
    def policy_id(self) -> str:
        return self._policy_id

    def evaluate(self, request: WithdrawRequest) -> PolicyDecision:
        return PolicyDecision.approve()

    def release(self, request: WithdrawRequest) -> None:
        pass


class AllowListPolicy:
    """Approves withdrawals only towards the listed destination domains."""

    def __init__(self, policy_id: str, destinations: Iterable[CustodyDomain]):
        self._policy_id = policy_id
        self.destinations: FrozenSet[CustodyDomain] = frozenset(destinations)

    @property
    def policy_id(self) -> str:
        return self._policy_id

    def evaluate(self, request: WithdrawRequest) -> PolicyDecision:
        if request.to_domain in self.destinations:
            return PolicyDecision.approve()
        return PolicyDecision.deny(f"destination {request.to_domain.value} not allow-listed")

    def release(self, request: WithdrawRequest) -> None:
        pass


class RateLimitPolicy:
    """
    Token bucket per destination domain.

    ``burst_size`` withdrawals are allowed immediately; the bucket then
    refills at ``per_minute`` tokens per minute. A token taken for a
    withdrawal the ledger then rejects is handed back through ``release``;
    one taken for a withdrawal with an indeterminate outcome is not.
    """

    def __init__(self, policy_id: str, per_minute: float = 60.0, burst_size: int = 10):
        self._policy_id = policy_id
        self.per_minute = per_minute
        self.burst_size = burst_size
        self._buckets: Dict[CustodyDomain, float] = {}
        self._updated: Dict[CustodyDomain, float] = {}
        self._lock = threading.Lock()

    @property
    def policy_id(self) -> str:
        return self._policy_id

    def _acquire(self, key: CustodyDomain) -> bool:
        with self._lock:
            now = time.monotonic()
            tokens = self._buckets.get(key, float(self.burst_size))
            elapsed = now - self._updated.get(key, now)
            tokens = min(self.burst_size, tokens + elapsed * self.per_minute / 60.0)
            self._updated[key] = now
            if tokens >= 1:
                self._buckets[key] = tokens - 1
                return True
            self._buckets[key] = tokens
            return False

    def evaluate(self, request: WithdrawRequest) -> PolicyDecision:
        if self._acquire(request.to_domain):
            return PolicyDecision.approve()
        return PolicyDecision.deny(f"rate limit exceeded for {request.to_domain.value}")

    def release(self, request: WithdrawRequest) -> None:
        with self._lock:
            key = request.to_domain
            tokens = self._buckets.get(key, float(self.burst_size))
            self._buckets[key] = min(float(self.burst_size), tokens + 1)


class CompositePolicy:
    """All member policies must approve; the first denial wins."""

    def __init__(self, policy_id: str, policies: Sequence[WithdrawPolicy]):
        self._policy_id = policy_id
        self.policies = list(policies)

    @property
    def policy_id(self) -> str:
        return self._policy_id

    def evaluate(self, request: WithdrawRequest) -> PolicyDecision:
        for policy in self.policies:
            decision = policy.evaluate(request)
            if not decision.approved:
                return decision
        return PolicyDecision.approve()

    def release(self, request: WithdrawRequest) -> None:
        for policy in self.policies:
            policy.release(request)
