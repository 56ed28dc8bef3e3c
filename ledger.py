#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Quota and cost ledger for Vidrich.

Tracks API quota units and LLM spend per provider for the lifetime of the
process. Strategies reserve budget before a paid call and settle it after,
so concurrent callers can never jointly pass the configured limits by more
than what is already in flight.
"""

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from config import config
from logging_config import StructuredLogger

logger = StructuredLogger(__name__)

YOUTUBE_PROVIDER = "youtube"


@dataclass
class ProviderAccount:
    """Running totals for one provider. `math.inf` means unlimited."""

    quota_used: int = 0
    quota_limit: float = math.inf
    cost_spent: float = 0.0
    cost_reserved: float = 0.0
    cost_ceiling: float = math.inf
    tokens_used: int = 0
    calls: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quota_used": self.quota_used,
            "quota_limit": None if math.isinf(self.quota_limit) else int(self.quota_limit),
            "cost_spent": round(self.cost_spent, 6),
            "cost_reserved": round(self.cost_reserved, 6),
            "cost_ceiling": None if math.isinf(self.cost_ceiling) else self.cost_ceiling,
            "tokens_used": self.tokens_used,
            "calls": self.calls,
        }


@dataclass
class SpendScope:
    """Spend of one enrichment request, capped by the request's own ceiling.

    The scope only narrows the provider ceiling; it is updated by the ledger
    under its lock together with the provider account.
    """

    ceiling: float = math.inf
    spent: float = 0.0
    reserved: float = 0.0

    @classmethod
    def for_ceiling(cls, ceiling: Optional[float]) -> "SpendScope":
        return cls(ceiling=math.inf if ceiling is None else float(ceiling))

    def fits(self, amount: float) -> bool:
        return self.spent + self.reserved + amount <= self.ceiling


class QuotaCostLedger:
    """Process-wide record of quota and spend, shared by all strategies.

    All mutations run under a single asyncio.Lock and never await while
    holding it, so each check-and-reserve is atomic with respect to every
    other coroutine. `cost_spent` only grows until an explicit reset().
    """

    def __init__(self, accounts: Optional[Dict[str, ProviderAccount]] = None):
        self._accounts: Dict[str, ProviderAccount] = dict(accounts or {})
        self._lock = asyncio.Lock()
        self._last_reset = time.time()

    @classmethod
    def from_config(cls, cfg=config) -> "QuotaCostLedger":
        """Build the ledger with the YouTube quota and the LLM provider's ceiling."""
        accounts = {
            YOUTUBE_PROVIDER: ProviderAccount(quota_limit=cfg.API_QUOTA_LIMIT),
            cfg.LLM_PROVIDER: ProviderAccount(cost_ceiling=cfg.COST_CEILING),
        }
        logger.info(
            "Ledger initialized",
            quota_limit=cfg.API_QUOTA_LIMIT,
            cost_ceiling=cfg.COST_CEILING,
            llm_provider=cfg.LLM_PROVIDER
        )
        return cls(accounts)

    def _account(self, provider: str) -> ProviderAccount:
        account = self._accounts.get(provider)
        if account is None:
            account = ProviderAccount()
            self._accounts[provider] = account
        return account

    # --- Quota ---

    async def try_reserve_quota(self, provider: str, units: int) -> bool:
        """Reserve `units` of quota if they fit under the limit."""
        async with self._lock:
            account = self._account(provider)
            if account.quota_used + units > account.quota_limit:
                logger.warning(
                    f"Quota refused for '{provider}'",
                    provider=provider,
                    units=units,
                    quota_used=account.quota_used,
                    quota_limit=account.quota_limit
                )
                return False
            account.quota_used += units
            account.calls += 1
            return True

    async def release_quota(self, provider: str, units: int) -> None:
        """Refund a quota reservation whose call never reached the provider."""
        async with self._lock:
            account = self._account(provider)
            account.quota_used = max(0, account.quota_used - units)

    async def mark_quota_exhausted(self, provider: str) -> None:
        """Record that the provider itself reported the quota as spent."""
        async with self._lock:
            account = self._account(provider)
            if not math.isinf(account.quota_limit):
                account.quota_used = max(account.quota_used, int(account.quota_limit))
        logger.critical(f"Quota for '{provider}' marked exhausted", exc_info=False, provider=provider)

    async def has_quota(self, provider: str, units: int = 1) -> bool:
        async with self._lock:
            account = self._account(provider)
            return account.quota_used + units <= account.quota_limit

    # --- Cost ---

    def _cost_refusal(self, account: ProviderAccount, amount: float,
                      scope: Optional["SpendScope"]) -> Optional[str]:
        """Which limit `amount` would break, or None if it fits both. Caller holds the lock."""
        if account.cost_spent + account.cost_reserved + amount > account.cost_ceiling:
            return "account"
        if scope is not None and not scope.fits(amount):
            return "request"
        return None

    async def try_reserve(self, provider: str, amount: float, scope: Optional["SpendScope"] = None) -> bool:
        """Reserve `amount` USD if it fits under the provider ceiling and, when
        given, the request's own ceiling."""
        async with self._lock:
            account = self._account(provider)
            refused_by = self._cost_refusal(account, amount, scope)
            if refused_by:
                logger.warning(
                    f"Cost reservation refused for '{provider}' by the {refused_by} ceiling",
                    provider=provider,
                    amount=amount,
                    cost_spent=account.cost_spent,
                    cost_reserved=account.cost_reserved,
                    cost_ceiling=account.cost_ceiling,
                    request_ceiling=scope.ceiling if scope is not None else None
                )
                return False
            account.cost_reserved += amount
            if scope is not None:
                scope.reserved += amount
            return True

    async def commit(self, provider: str, reserved: float, actual: float, tokens: int = 0,
                     scope: Optional["SpendScope"] = None) -> None:
        """Settle a reservation with the actual cost of the call.

        The actual cost may exceed the reservation; that overshoot is recorded
        as-is since the money is already spent.
        """
        async with self._lock:
            account = self._account(provider)
            account.cost_reserved = max(0.0, account.cost_reserved - reserved)
            account.cost_spent += max(0.0, actual)
            account.tokens_used += max(0, tokens)
            account.calls += 1
            if scope is not None:
                scope.reserved = max(0.0, scope.reserved - reserved)
                scope.spent += max(0.0, actual)

    async def release(self, provider: str, amount: float, scope: Optional["SpendScope"] = None) -> None:
        """Drop an unused reservation (the call never left the process)."""
        async with self._lock:
            account = self._account(provider)
            account.cost_reserved = max(0.0, account.cost_reserved - amount)
            if scope is not None:
                scope.reserved = max(0.0, scope.reserved - amount)

    async def record(self, provider: str, cost: float, tokens: int = 0) -> None:
        """Record spend that happened outside a reservation."""
        async with self._lock:
            account = self._account(provider)
            account.cost_spent += max(0.0, cost)
            account.tokens_used += max(0, tokens)
            account.calls += 1

    async def has_budget(self, provider: str, estimate: float = 0.0,
                         scope: Optional["SpendScope"] = None) -> bool:
        async with self._lock:
            return self._cost_refusal(self._account(provider), estimate, scope) is None

    async def set_cost_ceiling(self, provider: str, ceiling: Optional[float]) -> None:
        """Operator change of the provider's ceiling; None removes it."""
        async with self._lock:
            self._account(provider).cost_ceiling = math.inf if ceiling is None else float(ceiling)
        logger.info(f"Cost ceiling for '{provider}' set to {ceiling}", provider=provider, ceiling=ceiling)

    # --- Reporting ---

    async def snapshot(self) -> Dict[str, Dict[str, Any]]:
        async with self._lock:
            return {name: account.to_dict() for name, account in self._accounts.items()}

    async def totals(self) -> Dict[str, Any]:
        async with self._lock:
            return {
                "cost_spent": round(sum(a.cost_spent for a in self._accounts.values()), 6),
                "tokens_used": sum(a.tokens_used for a in self._accounts.values()),
                "quota_used": sum(a.quota_used for a in self._accounts.values()),
                "calls": sum(a.calls for a in self._accounts.values()),
                "last_reset": self._last_reset,
            }

    async def reset(self, provider: Optional[str] = None) -> None:
        """Zero usage counters (operator action). Limits and ceilings are kept."""
        async with self._lock:
            targets = [self._account(provider)] if provider else list(self._accounts.values())
            for account in targets:
                account.quota_used = 0
                account.cost_spent = 0.0
                account.cost_reserved = 0.0
                account.tokens_used = 0
                account.calls = 0
            self._last_reset = time.time()
        logger.info("Ledger reset", provider=provider or "all")
