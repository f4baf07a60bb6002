"""
Budget / Credit Gate
--------------------
Pre-flight balance checks, progressive cost accrual for polled runs, and the
single post-success deduction against the caller's credit ledger.

The ledger itself is an external collaborator. The gate never reads a balance
and writes it back; every mutation goes through ``CreditLedger.deduct`` which
implementations must make atomic.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

import structlog

from research_pipeline.core.config import BudgetProfile
from research_pipeline.core.exceptions import InsufficientCreditsError

logger = structlog.get_logger(__name__)


@dataclass
class DeductionResult:
    success: bool
    new_balance: Optional[int] = None
    reason: Optional[str] = None


@dataclass
class LedgerEntry:
    user_id: str
    amount: int
    description: str
    balance_after: int


class CreditLedger(Protocol):
    async def check_balance(self, user_id: str) -> int: ...

    async def deduct(self, user_id: str, amount: int, description: str) -> DeductionResult: ...


class InMemoryCreditLedger:
    """Process-local ledger; the lock makes check-and-debit a single step."""

    def __init__(self, balances: Optional[Dict[str, int]] = None, default_balance: int = 0) -> None:
        self._balances: Dict[str, int] = dict(balances or {})
        self._default_balance = default_balance
        self._lock = asyncio.Lock()
        self.entries: List[LedgerEntry] = []

    async def check_balance(self, user_id: str) -> int:
        return self._balances.get(user_id, self._default_balance)

    async def deduct(self, user_id: str, amount: int, description: str) -> DeductionResult:
        async with self._lock:
            balance = self._balances.get(user_id, self._default_balance)
            if amount > balance:
                return DeductionResult(success=False, new_balance=balance, reason="insufficient_credits")
            balance -= amount
            self._balances[user_id] = balance
            self.entries.append(LedgerEntry(user_id, amount, description, balance))
        return DeductionResult(success=True, new_balance=balance)


def accrued_credits(base_cost: int, tool_calls: int, max_budget: int, per_tool_calls: int = 5) -> int:
    """``min(base + floor(tool_calls / per_tool_calls), max_budget)``."""
    step = max(1, per_tool_calls)
    return min(base_cost + max(0, tool_calls) // step, max_budget)


class BudgetGate:
    """Credit checks and deduction for one run."""

    def __init__(self, ledger: CreditLedger, user_id: str) -> None:
        self.ledger = ledger
        self.user_id = user_id

    async def preflight(self, required: int) -> int:
        """Reject before any paid work when the balance cannot cover ``required``."""
        balance = await self.ledger.check_balance(self.user_id)
        if balance < required:
            logger.info(
                "Pre-flight credit check failed",
                user_id=self.user_id,
                balance=balance,
                required=required,
            )
            raise InsufficientCreditsError(balance, required)
        return balance

    async def deduct(self, amount: int, description: str) -> DeductionResult:
        """Charge for completed work. Never called on failure paths.

        Raises ``InsufficientCreditsError`` when the ledger rejects the charge,
        so a run is never delivered unpaid.
        """
        if amount <= 0:
            return DeductionResult(success=True, new_balance=await self.ledger.check_balance(self.user_id))
        result = await self.ledger.deduct(self.user_id, amount, description)
        if result.success:
            logger.info(
                "Credits deducted",
                user_id=self.user_id,
                amount=amount,
                description=description,
                new_balance=result.new_balance,
            )
        else:
            logger.warning(
                "Credit deduction rejected",
                user_id=self.user_id,
                amount=amount,
                reason=result.reason,
            )
            balance = result.new_balance
            if balance is None:
                balance = await self.ledger.check_balance(self.user_id)
            raise InsufficientCreditsError(balance, amount)
        return result


class ProgressiveBudget:
    """Accrual tracker for a polled run bounded by a profile ceiling."""

    def __init__(self, profile: BudgetProfile, requested_max: Optional[int] = None) -> None:
        self.profile = profile
        ceiling = profile.max_budget
        self.max_budget = min(requested_max or ceiling, ceiling)
        self.credits_used = min(profile.base_cost, self.max_budget)

    @property
    def base_cost(self) -> int:
        return self.profile.base_cost

    def estimate(self) -> Dict[str, int]:
        return {"min": self.profile.base_cost, "max": self.max_budget}

    def accrue(self, tool_calls: int) -> int:
        self.credits_used = accrued_credits(
            self.profile.base_cost,
            tool_calls,
            self.max_budget,
            self.profile.credits_per_tool_calls,
        )
        return self.credits_used

    @property
    def exhausted(self) -> bool:
        return self.credits_used >= self.max_budget


__all__ = [
    "BudgetGate",
    "CreditLedger",
    "DeductionResult",
    "InMemoryCreditLedger",
    "LedgerEntry",
    "ProgressiveBudget",
    "accrued_credits",
]
