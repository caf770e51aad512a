"""
Quota ledger for AI chat usage.

Reads a snapshot of the user's active subscription, decides whether a chat turn
on a paper may proceed, and records first-time paper access for the free tier.

Counters live in the remote subscription record. Token usage is written by the
AI service; the paper counter is written here with a compare-and-set on its
previous value so two sessions cannot both consume the same slot. Token usage
can still overshoot when two sessions pass the check before the AI service
records either turn; `refresh()` only reconciles the lock flag afterwards.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .config import QUOTA_CAS_ATTEMPTS
from .data_store import DataStore, DataStoreError
from .observability import get_logger

logger = get_logger(__name__)

TIER_NAMES = ("free", "student_lite", "student", "pro")
PACKAGE_SCOPED_TIERS = frozenset({"student", "student_lite"})

REASON_TOKEN_LIMIT = "token_limit"
REASON_PAPER_LIMIT = "paper_limit"
REASON_PACKAGE_RESTRICTION = "package_restriction"


@dataclass
class QuotaState:
    tier_name: str
    tokens_used: int = 0
    token_limit: int | None = None
    papers_accessed_count: int = 0
    papers_limit: int | None = None
    accessed_paper_ids: set[str] = field(default_factory=set)

    @property
    def tokens_exhausted(self) -> bool:
        return self.token_limit is not None and self.tokens_used >= self.token_limit

    def remaining(self) -> dict[str, int | None]:
        tokens = None if self.token_limit is None else max(0, self.token_limit - self.tokens_used)
        papers = None
        if self.tier_name == "free" and self.papers_limit is not None:
            papers = max(0, self.papers_limit - self.papers_accessed_count)
        tokens_shown = self.tokens_used if self.token_limit is None else min(self.tokens_used, self.token_limit)
        return {"tokens": tokens, "papers": papers, "tokens_used_display": tokens_shown}


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: str | None = None
    remaining: dict[str, Any] = field(default_factory=dict)
    token_limit: int | None = None
    papers_limit: int | None = None


def evaluate_access(state: QuotaState | None, paper_id: str, *, in_package_scope: bool = True) -> AccessDecision:
    """Pure access policy; checks run in a fixed order and the first failure wins."""
    if state is None:
        return AccessDecision(allowed=True, remaining={"tokens": None, "papers": None})

    remaining = state.remaining()
    limits = {"token_limit": state.token_limit, "papers_limit": state.papers_limit}
    if state.tier_name in PACKAGE_SCOPED_TIERS and not in_package_scope:
        return AccessDecision(False, REASON_PACKAGE_RESTRICTION, remaining, **limits)
    if state.tokens_exhausted:
        return AccessDecision(False, REASON_TOKEN_LIMIT, remaining, **limits)
    if (
        state.tier_name == "free"
        and state.papers_limit is not None
        and paper_id not in state.accessed_paper_ids
        and state.papers_accessed_count >= state.papers_limit
    ):
        return AccessDecision(False, REASON_PAPER_LIMIT, remaining, **limits)
    return AccessDecision(True, None, remaining, **limits)


class QuotaLedger:
    """Per-user view of the subscription counters."""

    def __init__(self, store: DataStore, user_id: str | None, *, cas_attempts: int = QUOTA_CAS_ATTEMPTS):
        self.store = store
        self.user_id = user_id
        self.cas_attempts = max(1, int(cas_attempts))
        self.state: QuotaState | None = None
        self._subscription_id: str | None = None
        self.locked = False

    async def load(self) -> QuotaState | None:
        """Reads the active subscription and its tier; None when the user has none."""
        if not self.user_id:
            self.state = None
            return None
        subscription = await self.store.query_one(
            "user_subscriptions",
            {"user_id": self.user_id, "status": "active"},
        )
        if not subscription:
            logger.warning("quota_no_active_subscription", user_id=self.user_id)
            self.state = None
            self._subscription_id = None
            return None
        tier = await self.store.query_one("subscription_tiers", {"id": subscription.get("tier_id")}) or {}
        tier_name = str(tier.get("name") or "free")
        if tier_name not in TIER_NAMES:
            # Unknown tiers get the free tier rules with their own limits.
            logger.warning("quota_unknown_tier", user_id=self.user_id, tier=tier_name)
            tier_name = "free"

        tier_token_limit = tier.get("token_limit")
        override = subscription.get("token_limit_override")
        token_limit = override if override is not None else tier_token_limit
        self._subscription_id = subscription.get("id")
        self.state = QuotaState(
            tier_name=tier_name,
            tokens_used=int(subscription.get("tokens_used_current_period") or 0),
            token_limit=None if token_limit is None else int(token_limit),
            papers_accessed_count=int(subscription.get("papers_accessed_current_period") or 0),
            papers_limit=None if tier.get("papers_limit") is None else int(tier["papers_limit"]),
            accessed_paper_ids={str(p) for p in (subscription.get("accessed_paper_ids") or [])},
        )
        return self.state

    async def _in_package_scope(self, paper_id: str) -> bool:
        try:
            result = await self.store.call_procedure(
                "can_user_use_chat_for_paper",
                {"p_user_id": self.user_id, "p_paper_id": paper_id},
            )
        except DataStoreError as exc:
            # A failed scope check does not block the turn.
            logger.error("quota_scope_check_failed", user_id=self.user_id, paper_id=paper_id, error=str(exc))
            return True
        return result is not False

    async def check_access(self, paper_id: str) -> AccessDecision:
        """Re-reads the subscription and evaluates the access policy without writing anything."""
        state = await self.load()
        in_scope = True
        if state is not None and state.tier_name in PACKAGE_SCOPED_TIERS:
            in_scope = await self._in_package_scope(paper_id)
        decision = evaluate_access(state, paper_id, in_package_scope=in_scope)
        self.locked = bool(state is not None and state.tokens_exhausted)
        if not decision.allowed:
            logger.info(
                "quota_denied",
                user_id=self.user_id,
                paper_id=paper_id,
                reason=decision.reason,
                tier=state.tier_name if state else None,
            )
        return decision

    async def authorize(self, paper_id: str) -> AccessDecision:
        """
        Checks access and, for a free tier user's first turn on this paper,
        records the paper before the chat request is sent.
        """
        for _ in range(self.cas_attempts):
            decision = await self.check_access(paper_id)
            state = self.state
            if not decision.allowed or state is None:
                return decision
            if state.tier_name != "free" or paper_id in state.accessed_paper_ids:
                return decision
            if await self._record_paper_access(state, paper_id):
                return AccessDecision(True, None, state.remaining(), state.token_limit, state.papers_limit)
            logger.warning("quota_paper_counter_conflict", user_id=self.user_id, paper_id=paper_id)
        # Counter kept moving under us; let the turn through and leave reconciliation to refresh().
        logger.error("quota_paper_counter_unrecorded", user_id=self.user_id, paper_id=paper_id)
        return await self.check_access(paper_id)

    async def _record_paper_access(self, state: QuotaState, paper_id: str) -> bool:
        previous_count = state.papers_accessed_count
        new_ids = sorted(state.accessed_paper_ids | {paper_id})
        filters = {
            "user_id": self.user_id,
            "status": "active",
            "papers_accessed_current_period": previous_count,
        }
        if self._subscription_id:
            filters["id"] = self._subscription_id
        try:
            updated = await self.store.update(
                "user_subscriptions",
                filters,
                {
                    "papers_accessed_current_period": previous_count + 1,
                    "accessed_paper_ids": new_ids,
                },
            )
        except DataStoreError as exc:
            logger.error("quota_paper_tracking_failed", user_id=self.user_id, paper_id=paper_id, error=str(exc))
            # Tracking failures do not block the turn.
            return True
        if updated == 0:
            return False
        state.papers_accessed_count = previous_count + 1
        state.accessed_paper_ids = set(new_ids)
        logger.info(
            "quota_paper_recorded",
            user_id=self.user_id,
            paper_id=paper_id,
            papers_accessed=state.papers_accessed_count,
            papers_limit=state.papers_limit,
        )
        return True

    async def refresh(self) -> QuotaState | None:
        """Re-reads the authoritative counters after a response and recomputes the lock flag."""
        try:
            state = await self.load()
        except DataStoreError as exc:
            logger.error("quota_refresh_failed", user_id=self.user_id, error=str(exc))
            return self.state
        self.locked = bool(state is not None and state.tokens_exhausted)
        if state is not None:
            logger.info(
                "quota_refreshed",
                user_id=self.user_id,
                tier=state.tier_name,
                remaining=state.remaining(),
                locked=self.locked,
            )
        return state
