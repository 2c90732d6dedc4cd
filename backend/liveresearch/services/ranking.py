from __future__ import annotations

import itertools
import logging
import math
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Generic, Optional, Protocol, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
T_contra = TypeVar("T_contra", contravariant=True)

ProgressCallback = Callable[[str], Awaitable[None]]


class Vote(str, Enum):
    """Comparator verdict for one pair."""

    FIRST = "First"
    SECOND = "Second"
    NEITHER = "Neither"

    @classmethod
    def parse(cls, raw: str) -> "Vote":
        """Map free-form model output onto a verdict; anything unclear is neutral."""

        text = (raw or "").strip().strip(".\"'").lower()
        if text in {"first", "one", "1", "item one", "query one", "result one"}:
            return cls.FIRST
        if text in {"second", "two", "2", "item two", "query two", "result two"}:
            return cls.SECOND
        return cls.NEITHER


class Comparator(Protocol[T_contra]):
    """Judge deciding which of two items is more relevant for a context."""

    async def compare(self, first: T_contra, second: T_contra, context: str) -> Vote:
        """Return the verdict for the pair."""


@dataclass
class RankingOutcome(Generic[T]):
    """Ranked items plus the bookkeeping of the tournament that produced them."""

    items: list[T]
    comparisons: int = 0
    neutral: int = 0
    failures: int = 0
    ratings: list[float] = field(default_factory=list)
    converged: bool = False


class PairwiseRanker:
    """Tournament ranking from a bounded number of pairwise comparisons.

    Every unordered pair is compared at most once, in shuffled order. Items are
    ordered by net wins (wins minus losses), ties keep insertion order. An
    Elo rating is tracked alongside as a cache of the outcomes.
    """

    INITIAL_RATING = 1000.0
    K_FACTOR = 32.0

    def __init__(
        self,
        rng: Optional[random.Random] = None,
        convergence_window: int = 0,
        progress_every: int = 5,
    ) -> None:
        self._rng = rng or random.Random()
        self._convergence_window = max(convergence_window, 0)
        self._progress_every = max(progress_every, 1)

    async def rank(
        self,
        items: Sequence[T],
        comparator: Comparator[T],
        context: str,
        comparison_budget: int,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RankingOutcome[T]:
        """Rank ``items`` best first using at most ``comparison_budget`` votes."""

        count = len(items)
        if count < 2 or comparison_budget <= 0:
            return RankingOutcome(items=list(items), ratings=[self.INITIAL_RATING] * count)

        pairs = list(itertools.combinations(range(count), 2))
        self._rng.shuffle(pairs)
        pairs = pairs[:comparison_budget]

        net = [0] * count
        ratings = [self.INITIAL_RATING] * count
        outcome: RankingOutcome[T] = RankingOutcome(items=list(items))
        order = list(range(count))
        stable_for = 0

        for index, (left, right) in enumerate(pairs, start=1):
            vote = await self._vote(comparator, items[left], items[right], context, outcome)
            if vote == Vote.FIRST:
                self._record(net, ratings, winner=left, loser=right)
            elif vote == Vote.SECOND:
                self._record(net, ratings, winner=right, loser=left)

            if on_progress and (index % self._progress_every == 0 or index == len(pairs)):
                await on_progress(f"Ranking {index}/{len(pairs)}")

            if self._convergence_window:
                new_order = self._ordering(net)
                stable_for = stable_for + 1 if new_order == order else 0
                order = new_order
                if stable_for >= self._convergence_window:
                    outcome.converged = True
                    logger.debug("Ranking converged after %s comparisons", index)
                    break

        final_order = self._ordering(net)
        outcome.items = [items[position] for position in final_order]
        outcome.ratings = [ratings[position] for position in final_order]
        return outcome

    @staticmethod
    def _ordering(net: list[int]) -> list[int]:
        return sorted(range(len(net)), key=lambda position: (-net[position], position))

    async def _vote(
        self,
        comparator: Comparator[T],
        first: T,
        second: T,
        context: str,
        outcome: RankingOutcome[T],
    ) -> Vote:
        try:
            vote = await comparator.compare(first, second, context)
        except Exception as exc:  # noqa: BLE001
            outcome.failures += 1
            logger.warning("Comparator failed, treating pair as neutral: %s", exc)
            return Vote.NEITHER
        outcome.comparisons += 1
        if vote not in (Vote.FIRST, Vote.SECOND):
            outcome.neutral += 1
            return Vote.NEITHER
        return vote

    def _record(self, net: list[int], ratings: list[float], winner: int, loser: int) -> None:
        net[winner] += 1
        net[loser] -= 1
        expected = 1.0 / (1.0 + 10 ** ((ratings[loser] - ratings[winner]) / 400.0))
        delta = self.K_FACTOR * (1.0 - expected)
        ratings[winner] += delta
        ratings[loser] -= delta


def select_top_fraction(items: Sequence[T], fraction: float) -> list[T]:
    """Keep the leading ``floor(len(items) * fraction)`` items."""

    if fraction <= 0 or not items:
        return []
    keep = math.floor(len(items) * min(fraction, 1.0) + 1e-9)
    return list(items[:keep])
