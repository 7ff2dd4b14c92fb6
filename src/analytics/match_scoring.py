from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import List, Literal, Optional, Sequence, Tuple

MatchDecision = Literal["matched", "ambiguous", "none"]


@dataclass(frozen=True)
class MatchPolicy:
    weight_product: int = 40
    weight_producer: int = 35
    weight_premium: int = 25
    weight_date: int = 10
    premium_tolerance: float = 0.15
    auto_min_score: int = 75
    auto_min_lead: int = 20

    @classmethod
    def from_settings(cls, settings: object) -> "MatchPolicy":
        return cls(
            weight_product=getattr(settings, "match_weight_product", cls.weight_product),
            weight_producer=getattr(settings, "match_weight_producer", cls.weight_producer),
            weight_premium=getattr(settings, "match_weight_premium", cls.weight_premium),
            weight_date=getattr(settings, "match_weight_date", cls.weight_date),
            premium_tolerance=getattr(settings, "match_premium_tolerance", cls.premium_tolerance),
            auto_min_score=getattr(settings, "match_auto_min_score", cls.auto_min_score),
            auto_min_lead=getattr(settings, "match_auto_min_lead", cls.auto_min_lead),
        )


@dataclass(frozen=True)
class CandidateQuote:
    product_type: Optional[str] = None
    producer_code: Optional[str] = None
    premium_cents: Optional[int] = None
    quote_date: Optional[date] = None


@dataclass(frozen=True)
class MatchCandidate:
    household_id: str
    household_key: str
    quotes: Tuple[CandidateQuote, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class IncomingTransaction:
    product_type: Optional[str] = None
    producer_code: Optional[str] = None
    premium_cents: Optional[int] = None
    transaction_date: Optional[date] = None


@dataclass(frozen=True)
class ScoredCandidate:
    household_id: str
    household_key: str
    score: int


@dataclass(frozen=True)
class ScoredMatchResult:
    decision: MatchDecision
    winner: Optional[ScoredCandidate]
    ranked: List[ScoredCandidate]


def _same_text(left: Optional[str], right: Optional[str]) -> bool:
    if not left or not right:
        return False
    return left.strip().lower() == right.strip().lower()


def _premium_within(incoming: Optional[int], candidate: Optional[int], tolerance: float) -> bool:
    if incoming is None or not candidate or candidate <= 0:
        return False
    return abs(incoming - candidate) <= candidate * tolerance


def score_quote(incoming: IncomingTransaction, quote: CandidateQuote, policy: MatchPolicy) -> int:
    score = 0
    if _same_text(incoming.product_type, quote.product_type):
        score += policy.weight_product
    if _same_text(incoming.producer_code, quote.producer_code):
        score += policy.weight_producer
    if _premium_within(incoming.premium_cents, quote.premium_cents, policy.premium_tolerance):
        score += policy.weight_premium
    if (
        incoming.transaction_date is not None
        and quote.quote_date is not None
        and incoming.transaction_date >= quote.quote_date
    ):
        score += policy.weight_date
    return score


def score_candidate(
    incoming: IncomingTransaction, candidate: MatchCandidate, policy: MatchPolicy
) -> int:
    """A household scores as well as its best-matching quote."""
    if not candidate.quotes:
        return 0
    return max(score_quote(incoming, quote, policy) for quote in candidate.quotes)


def pick_scored_match(
    incoming: IncomingTransaction,
    candidates: Sequence[MatchCandidate],
    policy: MatchPolicy,
) -> ScoredMatchResult:
    if not candidates:
        return ScoredMatchResult(decision="none", winner=None, ranked=[])

    ranked = sorted(
        (
            ScoredCandidate(
                household_id=candidate.household_id,
                household_key=candidate.household_key,
                score=score_candidate(incoming, candidate, policy),
            )
            for candidate in candidates
        ),
        key=lambda item: (-item.score, item.household_key, item.household_id),
    )
    top = ranked[0]
    if len(ranked) == 1:
        return ScoredMatchResult(decision="matched", winner=top, ranked=ranked)

    lead = top.score - ranked[1].score
    if top.score >= policy.auto_min_score and lead >= policy.auto_min_lead:
        return ScoredMatchResult(decision="matched", winner=top, ranked=ranked)
    return ScoredMatchResult(decision="ambiguous", winner=top, ranked=ranked)
