"""
Cost Layer — usage ledger, running spend and the budget oracle.
================================================================
CostLedger
    Append-only list of UsageRecord objects. Every tracked call is priced
    from the rate table (models.MODEL_CONFIGS by default), the running total
    is updated and a CostUpdated event is published.

    The ledger covers the life of the process; periodic (e.g. monthly)
    resets are a host policy and are not modelled here.

CostSummary
    Read-only projection of the ledger grouped by provider, model and feature.

Usage:
    ledger = CostLedger(bus, budget_limit=5.0)
    ledger.track_usage("claude", "claude-sonnet-4-20250514", 1200, 400, "content-analysis")
    if ledger.is_budget_exceeded():
        ...
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Optional

from .events import BudgetWarning, CostUpdated, EventBus
from .models import MODEL_CONFIGS, ModelConfig, UsageRecord, calculate_cost, get_model_config

logger = logging.getLogger("pkm_companion.cost")

DEFAULT_WARN_RATIO: float = 0.9


def _normalize_limit(limit: Optional[float]) -> Optional[float]:
    # 0 / negative limits mean "unlimited", same as an absent one
    if limit is None or limit <= 0:
        return None
    return float(limit)


# ─────────────────────────────────────────────────────────────────────────────
# CostSummary
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CostSummary:
    """
    Aggregate view of the ledger.

    Attributes
    ----------
    total_spend   : USD spent since the ledger was created
    budget_limit  : active ceiling, or None when unlimited
    remaining     : budget_limit - total_spend (floored at 0), None when unlimited
    record_count  : number of tracked calls
    input_tokens  : total prompt tokens
    output_tokens : total completion tokens
    by_provider / by_model / by_feature : USD per group key
    """
    total_spend:   float
    budget_limit:  Optional[float]
    remaining:     Optional[float]
    record_count:  int
    input_tokens:  int
    output_tokens: int
    by_provider:   dict[str, float] = field(default_factory=dict)
    by_model:      dict[str, float] = field(default_factory=dict)
    by_feature:    dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "total_spend": round(self.total_spend, 6),
            "budget_limit": self.budget_limit,
            "remaining": round(self.remaining, 6) if self.remaining is not None else None,
            "record_count": self.record_count,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "by_provider": {k: round(v, 6) for k, v in self.by_provider.items()},
            "by_model": {k: round(v, 6) for k, v in self.by_model.items()},
            "by_feature": {k: round(v, 6) for k, v in self.by_feature.items()},
        }


# ─────────────────────────────────────────────────────────────────────────────
# CostLedger
# ─────────────────────────────────────────────────────────────────────────────

class CostLedger:
    """
    Records usage and answers "how much have we spent / may we spend more".

    Invariant: total spend only ever grows, and only track_usage() grows it.
    A BudgetWarning is published once when spend first reaches
    warn_ratio × budget_limit; changing the limit re-arms it.
    """

    def __init__(
        self,
        bus: EventBus,
        budget_limit: Optional[float] = None,
        rates: Optional[dict[str, ModelConfig]] = None,
        warn_ratio: float = DEFAULT_WARN_RATIO,
    ) -> None:
        self._bus = bus
        self._rates = dict(rates) if rates is not None else dict(MODEL_CONFIGS)
        self._budget_limit = _normalize_limit(budget_limit)
        self._warn_ratio = warn_ratio
        self._records: list[UsageRecord] = []
        self._total_spend: float = 0.0
        self._warned = False

    # ── Recording ────────────────────────────────────────────────────────────

    def track_usage(
        self,
        provider: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        feature: str,
    ) -> UsageRecord:
        """Price one call, append it and publish the new total."""
        if input_tokens < 0 or output_tokens < 0:
            raise ValueError(
                f"token counts must be non-negative (input={input_tokens}, output={output_tokens})"
            )
        if get_model_config(model, self._rates) is None:
            logger.warning("No rate entry for model %r; recording usage at $0", model)

        cost = calculate_cost(model, input_tokens, output_tokens, self._rates)
        record = UsageRecord(
            provider=provider,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=cost,
            feature=feature,
        )
        self._records.append(record)
        self._total_spend += cost
        logger.debug(
            "Tracked %s/%s for %s: in=%d out=%d cost=$%.6f total=$%.6f",
            provider, model, feature, input_tokens, output_tokens, cost, self._total_spend,
        )

        self._bus.publish(CostUpdated(total_spend=self._total_spend,
                                      budget_limit=self._budget_limit))
        self._maybe_warn()
        return record

    def _maybe_warn(self) -> None:
        if self._budget_limit is None or self._warned:
            return
        ratio = self._total_spend / self._budget_limit
        if ratio >= self._warn_ratio:
            self._warned = True
            logger.warning(
                "Budget usage at %.0f%% ($%.4f of $%.2f)",
                ratio * 100, self._total_spend, self._budget_limit,
            )
            self._bus.publish(BudgetWarning(
                total_spend=self._total_spend,
                budget_limit=self._budget_limit,
                ratio=ratio,
            ))

    # ── Budget ───────────────────────────────────────────────────────────────

    @property
    def budget_limit(self) -> Optional[float]:
        return self._budget_limit

    def set_budget_limit(self, limit: Optional[float] = None) -> None:
        self._budget_limit = _normalize_limit(limit)
        self._warned = False
        logger.info("Budget limit set to %s",
                    "unlimited" if self._budget_limit is None else f"${self._budget_limit:.2f}")

    def is_budget_exceeded(self) -> bool:
        return self._budget_limit is not None and self._total_spend >= self._budget_limit

    def remaining_budget(self) -> Optional[float]:
        if self._budget_limit is None:
            return None
        return max(0.0, self._budget_limit - self._total_spend)

    def budget_usage_ratio(self) -> Optional[float]:
        if self._budget_limit is None:
            return None
        return self._total_spend / self._budget_limit

    # ── Query ────────────────────────────────────────────────────────────────

    def get_current_spend(self) -> float:
        return self._total_spend

    @property
    def records(self) -> tuple[UsageRecord, ...]:
        return tuple(self._records)

    def estimate(self, model: str, input_tokens: int, output_tokens: int) -> float:
        """Price a hypothetical call without recording it."""
        return calculate_cost(model, input_tokens, output_tokens, self._rates)

    def summarize(self) -> CostSummary:
        by_provider: dict[str, float] = defaultdict(float)
        by_model: dict[str, float] = defaultdict(float)
        by_feature: dict[str, float] = defaultdict(float)
        input_tokens = output_tokens = 0
        for rec in self._records:
            by_provider[rec.provider] += rec.cost
            by_model[rec.model] += rec.cost
            by_feature[rec.feature] += rec.cost
            input_tokens += rec.input_tokens
            output_tokens += rec.output_tokens
        return CostSummary(
            total_spend=self._total_spend,
            budget_limit=self._budget_limit,
            remaining=self.remaining_budget(),
            record_count=len(self._records),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            by_provider=dict(by_provider),
            by_model=dict(by_model),
            by_feature=dict(by_feature),
        )
