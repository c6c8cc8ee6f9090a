"""
Error taxonomy shared by the facade, the use cases and the job queue.

Configuration problems at the facade are reported as unsuccessful
ProviderResponse objects, not raised; these classes cover the cases that
must abort a call or be classified by the scheduler.
"""
from __future__ import annotations


class AIError(Exception):
    """Base class for failures raised while talking to a model."""


class ConfigurationError(AIError):
    """Settings or environment values that cannot be used."""


class BudgetExceededError(AIError):
    """
    Raised by AIService before any provider call when cumulative spend has
    reached the configured budget limit.

    Attributes
    ----------
    current_spend : float
    budget_limit  : float
    """
    def __init__(self, message: str, current_spend: float, budget_limit: float):
        self.current_spend = current_spend
        self.budget_limit = budget_limit
        super().__init__(message)


class ContentTooLongError(AIError):
    def __init__(self, estimated_tokens: int, limit: int):
        self.estimated_tokens = estimated_tokens
        self.limit = limit
        super().__init__(
            f"Content too long ({estimated_tokens} estimated tokens, limit {limit}). "
            "Please provide shorter content."
        )


class InvalidResponseError(AIError):
    """The model answered, but not with something we can parse."""
