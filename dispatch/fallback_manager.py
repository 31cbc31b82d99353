from dataclasses import dataclass

from dispatch.routing_types import FallbackDecision, ModelDescriptor, NextAction
from models.outcome import InvocationOutcome, OutcomeKind


@dataclass(frozen=True)
class FallbackPolicy:
    skip_unaffordable: bool = True
    rate_limit_backoff_seconds: float = 5.0


class FallbackManager:
    """
    Decides what the engine does after each candidate.
    """

    def decide(
        self, *, outcome: InvocationOutcome, remaining: list[ModelDescriptor], policy: FallbackPolicy
    ) -> FallbackDecision:
        if outcome.kind in (OutcomeKind.SUCCESS, OutcomeKind.PENDING):
            return FallbackDecision(action=NextAction.ACCEPT, reason=outcome.kind.value)

        if outcome.kind == OutcomeKind.FATAL_FAILURE:
            return FallbackDecision(action=NextAction.STOP_FATAL, reason=outcome.reason or "fatal_failure")

        backoff = 0.0
        if outcome.error and outcome.error.code == "rate_limit" and remaining:
            backoff = policy.rate_limit_backoff_seconds
        return FallbackDecision(
            action=NextAction.ADVANCE,
            reason=outcome.reason or "retryable_failure",
            backoff_seconds=backoff,
        )

    def decide_unaffordable(
        self, *, candidate: ModelDescriptor, remaining: list[ModelDescriptor], policy: FallbackPolicy
    ) -> FallbackDecision:
        """
        Skip an unaffordable candidate only while a strictly cheaper one is
        still ahead in the chain.
        """
        if policy.skip_unaffordable and any(m.credit_cost < candidate.credit_cost for m in remaining):
            return FallbackDecision(action=NextAction.SKIP_FOR_COST, reason="insufficient_credits")
        return FallbackDecision(action=NextAction.STOP_INSUFFICIENT, reason="insufficient_credits")
