"""
Generation dispatch engine.

Walks the resolved fallback chain one candidate at a time:

    reserve credits -> invoke provider -> deduct on success/pending
                                       -> release and advance on retryable failure
                                       -> release and stop on fatal failure

Candidates are never attempted in parallel. The walk can be interrupted by a
cancel event or a caller deadline, in which case the attempts made so far are
returned with a "cancelled" failure.
"""

import threading
import time
from dataclasses import replace
from typing import Any

from dispatch.catalog import ModelCatalog
from dispatch.chain_resolver import FallbackChainResolver
from dispatch.credit_ledger import CreditLedger, Deducted, InsufficientCredits, Reserved
from dispatch.errors import AccountNotFoundError, InvocationCancelled, ModelNotFoundError
from dispatch.fallback_manager import FallbackManager, FallbackPolicy
from dispatch.provider_invoker import ProviderInvoker
from dispatch.repositories import CredentialStore, GenerationLogRepository, OwnProviderRepository
from dispatch.routing_types import GenerationLogRecord, LedgerEntry, Modality, ModelDescriptor, NextAction, Tier
from dispatch.settings import DispatchSettings
from models.generation_result import AttemptRecord, GenerationError, GenerationResult
from models.outcome import InvocationOutcome, OutcomeKind
from utils.logger import get_logger

logger = get_logger(__name__)


class DispatchEngine:
    def __init__(
        self,
        *,
        catalog: ModelCatalog,
        resolver: FallbackChainResolver,
        ledger: CreditLedger,
        invoker: ProviderInvoker,
        credentials: CredentialStore,
        settings: DispatchSettings | None = None,
        own_providers: OwnProviderRepository | None = None,
        generation_log: GenerationLogRepository | None = None,
        fallback_manager: FallbackManager | None = None,
    ):
        self._catalog = catalog
        self._resolver = resolver
        self._ledger = ledger
        self._invoker = invoker
        self._credentials = credentials
        self._settings = settings or DispatchSettings()
        self._own_providers = own_providers
        self._generation_log = generation_log
        self._fallback = fallback_manager or FallbackManager()
        self._policy = FallbackPolicy(
            skip_unaffordable=self._settings.skip_unaffordable,
            rate_limit_backoff_seconds=self._settings.rate_limit_backoff_seconds,
        )

    @property
    def resolver(self) -> FallbackChainResolver:
        return self._resolver

    @property
    def ledger(self) -> CreditLedger:
        return self._ledger

    def generate(
        self,
        tier: Tier,
        modality: Modality,
        account_id: str,
        payload: dict[str, Any],
        request_id: str,
        timeout_s: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> GenerationResult:
        """
        Dispatch one generation request.

        Args:
            tier: Subscription tier selecting the fallback chain
            modality: text, image, video or audio
            account_id: Credit account to charge
            payload: Provider-agnostic request body (prompt, options, ...)
            request_id: Caller-supplied id, also the idempotency key for the charge.
                An id that was already charged fails with duplicate_request
                before any provider is called.
            timeout_s: Overall deadline for the whole walk
            cancel_event: Set by the caller to abandon the request

        Returns:
            GenerationResult: never raises for provider or credit problems
        """
        tier = Tier(tier)
        modality = Modality(modality)
        started = time.monotonic()
        deadline = started + timeout_s if timeout_s else None
        cancel_event = cancel_event or threading.Event()

        run = _DispatchRun(
            tier=tier,
            modality=modality,
            account_id=account_id,
            request_id=request_id,
            started=started,
        )

        prior = self._ledger.find_usage(account_id, request_id)
        if prior is not None:
            return self._duplicate(run, prior)

        queue: list[tuple[ModelDescriptor, str | None]] = []
        own = self._own_candidate(tier, modality, account_id)
        if own is not None:
            queue.append(own)
        own_count = len(queue)
        queue.extend((model, None) for model in self._resolver.resolve(tier, modality))

        if not queue:
            return self._finish(
                run,
                error=GenerationError(
                    code="no_provider_configured",
                    message=f"No {modality.value} model configured for tier {tier.value}",
                ),
            )

        tier_delay = self._settings.delay_for(tier)

        for index, (model, own_credential) in enumerate(queue):
            remaining = [m for m, _ in queue[index + 1 :]]

            if self._interrupted(cancel_event, deadline):
                return self._cancelled(run)

            if index == own_count and tier_delay > 0:
                logger.info(
                    f"Applying {tier_delay:.0f}s delay for {tier.value} tier",
                    extra={"extra_fields": {"request_id": request_id, "tier": tier.value}},
                )
                if not self._wait(tier_delay, cancel_event, deadline):
                    return self._cancelled(run)

            reservation = self._ledger.check_and_reserve(account_id, model.credit_cost)
            if isinstance(reservation, InsufficientCredits):
                decision = self._fallback.decide_unaffordable(
                    candidate=model, remaining=remaining, policy=self._policy
                )
                run.record(
                    model,
                    "skipped_for_cost",
                    reason=f"requires {reservation.required} credits, {reservation.available} available",
                )
                run.skipped_costs.append(model.credit_cost)
                if decision.action == NextAction.SKIP_FOR_COST:
                    continue
                return self._insufficient(run, reservation.available)

            try:
                outcome = self._attempt(model, own_credential, payload, modality, deadline, cancel_event)
            except InvocationCancelled:
                self._ledger.release(reservation)
                run.record(model, "cancelled", reason="cancelled while provider call was in flight")
                return self._cancelled(run)
            except Exception:
                self._ledger.release(reservation)
                raise

            if outcome.is_failure and self._deadline_passed(deadline):
                self._ledger.release(reservation)
                run.record(model, outcome.kind.value, reason=outcome.reason, latency_ms=outcome.latency_ms)
                return self._cancelled(run)

            decision = self._fallback.decide(outcome=outcome, remaining=remaining, policy=self._policy)
            if decision.action == NextAction.ACCEPT:
                return self._accept(run, model, outcome, reservation)

            self._ledger.release(reservation)
            run.record(model, outcome.kind.value, reason=outcome.reason, latency_ms=outcome.latency_ms)

            if decision.action == NextAction.STOP_FATAL:
                return self._finish(
                    run,
                    error=GenerationError(
                        code="fatal_failure",
                        message=outcome.reason or "Request rejected by provider",
                        details={"provider": model.provider_id, "model": model.model_id},
                    ),
                )

            if decision.backoff_seconds > 0:
                logger.info(
                    f"Rate limit on {model.key}; waiting {decision.backoff_seconds:.0f}s before next candidate",
                    extra={"extra_fields": {"request_id": request_id, "model_key": model.key}},
                )
                if not self._wait(decision.backoff_seconds, cancel_event, deadline):
                    return self._cancelled(run)

        if run.skipped_costs:
            return self._insufficient(run, self._available(account_id))

        return self._finish(
            run,
            error=GenerationError(
                code="all_providers_failed",
                message="All providers failed",
                details={"last_error": run.attempts[-1].reason if run.attempts else None},
            ),
        )

    def poll_job(self, provider_id: str, model_id: str, job_id: str) -> InvocationOutcome:
        """
        Re-check a job returned as pending. Never charges again.

        Raises:
            ModelNotFoundError: the provider/model pair is not in the catalog
        """
        model = self._catalog.find_model(provider_id, model_id)
        if model is None:
            raise ModelNotFoundError(
                f"Unknown model {provider_id}/{model_id}", model_key=f"{provider_id}/{model_id}"
            )

        credential = self._credentials.get_active_credential(provider_id)
        if not credential:
            return InvocationOutcome.retryable(
                provider=provider_id,
                model=model_id,
                code="auth",
                message=f"No active credential for provider {provider_id}",
            )
        timeout_s = self._settings.timeout_for(provider_id, model.modality)
        return self._invoker.poll(model, job_id, credential, timeout_s)

    # ------------------------------------------------------------------
    # Candidate handling
    # ------------------------------------------------------------------

    def _own_candidate(
        self, tier: Tier, modality: Modality, account_id: str
    ) -> tuple[ModelDescriptor, str | None] | None:
        if self._own_providers is None or tier not in self._settings.allow_own_provider_tiers:
            return None
        config = self._own_providers.get_own_provider(account_id, modality)
        if config is None or not config.credential:
            return None
        # An account's own key is never billed
        return replace(config.model, credit_cost=0), config.credential

    def _attempt(
        self,
        model: ModelDescriptor,
        own_credential: str | None,
        payload: dict[str, Any],
        modality: Modality,
        deadline: float | None,
        cancel_event: threading.Event,
    ) -> InvocationOutcome:
        credential = own_credential or self._credentials.get_active_credential(model.provider_id)
        if not credential:
            return InvocationOutcome.retryable(
                provider=model.provider_id,
                model=model.model_id,
                code="auth",
                message=f"No active credential for provider {model.provider_id}",
            )

        timeout_s = self._settings.timeout_for(model.provider_id, modality)
        if deadline is not None:
            timeout_s = max(min(timeout_s, deadline - time.monotonic()), 0.0)
        return self._invoker.invoke(model, payload, credential, timeout_s, cancel_event)

    def _accept(
        self, run: "_DispatchRun", model: ModelDescriptor, outcome: InvocationOutcome, reservation: Reserved
    ) -> GenerationResult:
        try:
            charge = self._ledger.deduct(
                run.account_id,
                model.credit_cost,
                reason=run.modality.value,
                reference_id=run.request_id,
                reservation=reservation,
                description=f"{run.modality.value} generation via {model.key}",
            )
        except Exception:
            self._ledger.release(reservation)
            raise
        run.record(model, outcome.kind.value, latency_ms=outcome.latency_ms)

        if isinstance(charge, Deducted) and charge.duplicate:
            # a concurrent request with the same id won the charge
            logger.warning(
                "Request id already charged by a concurrent request",
                extra={"extra_fields": {"request_id": run.request_id, "model_key": model.key}},
            )
            return self._duplicate(run, charge.entry)

        if isinstance(charge, InsufficientCredits):
            logger.error(
                "Charge failed after provider accepted the request",
                extra={
                    "extra_fields": {
                        "request_id": run.request_id,
                        "account_id": run.account_id,
                        "model_key": model.key,
                        "required": charge.required,
                        "available": charge.available,
                    }
                },
            )
            return self._insufficient(run, charge.available, required=charge.required)

        status = "pending" if outcome.kind == OutcomeKind.PENDING else "success"
        return self._finish(
            run,
            status=status,
            model=model,
            payload=outcome.payload,
            job_id=outcome.job_id,
            eta_seconds=outcome.eta_seconds,
            provider_meta=outcome.provider_meta,
            charge=charge,
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    @staticmethod
    def _deadline_passed(deadline: float | None) -> bool:
        return deadline is not None and time.monotonic() >= deadline

    def _interrupted(self, cancel_event: threading.Event, deadline: float | None) -> bool:
        return cancel_event.is_set() or self._deadline_passed(deadline)

    def _wait(self, seconds: float, cancel_event: threading.Event, deadline: float | None) -> bool:
        """Sleep unless cancelled. False means the request must stop."""
        if deadline is not None and time.monotonic() + seconds >= deadline:
            return False
        return not cancel_event.wait(seconds)

    # ------------------------------------------------------------------
    # Terminal results
    # ------------------------------------------------------------------

    def _available(self, account_id: str) -> int:
        try:
            return self._ledger.balance(account_id).available
        except AccountNotFoundError:
            return 0

    def _cancelled(self, run: "_DispatchRun") -> GenerationResult:
        return self._finish(
            run,
            error=GenerationError(code="cancelled", message="Request cancelled before a provider succeeded"),
        )

    def _duplicate(self, run: "_DispatchRun", prior: LedgerEntry | None) -> GenerationResult:
        details: dict[str, Any] = {}
        if prior is not None:
            details = {
                "credits_charged": -prior.amount,
                "ledger_entry_id": prior.id,
                "charged_at": prior.created_at.isoformat() if prior.created_at else None,
            }
        return self._finish(
            run,
            error=GenerationError(
                code="duplicate_request",
                message=f"Request {run.request_id} was already charged; use a new request_id",
                details=details,
            ),
        )

    def _insufficient(self, run: "_DispatchRun", available: int, required: int | None = None) -> GenerationResult:
        if required is None:
            required = min(run.skipped_costs) if run.skipped_costs else 0
        return self._finish(
            run,
            error=GenerationError(
                code="insufficient_credits",
                message=f"Insufficient credits: {required} required, {available} available",
                details={"required": required, "available": available},
            ),
        )

    def _finish(
        self,
        run: "_DispatchRun",
        *,
        status: str = "failure",
        model: ModelDescriptor | None = None,
        payload: Any = None,
        job_id: str | None = None,
        eta_seconds: int | None = None,
        provider_meta: dict | None = None,
        charge: Deducted | None = None,
        error: GenerationError | None = None,
    ) -> GenerationResult:
        latency_ms = int((time.monotonic() - run.started) * 1000)
        result = GenerationResult(
            request_id=run.request_id,
            status=status,
            modality=run.modality.value,
            tier=run.tier.value,
            payload=payload,
            provider=model.provider_id if model else None,
            model=model.model_id if model else None,
            job_id=job_id,
            eta_seconds=eta_seconds,
            credits_charged=charge.amount if charge else 0,
            balance_after=charge.balance_after if charge else None,
            attempts=list(run.attempts),
            error=error,
            provider_meta=provider_meta or {},
            latency_ms=latency_ms,
        )

        log_fields = {
            "request_id": run.request_id,
            "account_id": run.account_id,
            "tier": run.tier.value,
            "modality": run.modality.value,
            "status": status,
            "model_key": result.provider_used,
            "attempts": len(run.attempts),
            "credits_charged": result.credits_charged,
            "latency_ms": latency_ms,
        }
        if error is None:
            logger.info("Generation dispatched", extra={"extra_fields": log_fields})
        else:
            log_fields["error_code"] = error.code
            logger.warning(f"Generation failed: {error.code}", extra={"extra_fields": log_fields})

        self._record(run, result)
        return result

    def _record(self, run: "_DispatchRun", result: GenerationResult) -> None:
        if self._generation_log is None:
            return
        try:
            self._generation_log.record(
                GenerationLogRecord(
                    account_id=run.account_id,
                    request_id=run.request_id,
                    tier=run.tier,
                    modality=run.modality,
                    status=result.status,
                    model_key=result.provider_used,
                    credit_cost=result.credits_charged,
                    latency_ms=result.latency_ms,
                    attempts=len(result.attempts),
                    error_message=result.error.message if result.error else None,
                    extra={"error_code": result.error.code} if result.error else {},
                )
            )
        except Exception as e:
            # result stands even if the log write fails
            logger.error(
                f"Failed to write generation log: {e}",
                exc_info=True,
                extra={"extra_fields": {"request_id": run.request_id}},
            )


class _DispatchRun:
    """Mutable bookkeeping for one generate() call."""

    def __init__(self, *, tier: Tier, modality: Modality, account_id: str, request_id: str, started: float):
        self.tier = tier
        self.modality = modality
        self.account_id = account_id
        self.request_id = request_id
        self.started = started
        self.attempts: list[AttemptRecord] = []
        self.skipped_costs: list[int] = []

    def record(self, model: ModelDescriptor, status: str, reason: str | None = None, latency_ms: int = 0) -> None:
        attempt = AttemptRecord(
            order=len(self.attempts) + 1,
            provider=model.provider_id,
            model=model.model_id,
            credit_cost=model.credit_cost,
            status=status,
            reason=reason,
            latency_ms=latency_ms,
        )
        self.attempts.append(attempt)
        logger.info(
            f"Candidate {model.key}: {status}",
            extra={
                "extra_fields": {
                    "request_id": self.request_id,
                    "order": attempt.order,
                    "provider": model.provider_id,
                    "model": model.model_id,
                    "credit_cost": model.credit_cost,
                    "status": status,
                    "reason": reason,
                    "latency_ms": latency_ms,
                }
            },
        )
