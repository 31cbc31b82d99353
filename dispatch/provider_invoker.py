import concurrent.futures
import threading
import time
from typing import Any

from dispatch.errors import InvocationCancelled
from dispatch.routing_types import ModelDescriptor
from models.outcome import InvocationOutcome
from providers.base_provider import BaseProvider
from utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_WORKERS = 16
CANCEL_CHECK_INTERVAL_S = 0.05


class ProviderInvoker:
    """
    Routes a model to its provider adapter and bounds the call in time.

    The adapter runs on a worker thread; the caller waits at most timeout_s
    and, when a cancel event is given, returns as soon as it is set. A call
    abandoned this way keeps running in the background and its result is
    discarded. Abandoned calls still hold a worker until the adapter returns,
    so the invoker counts outstanding calls and warns once new submissions
    have to queue behind them.
    """

    def __init__(self, providers: dict[str, BaseProvider] | None = None, max_workers: int = DEFAULT_MAX_WORKERS):
        self._providers: dict[str, BaseProvider] = dict(providers or {})
        self._max_workers = max_workers
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="provider-call"
        )
        self._outstanding = 0
        self._outstanding_lock = threading.Lock()

    def register(self, provider_id: str, adapter: BaseProvider) -> None:
        self._providers[provider_id] = adapter

    def has_provider(self, provider_id: str) -> bool:
        return provider_id in self._providers

    @property
    def outstanding_calls(self) -> int:
        """Calls submitted and not yet finished, abandoned ones included."""
        with self._outstanding_lock:
            return self._outstanding

    @property
    def queue_depth(self) -> int:
        """Calls waiting for a free worker."""
        return max(0, self.outstanding_calls - self._max_workers)

    def invoke(
        self,
        model: ModelDescriptor,
        payload: dict[str, Any],
        credential: str,
        timeout_s: float,
        cancel_event: threading.Event | None = None,
    ) -> InvocationOutcome:
        """
        Raises:
            InvocationCancelled: cancel_event was set before the call finished
        """
        adapter = self._providers.get(model.provider_id)
        if adapter is None:
            return InvocationOutcome.retryable(
                provider=model.provider_id,
                model=model.model_id,
                code="provider_error",
                message=f"No adapter registered for provider {model.provider_id}",
            )
        return self._run(
            adapter, model, adapter.invoke, (model, payload, credential, timeout_s), timeout_s, cancel_event
        )

    def poll(self, model: ModelDescriptor, job_id: str, credential: str, timeout_s: float) -> InvocationOutcome:
        adapter = self._providers.get(model.provider_id)
        if adapter is None:
            return InvocationOutcome.fatal(
                provider=model.provider_id,
                model=model.model_id,
                message=f"No adapter registered for provider {model.provider_id}",
            )
        return self._run(adapter, model, adapter.poll, (model, job_id, credential, timeout_s), timeout_s, None)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _run(self, adapter, model, fn, args, timeout_s: float, cancel_event) -> InvocationOutcome:
        start_time = time.time()
        deadline = time.monotonic() + timeout_s
        future = self._submit(model, fn, args)

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                future.cancel()
                return InvocationOutcome.retryable(
                    provider=model.provider_id,
                    model=model.model_id,
                    code="timeout",
                    message=f"Provider call exceeded {timeout_s:.1f}s",
                    latency_ms=int((time.time() - start_time) * 1000),
                )

            wait_s = min(remaining, CANCEL_CHECK_INTERVAL_S) if cancel_event is not None else remaining
            try:
                return future.result(timeout=wait_s)
            except concurrent.futures.TimeoutError as e:
                if future.done():
                    # The adapter itself raised a TimeoutError
                    return adapter._exception_outcome(model, e, start_time)
                if cancel_event is not None and cancel_event.is_set():
                    future.cancel()
                    raise InvocationCancelled(f"Cancelled during {model.key}")
            except Exception as e:
                logger.error(
                    f"Adapter raised for {model.key}",
                    exc_info=True,
                    extra={"extra_fields": {"provider": model.provider_id, "model": model.model_id}},
                )
                return adapter._exception_outcome(model, e, start_time)

    def _submit(self, model: ModelDescriptor, fn, args) -> concurrent.futures.Future:
        with self._outstanding_lock:
            self._outstanding += 1
            outstanding = self._outstanding
        if outstanding > self._max_workers:
            logger.warning(
                f"Provider pool saturated; {model.key} queued",
                extra={
                    "extra_fields": {
                        "provider": model.provider_id,
                        "model": model.model_id,
                        "outstanding_calls": outstanding,
                        "queue_depth": outstanding - self._max_workers,
                        "max_workers": self._max_workers,
                    }
                },
            )
        try:
            future = self._executor.submit(fn, *args)
        except RuntimeError:
            # Executor already shut down
            with self._outstanding_lock:
                self._outstanding -= 1
            raise
        # Fires on completion and on cancellation of a call that never started
        future.add_done_callback(self._call_finished)
        return future

    def _call_finished(self, future: concurrent.futures.Future) -> None:
        with self._outstanding_lock:
            self._outstanding -= 1
