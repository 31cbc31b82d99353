"""Shared utilities for FastAPI routes."""

from collections.abc import Mapping

from fastapi import status

SENSITIVE_HEADERS = {"x-api-key", "authorization"}

FAILURE_STATUS_CODES = {
    "insufficient_credits": status.HTTP_402_PAYMENT_REQUIRED,
    "no_provider_configured": status.HTTP_503_SERVICE_UNAVAILABLE,
    "all_providers_failed": status.HTTP_502_BAD_GATEWAY,
    "fatal_failure": status.HTTP_400_BAD_REQUEST,
    "cancelled": status.HTTP_504_GATEWAY_TIMEOUT,
    "duplicate_request": status.HTTP_409_CONFLICT,
}


def status_code_for_result(result) -> int:
    """HTTP status for a GenerationResult: 200 success, 202 pending, mapped failure codes."""
    if result.is_success:
        return status.HTTP_200_OK
    if result.is_pending:
        return status.HTTP_202_ACCEPTED
    code = result.error.code if result.error else None
    return FAILURE_STATUS_CODES.get(code, status.HTTP_502_BAD_GATEWAY)


def status_code_for_outcome(outcome) -> int:
    """HTTP status for a polled job outcome."""
    if outcome.is_success:
        return status.HTTP_200_OK
    if outcome.is_pending:
        return status.HTTP_202_ACCEPTED
    if outcome.error and outcome.error.code == "bad_request":
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_502_BAD_GATEWAY


def redact_sensitive_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """
    Redact auth-bearing headers before logging.
    """
    redacted: dict[str, str] = {}
    for key, value in headers.items():
        if key.lower() in SENSITIVE_HEADERS and value:
            redacted[key] = "[REDACTED]"
        else:
            redacted[key] = value
    return redacted
