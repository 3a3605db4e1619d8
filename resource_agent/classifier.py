"""Map a failed ExecutionResult to an error category and remediation policy.

The policy table is plain data: adding a category means adding a
``RetryPolicy`` row and a matching rule, never touching the loop.
Rules are checked in order and the first match wins.
"""

from __future__ import annotations

from typing import Callable, NamedTuple

from resource_agent.models import ErrorCategory, ErrorStrategy, ExecutionResult


class RetryPolicy(NamedTuple):
    adaptations: tuple[str, ...]
    max_retries: int
    progressive_simplification: bool


RETRY_POLICIES: dict[ErrorCategory, RetryPolicy] = {
    # Validation payloads are usually self-describing, so they get the most attempts
    ErrorCategory.VALIDATION: RetryPolicy(
        adaptations=(
            "Check that every required field is present in the request body",
            "Verify that field data types match the API schema",
            "Simplify the request by removing optional fields",
            "Check field naming conventions (snake_case vs camelCase)",
        ),
        max_retries=4,
        progressive_simplification=True,
    ),
    ErrorCategory.NOT_FOUND: RetryPolicy(
        adaptations=(
            "Verify the endpoint path is correct",
            "Check that the resource ID exists",
            "Try an alternative endpoint or the resource's search endpoint",
        ),
        max_retries=3,
        progressive_simplification=False,
    ),
    ErrorCategory.AUTHENTICATION: RetryPolicy(
        adaptations=(
            "Check the authentication headers",
            "Verify the user has permission for this resource",
        ),
        max_retries=2,
        progressive_simplification=False,
    ),
    ErrorCategory.NETWORK: RetryPolicy(
        adaptations=(
            "Retry the same call with exponential backoff",
            "Check network connectivity to the API",
        ),
        max_retries=3,
        progressive_simplification=False,
    ),
    ErrorCategory.SERVER: RetryPolicy(
        adaptations=(
            "Retry after a brief delay",
            "Try a simpler request format",
        ),
        max_retries=2,
        progressive_simplification=True,
    ),
}

VALIDATION_STATUSES = frozenset({400, 422})
_CONNECTIVITY_WORDS = ("network", "connection", "connect", "timeout", "timed out")


def is_validation_error(result: ExecutionResult) -> bool:
    return not result.success and result.http_status in VALIDATION_STATUSES


def _is_network_failure(result: ExecutionResult) -> bool:
    if result.network_error:
        return True
    error = (result.error or "").lower()
    return any(word in error for word in _CONNECTIVITY_WORDS)


_RULES: tuple[tuple[ErrorCategory, Callable[[ExecutionResult], bool]], ...] = (
    (ErrorCategory.VALIDATION, is_validation_error),
    (ErrorCategory.NOT_FOUND, lambda r: r.http_status == 404),
    (ErrorCategory.AUTHENTICATION, lambda r: r.http_status in (401, 403)),
    (ErrorCategory.NETWORK, _is_network_failure),
)


def categorize(result: ExecutionResult) -> ErrorCategory:
    for category, matches in _RULES:
        if matches(result):
            return category
    return ErrorCategory.SERVER


def classify_error(result: ExecutionResult) -> ErrorStrategy:
    """Return the ErrorStrategy for *result*.  Pure and deterministic."""
    category = categorize(result)
    policy = RETRY_POLICIES[category]
    return ErrorStrategy(
        category=category,
        adaptations=policy.adaptations,
        max_retries=policy.max_retries,
        progressive_simplification=policy.progressive_simplification,
    )
