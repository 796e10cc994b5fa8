"""Typed errors raised by the letter lifecycle engine."""

from __future__ import annotations

from typing import Optional


class LetterEngineError(Exception):
    """Base class; `code` is stable and safe to show to API clients."""

    code = "letter_engine_error"
    http_status = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidTransitionError(LetterEngineError):
    """Requested status change is not in the transition table."""

    code = "invalid_transition"
    http_status = 409

    def __init__(self, from_status: str, to_status: str, message: Optional[str] = None):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message or f"Invalid transition: {from_status} -> {to_status}.")


class ResubmissionPayloadError(InvalidTransitionError):
    code = "resubmission_payload_required"

    def __init__(self):
        super().__init__(
            "rejected",
            "generating",
            "Resubmitting a rejected letter requires fresh intake data.",
        )


class StaleStateError(LetterEngineError):
    """The stored status no longer matches what the caller expected."""

    code = "stale_state"
    http_status = 409

    def __init__(self, letter_id: str, expected_status: str, actual_status: str):
        self.letter_id = letter_id
        self.expected_status = expected_status
        self.actual_status = actual_status
        super().__init__(
            f"Letter {letter_id} is {actual_status}, expected {expected_status}. Reload and retry."
        )


class InsufficientAllowanceError(LetterEngineError):
    code = "insufficient_allowance"
    http_status = 402

    def __init__(self, subscriber_id: str, remaining: int = 0):
        self.subscriber_id = subscriber_id
        self.remaining = remaining
        super().__init__(
            "No letter credits remaining and the free letter has been used. "
            "Upgrade or renew your plan to continue."
        )


class GenerationError(LetterEngineError):
    """Draft generation failed; the letter is failed and its allowance released."""

    code = "generation_failed"
    http_status = 502


class GenerationTimeoutError(GenerationError):
    """Draft generation exceeded its time limit."""

    code = "generation_timeout"
    http_status = 504


class ConcurrencyClaimLostError(LetterEngineError):
    code = "claim_lost"
    http_status = 409

    def __init__(self, letter_id: str):
        self.letter_id = letter_id
        super().__init__(f"Letter {letter_id} was claimed by another review session.")


class LetterNotFoundError(LetterEngineError):
    code = "letter_not_found"
    http_status = 404

    def __init__(self, letter_id: str):
        self.letter_id = letter_id
        super().__init__(f"Letter {letter_id} not found.")


class PermissionDeniedError(LetterEngineError):
    code = "permission_denied"
    http_status = 403


class ConflictRetryExhaustedError(LetterEngineError):
    """Internal conflicts kept recurring; the client should simply try again."""

    code = "try_again"
    http_status = 409

    def __init__(self, operation: str, attempts: int):
        self.operation = operation
        self.attempts = attempts
        super().__init__("The letter was updated concurrently. Please try again.")
