from __future__ import annotations


class SynthesisError(RuntimeError):
    """
    Base class for every failure the orchestrator knows how to classify.

    `kind` is persisted into JobRecord.error_kind so callers can tell a provider
    failure from a local one without parsing messages.
    """

    kind = "internal"


class ValidationError(SynthesisError, ValueError):
    kind = "validation"


class InvalidTransitionError(ValidationError):
    kind = "invalid_transition"

    def __init__(self, job_id: str, current: str, target: str) -> None:
        super().__init__(f"Job {job_id}: illegal state transition {current} -> {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class RateLimitError(SynthesisError):
    kind = "rate_limit"


class ProviderOperationError(SynthesisError):
    kind = "provider"


class SynthesisTimeoutError(SynthesisError, TimeoutError):
    kind = "timeout"


class DownloadError(SynthesisError):
    kind = "download"


class TranscodeError(SynthesisError):
    kind = "transcode"


class PersistenceError(SynthesisError):
    kind = "persistence"


class JobNotFoundError(SynthesisError, LookupError):
    kind = "not_found"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


def error_kind(ex: BaseException) -> str:
    if isinstance(ex, SynthesisError):
        return str(ex.kind)
    if isinstance(ex, TimeoutError):
        return SynthesisTimeoutError.kind
    return SynthesisError.kind


def error_message(ex: BaseException) -> str:
    msg = str(ex).strip()
    return msg or type(ex).__name__
