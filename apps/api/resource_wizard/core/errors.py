from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Error codes shared by the wizard services"""

    CONTENT_FAILED = "CONTENT_FAILED"  # content generation failed
    CONTENT_UNSUPPORTED = "CONTENT_UNSUPPORTED"  # no generator for this resource kind
    LLM_TIMEOUT = "LLM_TIMEOUT"
    LLM_JSON_INVALID = "LLM_JSON_INVALID"
    DETECTION_FAILED = "DETECTION_FAILED"  # character create/link failed
    IMAGE_TIMEOUT = "IMAGE_TIMEOUT"
    IMAGE_RATE_LIMIT = "IMAGE_RATE_LIMIT"
    IMAGE_FAILED = "IMAGE_FAILED"
    DB_WRITE_FAILED = "DB_WRITE_FAILED"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    BATCH_IN_PROGRESS = "BATCH_IN_PROGRESS"
    UNKNOWN = "UNKNOWN"


# Retryable at the provider call level
RETRYABLE_ERRORS = {
    ErrorCode.LLM_TIMEOUT,
    ErrorCode.LLM_JSON_INVALID,
    ErrorCode.IMAGE_TIMEOUT,
    ErrorCode.IMAGE_RATE_LIMIT,
    ErrorCode.IMAGE_FAILED,
}

# Backoff (seconds)
BACKOFF_SECONDS = {
    ErrorCode.LLM_TIMEOUT: [2, 5],
    ErrorCode.LLM_JSON_INVALID: [2, 5],
    ErrorCode.IMAGE_TIMEOUT: [2, 5, 12],
    ErrorCode.IMAGE_RATE_LIMIT: [5, 10, 20],
    ErrorCode.IMAGE_FAILED: [2, 5, 12],
}


class WizardError(Exception):
    """Base error for the wizard services"""

    def __init__(self, code: ErrorCode, message: str, details: Optional[dict] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self):
        return f"[{self.code.value}] {self.message}"


class ContentGenerationError(WizardError):
    """Content generation failed for a resource kind"""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.CONTENT_FAILED):
        super().__init__(code=code, message=message)


class LLMError(WizardError):
    """LLM provider error"""

    def __init__(self, code: ErrorCode, message: str, raw_output: str = None):
        super().__init__(code=code, message=message, details={"raw_output": raw_output})


class CharacterDetectionError(WizardError):
    def __init__(self, message: str):
        super().__init__(code=ErrorCode.DETECTION_FAILED, message=message)


class ImageError(WizardError):
    """Image generation error"""

    def __init__(self, code: ErrorCode, message: str, asset_key: str = None):
        super().__init__(code=code, message=message, details={"asset_key": asset_key})


class DraftSaveError(WizardError):
    """Draft persistence failed. Never swallowed."""

    def __init__(self, message: str):
        super().__init__(code=ErrorCode.DB_WRITE_FAILED, message=message)


class InvalidTransitionError(WizardError):
    """Job status change outside the allowed lifecycle"""

    def __init__(self, asset_key: str, current: str, requested: str):
        super().__init__(
            code=ErrorCode.INVALID_TRANSITION,
            message=f"Job {asset_key} cannot move from {current} to {requested}",
            details={"asset_key": asset_key, "from": current, "to": requested},
        )


class BatchInProgressError(WizardError):
    def __init__(self):
        super().__init__(
            code=ErrorCode.BATCH_IN_PROGRESS,
            message="An image generation run is already in progress",
        )


def is_retryable(error: WizardError) -> bool:
    """Whether a provider call may be retried"""
    return error.code in RETRYABLE_ERRORS


def get_backoff(error_code: ErrorCode, attempt: int) -> int:
    """Backoff seconds for the given attempt"""
    backoffs = BACKOFF_SECONDS.get(error_code, [2])
    return backoffs[min(attempt, len(backoffs) - 1)]
