"""
Error taxonomy for the intent pipeline.

Every stage failure is recoverable except a config that cannot be loaded at
startup. Stages raise these; the runner decides how each one is reported.
"""

from typing import List, Optional


class LivePipeError(Exception):
    """Base class for pipeline errors"""
    pass


class CaptureError(LivePipeError):
    """Capture source unreachable or returned an unusable response."""
    pass


class ClassificationError(LivePipeError):
    """Local inference failed or returned output that could not be parsed."""
    pass


class ConfigValidationError(LivePipeError):
    """pipe.json failed to parse or validate. Carries every issue found."""

    def __init__(self, issues: List[str]):
        self.issues = list(issues)
        lines = ["pipe.json validation failed"] + [f"- {issue}" for issue in self.issues]
        super().__init__("\n".join(lines))


class ProviderError(LivePipeError):
    """Inference provider call failed.

    reason is one of: network_error, timeout, rate_limited, auth_failed,
    http_error, unavailable.
    """

    def __init__(
        self,
        message: str,
        provider: str = "",
        reason: str = "http_error",
        status: Optional[int] = None,
        response_text: str = "",
    ):
        super().__init__(message)
        self.provider = provider
        self.reason = reason
        self.status = status
        self.response_text = response_text


class ReviewError(LivePipeError):
    """Review gate failure, tagged with the stage that failed."""

    def __init__(self, stage: int, reason: str, snippet: str = "", message: str = ""):
        self.stage = stage
        self.reason = reason
        self.snippet = snippet[:300]
        text = message or f"review stage {stage} failed ({reason})"
        if self.snippet:
            text += f": {self.snippet}"
        super().__init__(text)


class DeliveryError(LivePipeError):
    """A single notification/sync channel failed."""

    def __init__(self, channel: str, message: str):
        self.channel = channel
        super().__init__(f"{channel} {message}")
