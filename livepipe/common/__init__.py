"""
LivePipe Common Module

Shared infrastructure for the intent pipeline.
"""

from .config import ConfigStore, PipeConfig, ConfigChangeEvent
from .errors import (
    LivePipeError,
    CaptureError,
    ClassificationError,
    ConfigValidationError,
    ProviderError,
    ReviewError,
    DeliveryError,
)
from .llm_client import LLMClient
