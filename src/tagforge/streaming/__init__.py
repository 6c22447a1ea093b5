from tagforge.streaming.coordinator import (
    GenerationHandle,
    GenerationResult,
    GenerationState,
    StreamCoordinator,
)
from tagforge.streaming.errors import (
    GENERATION_FAILED,
    GENERATION_STOPPED,
    GenerationInProgressError,
    ProviderError,
    classify_error,
)

__all__ = [
    "GenerationHandle",
    "GenerationResult",
    "GenerationState",
    "StreamCoordinator",
    "GENERATION_FAILED",
    "GENERATION_STOPPED",
    "GenerationInProgressError",
    "ProviderError",
    "classify_error",
]
