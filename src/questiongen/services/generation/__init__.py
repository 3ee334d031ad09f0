"""Init file for generation services."""

from .models import GenerationFailure, GenerationOptions, GenerationRequest, GenerationSuccess
from .orchestrator import GenerationOrchestrator, generate, stream_generation_progress


__all__ = [
    "GenerationFailure",
    "GenerationOptions",
    "GenerationOrchestrator",
    "GenerationRequest",
    "GenerationSuccess",
    "generate",
    "stream_generation_progress",
]
