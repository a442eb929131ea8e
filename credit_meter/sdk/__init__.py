"""
SDK for the credit meter.

Provides the metered entry points: asset generation, context distillation
and usage summaries.
"""

from .assets import AssetRequest, AssetResponse, AssetService, PlaceholderImageGenerator
from .context import MeterContext, build_context
from .events import DistillationRequest, DistillationResponse, EventService, LifeEvent
from .openai_client import OpenAIImageGenerator

__all__ = [
    "AssetRequest",
    "AssetResponse",
    "AssetService",
    "DistillationRequest",
    "DistillationResponse",
    "EventService",
    "LifeEvent",
    "MeterContext",
    "OpenAIImageGenerator",
    "PlaceholderImageGenerator",
    "build_context",
]
