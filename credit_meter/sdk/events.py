"""
Context distillation into structured life events.

Turns raw notes, transcripts and sensor readings into ``LifeEvent`` records
using a pluggable classifier, metered and cached by input fingerprint.
"""

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

from credit_meter.core.classifier import (
    INPUT_KINDS,
    ActionItem,
    Entity,
    HeuristicClassifier,
    Sentiment,
)
from credit_meter.core.fingerprint import distillation_fingerprint
from credit_meter.core.pricing import (
    DEFAULT_SCHEDULE,
    DISTILLATION_OPERATION,
    PIPELINE_COMPLEXITIES,
    CreditSchedule,
)
from credit_meter.core.runner import MeteredOperationRunner, OperationContext

from .assets import timestamped_id

logger = structlog.get_logger(__name__)

# Placeholder until a real model reports its own confidence
HEURISTIC_CONFIDENCE = 0.85


@dataclass(frozen=True)
class DistillationRequest:
    raw_text: str
    input_kind: str
    actor_id: Optional[str] = None
    spatial_hint: Optional[str] = None
    occurred_at: Optional[str] = None
    complexity: str = "standard"


@dataclass
class LifeEvent:
    """Structured record distilled from one raw input."""
    id: str
    category: str
    title: str
    description: str
    occurred_at: str
    processed_at: str
    entities: List[Entity]
    sentiment: Sentiment
    tags: List[str]
    source_fingerprint: str
    confidence: float
    input_metadata: Dict[str, Any]
    action_items: List[ActionItem] = field(default_factory=list)
    spatial_context: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LifeEvent":
        return cls(
            id=data["id"],
            category=data["category"],
            title=data["title"],
            description=data["description"],
            occurred_at=data["occurred_at"],
            processed_at=data["processed_at"],
            entities=[Entity(**entity) for entity in data.get("entities", [])],
            sentiment=Sentiment(**data["sentiment"]),
            tags=list(data.get("tags", [])),
            source_fingerprint=data["source_fingerprint"],
            confidence=data["confidence"],
            input_metadata=dict(data.get("input_metadata", {})),
            action_items=[ActionItem(**item) for item in data.get("action_items") or []],
            spatial_context=data.get("spatial_context"),
        )


@dataclass(frozen=True)
class DistillationResponse:
    from_cache: bool
    event: LifeEvent
    credits_used: int
    elapsed_ms: int


def new_event_id() -> str:
    return timestamped_id("evt")


def actor_scope(actor_id: str) -> str:
    """Scope holding an actor's copy of their distilled events."""
    return f"actors/{actor_id}/life_events"


class EventService:
    """Entry point for metered context distillation."""

    def __init__(
        self,
        runner: MeteredOperationRunner,
        classifier: Any = None,
        schedule: CreditSchedule = DEFAULT_SCHEDULE,
    ):
        self.runner = runner
        self.classifier = classifier or HeuristicClassifier()
        self.schedule = schedule

    def distill(self, request: DistillationRequest) -> DistillationResponse:
        """Distill ``raw_text`` into a LifeEvent, reusing a cached one if possible.

        The cache key covers only the text and its input kind, so the same
        note distilled at a different complexity or by another actor is a
        cache hit.

        Raises:
            ValueError: If the request is incomplete or uses an unknown
                input kind or complexity
            InsufficientCreditsError: If the monthly allowance can't cover it
            GenerationError: If the pipeline fails
        """
        self._validate(request)
        key = distillation_fingerprint(request.raw_text, request.input_kind)
        logger.info(
            "distillation_requested",
            input_kind=request.input_kind,
            complexity=request.complexity,
            input_length=len(request.raw_text),
            fingerprint=key,
        )

        context = OperationContext(
            feature_id=f"distillation_{request.complexity}",
            actor_id=request.actor_id,
            scope=actor_scope(request.actor_id) if request.actor_id else None,
            variant=request.complexity,
            fingerprint=key,
            params={"request": request, "fingerprint": key},
            metadata={"input_kind": request.input_kind},
        )
        outcome = self.runner.execute(
            DISTILLATION_OPERATION,
            {"input_kind": request.input_kind, "raw_text": request.raw_text},
            self._cost,
            self._generate,
            context,
            usage_metadata_fn=lambda result: {
                "category": result["category"],
                "confidence": result["confidence"],
            },
        )
        return DistillationResponse(
            from_cache=outcome.from_cache,
            event=LifeEvent.from_dict(outcome.result),
            credits_used=outcome.credits_used,
            elapsed_ms=outcome.elapsed_ms,
        )

    def _cost(self, context: OperationContext) -> int:
        return self.schedule.distillation_cost(context.params["request"].complexity)

    def _generate(self, context: OperationContext) -> Dict[str, Any]:
        started = time.monotonic()
        request: DistillationRequest = context.params["request"]
        text = request.raw_text
        classifier = self.classifier

        category = classifier.classify(text, request.input_kind)
        entities = classifier.extract_entities(text)
        now = datetime.now(timezone.utc).isoformat()

        event = LifeEvent(
            id=new_event_id(),
            category=category,
            title=classifier.generate_title(text),
            description=classifier.generate_description(text),
            occurred_at=request.occurred_at or now,
            processed_at=now,
            entities=entities,
            sentiment=classifier.analyze_sentiment(text),
            action_items=classifier.extract_action_items(text),
            tags=classifier.generate_tags(text, category, entities),
            source_fingerprint=context.params["fingerprint"],
            confidence=HEURISTIC_CONFIDENCE,
            spatial_context={"location_name": request.spatial_hint} if request.spatial_hint else None,
            input_metadata={
                "input_kind": request.input_kind,
                "character_count": len(text),
                "processing_time_ms": 0,
            },
        )
        event.input_metadata["processing_time_ms"] = int((time.monotonic() - started) * 1000)
        logger.info(
            "distillation_complete",
            event_id=event.id,
            category=event.category,
            confidence=event.confidence,
        )
        return event.to_dict()

    @staticmethod
    def _validate(request: DistillationRequest) -> None:
        if not request.raw_text or not request.input_kind:
            raise ValueError("Missing required fields: raw_text and input_kind")
        if request.input_kind not in INPUT_KINDS:
            raise ValueError(
                f"Unsupported input kind: {request.input_kind} (expected one of {list(INPUT_KINDS)})"
            )
        if request.complexity not in PIPELINE_COMPLEXITIES:
            raise ValueError(
                f"Unsupported complexity: {request.complexity} "
                f"(expected one of {list(PIPELINE_COMPLEXITIES)})"
            )
