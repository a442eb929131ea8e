"""
Visual asset generation.

Builds a styled image prompt from the asset kind and caller context, then
runs it through the metered runner so identical prompts at the same size
are generated (and billed) only once.
"""

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import structlog

from credit_meter.core.fingerprint import asset_fingerprint
from credit_meter.core.pricing import DEFAULT_SCHEDULE, IMAGE_OPERATION, IMAGE_SIZES, CreditSchedule
from credit_meter.core.runner import MeteredOperationRunner, OperationContext

logger = structlog.get_logger(__name__)

SIZE_DIMENSIONS = {
    "small": (256, 256),
    "medium": (512, 512),
    "large": (1024, 1024),
}

ASSET_PROMPTS = {
    "badge": "circular achievement badge with sacred geometry border",
    "terrain_tile": "isometric terrain tile with subtle texture",
    "avatar": "minimalist avatar silhouette with aura glow",
    "icon": "simple iconographic symbol with clean lines",
    "background": "atmospheric background with depth layers",
    "orb": "luminous orb with inner light and geometric patterns",
}


@dataclass(frozen=True)
class Aesthetic:
    """House visual style appended to every prompt."""
    style: Tuple[str, ...] = (
        "minimalist",
        "techno-organic",
        "sacred geometry",
        "clean vector lines",
        "subtle glow effects",
    )
    primary_gold: str = "#D4AF37"
    deep_teal: str = "#134E5E"
    dark_slate: str = "#1A1A2E"
    accents: Tuple[str, ...] = (
        "geometric gold accents",
        "sacred geometry patterns",
        "soft golden glow",
        "minimalist linework",
    )
    quality: str = "high quality, digital art, clean edges, no text"


DEFAULT_AESTHETIC = Aesthetic()


@dataclass(frozen=True)
class AssetRequest:
    """Request to generate (or fetch) one visual asset."""
    asset_kind: str
    context_text: str
    size: str = "medium"
    actor_id: Optional[str] = None
    style_modifiers: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class AssetResponse:
    from_cache: bool
    asset_location: str
    asset_id: str
    credits_used: int
    prompt_used: str
    generated_at: str


class PlaceholderImageGenerator:
    """Returns the storage location an image would be uploaded to.

    Stands in for a real image backend; nothing is rendered.
    """

    def __init__(self, bucket: str = "credit-meter-assets"):
        self.bucket = bucket

    def generate(self, prompt: str, size: str, asset_id: str) -> str:
        width, height = SIZE_DIMENSIONS[size]
        logger.info(
            "image_generation_placeholder",
            asset_id=asset_id,
            width=width,
            height=height,
            prompt_length=len(prompt),
        )
        return f"https://storage.googleapis.com/{self.bucket}/generated_assets/{asset_id}.png"


def build_prompt(
    asset_kind: str,
    context_text: str,
    modifiers: Tuple[str, ...] = (),
    aesthetic: Aesthetic = DEFAULT_AESTHETIC,
) -> str:
    """Compose the full styled prompt for an asset."""
    parts = [
        ASSET_PROMPTS[asset_kind],
        context_text,
        f"Style: {', '.join(aesthetic.style)}",
        (
            f"Colors: gold accents ({aesthetic.primary_gold}), "
            f"deep teal background ({aesthetic.deep_teal}), "
            f"dark slate ({aesthetic.dark_slate})"
        ),
        ", ".join(aesthetic.accents),
        aesthetic.quality,
    ]
    if modifiers:
        parts.append(", ".join(modifiers))
    return ". ".join(parts)


def timestamped_id(prefix: str) -> str:
    """``<prefix>_<base36 millis>_<8 hex chars>``."""
    return f"{prefix}_{base36(int(time.time() * 1000))}_{secrets.token_hex(4)}"


def new_asset_id(asset_kind: str) -> str:
    return timestamped_id(asset_kind)


def base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if number == 0:
        return "0"
    out = ""
    while number:
        number, remainder = divmod(number, 36)
        out = digits[remainder] + out
    return out


class AssetService:
    """Entry point for metered visual asset generation."""

    def __init__(
        self,
        runner: MeteredOperationRunner,
        generator: Any = None,
        schedule: CreditSchedule = DEFAULT_SCHEDULE,
        aesthetic: Aesthetic = DEFAULT_AESTHETIC,
    ):
        self.runner = runner
        self.generator = generator or PlaceholderImageGenerator()
        self.schedule = schedule
        self.aesthetic = aesthetic

    def generate_asset(self, request: AssetRequest) -> AssetResponse:
        """Generate an asset, or return the cached one for the same prompt and size.

        Raises:
            ValueError: If the request is incomplete or names an unknown
                kind or size
            InsufficientCreditsError: If the monthly allowance can't cover it
            GenerationError: If the image backend fails
        """
        self._validate(request)
        prompt = build_prompt(
            request.asset_kind, request.context_text, tuple(request.style_modifiers), self.aesthetic
        )
        key = asset_fingerprint(prompt, request.size)
        logger.info(
            "asset_generation_requested",
            asset_kind=request.asset_kind,
            size=request.size,
            fingerprint=key,
        )

        context = OperationContext(
            feature_id=f"{request.asset_kind}_generation",
            actor_id=request.actor_id,
            variant=request.size,
            fingerprint=key,
            params={"asset_kind": request.asset_kind, "size": request.size, "prompt": prompt},
            metadata={"size": request.size},
        )
        outcome = self.runner.execute(
            IMAGE_OPERATION,
            {"prompt": prompt, "size": request.size},
            self._cost,
            self._generate,
            context,
            usage_metadata_fn=lambda result: {"asset_id": result["asset_id"]},
        )
        return AssetResponse(
            from_cache=outcome.from_cache,
            asset_location=outcome.result["asset_location"],
            asset_id=outcome.result["asset_id"],
            credits_used=outcome.credits_used,
            prompt_used=prompt,
            generated_at=outcome.result["generated_at"],
        )

    def _cost(self, context: OperationContext) -> int:
        return self.schedule.image_cost(context.params["size"])

    def _generate(self, context: OperationContext) -> Dict[str, Any]:
        asset_kind = context.params["asset_kind"]
        size = context.params["size"]
        asset_id = new_asset_id(asset_kind)
        location = self.generator.generate(context.params["prompt"], size, asset_id)
        return {
            "asset_id": asset_id,
            "asset_kind": asset_kind,
            "asset_location": location,
            "size": size,
            "generated_at": datetime.now(timezone.utc).isoformat(),
        }

    @staticmethod
    def _validate(request: AssetRequest) -> None:
        if not request.asset_kind or not request.context_text:
            raise ValueError("Missing required fields: asset_kind and context_text")
        if request.asset_kind not in ASSET_PROMPTS:
            raise ValueError(
                f"Unsupported asset kind: {request.asset_kind} "
                f"(expected one of {sorted(ASSET_PROMPTS)})"
            )
        if request.size not in IMAGE_SIZES:
            raise ValueError(f"Unsupported size: {request.size} (expected one of {list(IMAGE_SIZES)})")
