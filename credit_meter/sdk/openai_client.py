"""
OpenAI image backend.

Plugs the OpenAI Images API into the asset service. Metering, caching and
budget checks stay in the runner; this class only renders.
"""

from typing import Optional

import structlog
from openai import OpenAI

from .assets import SIZE_DIMENSIONS

logger = structlog.get_logger(__name__)

# dall-e-3 renders only 1024x1024 and wider; every tier maps to the square size
_FIXED_SIZE_MODELS = {"dall-e-3": "1024x1024"}


class OpenAIImageGenerator:
    """Image generator that calls ``client.images.generate``.

    All API failures are loud: they propagate so the runner reports a
    generation failure and bills nothing.
    """

    def __init__(self, model: str = "dall-e-2", client: Optional[OpenAI] = None):
        """Initialize the generator.

        Args:
            model: OpenAI image model name (required)
            client: Optional preconfigured client; defaults to ``OpenAI()``

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.model = model
        self.client = client or OpenAI()

    def generate(self, prompt: str, size: str, asset_id: str) -> str:
        """Render ``prompt`` and return the hosted image URL.

        Args:
            prompt: Full styled prompt
            size: Asset size tier (small, medium, large)
            asset_id: Identifier of the asset being produced

        Returns:
            URL of the generated image

        Raises:
            ValueError: If the size is unknown or the response has no image
            OpenAI API errors: Propagated without modification
        """
        if size not in SIZE_DIMENSIONS:
            raise ValueError(f"Unsupported size: {size}")
        api_size = _FIXED_SIZE_MODELS.get(self.model)
        if api_size is None:
            width, height = SIZE_DIMENSIONS[size]
            api_size = f"{width}x{height}"

        response = self.client.images.generate(
            model=self.model,
            prompt=prompt,
            size=api_size,
            n=1,
        )

        if not response.data or not response.data[0].url:
            raise ValueError("OpenAI response missing image data")

        logger.info("openai_image_generated", asset_id=asset_id, model=self.model)
        return response.data[0].url
