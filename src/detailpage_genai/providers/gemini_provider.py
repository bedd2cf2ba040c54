from __future__ import annotations

import logging
from io import BytesIO
from typing import Any

from PIL import Image

from detailpage_genai.config import settings
from detailpage_genai.providers.base import GeneratedImage, ProviderError

logger = logging.getLogger(__name__)

# Imagen accepts a fixed set of ratios; map the panel ratios we use onto it.
_IMAGEN_RATIOS = {"1:1": "1:1", "3:4": "3:4", "4:3": "4:3", "9:16": "9:16", "16:9": "16:9", "4:5": "3:4"}


class GeminiProvider:
    name = "gemini"

    def __init__(self, api_key: str) -> None:
        # Imported lazily so the app can start without the dependency configured.
        from google import genai  # type: ignore

        self._genai = genai
        self.client = genai.Client(api_key=api_key)

    async def generate(
        self,
        prompt: str,
        reference_images: list[Image.Image],
        n: int = 1,
        aspect_ratio: str = "3:4",
    ) -> list[GeneratedImage]:
        """
        Supports two paths depending on model family:
        - Imagen models: `models.generate_images(...)` (text-to-image, references ignored)
        - Gemini image models: `models.generate_content(...)` with image response modality,
          product photos passed as references
        """
        from google.genai import errors, types  # type: ignore

        model = settings.gemini_image_model
        out: list[GeneratedImage] = []

        if model.startswith("imagen-"):
            try:
                resp = await self.client.aio.models.generate_images(
                    model=model,
                    prompt=prompt,
                    config=types.GenerateImagesConfig(
                        number_of_images=n,
                        aspect_ratio=_IMAGEN_RATIOS.get(aspect_ratio, "1:1"),
                    ),
                )
            except errors.APIError as exc:
                raise ProviderError(f"image model call failed: {exc}") from exc
            for gi in getattr(resp, "generated_images", []) or []:
                img_bytes = getattr(getattr(gi, "image", None), "image_bytes", None)
                if not img_bytes:
                    continue
                out.append(
                    GeneratedImage(
                        image=Image.open(BytesIO(img_bytes)),
                        prompt_used=prompt,
                        provider=self.name,
                        model=model,
                        raw_metadata={},
                    )
                )
            return out

        # Gemini image models return one image per call; loop until we hit n.
        for _ in range(max(1, n)):
            contents: list[Any] = [f"{prompt}\nDesired aspect ratio: {aspect_ratio}."]
            if reference_images:
                contents[0] += "\nThe attached photos show the actual product; keep its shape, color and details."
                contents.extend(reference_images[: settings.max_reference_images])

            try:
                resp = await self.client.aio.models.generate_content(
                    model=model,
                    contents=contents,
                    config=types.GenerateContentConfig(
                        response_modalities=["image", "text"],
                        image_config=types.ImageConfig(aspect_ratio=aspect_ratio),
                    ),
                )
            except errors.APIError as exc:
                raise ProviderError(f"image model call failed: {exc}") from exc

            extracted = extract_images_from_generate_content(resp)
            for img, meta in extracted:
                out.append(
                    GeneratedImage(
                        image=img,
                        prompt_used=contents[0],
                        provider=self.name,
                        model=model,
                        raw_metadata=meta | {"aspect_ratio": aspect_ratio},
                    )
                )
                if len(out) >= n:
                    return out

            # Stop early if we didn't get anything back this attempt.
            if not extracted:
                logger.info("gemini model %s returned no image parts", model)
                break

        return out


def extract_images_from_generate_content(resp: Any) -> list[tuple[Image.Image, dict[str, Any]]]:
    out: list[tuple[Image.Image, dict[str, Any]]] = []
    for cand in getattr(resp, "candidates", []) or []:
        content = getattr(cand, "content", None)
        parts = getattr(content, "parts", None) or []
        for part in parts:
            inline = getattr(part, "inline_data", None)
            if not inline:
                continue
            mime = getattr(inline, "mime_type", None) or ""
            data = getattr(inline, "data", None)
            if not data:
                continue
            if mime and not mime.startswith("image/"):
                continue
            try:
                img = Image.open(BytesIO(data))
            except OSError:
                logger.warning("undecodable %s part in gemini reply", mime or "inline")
                continue
            out.append((img, {"mime_type": mime}))
    return out
