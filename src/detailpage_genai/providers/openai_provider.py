from __future__ import annotations

import base64
import logging
import re
from io import BytesIO
from typing import Any

from PIL import Image

from detailpage_genai.config import settings
from detailpage_genai.providers.base import (
    ExtractedCopy,
    GeneratedImage,
    ProviderError,
    ScriptParseError,
    SectionDraft,
    draft_from_mapping,
    parse_json_object,
)

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"data:image/[a-zA-Z0-9.+-]+;base64,([A-Za-z0-9+/=]+)")

SCRIPT_SYSTEM = (
    "You are a senior e-commerce detail-page copywriter who writes persuasive, concrete product copy. "
    "Always answer with a single JSON object and nothing else."
)
REWRITE_SYSTEM = "You are a senior e-commerce detail-page copywriter. Always answer with a single JSON object."


class OpenAIProvider:
    """
    Text, vision and image calls through an OpenAI-compatible gateway.
    The gateway fronts Gemini models, so model names default to Gemini ones.
    """

    name = "openai"

    def __init__(self, api_key: str, base_url: str | None = None) -> None:
        from openai import AsyncOpenAI  # type: ignore

        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url or settings.openai_base_url)

    async def _chat_json(self, messages: list[dict[str, Any]], **kwargs: Any) -> str:
        from openai import OpenAIError  # type: ignore

        try:
            completion = await self.client.chat.completions.create(
                model=settings.text_model,
                messages=messages,
                response_format={"type": "json_object"},
                **kwargs,
            )
        except OpenAIError as exc:
            raise ProviderError(f"text model call failed: {exc}") from exc
        if not completion.choices:
            return "{}"
        return completion.choices[0].message.content or "{}"

    async def draft_script(
        self,
        product_name: str,
        product_desc: str | None,
        competitor_copy: str,
    ) -> list[SectionDraft]:
        prompt = (
            "Plan the image-and-copy script for a product detail page.\n"
            f"Product name: {product_name}\n"
            f"Product description: {product_desc or 'n/a'}\n"
            "\nCompetitor detail-page copy for reference:\n"
            f"{competitor_copy or 'no competitor reference'}\n"
            "\nProduce 5 to 7 panels. For each panel give:\n"
            "- title: an eye-catching headline built on one selling point\n"
            "- subtitle: a supporting line\n"
            "- description: product features and advantages for this panel\n"
            "- visualGuide: concrete art direction (scene, style, palette) usable as an image prompt\n"
            "\nRules:\n"
            "- Panel 1 is the hero visual with the core selling point.\n"
            "- The last panel can be purchase guidance or brand information.\n"
            "- Differentiate from the competitor copy; never copy it.\n"
            f"- Write title, subtitle and description in {settings.copy_language}.\n"
            '\nReturn JSON: {"sections": [{"title": "", "subtitle": "", "description": "", "visualGuide": ""}]}\n'
        )
        raw = await self._chat_json(
            [{"role": "system", "content": SCRIPT_SYSTEM}, {"role": "user", "content": prompt}],
            temperature=settings.script_temperature,
        )

        data = parse_json_object(raw)
        if data is None:
            logger.error("unparseable script reply: %.500s", raw)
            raise ScriptParseError("Failed to parse AI response")
        items = data.get("sections")
        if not isinstance(items, list):
            raise ScriptParseError("Invalid AI response format")

        drafts: list[SectionDraft] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            draft = draft_from_mapping(item)
            if not draft.title:
                continue
            drafts.append(draft)
        if not drafts:
            raise ScriptParseError("Invalid AI response format")
        return drafts

    async def rewrite_section(self, section: SectionDraft, instruction: str | None) -> SectionDraft:
        ask = f"User request: {instruction}" if instruction else "Write a more compelling version."
        prompt = (
            "Rewrite this detail-page panel.\n"
            "\nCurrent panel:\n"
            f"- title: {section.title}\n"
            f"- subtitle: {section.subtitle}\n"
            f"- description: {section.description}\n"
            f"- visualGuide: {section.visual_guide}\n"
            f"\n{ask}\n"
            f"Keep the copy in {settings.copy_language}.\n"
            '\nReturn JSON: {"title": "", "subtitle": "", "description": "", "visualGuide": ""}\n'
        )
        raw = await self._chat_json(
            [{"role": "system", "content": REWRITE_SYSTEM}, {"role": "user", "content": prompt}],
            temperature=settings.rewrite_temperature,
        )
        data = parse_json_object(raw)
        if data is None:
            raise ScriptParseError("Failed to parse AI response")
        # Keys the model leaves out keep their current value.
        return draft_from_mapping(data, fallback=section)

    async def extract_competitor_copy(self, image_url: str) -> ExtractedCopy:
        instruction = (
            "This is an e-commerce detail-page image. Transcribe the visible copy and list the main selling points. "
            'Return JSON: {"text": "all extracted text", "keyPoints": ["point 1", "point 2"]}'
        )
        raw = await self._chat_json(
            [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": instruction},
                        {"type": "image_url", "image_url": {"url": image_url}},
                    ],
                }
            ],
            max_tokens=settings.vision_max_tokens,
        )
        data = parse_json_object(raw)
        if data is None:
            raise ProviderError("vision reply was not JSON")
        points = data.get("keyPoints") or data.get("key_points") or []
        if not isinstance(points, list):
            points = [points]
        return ExtractedCopy(
            text=str(data.get("text") or ""),
            key_points=[str(p) for p in points if str(p).strip()],
            raw_text=raw,
        )

    async def generate(
        self,
        prompt: str,
        reference_images: list[Image.Image],
        n: int = 1,
        aspect_ratio: str = "1:1",
    ) -> list[GeneratedImage]:
        """
        Two paths, tried in order for each requested image:
        - the image model through chat completions with an image response modality
        - the Images API with the fallback model
        """
        enriched = f"{prompt}\nDesired aspect ratio: {aspect_ratio}."
        out: list[GeneratedImage] = []
        for _ in range(max(1, n)):
            generated = await self._generate_via_chat(enriched, reference_images)
            if generated is None:
                generated = await self._generate_via_images_api(enriched)
            if generated is None:
                break
            out.append(generated)
        return out

    async def _generate_via_chat(self, prompt: str, reference_images: list[Image.Image]) -> GeneratedImage | None:
        content: Any = prompt
        if reference_images:
            content = [{"type": "text", "text": prompt}]
            for img in reference_images:
                content.append({"type": "image_url", "image_url": {"url": _to_data_url(img)}})
        try:
            resp = await self.client.chat.completions.create(
                model=settings.image_model,
                messages=[{"role": "user", "content": content}],
                extra_body={"response_modalities": ["TEXT", "IMAGE"]},
            )
        except Exception as exc:
            logger.warning("image model %s failed, falling back: %s", settings.image_model, exc)
            return None

        img = _extract_image_from_chat(resp)
        if img is None:
            logger.info("image model %s returned no image data", settings.image_model)
            return None
        return GeneratedImage(
            image=img,
            prompt_used=prompt,
            provider=self.name,
            model=settings.image_model,
            raw_metadata={"path": "chat"},
        )

    async def _generate_via_images_api(self, prompt: str) -> GeneratedImage | None:
        model = settings.fallback_image_model
        kwargs: dict[str, Any] = {"model": model, "prompt": prompt, "n": 1, "size": settings.fallback_image_size}
        if model.startswith("dall-e"):
            kwargs["response_format"] = "b64_json"
        try:
            resp = await self.client.images.generate(**kwargs)
        except Exception as exc:
            logger.error("fallback image model %s failed: %s", model, exc)
            return None

        data = getattr(resp, "data", None) or []
        b64 = getattr(data[0], "b64_json", None) if data else None
        if not b64:
            return None
        img = _decode_image(b64)
        if img is None:
            return None
        return GeneratedImage(
            image=img,
            prompt_used=prompt,
            provider=self.name,
            model=model,
            raw_metadata={"path": "images"},
        )


def _to_data_url(img: Image.Image) -> str:
    buf = BytesIO()
    img.convert("RGB").save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def _decode_image(b64: str) -> Image.Image | None:
    try:
        raw = base64.b64decode("".join(b64.split()))
        img = Image.open(BytesIO(raw))
        img.load()
    except Exception:
        return None
    return img


def _extract_image_from_chat(resp: Any) -> Image.Image | None:
    choices = getattr(resp, "choices", None) or []
    if not choices:
        return None
    message = choices[0].message

    # Some gateways attach images next to the text content.
    for item in getattr(message, "images", None) or []:
        url = item.get("image_url", {}).get("url") if isinstance(item, dict) else None
        if url:
            m = _DATA_URL_RE.search(url)
            if m:
                img = _decode_image(m.group(1))
                if img is not None:
                    return img

    content = getattr(message, "content", None)
    if isinstance(content, str) and "base64" in content:
        m = _DATA_URL_RE.search(content)
        if m:
            return _decode_image(m.group(1))
    return None
