from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Protocol

from PIL import Image


class ProviderError(Exception):
    """An AI provider call failed or returned nothing usable."""


class ScriptParseError(ProviderError):
    pass


@dataclass(frozen=True)
class SectionDraft:
    title: str
    subtitle: str = ""
    description: str = ""
    visual_guide: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "title": self.title,
            "subtitle": self.subtitle,
            "description": self.description,
            "visual_guide": self.visual_guide,
        }


@dataclass(frozen=True)
class ExtractedCopy:
    text: str
    key_points: list[str]
    raw_text: str | None


@dataclass(frozen=True)
class GeneratedImage:
    image: Image.Image
    prompt_used: str
    provider: str
    model: str
    raw_metadata: dict[str, Any]


class TextProvider(Protocol):
    name: str

    async def draft_script(
        self,
        product_name: str,
        product_desc: str | None,
        competitor_copy: str,
    ) -> list[SectionDraft]: ...

    async def rewrite_section(self, section: SectionDraft, instruction: str | None) -> SectionDraft: ...

    async def extract_competitor_copy(self, image_url: str) -> ExtractedCopy: ...


class ImageProvider(Protocol):
    name: str

    async def generate(
        self,
        prompt: str,
        reference_images: list[Image.Image],
        n: int,
        aspect_ratio: str,
    ) -> list[GeneratedImage]: ...


def strip_code_fences(text: str) -> str:
    s = text.strip()
    if s.startswith("```"):
        # Remove leading fence line
        first_nl = s.find("\n")
        if first_nl != -1:
            s = s[first_nl + 1 :]
        # Remove trailing fence
        if s.rstrip().endswith("```"):
            s = s.rstrip()[:-3]
    return s.strip()


def parse_json_object(raw_text: str | None) -> dict[str, Any] | None:
    """
    Best-effort JSON object extraction from a model reply.
    Handles code fences and accidental pre/post text.
    """
    if not raw_text:
        return None
    s = strip_code_fences(raw_text)
    try:
        data = json.loads(s)
    except ValueError:
        m = re.search(r"\{.*\}", s, re.DOTALL)
        if not m:
            return None
        try:
            data = json.loads(m.group(0))
        except ValueError:
            return None
    return data if isinstance(data, dict) else None


def draft_from_mapping(item: dict[str, Any], fallback: SectionDraft | None = None) -> SectionDraft:
    def pick(*keys: str, default: str = "") -> str:
        for k in keys:
            v = item.get(k)
            if v is not None and str(v).strip():
                return str(v).strip()
        return default

    fb = fallback or SectionDraft(title="")
    return SectionDraft(
        title=pick("title", default=fb.title),
        subtitle=pick("subtitle", default=fb.subtitle),
        description=pick("description", default=fb.description),
        visual_guide=pick("visualGuide", "visual_guide", default=fb.visual_guide),
    )
