from __future__ import annotations

import io
import logging
import zipfile
from collections.abc import Awaitable, Callable
from urllib.parse import quote

from detailpage_genai.storage import ImageRecord, Project, Section

logger = logging.getLogger(__name__)


def build_script_markdown(project: Project, sections: list[Section]) -> str:
    lines = [f"# {project.product_name} - detail page copy", ""]
    for idx, section in enumerate(sections, start=1):
        lines += [
            f"## Panel {idx}",
            "",
            f"**Headline:** {section.title}",
            "",
            f"**Subtitle:** {section.subtitle or ''}",
            "",
            f"**Description:** {section.description or ''}",
            "",
            "---",
            "",
        ]
    return "\n".join(lines)


async def build_detail_archive(
    project: Project,
    images: list[ImageRecord],
    sections: list[Section],
    fetch: Callable[[str], Awaitable[bytes]],
) -> tuple[bytes, int]:
    """
    Zip the generated panels (detail_<n>.png, in the given order) plus script.md.
    Panels that cannot be downloaded are skipped. Returns (zip_bytes, panels_written).
    """
    buf = io.BytesIO()
    written = 0
    with zipfile.ZipFile(buf, mode="w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
        for idx, img in enumerate(images, start=1):
            try:
                content = await fetch(img.r2_key)
            except Exception:
                logger.exception("failed to add image %s to archive", img.id)
                continue
            zf.writestr(f"detail_{idx}.png", content)
            written += 1
        zf.writestr("script.md", build_script_markdown(project, sections))
    return buf.getvalue(), written


def archive_filename(project: Project) -> str:
    name = (project.product_name or "").strip().replace("/", "_").replace("\\", "_") or f"project_{project.id}"
    return f"{name}_details.zip"


def content_disposition(filename: str) -> str:
    """Attachment header that survives non-ASCII product names (RFC 5987)."""
    fallback = filename.encode("ascii", "ignore").decode("ascii").replace('"', "") or "details.zip"
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"
