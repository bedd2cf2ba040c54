from __future__ import annotations

from pathlib import Path

from PIL import Image, ImageDraw, ImageFont, ImageOps

from detailpage_genai.config import settings

# CJK-capable fonts first: panel copy is usually Chinese.
_FONT_CANDIDATES: list[str] = [
    "assets/fonts/NotoSansSC-Regular.ttf",
    "/usr/share/fonts/opentype/noto/NotoSansCJK-Regular.ttc",
    "/usr/share/fonts/noto-cjk/NotoSansCJK-Regular.ttc",
    "/System/Library/Fonts/PingFang.ttc",
    "/System/Library/Fonts/STHeiti Medium.ttc",
    "C:\\Windows\\Fonts\\msyh.ttc",
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "/Library/Fonts/Arial.ttf",
]


def size_for_aspect_ratio(size: tuple[int, int], aspect_ratio: str) -> tuple[int, int]:
    """Keep the width, derive the height from a "w:h" ratio. Unparseable ratios keep `size`."""
    try:
        rw, rh = (int(p) for p in aspect_ratio.split(":"))
    except ValueError:
        return size
    if rw <= 0 or rh <= 0:
        return size
    w = size[0]
    return w, max(1, round(w * rh / rw))


def render_panel(
    image: Image.Image,
    title: str,
    subtitle: str = "",
    size: tuple[int, int] | None = None,
) -> Image.Image:
    """
    Deterministic copy overlay for a generated detail panel:
    - optionally cover-resize to a target size
    - add a bottom gradient scrim
    - draw the fitted title, then the subtitle below it
    """
    base = image.convert("RGB")
    if size is not None and base.size != size:
        base = _resize_cover(base, size)
    w, h = base.size

    if not (title or "").strip() and not (subtitle or "").strip():
        return base

    scrim_h = int(h * (0.36 if h > w else 0.30))
    scrim_y0 = h - scrim_h
    canvas = _apply_bottom_gradient_scrim(base.convert("RGBA"), y0=scrim_y0, max_alpha=190)
    draw = ImageDraw.Draw(canvas)

    pad = int(w * 0.06)
    title_box = (pad, scrim_y0 + pad, w - pad, scrim_y0 + int(scrim_h * 0.62))
    subtitle_box = (pad, scrim_y0 + int(scrim_h * 0.66), w - pad, h - pad)

    font, wrapped, spacing = _fit_text_to_box(
        draw,
        title,
        title_box,
        max_font_px=int((title_box[3] - title_box[1]) * 0.42),
        min_font_px=max(16, int(w * 0.03)),
    )
    _draw_multiline(draw, wrapped, (title_box[0], title_box[1]), font, (255, 255, 255, 255), spacing, shadow=True)

    if (subtitle or "").strip():
        font, wrapped, spacing = _fit_text_to_box(
            draw,
            subtitle,
            subtitle_box,
            max_font_px=int((subtitle_box[3] - subtitle_box[1]) * 0.5),
            min_font_px=max(12, int(w * 0.02)),
        )
        _draw_multiline(
            draw, wrapped, (subtitle_box[0], subtitle_box[1]), font, (235, 235, 235, 255), spacing, shadow=False
        )

    return canvas.convert("RGB")


def _draw_multiline(draw, text, xy, font, fill, spacing, shadow=False) -> None:
    x, y = xy
    if shadow:
        draw.multiline_text((x + 2, y + 2), text, font=font, fill=(0, 0, 0, 180), spacing=spacing)
    draw.multiline_text((x, y), text, font=font, fill=fill, spacing=spacing)


def _resize_cover(img: Image.Image, size: tuple[int, int]) -> Image.Image:
    """Scale to cover the target without stretching, then center-crop."""
    return ImageOps.fit(img, size, method=Image.Resampling.LANCZOS, centering=(0.5, 0.5))


def _apply_bottom_gradient_scrim(img_rgba: Image.Image, y0: int, max_alpha: int) -> Image.Image:
    """Darken from transparent at `y0` to `max_alpha` at the bottom edge."""
    w, h = img_rgba.size
    y0 = max(0, min(y0, h - 1))
    ramp = Image.linear_gradient("L").resize((w, h - y0))
    mask = Image.new("L", (w, h), 0)
    mask.paste(ramp.point(lambda v: v * max_alpha // 255), (0, y0))

    shade = Image.new("RGBA", (w, h), (0, 0, 0, 255))
    shade.putalpha(mask)
    return Image.alpha_composite(img_rgba, shade)


def _load_font(size: int) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
    """
    Prefer a TTF font (system or bundled). Without one, fall back to Pillow's
    default font, which is small but avoids crashing.
    """
    candidates = list(_FONT_CANDIDATES)
    if settings.panel_font_path:
        candidates.insert(0, settings.panel_font_path)
    for c in candidates:
        if Path(c).exists():
            try:
                return ImageFont.truetype(c, size=size)
            except OSError:
                continue
    return ImageFont.load_default()


def _fit_text_to_box(
    draw: ImageDraw.ImageDraw,
    text: str,
    box: tuple[int, int, int, int],
    max_font_px: int,
    min_font_px: int,
):
    x1, y1, x2, y2 = box
    max_w = max(1, x2 - x1)
    max_h = max(1, y2 - y1)
    max_font_px = max(min_font_px, max_font_px)

    for px in range(max_font_px, min_font_px - 1, -2):
        font = _load_font(px)
        spacing = max(2, int(px * 0.18))
        wrapped = _wrap_to_width(draw, text, font, max_w)
        bbox = draw.multiline_textbbox((0, 0), wrapped or " ", font=font, spacing=spacing)
        if (bbox[2] - bbox[0]) <= max_w and (bbox[3] - bbox[1]) <= max_h:
            return font, wrapped, spacing

    font = _load_font(min_font_px)
    spacing = max(2, int(min_font_px * 0.18))
    return font, _wrap_to_width(draw, text, font, max_w), spacing


def _text_width(draw: ImageDraw.ImageDraw, text: str, font) -> int:
    bbox = draw.textbbox((0, 0), text, font=font)
    return bbox[2] - bbox[0]


def _wrap_to_width(draw: ImageDraw.ImageDraw, text: str, font, max_w: int) -> str:
    """
    Greedy wrap on spaces; tokens wider than the box (CJK runs have no spaces)
    are broken per character.
    """
    tokens: list[str] = []
    for word in (text or "").split():
        if _text_width(draw, word, font) <= max_w:
            tokens.append(word)
        else:
            tokens.extend(_split_chars(draw, word, font, max_w))
    if not tokens:
        return ""

    lines: list[str] = []
    cur = tokens[0]
    for tok in tokens[1:]:
        trial = f"{cur} {tok}"
        if _text_width(draw, trial, font) <= max_w:
            cur = trial
        else:
            lines.append(cur)
            cur = tok
    lines.append(cur)
    return "\n".join(lines)


def _split_chars(draw: ImageDraw.ImageDraw, word: str, font, max_w: int) -> list[str]:
    chunks: list[str] = []
    cur = ""
    for ch in word:
        if cur and _text_width(draw, cur + ch, font) > max_w:
            chunks.append(cur)
            cur = ch
        else:
            cur += ch
    if cur:
        chunks.append(cur)
    return chunks
