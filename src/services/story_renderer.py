"""
Story slide rendering (1080x1920 PNG) with Pillow.

Slides keep their text inside the social "safe zone" so platform chrome
(profile header, reply bar, side buttons) never covers it.
"""

import asyncio
import base64
import binascii
import logging
from io import BytesIO
from typing import List, Optional, Sequence, Tuple

import httpx
from PIL import Image, ImageDraw, ImageFont, ImageOps

from src.models.itinerary_models import Itinerary

STORY_WIDTH = 1080
STORY_HEIGHT = 1920

SAFE_ZONE = {
    "TOP": 180,
    "BOTTOM": 320,
    "LEFT": 48,
    "RIGHT": 140,
}

GRADIENTS = {
    "cover": ("#7c3aed", "#2563eb"),
    "day": ("#1e1b4b", "#312e81"),
    "summary": ("#059669", "#0891b2"),
    "placeholder": ("#7c3aed", "#2563eb"),
}

WHITE = (255, 255, 255, 255)
SOFT_WHITE = (255, 255, 255, 220)
MUTED_WHITE = (255, 255, 255, 170)
PANEL_FILL = (0, 0, 0, 90)
PANEL_OUTLINE = (255, 255, 255, 45)
CTA_GREEN = (5, 150, 105, 255)

DEFAULT_HIGHLIGHTS = ["Discover local gems", "Create memories", "Experience culture"]


class SlideNotFoundError(LookupError):
    """Requested slide does not exist for this itinerary (unknown type or day)."""


def _load_font(size: int, *, weight: str = "regular") -> ImageFont.ImageFont:
    """Load a sans-serif font, falling back to Pillow's bundled default."""
    font_candidates = [
        "DejaVuSans-Bold.ttf" if weight != "regular" else "DejaVuSans.ttf",
        "LiberationSans-Bold.ttf" if weight != "regular" else "LiberationSans-Regular.ttf",
        "Arial Bold.ttf" if weight != "regular" else "Arial.ttf",
        "NotoSans-Bold.ttf" if weight != "regular" else "NotoSans-Regular.ttf",
    ]
    for candidate in font_candidates:
        try:
            return ImageFont.truetype(candidate, size=size)
        except OSError:
            continue
    return ImageFont.load_default(size=size)


def _hex_to_rgb(value: str) -> Tuple[int, int, int]:
    value = value.lstrip("#")
    return int(value[0:2], 16), int(value[2:4], 16), int(value[4:6], 16)


def _gradient(colors: Tuple[str, str], size: Tuple[int, int] = (STORY_WIDTH, STORY_HEIGHT)) -> Image.Image:
    width, height = size
    start, end = _hex_to_rgb(colors[0]), _hex_to_rgb(colors[1])
    image = Image.new("RGBA", size)
    draw = ImageDraw.Draw(image)
    for y in range(height):
        t = y / max(height - 1, 1)
        color = tuple(int(start[i] + (end[i] - start[i]) * t) for i in range(3))
        draw.line([(0, y), (width, y)], fill=(*color, 255))
    return image


def _darken(image: Image.Image) -> Image.Image:
    """Top and bottom heavier than the middle, for text contrast."""
    overlay = Image.new("RGBA", image.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(overlay)
    stops = [(0.0, 0.40), (0.3, 0.15), (0.6, 0.15), (1.0, 0.60)]
    height = image.size[1]
    for y in range(height):
        t = y / max(height - 1, 1)
        for (t0, a0), (t1, a1) in zip(stops, stops[1:]):
            if t0 <= t <= t1:
                alpha = a0 + (a1 - a0) * ((t - t0) / (t1 - t0))
                break
        draw.line([(0, y), (image.size[0], y)], fill=(0, 0, 0, int(alpha * 255)))
    return Image.alpha_composite(image, overlay)


def _line_height(font: ImageFont.ImageFont) -> int:
    left, top, right, bottom = font.getbbox("Ag")
    return bottom - top


def _wrap(draw: ImageDraw.ImageDraw, text: str, font: ImageFont.ImageFont, max_width: int,
          max_lines: Optional[int] = None) -> List[str]:
    lines: List[str] = []
    for paragraph in filter(None, [segment.strip() for segment in text.splitlines()]):
        line = ""
        for word in paragraph.split(" "):
            candidate = f"{line} {word}".strip()
            if draw.textlength(candidate, font=font) <= max_width or not line:
                line = candidate
            else:
                lines.append(line)
                line = word
        if line:
            lines.append(line)
    if max_lines is not None and len(lines) > max_lines:
        lines = lines[:max_lines]
        lines[-1] = lines[-1].rstrip(".,; ") + "..."
    return lines


class _Block:
    """A run of wrapped lines drawn centered, optionally on a rounded panel."""

    def __init__(self, lines: Sequence[str], font: ImageFont.ImageFont, fill, gap_after: int = 24,
                 panel: bool = False, line_spacing: int = 10):
        self.lines = list(lines)
        self.font = font
        self.fill = fill
        self.gap_after = gap_after
        self.panel = panel
        self.line_spacing = line_spacing

    @property
    def text_height(self) -> int:
        if not self.lines:
            return 0
        return len(self.lines) * _line_height(self.font) + (len(self.lines) - 1) * self.line_spacing

    @property
    def height(self) -> int:
        return self.text_height + (48 if self.panel else 0)


class StoryRenderer:
    """Renders cover, day and summary slides for an itinerary."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0,
                 brand_name: str = "Localley", cta_text: str = "Plan yours at localley.io"):
        self.logger = logging.getLogger(__name__)
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        self.timeout = timeout
        self.brand_name = brand_name
        self.cta_text = cta_text
        self.content_width = STORY_WIDTH - SAFE_ZONE["LEFT"] - SAFE_ZONE["RIGHT"]

    async def close(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    # --- background ---

    async def fetch_background(self, source: Optional[str]) -> Optional[bytes]:
        """Raw bytes for an http(s) or data: URL; None when missing or unreachable."""
        if not source:
            return None
        if source.startswith("data:"):
            try:
                _, encoded = source.split(",", 1)
                return base64.b64decode(encoded)
            except (ValueError, binascii.Error) as e:
                self.logger.warning(f"[story] invalid data URL background: {e}")
                return None
        if not source.startswith(("http://", "https://")):
            self.logger.warning("[story] unsupported background reference", extra={"source": source[:80]})
            return None
        try:
            resp = await self.http_client.get(source, timeout=self.timeout)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            self.logger.warning(f"[story] background prefetch failed: {e}", extra={"url": source[:80]})
            return None
        return resp.content

    def _background(self, data: Optional[bytes], slide: str) -> Image.Image:
        if data:
            try:
                with Image.open(BytesIO(data)) as opened:
                    fitted = ImageOps.fit(opened.convert("RGB"), (STORY_WIDTH, STORY_HEIGHT),
                                          method=Image.Resampling.LANCZOS)
                return _darken(fitted.convert("RGBA"))
            except (OSError, ValueError) as e:
                self.logger.warning(f"[story] background is not a valid image: {e}")
        return _darken(_gradient(GRADIENTS.get(slide, GRADIENTS["placeholder"])))

    # --- composition helpers ---

    def _pill(self, canvas: Image.Image, text: str, font, xy: Tuple[int, int],
              fill=PANEL_FILL, text_fill=WHITE, center: bool = False) -> int:
        """Draw a rounded label; returns its height."""
        overlay = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(overlay)
        width = int(draw.textlength(text, font=font)) + 48
        height = _line_height(font) + 28
        x, y = xy
        if center:
            x = SAFE_ZONE["LEFT"] + (self.content_width - width) // 2
        draw.rounded_rectangle([x, y, x + width, y + height], radius=height // 2, fill=fill, outline=PANEL_OUTLINE)
        canvas.alpha_composite(overlay)
        ImageDraw.Draw(canvas).text((x + 24, y + 14), text, font=font, fill=text_fill, anchor="la")
        return height

    def _draw_blocks(self, canvas: Image.Image, blocks: Sequence[_Block], top: int, bottom: int) -> None:
        """Stack blocks vertically, centered between top and bottom."""
        total = sum(b.height + b.gap_after for b in blocks) - (blocks[-1].gap_after if blocks else 0)
        y = top + max((bottom - top - total) // 2, 0)
        for block in blocks:
            if block.panel:
                overlay = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
                ImageDraw.Draw(overlay).rounded_rectangle(
                    [SAFE_ZONE["LEFT"], y, SAFE_ZONE["LEFT"] + self.content_width, y + block.height],
                    radius=28, fill=PANEL_FILL, outline=PANEL_OUTLINE,
                )
                canvas.alpha_composite(overlay)
            draw = ImageDraw.Draw(canvas)
            line_y = y + (24 if block.panel else 0)
            for line in block.lines:
                line_width = draw.textlength(line, font=block.font)
                x = SAFE_ZONE["LEFT"] + (self.content_width - line_width) / 2
                draw.text((x, line_y), line, font=block.font, fill=block.fill)
                line_y += _line_height(block.font) + block.line_spacing
            y += block.height + block.gap_after

    @staticmethod
    def _to_png(canvas: Image.Image) -> bytes:
        buffer = BytesIO()
        canvas.convert("RGB").save(buffer, format="PNG")
        return buffer.getvalue()

    # --- slides ---

    def _compose_cover(self, itinerary: Itinerary, background: Optional[bytes]) -> bytes:
        canvas = self._background(background, "cover")
        draw = ImageDraw.Draw(canvas)
        inner = self.content_width - 96

        self._pill(canvas, self.brand_name, _load_font(32, weight="bold"), (SAFE_ZONE["LEFT"], SAFE_ZONE["TOP"] + 20))

        blocks = []
        if itinerary.city:
            blocks.append(_Block([itinerary.city], _load_font(30), SOFT_WHITE, gap_after=20))
        title_font = _load_font(56, weight="bold")
        blocks.append(_Block(_wrap(draw, itinerary.title, title_font, inner, max_lines=4), title_font, WHITE,
                             gap_after=28, panel=True))
        days = itinerary.total_days
        if days:
            blocks.append(_Block([f"{days} Days of Adventure"], _load_font(28), SOFT_WHITE, gap_after=0))
        self._draw_blocks(canvas, blocks, SAFE_ZONE["TOP"] + 120, STORY_HEIGHT - SAFE_ZONE["BOTTOM"] - 80)

        hint_font = _load_font(22)
        hint = "Swipe to explore"
        hint_width = draw.textlength(hint, font=hint_font)
        draw.text(
            (SAFE_ZONE["LEFT"] + (self.content_width - hint_width) / 2, STORY_HEIGHT - SAFE_ZONE["BOTTOM"] - 50),
            hint, font=hint_font, fill=MUTED_WHITE,
        )
        return self._to_png(canvas)

    def _compose_day(self, itinerary: Itinerary, day_number: int, background: Optional[bytes]) -> bytes:
        plan = next((p for p in itinerary.daily_plans if p.day == day_number), None)
        if plan is None:
            raise SlideNotFoundError(f"Day {day_number} not found")

        canvas = self._background(background, "day")
        draw = ImageDraw.Draw(canvas)
        inner = self.content_width - 96

        header_font = _load_font(24, weight="bold")
        top = SAFE_ZONE["TOP"]
        pill_height = self._pill(canvas, self.brand_name, header_font, (SAFE_ZONE["LEFT"], top))
        total = itinerary.total_days
        day_label = f"Day {day_number} of {total}" if total else f"Day {day_number}"
        brand_width = int(draw.textlength(self.brand_name, font=header_font)) + 48
        self._pill(canvas, day_label, _load_font(22), (SAFE_ZONE["LEFT"] + brand_width + 16, top))

        theme_font = _load_font(48, weight="bold")
        blocks = [
            _Block(_wrap(draw, plan.theme or f"Day {day_number}", theme_font, inner, max_lines=3),
                   theme_font, WHITE, gap_after=32, panel=True),
        ]
        name_font = _load_font(28, weight="bold")
        detail_font = _load_font(20)
        for activity in plan.activities[:3]:
            lines = _wrap(draw, activity.name, name_font, inner, max_lines=2)
            blocks.append(_Block(lines, name_font, WHITE, gap_after=0 if activity.description else 16, panel=True))
            if activity.description:
                detail = _wrap(draw, activity.description, detail_font, inner, max_lines=2)
                blocks.append(_Block(detail, detail_font, SOFT_WHITE, gap_after=20))
        self._draw_blocks(canvas, blocks, top + pill_height + 40, STORY_HEIGHT - SAFE_ZONE["BOTTOM"] - 60)

        footer_font = _load_font(20)
        footer = self.cta_text or self.brand_name
        footer_width = draw.textlength(footer, font=footer_font)
        draw.text(
            (SAFE_ZONE["LEFT"] + (self.content_width - footer_width) / 2, STORY_HEIGHT - SAFE_ZONE["BOTTOM"] - 40),
            footer, font=footer_font, fill=MUTED_WHITE,
        )
        return self._to_png(canvas)

    def _compose_summary(self, itinerary: Itinerary, background: Optional[bytes]) -> bytes:
        canvas = self._background(background, "summary")
        draw = ImageDraw.Draw(canvas)
        inner = self.content_width - 96

        self._pill(canvas, self.brand_name, _load_font(28, weight="bold"), (SAFE_ZONE["LEFT"], SAFE_ZONE["TOP"] + 20))

        highlights = [h for h in itinerary.highlights if h and h.strip()]
        if not highlights:
            highlights = [f"Explore {itinerary.city}" if itinerary.city else "Explore the city"] + DEFAULT_HIGHLIGHTS

        title_font = _load_font(40, weight="bold")
        blocks = [
            _Block(["Trip Highlights"], _load_font(36), SOFT_WHITE, gap_after=16),
            _Block(_wrap(draw, itinerary.title, title_font, inner, max_lines=3), title_font, WHITE, gap_after=28),
        ]
        highlight_font = _load_font(26)
        for highlight in highlights[:4]:
            blocks.append(_Block(_wrap(draw, highlight, highlight_font, inner, max_lines=2), highlight_font, WHITE,
                                 gap_after=12, panel=True))
        self._draw_blocks(canvas, blocks, SAFE_ZONE["TOP"] + 120, STORY_HEIGHT - SAFE_ZONE["BOTTOM"] - 140)

        cta_top = STORY_HEIGHT - SAFE_ZONE["BOTTOM"] - 120
        cta_height = self._pill(canvas, self.cta_text, _load_font(22, weight="bold"), (0, cta_top),
                                fill=(255, 255, 255, 242), text_fill=CTA_GREEN, center=True)
        if itinerary.city:
            self._pill(canvas, itinerary.city, _load_font(18), (0, cta_top + cta_height + 12), center=True)
        return self._to_png(canvas)

    # --- public API ---

    async def render(self, itinerary: Itinerary, slide: str, day_number: Optional[int] = None,
                     background: Optional[str] = None) -> bytes:
        """Render one slide as PNG bytes; raises SlideNotFoundError for unknown slides or days."""
        if slide not in ("cover", "day", "summary"):
            raise SlideNotFoundError(f"Invalid slide type: {slide}")
        if slide == "day" and day_number is None:
            raise SlideNotFoundError("Day slide requires a day number")

        data = await self.fetch_background(background)
        loop = asyncio.get_running_loop()
        if slide == "cover":
            return await loop.run_in_executor(None, self._compose_cover, itinerary, data)
        if slide == "day":
            return await loop.run_in_executor(None, self._compose_day, itinerary, day_number, data)
        return await loop.run_in_executor(None, self._compose_summary, itinerary, data)

    def render_placeholder(self, label: str = "Your Trip Story") -> bytes:
        """Gradient plus a centered label; used when a real slide cannot be rendered."""
        canvas = _gradient(GRADIENTS["placeholder"])
        draw = ImageDraw.Draw(canvas)
        font = _load_font(56, weight="bold")
        lines = _wrap(draw, label or self.brand_name, font, self.content_width, max_lines=3)
        self._draw_blocks(canvas, [_Block(lines, font, WHITE, gap_after=0)],
                          SAFE_ZONE["TOP"], STORY_HEIGHT - SAFE_ZONE["BOTTOM"])
        return self._to_png(canvas)
