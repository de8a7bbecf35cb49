"""
Itinerary shape normalization.

Stored itineraries carry their day plans in several shapes: a JSON string,
a list of day objects, a dict wrapping such a list, or the raw markdown the
chat assistant produced. Everything is converted into ``List[DayPlan]`` here
so that consumers never re-sniff the shape.
"""

import json
import logging
import re
from typing import Any, List, Optional

from src.models.itinerary_models import Activity, DayPlan, ParsedItinerary

logger = logging.getLogger(__name__)

DAY_HEADER_RE = re.compile(r"^[#*]*\s*Day\s+(\d+)\s*[:\-]\s*(.*)$", re.IGNORECASE)
MARKUP_RE = re.compile(r"^[#*]+\s*|\*+$")
BOLD_ACTIVITY_RE = re.compile(r"^\*+(.+?)\*+\s*:?\s*(.*)$")
COLON_ACTIVITY_RE = re.compile(r"^(.+?):\s*(.+)$")
TYPE_LABEL_RE = re.compile(r"\((.+?)\)")
TRAILING_LABEL_RE = re.compile(r"\s*\(.+?\)\s*$")

CITY_IN_RE = re.compile(r"\bin\s+([A-Za-z\s]+?)(?:\s*[:\-,]|$)", re.IGNORECASE)
CITY_FIRST_RE = re.compile(
    r"^([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)\s+(?:Adventure|Guide|Trip|Experience|Itinerary|Hidden)",
    re.IGNORECASE,
)
CITY_COLON_RE = re.compile(r"^([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?):\s+")

DAY_LIST_KEYS = ("days", "daily_plans", "dailyPlans")
UNKNOWN_CITY = "Unknown City"


def _strip_markup(text: str) -> str:
    return MARKUP_RE.sub("", text).strip()


def _activity_type(title: str) -> str:
    match = TYPE_LABEL_RE.search(title)
    if not match:
        return "normal"
    label = match.group(1)
    if "Hidden Gem" in label:
        return "hidden-gem"
    if "Local Favorite" in label:
        return "local-favorite"
    if "Mixed" in label:
        return "mixed"
    return "normal"


def _make_activity(title: str, description: str = "") -> Activity:
    clean_title = TRAILING_LABEL_RE.sub("", title).strip().strip("*").strip()
    return Activity(
        name=clean_title or title.strip(),
        description=description.strip() or None,
        type=_activity_type(title),
    )


def extract_city(title: str) -> str:
    """Best-effort city extraction from an itinerary title."""
    match = CITY_IN_RE.search(title) or CITY_FIRST_RE.match(title) or CITY_COLON_RE.match(title)
    if match:
        return match.group(1).strip()
    return ""


def shorten_title(full_title: str, city: str) -> str:
    words = full_title.split()
    if len(words) <= 5:
        return full_title
    if city:
        return f"{city} Hidden Gems"
    return " ".join(words[:4])


def parse_itinerary_text(content: str) -> ParsedItinerary:
    """Parse chat-assistant markdown into a title, a city and day plans.

    Recognized lines:
        ``**Day 1: Old Town**`` / ``### Day 2: Markets``   day headers
        ``- **Gwangjang Market (Hidden Gem)**: street food``  activities
        ``- Namsan Tower: sunset views`` / ``- Hongdae``       activities
        ``  - Open until 10pm``                               detail lines
    """
    lines = content.split("\n")
    first_line = lines[0] if lines else ""
    full_title = _strip_markup(first_line) or "Your Itinerary"

    city = extract_city(full_title)
    title = shorten_title(full_title, city)

    days: List[DayPlan] = []
    current: Optional[DayPlan] = None

    for raw_line in lines:
        stripped = raw_line.strip()
        if not stripped:
            continue

        header = DAY_HEADER_RE.match(stripped)
        if header:
            if current is not None:
                days.append(current)
            theme = _strip_markup(header.group(2)) or None
            current = DayPlan(day=int(header.group(1)), theme=theme)
            continue

        if current is None or not stripped.startswith("-"):
            continue

        body = stripped[1:].strip()
        if raw_line[:1].isspace() and current.activities:
            last = current.activities[-1]
            last.description = f"{last.description}\n{body}" if last.description else body
            continue

        bold = BOLD_ACTIVITY_RE.match(body)
        if bold:
            current.activities.append(_make_activity(bold.group(1), bold.group(2)))
            continue

        colon = COLON_ACTIVITY_RE.match(body)
        if colon:
            current.activities.append(_make_activity(colon.group(1), colon.group(2)))
        elif body:
            current.activities.append(_make_activity(body))

    if current is not None:
        days.append(current)

    return ParsedItinerary(title=title, city=city or UNKNOWN_CITY, days=days)


def _day_number(value: Any, fallback: int) -> int:
    if isinstance(value, bool):
        return fallback
    if isinstance(value, int) and value >= 1:
        return value
    if isinstance(value, str):
        digits = re.search(r"\d+", value)
        if digits and int(digits.group(0)) >= 1:
            return int(digits.group(0))
    return fallback


def _coerce_activity(item: Any) -> Optional[Activity]:
    if isinstance(item, str):
        return _make_activity(item) if item.strip() else None
    if not isinstance(item, dict):
        return None
    name = item.get("name") or item.get("title") or item.get("activity")
    if not isinstance(name, str) or not name.strip():
        return None
    description = item.get("description")
    time = item.get("time")
    return Activity(
        name=name.strip(),
        description=description if isinstance(description, str) else None,
        time=time if isinstance(time, str) else None,
        type=item.get("type") if isinstance(item.get("type"), str) else "normal",
    )


def _coerce_day(item: Any, index: int) -> Optional[DayPlan]:
    if isinstance(item, str):
        activity = _coerce_activity(item)
        return DayPlan(day=index + 1, activities=[activity] if activity else [])
    if not isinstance(item, dict):
        return None
    raw_activities = item.get("activities") or item.get("items") or []
    if not isinstance(raw_activities, list):
        raw_activities = []
    theme = item.get("theme") or item.get("title")
    return DayPlan(
        day=_day_number(item.get("day"), index + 1),
        theme=theme if isinstance(theme, str) else None,
        activities=[a for a in (_coerce_activity(x) for x in raw_activities) if a is not None],
    )


def normalize_daily_plans(raw: Any) -> List[DayPlan]:
    """Convert any stored day-plan shape into a list of DayPlan."""
    if raw is None:
        return []

    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return []
        try:
            decoded = json.loads(text)
        except ValueError:
            return parse_itinerary_text(text).days
        if isinstance(decoded, str):
            return parse_itinerary_text(decoded).days
        return normalize_daily_plans(decoded)

    if isinstance(raw, dict):
        for key in DAY_LIST_KEYS:
            if isinstance(raw.get(key), list):
                return normalize_daily_plans(raw[key])
        nested = raw.get("activities")
        if isinstance(nested, list) and nested and all(isinstance(x, dict) and "activities" in x for x in nested):
            return normalize_daily_plans(nested)
        if isinstance(nested, list):
            day = _coerce_day(raw, 0)
            return [day] if day else []
        return []

    if isinstance(raw, list):
        plans: List[DayPlan] = []
        for index, item in enumerate(raw):
            day = _coerce_day(item, index)
            if day is not None:
                plans.append(day)
        return plans

    logger.warning(f"Unrecognized day-plan shape: {type(raw).__name__}")
    return []
