import re
from typing import Dict, Any, Optional
from urllib.parse import urlparse

# Min ~75 bytes, max ~7.5MB of image data
MIN_BASE64_LENGTH = 100
MAX_BASE64_LENGTH = 10_000_000

BASE64_RE = re.compile(r"^[A-Za-z0-9+/]*={0,2}$")
DAY_KEY_RE = re.compile(r"^(?:day)?(\d+)$", re.IGNORECASE)

VALID_SLIDES = ("cover", "day", "summary")


class StoryRequestValidator:
    """Validator for story background and slide requests"""

    @staticmethod
    def validate_city(city: Optional[str]) -> bool:
        """Non-blank, reasonably short, no control characters or markup."""
        if not city or not city.strip():
            return False
        if len(city.strip()) > 100:
            return False
        return re.search(r"[\x00-\x1f<>{}]", city) is None

    @staticmethod
    def validate_base64_image(data: str) -> bool:
        """A data:image/...;base64, URL whose payload is plausible base64 of sane size."""
        if not data.startswith("data:image/"):
            return False
        if ";base64," not in data:
            return False
        payload = data.split(",", 1)[1]
        if not payload:
            return False
        if len(payload) < MIN_BASE64_LENGTH or len(payload) > MAX_BASE64_LENGTH:
            return False
        return BASE64_RE.match(payload) is not None

    @staticmethod
    def validate_background_value(value: str) -> bool:
        """Stored backgrounds are either https URLs or inline base64 images."""
        if not isinstance(value, str) or not value:
            return False
        if value.startswith("data:"):
            return StoryRequestValidator.validate_base64_image(value)
        parsed = urlparse(value)
        return parsed.scheme == "https" and bool(parsed.netloc)

    @staticmethod
    def validate_background_update(cover: Optional[str], summary: Optional[str],
                                   days: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """Validate a background patch and flatten it into slide keys (cover, summary, dayN)."""
        errors = []
        backgrounds: Dict[str, str] = {}

        for key, value in (("cover", cover), ("summary", summary)):
            if not value:
                continue
            if StoryRequestValidator.validate_background_value(value):
                backgrounds[key] = value
            else:
                errors.append(f"Invalid {key} image format. Must be an https URL or a valid base64-encoded data URL.")

        for raw_key, value in (days or {}).items():
            match = DAY_KEY_RE.match(str(raw_key).strip())
            if not match or int(match.group(1)) < 1:
                errors.append(f"Invalid day key: {raw_key}")
                continue
            if not value:
                continue
            key = f"day{int(match.group(1))}"
            if StoryRequestValidator.validate_background_value(value):
                backgrounds[key] = value
            else:
                errors.append(f"Invalid {key} image format. Must be an https URL or a valid base64-encoded data URL.")

        if not backgrounds and not errors:
            errors.append("At least one background (cover, summary or a day) is required")

        return {
            'valid': len(errors) == 0,
            'errors': errors,
            'backgrounds': backgrounds,
        }

    @staticmethod
    def validate_slide(slide: str, day: Optional[int]) -> Dict[str, Any]:
        """Check a story slide selector (slide type and, for day slides, the day number)."""
        errors = []
        if slide not in VALID_SLIDES:
            errors.append(f"Invalid slide type: {slide}")
        elif slide == "day" and (day is None or day < 1):
            errors.append("Day slides need a day number of 1 or more")
        return {
            'valid': len(errors) == 0,
            'errors': errors,
        }
