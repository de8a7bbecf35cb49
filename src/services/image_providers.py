"""
Image provider adapters for story backgrounds.

Every adapter exposes the same small surface (``name``, ``kind``,
``is_available()`` and ``try_generate(request)``) so the resolver can walk
them in order without knowing which vendor sits behind each one:

- GeminiImageAdapter      AI, Gemini native image model (google-genai)
- SeedreamImageAdapter    AI, Seedream hosted on fal.ai
- TripAdvisorPhotoAdapter real location photos (Content API)
- PexelsPhotoAdapter      themed stock photos
- UnsplashStockAdapter    curated stock table, always succeeds

AI adapters return base64 image bytes; the others return a photo URL.
Each call is a single attempt; retries are the caller's business.
"""

import base64
import hashlib
import logging
import random
from typing import Dict, Iterable, List, Optional, Sequence

import httpx
from google import genai
from google.genai import types

from src.models.image_models import ImageRequest, ImageSourceKind, ImageStyle, SlideType


class ImageProviderError(RuntimeError):
    """A provider call completed but produced no usable image."""


# Only the first few search hits are considered, for variety without drifting off-topic
PICK_WINDOW = 5

STORY_ASPECT_RATIO = "9:16"


def ai_theme_for(request: ImageRequest) -> str:
    """Theme handed to the AI story-background prompt for non-day slides."""
    if request.slide_type == SlideType.COVER:
        return "iconic landmarks and cityscape"
    if request.slide_type == SlideType.SUMMARY:
        return "beautiful travel scenery"
    return request.theme or "travel destination"


class ImageProviderAdapter:
    name: str = ""
    kind: ImageSourceKind = ImageSourceKind.STOCK_DETERMINISTIC

    def __init__(self, rng: Optional[random.Random] = None):
        self.logger = logging.getLogger(__name__)
        self.rng = rng or random.Random()

    def is_available(self) -> bool:
        return True

    async def try_generate(self, request: ImageRequest) -> Optional[str]:
        raise NotImplementedError

    async def close(self) -> None:
        return None

    def _pick(self, candidates: Sequence[str]) -> str:
        return self.rng.choice(list(candidates[:PICK_WINDOW]))


class HttpImageAdapter(ImageProviderAdapter):
    """Adapter that talks to its vendor over a (possibly shared) httpx client."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 60.0,
                 rng: Optional[random.Random] = None):
        super().__init__(rng=rng)
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
        )

    async def close(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()


# ---------------------------------------------------------------------------
# AI generators
# ---------------------------------------------------------------------------

class AIImageAdapter(ImageProviderAdapter):
    kind = ImageSourceKind.AI

    def story_prompt(self, city: str, theme: str, style: ImageStyle) -> str:
        raise NotImplementedError

    def day_prompt(self, city: str, day_number: int, theme: str, activities: List[str]) -> str:
        raise NotImplementedError

    async def _generate(self, prompt: str, aspect_ratio: str = STORY_ASPECT_RATIO) -> str:
        raise NotImplementedError

    async def generate_story_background(self, city: str, theme: str,
                                        style: ImageStyle = ImageStyle.VIBRANT) -> str:
        self.logger.info(f"[{self.name}] generating story background", extra={"city": city, "theme": theme})
        return await self._generate(self.story_prompt(city, theme, style))

    async def generate_day_background(self, city: str, day_number: int, theme: str,
                                      activities: List[str]) -> str:
        self.logger.info(f"[{self.name}] generating day {day_number} background", extra={"city": city})
        return await self._generate(self.day_prompt(city, day_number, theme, list(activities)[:3]))

    async def try_generate(self, request: ImageRequest) -> Optional[str]:
        if not self.is_available():
            return None
        if request.slide_type == SlideType.DAY and request.day_number:
            theme = request.theme or f"Day {request.day_number} adventures"
            image = await self.generate_day_background(request.city, request.day_number, theme, request.activities)
        else:
            image = await self.generate_story_background(request.city, ai_theme_for(request), ImageStyle.VIBRANT)
        return image or None


class GeminiImageAdapter(AIImageAdapter):
    """Gemini native image generation, via an API key or Vertex AI."""

    name = "gemini"

    STYLE_DESCRIPTIONS: Dict[ImageStyle, str] = {
        ImageStyle.VIBRANT: "vibrant colors, high contrast, eye-catching",
        ImageStyle.MINIMAL: "minimalist, soft colors, clean aesthetic",
        ImageStyle.ARTISTIC: "artistic, painterly, dreamy atmosphere",
    }

    def __init__(self, api_key: Optional[str] = None, project_id: Optional[str] = None,
                 location: str = "us-central1", model_name: str = "gemini-2.5-flash-image",
                 use_vertex: bool = False, client: Optional[genai.Client] = None):
        super().__init__()
        self.api_key = api_key
        self.project_id = project_id
        self.use_vertex = use_vertex
        self.location = location
        self.model_name = model_name
        self._client = client
        self._owns_client = client is None

    def is_available(self) -> bool:
        # Vertex AI is opt-in; a Google Cloud project alone is not an image credential
        return bool(self.api_key or self._client or (self.use_vertex and self.project_id))

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aio.aclose()
            self._client = None
            self.logger.info("[gemini] client closed")

    def _get_client(self) -> genai.Client:
        if self._client is None:
            if self.api_key:
                self._client = genai.Client(api_key=self.api_key)
            else:
                self._client = genai.Client(vertexai=True, project=self.project_id, location=self.location)
            self.logger.info("[gemini] client initialized", extra={"vertexai": not self.api_key, "model": self.model_name})
        return self._client

    def story_prompt(self, city: str, theme: str, style: ImageStyle) -> str:
        return (
            f"A beautiful {self.STYLE_DESCRIPTIONS[style]} travel background image of {city}, "
            f"featuring {theme}. Perfect for a social media story. No text, no people, just stunning "
            f"scenery. Professional travel photography style, Instagram-worthy."
        )

    def day_prompt(self, city: str, day_number: int, theme: str, activities: List[str]) -> str:
        activity_context = ", ".join(activities[:3]) or "local highlights"
        return (
            f"A beautiful travel background image for day {day_number} of a trip to {city}: {theme}. "
            f"Evoke {activity_context}. Vertical composition for a social media story, warm inviting "
            f"light. No text, no people, just stunning scenery. Professional travel photography style."
        )

    async def _generate(self, prompt: str, aspect_ratio: str = STORY_ASPECT_RATIO) -> str:
        if not self.is_available():
            raise ImageProviderError("Image generation is not configured. Please add GEMINI_API_KEY or enable GEMINI_USE_VERTEX.")
        client = self._get_client()
        response = await client.aio.models.generate_content(
            model=self.model_name,
            contents=[prompt],
            config=types.GenerateContentConfig(
                response_modalities=["IMAGE"],
                image_config=types.ImageConfig(aspect_ratio=aspect_ratio),
            ),
        )
        for candidate in response.candidates or []:
            parts = candidate.content.parts if candidate.content else None
            for part in parts or []:
                inline = part.inline_data
                if not inline or not inline.data:
                    continue
                if not (inline.mime_type or "image/png").startswith("image/"):
                    continue
                data = inline.data
                if isinstance(data, str):
                    return data
                return base64.b64encode(data).decode("ascii")
        raise ImageProviderError("No images were generated")


class SeedreamImageAdapter(AIImageAdapter, HttpImageAdapter):
    """Seedream text-to-image hosted on fal.ai (synchronous run endpoint)."""

    name = "seedream"

    STYLE_DESCRIPTIONS: Dict[ImageStyle, str] = {
        ImageStyle.VIBRANT: "rich saturated colors, golden hour warm lighting, professional DSLR quality",
        ImageStyle.MINIMAL: "clean elegant composition, soft natural lighting, modern aesthetic",
        ImageStyle.ARTISTIC: "cinematic color grading, dramatic atmosphere, editorial photography style",
    }

    IMAGE_SIZES: Dict[str, object] = {
        "9:16": {"width": 1080, "height": 1920},
        "1:1": "square_hd",
        "16:9": "landscape_16_9",
    }

    def __init__(self, api_key: Optional[str], endpoint: str,
                 http_client: Optional[httpx.AsyncClient] = None, timeout: float = 60.0):
        HttpImageAdapter.__init__(self, http_client=http_client, timeout=timeout)
        self.api_key = api_key
        self.endpoint = endpoint

    def is_available(self) -> bool:
        return bool(self.api_key)

    def story_prompt(self, city: str, theme: str, style: ImageStyle) -> str:
        return (
            f"Professional travel photograph of {city}: {theme}.\n"
            f"Breathtaking view of {city}'s most iconic landmark or scenery.\n"
            f"{self.STYLE_DESCRIPTIONS[style]}, inviting wanderlust feeling.\n"
            "Shot on professional camera, 24mm wide angle, perfect exposure.\n"
            "Vertical portrait orientation, rule of thirds, strong leading lines.\n"
            "Golden hour natural light, warm tones, atmospheric haze.\n"
            "8K resolution, tack sharp focus, vibrant realistic colors, HDR.\n"
            "NO text, words, letters, watermarks. NO people or crowds. NO logos. "
            "Pure landscape/cityscape photography."
        )

    def day_prompt(self, city: str, day_number: int, theme: str, activities: List[str]) -> str:
        activity_context = ", ".join(activities[:3])
        return (
            f"Professional travel photograph showcasing Day {day_number} in {city}: {theme}.\n"
            f"Beautiful atmospheric shot representing {activity_context} in {city}.\n"
            "Warm inviting travel photography, Instagram-worthy composition, editorial quality.\n"
            "Exciting adventure feeling, discovery and exploration vibes.\n"
            "Professional camera, perfect exposure, sharp details.\n"
            "Vertical portrait, balanced framing, depth and layers.\n"
            "Natural ambient light, warm color temperature.\n"
            "NO text, words, letters, watermarks. NO people or crowds. NO logos. "
            "Pure scenic/architectural photography."
        )

    async def _generate(self, prompt: str, aspect_ratio: str = STORY_ASPECT_RATIO) -> str:
        if not self.api_key:
            raise ImageProviderError("Seedream is not configured. Please add FAL_KEY.")

        payload = {
            "prompt": prompt,
            "image_size": self.IMAGE_SIZES.get(aspect_ratio, self.IMAGE_SIZES[STORY_ASPECT_RATIO]),
            "num_images": 1,
            "enable_safety_checker": True,
        }
        resp = await self.http_client.post(
            self.endpoint,
            headers={"Authorization": f"Key {self.api_key}"},
            json=payload,
        )
        if resp.status_code != 200:
            raise ImageProviderError(f"Seedream request failed: {resp.status_code} {resp.text[:200]}")

        images = (resp.json() or {}).get("images") or []
        image_url = (images[0] or {}).get("url") if images else None
        if not image_url:
            raise ImageProviderError("No images returned from Seedream")

        self.logger.debug("[seedream] image generated, fetching", extra={"url": image_url[:80]})
        image_resp = await self.http_client.get(image_url)
        if image_resp.status_code != 200:
            raise ImageProviderError(f"Failed to fetch Seedream image: {image_resp.status_code}")
        return base64.b64encode(image_resp.content).decode("ascii")


# ---------------------------------------------------------------------------
# Photo sources
# ---------------------------------------------------------------------------

class TripAdvisorPhotoAdapter(HttpImageAdapter):
    """Real location photos from the TripAdvisor Content API."""

    name = "tripadvisor"
    kind = ImageSourceKind.LOCATION_PHOTO

    BASE_URL = "https://api.content.tripadvisor.com/api/v1"
    DEFAULT_THEMES = {
        SlideType.COVER: "landmark",
        SlideType.SUMMARY: "scenery",
        SlideType.DAY: "travel",
    }

    def __init__(self, api_key: Optional[str], http_client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 20.0, rng: Optional[random.Random] = None):
        super().__init__(http_client=http_client, timeout=timeout, rng=rng)
        self.api_key = api_key

    def is_available(self) -> bool:
        return bool(self.api_key)

    async def search_location(self, query: str, category: str = "geos") -> Optional[str]:
        """Return the first matching location_id, or None."""
        resp = await self.http_client.get(
            f"{self.BASE_URL}/location/search",
            params={"key": self.api_key, "searchQuery": query, "category": category, "language": "en"},
            headers={"Accept": "application/json"},
        )
        if resp.status_code != 200:
            self.logger.warning(f"[tripadvisor] search error: {resp.status_code}", extra={"query": query})
            return None
        locations = (resp.json() or {}).get("data") or []
        if not locations:
            return None
        location_id = locations[0].get("location_id")
        return str(location_id) if location_id else None

    async def get_photos(self, location_id: str) -> List[str]:
        """Largest available URL for each photo of a location."""
        resp = await self.http_client.get(
            f"{self.BASE_URL}/location/{location_id}/photos",
            params={"key": self.api_key, "language": "en"},
            headers={"Accept": "application/json"},
        )
        if resp.status_code != 200:
            self.logger.warning(f"[tripadvisor] photos error: {resp.status_code}", extra={"location_id": location_id})
            return []
        urls: List[str] = []
        for photo in (resp.json() or {}).get("data") or []:
            images = (photo or {}).get("images") or {}
            for size in ("original", "large", "medium"):
                url = (images.get(size) or {}).get("url")
                if url:
                    urls.append(url)
                    break
        return urls

    async def city_image(self, city: str) -> Optional[str]:
        location_id = await self.search_location(city, "geos")
        if not location_id:
            return None
        photos = await self.get_photos(location_id)
        return self._pick(photos) if photos else None

    async def themed_image(self, city: str, theme: str, exclude_urls: Iterable[str] = ()) -> Optional[str]:
        excluded = set(exclude_urls)
        location_id = await self.search_location(f"{theme} {city}", "attractions")
        if location_id:
            photos = [url for url in await self.get_photos(location_id) if url not in excluded]
            if photos:
                return self._pick(photos)
        return await self.city_image(city)

    async def try_generate(self, request: ImageRequest) -> Optional[str]:
        if not self.is_available():
            return None
        theme = request.theme or self.DEFAULT_THEMES.get(request.slide_type, "travel")
        return await self.themed_image(request.city, theme, request.exclude_urls)


class PexelsPhotoAdapter(HttpImageAdapter):
    """Portrait stock photos from the Pexels search API."""

    name = "pexels"
    kind = ImageSourceKind.STOCK_THEMED

    SEARCH_URL = "https://api.pexels.com/v1/search"
    DEFAULT_THEMES = {
        SlideType.COVER: "cityscape",
        SlideType.SUMMARY: "travel scenery",
        SlideType.DAY: "travel",
    }

    def __init__(self, api_key: Optional[str], http_client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 20.0, rng: Optional[random.Random] = None):
        super().__init__(http_client=http_client, timeout=timeout, rng=rng)
        self.api_key = api_key

    def is_available(self) -> bool:
        return bool(self.api_key)

    async def search(self, query: str, orientation: str = "portrait",
                     exclude_urls: Iterable[str] = ()) -> Optional[str]:
        resp = await self.http_client.get(
            self.SEARCH_URL,
            params={"query": query, "orientation": orientation, "per_page": 10},
            headers={"Authorization": self.api_key or ""},
        )
        if resp.status_code != 200:
            self.logger.warning(f"[pexels] search error: {resp.status_code}", extra={"query": query})
            return None
        size = "portrait" if orientation == "portrait" else "large2x"
        excluded = set(exclude_urls)
        candidates = []
        for photo in (resp.json() or {}).get("photos") or []:
            url = ((photo or {}).get("src") or {}).get(size)
            if url and url not in excluded:
                candidates.append(url)
        return self._pick(candidates) if candidates else None

    async def themed_image(self, city: str, theme: str, exclude_urls: Iterable[str] = ()) -> Optional[str]:
        excluded = list(exclude_urls)
        for query in (f"{city} {theme}", f"{theme} travel", theme):
            url = await self.search(query, "portrait", excluded)
            if url:
                return url
        return None

    async def try_generate(self, request: ImageRequest) -> Optional[str]:
        if not self.is_available():
            return None
        theme = request.theme or self.DEFAULT_THEMES.get(request.slide_type, "travel")
        return await self.themed_image(request.city, theme, request.exclude_urls)


# ---------------------------------------------------------------------------
# Curated stock table (terminal fallback)
# ---------------------------------------------------------------------------

UNSPLASH_URL = "https://images.unsplash.com/{photo_id}?w=1080&h=1920&fit=crop&fm=jpg"

CITY_PHOTO_IDS: Dict[str, List[str]] = {
    "seoul": [
        "photo-1534274988757-a28bf1a57c17",
        "photo-1517154421773-0529f29ea451",
        "photo-1546874177-9e664107314e",
        "photo-1538485399081-7191377e8241",
        "photo-1583400225586-0e417f4eb47f",
        "photo-1601621915196-2621bfb0cd6e",
        "photo-1578037571214-25e07a4c539d",
        "photo-1548115184-bc6544d06a58",
    ],
    "tokyo": [
        "photo-1540959733332-eab4deabeeaf",
        "photo-1503899036084-c55cdd92da26",
        "photo-1536098561742-ca998e48cbcc",
        "photo-1549693578-d683be217e58",
        "photo-1542051841857-5f90071e7989",
        "photo-1480796927426-f609979314bd",
        "photo-1554797589-7241bb691973",
        "photo-1513407030348-c983a97b98d8",
    ],
    "bangkok": [
        "photo-1508009603885-50cf7c579365",
        "photo-1563492065599-3520f775eeed",
        "photo-1528181304800-259b08848526",
        "photo-1552465011-b4e21bf6e79a",
        "photo-1519451241324-20b4ea2c4220",
        "photo-1559592413-7cec4d0cae2b",
        "photo-1583531352515-8884d2440943",
        "photo-1569959220744-ff553533f492",
    ],
    "singapore": [
        "photo-1525625293386-3f8f99389edd",
        "photo-1496939376851-89342e90adcd",
        "photo-1565967511849-76a60a516170",
        "photo-1508964942454-1a56651d54ac",
        "photo-1533279443086-d1c19a186416",
        "photo-1524236122334-53dcfd5e2152",
        "photo-1555396273-367ea4eb4db5",
        "photo-1582878826629-29b7ad1cdc43",
    ],
    "kyoto": [
        "photo-1493976040374-85c8e12f0c0e",
        "photo-1545569341-9eb8b30979d9",
        "photo-1524413840807-0c3cb6fa808d",
        "photo-1528360983277-13d401cdc186",
        "photo-1558862107-d49ef2a04d72",
        "photo-1504109586057-7a2ae83d1338",
        "photo-1576675466969-38eeae4b41f6",
        "photo-1548755336-3cef2e4d7a39",
    ],
    "osaka": [
        "photo-1590559899731-a382839e5549",
        "photo-1574236170880-fba81e6aa76b",
        "photo-1556640530-f7b32680faeb",
        "photo-1623095564025-3c523a37ad8e",
        "photo-1583247832076-43c893be3df7",
        "photo-1589452271712-3ce0e1b1e0a6",
        "photo-1536722203615-3c5cf0ddc816",
        "photo-1590417975079-e6fa853e2fd4",
    ],
    "taipei": [
        "photo-1470004914212-05527e49370b",
        "photo-1530093884857-c0b7e9320c2d",
        "photo-1517030330234-94c4fb948ebc",
        "photo-1508108712903-49b7ef9b1df8",
        "photo-1552912956-bb00b0e1f2d5",
        "photo-1619535780084-0d18e8ccac64",
        "photo-1529684584403-e3c3f94b17b8",
        "photo-1498711333025-ba569e42e67b",
    ],
    "busan": [
        "photo-1573492600965-75c7bcc8dfe0",
        "photo-1596073419798-c3edbc40e194",
        "photo-1599571234909-29ed5d1321d6",
        "photo-1578037571214-25e07a4c539d",
        "photo-1585805345498-16fbd43d73ce",
        "photo-1595855388765-2e3a62e5de28",
        "photo-1622441732210-e0805b3df84e",
        "photo-1573497620053-ea5300f94f21",
    ],
    "hong kong": [
        "photo-1536599018102-9f803c979b13",
        "photo-1532274402911-5a369e4c4bb5",
        "photo-1536098561742-ca998e48cbcc",
        "photo-1518509562904-e7ef99cdcc86",
        "photo-1594974938498-04a68bbd6f34",
        "photo-1517144447511-aebb25bbc5fa",
        "photo-1563950708-79b66ead94b6",
        "photo-1506973035872-a4ec16b8e8d9",
    ],
    "hanoi": [
        "photo-1583417319070-4a69db38a482",
        "photo-1555921015-5532091f6026",
        "photo-1509030450996-dd1a26dda07a",
        "photo-1573503555498-c463f94ddef2",
        "photo-1559592413-7cec4d0cae2b",
        "photo-1559564484-e48b3e040ff4",
        "photo-1600398232242-8cb5d0407cf1",
        "photo-1535952288335-3a8b0c6d3c84",
    ],
    "ho chi minh": [
        "photo-1583417319070-4a69db38a482",
        "photo-1557750255-c76072572da2",
        "photo-1579515369459-ce22a804fadc",
        "photo-1559592413-7cec4d0cae2b",
        "photo-1576079546721-38caf184e484",
        "photo-1616595254674-cf0eb0e04e3b",
        "photo-1562740083-6c5285de47ca",
        "photo-1571167366136-b57e07761625",
    ],
    "chiang mai": [
        "photo-1569949381669-ecf31ae8e614",
        "photo-1512553539922-56d8c63b20a7",
        "photo-1547283024-c3eef988c6f9",
        "photo-1590057823881-de3cc2680dc6",
        "photo-1570789210967-2cac24ba8148",
        "photo-1539638831901-22c59aa9fd3b",
        "photo-1569154941061-e231b4725ef1",
        "photo-1568704847210-d59eed75d389",
    ],
    "kuala lumpur": [
        "photo-1596422846543-75c6fc197f07",
        "photo-1571613316887-6f8d5cbf7ef7",
        "photo-1508093893610-52c500ce31c0",
        "photo-1556012643-cf2f2c578b87",
        "photo-1609703048519-2ef4a6db64e2",
        "photo-1554345155-e36e9be8e445",
        "photo-1572437495782-9b79b4e50e33",
        "photo-1580734200710-89e3e64f73e8",
    ],
    "bali": [
        "photo-1537996194471-e657df975ab4",
        "photo-1573790387438-4da905039392",
        "photo-1555400038-63f5ba517a47",
        "photo-1552733407-5d5c46c3bb3b",
        "photo-1539367628448-4bc5c9d171c8",
        "photo-1558005137-d9619a5c539f",
        "photo-1577717903315-1691ae25ab3f",
        "photo-1604928141064-207cea6f571f",
    ],
}

CITY_ALIASES: Dict[str, str] = {
    "ho chi minh city": "ho chi minh",
    "saigon": "ho chi minh",
    "ubud": "bali",
}

DEFAULT_PHOTO_IDS: List[str] = [
    "photo-1488646953014-85cb44e25828",
    "photo-1507608616759-54f48f0af0ee",
    "photo-1469854523086-cc02fe5d8800",
    "photo-1476514525535-07fb3b4ae5f1",
    "photo-1500835556837-99ac94a94552",
    "photo-1501785888041-af3ef285b470",
    "photo-1502920917128-1aa500764cbd",
    "photo-1530789253388-582c481c54b0",
]

CITY_IMAGES: Dict[str, List[str]] = {
    city: [UNSPLASH_URL.format(photo_id=photo_id) for photo_id in photo_ids]
    for city, photo_ids in CITY_PHOTO_IDS.items()
}
DEFAULT_TRAVEL_IMAGES: List[str] = [UNSPLASH_URL.format(photo_id=photo_id) for photo_id in DEFAULT_PHOTO_IDS]


def _stable_index(text: str, size: int) -> int:
    digest = hashlib.md5(text.encode("utf-8")).hexdigest()
    return int(digest, 16) % size


class UnsplashStockAdapter(ImageProviderAdapter):
    """Curated Unsplash photos per city; never fails."""

    name = "unsplash"
    kind = ImageSourceKind.STOCK_DETERMINISTIC
    DEFAULT_THEME = "travel landmark"

    def match_city(self, city: str) -> Optional[str]:
        """Exact match first, then the longest table key contained in the name."""
        normalized = " ".join((city or "").lower().split())
        if not normalized:
            return None
        keys = list(CITY_IMAGES) + list(CITY_ALIASES)
        if normalized in keys:
            return CITY_ALIASES.get(normalized, normalized)
        contained = [key for key in keys if key in normalized]
        if not contained:
            return None
        best = max(contained, key=len)
        return CITY_ALIASES.get(best, best)

    def images_for(self, city: str) -> List[str]:
        matched = self.match_city(city)
        return CITY_IMAGES[matched] if matched else DEFAULT_TRAVEL_IMAGES

    def pick(self, city: str, theme: Optional[str] = None, exclude_urls: Iterable[str] = (),
             slot_index: Optional[int] = None) -> str:
        matched = self.match_city(city)
        images = CITY_IMAGES[matched] if matched else DEFAULT_TRAVEL_IMAGES

        if slot_index is not None:
            # One pool entry per slide of the same story
            excluded = set(exclude_urls)
            available = [url for url in images if url not in excluded]
            pool = available or images
            return pool[slot_index % len(pool)]

        if matched:
            return images[_stable_index(theme or self.DEFAULT_THEME, len(images))]
        return self.rng.choice(images)

    async def try_generate(self, request: ImageRequest) -> Optional[str]:
        return self.pick(
            request.city,
            request.theme or self.DEFAULT_THEME,
            request.exclude_urls,
            request.slot_index,
        )
