"""
Story background resolution.

Walks the image sources in a fixed order and returns the first usable image:

    entitlement -> cache (when a cache key is given) -> tier-selected AI
    -> TripAdvisor -> Pexels -> Unsplash (always succeeds)

AI output is uploaded to the blob store so that clients receive a URL rather
than a multi-megabyte base64 payload. Provider failures are logged and the
cascade moves on; a request only ever ends in an image.
"""

import asyncio
import base64
import binascii
import logging
import time
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from src.models.image_models import ImageRequest, ImageResult, SlideType
from src.models.itinerary_models import Itinerary
from src.services.entitlement_service import EntitlementGate, SubscriptionTier
from src.services.image_cache import ImageCache
from src.services.image_providers import (
    AIImageAdapter,
    GeminiImageAdapter,
    ImageProviderAdapter,
    PexelsPhotoAdapter,
    SeedreamImageAdapter,
    TripAdvisorPhotoAdapter,
    UnsplashStockAdapter,
)
from src.utils.config import ProviderAvailability, Settings
from src.utils.storage_manager import BlobStore

AI_PROVIDERS = ("seedream", "gemini")
PHOTO_CASCADE = ("tripadvisor", "pexels")


def storage_key_for(request: ImageRequest) -> str:
    """Blob key for an AI image: the cache key, or a per-user unique name."""
    if request.cache_key:
        return request.cache_key
    suffix = f"-day{request.day_number}" if request.day_number else ""
    owner = request.user_id or "anonymous"
    return f"{owner}/{request.slide_type.value}{suffix}-{int(time.time() * 1000)}"


def slot_index_for(slide: str, day_number: Optional[int], itinerary: Itinerary) -> int:
    """Stock-pool slot of a slide: cover 0, day N, summary one past the parsed days."""
    if slide == SlideType.COVER.value:
        return 0
    if slide == SlideType.DAY.value:
        return day_number or 1
    return len(itinerary.daily_plans) + 1


def story_requests_for(itinerary: Itinerary, prefer_ai: bool = True,
                       user_id: Optional[str] = None) -> List[Tuple[str, ImageRequest]]:
    """Cover, one request per day, then summary; keyed by slide name (cover, day1, ..., summary)."""
    requests: List[Tuple[str, ImageRequest]] = [
        ("cover", ImageRequest(
            slide_type=SlideType.COVER,
            city=itinerary.city,
            prefer_ai=prefer_ai,
            cache_key=f"{itinerary.id}-cover",
            user_id=user_id,
            slot_index=slot_index_for("cover", None, itinerary),
        ))
    ]
    for plan in itinerary.daily_plans:
        requests.append((f"day{plan.day}", ImageRequest(
            slide_type=SlideType.DAY,
            city=itinerary.city,
            theme=plan.theme,
            day_number=plan.day,
            activities=[a.name for a in plan.activities[:3]],
            prefer_ai=prefer_ai,
            cache_key=f"{itinerary.id}-day{plan.day}",
            user_id=user_id,
            slot_index=slot_index_for("day", plan.day, itinerary),
        )))
    requests.append(("summary", ImageRequest(
        slide_type=SlideType.SUMMARY,
        city=itinerary.city,
        prefer_ai=prefer_ai,
        cache_key=f"{itinerary.id}-summary",
        user_id=user_id,
        slot_index=slot_index_for("summary", None, itinerary),
    )))
    return requests


class StoryBackgroundService:
    """Fallback image resolver for story slides."""

    def __init__(
        self,
        adapters: Sequence[ImageProviderAdapter],
        cache: ImageCache,
        gate: Optional[EntitlementGate] = None,
        availability: Optional[ProviderAvailability] = None,
        batch_size: int = 2,
    ):
        self.logger = logging.getLogger(__name__)
        self.adapters: Dict[str, ImageProviderAdapter] = {adapter.name: adapter for adapter in adapters}
        stock = self.adapters.get("unsplash")
        if not isinstance(stock, UnsplashStockAdapter):
            stock = UnsplashStockAdapter()
            self.adapters["unsplash"] = stock
        self.stock: UnsplashStockAdapter = stock
        self.cache = cache
        self.gate = gate or EntitlementGate()
        self.availability = availability or ProviderAvailability(
            **{name: self.adapters[name].is_available() for name in AI_PROVIDERS + PHOTO_CASCADE if name in self.adapters}
        )
        self.batch_size = max(1, batch_size)

    # --- provider selection ---

    def _enabled(self, name: str) -> Optional[ImageProviderAdapter]:
        adapter = self.adapters.get(name)
        if adapter is None or not self.availability.is_enabled(name) or not adapter.is_available():
            return None
        return adapter

    def select_ai_adapter(self, tier: SubscriptionTier) -> Optional[AIImageAdapter]:
        """The tier's preferred AI provider, else the other configured one."""
        preferred = self.gate.preferred_image_provider(tier)
        if not preferred:
            return None
        for name in [preferred] + [p for p in AI_PROVIDERS if p != preferred]:
            adapter = self._enabled(name)
            if isinstance(adapter, AIImageAdapter):
                return adapter
        return None

    def sources(self) -> Dict[str, bool]:
        return self.availability.as_sources()

    # --- resolution ---

    async def _attempt(self, adapter: ImageProviderAdapter, request: ImageRequest) -> Optional[str]:
        try:
            return await adapter.try_generate(request)
        except Exception as e:
            # Best effort: any provider failure moves the cascade on
            self.logger.warning(
                f"[story-bg] {adapter.name} failed: {e}",
                extra={"provider": adapter.name, "error_type": type(e).__name__, "city": request.city},
            )
            return None

    async def _generate_ai(self, adapter: AIImageAdapter, request: ImageRequest) -> Optional[str]:
        self.logger.info(f"[story-bg] attempting AI generation with {adapter.name}")
        encoded = await self._attempt(adapter, request)
        if not encoded:
            return None
        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            self.logger.warning(f"[story-bg] {adapter.name} returned undecodable image data: {e}")
            return None

        url = await self.cache.store(storage_key_for(request), data, "image/png")
        if url:
            self.logger.info("[story-bg] AI image stored", extra={"url": url})
            return url
        self.logger.warning("[story-bg] upload unavailable, returning inline image")
        return f"data:image/png;base64,{encoded}"

    async def resolve(self, request: ImageRequest, tier: SubscriptionTier) -> ImageResult:
        can_use_ai = self.gate.can_use_ai(tier, request.prefer_ai)
        ai_adapter = self.select_ai_adapter(tier) if can_use_ai else None
        provider = ai_adapter.name if ai_adapter else None
        ai_available = ai_adapter is not None

        self.logger.info(
            "[story-bg] request",
            extra={
                "type": request.slide_type.value,
                "city": request.city,
                "day_number": request.day_number,
                "tier": tier.value,
                "can_use_ai": can_use_ai,
                "provider": provider,
                "cache_key": request.cache_key,
            },
        )

        if request.cache_key:
            cached = await self.cache.lookup(request.cache_key)
            if cached:
                return ImageResult(image=cached, source="cache", cached=True,
                                   provider=provider, ai_available=ai_available)

        if ai_adapter is not None:
            image = await self._generate_ai(ai_adapter, request)
            if image:
                return ImageResult(image=image, source="ai", kind=ai_adapter.kind,
                                   provider=provider, ai_available=ai_available)

        for name in PHOTO_CASCADE:
            adapter = self._enabled(name)
            if adapter is None:
                self.logger.debug(f"[story-bg] skipping {name} (not configured)")
                continue
            image = await self._attempt(adapter, request)
            if image:
                self.logger.info(f"[story-bg] {name} image found", extra={"url": image[:80]})
                return ImageResult(image=image, source=name, kind=adapter.kind,
                                   provider=provider, ai_available=ai_available)
            self.logger.info(f"[story-bg] {name} returned no image", extra={"city": request.city})

        return self._stock_result(request, provider=provider, ai_available=ai_available)

    def _stock_result(self, request: ImageRequest, provider: Optional[str] = None,
                      ai_available: bool = False) -> ImageResult:
        image = self.stock.pick(
            request.city,
            request.theme or UnsplashStockAdapter.DEFAULT_THEME,
            request.exclude_urls,
            request.slot_index,
        )
        self.logger.info("[story-bg] using stock fallback", extra={"city": request.city, "type": request.slide_type.value})
        return ImageResult(image=image, source=self.stock.name, kind=self.stock.kind,
                           provider=provider, ai_available=ai_available)

    async def resolve_many(self, requests: Sequence[ImageRequest], tier: SubscriptionTier) -> List[ImageResult]:
        """Resolve in fixed-size batches; AI generation is slow and rate limited upstream."""
        results: List[ImageResult] = []
        for start in range(0, len(requests), self.batch_size):
            batch = list(requests[start:start + self.batch_size])
            outcomes = await asyncio.gather(*(self.resolve(r, tier) for r in batch), return_exceptions=True)
            for request, outcome in zip(batch, outcomes):
                if isinstance(outcome, Exception):
                    self.logger.warning(f"[story-bg] resolution failed, using stock image: {outcome}")
                    outcome = self._stock_result(request)
                results.append(outcome)
        return results

    def fallback_background(self, city: str, theme: Optional[str] = None, slot_index: Optional[int] = None,
                            exclude_urls: Iterable[str] = ()) -> str:
        """Terminal stock image, for callers that cannot wait on the cascade."""
        return self.stock.pick(city, theme or UnsplashStockAdapter.DEFAULT_THEME, exclude_urls, slot_index)

    async def close(self) -> None:
        for adapter in self.adapters.values():
            try:
                await adapter.close()
            except Exception as e:
                self.logger.warning(f"[story-bg] failed to close {adapter.name}: {e}")


def build_story_background_service(settings: Settings, blob_store: Optional[BlobStore] = None) -> StoryBackgroundService:
    """Wire adapters, cache and entitlement gate from configuration."""
    availability = ProviderAvailability.from_settings(settings)
    timeout = settings.PROVIDER_TIMEOUT_SECONDS
    adapters: List[ImageProviderAdapter] = [
        GeminiImageAdapter(
            api_key=settings.GEMINI_API_KEY,
            project_id=settings.GOOGLE_CLOUD_PROJECT or None,
            use_vertex=settings.GEMINI_USE_VERTEX,
            location=settings.GOOGLE_CLOUD_LOCATION,
            model_name=settings.GEMINI_IMAGE_MODEL,
        ),
        SeedreamImageAdapter(settings.FAL_KEY, settings.SEEDREAM_ENDPOINT, timeout=timeout),
        TripAdvisorPhotoAdapter(settings.TRIPADVISOR_API_KEY),
        PexelsPhotoAdapter(settings.PEXELS_API_KEY),
        UnsplashStockAdapter(),
    ]
    cache = ImageCache(
        blob_store,
        prefix=settings.STORY_BACKGROUNDS_PREFIX,
        url_ttl_seconds=settings.IMAGE_URL_CACHE_TTL_SECONDS,
    )
    return StoryBackgroundService(
        adapters,
        cache,
        gate=EntitlementGate(),
        availability=availability,
        batch_size=settings.BACKGROUND_BATCH_SIZE,
    )
