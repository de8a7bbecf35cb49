import asyncio

import httpx

from conftest import FAKE_IMAGE_B64, FakeAIAdapter, FakeBlobStore
from src.models.image_models import ImageRequest, ImageSourceKind, SlideType
from src.models.itinerary_models import DayPlan, Itinerary
from src.services.entitlement_service import EntitlementGate, SubscriptionTier
from src.services.image_cache import ImageCache
from src.services.image_providers import ImageProviderError, UnsplashStockAdapter, CITY_IMAGES
from src.services.story_background_service import (
    StoryBackgroundService,
    build_story_background_service,
    slot_index_for,
    storage_key_for,
    story_requests_for,
)
from src.utils.config import ProviderAvailability, Settings

ALL_SOURCES = ProviderAvailability(gemini=True, seedream=True, tripadvisor=True, pexels=True)
NO_AI = ProviderAvailability(gemini=False, seedream=False, tripadvisor=True, pexels=True)


def _service(adapters, store=None, availability=ALL_SOURCES, batch_size=2):
    cache = ImageCache(store)
    return StoryBackgroundService(adapters, cache, EntitlementGate(), availability, batch_size=batch_size)


def _cover(city="Seoul", **kwargs):
    return ImageRequest(slide_type=SlideType.COVER, city=city, **kwargs)


def test_free_tier_never_calls_ai(make_adapter):
    gemini = make_adapter("gemini", ImageSourceKind.AI, result=FAKE_IMAGE_B64)
    seedream = make_adapter("seedream", ImageSourceKind.AI, result=FAKE_IMAGE_B64)
    pexels = make_adapter("pexels", result="https://images.pexels.com/1.jpg")
    service = _service([gemini, seedream, pexels])

    result = asyncio.run(service.resolve(_cover(), SubscriptionTier.FREE))

    assert result.source == "pexels"
    assert result.ai_available is False
    assert gemini.calls == [] and seedream.calls == []


def test_pro_tier_without_ai_credentials_uses_photo_sources(make_adapter):
    tripadvisor = make_adapter("tripadvisor", ImageSourceKind.LOCATION_PHOTO, result="https://media.tacdn.com/seoul.jpg")
    service = _service([tripadvisor], availability=NO_AI)

    result = asyncio.run(service.resolve(_cover(prefer_ai=True), SubscriptionTier.PRO))

    assert result.source == "tripadvisor"
    assert result.provider is None
    assert result.ai_available is False


def test_prefer_ai_false_skips_ai(make_adapter):
    seedream = make_adapter("seedream", ImageSourceKind.AI, result=FAKE_IMAGE_B64)
    service = _service([seedream])

    result = asyncio.run(service.resolve(_cover(prefer_ai=False), SubscriptionTier.PRO))

    assert result.source == "unsplash"
    assert seedream.calls == []


def test_tier_selects_preferred_ai_provider(make_adapter):
    gemini = make_adapter("gemini", ImageSourceKind.AI, result=FAKE_IMAGE_B64)
    seedream = make_adapter("seedream", ImageSourceKind.AI, result=FAKE_IMAGE_B64)
    service = _service([gemini, seedream], store=FakeBlobStore())

    pro = asyncio.run(service.resolve(_cover(cache_key="a-cover"), SubscriptionTier.PRO))
    premium = asyncio.run(service.resolve(_cover(cache_key="b-cover"), SubscriptionTier.PREMIUM))

    assert pro.provider == "seedream"
    assert premium.provider == "gemini"
    assert len(seedream.calls) == 1
    assert len(gemini.calls) == 1


def test_preferred_provider_falls_back_to_other_ai(make_adapter):
    seedream = make_adapter("seedream", ImageSourceKind.AI, result=FAKE_IMAGE_B64)
    availability = ProviderAvailability(gemini=False, seedream=True)
    service = _service([seedream], store=FakeBlobStore(), availability=availability)

    result = asyncio.run(service.resolve(_cover(), SubscriptionTier.PREMIUM))

    assert result.source == "ai"
    assert result.provider == "seedream"


def test_ai_result_uploaded_under_cache_key():
    store = FakeBlobStore()
    service = _service([], store=store)
    gemini_like = FakeAIAdapter("gemini")
    service.adapters["gemini"] = gemini_like

    result = asyncio.run(service.resolve(_cover(cache_key="trip-1-cover"), SubscriptionTier.PREMIUM))

    assert result.source == "ai"
    assert result.image == "https://storage.example.com/story-backgrounds/trip-1-cover.png"
    assert "story-backgrounds/trip-1-cover.png" in store.objects
    assert store.content_types["story-backgrounds/trip-1-cover.png"] == "image/png"


def test_ai_result_inlined_when_upload_fails():
    service = _service([], store=FakeBlobStore(fail_uploads=True))
    service.adapters["gemini"] = FakeAIAdapter("gemini")

    result = asyncio.run(service.resolve(_cover(cache_key="trip-1-cover"), SubscriptionTier.PREMIUM))

    assert result.source == "ai"
    assert result.image == f"data:image/png;base64,{FAKE_IMAGE_B64}"


def test_ai_result_inlined_without_blob_store():
    service = _service([], store=None)
    service.adapters["seedream"] = FakeAIAdapter("seedream")

    result = asyncio.run(service.resolve(_cover(), SubscriptionTier.PRO))

    assert result.image.startswith("data:image/png;base64,")


def test_cache_hit_short_circuits_providers(make_adapter):
    store = FakeBlobStore()
    store.objects["story-backgrounds/trip-1-cover.png"] = b"png"
    seedream = make_adapter("seedream", ImageSourceKind.AI, result=FAKE_IMAGE_B64)
    pexels = make_adapter("pexels", result="https://images.pexels.com/1.jpg")
    service = _service([seedream, pexels], store=store)

    result = asyncio.run(service.resolve(_cover(cache_key="trip-1-cover"), SubscriptionTier.PRO))

    assert result.source == "cache"
    assert result.cached is True
    assert result.image == "https://storage.example.com/story-backgrounds/trip-1-cover.png"
    assert seedream.calls == [] and pexels.calls == []


def test_second_request_with_same_cache_key_is_cached():
    store = FakeBlobStore()
    service = _service([], store=store)
    seedream = FakeAIAdapter("seedream")
    service.adapters["seedream"] = seedream

    first = asyncio.run(service.resolve(_cover(cache_key="trip-9-cover"), SubscriptionTier.PRO))
    second = asyncio.run(service.resolve(_cover(cache_key="trip-9-cover"), SubscriptionTier.PRO))

    assert first.source == "ai"
    assert second.source == "cache"
    assert second.image == first.image


def test_only_ai_results_are_cached(make_adapter):
    store = FakeBlobStore()
    pexels = make_adapter("pexels", result="https://images.pexels.com/1.jpg")
    service = _service([pexels], store=store)

    asyncio.run(service.resolve(_cover(cache_key="trip-3-cover"), SubscriptionTier.FREE))

    assert store.objects == {}


def test_provider_failures_cascade_to_next_source(make_adapter):
    seedream = make_adapter("seedream", ImageSourceKind.AI, error=ImageProviderError("quota exceeded"))
    tripadvisor = make_adapter("tripadvisor", ImageSourceKind.LOCATION_PHOTO, error=httpx.ConnectError("boom"))
    pexels = make_adapter("pexels", result=None)
    service = _service([seedream, tripadvisor, pexels], store=FakeBlobStore())

    result = asyncio.run(service.resolve(_cover(), SubscriptionTier.PRO))

    assert result.source == "unsplash"
    assert result.image in CITY_IMAGES["seoul"]
    assert len(seedream.calls) == 1
    assert len(tripadvisor.calls) == 1
    assert len(pexels.calls) == 1


def test_unavailable_sources_are_skipped(make_adapter):
    tripadvisor = make_adapter("tripadvisor", ImageSourceKind.LOCATION_PHOTO, result="https://ta/1.jpg")
    availability = ProviderAvailability(tripadvisor=False, pexels=False)
    service = _service([tripadvisor], availability=availability)

    result = asyncio.run(service.resolve(_cover(), SubscriptionTier.FREE))

    assert result.source == "unsplash"
    assert tripadvisor.calls == []


def test_storage_key_without_cache_key():
    request = ImageRequest(slide_type=SlideType.DAY, city="Seoul", day_number=3, user_id="user-1")
    key = storage_key_for(request)
    assert key.startswith("user-1/day-day3-")
    assert key.rsplit("-", 1)[1].isdigit()


def test_resolve_many_runs_at_most_two_at_once():
    active = 0
    peak = 0

    class SlowAdapter(UnsplashStockAdapter):
        name = "pexels"

        async def try_generate(self, request):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return f"https://images.pexels.com/{request.slot_index}.jpg"

    service = _service([SlowAdapter()], availability=ProviderAvailability(pexels=True))
    requests = [_cover(slot_index=i) for i in range(5)]

    results = asyncio.run(service.resolve_many(requests, SubscriptionTier.FREE))

    assert peak == 2
    assert [r.image for r in results] == [f"https://images.pexels.com/{i}.jpg" for i in range(5)]


def test_resolve_many_falls_back_when_resolution_raises():
    class BrokenCache(ImageCache):
        async def lookup(self, key):
            raise RuntimeError("cache exploded")

    service = StoryBackgroundService([], BrokenCache(None), availability=ProviderAvailability())
    requests = [_cover(cache_key="x", slot_index=0), _cover(slot_index=1)]

    results = asyncio.run(service.resolve_many(requests, SubscriptionTier.FREE))

    assert [r.source for r in results] == ["unsplash", "unsplash"]
    assert results[0].image == CITY_IMAGES["seoul"][0]


def test_story_requests_cover_days_and_summary(fake_fs):
    itinerary = asyncio.run(fake_fs.get_itinerary("trip-1"))

    slides = story_requests_for(itinerary, prefer_ai=True, user_id="user-1")

    assert [key for key, _ in slides] == ["cover", "day1", "day2", "summary"]
    assert [r.cache_key for _, r in slides] == ["trip-1-cover", "trip-1-day1", "trip-1-day2", "trip-1-summary"]
    assert [r.slot_index for _, r in slides] == [0, 1, 2, 3]
    assert slides[1][1].activities == ["Gyeongbokgung Palace", "Gwangjang Market"]


def test_story_slides_get_distinct_stock_images(fake_fs):
    itinerary = asyncio.run(fake_fs.get_itinerary("trip-1"))
    service = _service([], availability=ProviderAvailability())

    slides = story_requests_for(itinerary)
    results = asyncio.run(service.resolve_many([r for _, r in slides], SubscriptionTier.FREE))

    images = [r.image for r in results]
    assert len(set(images)) == len(images)


def test_sources_reports_availability():
    service = _service([], availability=NO_AI)
    assert service.sources() == {
        "ai": False,
        "gemini": False,
        "seedream": False,
        "tripadvisor": True,
        "pexels": True,
        "unsplash": True,
    }


def test_fallback_background_is_stock_image():
    service = _service([])
    assert service.fallback_background("Tokyo", slot_index=2) == CITY_IMAGES["tokyo"][2]

def test_summary_slot_matches_story_slide_slot():
    itinerary = Itinerary(id="trip-9", city="Seoul", days=5, daily_plans=[DayPlan(day=1), DayPlan(day=2)])

    slides = dict(story_requests_for(itinerary))

    assert slides["summary"].slot_index == slot_index_for("summary", None, itinerary) == 3
    assert slides["day2"].slot_index == slot_index_for("day", 2, itinerary)
    assert slides["cover"].slot_index == slot_index_for("cover", None, itinerary) == 0


# --- wiring from settings ---

def _settings(**overrides):
    values = dict(
        GOOGLE_CLOUD_PROJECT="my-firestore-project",
        GEMINI_API_KEY=None,
        GEMINI_USE_VERTEX=False,
        FAL_KEY=None,
        TRIPADVISOR_API_KEY=None,
        PEXELS_API_KEY=None,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def test_firestore_project_alone_is_not_an_ai_credential():
    settings = _settings()
    service = build_story_background_service(settings)

    assert ProviderAvailability.from_settings(settings).ai is False
    assert service.sources()["ai"] is False
    assert service.sources()["gemini"] is False
    assert service.select_ai_adapter(SubscriptionTier.PRO) is None
    assert service.select_ai_adapter(SubscriptionTier.PREMIUM) is None

    result = asyncio.run(service.resolve(_cover(), SubscriptionTier.PRO))
    assert result.source == "unsplash"
    assert result.provider is None
    assert result.ai_available is False
    asyncio.run(service.close())


def test_fal_key_only_routes_ai_tiers_to_seedream():
    service = build_story_background_service(_settings(FAL_KEY="fal-key"))

    assert service.sources()["ai"] is True
    assert service.sources()["seedream"] is True
    assert service.sources()["gemini"] is False
    assert service.select_ai_adapter(SubscriptionTier.PRO).name == "seedream"
    assert service.select_ai_adapter(SubscriptionTier.PREMIUM).name == "seedream"
    assert service.select_ai_adapter(SubscriptionTier.FREE) is None
    asyncio.run(service.close())


def test_gemini_on_vertex_is_opt_in():
    settings = _settings(GEMINI_USE_VERTEX=True)
    service = build_story_background_service(settings)

    assert ProviderAvailability.from_settings(settings).gemini is True
    assert service.select_ai_adapter(SubscriptionTier.PREMIUM).name == "gemini"
    assert ProviderAvailability.from_settings(_settings(GEMINI_API_KEY="gemini-key")).gemini is True
    assert ProviderAvailability.from_settings(_settings(GEMINI_USE_VERTEX=True, GOOGLE_CLOUD_PROJECT="")).gemini is False
    asyncio.run(service.close())
