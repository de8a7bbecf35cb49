from datetime import datetime, timedelta

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import FakeAIAdapter, FakeBlobStore, FakeImageAdapter
from src.api import main
from src.api.main import app
from src.models.image_models import ImageSourceKind
from src.services.image_cache import ImageCache
from src.services.image_providers import CITY_IMAGES
from src.services.story_background_service import StoryBackgroundService
from src.services.story_renderer import StoryRenderer
from src.utils.config import ProviderAvailability

client = TestClient(app)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
AUTH = {"Authorization": "Bearer test-token"}


def _service(adapters=(), store=None, availability=None):
    return StoryBackgroundService(list(adapters), ImageCache(store), availability=availability or ProviderAvailability())


def _offline_renderer():
    transport = httpx.MockTransport(lambda request: httpx.Response(404))
    return StoryRenderer(http_client=httpx.AsyncClient(transport=transport))


@pytest.fixture
def overrides(fake_fs):
    """Signed-in as user-1 (Pro) against in-memory Firestore and an offline renderer"""
    app.dependency_overrides.clear()
    main.story_background_rate_limits.clear()
    app.dependency_overrides[main.get_current_user_id] = lambda: "user-1"
    app.dependency_overrides[main.get_firestore_manager] = lambda: fake_fs
    app.dependency_overrides[main.get_story_renderer] = _offline_renderer
    yield app.dependency_overrides
    app.dependency_overrides.clear()
    main.story_background_rate_limits.clear()


def _use_service(overrides, service):
    overrides[main.get_optional_background_service] = lambda: service
    return service


def test_health_check():
    """Test health check endpoint"""
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert "status" in data
    assert "timestamp" in data
    assert set(data["services"]) == {"image_sources", "firestore", "firebase_admin", "story_renderer"}


def test_root_endpoint():
    """Test root endpoint"""
    response = client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert data["message"] == "Trip Story Images API"


def test_sources_without_service_reads_settings():
    response = client.get("/api/images/story-background")
    assert response.status_code == 200
    sources = response.json()["sources"]
    assert sources["unsplash"] is True
    assert set(sources) == {"ai", "gemini", "seedream", "tripadvisor", "pexels", "unsplash"}


def test_sources_from_service(overrides):
    _use_service(overrides, _service(availability=ProviderAvailability(seedream=True, pexels=True)))
    sources = client.get("/api/images/story-background").json()["sources"]
    assert sources["ai"] is True
    assert sources["seedream"] is True
    assert sources["tripadvisor"] is False


# --- POST /api/images/story-background ---

def test_story_background_requires_auth():
    """No bearer token, no background"""
    response = client.post("/api/images/story-background", json={"type": "cover", "city": "Seoul"})
    assert response.status_code == 401


def test_story_background_pro_without_ai_credentials(overrides):
    """Pro tier asks for AI but no AI provider is configured: photo sources answer"""
    pexels = FakeImageAdapter("pexels", ImageSourceKind.STOCK_THEMED, result="https://images.pexels.com/seoul.jpg")
    _use_service(overrides, _service([pexels], availability=ProviderAvailability(pexels=True)))

    response = client.post("/api/images/story-background", headers=AUTH,
                           json={"type": "cover", "city": "Seoul", "preferAI": True})

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["source"] == "pexels"
    assert data["image"] == "https://images.pexels.com/seoul.jpg"
    assert data["aiAvailable"] is False
    assert data["pexelsAvailable"] is True
    assert data["tripAdvisorAvailable"] is False
    assert "provider" not in data


def test_story_background_falls_through_to_stock(overrides):
    _use_service(overrides, _service())
    response = client.post("/api/images/story-background", headers=AUTH,
                           json={"type": "day", "city": "Tokyo", "dayNumber": 2, "theme": "Ramen"})
    assert response.status_code == 200
    data = response.json()
    assert data["source"] == "unsplash"
    assert data["image"] in CITY_IMAGES["tokyo"]


def test_story_background_premium_uses_gemini(overrides):
    overrides[main.get_current_user_id] = lambda: "premium-user"
    store = FakeBlobStore()
    _use_service(overrides, _service([FakeAIAdapter("gemini"), FakeAIAdapter("seedream")], store=store,
                                     availability=ProviderAvailability(gemini=True, seedream=True)))

    response = client.post("/api/images/story-background", headers=AUTH,
                           json={"type": "cover", "city": "Seoul", "cacheKey": "trip-7-cover"})

    data = response.json()
    assert data["source"] == "ai"
    assert data["provider"] == "gemini"
    assert data["aiAvailable"] is True
    assert data["image"] == "https://storage.example.com/story-backgrounds/trip-7-cover.png"
    assert "story-backgrounds/trip-7-cover.png" in store.objects


def test_story_background_cache_hit(overrides):
    store = FakeBlobStore()
    store.objects["story-backgrounds/trip-1-cover.png"] = b"png"
    _use_service(overrides, _service(store=store))

    response = client.post("/api/images/story-background", headers=AUTH,
                           json={"type": "cover", "city": "Seoul", "cacheKey": "trip-1-cover"})

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "image": "https://storage.example.com/story-backgrounds/trip-1-cover.png",
        "source": "cache",
        "cached": True,
    }


def test_story_background_blank_city(overrides):
    _use_service(overrides, _service())
    response = client.post("/api/images/story-background", headers=AUTH, json={"type": "cover", "city": "   "})
    assert response.status_code == 400
    assert response.json()["error"] == "city is required"


def test_story_background_rate_limit(overrides):
    """20 requests per user per minute"""
    _use_service(overrides, _service())
    for _ in range(20):
        response = client.post("/api/images/story-background", headers=AUTH, json={"city": "Seoul"})
        assert response.status_code == 200
    response = client.post("/api/images/story-background", headers=AUTH, json={"city": "Seoul"})
    assert response.status_code == 429


def test_rate_limit_forgets_idle_users(overrides):
    """Users with no request in the last minute are dropped from the tracker"""
    stale = datetime.utcnow() - timedelta(minutes=5)
    main.story_background_rate_limits["idle-user"] = [stale]
    main.story_background_rate_limits["user-1"] = [stale, stale]

    assert main.check_story_background_rate_limit("user-1") is True

    assert "idle-user" not in main.story_background_rate_limits
    assert len(main.story_background_rate_limits["user-1"]) == 1


def test_story_background_service_unavailable(overrides):
    overrides[main.get_optional_background_service] = lambda: None
    response = client.post("/api/images/story-background", headers=AUTH, json={"city": "Seoul"})
    assert response.status_code == 503


# --- GET /api/itineraries/{id}/story ---

def _assert_png(response):
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert response.content.startswith(PNG_SIGNATURE)


def test_story_slide_for_unknown_itinerary_is_placeholder(overrides):
    _assert_png(client.get("/api/itineraries/does-not-exist/story"))


@pytest.mark.parametrize("query", ["slide=cover", "slide=day&day=1", "slide=day&day=2", "slide=summary"])
def test_story_slides_render(overrides, query):
    _assert_png(client.get(f"/api/itineraries/trip-1/story?{query}"))


@pytest.mark.parametrize("query", ["slide=day&day=99", "slide=day&day=abc", "slide=credits", "slide=day&day=0"])
def test_invalid_story_slides_still_render(overrides, query):
    _assert_png(client.get(f"/api/itineraries/trip-1/story?{query}"))


def test_story_slide_without_firestore(overrides):
    overrides[main.get_firestore_manager] = lambda: None
    _assert_png(client.get("/api/itineraries/trip-1/story"))


# --- AI backgrounds ---

def test_get_ai_backgrounds(overrides, fake_fs):
    fake_fs.documents["trip-1"]["ai_backgrounds"] = {"cover": "https://cdn.example.com/c.png"}
    response = client.get("/api/itineraries/trip-1/ai-backgrounds")
    assert response.status_code == 200
    assert response.json() == {"success": True, "backgrounds": {"cover": "https://cdn.example.com/c.png"}}

    assert client.get("/api/itineraries/nope/ai-backgrounds").status_code == 404


def test_patch_ai_backgrounds_merges(overrides, fake_fs):
    fake_fs.documents["trip-1"]["ai_backgrounds"] = {"summary": "https://cdn.example.com/s.png"}

    response = client.patch("/api/itineraries/trip-1/ai-backgrounds", headers=AUTH, json={
        "cover": "https://cdn.example.com/cover.png",
        "days": {"1": "https://cdn.example.com/d1.png"},
    })

    assert response.status_code == 200
    assert response.json()["backgrounds"] == {
        "summary": "https://cdn.example.com/s.png",
        "cover": "https://cdn.example.com/cover.png",
        "day1": "https://cdn.example.com/d1.png",
    }


def test_patch_ai_backgrounds_rejects_bad_images(overrides):
    response = client.patch("/api/itineraries/trip-1/ai-backgrounds", headers=AUTH,
                            json={"cover": "data:image/png;base64,short"})
    assert response.status_code == 400
    assert response.json()["error"]["errors"]


def test_patch_ai_backgrounds_empty_update(overrides):
    response = client.patch("/api/itineraries/trip-1/ai-backgrounds", headers=AUTH, json={})
    assert response.status_code == 400


def test_patch_ai_backgrounds_ownership(overrides):
    body = {"cover": "https://cdn.example.com/cover.png"}
    assert client.patch("/api/itineraries/trip-2/ai-backgrounds", headers=AUTH, json=body).status_code == 403
    assert client.patch("/api/itineraries/nope/ai-backgrounds", headers=AUTH, json=body).status_code == 404


def test_patch_ai_backgrounds_without_firestore(overrides):
    overrides[main.get_firestore_manager] = lambda: None
    response = client.patch("/api/itineraries/trip-1/ai-backgrounds", headers=AUTH,
                            json={"cover": "https://cdn.example.com/cover.png"})
    assert response.status_code == 503


def test_generate_ai_backgrounds(overrides, fake_fs):
    _use_service(overrides, _service())

    response = client.post("/api/itineraries/trip-1/ai-backgrounds/generate", headers=AUTH, json={"preferAI": False})

    assert response.status_code == 200
    data = response.json()
    assert data["itinerary_id"] == "trip-1"
    assert data["saved"] is True
    assert [s["slide"] for s in data["slides"]] == ["cover", "day1", "day2", "summary"]
    assert all(s["source"] == "unsplash" for s in data["slides"])
    assert fake_fs.documents["trip-1"]["ai_backgrounds"] == data["backgrounds"]


def test_generate_ai_backgrounds_without_body(overrides):
    _use_service(overrides, _service())
    response = client.post("/api/itineraries/trip-1/ai-backgrounds/generate", headers=AUTH)
    assert response.status_code == 200
    assert set(response.json()["backgrounds"]) == {"cover", "day1", "day2", "summary"}


def test_generate_ai_backgrounds_errors(overrides):
    _use_service(overrides, _service())
    assert client.post("/api/itineraries/trip-2/ai-backgrounds/generate", headers=AUTH).status_code == 403
    assert client.post("/api/itineraries/nope/ai-backgrounds/generate", headers=AUTH).status_code == 404

    overrides[main.get_optional_background_service] = lambda: None
    assert client.post("/api/itineraries/trip-1/ai-backgrounds/generate", headers=AUTH).status_code == 503


# --- preview and tier ---

def test_preview_itinerary():
    content = "Hidden gems in Busan: beaches and seafood\n**Day 1: Haeundae**\n- Dongbaek Island: coastal walk"
    response = client.post("/api/itineraries/preview", json={"content": content})
    assert response.status_code == 200
    data = response.json()
    assert data["city"] == "Busan"
    assert data["days"][0]["activities"][0]["name"] == "Dongbaek Island"


def test_user_tier(overrides):
    response = client.get("/api/user/tier", headers=AUTH)
    assert response.status_code == 200
    data = response.json()
    assert data["tier"] == "pro"
    assert data["features"]["image_provider"] == "seedream"
