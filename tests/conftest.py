import base64
import json
import random
from typing import Any, Dict, List, Optional

import pytest

from src.models.image_models import ImageRequest, ImageSourceKind
from src.models.itinerary_models import Itinerary
from src.services.entitlement_service import SubscriptionTier, parse_tier
from src.services.image_providers import AIImageAdapter, ImageProviderAdapter
from src.utils.firestore_manager import itinerary_from_document

FAKE_IMAGE_B64 = base64.b64encode(b"\x89PNG\r\n\x1a\nfake-image-bytes").decode("ascii")

SEOUL_ACTIVITIES = [
    {
        "day": 1,
        "theme": "Palaces and markets",
        "activities": [
            {"name": "Gyeongbokgung Palace", "description": "Changing of the guard"},
            {"name": "Gwangjang Market", "description": "Bindaetteok and mayak gimbap"},
        ],
    },
    {
        "day": 2,
        "theme": "Hongdae nights",
        "activities": [{"name": "Hongdae street performances"}],
    },
]


class FakeBlobStore:
    """In-memory blob store with the public URL shape of a real bucket."""

    def __init__(self, fail_uploads: bool = False, fail_exists: bool = False):
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}
        self.fail_uploads = fail_uploads
        self.fail_exists = fail_exists
        self.exists_calls = 0

    async def exists(self, path: str) -> bool:
        self.exists_calls += 1
        if self.fail_exists:
            raise ConnectionError("bucket unreachable")
        return path in self.objects

    async def upload(self, path: str, data: bytes, content_type: str) -> None:
        if self.fail_uploads:
            raise ConnectionError("upload refused")
        self.objects[path] = data
        self.content_types[path] = content_type

    def public_url(self, path: str) -> str:
        return f"https://storage.example.com/{path}"


class FakeFirestoreManager:
    """Stores raw itinerary documents and reads them through the real normalizer."""

    def __init__(self, documents: Optional[Dict[str, Dict[str, Any]]] = None,
                 tiers: Optional[Dict[str, str]] = None):
        self.documents = documents or {}
        self.tiers = tiers or {}
        self.updates: List[Dict[str, str]] = []

    async def get_itinerary(self, itinerary_id: str) -> Optional[Itinerary]:
        data = self.documents.get(itinerary_id)
        if data is None:
            return None
        return itinerary_from_document(itinerary_id, data)

    async def update_ai_backgrounds(self, itinerary_id: str, backgrounds: Dict[str, str]) -> Optional[Dict[str, str]]:
        data = self.documents.get(itinerary_id)
        if data is None:
            return None
        merged = dict(data.get("ai_backgrounds") or {})
        merged.update(backgrounds)
        data["ai_backgrounds"] = merged
        self.updates.append(dict(backgrounds))
        return merged

    async def get_user_tier(self, user_id: str) -> SubscriptionTier:
        return parse_tier(self.tiers.get(user_id))


class FakeImageAdapter(ImageProviderAdapter):
    """Scripted provider: returns `result`, or raises `error`, and records calls."""

    def __init__(self, name: str, kind: ImageSourceKind, result: Optional[str] = None,
                 error: Optional[Exception] = None, available: bool = True):
        super().__init__(rng=random.Random(7))
        self.name = name
        self.kind = kind
        self.result = result
        self.error = error
        self.available = available
        self.calls: List[ImageRequest] = []

    def is_available(self) -> bool:
        return self.available

    async def try_generate(self, request: ImageRequest) -> Optional[str]:
        self.calls.append(request)
        if self.error is not None:
            raise self.error
        return self.result


class FakeAIAdapter(FakeImageAdapter, AIImageAdapter):
    """Scripted AI provider; the resolver only hands AI work to AIImageAdapter instances."""

    def __init__(self, name: str, result: Optional[str] = FAKE_IMAGE_B64, **kwargs):
        super().__init__(name, ImageSourceKind.AI, result=result, **kwargs)


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def fake_fs():
    return FakeFirestoreManager(
        documents={
            "trip-1": {
                "user_id": "user-1",
                "title": "Seoul Hidden Gems",
                "city": "Seoul",
                "days": 2,
                "activities": json.dumps(SEOUL_ACTIVITIES),
                "highlights": ["Gwangjang Market", "Bukchon Hanok Village"],
            },
            "trip-2": {
                "user_id": "someone-else",
                "title": "Tokyo Weekend",
                "city": "Tokyo",
                "days": 1,
                "activities": [],
            },
        },
        tiers={"user-1": "pro", "premium-user": "premium"},
    )


@pytest.fixture
def make_adapter():
    def _make(name: str, kind: ImageSourceKind = ImageSourceKind.STOCK_THEMED, **kwargs) -> FakeImageAdapter:
        if kind == ImageSourceKind.AI:
            return FakeAIAdapter(name, **kwargs)
        return FakeImageAdapter(name, kind, **kwargs)
    return _make
