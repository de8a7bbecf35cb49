import logging
from typing import Any, Dict, Optional
from datetime import datetime, date
from decimal import Decimal

from google.cloud import firestore
from google.oauth2 import service_account

from src.models.itinerary_models import Itinerary
from src.services.entitlement_service import SubscriptionTier, parse_tier
from src.utils.config import get_settings
from src.utils.itinerary_parser import normalize_daily_plans


def itinerary_from_document(itinerary_id: str, data: Dict[str, Any]) -> Itinerary:
    """Build a normalized Itinerary from a raw itineraries document.

    The ``activities`` field is stored in whatever shape the writer produced
    (JSON string, list of days, wrapped dict, markdown); it is normalized here
    once so nothing downstream has to care.
    """
    raw_days = data.get("days")
    backgrounds = data.get("ai_backgrounds")
    highlights = data.get("highlights")
    return Itinerary(
        id=itinerary_id,
        user_id=data.get("user_id"),
        title=data.get("title") or "Your Itinerary",
        city=data.get("city") or "",
        days=raw_days if isinstance(raw_days, int) and not isinstance(raw_days, bool) and raw_days > 0 else 0,
        daily_plans=normalize_daily_plans(data.get("activities")),
        highlights=[h for h in highlights if isinstance(h, str)] if isinstance(highlights, list) else [],
        ai_backgrounds={k: v for k, v in backgrounds.items() if isinstance(v, str) and v}
        if isinstance(backgrounds, dict) else {},
    )


class FirestoreManager:
    """Lightweight wrapper around Firestore for itineraries and user tiers."""

    def __init__(self):
        self.settings = get_settings()
        self.logger = logging.getLogger(__name__)
        project_id = self.settings.FIRESTORE_PROJECT_ID or self.settings.GOOGLE_CLOUD_PROJECT
        try:
            # Prefer explicit Firestore credentials if provided (split-project support)
            credentials = None
            if self.settings.FIRESTORE_CREDENTIALS:
                credentials = service_account.Credentials.from_service_account_file(
                    self.settings.FIRESTORE_CREDENTIALS
                )
            database = self.settings.FIRESTORE_DATABASE_ID or None  # default DB if None
            self.client = firestore.Client(project=project_id, credentials=credentials, database=database)
            self.itineraries_collection = self.settings.FIRESTORE_ITINERARIES_COLLECTION or "itineraries"
            self.users_collection = self.settings.FIRESTORE_USERS_COLLECTION or "users"
            self.logger.info(
                "Initialized Firestore client",
                extra={
                    "project": project_id,
                    "itineraries": self.itineraries_collection,
                    "users": self.users_collection,
                    "database": database or "(default)",
                },
            )
        except Exception:
            self.logger.exception("Failed to initialize Firestore client")
            raise

    def _itineraries(self):
        return self.client.collection(self.itineraries_collection)

    def _users(self):
        return self.client.collection(self.users_collection)

    def _sanitize_for_firestore(self, value: Any) -> Any:
        """Recursively convert values into Firestore-friendly types.
        - datetime/date -> ISO string
        - Decimal -> float
        - set/tuple -> list
        - dict/list recurse
        """
        if isinstance(value, dict):
            return {k: self._sanitize_for_firestore(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._sanitize_for_firestore(v) for v in value]
        if isinstance(value, tuple) or isinstance(value, set):
            return [self._sanitize_for_firestore(v) for v in list(value)]
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if isinstance(value, Decimal):
            return float(value)
        return value

    async def get_itinerary(self, itinerary_id: str) -> Optional[Itinerary]:
        try:
            doc = self._itineraries().document(itinerary_id).get()
            if not doc.exists:
                return None
            return itinerary_from_document(itinerary_id, doc.to_dict() or {})
        except Exception as e:
            self.logger.error(f"Firestore get failed for itinerary {itinerary_id}: {e}")
            return None

    async def update_ai_backgrounds(self, itinerary_id: str, backgrounds: Dict[str, str]) -> Optional[Dict[str, str]]:
        """Merge slide backgrounds into the stored map; returns the merged map, None on failure."""
        try:
            doc_ref = self._itineraries().document(itinerary_id)
            snap = doc_ref.get()
            if not snap.exists:
                return None
            existing = (snap.to_dict() or {}).get("ai_backgrounds")
            merged: Dict[str, str] = dict(existing) if isinstance(existing, dict) else {}
            merged.update({k: v for k, v in backgrounds.items() if v})
            doc_ref.set(
                {
                    "ai_backgrounds": self._sanitize_for_firestore(merged),
                    "updated_at": datetime.utcnow().isoformat(),
                },
                merge=True,
            )
            self.logger.info(
                f"Updated AI backgrounds for itinerary {itinerary_id}",
                extra={"slides": sorted(backgrounds.keys())},
            )
            return merged
        except Exception as e:
            self.logger.error(f"Firestore background update failed for {itinerary_id}: {e}")
            return None

    async def get_user_tier(self, user_id: str) -> SubscriptionTier:
        """Subscription tier from the users collection; anything missing is free."""
        try:
            doc = self._users().document(user_id).get()
            if not doc.exists:
                return SubscriptionTier.FREE
            return parse_tier((doc.to_dict() or {}).get("tier"))
        except Exception as e:
            self.logger.error(f"Firestore tier lookup failed for {user_id}: {e}")
            return SubscriptionTier.FREE
