import logging
from dataclasses import dataclass
from pydantic_settings import BaseSettings
from typing import Dict, Optional

logger = logging.getLogger(__name__)

class Settings(BaseSettings):
    # Google Cloud Configuration (Vertex AI + Firestore)
    GOOGLE_CLOUD_PROJECT: str = ""
    GOOGLE_CLOUD_LOCATION: str = "us-central1"
    GOOGLE_APPLICATION_CREDENTIALS: Optional[str] = None
    FIRESTORE_PROJECT_ID: Optional[str] = None
    FIRESTORE_CREDENTIALS: Optional[str] = None  # path to Firestore service account json
    FIRESTORE_DATABASE_ID: Optional[str] = None  # defaults to '(default)'
    USE_FIRESTORE: bool = True
    FIRESTORE_ITINERARIES_COLLECTION: str = "itineraries"
    FIRESTORE_USERS_COLLECTION: str = "users"

    # Blob storage (Firebase Storage) for generated backgrounds
    FIREBASE_STORAGE_BUCKET: Optional[str] = None
    STORY_BACKGROUNDS_PREFIX: str = "story-backgrounds"
    IMAGE_URL_CACHE_TTL_SECONDS: int = 3600

    # Image providers
    GEMINI_API_KEY: Optional[str] = None
    GEMINI_USE_VERTEX: bool = False  # use Vertex AI on GOOGLE_CLOUD_PROJECT when no API key is set
    GEMINI_IMAGE_MODEL: str = "gemini-2.5-flash-image"
    FAL_KEY: Optional[str] = None
    SEEDREAM_ENDPOINT: str = "https://fal.run/fal-ai/bytedance/seedream/v4/text-to-image"
    TRIPADVISOR_API_KEY: Optional[str] = None
    PEXELS_API_KEY: Optional[str] = None

    # API Configuration
    API_VERSION: str = "1.0.0"
    DEBUG_MODE: bool = False
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    # Rate Limiting
    STORY_BACKGROUND_RATE_LIMIT: int = 20  # per user per minute

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Performance Settings
    PROVIDER_TIMEOUT_SECONDS: float = 60.0  # AI generation can take 10-20s per image
    IMAGE_PREFETCH_TIMEOUT_SECONDS: float = 10.0
    BACKGROUND_BATCH_SIZE: int = 2

    # Story slide branding
    STORY_BRAND_NAME: str = "Localley"
    STORY_CTA_TEXT: str = "Plan yours at localley.io"

    model_config = {"env_file": ".env", "case_sensitive": True, "extra": "ignore"}


@dataclass(frozen=True)
class ProviderAvailability:
    """Which image providers have credentials configured.

    Built once at startup and handed to the resolver instead of letting every
    call site re-read the environment.
    """
    gemini: bool = False
    seedream: bool = False
    tripadvisor: bool = False
    pexels: bool = False

    @property
    def ai(self) -> bool:
        return self.gemini or self.seedream

    def is_enabled(self, provider: str) -> bool:
        if provider == "unsplash":
            return True
        return bool(getattr(self, provider, False))

    def as_sources(self) -> Dict[str, bool]:
        return {
            "ai": self.ai,
            "gemini": self.gemini,
            "seedream": self.seedream,
            "tripadvisor": self.tripadvisor,
            "pexels": self.pexels,
            "unsplash": True,  # always available
        }

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ProviderAvailability":
        return cls(
            gemini=bool(settings.GEMINI_API_KEY or (settings.GEMINI_USE_VERTEX and settings.GOOGLE_CLOUD_PROJECT)),
            seedream=bool(settings.FAL_KEY),
            tripadvisor=bool(settings.TRIPADVISOR_API_KEY),
            pexels=bool(settings.PEXELS_API_KEY),
        )


# Global settings instance
settings = Settings()

def get_settings() -> Settings:
    """Get the global settings instance"""
    return settings

def validate_settings() -> bool:
    """Validate that all required settings are configured"""
    missing_settings = []
    if settings.USE_FIRESTORE and not (settings.FIRESTORE_PROJECT_ID or settings.GOOGLE_CLOUD_PROJECT):
        missing_settings.append("GOOGLE_CLOUD_PROJECT")

    if missing_settings:
        logger.error(f"Missing or invalid settings: {', '.join(missing_settings)}")
        logger.error("Please configure these settings in your .env file or environment variables")
        return False

    availability = ProviderAvailability.from_settings(settings)
    if not availability.ai:
        logger.warning("No AI image provider configured (GEMINI_API_KEY / GEMINI_USE_VERTEX / FAL_KEY); stock photos only")
    if not settings.FIREBASE_STORAGE_BUCKET:
        logger.warning("FIREBASE_STORAGE_BUCKET not set; generated images will be returned inline")

    # If FIRESTORE_PROJECT_ID not set, fallback to GOOGLE_CLOUD_PROJECT (but allow split-projects)
    if not settings.FIRESTORE_PROJECT_ID:
        settings.FIRESTORE_PROJECT_ID = settings.GOOGLE_CLOUD_PROJECT or None

    return True
