from pydantic import BaseModel, Field
from typing import List, Optional
from enum import Enum

class SlideType(str, Enum):
    COVER = "cover"
    DAY = "day"
    SUMMARY = "summary"

class ImageSourceKind(str, Enum):
    AI = "ai"
    LOCATION_PHOTO = "location-photo"
    STOCK_THEMED = "stock-themed"
    STOCK_DETERMINISTIC = "stock-deterministic"

class ImageStyle(str, Enum):
    VIBRANT = "vibrant"
    MINIMAL = "minimal"
    ARTISTIC = "artistic"

class ImageRequest(BaseModel):
    """One themed background request; built per HTTP call, never persisted."""
    slide_type: SlideType
    city: str
    theme: Optional[str] = None
    day_number: Optional[int] = Field(None, ge=1)
    activities: List[str] = Field(default_factory=list)
    prefer_ai: bool = True
    cache_key: Optional[str] = None
    user_id: Optional[str] = None
    # Keeps slides of the same story from repeating a photo
    exclude_urls: List[str] = Field(default_factory=list)
    slot_index: Optional[int] = Field(None, ge=0)

class ImageResult(BaseModel):
    image: str  # public URL, remote photo URL or data: URL
    source: str  # "cache", "ai" or the photo provider name
    kind: Optional[ImageSourceKind] = None
    provider: Optional[str] = None  # AI provider that was selected for the request
    cached: bool = False
    ai_available: bool = False
