from pydantic import BaseModel, Field
from typing import List, Optional, Dict

from src.models.image_models import SlideType

class StoryBackgroundRequest(BaseModel):
    type: SlideType = SlideType.COVER
    city: str = ""
    theme: Optional[str] = None
    day_number: Optional[int] = Field(None, alias="dayNumber", ge=1)
    activities: List[str] = Field(default_factory=list)
    # AI generation also requires a Pro/Premium tier
    prefer_ai: bool = Field(True, alias="preferAI")
    cache_key: Optional[str] = Field(None, alias="cacheKey", max_length=200, pattern=r"^[A-Za-z0-9_\-/]+$")

    model_config = {"populate_by_name": True}

class AiBackgroundsUpdateRequest(BaseModel):
    cover: Optional[str] = None
    summary: Optional[str] = None
    days: Dict[str, str] = Field(default_factory=dict)  # {"day1": "...", "day2": "..."}

class GenerateBackgroundsRequest(BaseModel):
    prefer_ai: bool = Field(True, alias="preferAI")

    model_config = {"populate_by_name": True}

class ItineraryPreviewRequest(BaseModel):
    content: str = Field(..., min_length=1)
