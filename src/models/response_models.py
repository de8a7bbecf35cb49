from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any

class StoryBackgroundResponse(BaseModel):
    success: bool = True
    image: str
    source: str  # cache, ai, tripadvisor, pexels, unsplash
    cached: bool = False
    provider: Optional[str] = None
    ai_available: Optional[bool] = Field(None, alias="aiAvailable")
    pexels_available: Optional[bool] = Field(None, alias="pexelsAvailable")
    trip_advisor_available: Optional[bool] = Field(None, alias="tripAdvisorAvailable")

    model_config = {"populate_by_name": True}

class SourcesResponse(BaseModel):
    sources: Dict[str, bool]

class SlideBackground(BaseModel):
    slide: str  # cover, day1, day2, ..., summary
    image: str
    source: str
    cached: bool = False

class GeneratedBackgroundsResponse(BaseModel):
    itinerary_id: str
    backgrounds: Dict[str, str]
    slides: List[SlideBackground] = Field(default_factory=list)
    saved: bool = False

class UserTierResponse(BaseModel):
    tier: str
    features: Dict[str, Any]
    limits: Dict[str, int]

class AiBackgroundsResponse(BaseModel):
    success: bool = True
    backgrounds: Dict[str, str] = Field(default_factory=dict)
