from pydantic import BaseModel, Field
from typing import List, Optional, Dict

class Activity(BaseModel):
    name: str
    description: Optional[str] = None
    time: Optional[str] = None
    type: str = "normal"  # normal, hidden-gem, local-favorite, mixed

class DayPlan(BaseModel):
    day: int = Field(..., ge=1)
    theme: Optional[str] = None
    activities: List[Activity] = Field(default_factory=list)

class Itinerary(BaseModel):
    """Itinerary record as read from Firestore, already normalized."""
    id: str
    user_id: Optional[str] = None
    title: str = "Your Itinerary"
    city: str = ""
    days: int = 0
    daily_plans: List[DayPlan] = Field(default_factory=list)
    highlights: List[str] = Field(default_factory=list)
    # slide key (cover, summary, day1, day2, ...) -> image URL or data URL
    ai_backgrounds: Dict[str, str] = Field(default_factory=dict)

    @property
    def total_days(self) -> int:
        return max(self.days, len(self.daily_plans))

    def background_for(self, slide: str, day_number: Optional[int] = None) -> Optional[str]:
        if slide == "day":
            if day_number is None:
                return None
            return self.ai_backgrounds.get(f"day{day_number}")
        return self.ai_backgrounds.get(slide)

class ParsedItinerary(BaseModel):
    title: str
    city: str
    days: List[DayPlan] = Field(default_factory=list)
