from fastapi import FastAPI, HTTPException, Depends, Header, Query
import os
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional, List
from collections import defaultdict

from src.models.image_models import ImageRequest
from src.models.itinerary_models import Itinerary, ParsedItinerary
from src.models.request_models import (
    StoryBackgroundRequest,
    AiBackgroundsUpdateRequest,
    GenerateBackgroundsRequest,
    ItineraryPreviewRequest,
)
from src.models.response_models import (
    StoryBackgroundResponse,
    SourcesResponse,
    SlideBackground,
    GeneratedBackgroundsResponse,
    UserTierResponse,
    AiBackgroundsResponse,
)
from src.services.entitlement_service import EntitlementGate, SubscriptionTier
from src.services.image_providers import UnsplashStockAdapter
from src.services.story_background_service import (
    StoryBackgroundService,
    build_story_background_service,
    slot_index_for,
    story_requests_for,
)
from src.services.story_renderer import StoryRenderer, SlideNotFoundError
from src.utils.config import ProviderAvailability, get_settings, validate_settings
from src.utils.validators import StoryRequestValidator
from src.utils.itinerary_parser import parse_itinerary_text
from src.utils.firestore_manager import FirestoreManager
from src.utils.firebase_auth import initialize_firebase_admin, verify_firebase_token, is_firebase_initialized
from src.utils.storage_manager import FirebaseBlobStore

# Configure logging
logging.basicConfig(
    level=getattr(logging, get_settings().LOG_LEVEL.upper(), logging.INFO),
    format=get_settings().LOG_FORMAT
)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Trip Story Images API",
    description="Story slide backgrounds (AI, location photos, stock fallbacks) and 1080x1920 story rendering for city itineraries",
    version=get_settings().API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc"
)

# Add middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["*"]  # Configure appropriately for production
)

# Global services (initialized on startup)
fs_manager: Optional[FirestoreManager] = None
background_service: Optional[StoryBackgroundService] = None
story_renderer: Optional[StoryRenderer] = None
entitlement_gate = EntitlementGate()

# Terminal picker for story slides without a stored background
stock_picker = UnsplashStockAdapter()

# Per-user request timestamps for the story background endpoint
story_background_rate_limits: Dict[str, List[datetime]] = defaultdict(list)

@app.on_event("startup")
async def startup_event():
    """Initialize services on startup"""
    global fs_manager, background_service, story_renderer

    try:
        settings = get_settings()

        if not validate_settings():
            logger.error("Invalid settings configuration")
            raise Exception("Invalid settings configuration")

        # Ensure GOOGLE_APPLICATION_CREDENTIALS is exported for ADC (Vertex AI, Firestore, Storage)
        if settings.GOOGLE_APPLICATION_CREDENTIALS:
            os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = settings.GOOGLE_APPLICATION_CREDENTIALS
            logger.info("ADC path set from settings", extra={"gac_path": settings.GOOGLE_APPLICATION_CREDENTIALS})
        else:
            logger.info("No GOOGLE_APPLICATION_CREDENTIALS in settings; relying on gcloud ADC if present")

        logger.info("Initializing services...")

        if settings.USE_FIRESTORE:
            try:
                fs_manager = FirestoreManager()
            except Exception as fe:
                logger.warning("Firestore initialization failed; continuing without Firestore", extra={"error": str(fe)})

        # Firebase Admin backs both token verification and the backgrounds bucket
        blob_store = None
        try:
            initialize_firebase_admin()
            if settings.FIREBASE_STORAGE_BUCKET:
                blob_store = FirebaseBlobStore(settings.FIREBASE_STORAGE_BUCKET)
        except Exception as fb_error:
            logger.warning(f"Firebase Admin SDK initialization failed: {fb_error}")
            logger.warning("Authenticated endpoints will reject requests; generated images will be returned inline")

        background_service = build_story_background_service(settings, blob_store)
        story_renderer = StoryRenderer(
            timeout=settings.IMAGE_PREFETCH_TIMEOUT_SECONDS,
            brand_name=settings.STORY_BRAND_NAME,
            cta_text=settings.STORY_CTA_TEXT,
        )
        logger.info("Image sources configured", extra={"sources": background_service.sources()})

        logger.info("All services initialized successfully")

    except Exception as e:
        logger.error(f"Failed to initialize services: {str(e)}")
        raise

@app.on_event("shutdown")
async def shutdown_event():
    """Close provider HTTP clients"""
    if background_service is not None:
        await background_service.close()
    if story_renderer is not None:
        await story_renderer.close()

# =============================================================================
# DEPENDENCIES
# =============================================================================

async def get_current_user_id(authorization: Optional[str] = Header(None)) -> str:
    """Resolve the Firebase user id from an `Authorization: Bearer <id token>` header."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    token = authorization.split(" ", 1)[1].strip()
    try:
        decoded = await verify_firebase_token(token)
    except ValueError as e:
        raise HTTPException(status_code=401, detail=str(e))
    user_id = decoded.get("uid")
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id

def get_firestore_manager() -> Optional[FirestoreManager]:
    return fs_manager

async def get_user_tier(
    user_id: str = Depends(get_current_user_id),
    fs: Optional[FirestoreManager] = Depends(get_firestore_manager),
) -> SubscriptionTier:
    if fs is None:
        return SubscriptionTier.FREE
    return await fs.get_user_tier(user_id)

def get_optional_background_service() -> Optional[StoryBackgroundService]:
    return background_service

def get_background_service(
    service: Optional[StoryBackgroundService] = Depends(get_optional_background_service),
) -> StoryBackgroundService:
    if service is None:
        raise HTTPException(status_code=503, detail="Image service is not available")
    return service

def get_story_renderer() -> StoryRenderer:
    global story_renderer
    if story_renderer is None:
        settings = get_settings()
        story_renderer = StoryRenderer(
            timeout=settings.IMAGE_PREFETCH_TIMEOUT_SECONDS,
            brand_name=settings.STORY_BRAND_NAME,
            cta_text=settings.STORY_CTA_TEXT,
        )
    return story_renderer

def check_story_background_rate_limit(user_id: str) -> bool:
    """
    Check if user has exceeded the story background rate limit.

    Returns:
        True if within rate limit, False if exceeded
    """
    now = datetime.utcnow()
    one_minute_ago = now - timedelta(minutes=1)

    # Clean old timestamps; users with none left are dropped
    for uid in list(story_background_rate_limits):
        recent = [ts for ts in story_background_rate_limits[uid] if ts > one_minute_ago]
        if recent:
            story_background_rate_limits[uid] = recent
        else:
            del story_background_rate_limits[uid]

    if len(story_background_rate_limits.get(user_id, [])) >= get_settings().STORY_BACKGROUND_RATE_LIMIT:
        return False

    story_background_rate_limits[user_id].append(now)
    return True

def _require_owned_itinerary(itinerary: Optional[Itinerary], user_id: str) -> Itinerary:
    if itinerary is None:
        raise HTTPException(status_code=404, detail="Itinerary not found")
    if itinerary.user_id != user_id:
        raise HTTPException(status_code=403, detail="You don't have permission to modify this itinerary")
    return itinerary

# =============================================================================
# STORY BACKGROUNDS
# =============================================================================

@app.post(
    "/api/images/story-background",
    response_model=StoryBackgroundResponse,
    response_model_exclude_none=True,
)
async def create_story_background(
    payload: StoryBackgroundRequest,
    user_id: str = Depends(get_current_user_id),
    tier: SubscriptionTier = Depends(get_user_tier),
    service: StoryBackgroundService = Depends(get_background_service),
):
    """
    Resolve a background image for one story slide.

    Tries, in order: cached image (when `cacheKey` is given), AI generation
    (Pro: Seedream, Premium: Gemini), TripAdvisor, Pexels, curated Unsplash.
    """
    try:
        if not check_story_background_rate_limit(user_id):
            raise HTTPException(status_code=429, detail="Too many requests. Please try again in a minute.")

        if not StoryRequestValidator.validate_city(payload.city):
            raise HTTPException(status_code=400, detail="city is required")

        request = ImageRequest(
            slide_type=payload.type,
            city=payload.city.strip(),
            theme=payload.theme,
            day_number=payload.day_number,
            activities=payload.activities,
            prefer_ai=payload.prefer_ai,
            cache_key=payload.cache_key,
            user_id=user_id,
        )
        result = await service.resolve(request, tier)

        if result.cached:
            return StoryBackgroundResponse(image=result.image, source=result.source, cached=True)

        sources = service.sources()
        logger.info(
            "[story-bg] Final result",
            extra={"source": result.source, "type": payload.type.value, "city": request.city, "image": result.image[:80]},
        )
        return StoryBackgroundResponse(
            image=result.image,
            source=result.source,
            cached=False,
            provider=result.provider,
            ai_available=result.ai_available,
            pexels_available=sources["pexels"],
            trip_advisor_available=sources["tripadvisor"],
        )

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[story-bg] Error resolving background: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to generate story background")

@app.get("/api/images/story-background", response_model=SourcesResponse)
async def get_story_background_sources(
    service: Optional[StoryBackgroundService] = Depends(get_optional_background_service),
):
    """Which image sources are configured"""
    if service is not None:
        return SourcesResponse(sources=service.sources())
    return SourcesResponse(sources=ProviderAvailability.from_settings(get_settings()).as_sources())

# =============================================================================
# ITINERARY STORY SLIDES
# =============================================================================

def _parse_day(day: Optional[str]) -> Optional[int]:
    if day is None:
        return 1
    try:
        return int(day)
    except (TypeError, ValueError):
        return None

async def _render_story_slide(
    itinerary_id: str,
    slide: str,
    day_number: Optional[int],
    fs: Optional[FirestoreManager],
    renderer: StoryRenderer,
    service: Optional[StoryBackgroundService],
) -> bytes:
    validation = StoryRequestValidator.validate_slide(slide, day_number)
    if not validation["valid"]:
        logger.warning("[story] invalid slide request", extra={"itinerary_id": itinerary_id, "errors": validation["errors"]})
        return renderer.render_placeholder("Your Trip Story")

    itinerary = await fs.get_itinerary(itinerary_id) if fs is not None else None
    if itinerary is None:
        logger.warning(f"[story] itinerary {itinerary_id} not found; rendering placeholder")
        return renderer.render_placeholder("Your Trip Story")

    background = itinerary.background_for(slide, day_number)
    if not background and itinerary.city:
        slot = slot_index_for(slide, day_number, itinerary)
        if service is not None:
            background = service.fallback_background(itinerary.city, slot_index=slot)
        else:
            background = stock_picker.pick(itinerary.city, slot_index=slot)
        logger.info(f"[story] using fallback image for {itinerary.city}", extra={"slide": slide, "image": background})

    logger.info(
        "[story] rendering slide",
        extra={"itinerary_id": itinerary_id, "slide": slide, "day": day_number, "background_keys": sorted(itinerary.ai_backgrounds)},
    )
    try:
        return await renderer.render(itinerary, slide, day_number, background)
    except SlideNotFoundError as e:
        logger.warning(f"[story] {e}; rendering placeholder", extra={"itinerary_id": itinerary_id})
        return renderer.render_placeholder(itinerary.title)

@app.get("/api/itineraries/{itinerary_id}/story")
async def get_itinerary_story(
    itinerary_id: str,
    slide: str = Query("cover"),
    day: Optional[str] = Query(None),
    fs: Optional[FirestoreManager] = Depends(get_firestore_manager),
    renderer: StoryRenderer = Depends(get_story_renderer),
    service: Optional[StoryBackgroundService] = Depends(get_optional_background_service),
):
    """
    Render one 1080x1920 story slide as PNG.

    Always answers with an image: missing itineraries, unknown slides or
    rendering errors fall back to a gradient placeholder.
    """
    try:
        png = await _render_story_slide(itinerary_id, slide, _parse_day(day), fs, renderer, service)
    except Exception as e:
        logger.error(f"[story] Story generation error for {itinerary_id}: {str(e)}")
        try:
            png = renderer.render_placeholder("Your Trip Story")
        except Exception as pe:
            logger.error(f"[story] Placeholder rendering failed: {str(pe)}")
            return PlainTextResponse("Failed to generate story", status_code=500)

    return Response(content=png, media_type="image/png", headers={"Cache-Control": "public, max-age=300"})

# =============================================================================
# PERSISTED AI BACKGROUNDS
# =============================================================================

@app.get("/api/itineraries/{itinerary_id}/ai-backgrounds", response_model=AiBackgroundsResponse)
async def get_ai_backgrounds(
    itinerary_id: str,
    fs: Optional[FirestoreManager] = Depends(get_firestore_manager),
):
    """Stored slide backgrounds for an itinerary"""
    if fs is None:
        raise HTTPException(status_code=503, detail="Itinerary storage is not available")
    itinerary = await fs.get_itinerary(itinerary_id)
    if itinerary is None:
        raise HTTPException(status_code=404, detail="Itinerary not found")
    return AiBackgroundsResponse(backgrounds=itinerary.ai_backgrounds)

@app.patch("/api/itineraries/{itinerary_id}/ai-backgrounds", response_model=AiBackgroundsResponse)
async def update_ai_backgrounds(
    itinerary_id: str,
    payload: AiBackgroundsUpdateRequest,
    user_id: str = Depends(get_current_user_id),
    fs: Optional[FirestoreManager] = Depends(get_firestore_manager),
):
    """Merge new slide backgrounds (https URLs or base64 data URLs) into an itinerary"""
    try:
        validation = StoryRequestValidator.validate_background_update(payload.cover, payload.summary, payload.days)
        if not validation["valid"]:
            logger.warning("[ai-backgrounds] invalid update", extra={"itinerary_id": itinerary_id, "errors": validation["errors"]})
            raise HTTPException(status_code=400, detail={
                "message": "Invalid backgrounds",
                "errors": validation["errors"],
            })

        if fs is None:
            raise HTTPException(status_code=503, detail="Itinerary storage is not available")

        _require_owned_itinerary(await fs.get_itinerary(itinerary_id), user_id)

        merged = await fs.update_ai_backgrounds(itinerary_id, validation["backgrounds"])
        if merged is None:
            raise HTTPException(status_code=500, detail="Failed to update AI backgrounds")

        logger.info(
            "[ai-backgrounds] updated",
            extra={"itinerary_id": itinerary_id, "slides": sorted(validation["backgrounds"])},
        )
        return AiBackgroundsResponse(backgrounds=merged)

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[ai-backgrounds] Error updating {itinerary_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Internal server error")

@app.post("/api/itineraries/{itinerary_id}/ai-backgrounds/generate", response_model=GeneratedBackgroundsResponse)
async def generate_ai_backgrounds(
    itinerary_id: str,
    payload: Optional[GenerateBackgroundsRequest] = None,
    user_id: str = Depends(get_current_user_id),
    tier: SubscriptionTier = Depends(get_user_tier),
    fs: Optional[FirestoreManager] = Depends(get_firestore_manager),
    service: StoryBackgroundService = Depends(get_background_service),
):
    """
    Resolve backgrounds for every slide of an itinerary (cover, each day,
    summary), two at a time, and persist them on the itinerary.
    """
    try:
        if fs is None:
            raise HTTPException(status_code=503, detail="Itinerary storage is not available")

        itinerary = _require_owned_itinerary(await fs.get_itinerary(itinerary_id), user_id)
        if not StoryRequestValidator.validate_city(itinerary.city):
            raise HTTPException(status_code=400, detail="Itinerary has no city")

        prefer_ai = payload.prefer_ai if payload is not None else True
        slides = story_requests_for(itinerary, prefer_ai=prefer_ai, user_id=user_id)
        results = await service.resolve_many([request for _, request in slides], tier)

        backgrounds = {key: result.image for (key, _), result in zip(slides, results)}
        merged = await fs.update_ai_backgrounds(itinerary_id, backgrounds)
        if merged is None:
            logger.warning(f"[ai-backgrounds] could not persist generated backgrounds for {itinerary_id}")

        return GeneratedBackgroundsResponse(
            itinerary_id=itinerary_id,
            backgrounds=backgrounds,
            slides=[
                SlideBackground(slide=key, image=result.image, source=result.source, cached=result.cached)
                for (key, _), result in zip(slides, results)
            ],
            saved=merged is not None,
        )

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[ai-backgrounds] Error generating for {itinerary_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to generate backgrounds")

# =============================================================================
# ITINERARY PREVIEW, TIER, HEALTH
# =============================================================================

@app.post("/api/itineraries/preview", response_model=ParsedItinerary)
async def preview_itinerary(payload: ItineraryPreviewRequest):
    """Parse chat assistant markdown into a title, a city and day plans"""
    parsed = parse_itinerary_text(payload.content)
    logger.debug("[preview] parsed itinerary", extra={"city": parsed.city, "days": len(parsed.days)})
    return parsed

@app.get("/api/user/tier", response_model=UserTierResponse)
async def get_current_user_tier(tier: SubscriptionTier = Depends(get_user_tier)):
    """Subscription tier with its features and limits"""
    return UserTierResponse(**entitlement_gate.describe(tier))

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    services_healthy = all([
        background_service is not None,
        fs_manager is not None,
    ])
    return {
        "status": "healthy" if services_healthy else "degraded",
        "timestamp": datetime.utcnow().isoformat(),
        "services": {
            "image_sources": background_service is not None,
            "firestore": fs_manager is not None,
            "firebase_admin": is_firebase_initialized(),
            "story_renderer": story_renderer is not None,
        },
        "version": get_settings().API_VERSION,
    }

@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "message": "Trip Story Images API",
        "version": get_settings().API_VERSION,
        "description": "Story backgrounds and story slide rendering for city itineraries",
        "docs": "/docs",
        "health": "/health"
    }

@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    """Handle HTTP exceptions"""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.detail,
            "timestamp": datetime.utcnow().isoformat(),
            "path": str(request.url)
        }
    )

@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    """Handle general exceptions"""
    logger.error(f"Unhandled exception: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "timestamp": datetime.utcnow().isoformat(),
            "path": str(request.url)
        }
    )
