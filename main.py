from fastapi import FastAPI, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session
from functools import lru_cache
import asyncio
import json
import logging

from config import settings
from models import User
import conversation
import crud
import schemas
from database import SessionLocal, get_db, verify_tables_exist
from errors import (
    ConflictError,
    CounsellorError,
    ExternalServiceError,
    FatalTurnError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from llm_client import CompletionClient, GeminiClient
from orchestrator import Orchestrator
from recommendations import RecommendationService
from timeline import TimelineService

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(title="AI Counsellor Backend")

# Ensure database tables exist on startup
@app.on_event("startup")
def startup_event():
    settings.validate()
    verify_tables_exist()
    with SessionLocal() as db:
        crud.clean_old_recommendations(db)

# Global Custom Error Handlers
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Convert 422 to 400 for frontend compatibility."""
    return JSONResponse(
        status_code=400,
        content=schemas.ErrorResponse(error="VALIDATION_ERROR", message=f"Invalid data format: {str(exc)}").model_dump(),
    )

@app.exception_handler(CounsellorError)
async def counsellor_exception_handler(request: Request, exc: CounsellorError):
    """Map application errors to status codes with a plain-language message."""
    if isinstance(exc, NotFoundError):
        status_code, error = 404, "NOT_FOUND"
    elif isinstance(exc, ValidationError):
        status_code, error = 400, "VALIDATION_ERROR"
    elif isinstance(exc, ConflictError):
        status_code, error = 409, "CONFLICT"
    elif isinstance(exc, ExternalServiceError):
        status_code, error = 503, "SERVICE_UNAVAILABLE"
    elif isinstance(exc, FatalTurnError):
        status_code, error = 500, "TURN_FAILED"
    elif isinstance(exc, StoreError):
        status_code, error = 500, "STORE_ERROR"
    else:
        status_code, error = 500, "INTERNAL_SERVER_ERROR"
    logger.error(f"[ERROR] {error} on {request.url.path}: {str(exc)}")
    return JSONResponse(status_code=status_code, content=schemas.ErrorResponse(error=error, message=exc.user_message).model_dump())

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch all unhandled exceptions."""
    logger.exception(f"Global Error: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content=schemas.ErrorResponse(error="INTERNAL_SERVER_ERROR", message="An unexpected error occurred. Please try again.").model_dump(),
    )

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================
# DEPENDENCIES
# ============================================

@lru_cache()
def get_completion_client() -> CompletionClient:
    return GeminiClient()

@lru_cache()
def get_recommender() -> RecommendationService:
    return RecommendationService(get_completion_client(), SessionLocal)

@lru_cache()
def get_timeline_service() -> TimelineService:
    return TimelineService(get_completion_client(), SessionLocal)

@lru_cache()
def get_orchestrator() -> Orchestrator:
    """Single instance so per-user turn locks are shared across requests."""
    return Orchestrator(get_completion_client(), SessionLocal, recommender=get_recommender())

def _require_user(db: Session, email: str) -> User:
    user = crud.get_user_by_email(db, email)
    if not user:
        raise NotFoundError("User not found. Please complete onboarding first.")
    return user

def _conversation_title(messages) -> str:
    for message in messages or []:
        if message.get("role") == "user" and message.get("content"):
            title = message["content"].strip()
            return title if len(title) <= 60 else title[:57] + "..."
    return "New conversation"

def _conversation_summary(convo) -> schemas.ConversationSummary:
    return schemas.ConversationSummary(
        id=convo.id,
        title=_conversation_title(convo.messages),
        message_count=len(convo.messages or []),
        created_at=convo.created_at,
        updated_at=convo.updated_at,
    )

async def _watch_disconnect(request: Request, cancel_event: asyncio.Event, interval: float = 0.5):
    """Set `cancel_event` once the client goes away."""
    while not cancel_event.is_set():
        if await request.is_disconnected():
            logger.info("[ENDPOINT] Client disconnected from chat stream")
            cancel_event.set()
            return
        await asyncio.sleep(interval)

# ============================================
# ENDPOINTS
# ============================================

@app.get("/")
async def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "ai-counsellor-backend"}

@app.post("/onboarding", response_model=schemas.OnboardingResponse)
async def onboarding(
    profile_data: schemas.UserProfileCreate,
    db: Session = Depends(get_db)
):
    """
    Complete user onboarding with UPSERT logic.
    Existing profiles are merged field by field, never replaced.
    final_submit=true marks onboarding complete and moves the user to discovery.
    """
    logger.info(f"[ENDPOINT] /onboarding called for {profile_data.email}")

    fields = profile_data.model_dump(exclude={"email", "name", "final_submit"}, exclude_unset=True)
    try:
        user = crud.upsert_profile(
            db,
            profile_data.email,
            profile_data.name,
            fields,
            final_submit=bool(profile_data.final_submit),
        )
    except Exception as e:
        logger.error(f"[ERROR] Onboarding failed: {str(e)}")
        raise StoreError(str(e), user_message="Failed to save profile. Please try again.") from e

    profile = dict(user.profile_data or {})
    logger.info(f"[SUCCESS] Profile saved. Complete: {bool(profile.get('onboarding_completed'))}")
    return schemas.OnboardingResponse(
        user_id=user.id,
        onboarding_completed=bool(profile.get("onboarding_completed")),
        current_stage=user.stage,
        profile=profile,
    )

@app.post("/chat", response_model=schemas.ChatResponse)
async def chat(
    request: schemas.ChatRequest,
    db: Session = Depends(get_db),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """
    AI counsellor chat turn.
    Returns the assistant reply together with every executed action outcome.
    """
    logger.info(f"[ENDPOINT] /chat called for {request.email}")
    user = _require_user(db, request.email)

    result = await orchestrator.run_turn(user.id, request.message, request.conversation_id)
    return schemas.ChatResponse(**result.to_dict())

@app.post("/chat/stream")
async def chat_stream(
    request: schemas.ChatRequest,
    http_request: Request,
    db: Session = Depends(get_db),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """
    Streaming chat turn using Server-Sent Events (SSE).

    Event types:
    - "start": conversation id
    - "chunk": reply text as it is produced
    - "action": one executed action outcome
    - "done": full reply and all outcomes
    - "error": plain-language error message
    """
    logger.info(f"[ENDPOINT] /chat/stream called for {request.email}")
    user = _require_user(db, request.email)
    cancel_event = asyncio.Event()

    async def generate_stream():
        watcher = asyncio.create_task(_watch_disconnect(http_request, cancel_event))
        try:
            async for event in orchestrator.stream_turn(user.id, request.message, request.conversation_id, cancel_event):
                yield f"data: {json.dumps(event, default=str)}\n\n"
        finally:
            watcher.cancel()

    return StreamingResponse(
        generate_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no"  # Disable nginx buffering
        }
    )

# ============================================
# CONVERSATIONS
# ============================================

@app.get("/conversations", response_model=schemas.ConversationListResponse)
async def list_conversations(email: str, db: Session = Depends(get_db)):
    user = _require_user(db, email)
    conversations = conversation.list_for_user(db, user.id)
    return schemas.ConversationListResponse(
        conversations=[_conversation_summary(c) for c in conversations],
        count=len(conversations),
    )

@app.post("/conversations/new", response_model=schemas.ConversationResponse)
async def new_conversation(email: str, db: Session = Depends(get_db)):
    user = _require_user(db, email)
    convo = conversation.create(db, user.id)
    logger.info(f"[ENDPOINT] Created conversation {convo.id} for {email}")
    return schemas.ConversationResponse(id=convo.id, messages=[], created_at=convo.created_at, updated_at=convo.updated_at)

@app.get("/conversations/{conversation_id}", response_model=schemas.ConversationResponse)
async def get_conversation(conversation_id: int, email: str, db: Session = Depends(get_db)):
    user = _require_user(db, email)
    convo = conversation.get(db, conversation_id, user.id)
    if not convo:
        raise NotFoundError("Conversation not found")
    return schemas.ConversationResponse(
        id=convo.id,
        messages=convo.messages or [],
        created_at=convo.created_at,
        updated_at=convo.updated_at,
    )

@app.delete("/conversations/{conversation_id}", response_model=schemas.StatusResponse)
async def delete_conversation(conversation_id: int, email: str, db: Session = Depends(get_db)):
    user = _require_user(db, email)
    if not conversation.delete(db, conversation_id, user.id):
        raise NotFoundError("Conversation not found")
    return schemas.StatusResponse(success=True, message="Conversation deleted")

@app.delete("/conversations/{conversation_id}/messages", response_model=schemas.StatusResponse)
async def clear_conversation(conversation_id: int, email: str, db: Session = Depends(get_db)):
    user = _require_user(db, email)
    if not conversation.clear(db, conversation_id, user.id):
        raise NotFoundError("Conversation not found")
    return schemas.StatusResponse(success=True, message="Conversation cleared")

# ============================================
# SHORTLIST & TASKS
# ============================================

@app.get("/shortlist", response_model=schemas.ShortlistResponse)
async def get_shortlist(email: str, db: Session = Depends(get_db)):
    user = _require_user(db, email)
    entries = crud.get_user_shortlists(db, user.id)
    return schemas.ShortlistResponse(
        shortlists=[entry.to_dict() for entry in entries],
        count=len(entries),
        locked_university_id=user.locked_university_id,
    )

@app.post("/shortlist/{entry_id}/unlock", response_model=schemas.ShortlistEntryResponse)
async def unlock_university(entry_id: int, email: str, db: Session = Depends(get_db)):
    user = _require_user(db, email)
    try:
        entry = crud.unlock_university(db, user.id, entry_id)
    except ValueError:
        raise NotFoundError("University not in shortlist")
    return entry.to_dict()

@app.delete("/shortlist/{entry_id}", response_model=schemas.StatusResponse)
async def remove_from_shortlist(entry_id: int, email: str, db: Session = Depends(get_db)):
    user = _require_user(db, email)
    try:
        removed = crud.remove_from_shortlist(db, user.id, entry_id)
    except ValueError:
        raise ConflictError("Unlock the university before removing it")
    if not removed:
        raise NotFoundError("University not in shortlist")
    return schemas.StatusResponse(success=True, message="Removed from shortlist")

@app.get("/tasks", response_model=schemas.TaskListResponse)
async def get_tasks(email: str, db: Session = Depends(get_db)):
    user = _require_user(db, email)
    tasks = crud.get_all_tasks(db, user.id)
    return schemas.TaskListResponse(tasks=[task.to_dict() for task in tasks], count=len(tasks))

# ============================================
# RECOMMENDATIONS & ACCOUNT
# ============================================

@app.get("/recommendations", response_model=schemas.RecommendationsResponse)
async def get_recommendations(
    email: str,
    refresh: bool = False,
    db: Session = Depends(get_db),
    recommender: RecommendationService = Depends(get_recommender),
):
    """
    Dream/Target/Safe recommendations, served from the profile-hash cache
    when it is still fresh. refresh=true forces regeneration.
    """
    logger.info(f"[ENDPOINT] /recommendations called for {email} (refresh={refresh})")
    user = _require_user(db, email)
    result = await recommender.get_recommendations(user.id, refresh=refresh)
    return schemas.RecommendationsResponse(**result)

@app.get("/application/timeline", response_model=schemas.TimelineResponse)
async def get_application_timeline(
    email: str,
    db: Session = Depends(get_db),
    timeline_service: TimelineService = Depends(get_timeline_service),
):
    """
    Milestones from now until intake for the locked university.
    Falls back to a fixed default timeline when generation fails.
    """
    logger.info(f"[ENDPOINT] /application/timeline called for {email}")
    user = _require_user(db, email)
    result = await timeline_service.get_timeline(user.id)
    return schemas.TimelineResponse(**result)

@app.delete("/users", response_model=schemas.StatusResponse)
async def delete_account(email: str, db: Session = Depends(get_db)):
    """Delete the account and everything it owns."""
    logger.info(f"[ENDPOINT] DELETE /users called for {email}")
    user = _require_user(db, email)
    crud.delete_user(db, user.id)
    return schemas.StatusResponse(success=True, message="Account deleted")

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
