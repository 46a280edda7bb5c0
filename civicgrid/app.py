# CivicGrid issue engine: HTTP API
# FastAPI + MongoDB + OpenAI

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import List, Optional

import uvicorn
from fastapi import Depends, FastAPI, Form, HTTPException, Query
from fastapi.responses import JSONResponse, Response
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from . import config
from .config import now_utc
from .errors import (ConcurrencyConflict, EngineError, NotFound, OracleUnavailable,
                     RejectedFraudulent, RejectedIrrelevant, StoreUnavailable, ValidationError)
from .intake import (IntakeGateway, normalize_dtmf, twiml_confirmation, twiml_failure,
                     twiml_greeting, twiml_record)
from .lifecycle import LifecycleEngine
from .models import (ActorProfile, ActorRole, Comment, Department, Geolocation, Issue,
                     IssueCategory, IssueStatus)
from .oracles import OpenAIOracle
from .policy import staff_matches_category
from .store import ACTORS, MongoRecordStore, executor

if not config.JWT_SECRET or len(config.JWT_SECRET) < 32:
    raise RuntimeError(
        "FATAL: JWT_SECRET must be set in the environment and be at least 32 characters. "
        "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
    )

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)

# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------
class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=50, pattern=r"^[a-zA-Z0-9_.-]+$")
    password: str = Field(..., min_length=6, max_length=72)
    display_name: str = Field(..., min_length=1, max_length=100)
    email: Optional[str] = Field(None, max_length=200)
    phone_number: Optional[str] = Field(None, max_length=32)

class LoginRequest(BaseModel):
    username: str = Field(..., max_length=50)
    password: str = Field(..., max_length=72)

class StaffCreate(BaseModel):
    username: str = Field(..., min_length=3, max_length=50, pattern=r"^[a-zA-Z0-9_.-]+$")
    password: str = Field(..., min_length=6, max_length=72)
    display_name: str = Field(..., min_length=1, max_length=100)
    department: Department
    email: Optional[str] = Field(None, max_length=200)
    phone_number: Optional[str] = Field(None, max_length=32)

class ActorResponse(BaseModel):
    id: str
    role: str
    display_name: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    created_at: datetime
    utility_points: int
    trust_points: int
    report_count: int
    joined_others_count: int
    badges: List[str]
    department: Optional[str] = None
    efficiency_points: int
    ai_image_warning_count: int

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    actor: ActorResponse

class IssueCreateRequest(BaseModel):
    images: List[str] = Field(default_factory=list)
    notes: Optional[str] = Field(None, max_length=5000)
    audio_transcript: Optional[str] = Field(None, max_length=10000)
    audio_url: Optional[str] = None
    location: Optional[Geolocation] = None
    address: str = Field("", max_length=500)
    postal_code: Optional[str] = Field(None, max_length=12)
    category: IssueCategory = IssueCategory.OTHER

class CreateIssueResponse(BaseModel):
    issue: Issue
    estimated_days: int
    new_badges: List[str]

class AssignRequest(BaseModel):
    staff_id: str
    deadline: datetime

class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)

class CompletionRequest(BaseModel):
    images: List[str] = Field(default_factory=list)
    notes: str = Field("", max_length=5000)

class FeedbackRequest(BaseModel):
    rating: int = Field(..., ge=1, le=10)
    comment: Optional[str] = Field(None, max_length=2000)

class CommentRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=2000)

class JoinResponse(BaseModel):
    issue: Issue
    joined: bool
    new_badges: List[str]

class LikeResponse(BaseModel):
    liked: bool
    likes: int

class LeaderboardEntry(BaseModel):
    id: str
    display_name: Optional[str] = None
    utility_points: int
    trust_points: int
    report_count: int
    badges: List[str]

# ---------------------------------------------------------------------------
# App & Globals
# ---------------------------------------------------------------------------
app = FastAPI(title="CivicGrid Issue Engine")
limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

app.add_middleware(SecurityHeadersMiddleware)
record_store = None
engine = None
gateway = None

# ---------------------------------------------------------------------------
# Startup / Shutdown
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    global record_store, engine, gateway
    record_store = MongoRecordStore.from_url()
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(executor, record_store.ensure_indexes)
    oracle = OpenAIOracle()
    engine = LifecycleEngine(record_store, oracle, executor)
    gateway = IntakeGateway(engine)
    logger.info("OpenAI model: %s | Transcription: %s", config.OPENAI_MODEL, config.OPENAI_TRANSCRIBE_MODEL)
    yield
    record_store.close()

app.router.lifespan_context = lifespan

# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------
async def get_store():
    return record_store

async def get_engine():
    return engine

async def get_gateway():
    return gateway

# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------
ERROR_STATUS = [
    (ValidationError, 400),
    (NotFound, 404),
    (RejectedIrrelevant, 422),
    (RejectedFraudulent, 422),
    (ConcurrencyConflict, 409),
    (OracleUnavailable, 503),
    (StoreUnavailable, 503),
]

@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
    body = {"detail": exc.message, "outcome": exc.outcome}
    if isinstance(exc, (RejectedIrrelevant, RejectedFraudulent)):
        body["reason"] = exc.reason
    headers = {"Retry-After": "30"} if isinstance(exc, (OracleUnavailable, StoreUnavailable)) else None
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content=body, headers=headers)

# ---------------------------------------------------------------------------
# Auth Helpers
# ---------------------------------------------------------------------------
def hash_password(password: str) -> str:
    if len(password.encode("utf-8")) > 72:
        raise ValueError("Password cannot exceed 72 bytes")
    return pwd_context.hash(password)

def verify_password(plain: str, hashed: Optional[str]) -> bool:
    return bool(hashed) and pwd_context.verify(plain, hashed)

def create_access_token(data: dict) -> str:
    to_encode = data.copy()
    to_encode["exp"] = now_utc() + timedelta(hours=config.JWT_EXPIRE_HOURS)
    return jwt.encode(to_encode, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)

async def get_current_actor(token: Optional[str] = Depends(oauth2_scheme),
                            store=Depends(get_store)) -> ActorProfile:
    if token is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
        actor_id: str = payload.get("sub")
        if actor_id is None:
            raise HTTPException(status_code=401, detail="Invalid token")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    loop = asyncio.get_running_loop()
    actor = await loop.run_in_executor(executor, store.get_actor, actor_id)
    if actor is None:
        raise HTTPException(status_code=401, detail="User not found")
    return actor

def require_role(*roles):
    async def role_checker(actor: ActorProfile = Depends(get_current_actor)):
        if actor.role not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return actor
    return role_checker

def actor_to_response(actor: ActorProfile) -> ActorResponse:
    return ActorResponse(**actor.model_dump(exclude={"hashed_password", "version"}))

def issue_token(actor: ActorProfile) -> TokenResponse:
    token = create_access_token({"sub": actor.id, "role": actor.role})
    return TokenResponse(access_token=token, actor=actor_to_response(actor))

async def _create_account(store, profile: ActorProfile) -> ActorProfile:
    loop = asyncio.get_running_loop()
    existing = await loop.run_in_executor(executor, store.find_actor_by_username, profile.username)
    if existing:
        raise HTTPException(status_code=400, detail="Username already exists")
    created = await loop.run_in_executor(executor, store.create_if_absent, ACTORS, profile)
    if not created:
        raise HTTPException(status_code=400, detail="Username or phone number already registered")
    return profile

# ---------------------------------------------------------------------------
# AUTH ENDPOINTS
# ---------------------------------------------------------------------------
@app.post("/auth/register", response_model=TokenResponse)
@limiter.limit("3/minute")
async def register(request: Request, data: RegisterRequest, store=Depends(get_store)):
    # Public registration is citizen-only; staff accounts are created by an official
    profile = ActorProfile(
        role=ActorRole.CITIZEN, username=data.username, hashed_password=hash_password(data.password),
        display_name=data.display_name, email=data.email, phone_number=data.phone_number,
    )
    await _create_account(store, profile)
    logger.info("Registered citizen %s (%s)", data.username, profile.id)
    return issue_token(profile)

@app.post("/auth/login", response_model=TokenResponse)
@limiter.limit("5/minute")
async def login(request: Request, form: LoginRequest, store=Depends(get_store)):
    loop = asyncio.get_running_loop()
    actor = await loop.run_in_executor(executor, store.find_actor_by_username, form.username)
    if not actor or not verify_password(form.password, actor.hashed_password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return issue_token(actor)

@app.get("/auth/me", response_model=ActorResponse)
async def get_me(actor: ActorProfile = Depends(get_current_actor)):
    return actor_to_response(actor)

# ---------------------------------------------------------------------------
# STAFF MANAGEMENT
# ---------------------------------------------------------------------------
@app.post("/admin/staff", response_model=ActorResponse)
async def create_staff(data: StaffCreate,
                       actor: ActorProfile = Depends(require_role(ActorRole.OFFICIAL.value)),
                       store=Depends(get_store)):
    profile = ActorProfile(
        role=ActorRole.STAFF, username=data.username, hashed_password=hash_password(data.password),
        display_name=data.display_name, department=data.department,
        email=data.email, phone_number=data.phone_number,
    )
    await _create_account(store, profile)
    logger.info("Official %s created staff %s (%s)", actor.id, data.username, profile.department)
    return actor_to_response(profile)

@app.get("/staff", response_model=List[ActorResponse])
async def list_staff(category: Optional[IssueCategory] = None,
                     actor: ActorProfile = Depends(require_role(ActorRole.OFFICIAL.value)),
                     store=Depends(get_store)):
    loop = asyncio.get_running_loop()
    staff = await loop.run_in_executor(executor, store.find_actors, ActorRole.STAFF.value)
    if category:
        staff = [s for s in staff if staff_matches_category(s.department, category)]
    return [actor_to_response(s) for s in staff]

# ---------------------------------------------------------------------------
# ISSUE ENDPOINTS
# ---------------------------------------------------------------------------
@app.post("/issues", response_model=CreateIssueResponse)
@limiter.limit("10/minute")
async def create_issue(request: Request, data: IssueCreateRequest,
                       actor: ActorProfile = Depends(require_role(ActorRole.CITIZEN.value)),
                       gateway: IntakeGateway = Depends(get_gateway)):
    result = await gateway.submit_form(
        actor.id, data.images, notes=data.notes, audio_transcript=data.audio_transcript,
        audio_url=data.audio_url, location=data.location, address=data.address,
        postal_code=data.postal_code, category=data.category,
    )
    return CreateIssueResponse(issue=result.issue, estimated_days=result.estimated_days,
                               new_badges=result.new_badges)

@app.get("/issues", response_model=List[Issue])
async def list_issues(status: Optional[IssueStatus] = None, postal_code: Optional[str] = None,
                      creator_id: Optional[str] = None, supporter_id: Optional[str] = None,
                      assigned_staff_id: Optional[str] = None,
                      limit: int = Query(50, ge=1, le=100), skip: int = Query(0, ge=0),
                      actor: ActorProfile = Depends(get_current_actor),
                      store=Depends(get_store)):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        executor, lambda: store.find_issues(
            status=status.value if status else None, creator_id=creator_id,
            supporter_id=supporter_id, postal_code=postal_code,
            assigned_staff_id=assigned_staff_id, limit=limit, skip=skip))

@app.get("/issues/{issue_id}", response_model=Issue)
async def get_issue(issue_id: str, actor: ActorProfile = Depends(get_current_actor),
                    engine: LifecycleEngine = Depends(get_engine)):
    return await engine.get_issue(issue_id)

@app.get("/actors/{actor_id}/issues", response_model=List[Issue])
async def list_actor_issues(actor_id: str, limit: int = Query(50, ge=1, le=100),
                            actor: ActorProfile = Depends(get_current_actor),
                            store=Depends(get_store)):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        executor, lambda: store.find_issues(creator_id=actor_id, limit=limit))

@app.put("/issues/{issue_id}/assign", response_model=Issue)
async def assign_issue(issue_id: str, data: AssignRequest,
                       actor: ActorProfile = Depends(require_role(ActorRole.OFFICIAL.value)),
                       engine: LifecycleEngine = Depends(get_engine)):
    return await engine.assign(actor.id, issue_id, data.staff_id, data.deadline)

@app.put("/issues/{issue_id}/approve", response_model=Issue)
async def approve_issue(issue_id: str,
                        actor: ActorProfile = Depends(require_role(ActorRole.OFFICIAL.value)),
                        engine: LifecycleEngine = Depends(get_engine)):
    return await engine.approve(actor.id, issue_id)

@app.put("/issues/{issue_id}/reject", response_model=Issue)
async def reject_issue(issue_id: str, data: RejectRequest,
                       actor: ActorProfile = Depends(require_role(ActorRole.OFFICIAL.value)),
                       engine: LifecycleEngine = Depends(get_engine)):
    return await engine.reject(actor.id, issue_id, data.reason)

@app.post("/issues/{issue_id}/completion", response_model=Issue)
async def submit_completion(issue_id: str, data: CompletionRequest,
                            actor: ActorProfile = Depends(require_role(ActorRole.STAFF.value)),
                            engine: LifecycleEngine = Depends(get_engine)):
    return await engine.submit_completion(actor.id, issue_id, data.images, data.notes)

@app.post("/issues/{issue_id}/join", response_model=JoinResponse)
async def join_issue(issue_id: str,
                     actor: ActorProfile = Depends(require_role(ActorRole.CITIZEN.value)),
                     engine: LifecycleEngine = Depends(get_engine)):
    result = await engine.join(actor.id, issue_id)
    return JoinResponse(issue=result.issue, joined=result.joined, new_badges=result.new_badges)

@app.post("/issues/{issue_id}/feedback")
async def submit_feedback(issue_id: str, data: FeedbackRequest,
                          actor: ActorProfile = Depends(require_role(ActorRole.CITIZEN.value)),
                          engine: LifecycleEngine = Depends(get_engine)):
    stored = await engine.submit_feedback(actor.id, issue_id, data.rating, data.comment)
    return {"stored": stored}

@app.post("/issues/{issue_id}/like", response_model=LikeResponse)
async def like_issue(issue_id: str, actor: ActorProfile = Depends(get_current_actor),
                     engine: LifecycleEngine = Depends(get_engine)):
    liked, count = await engine.toggle_like(actor.id, issue_id)
    return LikeResponse(liked=liked, likes=count)

@app.post("/issues/{issue_id}/comments", response_model=Comment)
async def comment_issue(issue_id: str, data: CommentRequest,
                        actor: ActorProfile = Depends(get_current_actor),
                        engine: LifecycleEngine = Depends(get_engine)):
    return await engine.add_comment(actor.id, issue_id, data.text)

# ---------------------------------------------------------------------------
# PROFILES & LEADERBOARD
# ---------------------------------------------------------------------------
@app.get("/leaderboard", response_model=List[LeaderboardEntry])
async def leaderboard(limit: int = Query(10, ge=1, le=100), store=Depends(get_store)):
    loop = asyncio.get_running_loop()
    top = await loop.run_in_executor(executor, store.top_citizens, limit)
    return [LeaderboardEntry(**a.model_dump(include=set(LeaderboardEntry.model_fields))) for a in top]

@app.get("/actors/{actor_id}", response_model=ActorResponse)
async def get_actor(actor_id: str, actor: ActorProfile = Depends(get_current_actor),
                    store=Depends(get_store)):
    loop = asyncio.get_running_loop()
    target = await loop.run_in_executor(executor, store.get_actor, actor_id)
    if target is None:
        raise HTTPException(status_code=404, detail="Actor not found")
    return actor_to_response(target)

# ---------------------------------------------------------------------------
# TELEPHONY (TwiML webhooks)
# ---------------------------------------------------------------------------
def _xml(body: str) -> Response:
    return Response(content=body, media_type="text/xml", headers={"Cache-Control": "no-cache"})

@app.post("/twilio/voice")
async def twilio_voice():
    return _xml(twiml_greeting("/twilio/record"))

@app.post("/twilio/record")
async def twilio_record(Digits: Optional[str] = Form(None)):
    return _xml(twiml_record(f"/twilio/callback?pincode={normalize_dtmf(Digits)}"))

@app.post("/twilio/callback")
@limiter.limit("20/minute")
async def twilio_callback(request: Request, pincode: Optional[str] = None,
                          RecordingUrl: Optional[str] = Form(None), From: Optional[str] = Form(None),
                          gateway: IntakeGateway = Depends(get_gateway)):
    try:
        result = await gateway.submit_voice(RecordingUrl, From, pincode)
    except EngineError as e:
        logger.error("Voice report from %s failed (%s): %s", From, e.outcome, e.message)
        return _xml(twiml_failure())
    return _xml(twiml_confirmation(result.issue.postal_code, result.estimated_days))

# ---------------------------------------------------------------------------
# HEALTH
# ---------------------------------------------------------------------------
@app.get("/health")
async def health():
    return {"status": "healthy", "system": "CivicGrid Issue Engine", "timestamp": now_utc()}

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
