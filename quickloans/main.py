import asyncio
import base64
import binascii
import json
import logging
import mimetypes
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Annotated, Any, Dict, List, Optional

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import FileResponse, JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from quickloans import repository
from quickloans.chat import ChatEvent, ChatSession, Notification, open_chat, receipt
from quickloans.config import Settings, get_settings
from quickloans.errors import (
    AttachmentTooLarge,
    EmptyMessage,
    InvalidStatusTransition,
    NotFound,
    PermissionDenied,
    PreconditionFailed,
    ProfileIncomplete,
    QuickLoansError,
    StoreError,
)
from quickloans.logging_utils import RequestLoggingMiddleware, log_chat_data, setup_logging
from quickloans.metrics import get_metrics, get_metrics_content_type
from quickloans.models import Profile
from quickloans.object_store import ObjectStore
from quickloans.policies import Identity
from quickloans.schemas import (
    AdminDashboard,
    ApplicantSummary,
    AttachmentResponse,
    ChatMessageResponse,
    ConversationResponse,
    DashboardResponse,
    EndUserDashboard,
    ErrorResponse,
    HealthResponse,
    LoanApplicationCreate,
    LoanApplicationResponse,
    LoanStatusUpdate,
    ProfileResponse,
    ProfileUpsert,
    SendMessageRequest,
    TypingStatusResponse,
    TypingUpdate,
)
from quickloans.storage import Platform, check_db_health, create_platform, get_db, get_platform, init_db
from quickloans.utils import verify_access_key
from quickloans.views import AdminView, EndUserView, resolve_view

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Caller Resolution
# =============================================================================

@dataclass(frozen=True)
class Caller:
    identity: Identity
    profile: Optional[Profile]


def require_access_key(
    x_api_key: Annotated[Optional[str], Header(alias="X-Api-Key")] = None,
    platform: Platform = Depends(get_platform),
) -> None:
    if not verify_access_key(x_api_key, platform.settings.platform_key):
        logger.warning("Rejected request with invalid access key")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid access key")


def get_caller(
    x_user_id: Annotated[Optional[str], Header(alias="X-User-Id")] = None,
    db: Session = Depends(get_db),
    _: None = Depends(require_access_key),
) -> Caller:
    """Resolve the caller identity passed by the auth gateway."""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing user identity")
    identity, profile = repository.resolve_identity(db, x_user_id)
    return Caller(identity=identity, profile=profile)


def _application_response(application, applicant: Optional[Profile] = None) -> LoanApplicationResponse:
    response = LoanApplicationResponse.model_validate(application)
    if applicant is not None:
        response.applicant = ApplicantSummary.model_validate(applicant)
    return response


# =============================================================================
# Health Check Routes
# =============================================================================

@router.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=HealthResponse)
def health_ready(response: Response, platform: Platform = Depends(get_platform)) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. PLATFORM_URL and PLATFORM_KEY are configured
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not platform.settings.platform_configured:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Platform not configured")

    if not check_db_health(platform):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Profile Routes
# =============================================================================

@router.get("/profile", response_model=ProfileResponse, responses={404: {"model": ErrorResponse}})
def read_own_profile(caller: Caller = Depends(get_caller)) -> ProfileResponse:
    if caller.profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    return ProfileResponse.model_validate(caller.profile)


@router.put("/profile", response_model=ProfileResponse)
def save_own_profile(
    body: ProfileUpsert,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> ProfileResponse:
    """Create or update the caller's profile (upsert keyed by user id)."""
    profile = repository.upsert_profile(db, caller.identity, caller.identity.user_id, body.model_dump())
    logger.info(f"Profile saved for {caller.identity.user_id}")
    return ProfileResponse.model_validate(profile)


@router.get("/admin/users", response_model=List[ProfileResponse])
def list_users(caller: Caller = Depends(get_caller), db: Session = Depends(get_db)) -> List[ProfileResponse]:
    return [ProfileResponse.model_validate(p) for p in repository.list_profiles(db, caller.identity)]


@router.get("/admin/users/{user_id}/profile", response_model=ProfileResponse)
def read_user_profile(
    user_id: str,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> ProfileResponse:
    profile = repository.get_profile(db, caller.identity, user_id)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    return ProfileResponse.model_validate(profile)


@router.put("/admin/users/{user_id}/profile", response_model=ProfileResponse)
def save_user_profile(
    user_id: str,
    body: ProfileUpsert,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> ProfileResponse:
    profile = repository.upsert_profile(db, caller.identity, user_id, body.model_dump())
    logger.info(f"Profile of {user_id} saved by {caller.identity.user_id}")
    return ProfileResponse.model_validate(profile)


# =============================================================================
# Loan Application Routes
# =============================================================================

@router.post("/loans", response_model=LoanApplicationResponse, status_code=status.HTTP_201_CREATED)
def submit_application(
    body: LoanApplicationCreate,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> LoanApplicationResponse:
    application = repository.create_application(db, caller.identity, body.model_dump())
    return _application_response(application)


@router.get("/loans", response_model=List[LoanApplicationResponse])
def list_own_applications(
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> List[LoanApplicationResponse]:
    rows = repository.list_applications(db, caller.identity, owner_id=caller.identity.user_id)
    return [_application_response(application) for application, _ in rows]


@router.get("/admin/loans", response_model=List[LoanApplicationResponse])
def list_all_applications(
    owner_id: Annotated[Optional[str], Query(description="Only applications of this user")] = None,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> List[LoanApplicationResponse]:
    if not caller.identity.is_admin:
        raise PermissionDenied("Only administrators can list all applications")
    rows = repository.list_applications(db, caller.identity, owner_id=owner_id)
    return [_application_response(application, applicant) for application, applicant in rows]


@router.patch("/admin/loans/{application_id}", response_model=LoanApplicationResponse)
def change_application_status(
    application_id: str,
    body: LoanStatusUpdate,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> LoanApplicationResponse:
    application = repository.update_application_status(db, caller.identity, application_id, body.status)
    return _application_response(application)


# =============================================================================
# Dashboard Route
# =============================================================================

def _end_user_dashboard(view: EndUserView) -> EndUserDashboard:
    return EndUserDashboard(
        profile=ProfileResponse.model_validate(view.profile) if view.profile is not None else None,
        profile_complete=view.profile_complete,
        applications=[_application_response(a) for a, _ in view.applications],
    )


@router.get("/dashboard", response_model=DashboardResponse)
def dashboard(caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    """Admin dashboard or the end user's home screen, picked once per caller."""
    view = resolve_view(db, caller.identity, caller.profile)

    if isinstance(view, AdminView):
        return AdminDashboard(
            profile=ProfileResponse.model_validate(view.profile),
            applications=[_application_response(a, p) for a, p in view.applications],
            users=[ProfileResponse.model_validate(p) for p in view.users],
            conversations=[ConversationResponse.model_validate(c) for c in view.conversations],
        )

    return _end_user_dashboard(view)


# =============================================================================
# Chat Routes
# =============================================================================

@router.get("/chat/conversation", response_model=ConversationResponse)
def open_conversation(
    request: Request,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> ConversationResponse:
    """Return the caller's active conversation, creating it on first access."""
    if caller.identity.is_admin:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Support staff select a conversation from /admin/conversations",
        )
    if not repository.has_name(caller.profile):
        raise ProfileIncomplete("Please complete your profile information before starting a chat with support")

    conversation, created = repository.get_or_create_conversation(db, caller.identity)
    log_chat_data(request, conversation_id=conversation.id, result="created" if created else "reused")
    return ConversationResponse.model_validate(conversation)


@router.get("/admin/conversations", response_model=List[ConversationResponse])
def list_conversations(
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> List[ConversationResponse]:
    return [ConversationResponse.model_validate(c) for c in repository.list_active_conversations(db, caller.identity)]


@router.get("/chat/conversations/{conversation_id}/messages", response_model=List[ChatMessageResponse])
def list_conversation_messages(
    conversation_id: str,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> List[ChatMessageResponse]:
    messages = repository.list_messages(db, caller.identity, conversation_id)
    return [ChatMessageResponse.model_validate(m) for m in messages]


@router.post(
    "/chat/conversations/{conversation_id}/messages",
    response_model=ChatMessageResponse,
    status_code=status.HTTP_201_CREATED,
)
def send_message(
    conversation_id: str,
    body: SendMessageRequest,
    request: Request,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> ChatMessageResponse:
    message = repository.create_message(
        db,
        caller.identity,
        conversation_id,
        body.message.strip(),
        is_support=caller.identity.is_admin,
        attachment_url=body.attachment_url,
        attachment_type=body.attachment_type,
    )
    log_chat_data(request, conversation_id=conversation_id, result="sent")
    return ChatMessageResponse.model_validate(message)


@router.post("/chat/messages/{message_id}/read", response_model=ChatMessageResponse)
def mark_read(
    message_id: int,
    request: Request,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> ChatMessageResponse:
    message = repository.mark_message_read(db, caller.identity, message_id)
    log_chat_data(request, conversation_id=message.conversation_id, result="read")
    return ChatMessageResponse.model_validate(message)


@router.put("/chat/conversations/{conversation_id}/typing", response_model=TypingStatusResponse)
def set_typing(
    conversation_id: str,
    body: TypingUpdate,
    request: Request,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> TypingStatusResponse:
    row = repository.upsert_typing_status(db, caller.identity, conversation_id, body.is_typing)
    log_chat_data(request, conversation_id=conversation_id, result="typing")
    return TypingStatusResponse.model_validate(row)


@router.get("/chat/conversations/{conversation_id}/typing", response_model=List[TypingStatusResponse])
def list_typing(
    conversation_id: str,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> List[TypingStatusResponse]:
    rows = repository.list_typing_statuses(db, caller.identity, conversation_id)
    return [TypingStatusResponse.model_validate(r) for r in rows]


@router.post(
    "/chat/attachments",
    response_model=AttachmentResponse,
    status_code=status.HTTP_201_CREATED,
    responses={413: {"model": ErrorResponse}},
)
async def upload_attachment(
    request: Request,
    x_user_id: Annotated[Optional[str], Header(alias="X-User-Id")] = None,
    x_filename: Annotated[str, Header(alias="X-Filename")] = "attachment",
    content_type: Annotated[str, Header(alias="Content-Type")] = "application/octet-stream",
    platform: Platform = Depends(get_platform),
    _: None = Depends(require_access_key),
) -> AttachmentResponse:
    """
    Upload a chat attachment (raw request body) to the public bucket.

    Files above MAX_ATTACHMENT_BYTES are refused before anything is stored.
    """
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing user identity")

    limit = platform.settings.MAX_ATTACHMENT_BYTES
    declared = request.headers.get("Content-Length")
    if declared is not None and declared.isdigit() and int(declared) > limit:
        log_chat_data(request, result="rejected")
        raise AttachmentTooLarge(int(declared), limit)

    content = await request.body()
    if len(content) > limit:
        log_chat_data(request, result="rejected")
        raise AttachmentTooLarge(len(content), limit)

    path = ObjectStore.build_attachment_path(x_user_id, x_filename)
    url = await platform.objects.upload(path, content, content_type)
    log_chat_data(request, result="uploaded")
    return AttachmentResponse(url=url, path=path, content_type=content_type, size=len(content))


@router.get("/storage/{bucket}/{object_path:path}")
def download_object(bucket: str, object_path: str, platform: Platform = Depends(get_platform)) -> FileResponse:
    """Public object download."""
    if bucket != platform.objects.bucket or not platform.objects.exists(object_path):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Object not found")
    media_type = mimetypes.guess_type(object_path)[0] or "application/octet-stream"
    return FileResponse(platform.objects.open(object_path), media_type=media_type)


# =============================================================================
# Realtime Chat (WebSocket)
# =============================================================================

def _message_frame(message: Dict[str, Any]) -> Dict[str, Any]:
    data = ChatMessageResponse.model_validate(message).model_dump(mode="json")
    data["receipt"] = receipt(message)
    return data


def _snapshot(session: ChatSession) -> Dict[str, Any]:
    return {
        "type": "snapshot",
        "conversation_id": session.conversation_id,
        "role": "support" if session.acting_as_support else "customer",
        "messages": [_message_frame(m) for m in session.messages],
        "someone_typing": session.someone_typing,
    }


def _event_frame(session: ChatSession, event: ChatEvent) -> Dict[str, Any]:
    if event.kind == "message":
        return {"type": "message", "message": _message_frame(event.payload)}
    if event.kind == "typing":
        status_data = TypingStatusResponse.model_validate(event.payload).model_dump(mode="json")
        return {"type": "typing", "status": status_data, "someone_typing": session.someone_typing}
    notification: Notification = event.payload
    return {"type": "notification", "level": notification.level, "text": notification.text}


async def _pump_updates(websocket: WebSocket, session: ChatSession) -> None:
    while True:
        event = await session.updates.get()
        await websocket.send_json(_event_frame(session, event))


async def _handle_frame(websocket: WebSocket, session: ChatSession, frame: Dict[str, Any]) -> None:
    kind = frame.get("type")

    if kind == "input":
        await session.input_changed(str(frame.get("text", "")))
    elif kind == "blur":
        await session.blur()
    elif kind == "attach":
        try:
            content = base64.b64decode(frame.get("data", ""), validate=True)
        except (binascii.Error, ValueError):
            await websocket.send_json({"type": "notification", "level": "error", "text": "Invalid attachment data"})
            return
        session.stage_attachment(
            str(frame.get("filename", "attachment")),
            content,
            str(frame.get("content_type", "application/octet-stream")),
        )
    elif kind == "send":
        if "text" in frame:
            session.draft = str(frame["text"])
        message = await session.send()
        if message is not None:
            await websocket.send_json({"type": "sent", "message": _message_frame(message)})
    elif kind == "select":
        if await session.select_conversation(str(frame.get("conversation_id", ""))):
            await websocket.send_json(_snapshot(session))
    else:
        await websocket.send_json({"type": "notification", "level": "error", "text": f"Unknown frame type: {kind}"})


@router.websocket("/chat/ws")
async def chat_socket(websocket: WebSocket) -> None:
    """
    Live chat for one connection.

    The caller is identified by X-User-Id / X-Api-Key headers or the
    user_id / apikey query parameters. The chat session lives exactly as
    long as the connection.
    """
    platform: Platform = websocket.app.state.platform
    api_key = websocket.headers.get("X-Api-Key") or websocket.query_params.get("apikey")
    user_id = websocket.headers.get("X-User-Id") or websocket.query_params.get("user_id")

    await websocket.accept()
    if not user_id or not verify_access_key(api_key, platform.settings.platform_key):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    try:
        session = await open_chat(platform, user_id)
    except ProfileIncomplete as e:
        await websocket.send_json({"type": "precondition", "code": e.code, "detail": e.message})
        await websocket.close()
        return
    except StoreError as e:
        logger.error(f"Failed to open chat for {user_id}: {e.message}")
        await websocket.send_json({"type": "notification", "level": "error", "text": f"Failed to open chat: {e.message}"})
        await websocket.close()
        return

    async with session:
        await websocket.send_json(_snapshot(session))
        pump = asyncio.create_task(_pump_updates(websocket, session))
        try:
            while True:
                text = await websocket.receive_text()
                try:
                    frame = json.loads(text)
                except ValueError:
                    logger.warning(f"Ignoring malformed chat frame from {user_id}")
                    await websocket.send_json({"type": "notification", "level": "error", "text": "Invalid frame"})
                    continue
                if not isinstance(frame, dict):
                    continue
                try:
                    await _handle_frame(websocket, session, frame)
                except QuickLoansError as e:
                    await websocket.send_json({"type": "notification", "level": "error", "text": e.message})
        except WebSocketDisconnect:
            logger.info(f"Chat socket closed for {user_id}")
        finally:
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)


# =============================================================================
# Metrics Route
# =============================================================================

@router.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


# =============================================================================
# Error Handlers
# =============================================================================

def _status_for(exc: QuickLoansError) -> int:
    if isinstance(exc, AttachmentTooLarge):
        return status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    if isinstance(exc, EmptyMessage):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, PreconditionFailed):
        return status.HTTP_412_PRECONDITION_FAILED
    if isinstance(exc, PermissionDenied):
        return status.HTTP_403_FORBIDDEN
    if isinstance(exc, NotFound):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, InvalidStatusTransition):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, StoreError) and exc.is_constraint_violation:
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    return status.HTTP_503_SERVICE_UNAVAILABLE


async def handle_app_error(request: Request, exc: QuickLoansError) -> JSONResponse:
    status_code = _status_for(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "code": exc.code})


# =============================================================================
# Application Factory
# =============================================================================

def _sweep_once(platform: Platform) -> int:
    with platform.session() as db:
        return repository.sweep_stale_typing(db, timedelta(seconds=platform.settings.TYPING_STALE_SECONDS))


async def _sweep_typing_forever(platform: Platform) -> None:
    interval = platform.settings.TYPING_SWEEP_INTERVAL
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(_sweep_once, platform)
        except StoreError as e:
            logger.warning(f"Typing sweep failed: {e.message}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, start the stale typing sweeper
    - Shutdown: stop the sweeper, drop realtime subscriptions, dispose engine
    """
    platform: Platform = app.state.platform
    if platform.settings.platform_configured:
        init_db(platform)
    else:
        logger.warning("Skipping database initialization: platform not configured")

    sweeper = None
    if platform.settings.TYPING_SWEEP_INTERVAL > 0:
        sweeper = asyncio.create_task(_sweep_typing_forever(platform))

    yield

    if sweeper is not None:
        sweeper.cancel()
        await asyncio.gather(sweeper, return_exceptions=True)
    platform.dispose()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the application around one explicitly constructed platform."""
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title="Quick Loans API",
        description="Loan applications, profiles and support chat",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.platform = create_platform(settings)

    app.add_middleware(RequestLoggingMiddleware)
    app.add_exception_handler(QuickLoansError, handle_app_error)
    app.include_router(router)
    return app


app = create_app()
