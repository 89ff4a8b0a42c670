import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, Header, Query, Request, Response, status
from fastapi.responses import JSONResponse

from tabchat.config import Settings, get_settings
from tabchat.container import ServiceContainer
from tabchat.errors import (
    ChatCoreError,
    DefaultTabProtected,
    InvalidMessage,
    InvariantViolation,
    NotFound,
    NotParticipant,
    StoreError,
    StoreUnavailable,
    TabNotEmpty,
    Unauthenticated,
)
from tabchat.logging_utils import setup_logging, RequestLoggingMiddleware
from tabchat.metrics import render_metrics
from tabchat.schemas import (
    ChatTabResponse,
    ConversationResponse,
    ConversationSearchResult,
    ConversationSummary,
    CreateConversationRequest,
    CreateTabRequest,
    ErrorResponse,
    HealthResponse,
    MarkReadResponse,
    MessageResponse,
    Presence,
    PresenceRequest,
    RegisterUserRequest,
    RenameTabRequest,
    ReorderTabsRequest,
    SendMessageRequest,
    TopicDetectionResponse,
    UpdateProfileRequest,
    UserResponse,
)
from tabchat.tabs import TabDeletion
from tabchat.utils import verify_user_signature

logger = logging.getLogger(__name__)


# =============================================================================
# Dependencies
# =============================================================================

def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def current_user_id(
    request: Request,
    x_user_id: Annotated[Optional[str], Header(alias="X-User-Id")] = None,
    x_user_signature: Annotated[Optional[str], Header(alias="X-User-Signature")] = None,
) -> str:
    """
    Resolve the acting user from the identity headers.

    When AUTH_SECRET is set, X-User-Signature must be the hex HMAC-SHA256
    of the user id; otherwise the id is trusted as-is.
    """
    if not x_user_id or not x_user_id.strip():
        logger.warning("Missing X-User-Id header")
        raise Unauthenticated("missing X-User-Id header")

    secret = request.app.state.settings.AUTH_SECRET
    if secret:
        if not x_user_signature:
            logger.warning("Missing X-User-Signature header")
            raise Unauthenticated("missing X-User-Signature header")
        if not verify_user_signature(x_user_id, x_user_signature, secret):
            logger.warning(f"Invalid identity signature for {x_user_id}")
            raise Unauthenticated("invalid identity signature")

    request.state.user_id = x_user_id
    return x_user_id


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored timestamps are naive UTC; convert aware query values to match."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


Services = Annotated[ServiceContainer, Depends(get_container)]
CurrentUser = Annotated[str, Depends(current_user_id)]


def _participant_conversation(services: ServiceContainer, conversation_id: str, user_id: str) -> ConversationResponse:
    conversation = services.conversations.get_conversation(conversation_id)
    if conversation.slot_of(user_id) is None:
        raise NotParticipant(f"{user_id} is not a participant of {conversation_id}")
    return conversation


def _participant_tab(services: ServiceContainer, tab_id: str, user_id: str) -> ChatTabResponse:
    tab = services.tabs.get_tab(tab_id)
    _participant_conversation(services, tab.conversation_id, user_id)
    return tab


def _participant_message(services: ServiceContainer, message_id: str, user_id: str) -> MessageResponse:
    message = services.messages.get_message(message_id)
    _participant_tab(services, message.tab_id, user_id)
    return message


# =============================================================================
# Error Handlers
# =============================================================================

# Most specific first; the first matching class wins
ERROR_STATUS = [
    (NotFound, status.HTTP_404_NOT_FOUND, "not_found"),
    (Unauthenticated, status.HTTP_401_UNAUTHORIZED, "unauthenticated"),
    (InvalidMessage, 422, "invalid_message"),
    (DefaultTabProtected, status.HTTP_409_CONFLICT, "default_tab"),
    (TabNotEmpty, status.HTTP_409_CONFLICT, "has_messages"),
    (NotParticipant, status.HTTP_409_CONFLICT, "not_participant"),
    (InvariantViolation, status.HTTP_409_CONFLICT, "invariant_violation"),
    (StoreUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE, "store_unavailable"),
    (StoreError, status.HTTP_500_INTERNAL_SERVER_ERROR, "store_error"),
]


async def chat_core_error_handler(request: Request, exc: ChatCoreError) -> JSONResponse:
    status_code, reason = status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error"
    for error_class, code, error_reason in ERROR_STATUS:
        if isinstance(exc, error_class):
            status_code, reason = code, error_reason
            break

    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({reason}): {exc}")

    body = ErrorResponse(detail=str(exc), reason=reason)
    headers = {"WWW-Authenticate": "X-User-Id"} if status_code == status.HTTP_401_UNAUTHORIZED else None
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


# =============================================================================
# Application
# =============================================================================

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Services are constructed in the lifespan, so nothing touches the
    database until the app starts.
    """
    settings = settings or get_settings()

    # Setup structured JSON logging
    setup_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Lifespan context manager for startup and shutdown events.
        - Startup: Build services and create tables
        - Shutdown: Drain background work and dispose the engine
        """
        container = ServiceContainer.create(settings)
        app.state.container = container
        logger.info("Chat core started")
        yield
        container.close()

    app = FastAPI(
        title="Tabchat API",
        description="Direct-message chat core with per-conversation topic tabs",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.add_middleware(RequestLoggingMiddleware)
    app.add_exception_handler(ChatCoreError, chat_core_error_handler)

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:
    error_responses = {
        401: {"model": ErrorResponse, "description": "Missing or invalid identity"},
        404: {"model": ErrorResponse, "description": "Unknown id"},
        409: {"model": ErrorResponse, "description": "Invariant violation"},
    }

    # =========================================================================
    # Health Check Routes
    # =========================================================================

    @app.get("/health/live", response_model=HealthResponse)
    def health_live() -> HealthResponse:
        """
        Liveness probe - always returns 200 once the app is running.
        """
        return HealthResponse(status="ok")

    @app.get("/health/ready", response_model=HealthResponse)
    def health_ready(response: Response, services: Services) -> HealthResponse:
        """
        Readiness probe - returns 200 only if the database is reachable,
        503 otherwise.
        """
        if not services.store.check_health():
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(
                status="not_ready",
                reason="Database not reachable or schema not applied"
            )
        return HealthResponse(status="ready")

    @app.get("/metrics")
    def metrics() -> Response:
        """Expose Prometheus-style metrics."""
        body, content_type = render_metrics()
        return Response(content=body, media_type=content_type)

    # =========================================================================
    # Users
    # =========================================================================

    @app.post("/users", response_model=UserResponse, responses=error_responses)
    def register_user(body: RegisterUserRequest, user_id: CurrentUser, services: Services) -> UserResponse:
        """First sign-in: create the caller's profile, or return it if it exists."""
        return services.users.ensure_user(user_id, body.phone_number, body.display_name)

    @app.get("/users", response_model=list[UserResponse])
    def search_users(
        user_id: CurrentUser,
        services: Services,
        q: Annotated[str, Query(min_length=1, description="Phone number (+...) or part of a display name")],
    ) -> list[UserResponse]:
        return services.users.search_users(q, exclude_user_id=user_id)

    @app.patch("/users/me", response_model=UserResponse, responses=error_responses)
    def update_profile(body: UpdateProfileRequest, user_id: CurrentUser, services: Services) -> UserResponse:
        return services.users.update_profile(user_id, body.display_name, body.about)

    @app.put("/users/me/presence", response_model=UserResponse, responses=error_responses)
    def update_presence(body: PresenceRequest, user_id: CurrentUser, services: Services) -> UserResponse:
        return services.users.update_presence(user_id, body.status)

    @app.get("/users/recent", response_model=list[UserResponse])
    def recently_active_users(user_id: CurrentUser, services: Services) -> list[UserResponse]:
        """Users seen in the last 24 hours, most recent first."""
        return services.users.recently_active(exclude_user_id=user_id)

    @app.get("/users/by-status/{presence}", response_model=list[UserResponse])
    def users_by_status(presence: Presence, user_id: CurrentUser, services: Services) -> list[UserResponse]:
        return services.users.list_users_by_status(presence, exclude_user_id=user_id)

    @app.get("/users/{target_id}", response_model=UserResponse, responses=error_responses)
    def get_user(target_id: str, user_id: CurrentUser, services: Services) -> UserResponse:
        return services.users.get_user(target_id)

    # =========================================================================
    # Conversations
    # =========================================================================

    @app.post("/conversations", response_model=ConversationResponse, responses=error_responses)
    def create_conversation(
        body: CreateConversationRequest, user_id: CurrentUser, services: Services
    ) -> ConversationResponse:
        """
        Find or create the conversation with another user.

        Idempotent: both participants get the same conversation back,
        whoever calls first.
        """
        conversation_id = services.conversations.create_conversation(user_id, body.other_user_id)
        return services.conversations.get_conversation(conversation_id)

    @app.get("/conversations", response_model=list[ConversationSummary])
    def list_conversations(
        user_id: CurrentUser,
        services: Services,
        unread_only: Annotated[bool, Query(description="Only conversations with unread messages")] = False,
        active_after: Annotated[Optional[datetime], Query(description="Last activity at or after")] = None,
        active_before: Annotated[Optional[datetime], Query(description="Last activity at or before")] = None,
    ) -> list[ConversationSummary]:
        """The caller's conversations, most recent activity first."""
        if active_after is None and active_before is None:
            conversations = services.conversations.list_conversations(user_id, unread_only=unread_only)
        else:
            conversations = services.conversations.list_by_timeframe(
                user_id, _naive_utc(active_after), _naive_utc(active_before)
            )
            if unread_only:
                conversations = [c for c in conversations if c.unread_count_for(user_id) > 0]

        summaries = []
        for conversation in conversations:
            try:
                other = services.users.get_user(conversation.other_participant(user_id))
            except NotFound:
                other = None
            summaries.append(ConversationSummary(
                conversation=conversation,
                other_user=other,
                unread_count=conversation.unread_count_for(user_id),
            ))
        logger.debug(f"GET /conversations: {len(summaries)} conversations for {user_id}")
        return summaries

    @app.get("/conversations/search", response_model=list[ConversationSearchResult])
    def search_conversations(
        user_id: CurrentUser,
        services: Services,
        q: Annotated[str, Query(min_length=1, description="Participant name/phone or message text")],
    ) -> list[ConversationSearchResult]:
        """Participant matches first, then by most recent activity."""
        return services.conversations.search_conversations(user_id, q)

    @app.get("/conversations/{conversation_id}", response_model=ConversationResponse, responses=error_responses)
    def get_conversation(conversation_id: str, user_id: CurrentUser, services: Services) -> ConversationResponse:
        return _participant_conversation(services, conversation_id, user_id)

    @app.delete("/conversations/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT, responses=error_responses)
    def delete_conversation(conversation_id: str, user_id: CurrentUser, services: Services) -> Response:
        """Delete the conversation with all of its tabs and messages."""
        _participant_conversation(services, conversation_id, user_id)
        tab_ids = [tab.id for tab in services.tabs.list_tabs(conversation_id)]
        services.conversations.delete_conversation(conversation_id)
        services.topics.forget(tab_ids)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/conversations/{conversation_id}/read", response_model=ConversationResponse, responses=error_responses)
    def mark_conversation_read(conversation_id: str, user_id: CurrentUser, services: Services) -> ConversationResponse:
        services.conversations.mark_read(conversation_id, user_id)
        return services.conversations.get_conversation(conversation_id)

    # =========================================================================
    # Tabs
    # =========================================================================

    @app.get("/conversations/{conversation_id}/tabs", response_model=list[ChatTabResponse], responses=error_responses)
    def list_tabs(conversation_id: str, user_id: CurrentUser, services: Services) -> list[ChatTabResponse]:
        _participant_conversation(services, conversation_id, user_id)
        return services.tabs.list_tabs(conversation_id)

    @app.post(
        "/conversations/{conversation_id}/tabs",
        response_model=ChatTabResponse,
        status_code=status.HTTP_201_CREATED,
        responses=error_responses,
    )
    def create_tab(
        conversation_id: str, body: CreateTabRequest, user_id: CurrentUser, services: Services
    ) -> ChatTabResponse:
        """Append a tab; without a name it is called "Topic <n>" until topic detection renames it."""
        tab_id = services.tabs.create_tab(conversation_id, user_id, body.name)
        return services.tabs.get_tab(tab_id)

    @app.put("/conversations/{conversation_id}/tabs/order", response_model=list[ChatTabResponse], responses=error_responses)
    def reorder_tabs(
        conversation_id: str, body: ReorderTabsRequest, user_id: CurrentUser, services: Services
    ) -> list[ChatTabResponse]:
        _participant_conversation(services, conversation_id, user_id)
        services.tabs.reorder_tabs(conversation_id, body.tab_ids)
        return services.tabs.list_tabs(conversation_id)

    @app.patch("/tabs/{tab_id}", response_model=ChatTabResponse, responses=error_responses)
    def rename_tab(tab_id: str, body: RenameTabRequest, user_id: CurrentUser, services: Services) -> ChatTabResponse:
        _participant_tab(services, tab_id, user_id)
        if not services.tabs.rename_tab(tab_id, body.name):
            raise NotFound("tab", tab_id)
        return services.tabs.get_tab(tab_id)

    @app.delete("/tabs/{tab_id}", status_code=status.HTTP_204_NO_CONTENT, responses=error_responses)
    def delete_tab(tab_id: str, user_id: CurrentUser, services: Services) -> Response:
        """
        Delete a tab.

        The default tab and tabs holding messages are never deleted (409).
        """
        _participant_tab(services, tab_id, user_id)
        result = services.tabs.delete_tab(tab_id)
        if result is TabDeletion.NOT_FOUND:
            raise NotFound("tab", tab_id)
        if result is TabDeletion.DEFAULT_TAB:
            raise DefaultTabProtected("the default tab can not be deleted")
        if result is TabDeletion.HAS_MESSAGES:
            raise TabNotEmpty("only empty tabs can be deleted")
        services.topics.forget([tab_id])
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/tabs/{tab_id}/topic", response_model=TopicDetectionResponse, responses=error_responses)
    def detect_topic(tab_id: str, user_id: CurrentUser, services: Services) -> TopicDetectionResponse:
        """Re-run topic detection for a tab, ignoring any cached outcome."""
        _participant_tab(services, tab_id, user_id)
        topic = services.topics.manually_detect_topic(tab_id)
        tab = services.tabs.get_tab(tab_id)
        return TopicDetectionResponse(
            tab_id=tab_id,
            renamed=topic is not None,
            name=tab.name,
            state=services.topics.state(tab_id).value,
        )

    # =========================================================================
    # Messages
    # =========================================================================

    @app.get("/tabs/{tab_id}/messages", response_model=list[MessageResponse], responses=error_responses)
    def list_messages(
        tab_id: str,
        user_id: CurrentUser,
        services: Services,
        limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of messages to return")] = 50,
        after_order: Annotated[Optional[int], Query(ge=0, description="Only messages after this order")] = None,
    ) -> list[MessageResponse]:
        """Non-deleted messages of a tab in message order."""
        _participant_tab(services, tab_id, user_id)
        return services.messages.list_messages(tab_id, limit=limit, after_order=after_order)

    @app.post(
        "/tabs/{tab_id}/messages",
        response_model=MessageResponse,
        status_code=status.HTTP_201_CREATED,
        responses={**error_responses, 422: {"model": ErrorResponse, "description": "Invalid message"}},
    )
    def send_message(tab_id: str, body: SendMessageRequest, user_id: CurrentUser, services: Services) -> MessageResponse:
        """
        Send a message into a tab.

        Returns once the message is stored and delivered; unread counters
        and topic detection update in the background.
        """
        message_id = services.messages.send(
            tab_id,
            user_id,
            body.message_type,
            content=body.content,
            media_url=body.media_url,
            media_type=body.media_type,
            reply_to_message_id=body.reply_to_message_id,
        )
        return services.messages.get_message(message_id)

    @app.get("/tabs/{tab_id}/messages/search", response_model=list[MessageResponse], responses=error_responses)
    def search_messages(
        tab_id: str,
        user_id: CurrentUser,
        services: Services,
        q: Annotated[str, Query(min_length=1, description="Case-insensitive text to look for")],
    ) -> list[MessageResponse]:
        _participant_tab(services, tab_id, user_id)
        return services.messages.search_messages(tab_id, q)

    @app.post("/tabs/{tab_id}/read", response_model=MarkReadResponse, responses=error_responses)
    def mark_tab_read(tab_id: str, user_id: CurrentUser, services: Services) -> MarkReadResponse:
        _participant_tab(services, tab_id, user_id)
        return MarkReadResponse(marked=services.messages.mark_tab_read(tab_id, user_id))

    @app.get("/messages/{message_id}", response_model=MessageResponse, responses=error_responses)
    def get_message(message_id: str, user_id: CurrentUser, services: Services) -> MessageResponse:
        return _participant_message(services, message_id, user_id)

    @app.delete("/messages/{message_id}", response_model=MessageResponse, responses=error_responses)
    def delete_message(message_id: str, user_id: CurrentUser, services: Services) -> MessageResponse:
        """Soft delete: content and media are cleared, the order slot stays."""
        _participant_message(services, message_id, user_id)
        services.messages.soft_delete(message_id, user_id)
        return services.messages.get_message(message_id)

    @app.post("/messages/{message_id}/read", response_model=MessageResponse, responses=error_responses)
    def mark_message_read(message_id: str, user_id: CurrentUser, services: Services) -> MessageResponse:
        _participant_message(services, message_id, user_id)
        services.messages.mark_read(message_id, user_id)
        return services.messages.get_message(message_id)


app = create_app()
