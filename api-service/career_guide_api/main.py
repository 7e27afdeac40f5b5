"""FastAPI application entrypoint for the Career Guide API."""

from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from career_guide_api import __version__
from career_guide_api.catalog import get_catalog
from career_guide_api.config import get_settings
from career_guide_api.conversation_store import ConversationNotFoundError, get_conversation_store
from career_guide_api.models import (
    CompleteRequest,
    Conversation,
    ConversationSummary,
    HealthResponse,
    ProfileView,
    ReactionRequest,
    Recommendation,
    ResetRequest,
    SendMessageRequest,
    StartConversationRequest,
    StatsResponse,
    TurnResponse,
    milestone_view,
)
from career_guide_api.observability import generate_trace_id, set_trace_id
from career_guide_api.openrouter_client import close_openrouter_client
from career_guide_api.orchestrator import (
    ConversationNotActiveError,
    RecommendationNotFoundError,
    TurnFailedError,
    get_orchestrator,
)
from career_guide_api.profile_aggregator import ProfileAggregator

# Configure structlog
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()
settings = get_settings()

# Rate limiter
limiter = Limiter(key_func=get_remote_address)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting Career Guide API", version=__version__)

    catalog = get_catalog()
    if len(catalog) == 0:
        logger.warning("Occupation catalog is empty, recommendations disabled")

    try:
        await get_orchestrator()
        logger.info("Orchestrator initialized", llm_enabled=settings.llm_enabled)
    except Exception as e:
        logger.warning("Failed to initialize OpenRouter client", error=str(e))

    yield

    logger.info("Shutting down Career Guide API")
    await close_openrouter_client()


# Create FastAPI app
app = FastAPI(
    title="Career Guide API",
    description="Conversational career guidance with occupation recommendations",
    version=__version__,
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Trace ID middleware for request correlation
@app.middleware("http")
async def trace_id_middleware(request: Request, call_next):
    """Add trace ID to every request for log correlation."""
    trace_id = request.headers.get("X-Trace-ID", generate_trace_id())
    set_trace_id(trace_id)

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(trace_id=trace_id)

    response = await call_next(request)
    response.headers["X-Trace-ID"] = trace_id
    return response


# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add Prometheus metrics
Instrumentator().instrument(app).expose(app)


# =============================================================================
# Error Mapping
# =============================================================================


@app.exception_handler(ConversationNotFoundError)
async def conversation_not_found_handler(
    request: Request, exc: ConversationNotFoundError
) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": "Conversation not found"})


@app.exception_handler(RecommendationNotFoundError)
async def recommendation_not_found_handler(
    request: Request, exc: RecommendationNotFoundError
) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": "Recommendation not found"})


@app.exception_handler(ConversationNotActiveError)
async def conversation_not_active_handler(
    request: Request, exc: ConversationNotActiveError
) -> JSONResponse:
    return JSONResponse(
        status_code=409, content={"detail": f"Conversation is {exc.status}"}
    )


@app.exception_handler(TurnFailedError)
async def turn_failed_handler(request: Request, exc: TurnFailedError) -> JSONResponse:
    # Internal error text stays in the logs
    return JSONResponse(
        status_code=500,
        content={"detail": "Something went wrong while processing your message. Please try again."},
    )


def _turn_response(conversation: Conversation) -> TurnResponse:
    last_assistant = conversation.recent_assistant_messages(1)
    return TurnResponse(
        conversation_id=conversation.id,
        message=last_assistant[0] if last_assistant else "",
        phase=conversation.phase,
        status=conversation.status,
        completeness=ProfileAggregator(conversation.profile).completeness(),
        milestones=[milestone_view(m) for m in conversation.milestones],
        recommendations=conversation.recommendations,
    )


def _summary(conversation: Conversation) -> ConversationSummary:
    return ConversationSummary(
        id=conversation.id,
        user_id=conversation.user_id,
        status=conversation.status,
        phase=conversation.phase,
        message_count=len(conversation.messages),
        created_at=conversation.created_at,
        last_active_at=conversation.last_active_at,
    )


# =============================================================================
# Health Endpoints
# =============================================================================


@app.get("/health", response_model=HealthResponse)
@app.get("/api/v1/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check the health of the API and its dependencies."""
    catalog_size = len(get_catalog())
    return HealthResponse(
        status="healthy" if catalog_size > 0 else "degraded",
        llm_configured=settings.llm_enabled,
        catalog_size=catalog_size,
        active_conversations=get_conversation_store().count(),
        version=__version__,
    )


# =============================================================================
# Conversation Endpoints
# =============================================================================


@app.post("/api/v1/conversations", response_model=TurnResponse, status_code=201)
async def start_conversation(body: StartConversationRequest) -> TurnResponse:
    """Start a conversation; any active conversation of the user is abandoned."""
    orchestrator = await get_orchestrator()
    conversation = await orchestrator.start_conversation(body.user_id, body.metadata)
    return _turn_response(conversation)


@app.post("/api/v1/conversations/reset", response_model=TurnResponse, status_code=201)
async def reset_conversations(body: ResetRequest) -> TurnResponse:
    orchestrator = await get_orchestrator()
    _, conversation = await orchestrator.reset_user(body.user_id)
    return _turn_response(conversation)


@app.get("/api/v1/conversations/{conversation_id}", response_model=Conversation)
async def get_conversation(conversation_id: str) -> Conversation:
    orchestrator = await get_orchestrator()
    return orchestrator.get_conversation(conversation_id)


@app.get("/api/v1/users/{user_id}/conversations", response_model=list[ConversationSummary])
async def list_user_conversations(user_id: str, limit: int = 10) -> list[ConversationSummary]:
    orchestrator = await get_orchestrator()
    return [_summary(c) for c in orchestrator.list_user_conversations(user_id, limit)]


@app.post("/api/v1/conversations/{conversation_id}/messages", response_model=TurnResponse)
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def send_message(
    request: Request, conversation_id: str, body: SendMessageRequest
) -> TurnResponse:
    """
    Process one user message.

    - **content**: The user's message (1-2000 characters)

    Returns the assistant's reply together with the phase, milestone states
    and current recommendations.
    """
    orchestrator = await get_orchestrator()
    logger.info(
        "Message received",
        conversation_id=conversation_id,
        message_length=len(body.content),
    )
    conversation = await orchestrator.process_turn(conversation_id, body.content)
    return _turn_response(conversation)


@app.post("/api/v1/conversations/{conversation_id}/pause", response_model=ConversationSummary)
async def pause_conversation(conversation_id: str) -> ConversationSummary:
    orchestrator = await get_orchestrator()
    return _summary(await orchestrator.pause(conversation_id))


@app.post("/api/v1/conversations/{conversation_id}/resume", response_model=ConversationSummary)
async def resume_conversation(conversation_id: str) -> ConversationSummary:
    orchestrator = await get_orchestrator()
    return _summary(await orchestrator.resume(conversation_id))


@app.post("/api/v1/conversations/{conversation_id}/complete", response_model=TurnResponse)
async def complete_conversation(
    conversation_id: str, body: CompleteRequest | None = None
) -> TurnResponse:
    orchestrator = await get_orchestrator()
    satisfaction = body.satisfaction if body else None
    conversation = await orchestrator.complete_conversation(conversation_id, satisfaction)
    return _turn_response(conversation)


@app.get("/api/v1/conversations/{conversation_id}/profile", response_model=ProfileView)
async def get_profile(conversation_id: str) -> ProfileView:
    orchestrator = await get_orchestrator()
    return orchestrator.profile_view(conversation_id)


@app.get(
    "/api/v1/conversations/{conversation_id}/recommendations",
    response_model=list[Recommendation],
)
async def get_recommendations(conversation_id: str) -> list[Recommendation]:
    orchestrator = await get_orchestrator()
    return orchestrator.get_conversation(conversation_id).recommendations


@app.post(
    "/api/v1/conversations/{conversation_id}/recommendations/{occupation_id}/reaction",
    response_model=Recommendation,
)
async def react_to_recommendation(
    conversation_id: str, occupation_id: str, body: ReactionRequest
) -> Recommendation:
    orchestrator = await get_orchestrator()
    return await orchestrator.react_to_recommendation(
        conversation_id, occupation_id, body.reaction
    )


@app.get("/api/v1/stats", response_model=StatsResponse)
async def conversation_stats() -> StatsResponse:
    orchestrator = await get_orchestrator()
    return StatsResponse.model_validate(orchestrator.conversation_stats())


# =============================================================================
# Entry point
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "career_guide_api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
    )
