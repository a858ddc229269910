import logging

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .agent.errors import (
    AlreadyCompletedToday,
    CoachError,
    CompletionInFlight,
    EntityNotFound,
    InvalidCapacity,
    InvalidProposalTransition,
    InvalidRanking,
    ModelCallError,
    PartialApplyError,
    ProposalNotFound,
    UnknownHandler,
)
from .config import get_settings
from .routers.chat import router as chat_router
from .routers.focus import router as focus_router
from .routers.habits import router as habits_router
from .routers.profiles import router as profiles_router
from .routers.proposals import router as proposals_router

_logging_configured = False


def configure_logging(level: str = "INFO") -> None:
    """Configure stdlib logging and structlog once; later calls are no-ops."""
    global _logging_configured
    if _logging_configured:
        return
    _logging_configured = True

    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper(), logging.INFO))
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


configure_logging(get_settings().log_level)

logger = structlog.get_logger(__name__)

app = FastAPI(title="Coach AI Service", version="0.1.0")


def _error(status_code: int, exc: CoachError, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "retryable": exc.retryable, **extra},
    )


@app.exception_handler(ModelCallError)
async def model_call_failed(request: Request, exc: ModelCallError) -> JSONResponse:
    return _error(503, exc, kind="model_unavailable")


@app.exception_handler(AlreadyCompletedToday)
async def already_completed(request: Request, exc: AlreadyCompletedToday) -> JSONResponse:
    return _error(409, exc, kind="already_completed", habitId=exc.habit_id, date=exc.occurred_on.isoformat())


@app.exception_handler(CompletionInFlight)
async def completion_in_flight(request: Request, exc: CompletionInFlight) -> JSONResponse:
    return _error(429, exc, kind="in_flight", habitId=exc.habit_id)


@app.exception_handler(InvalidRanking)
async def invalid_ranking(request: Request, exc: InvalidRanking) -> JSONResponse:
    return _error(422, exc, kind="invalid_ranking")


@app.exception_handler(InvalidCapacity)
async def invalid_capacity(request: Request, exc: InvalidCapacity) -> JSONResponse:
    return _error(422, exc, kind="invalid_capacity")


@app.exception_handler(UnknownHandler)
async def unknown_handler(request: Request, exc: UnknownHandler) -> JSONResponse:
    return _error(422, exc, kind="unknown_handler")


@app.exception_handler(InvalidProposalTransition)
async def invalid_transition(request: Request, exc: InvalidProposalTransition) -> JSONResponse:
    return _error(409, exc, kind="invalid_transition", state=exc.current)


@app.exception_handler(ProposalNotFound)
async def proposal_not_found(request: Request, exc: ProposalNotFound) -> JSONResponse:
    return _error(404, exc, kind="proposal_not_found")


@app.exception_handler(EntityNotFound)
async def entity_not_found(request: Request, exc: EntityNotFound) -> JSONResponse:
    return _error(404, exc, kind="not_found", entity=exc.kind)


@app.exception_handler(PartialApplyError)
async def partial_apply(request: Request, exc: PartialApplyError) -> JSONResponse:
    return _error(
        500,
        exc,
        kind="partial_apply",
        failedStep=exc.failed_step,
        completedSteps=exc.completed_steps(),
        created=exc.created(),
    )


@app.exception_handler(CoachError)
async def coach_error(request: Request, exc: CoachError) -> JSONResponse:
    logger.warning("api.unhandled_coach_error", error=str(exc), error_type=type(exc).__name__)
    return _error(500, exc, kind="error")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


app.include_router(chat_router)
app.include_router(proposals_router)
app.include_router(focus_router)
app.include_router(habits_router)
app.include_router(profiles_router)
