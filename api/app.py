"""
FastAPI request/response boundary for FocusFlow.

Maps the error taxonomy to HTTP status codes by exception type. Route
handlers are thin: resolve the caller, call the engine, return its dict.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import config
from core.engine import FocusEngine, create_engine
from core.errors import AggregationFailed, FocusFlowError
from core.identity import CallerIdentity, resolve_caller

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Request bodies
# ----------------------------------------------------------------------

class RegisterUserRequest(BaseModel):
    userId: str = Field(..., min_length=1)
    name: str = ""


class StartSessionRequest(BaseModel):
    groupId: Optional[str] = None
    goal: Optional[str] = None


class SessionRequest(BaseModel):
    sessionId: str = Field(..., min_length=1)


class AdjustSessionRequest(BaseModel):
    sessionId: str = Field(..., min_length=1)
    focusScore: int = Field(..., ge=0, le=100)


class AnalyzeScreenRequest(BaseModel):
    sessionId: str = Field(..., min_length=1)
    screenDescription: str = Field(..., min_length=1)
    timestamp: Optional[str] = None  # Client capture time, informational only


class CreateGroupRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    dailyGoalMinutes: Optional[int] = Field(None, gt=0)


# ----------------------------------------------------------------------
# Dependencies
# ----------------------------------------------------------------------

def get_engine(request: Request) -> FocusEngine:
    return request.app.state.engine


def get_caller(
    x_user_id: Optional[str] = Header(None, alias=config.USER_ID_HEADER),
    authorization: Optional[str] = Header(None),
) -> CallerIdentity:
    return resolve_caller(x_user_id, authorization)


router = APIRouter()


@router.get("/health")
async def health():
    return {"status": "ok"}


# ----------------------------------------------------------------------
# Users
# ----------------------------------------------------------------------

@router.post("/users", status_code=201)
async def register_user(body: RegisterUserRequest, engine: FocusEngine = Depends(get_engine)):
    return await engine.register_user(body.userId, body.name)


@router.get("/users/me")
async def user_summary(caller: CallerIdentity = Depends(get_caller), engine: FocusEngine = Depends(get_engine)):
    return await engine.user_summary(caller.user_id)


# ----------------------------------------------------------------------
# Sessions
# ----------------------------------------------------------------------

@router.post("/sessions/start", status_code=201)
async def start_session(
    body: StartSessionRequest,
    caller: CallerIdentity = Depends(get_caller),
    engine: FocusEngine = Depends(get_engine),
):
    return await engine.start_session(caller.user_id, group_id=body.groupId, goal=body.goal)


@router.post("/sessions/stop")
async def stop_session(
    body: SessionRequest,
    caller: CallerIdentity = Depends(get_caller),
    engine: FocusEngine = Depends(get_engine),
):
    return await engine.stop_session(caller.user_id, body.sessionId)


@router.post("/sessions/adjust")
async def adjust_session(
    body: AdjustSessionRequest,
    caller: CallerIdentity = Depends(get_caller),
    engine: FocusEngine = Depends(get_engine),
):
    return await engine.adjust_session(caller.user_id, body.sessionId, body.focusScore)


@router.get("/sessions")
async def list_sessions(
    limit: Optional[int] = Query(None),
    lastEvaluatedKey: Optional[str] = Query(None),
    caller: CallerIdentity = Depends(get_caller),
    engine: FocusEngine = Depends(get_engine),
):
    return await engine.list_sessions(caller.user_id, limit=limit, cursor=lastEvaluatedKey)


@router.get("/sessions/{session_id}")
async def get_session(
    session_id: str,
    caller: CallerIdentity = Depends(get_caller),
    engine: FocusEngine = Depends(get_engine),
):
    return await engine.get_session(caller.user_id, session_id)


@router.post("/analysis")
async def analyze_screen(
    body: AnalyzeScreenRequest,
    caller: CallerIdentity = Depends(get_caller),
    engine: FocusEngine = Depends(get_engine),
):
    return await engine.analyze_screen(caller.user_id, body.sessionId, body.screenDescription)


# ----------------------------------------------------------------------
# Groups and leaderboards
# ----------------------------------------------------------------------

@router.post("/groups", status_code=201)
async def create_group(
    body: CreateGroupRequest,
    caller: CallerIdentity = Depends(get_caller),
    engine: FocusEngine = Depends(get_engine),
):
    return await engine.create_group(caller.user_id, body.name, body.description, body.dailyGoalMinutes)


@router.get("/groups/{group_id}")
async def get_group(
    group_id: str,
    caller: CallerIdentity = Depends(get_caller),
    engine: FocusEngine = Depends(get_engine),
):
    return await engine.get_group(caller.user_id, group_id)


@router.post("/groups/{group_id}/join")
async def join_group(
    group_id: str,
    caller: CallerIdentity = Depends(get_caller),
    engine: FocusEngine = Depends(get_engine),
):
    return await engine.join_group(caller.user_id, group_id)


@router.get("/leaderboard")
async def leaderboard(
    scope: str = Query("global"),
    groupId: Optional[str] = Query(None),
    limit: Optional[int] = Query(None),
    caller: CallerIdentity = Depends(get_caller),
    engine: FocusEngine = Depends(get_engine),
):
    return await engine.leaderboard(caller.user_id, scope=scope, group_id=groupId, limit=limit)


# ----------------------------------------------------------------------
# App factory
# ----------------------------------------------------------------------

async def _handle_focusflow_error(request: Request, exc: FocusFlowError) -> JSONResponse:
    if isinstance(exc, AggregationFailed):
        logger.warning(f"{request.url.path}: session saved, stats syncing later ({exc.message})")
    elif exc.status_code >= 500:
        logger.error(f"{request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def _handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    detail = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ())[1:]) or 'body'}: {err.get('msg')}"
        for err in errors
    )
    return JSONResponse(status_code=400, content={"error": detail or "Invalid request", "errorType": "validation"})


def create_app(engine: Optional[FocusEngine] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        engine: Pre-built engine (tests). When omitted the engine is built
                from config during startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "engine", None) is None:
            app.state.engine = await create_engine()
        logger.info("FocusFlow API ready")
        yield
        logger.info("FocusFlow API shutting down")

    app = FastAPI(title="FocusFlow", version="1.0.0", lifespan=lifespan)
    app.state.engine = engine
    app.add_exception_handler(FocusFlowError, _handle_focusflow_error)
    app.add_exception_handler(RequestValidationError, _handle_validation_error)
    app.include_router(router)
    return app
