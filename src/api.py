"""
HTTP interface for the intake wizard and roadmaps (FastAPI).

Errors are returned as ``{"error_code", "category", "detail", "extra"}``
with a status code chosen by category.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.engine import Engine

try:
    from .agents.grading_agent import Grader
    from .exceptions import IntakeError
    from .models.catalog import Catalog, get_catalog
    from .models.intake_session import IntakeSessionService
    from .models.roadmap import RoadmapOptions, RoadmapService
    from .utils.persistence import init_db, make_engine, make_session_factory
except ImportError:
    from src.agents.grading_agent import Grader
    from src.exceptions import IntakeError
    from src.models.catalog import Catalog, get_catalog
    from src.models.intake_session import IntakeSessionService
    from src.models.roadmap import RoadmapOptions, RoadmapService
    from src.utils.persistence import init_db, make_engine, make_session_factory

logger = logging.getLogger(__name__)

STATUS_BY_CATEGORY = {
    "VALIDATION": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "STATE_CONFLICT": status.HTTP_409_CONFLICT,
    "EXTERNAL_UNAVAILABLE": status.HTTP_503_SERVICE_UNAVAILABLE,
    "CATALOG_INTEGRITY": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


# ==================== Schemas ====================


class StartRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    resume: bool = False


class SessionRequest(BaseModel):
    session_id: str = Field(..., min_length=1)


class SubmitRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
    step_id: str = Field(..., min_length=1)
    answer: Any = None


class StatusUpdateRequest(BaseModel):
    status: str


class RegenerateRequest(BaseModel):
    target_role: Optional[str] = None
    max_weeks: Optional[int] = Field(default=None, gt=0)
    hours_per_week: Optional[float] = Field(default=None, gt=0)
    threshold: Optional[float] = Field(default=None, ge=0, le=1)
    include_unassessed: Optional[bool] = None


# ==================== Dependencies ====================


def get_intake_service(request: Request) -> IntakeSessionService:
    return request.app.state.intake_service


def get_roadmap_service(request: Request) -> RoadmapService:
    return request.app.state.roadmap_service


intake_router = APIRouter(prefix="/intake", tags=["Intake"])
roadmap_router = APIRouter(prefix="/roadmap", tags=["Roadmap"])


# ==================== Intake ====================


@intake_router.post("/start")
def start_intake(
    body: StartRequest, service: IntakeSessionService = Depends(get_intake_service)
) -> Dict[str, Any]:
    result = service.start_or_resume(body.user_id) if body.resume else service.start(body.user_id)
    return result.to_dict()


@intake_router.get("/current")
def current_step(
    session_id: str, service: IntakeSessionService = Depends(get_intake_service)
) -> Dict[str, Any]:
    return service.get_current_step(session_id).to_dict()


@intake_router.post("/submit")
def submit_answer(
    body: SubmitRequest, service: IntakeSessionService = Depends(get_intake_service)
) -> Dict[str, Any]:
    return service.submit_answer(body.session_id, body.step_id, body.answer).to_dict()


@intake_router.post("/back")
def go_back(
    body: SessionRequest, service: IntakeSessionService = Depends(get_intake_service)
) -> Dict[str, Any]:
    return service.go_back(body.session_id).to_dict()


@intake_router.post("/abandon")
def abandon(
    body: SessionRequest, service: IntakeSessionService = Depends(get_intake_service)
) -> Dict[str, Any]:
    return service.abandon(body.session_id)


@intake_router.get("/summary")
def summary(
    session_id: str, service: IntakeSessionService = Depends(get_intake_service)
) -> Dict[str, Any]:
    return service.summary(session_id)


@intake_router.get("/status")
def intake_status(
    user_id: str, service: IntakeSessionService = Depends(get_intake_service)
) -> Dict[str, Any]:
    return {
        "user_id": user_id,
        "has_completed_intake": service.has_completed_intake(user_id),
        "latest_session": service.latest_session(user_id),
    }


# ==================== Roadmap ====================


@roadmap_router.get("/{user_id}")
def get_roadmap(
    user_id: str, service: RoadmapService = Depends(get_roadmap_service)
) -> List[Dict[str, Any]]:
    return service.roadmap(user_id)


@roadmap_router.get("/{user_id}/summary")
def get_roadmap_summary(
    user_id: str, service: RoadmapService = Depends(get_roadmap_service)
) -> Dict[str, Any]:
    return service.summary(user_id)


@roadmap_router.get("/{user_id}/next")
def get_next_item(
    user_id: str, service: RoadmapService = Depends(get_roadmap_service)
) -> Dict[str, Any]:
    return {"item": service.next_item(user_id)}


@roadmap_router.patch("/items/{item_id}/status")
def update_item_status(
    item_id: str,
    body: StatusUpdateRequest,
    service: RoadmapService = Depends(get_roadmap_service),
) -> Dict[str, Any]:
    return service.update_status(item_id, body.status)


@roadmap_router.post("/{user_id}/regenerate")
def regenerate_roadmap(
    user_id: str,
    body: Optional[RegenerateRequest] = None,
    service: RoadmapService = Depends(get_roadmap_service),
) -> List[Dict[str, Any]]:
    body = body or RegenerateRequest()
    options = RoadmapOptions(**body.model_dump())
    return service.regenerate(user_id, options)


# ==================== App ====================


async def intake_error_handler(request: Request, exc: IntakeError) -> JSONResponse:
    status_code = STATUS_BY_CATEGORY.get(exc.category, status.HTTP_500_INTERNAL_SERVER_ERROR)
    if status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc.code)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def create_app(
    catalog: Optional[Catalog] = None,
    engine: Optional[Engine] = None,
    grader: Optional[Grader] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        catalog: Loaded catalog (default: get_catalog())
        engine: SQLAlchemy engine (default: config.database.url)
        grader: Grader (default: sandbox + OpenAI from config)
    """
    catalog = catalog or get_catalog()
    engine = engine or make_engine()
    init_db(engine)
    session_factory = make_session_factory(engine)

    roadmap_service = RoadmapService(catalog, session_factory)
    intake_service = IntakeSessionService(
        catalog,
        session_factory,
        grader=grader,
        roadmap_service=roadmap_service,
    )

    app = FastAPI(title="skillpath", version="0.1.0")
    app.state.catalog = catalog
    app.state.intake_service = intake_service
    app.state.roadmap_service = roadmap_service
    app.add_exception_handler(IntakeError, intake_error_handler)
    app.include_router(intake_router)
    app.include_router(roadmap_router)

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "catalog_version": catalog.version,
            "total_steps": len(catalog.steps),
        }

    logger.info("API ready (catalog %s, %d steps)", catalog.version, len(catalog.steps))
    return app
