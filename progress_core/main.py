from contextlib import asynccontextmanager
from collections import deque
from typing import List, Optional
import logging
from pathlib import Path

from fastapi import FastAPI, Depends, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from progress_core import config
from progress_core.auth import verify_api_key
from progress_core.exceptions import (
    ProgressCoreException,
    ValidationException,
    NotAuthenticatedException,
    ConflictException,
    PermissionDeniedException,
    NotFoundException,
)
from progress_core.infrastructure.database import engine as default_engine, SessionLocal, init_db
from progress_core.infrastructure.push import LocalPushService
from progress_core.infrastructure.sql_persistence import SqlPersistenceService
from progress_core.models import DailyGoal, Project
from progress_core.scheduler import start_scheduler, stop_scheduler
from progress_core.schemas import (
    CoreNotice,
    CoreSnapshot,
    GoalCompletion,
    Leaderboard,
    ProjectCreate,
    ProjectUpdate,
    PublicPortfolio,
    SessionCreate,
    ShareSlugResponse,
)
from progress_core.services.progress_service import ProgressCore
from progress_core.services.session_service import SessionHandle

# Configure logging
LOG_DIR = config.LOG_DIR

try:
    Path(LOG_DIR).mkdir(parents=True, exist_ok=True)
    log_path = Path(LOG_DIR) / config.LOG_FILE
except PermissionError:
    # Fallback to local directory if no permissions for /var/log
    LOG_DIR = config.DEFAULT_LOG_DIRECTORY_DEV
    Path(LOG_DIR).mkdir(parents=True, exist_ok=True)
    log_path = Path(LOG_DIR) / config.LOG_FILE

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(log_path),
        logging.StreamHandler()  # Also log to console
    ]
)

logger = logging.getLogger("progress_core")

NOTICE_BUFFER_SIZE = 20

# Exception type -> HTTP status, most specific first
ERROR_STATUS = (
    (ValidationException, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotAuthenticatedException, status.HTTP_401_UNAUTHORIZED),
    (ConflictException, status.HTTP_409_CONFLICT),
    (PermissionDeniedException, status.HTTP_403_FORBIDDEN),
    (NotFoundException, status.HTTP_404_NOT_FOUND),
)


def build_core(session_factory: sessionmaker) -> ProgressCore:
    """Core backed by SQL persistence; writes act as the signed-in owner"""
    session = SessionHandle()
    push = LocalPushService()
    persistence = SqlPersistenceService(session_factory, push, acting_owner=lambda: session.owner_id)
    return ProgressCore(persistence, push, session)


def get_core(request: Request) -> ProgressCore:
    return request.app.state.core


def create_app(
    engine: Optional[Engine] = None,
    session_factory: Optional[sessionmaker] = None,
    run_scheduler: bool = True,
) -> FastAPI:
    db_engine = engine or default_engine
    factory = session_factory or SessionLocal

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(db_engine)
        core = build_core(factory)
        notices = deque(maxlen=NOTICE_BUFFER_SIZE)
        core.add_notice_listener(notices.append)
        app.state.core = core
        app.state.notices = notices

        scheduler = start_scheduler(core) if run_scheduler else None
        logger.info(f"Progress Core API started. Logging to: {log_path}")
        try:
            yield
        finally:
            logger.info("Shutting down Progress Core API")
            stop_scheduler(scheduler)
            await core.close()

    app = FastAPI(
        title="Progress Core API",
        description="Portfolio progress tracking with optimistic updates and gamification",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ProgressCoreException)
    async def progress_core_exception_handler(request: Request, exc: ProgressCoreException):
        status_code = status.HTTP_502_BAD_GATEWAY
        for exc_type, code in ERROR_STATUS:
            if isinstance(exc, exc_type):
                status_code = code
                break
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    # Health check (no auth required)
    @app.get("/")
    async def root():
        return {"message": "Progress Core API", "status": "active"}

    # Public portfolio (no auth required)
    @app.get("/api/public/{share_slug}", response_model=PublicPortfolio)
    async def get_public_portfolio(share_slug: str, core: ProgressCore = Depends(get_core)):
        """Read-only portfolio view by share slug"""
        return await core.fetch_public_portfolio(share_slug)

    # Session
    @app.post("/api/session", response_model=CoreSnapshot, dependencies=[Depends(verify_api_key)])
    async def sign_in(data: SessionCreate, core: ProgressCore = Depends(get_core)):
        """Sign in an owner and load their data"""
        return await core.sign_in(data.owner_id, data.owner_token)

    @app.delete("/api/session", response_model=CoreSnapshot, dependencies=[Depends(verify_api_key)])
    async def sign_out(core: ProgressCore = Depends(get_core)):
        return await core.sign_out()

    # Snapshot
    @app.get("/api/snapshot", response_model=CoreSnapshot, dependencies=[Depends(verify_api_key)])
    async def get_snapshot(core: ProgressCore = Depends(get_core)):
        """Current derived state, after pending loads and recomputes"""
        await core.ready()
        return core.snapshot

    @app.post("/api/snapshot/refresh", response_model=CoreSnapshot, dependencies=[Depends(verify_api_key)])
    async def refresh_snapshot(core: ProgressCore = Depends(get_core)):
        return await core.refresh()

    @app.get("/api/notices", response_model=List[CoreNotice], dependencies=[Depends(verify_api_key)])
    async def get_notices(request: Request):
        """Recent level-up, badge and goal notices (oldest first)"""
        return list(request.app.state.notices)

    # Projects
    @app.post(
        "/api/projects",
        response_model=Project,
        status_code=status.HTTP_201_CREATED,
        dependencies=[Depends(verify_api_key)],
    )
    async def create_project(data: ProjectCreate, core: ProgressCore = Depends(get_core)):
        return await core.add_project(data)

    @app.patch("/api/projects/{project_id}", response_model=Project, dependencies=[Depends(verify_api_key)])
    async def update_project(project_id: str, data: ProjectUpdate, core: ProgressCore = Depends(get_core)):
        """Partial update; only fields present in the body change"""
        return await core.update_project(project_id, data.model_dump(exclude_unset=True))

    @app.delete("/api/projects/{project_id}", dependencies=[Depends(verify_api_key)])
    async def delete_project(project_id: str, core: ProgressCore = Depends(get_core)):
        await core.delete_project(project_id)
        return {"message": "Project deleted"}

    # Goals
    @app.post("/api/goals/{goal_id}/complete", response_model=DailyGoal, dependencies=[Depends(verify_api_key)])
    async def complete_goal(
        goal_id: str,
        data: Optional[GoalCompletion] = None,
        core: ProgressCore = Depends(get_core)
    ):
        """Complete a daily goal and award its XP"""
        reward_xp = data.reward_xp if data is not None else None
        return await core.complete_goal(goal_id, reward_xp)

    # Sharing and leaderboard
    @app.post("/api/portfolio/share-slug", response_model=ShareSlugResponse, dependencies=[Depends(verify_api_key)])
    async def create_share_slug(core: ProgressCore = Depends(get_core)):
        """Return the owner's share slug, generating it on first use"""
        return ShareSlugResponse(share_slug=await core.generate_share_slug())

    @app.get("/api/leaderboard", response_model=Leaderboard, dependencies=[Depends(verify_api_key)])
    async def get_leaderboard(core: ProgressCore = Depends(get_core)):
        return await core.fetch_leaderboard()

    @app.post("/api/challenges/sweep", response_model=CoreSnapshot, dependencies=[Depends(verify_api_key)])
    async def sweep_challenges(core: ProgressCore = Depends(get_core)):
        """Expire or complete the weekly challenge now"""
        await core.sweep_challenges()
        await core.drain()
        return core.snapshot

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("progress_core.main:app", host="0.0.0.0", port=8000, reload=False)
