import datetime
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Callable

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates
from markdown import markdown
from pyinstrument import Profiler
from pyinstrument.renderers.html import HTMLRenderer
from pyinstrument.renderers.speedscope import SpeedscopeRenderer
from starlette.exceptions import HTTPException

from .authentication.routes import router as auth_router
from .core.container import ServiceContainer
from .core.database.db import DButils
from .core.database.events import get_esdb_client
from .core.dependencies import get_container
from .core.error_handling import (
    general_exception_handler,
    http_exception_handler,
    registry_exception_handler,
    validation_exception_handler,
)
from .core.exceptions import RegistryError
from .core.models.base import LoggingLevelRequest, UserRoles
from .credit.routes import router as credit_router
from .facility.routes import router as facility_router
from .logging_config import logger, set_logger_and_children_level
from .marketplace.routes import router as marketplace_router
from .settings import settings
from .user import services as user_services
from .user.routes import router as user_router
from .user.schemas import UserCreate

STATIC_DIR_FP = Path(__file__).parent / "static"

descriptions = {}
for desc in ["api", "marketplace", "credit"]:
    static_dir = STATIC_DIR_FP / "descriptions" / f"{desc}.md"
    with open(static_dir, "r") as file:
        descriptions[desc] = markdown(file.read())

tags_metadata = [
    {
        "name": "Marketplace",
        "description": descriptions["marketplace"],
    },
    {
        "name": "Credits",
        "description": descriptions["credit"],
    },
    {
        "name": "Users",
        "description": "Individuals holding a single role (admin, producer, buyer or auditor) that determines their capabilities.",
    },
    {
        "name": "Facilities",
        "description": "Electrolyser sites operated by producers, against which credits are issued.",
    },
]

origins = [
    "http://localhost:3000",
    "http://localhost:8080",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:8080",
]
origins.extend(settings.cors_origins)

uvicorn_logger = logging.getLogger("uvicorn")
uvicorn_access_logger = logging.getLogger("uvicorn.access")
fastapi_logger = logging.getLogger("fastapi")


def seed_admin_user(container: ServiceContainer) -> None:
    """Create the bootstrap administrator if configured and not yet present."""
    if not (settings.ADMIN_EMAIL and settings.ADMIN_PASSWORD):
        return

    with container.db.get_session() as session:
        if user_services.get_user_by_email(settings.ADMIN_EMAIL, session):
            logger.info(f"Admin user {settings.ADMIN_EMAIL} already exists")
            return

        user_services.create_user(
            UserCreate(
                name="Registry Admin",
                email=settings.ADMIN_EMAIL,
                role=UserRoles.ADMIN,
                password=settings.ADMIN_PASSWORD,
            ),
            session,
            container.esdb_client,
        )
        logger.info(f"Created admin user {settings.ADMIN_EMAIL}")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Lifespan context manager for FastAPI application.
    Builds the service container on startup and disposes of the engine on shutdown.
    """
    logger.info("Starting up application...")

    db_utils = DButils()
    db_utils.create_db_and_tables()

    container = ServiceContainer(db_utils=db_utils, esdb_client=get_esdb_client())
    app.state.container = container
    seed_admin_user(container)

    logger.info("Application startup complete")
    try:
        yield
    finally:
        logger.info("Shutting down application...")
        db_utils.engine.dispose()
        logger.info("Application shutdown complete")


app = FastAPI(
    openapi_tags=tags_metadata,
    title="Hydrogen Credit Registry API",
    description=descriptions["api"],
    version="1.0",
    docs_url="/docs",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["Content-Type", "Authorization", "Accept", "Origin"],
)

app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore
app.add_exception_handler(HTTPException, http_exception_handler)  # type: ignore
app.add_exception_handler(RegistryError, registry_exception_handler)  # type: ignore
app.add_exception_handler(Exception, general_exception_handler)

app.include_router(auth_router, prefix="/auth")
app.include_router(user_router, prefix="/user")
app.include_router(facility_router, prefix="/facility")
app.include_router(credit_router, prefix="/credit")
app.include_router(marketplace_router, prefix="/marketplace")

templates = Jinja2Templates(directory=STATIC_DIR_FP / "templates")


@app.get("/", response_class=HTMLResponse, tags=["Core"])
async def read_root(request: Request):
    params = {
        "request": request,
        "head": {"title": "Hydrogen Credit Registry API"},
        "body": [
            {"tag": "h1", "value": "Hydrogen Credit Registry API"},
            {
                "tag": "p",
                "value": """Issue, trade and retire green hydrogen credits. Prices are quoted
                            dynamically from each credit's volume, verification status, age
                            and production method.""",
            },
            {
                "tag": "a",
                "tag_kwargs": {"href": f"{request.url._url}redoc"},
                "value": "/redoc",
            },
        ],
    }

    return templates.TemplateResponse(request, "index.jinja", params)


@app.get("/health", tags=["Core"])
async def health(container: ServiceContainer = Depends(get_container)):
    return {
        "status": "ok",
        "environment": settings.ENVIRONMENT,
        "privileged_transfers": container.admin_service is not None,
        "event_store": container.esdb_client is not None,
    }


@app.post("/change_log_level", tags=["Core"])
async def change_log_level_endpoint(request: LoggingLevelRequest):
    """Change the logging level at runtime for all relevant loggers."""
    numeric_level = getattr(logging, request.level.value)

    loggers_to_update = [
        logger,
        uvicorn_logger,
        uvicorn_access_logger,
        fastapi_logger,
    ]

    for logger_instance in loggers_to_update:
        set_logger_and_children_level(logger_instance, numeric_level)

    debug_info = {
        logger_instance.name: {
            "effective_level": logging.getLevelName(
                logger_instance.getEffectiveLevel()
            ),
            "handlers": [
                {"handler": str(handler), "level": logging.getLevelName(handler.level)}
                for handler in logger_instance.handlers
            ],
        }
        for logger_instance in loggers_to_update
    }

    return {
        "message": f"Log level changed to {request.level.value}",
        "logger_status": debug_info,
    }


if settings.PROFILING_ENABLED:
    profile_type: str = "html"

    @app.middleware("http")
    async def profile_request(request: Request, call_next: Callable):
        """Profile the current request and write the report under core/profiling."""
        profile_type_to_ext = {"html": "html", "speedscope": "speedscope.json"}
        profile_type_to_renderer = {
            "html": HTMLRenderer,
            "speedscope": SpeedscopeRenderer,
        }

        with Profiler(interval=0.001, async_mode="enabled") as profiler:
            response = await call_next(request)

        extension = profile_type_to_ext[profile_type]
        renderer = profile_type_to_renderer[profile_type]()

        todays_date = datetime.datetime.now().strftime("%Y-%m-%d")
        profiling_dir = Path(__file__).parent / "core" / "profiling" / todays_date
        profiling_dir.mkdir(parents=True, exist_ok=True)

        with open(Path(profiling_dir, f"profile.{extension}"), "w") as out:
            out.write(profiler.output(renderer=renderer))
        return response
