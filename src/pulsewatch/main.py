import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pulsewatch.config import Settings, get_settings
from pulsewatch.database import close_db, get_session_factory, init_db
from pulsewatch.events import EventPublisher
from pulsewatch.incidents import IncidentManager
from pulsewatch.notifications import NotificationDispatcher
from pulsewatch.queue import JobQueue
from pulsewatch.routers import alerts, auth, events, incidents, integrations, monitors, probes
from pulsewatch.scheduler import Scheduler
from pulsewatch.worker import MonitorWorker

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.debug else logging.DEBUG,
    format="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


def build_services(
    app: FastAPI,
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
) -> None:
    """Wire the pipeline services together and expose them on ``app.state``."""
    publisher = EventPublisher()
    queue = JobQueue.from_settings(session_factory, settings)
    dispatcher = NotificationDispatcher(settings)
    incident_manager = IncidentManager(queue, publisher, settings)
    worker = MonitorWorker(session_factory, queue, incident_manager, dispatcher, publisher, settings)
    worker.register()

    app.state.publisher = publisher
    app.state.queue = queue
    app.state.dispatcher = dispatcher
    app.state.incidents = incident_manager
    app.state.worker = worker
    app.state.scheduler = Scheduler(session_factory, queue, settings, publisher)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    build_services(app, get_session_factory(), settings)

    await app.state.queue.open(start_workers=settings.run_workers)
    if settings.run_scheduler:
        app.state.scheduler.start()

    yield

    app.state.scheduler.stop()
    await app.state.queue.close()
    await close_db()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(auth.router)
app.include_router(monitors.router)
app.include_router(incidents.router)
app.include_router(alerts.router)
app.include_router(integrations.router)
app.include_router(probes.router)
app.include_router(events.router)


@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "app": settings.app_name,
        "version": settings.app_version,
    }
