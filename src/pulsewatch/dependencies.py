"""Request-scoped access to the services built in the application lifespan."""
from fastapi.requests import HTTPConnection

from pulsewatch.events import EventPublisher
from pulsewatch.incidents import IncidentManager
from pulsewatch.notifications import NotificationDispatcher
from pulsewatch.queue import JobQueue
from pulsewatch.worker import MonitorWorker


def get_job_queue(conn: HTTPConnection) -> JobQueue:
    return conn.app.state.queue


def get_monitor_worker(conn: HTTPConnection) -> MonitorWorker:
    return conn.app.state.worker


def get_incident_manager(conn: HTTPConnection) -> IncidentManager:
    return conn.app.state.incidents


def get_dispatcher(conn: HTTPConnection) -> NotificationDispatcher:
    return conn.app.state.dispatcher


def get_publisher(conn: HTTPConnection) -> EventPublisher:
    return conn.app.state.publisher
