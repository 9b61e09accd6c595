from pulsewatch.models.user import User
from pulsewatch.models.workspace import Workspace, WorkspaceMember
from pulsewatch.models.monitor import Monitor
from pulsewatch.models.check import Check
from pulsewatch.models.incident import Incident, IncidentUpdate
from pulsewatch.models.alert import AlertContact, AlertRule
from pulsewatch.models.integration import Integration
from pulsewatch.models.maintenance import MaintenanceWindow
from pulsewatch.models.job import Job

__all__ = [
    "User",
    "Workspace",
    "WorkspaceMember",
    "Monitor",
    "Check",
    "Incident",
    "IncidentUpdate",
    "AlertContact",
    "AlertRule",
    "Integration",
    "MaintenanceWindow",
    "Job",
]
