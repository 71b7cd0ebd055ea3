"""rconflow: event-driven moderation workflows for game servers."""

from .actions import ActionDispatcher
from .contracts import EventType, TriggerEvent, WorkflowDefinition, parse_definition
from .ingest import EventIngestAdapter
from .matcher import TriggerMatcher
from .persistence import get_repository
from .scheduler import WorkflowOrchestrator
from .service import WorkflowService
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ActionDispatcher",
    "EventIngestAdapter",
    "EventType",
    "TriggerEvent",
    "TriggerMatcher",
    "WorkflowDefinition",
    "WorkflowOrchestrator",
    "WorkflowService",
    "get_repository",
    "get_transport",
    "parse_definition",
]
