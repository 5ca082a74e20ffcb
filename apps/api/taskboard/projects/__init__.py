from taskboard.projects.api import router
from taskboard.projects.errors import (
    ConcurrentModificationError,
    InvalidOrderingError,
    NotFoundError,
    OrderingError,
    PersistenceTimeoutError,
)
from taskboard.projects.models import Board, BoardWatcher, Section, Task, TaskComment, TaskDocumentLink
from taskboard.projects.ordering import (
    SECTIONS_IN_BOARDS,
    TASKS_IN_SECTIONS,
    OrderedCollection,
    OrderedItem,
    Reindexer,
)
from taskboard.projects.service import ProjectsService, build_projects_service

__all__ = [
    "router",
    "Board",
    "BoardWatcher",
    "Section",
    "Task",
    "TaskComment",
    "TaskDocumentLink",
    "OrderedCollection",
    "OrderedItem",
    "Reindexer",
    "TASKS_IN_SECTIONS",
    "SECTIONS_IN_BOARDS",
    "ProjectsService",
    "build_projects_service",
    "OrderingError",
    "NotFoundError",
    "InvalidOrderingError",
    "ConcurrentModificationError",
    "PersistenceTimeoutError",
]
