from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


TaskPriority = Literal["LOW", "MEDIUM", "HIGH"]
TaskStatus = Literal["ACTIVE", "PENDING", "COMPLETE"]


def _normalize_priority(value: object) -> object:
    if isinstance(value, str):
        upper = value.strip().upper()
        return "MEDIUM" if upper == "NORMAL" else upper
    return value


class BoardCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    shared_with: list[str] = Field(default_factory=list)


class SectionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    board_id: UUID
    title: str
    position: int
    row_version: int
    created_at: datetime
    updated_at: datetime


class BoardRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: str | None
    owner_id: str
    shared_with: list[str]
    row_version: int
    created_at: datetime
    updated_at: datetime


class BoardDetailRead(BoardRead):
    sections: list[SectionRead]


class BoardUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    shared_with: list[str] | None = None


class BoardWatchRead(BaseModel):
    board_id: UUID
    watching: bool
    watchers: list[str]


class SectionCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    position: int | None = Field(default=None, ge=0)


class SectionUpdate(BaseModel):
    title: str = Field(min_length=1, max_length=255)


class SectionOrderUpdate(BaseModel):
    section_ids: list[UUID]


class TaskCreate(BaseModel):
    title: str = Field(default="New task", min_length=1, max_length=200)
    content: str = Field(default="", max_length=5000)
    priority: TaskPriority = "MEDIUM"
    due_date_at: datetime | None = None
    assignee_id: str | None = None
    tags: list[str] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def _strip_title(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("title cannot be empty")
        return stripped

    @field_validator("priority", mode="before")
    @classmethod
    def _priority(cls, value: object) -> object:
        return _normalize_priority(value)


class TaskUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    content: str | None = Field(default=None, max_length=5000)
    priority: TaskPriority | None = None
    task_status: TaskStatus | None = None
    due_date_at: datetime | None = None
    assignee_id: str | None = None
    tags: list[str] | None = None

    @field_validator("priority", mode="before")
    @classmethod
    def _priority(cls, value: object) -> object:
        return _normalize_priority(value)


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    section_id: UUID
    title: str
    content: str
    priority: TaskPriority
    task_status: TaskStatus
    due_date_at: datetime | None
    assignee_id: str | None
    tags: list[str]
    position: int
    created_by: str
    updated_by: str | None
    created_at: datetime
    updated_at: datetime


class TaskSectionChange(BaseModel):
    section_id: UUID
    position: int | None = Field(default=None, ge=0)
    reason: str | None = Field(default=None, max_length=500)


class KanbanPositionUpdate(BaseModel):
    source_section_id: UUID
    destination_section_id: UUID
    destination_task_ids: list[UUID]


class TaskBulkDelete(BaseModel):
    ids: list[UUID] = Field(min_length=1)


class TaskCompletion(BaseModel):
    completion_notes: str | None = Field(default=None, max_length=1000)


class TaskReopen(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class CommentCreate(BaseModel):
    comment: str = Field(min_length=1, max_length=5000)


class CommentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    task_id: UUID
    author_id: str
    comment: str
    created_at: datetime


class DocumentLinkCreate(BaseModel):
    document_id: str = Field(min_length=1, max_length=128)


class DocumentLinkRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    task_id: UUID
    document_id: str
    linked_by: str
    created_at: datetime


class PositionsRead(BaseModel):
    """New positions of every member in every container an operation touched."""

    positions: dict[UUID, int]


class KanbanMoveRead(PositionsRead):
    operation: Literal["move", "reorder"]
    source_section_id: UUID
    destination_section_id: UUID
    tasks_affected: int


class DeletionStats(BaseModel):
    tasks_deleted: int = 0
    comments_deleted: int = 0
    document_links_deleted: int = 0


class SectionDeleteRead(PositionsRead):
    section_id: UUID
    board_id: UUID
    statistics: DeletionStats


class TaskDeleteRead(PositionsRead):
    deleted_task_ids: list[UUID]
    statistics: DeletionStats


class KanbanSectionRead(BaseModel):
    section: SectionRead
    tasks: list[TaskRead]


class KanbanStateRead(BaseModel):
    board_id: UUID
    sections: list[KanbanSectionRead]
    total_tasks: int
