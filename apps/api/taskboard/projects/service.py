from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import Select, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from taskboard import audit, events
from taskboard.core.auth import AuthUser
from taskboard.core.config import Settings, get_settings
from taskboard.metrics import ReindexMetrics
from taskboard.projects.errors import (
    ConcurrentModificationError,
    InvalidOrderingError,
    NotFoundError,
    OrderingError,
    PersistenceTimeoutError,
    translate_persistence_error,
)
from taskboard.projects.models import Board, BoardWatcher, Section, Task, TaskComment, TaskDocumentLink, utcnow
from taskboard.projects.ordering import SECTIONS_IN_BOARDS, TASKS_IN_SECTIONS, Positions, Reindexer
from taskboard.projects.schemas import (
    BoardCreate,
    BoardDetailRead,
    BoardRead,
    BoardUpdate,
    BoardWatchRead,
    CommentCreate,
    CommentRead,
    DeletionStats,
    DocumentLinkCreate,
    DocumentLinkRead,
    KanbanMoveRead,
    KanbanPositionUpdate,
    KanbanSectionRead,
    KanbanStateRead,
    PositionsRead,
    SectionCreate,
    SectionDeleteRead,
    SectionOrderUpdate,
    SectionRead,
    SectionUpdate,
    TaskBulkDelete,
    TaskCompletion,
    TaskCreate,
    TaskDeleteRead,
    TaskRead,
    TaskReopen,
    TaskSectionChange,
    TaskUpdate,
)


logger = logging.getLogger("taskboard.projects")

CONFLICT_MESSAGE = "position update conflicted with a concurrent change - please refresh and try again"
TIMEOUT_MESSAGE = "database timeout - please refresh and try again"


def ordering_http_error(exc: OrderingError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, InvalidOrderingError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, ConcurrentModificationError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=CONFLICT_MESSAGE)
    if isinstance(exc, PersistenceTimeoutError):
        return HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=TIMEOUT_MESSAGE)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@contextmanager
def _ordering_errors() -> Iterator[None]:
    try:
        yield
    except OrderingError as exc:
        raise ordering_http_error(exc) from exc


def _commit(session: Session) -> None:
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        translated = translate_persistence_error(exc)
        if translated is None:
            raise
        raise ordering_http_error(translated) from exc


@dataclass(slots=True)
class ProjectsService:
    task_reindexer: Reindexer
    section_reindexer: Reindexer
    max_list_size: int = 100

    # boards

    def create_board(self, session: Session, user: AuthUser, dto: BoardCreate) -> BoardRead:
        self._require_user(user)
        board = Board(
            id=uuid.uuid4(),
            title=dto.title.strip(),
            description=dto.description,
            owner_id=user.sub,
            shared_with=list(dict.fromkeys(item for item in dto.shared_with if item and item != user.sub)),
        )
        session.add(board)
        # the creator and every shared user start out watching
        for watcher_id in (user.sub, *board.shared_with):
            session.add(BoardWatcher(board_id=board.id, user_id=watcher_id))
        _commit(session)
        session.refresh(board)

        audit.record(
            actor_user_id=user.sub,
            entity_type="projects.board",
            entity_id=str(board.id),
            action="create",
            before=None,
            after={"title": board.title, "shared_with": board.shared_with},
            board_id=str(board.id),
        )
        events.publish_board_event(
            "projects.board.created",
            board_id=board.id,
            actor_user_id=user.sub,
            payload={"title": board.title},
        )
        return BoardRead.model_validate(board)

    def list_boards(self, session: Session, user: AuthUser) -> list[BoardRead]:
        rows = session.scalars(select(Board).order_by(Board.created_at.asc(), Board.id.asc())).all()
        return [BoardRead.model_validate(row) for row in rows if self._can_access(row, user)]

    def get_board(self, session: Session, user: AuthUser, board_id: uuid.UUID) -> BoardDetailRead:
        board = self._get_board(session, user, board_id)
        return BoardDetailRead.model_validate(board)

    def update_board(self, session: Session, user: AuthUser, board_id: uuid.UUID, dto: BoardUpdate) -> BoardRead:
        board = self._get_board(session, user, board_id, mutate=True)
        changes = dto.model_dump(exclude_unset=True)
        if "shared_with" in changes:
            if board.owner_id != user.sub:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail="only the board owner can change sharing",
                )
            if changes["shared_with"] is None:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="shared_with cannot be null")
            changes["shared_with"] = list(
                dict.fromkeys(item for item in changes["shared_with"] if item and item != board.owner_id)
            )
        if "title" in changes:
            title = (changes["title"] or "").strip()
            if not title:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="title cannot be empty")
            changes["title"] = title

        before = {key: _jsonable(getattr(board, key)) for key in changes}
        if "shared_with" in changes:
            self._sync_watchers(session, board, changes["shared_with"])
        for key, value in changes.items():
            setattr(board, key, value)
        board.updated_at = utcnow()
        _commit(session)
        session.refresh(board)

        audit.record(
            actor_user_id=user.sub,
            entity_type="projects.board",
            entity_id=str(board_id),
            action="update",
            before=before,
            after={key: _jsonable(getattr(board, key)) for key in changes},
            board_id=str(board_id),
        )
        events.publish_board_event(
            "projects.board.updated",
            board_id=board_id,
            actor_user_id=user.sub,
            payload={"fields": sorted(changes)},
        )
        return BoardRead.model_validate(board)

    def watch_board(self, session: Session, user: AuthUser, board_id: uuid.UUID) -> BoardWatchRead:
        board = self._get_board(session, user, board_id, mutate=True)
        if self._watcher(session, board.id, user.sub) is None:
            session.add(BoardWatcher(board_id=board.id, user_id=user.sub))
            _commit(session)
        return self._watch_state(session, board_id, user)

    def unwatch_board(self, session: Session, user: AuthUser, board_id: uuid.UUID) -> BoardWatchRead:
        board = self._get_board(session, user, board_id, mutate=True)
        watcher = self._watcher(session, board.id, user.sub)
        if watcher is not None:
            session.delete(watcher)
            _commit(session)
        return self._watch_state(session, board_id, user)

    def get_watch_status(self, session: Session, user: AuthUser, board_id: uuid.UUID) -> BoardWatchRead:
        board = self._get_board(session, user, board_id)
        return self._watch_state(session, board.id, user)

    def delete_board(self, session: Session, user: AuthUser, board_id: uuid.UUID) -> None:
        board = self._get_board(session, user, board_id, mutate=True)
        if board.owner_id != user.sub and not user.is_admin:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="only the board owner can delete it")

        session.delete(board)
        _commit(session)
        audit.record(
            actor_user_id=user.sub,
            entity_type="projects.board",
            entity_id=str(board_id),
            action="delete",
            before={"title": board.title},
            after=None,
            board_id=str(board_id),
        )
        events.publish_board_event("projects.board.deleted", board_id=board_id, actor_user_id=user.sub, payload={})

    # sections

    def list_sections(self, session: Session, user: AuthUser, board_id: uuid.UUID) -> list[SectionRead]:
        board = self._get_board(session, user, board_id)
        return [SectionRead.model_validate(row) for row in self._sections_of(session, board.id)]

    def create_section(self, session: Session, user: AuthUser, board_id: uuid.UUID, dto: SectionCreate) -> SectionRead:
        board = self._get_board(session, user, board_id, mutate=True)
        section = Section(id=uuid.uuid4(), board_id=board.id, title=dto.title.strip())
        session.add(section)
        with _ordering_errors():
            self.section_reindexer.append_to_container(session, board.id, section.id, index=dto.position)
        _commit(session)
        session.refresh(section)

        logger.info(
            "projects.section.created",
            extra={"board_id": str(board_id), "section_id": str(section.id), "user_id": user.sub},
        )
        events.publish_board_event(
            "projects.section.created",
            board_id=board_id,
            actor_user_id=user.sub,
            payload={"section_id": str(section.id), "title": section.title, "position": section.position},
        )
        return SectionRead.model_validate(section)

    def rename_section(self, session: Session, user: AuthUser, section_id: uuid.UUID, dto: SectionUpdate) -> SectionRead:
        section, board = self._get_section(session, user, section_id, mutate=True)
        before = {"title": section.title}
        section.title = dto.title.strip()
        section.updated_at = utcnow()
        _commit(session)
        session.refresh(section)

        audit.record(
            actor_user_id=user.sub,
            entity_type="projects.section",
            entity_id=str(section_id),
            action="update",
            before=before,
            after={"title": section.title},
            board_id=str(board.id),
        )
        return SectionRead.model_validate(section)

    def delete_section(self, session: Session, user: AuthUser, section_id: uuid.UUID) -> SectionDeleteRead:
        section, board = self._get_section(session, user, section_id, mutate=True)
        board_id = board.id
        task_ids = list(session.scalars(select(Task.id).where(Task.section_id == section_id)).all())
        statistics = self._dependency_counts(session, task_ids)
        before = {"title": section.title, "position": section.position}

        with _ordering_errors():
            positions = self.section_reindexer.remove_from_container(session, board_id, section_id)
        _commit(session)

        audit.record(
            actor_user_id=user.sub,
            entity_type="projects.section",
            entity_id=str(section_id),
            action="delete",
            before=before,
            after=None,
            board_id=str(board_id),
        )
        events.publish_board_event(
            "projects.section.deleted",
            board_id=board_id,
            actor_user_id=user.sub,
            payload={"section_id": str(section_id), "tasks_deleted": statistics.tasks_deleted},
        )
        return SectionDeleteRead(
            section_id=section_id,
            board_id=board_id,
            statistics=statistics,
            positions=positions,
        )

    def reorder_sections(
        self,
        session: Session,
        user: AuthUser,
        board_id: uuid.UUID,
        dto: SectionOrderUpdate,
    ) -> PositionsRead:
        board = self._get_board(session, user, board_id, mutate=True)
        self._check_list_size(dto.section_ids)

        with _ordering_errors():
            positions = self.section_reindexer.move_between_containers(session, board.id, board.id, dto.section_ids)
        _commit(session)

        events.publish_board_event(
            "projects.section.reordered",
            board_id=board_id,
            actor_user_id=user.sub,
            payload={"positions": _serialize_positions(positions)},
        )
        return PositionsRead(positions=positions)

    # tasks

    def create_task(self, session: Session, user: AuthUser, section_id: uuid.UUID, dto: TaskCreate) -> TaskRead:
        section, board = self._get_section(session, user, section_id, mutate=True)
        return self._create_task(session, user, section, board, dto)

    def create_task_in_board(self, session: Session, user: AuthUser, board_id: uuid.UUID, dto: TaskCreate) -> TaskRead:
        board = self._get_board(session, user, board_id, mutate=True)
        first_section = session.scalar(
            select(Section).where(Section.board_id == board.id).order_by(Section.position.asc()).limit(1)
        )
        if first_section is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="board has no sections")
        return self._create_task(session, user, first_section, board, dto)

    def update_task(self, session: Session, user: AuthUser, task_id: uuid.UUID, dto: TaskUpdate) -> TaskRead:
        task, _, board = self._get_task(session, user, task_id, mutate=True)
        changes = dto.model_dump(exclude_unset=True)
        if "title" in changes and changes["title"] is not None:
            changes["title"] = changes["title"].strip()
            if not changes["title"]:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="title cannot be empty")
        for key in ("title", "content", "priority", "task_status", "tags"):
            if key in changes and changes[key] is None:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"{key} cannot be null")

        before = {key: _jsonable(getattr(task, key)) for key in changes}
        for key, value in changes.items():
            setattr(task, key, value)
        task.updated_by = user.sub
        task.updated_at = utcnow()
        _commit(session)
        session.refresh(task)

        after = {key: _jsonable(getattr(task, key)) for key in changes}
        audit.record(
            actor_user_id=user.sub,
            entity_type="projects.task",
            entity_id=str(task_id),
            action="update",
            before=before,
            after=after,
            board_id=str(board.id),
        )
        events.publish_board_event(
            "projects.task.updated",
            board_id=board.id,
            actor_user_id=user.sub,
            payload={"task_id": str(task_id), "fields": sorted(changes)},
        )
        return TaskRead.model_validate(task)

    def complete_task(self, session: Session, user: AuthUser, task_id: uuid.UUID, dto: TaskCompletion) -> TaskRead:
        task, _, board = self._get_task(session, user, task_id, mutate=True)
        if task.task_status == "COMPLETE":
            return TaskRead.model_validate(task)

        board_id = board.id
        before = {"task_status": task.task_status}
        task.task_status = "COMPLETE"
        task.updated_by = user.sub
        task.updated_at = utcnow()
        if dto.completion_notes:
            session.add(
                TaskComment(task_id=task_id, author_id=user.sub, comment=f"Task completed: {dto.completion_notes}")
            )
        _commit(session)
        session.refresh(task)

        self._status_changed(user, task_id, board_id, "complete", before)
        return TaskRead.model_validate(task)

    def reopen_task(self, session: Session, user: AuthUser, task_id: uuid.UUID, dto: TaskReopen) -> TaskRead:
        task, _, board = self._get_task(session, user, task_id, mutate=True)
        if task.task_status != "COMPLETE":
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="task is not completed, cannot revert")

        board_id = board.id
        before = {"task_status": task.task_status}
        task.task_status = "ACTIVE"
        task.updated_by = user.sub
        task.updated_at = utcnow()
        comment = "Task completion reverted"
        if dto.reason:
            comment = f"{comment}: {dto.reason}"
        session.add(TaskComment(task_id=task_id, author_id=user.sub, comment=comment))
        _commit(session)
        session.refresh(task)

        self._status_changed(user, task_id, board_id, "reopen", before)
        return TaskRead.model_validate(task)

    def change_task_section(
        self,
        session: Session,
        user: AuthUser,
        task_id: uuid.UUID,
        dto: TaskSectionChange,
    ) -> KanbanMoveRead:
        task, source, board = self._get_task(session, user, task_id, mutate=True)
        destination, destination_board = self._get_section(session, user, dto.section_id, mutate=True)
        if destination_board.id != board.id:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="cannot move task to section in different board",
            )

        source_id = source.id
        destination_id = destination.id
        with _ordering_errors():
            siblings = [
                item.member_id
                for item in self.task_reindexer.list_members(session, destination_id)
                if item.member_id != task_id
            ]
            index = len(siblings) if dto.position is None else min(dto.position, len(siblings))
            siblings.insert(index, task_id)
            task.updated_by = user.sub
            task.updated_at = utcnow()
            positions = self.task_reindexer.move_between_containers(session, source_id, destination_id, siblings)

        if dto.reason:
            session.add(
                TaskComment(
                    task_id=task_id,
                    author_id=user.sub,
                    comment=f'Task moved to "{destination.title}": {dto.reason}',
                )
            )
        _commit(session)

        return self._moved(user, board.id, source_id, destination_id, positions)

    def update_kanban_positions(self, session: Session, user: AuthUser, dto: KanbanPositionUpdate) -> KanbanMoveRead:
        self._check_list_size(dto.destination_task_ids)
        source, source_board = self._get_section(session, user, dto.source_section_id, mutate=True)
        destination, destination_board = self._get_section(session, user, dto.destination_section_id, mutate=True)
        if source_board.id != destination_board.id:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="cannot move tasks between different boards",
            )

        board_id = destination_board.id
        source_id = source.id
        destination_id = destination.id
        with _ordering_errors():
            positions = self.task_reindexer.move_between_containers(
                session,
                source_id,
                destination_id,
                dto.destination_task_ids,
            )
        _commit(session)

        return self._moved(user, board_id, source_id, destination_id, positions)

    def delete_task(self, session: Session, user: AuthUser, task_id: uuid.UUID) -> TaskDeleteRead:
        task, section, board = self._get_task(session, user, task_id, mutate=True)
        board_id = board.id
        statistics = self._dependency_counts(session, [task_id])
        before = {"title": task.title, "section_id": str(section.id), "position": task.position}

        with _ordering_errors():
            positions = self.task_reindexer.remove_from_container(session, section.id, task_id)
        _commit(session)

        audit.record(
            actor_user_id=user.sub,
            entity_type="projects.task",
            entity_id=str(task_id),
            action="delete",
            before=before,
            after=None,
            board_id=str(board_id),
        )
        events.publish_board_event(
            "projects.task.deleted",
            board_id=board_id,
            actor_user_id=user.sub,
            payload={"task_ids": [str(task_id)]},
        )
        return TaskDeleteRead(deleted_task_ids=[task_id], statistics=statistics, positions=positions)

    def bulk_delete_tasks(self, session: Session, user: AuthUser, dto: TaskBulkDelete) -> TaskDeleteRead:
        task_ids = list(dict.fromkeys(dto.ids))
        self._check_list_size(task_ids)
        ids_by_board: dict[uuid.UUID, list[uuid.UUID]] = {}
        for task_id in task_ids:
            _, _, board = self._get_task(session, user, task_id, mutate=True)
            ids_by_board.setdefault(board.id, []).append(task_id)
        statistics = self._dependency_counts(session, task_ids)

        with _ordering_errors():
            positions = self.task_reindexer.remove_many(session, task_ids)
        _commit(session)

        logger.info(
            "projects.tasks.bulk_deleted",
            extra={"affected": len(task_ids), "user_id": user.sub},
        )
        for board_id, board_task_ids in sorted(ids_by_board.items(), key=lambda item: str(item[0])):
            events.publish_board_event(
                "projects.task.deleted",
                board_id=board_id,
                actor_user_id=user.sub,
                payload={"task_ids": [str(item) for item in board_task_ids]},
            )
        return TaskDeleteRead(deleted_task_ids=task_ids, statistics=statistics, positions=positions)

    def get_kanban_state(self, session: Session, user: AuthUser, board_id: uuid.UUID) -> KanbanStateRead:
        board = self._get_board(session, user, board_id)
        sections = self._sections_of(session, board.id)
        section_ids = [section.id for section in sections]

        grouped: dict[uuid.UUID, list[Task]] = {section_id: [] for section_id in section_ids}
        if section_ids:
            rows = session.scalars(
                select(Task)
                .where(Task.section_id.in_(section_ids))
                .order_by(Task.section_id.asc(), Task.position.asc(), Task.created_at.asc())
            ).all()
            for row in rows:
                grouped[row.section_id].append(row)

        return KanbanStateRead(
            board_id=board.id,
            sections=[
                KanbanSectionRead(
                    section=SectionRead.model_validate(section),
                    tasks=[TaskRead.model_validate(task) for task in grouped[section.id]],
                )
                for section in sections
            ],
            total_tasks=sum(len(items) for items in grouped.values()),
        )

    # task extras

    def add_comment(self, session: Session, user: AuthUser, task_id: uuid.UUID, dto: CommentCreate) -> CommentRead:
        task, _, _ = self._get_task(session, user, task_id, mutate=True)
        comment = TaskComment(task_id=task.id, author_id=user.sub, comment=dto.comment)
        session.add(comment)
        _commit(session)
        session.refresh(comment)
        return CommentRead.model_validate(comment)

    def link_document(
        self,
        session: Session,
        user: AuthUser,
        task_id: uuid.UUID,
        dto: DocumentLinkCreate,
    ) -> DocumentLinkRead:
        task, _, _ = self._get_task(session, user, task_id, mutate=True)
        existing = session.scalar(
            select(TaskDocumentLink).where(
                TaskDocumentLink.task_id == task.id,
                TaskDocumentLink.document_id == dto.document_id,
            )
        )
        if existing is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="document already linked to task")

        link = TaskDocumentLink(task_id=task.id, document_id=dto.document_id, linked_by=user.sub)
        session.add(link)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="document already linked to task")
        session.refresh(link)
        return DocumentLinkRead.model_validate(link)

    def unlink_document(self, session: Session, user: AuthUser, task_id: uuid.UUID, document_id: str) -> None:
        task, _, _ = self._get_task(session, user, task_id, mutate=True)
        link = session.scalar(
            select(TaskDocumentLink).where(
                TaskDocumentLink.task_id == task.id,
                TaskDocumentLink.document_id == document_id,
            )
        )
        if link is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="document link not found")
        session.delete(link)
        _commit(session)

    # helpers

    def _create_task(self, session: Session, user: AuthUser, section: Section, board: Board, dto: TaskCreate) -> TaskRead:
        task = Task(
            id=uuid.uuid4(),
            section_id=section.id,
            title=dto.title,
            content=dto.content,
            priority=dto.priority,
            task_status="ACTIVE",
            due_date_at=dto.due_date_at,
            assignee_id=dto.assignee_id,
            tags=list(dto.tags),
            created_by=user.sub,
            updated_by=user.sub,
        )
        board_id = board.id
        session.add(task)
        with _ordering_errors():
            self.task_reindexer.append_to_container(session, section.id, task.id)
        _commit(session)
        session.refresh(task)

        events.publish_board_event(
            "projects.task.created",
            board_id=board_id,
            actor_user_id=user.sub,
            payload={"task_id": str(task.id), "section_id": str(task.section_id), "position": task.position},
        )
        return TaskRead.model_validate(task)

    def _moved(
        self,
        user: AuthUser,
        board_id: uuid.UUID,
        source_id: uuid.UUID,
        destination_id: uuid.UUID,
        positions: Positions,
    ) -> KanbanMoveRead:
        operation = "reorder" if source_id == destination_id else "move"
        logger.info(
            "projects.task.moved",
            extra={
                "operation": operation,
                "board_id": str(board_id),
                "source_container_id": str(source_id),
                "destination_container_id": str(destination_id),
                "affected": len(positions),
                "user_id": user.sub,
            },
        )
        events.publish_board_event(
            "projects.task.moved",
            board_id=board_id,
            actor_user_id=user.sub,
            payload={
                "operation": operation,
                "source_section_id": str(source_id),
                "destination_section_id": str(destination_id),
                "positions": _serialize_positions(positions),
            },
        )
        return KanbanMoveRead(
            operation=operation,
            source_section_id=source_id,
            destination_section_id=destination_id,
            tasks_affected=len(positions),
            positions=positions,
        )

    def _status_changed(
        self,
        user: AuthUser,
        task_id: uuid.UUID,
        board_id: uuid.UUID,
        action: str,
        before: dict[str, Any],
    ) -> None:
        task_status = "COMPLETE" if action == "complete" else "ACTIVE"
        audit.record(
            actor_user_id=user.sub,
            entity_type="projects.task",
            entity_id=str(task_id),
            action=action,
            before=before,
            after={"task_status": task_status},
            board_id=str(board_id),
        )
        events.publish_board_event(
            "projects.task.completed" if action == "complete" else "projects.task.reopened",
            board_id=board_id,
            actor_user_id=user.sub,
            payload={"task_id": str(task_id), "task_status": task_status},
        )

    def _watcher(self, session: Session, board_id: uuid.UUID, user_id: str) -> BoardWatcher | None:
        return session.scalar(
            select(BoardWatcher).where(BoardWatcher.board_id == board_id, BoardWatcher.user_id == user_id)
        )

    def _watch_state(self, session: Session, board_id: uuid.UUID, user: AuthUser) -> BoardWatchRead:
        watchers = list(
            session.scalars(
                select(BoardWatcher.user_id)
                .where(BoardWatcher.board_id == board_id)
                .order_by(BoardWatcher.created_at.asc(), BoardWatcher.user_id.asc())
            ).all()
        )
        return BoardWatchRead(board_id=board_id, watching=user.sub in watchers, watchers=watchers)

    def _sync_watchers(self, session: Session, board: Board, shared_with: list[str]) -> None:
        # the owner's own watch is untouched; everyone else follows the sharing list
        wanted = set(shared_with)
        existing = session.scalars(
            select(BoardWatcher).where(BoardWatcher.board_id == board.id, BoardWatcher.user_id != board.owner_id)
        ).all()
        present = set()
        for watcher in existing:
            if watcher.user_id in wanted:
                present.add(watcher.user_id)
            else:
                session.delete(watcher)
        for user_id in shared_with:
            if user_id not in present:
                session.add(BoardWatcher(board_id=board.id, user_id=user_id))

    def _require_user(self, user: AuthUser) -> None:
        if user.is_anonymous:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")

    def _can_access(self, board: Board, user: AuthUser) -> bool:
        if user.is_admin:
            return True
        if user.is_anonymous:
            return False
        return board.owner_id == user.sub or user.sub in (board.shared_with or [])

    def _get_board(self, session: Session, user: AuthUser, board_id: uuid.UUID, *, mutate: bool = False) -> Board:
        if mutate:
            self._require_user(user)
        board = session.get(Board, board_id)
        if board is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="board not found")
        if not self._can_access(board, user):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="you don't have access to this board")
        return board

    def _get_section(
        self,
        session: Session,
        user: AuthUser,
        section_id: uuid.UUID,
        *,
        mutate: bool = False,
    ) -> tuple[Section, Board]:
        section = session.get(Section, section_id)
        if section is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="section not found")
        board = self._get_board(session, user, section.board_id, mutate=mutate)
        return section, board

    def _get_task(
        self,
        session: Session,
        user: AuthUser,
        task_id: uuid.UUID,
        *,
        mutate: bool = False,
    ) -> tuple[Task, Section, Board]:
        task = session.get(Task, task_id)
        if task is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="task not found")
        section, board = self._get_section(session, user, task.section_id, mutate=mutate)
        return task, section, board

    def _sections_of(self, session: Session, board_id: uuid.UUID) -> list[Section]:
        stmt: Select[tuple[Section]] = (
            select(Section)
            .where(Section.board_id == board_id)
            .order_by(Section.position.asc(), Section.created_at.asc())
        )
        return list(session.scalars(stmt).all())

    def _dependency_counts(self, session: Session, task_ids: Sequence[uuid.UUID]) -> DeletionStats:
        if not task_ids:
            return DeletionStats()
        comments = session.scalar(
            select(func.count()).select_from(TaskComment).where(TaskComment.task_id.in_(task_ids))
        )
        links = session.scalar(
            select(func.count()).select_from(TaskDocumentLink).where(TaskDocumentLink.task_id.in_(task_ids))
        )
        return DeletionStats(
            tasks_deleted=len(task_ids),
            comments_deleted=int(comments or 0),
            document_links_deleted=int(links or 0),
        )

    def _check_list_size(self, items: Sequence[Any]) -> None:
        if len(items) > self.max_list_size:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"too many items in list (max {self.max_list_size})",
            )


def _serialize_positions(positions: Positions) -> dict[str, int]:
    return {str(member_id): position for member_id, position in positions.items()}


def _jsonable(value: Any) -> Any:
    if isinstance(value, (list, dict, str, int, float, bool)) or value is None:
        return value
    return str(value)


def build_projects_service(metrics: ReindexMetrics, settings: Settings | None = None) -> ProjectsService:
    resolved = settings or get_settings()
    return ProjectsService(
        task_reindexer=Reindexer(
            collection=TASKS_IN_SECTIONS,
            metrics=metrics,
            statement_timeout_ms=resolved.db_statement_timeout_ms,
        ),
        section_reindexer=Reindexer(
            collection=SECTIONS_IN_BOARDS,
            metrics=metrics,
            statement_timeout_ms=resolved.db_statement_timeout_ms,
        ),
        max_list_size=resolved.kanban_max_list_size,
    )
