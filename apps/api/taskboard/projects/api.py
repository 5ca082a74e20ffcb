from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from taskboard.context import get_correlation_id
from taskboard.core.auth import AuthUser, get_current_user
from taskboard.core.database import get_db
from taskboard.projects.schemas import (
    BoardCreate,
    BoardDetailRead,
    BoardRead,
    BoardUpdate,
    BoardWatchRead,
    CommentCreate,
    CommentRead,
    DocumentLinkCreate,
    DocumentLinkRead,
    KanbanMoveRead,
    KanbanPositionUpdate,
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
from taskboard.projects.service import ProjectsService

router = APIRouter(prefix="/api/projects", tags=["projects"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def get_projects_service(request: Request) -> ProjectsService:
    return request.app.state.projects_service


# boards


@router.post("/boards", response_model=BoardRead, status_code=status.HTTP_201_CREATED)
def create_board(
    request: Request,
    dto: BoardCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> BoardRead | JSONResponse:
    try:
        return service.create_board(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "projects_board_create_failed")


@router.get("/boards", response_model=list[BoardRead])
def list_boards(
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> list[BoardRead]:
    return service.list_boards(db, user)


@router.get("/boards/{board_id}", response_model=BoardDetailRead)
def get_board(
    request: Request,
    board_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> BoardDetailRead | JSONResponse:
    try:
        return service.get_board(db, user, board_id)
    except HTTPException as exc:
        return _failed(request, exc, "projects_board_read_failed")


@router.patch("/boards/{board_id}", response_model=BoardRead)
def update_board(
    request: Request,
    board_id: uuid.UUID,
    dto: BoardUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> BoardRead | JSONResponse:
    try:
        return service.update_board(db, user, board_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "projects_board_update_failed")


@router.get("/boards/{board_id}/watch", response_model=BoardWatchRead)
def get_watch_status(
    request: Request,
    board_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> BoardWatchRead | JSONResponse:
    try:
        return service.get_watch_status(db, user, board_id)
    except HTTPException as exc:
        return _failed(request, exc, "projects_board_watch_failed")


@router.post("/boards/{board_id}/watch", response_model=BoardWatchRead)
def watch_board(
    request: Request,
    board_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> BoardWatchRead | JSONResponse:
    try:
        return service.watch_board(db, user, board_id)
    except HTTPException as exc:
        return _failed(request, exc, "projects_board_watch_failed")


@router.delete("/boards/{board_id}/watch", response_model=BoardWatchRead)
def unwatch_board(
    request: Request,
    board_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> BoardWatchRead | JSONResponse:
    try:
        return service.unwatch_board(db, user, board_id)
    except HTTPException as exc:
        return _failed(request, exc, "projects_board_watch_failed")


@router.delete("/boards/{board_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_board(
    request: Request,
    board_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> Response:
    try:
        service.delete_board(db, user, board_id)
    except HTTPException as exc:
        return _failed(request, exc, "projects_board_delete_failed")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/boards/{board_id}/kanban", response_model=KanbanStateRead)
def get_kanban_state(
    request: Request,
    board_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> KanbanStateRead | JSONResponse:
    try:
        return service.get_kanban_state(db, user, board_id)
    except HTTPException as exc:
        return _failed(request, exc, "projects_kanban_read_failed")


@router.post("/boards/{board_id}/tasks", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task_in_board(
    request: Request,
    board_id: uuid.UUID,
    dto: TaskCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> TaskRead | JSONResponse:
    try:
        return service.create_task_in_board(db, user, board_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "projects_task_create_failed")


# sections


@router.get("/boards/{board_id}/sections", response_model=list[SectionRead])
def list_sections(
    request: Request,
    board_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> list[SectionRead] | JSONResponse:
    try:
        return service.list_sections(db, user, board_id)
    except HTTPException as exc:
        return _failed(request, exc, "projects_section_list_failed")


@router.post("/boards/{board_id}/sections", response_model=SectionRead, status_code=status.HTTP_201_CREATED)
def create_section(
    request: Request,
    board_id: uuid.UUID,
    dto: SectionCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> SectionRead | JSONResponse:
    try:
        return service.create_section(db, user, board_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "projects_section_create_failed")


@router.put("/boards/{board_id}/sections/order", response_model=PositionsRead)
def reorder_sections(
    request: Request,
    board_id: uuid.UUID,
    dto: SectionOrderUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> PositionsRead | JSONResponse:
    try:
        return service.reorder_sections(db, user, board_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "projects_section_reorder_failed")


@router.patch("/sections/{section_id}", response_model=SectionRead)
def rename_section(
    request: Request,
    section_id: uuid.UUID,
    dto: SectionUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> SectionRead | JSONResponse:
    try:
        return service.rename_section(db, user, section_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "projects_section_update_failed")


@router.delete("/sections/{section_id}", response_model=SectionDeleteRead)
def delete_section(
    request: Request,
    section_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> SectionDeleteRead | JSONResponse:
    try:
        return service.delete_section(db, user, section_id)
    except HTTPException as exc:
        return _failed(request, exc, "projects_section_delete_failed")


@router.post("/sections/{section_id}/tasks", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(
    request: Request,
    section_id: uuid.UUID,
    dto: TaskCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> TaskRead | JSONResponse:
    try:
        return service.create_task(db, user, section_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "projects_task_create_failed")


# tasks


@router.post("/tasks/bulk-delete", response_model=TaskDeleteRead)
def bulk_delete_tasks(
    request: Request,
    dto: TaskBulkDelete,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> TaskDeleteRead | JSONResponse:
    try:
        return service.bulk_delete_tasks(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "projects_task_bulk_delete_failed")


@router.put("/tasks/kanban-position", response_model=KanbanMoveRead)
def update_kanban_positions(
    request: Request,
    dto: KanbanPositionUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> KanbanMoveRead | JSONResponse:
    try:
        return service.update_kanban_positions(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "projects_task_move_failed")


@router.patch("/tasks/{task_id}", response_model=TaskRead)
def update_task(
    request: Request,
    task_id: uuid.UUID,
    dto: TaskUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> TaskRead | JSONResponse:
    try:
        return service.update_task(db, user, task_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "projects_task_update_failed")


@router.delete("/tasks/{task_id}", response_model=TaskDeleteRead)
def delete_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> TaskDeleteRead | JSONResponse:
    try:
        return service.delete_task(db, user, task_id)
    except HTTPException as exc:
        return _failed(request, exc, "projects_task_delete_failed")


@router.put("/tasks/{task_id}/section", response_model=KanbanMoveRead)
def change_task_section(
    request: Request,
    task_id: uuid.UUID,
    dto: TaskSectionChange,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> KanbanMoveRead | JSONResponse:
    try:
        return service.change_task_section(db, user, task_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "projects_task_move_failed")


@router.post("/tasks/{task_id}/complete", response_model=TaskRead)
def complete_task(
    request: Request,
    task_id: uuid.UUID,
    dto: TaskCompletion | None = None,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> TaskRead | JSONResponse:
    try:
        return service.complete_task(db, user, task_id, dto or TaskCompletion())
    except HTTPException as exc:
        return _failed(request, exc, "projects_task_complete_failed")


@router.delete("/tasks/{task_id}/complete", response_model=TaskRead)
def reopen_task(
    request: Request,
    task_id: uuid.UUID,
    dto: TaskReopen | None = None,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> TaskRead | JSONResponse:
    try:
        return service.reopen_task(db, user, task_id, dto or TaskReopen())
    except HTTPException as exc:
        return _failed(request, exc, "projects_task_reopen_failed")


@router.post("/tasks/{task_id}/comments", response_model=CommentRead, status_code=status.HTTP_201_CREATED)
def add_comment(
    request: Request,
    task_id: uuid.UUID,
    dto: CommentCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> CommentRead | JSONResponse:
    try:
        return service.add_comment(db, user, task_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "projects_comment_create_failed")


@router.post("/tasks/{task_id}/documents", response_model=DocumentLinkRead, status_code=status.HTTP_201_CREATED)
def link_document(
    request: Request,
    task_id: uuid.UUID,
    dto: DocumentLinkCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> DocumentLinkRead | JSONResponse:
    try:
        return service.link_document(db, user, task_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "projects_document_link_failed")


@router.delete("/tasks/{task_id}/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
def unlink_document(
    request: Request,
    task_id: uuid.UUID,
    document_id: str,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    service: ProjectsService = Depends(get_projects_service),
) -> Response:
    try:
        service.unlink_document(db, user, task_id, document_id)
    except HTTPException as exc:
        return _failed(request, exc, "projects_document_unlink_failed")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
