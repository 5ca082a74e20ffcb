from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from taskboard.core.database import apply_statement_timeout
from taskboard.metrics import ReindexMetrics
from taskboard.otel import get_tracer
from taskboard.projects.errors import (
    InvalidOrderingError,
    NotFoundError,
    OrderingError,
    translate_persistence_error,
)
from taskboard.projects.models import Board, Section, Task, utcnow


logger = logging.getLogger("taskboard.projects.ordering")
tracer = get_tracer("taskboard.projects.ordering")

Positions = dict[uuid.UUID, int]


@dataclass(frozen=True, slots=True)
class OrderedItem:
    member_id: uuid.UUID
    container_id: uuid.UUID
    position: int

    def __post_init__(self) -> None:
        if not isinstance(self.member_id, uuid.UUID) or not isinstance(self.container_id, uuid.UUID):
            raise InvalidOrderingError("ordered items are identified by UUIDs")
        if isinstance(self.position, bool) or not isinstance(self.position, int) or self.position < 0:
            raise InvalidOrderingError(f"position must be a non-negative integer, got {self.position!r}")


@dataclass(frozen=True, slots=True)
class OrderedCollection:
    """An ordered one-to-many relation: members carry ``position`` inside their container."""

    name: str
    container_name: str
    member_model: type[Any]
    container_model: type[Any]
    container_attr: str

    def container_of(self, member: Any) -> uuid.UUID:
        return getattr(member, self.container_attr)

    def to_item(self, member: Any) -> OrderedItem:
        return OrderedItem(member_id=member.id, container_id=self.container_of(member), position=member.position)


TASKS_IN_SECTIONS = OrderedCollection(
    name="task",
    container_name="section",
    member_model=Task,
    container_model=Section,
    container_attr="section_id",
)

SECTIONS_IN_BOARDS = OrderedCollection(
    name="section",
    container_name="board",
    member_model=Section,
    container_model=Board,
    container_attr="board_id",
)


@dataclass(slots=True)
class Reindexer:
    """Keeps member positions dense (``0..n-1``) inside every container of one collection.

    Operations run inside the caller's transaction and never commit. Every
    position change of an operation is written by one flush; on any failure
    the session is rolled back in full and an ``OrderingError`` is raised.
    Affected container rows are touched so that their version column makes
    concurrent rewrites of the same container conflict in the database.
    """

    collection: OrderedCollection
    metrics: ReindexMetrics
    statement_timeout_ms: int = 0

    def list_members(self, session: Session, container_id: uuid.UUID) -> list[OrderedItem]:
        session.flush()
        self._get_container(session, container_id)
        return [self.collection.to_item(member) for member in self._load_members(session, container_id)]

    def append_to_container(
        self,
        session: Session,
        container_id: uuid.UUID,
        member_id: uuid.UUID,
        *,
        index: int | None = None,
    ) -> Positions:
        with self._operation(session, "append", container_id=container_id, member_id=member_id) as report:
            container = self._get_container(session, container_id)
            member = self._get_member(session, member_id)
            current_container_id = self.collection.container_of(member)
            if current_container_id != container_id:
                raise InvalidOrderingError(
                    f"{self.collection.name} {member_id} belongs to {self.collection.container_name} "
                    f"{current_container_id}; move it instead of appending"
                )
            if index is not None and index < 0:
                raise InvalidOrderingError(f"index must be non-negative, got {index}")

            siblings = [item for item in self._load_members(session, container_id) if item.id != member.id]
            target = len(siblings) if index is None else min(index, len(siblings))
            ordered = [*siblings[:target], member, *siblings[target:]]

            self._touch(container)
            return self._apply(session, [(container_id, ordered)], report)

    def remove_from_container(self, session: Session, container_id: uuid.UUID, member_id: uuid.UUID) -> Positions:
        with self._operation(session, "remove", container_id=container_id, member_id=member_id) as report:
            container = self._get_container(session, container_id)
            member = self._get_member(session, member_id)
            if self.collection.container_of(member) != container_id:
                raise InvalidOrderingError(
                    f"{self.collection.name} {member_id} is not a member of {self.collection.container_name} {container_id}"
                )

            self._touch(container)
            session.delete(member)
            session.flush()

            remaining = self._load_members(session, container_id)
            return self._apply(session, [(container_id, remaining)], report)

    def remove_many(self, session: Session, member_ids: Sequence[uuid.UUID]) -> Positions:
        unique_ids = list(dict.fromkeys(member_ids))
        with self._operation(session, "remove_many") as report:
            if not unique_ids:
                raise InvalidOrderingError(f"at least one {self.collection.name} id is required")

            affected: dict[uuid.UUID, Any] = {}
            members = []
            for member_id in unique_ids:
                member = self._get_member(session, member_id)
                container_id = self.collection.container_of(member)
                if container_id not in affected:
                    affected[container_id] = self._get_container(session, container_id)
                members.append(member)

            for container in affected.values():
                self._touch(container)
            for member in members:
                session.delete(member)
            session.flush()

            batches = [(container_id, self._load_members(session, container_id)) for container_id in affected]
            return self._apply(session, batches, report)

    def move_between_containers(
        self,
        session: Session,
        source_container_id: uuid.UUID,
        destination_container_id: uuid.UUID,
        ordered_destination_ids: Sequence[uuid.UUID],
    ) -> Positions:
        ordered_ids = list(ordered_destination_ids)
        with self._operation(
            session,
            "move",
            source_container_id=source_container_id,
            destination_container_id=destination_container_id,
        ) as report:
            if len(set(ordered_ids)) != len(ordered_ids):
                raise InvalidOrderingError("ordering contains duplicate member ids")

            same_container = source_container_id == destination_container_id
            destination = self._get_container(session, destination_container_id)
            source = destination if same_container else self._get_container(session, source_container_id)

            destination_members = self._load_members(session, destination_container_id)
            source_members = [] if same_container else self._load_members(session, source_container_id)
            candidates = {member.id: member for member in (*destination_members, *source_members)}

            foreign = [member_id for member_id in ordered_ids if member_id not in candidates]
            if foreign:
                self._reject_foreign(session, foreign, source_container_id, destination_container_id)

            requested = set(ordered_ids)
            omitted = [member.id for member in destination_members if member.id not in requested]
            if omitted:
                raise InvalidOrderingError(
                    f"ordering omits current members of {self.collection.container_name} "
                    f"{destination_container_id}: {', '.join(str(item) for item in omitted)}"
                )

            remaining_source = [member for member in source_members if member.id not in requested]
            batches = [(destination_container_id, [candidates[member_id] for member_id in ordered_ids])]
            self._touch(destination)
            if not same_container:
                self._touch(source)
                batches.append((source_container_id, remaining_source))

            return self._apply(session, batches, report)

    def reindex_container(self, session: Session, container_id: uuid.UUID) -> Positions:
        with self._operation(session, "reindex", container_id=container_id) as report:
            container = self._get_container(session, container_id)
            members = self._load_members(session, container_id)
            self._touch(container)
            return self._apply(session, [(container_id, members)], report)

    def _apply(
        self,
        session: Session,
        batches: Sequence[tuple[uuid.UUID, Sequence[Any]]],
        report: dict[str, Any],
    ) -> Positions:
        assignments = [
            (member, container_id, index)
            for container_id, members in batches
            for index, member in enumerate(members)
        ]
        written = self._write_positions(session, assignments)
        self.metrics.observe_rows_written(self.collection.name, written)

        positions = {member.id: index for member, _, index in assignments}
        report["affected"] = len(positions)
        report["rows_written"] = written
        return positions

    def _write_positions(self, session: Session, assignments: Sequence[tuple[Any, uuid.UUID, int]]) -> int:
        written = 0
        for member, container_id, position in assignments:
            changed = False
            if self.collection.container_of(member) != container_id:
                setattr(member, self.collection.container_attr, container_id)
                changed = True
            if member.position != position:
                member.position = position
                changed = True
            if changed:
                written += 1
        session.flush()
        return written

    def _touch(self, container: Any) -> None:
        container.updated_at = utcnow()

    def _get_container(self, session: Session, container_id: uuid.UUID) -> Any:
        container = session.get(self.collection.container_model, container_id)
        if container is None:
            raise NotFoundError(self.collection.container_name, container_id)
        return container

    def _get_member(self, session: Session, member_id: uuid.UUID) -> Any:
        member = session.get(self.collection.member_model, member_id)
        if member is None:
            raise NotFoundError(self.collection.name, member_id)
        return member

    def _load_members(self, session: Session, container_id: uuid.UUID) -> list[Any]:
        model = self.collection.member_model
        stmt = (
            select(model)
            .where(getattr(model, self.collection.container_attr) == container_id)
            .order_by(model.position.asc(), model.created_at.asc(), model.id.asc())
        )
        members = list(session.scalars(stmt).all())
        # rows that cannot form an OrderedItem never reach position arithmetic
        for member in members:
            self.collection.to_item(member)
        return members

    def _reject_foreign(
        self,
        session: Session,
        member_ids: Sequence[uuid.UUID],
        source_container_id: uuid.UUID,
        destination_container_id: uuid.UUID,
    ) -> None:
        for member_id in member_ids:
            self._get_member(session, member_id)
        containers = {source_container_id, destination_container_id}
        raise InvalidOrderingError(
            f"ordering references {self.collection.name}s outside {self.collection.container_name}s "
            f"{', '.join(sorted(str(item) for item in containers))}: "
            f"{', '.join(str(item) for item in member_ids)}"
        )

    @contextmanager
    def _operation(self, session: Session, operation: str, **fields: uuid.UUID) -> Iterator[dict[str, Any]]:
        started = time.perf_counter()
        outcome = "error"
        report: dict[str, Any] = {}
        log_fields = {key: str(value) for key, value in fields.items()}

        with tracer.start_as_current_span(f"projects.reindex.{operation}") as span:
            span.set_attribute("collection", self.collection.name)
            for key, value in log_fields.items():
                span.set_attribute(key, value)
            try:
                apply_statement_timeout(session, self.statement_timeout_ms)
                session.flush()
                yield report
                outcome = "ok"
            except OrderingError as exc:
                outcome = exc.code
                session.rollback()
                self._log_failure(operation, outcome, exc, log_fields)
                raise
            except SQLAlchemyError as exc:
                session.rollback()
                translated = translate_persistence_error(exc)
                outcome = translated.code if translated is not None else "persistence_error"
                self._log_failure(operation, outcome, exc, log_fields)
                if translated is None:
                    raise
                raise translated from exc
            finally:
                span.set_attribute("outcome", outcome)
                self.metrics.observe_operation(
                    self.collection.name,
                    operation,
                    outcome,
                    time.perf_counter() - started,
                )

        logger.info(
            "reindex.completed",
            extra={
                "operation": operation,
                "collection": self.collection.name,
                "outcome": outcome,
                "affected": report.get("affected", 0),
                "rows_written": report.get("rows_written", 0),
                **log_fields,
            },
        )

    def _log_failure(self, operation: str, outcome: str, exc: Exception, log_fields: dict[str, str]) -> None:
        logger.warning(
            "reindex.failed",
            extra={
                "operation": operation,
                "collection": self.collection.name,
                "outcome": outcome,
                "error": str(exc)[:500],
                **log_fields,
            },
        )
