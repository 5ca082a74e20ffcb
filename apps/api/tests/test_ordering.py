from __future__ import annotations

import uuid
from collections.abc import Generator, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from prometheus_client import CollectorRegistry
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool

from taskboard.core.database import Base
from taskboard.metrics import ReindexMetrics
from taskboard.otel import setup_inmemory_otel
from taskboard.projects.errors import (
    ConcurrentModificationError,
    InvalidOrderingError,
    NotFoundError,
    PersistenceTimeoutError,
)
from taskboard.projects.models import Board, Section, Task, TaskComment, TaskDocumentLink
from taskboard.projects.ordering import SECTIONS_IN_BOARDS, TASKS_IN_SECTIONS, OrderedItem, Reindexer


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture()
def metrics(registry: CollectorRegistry) -> ReindexMetrics:
    return ReindexMetrics(registry=registry)


@pytest.fixture()
def tasks(metrics: ReindexMetrics) -> Reindexer:
    return Reindexer(collection=TASKS_IN_SECTIONS, metrics=metrics)


@pytest.fixture()
def sections(metrics: ReindexMetrics) -> Reindexer:
    return Reindexer(collection=SECTIONS_IN_BOARDS, metrics=metrics)


def _board(session: Session) -> uuid.UUID:
    board = Board(title="Launch", owner_id="user-1", shared_with=[])
    session.add(board)
    session.commit()
    return board.id


def _section(session: Session, sections: Reindexer, board_id: uuid.UUID, title: str) -> uuid.UUID:
    section_id = uuid.uuid4()
    session.add(Section(id=section_id, board_id=board_id, title=title))
    sections.append_to_container(session, board_id, section_id)
    session.commit()
    return section_id


def _task(session: Session, tasks: Reindexer, section_id: uuid.UUID, title: str) -> uuid.UUID:
    task_id = uuid.uuid4()
    session.add(Task(id=task_id, section_id=section_id, title=title, created_by="user-1"))
    tasks.append_to_container(session, section_id, task_id)
    session.commit()
    return task_id


def _column(session: Session, section_id: uuid.UUID) -> list[tuple[str, int]]:
    session.expire_all()
    rows = session.scalars(select(Task).where(Task.section_id == section_id).order_by(Task.position.asc())).all()
    return [(row.title, row.position) for row in rows]


def _assert_dense(session: Session, section_id: uuid.UUID) -> None:
    positions = [position for _, position in _column(session, section_id)]
    assert positions == list(range(len(positions)))


@pytest.fixture()
def board_id(db_session: Session) -> uuid.UUID:
    return _board(db_session)


@pytest.fixture()
def column(db_session: Session, sections: Reindexer, board_id: uuid.UUID) -> uuid.UUID:
    return _section(db_session, sections, board_id, "Todo")


def test_sequential_appends_take_positions_in_call_order(db_session: Session, tasks: Reindexer, column: uuid.UUID) -> None:
    for title in ["a", "b", "c", "d"]:
        _task(db_session, tasks, column, title)

    assert _column(db_session, column) == [("a", 0), ("b", 1), ("c", 2), ("d", 3)]


def test_append_returns_positions_of_the_whole_container(db_session: Session, tasks: Reindexer, column: uuid.UUID) -> None:
    first = _task(db_session, tasks, column, "a")
    second_id = uuid.uuid4()
    db_session.add(Task(id=second_id, section_id=column, title="b", created_by="user-1"))

    positions = tasks.append_to_container(db_session, column, second_id)

    assert positions == {first: 0, second_id: 1}


def test_append_at_index_shifts_later_members_and_clamps(db_session: Session, tasks: Reindexer, column: uuid.UUID) -> None:
    _task(db_session, tasks, column, "a")
    _task(db_session, tasks, column, "b")

    front = uuid.uuid4()
    db_session.add(Task(id=front, section_id=column, title="front", created_by="user-1"))
    tasks.append_to_container(db_session, column, front, index=0)
    db_session.commit()

    tail = uuid.uuid4()
    db_session.add(Task(id=tail, section_id=column, title="tail", created_by="user-1"))
    tasks.append_to_container(db_session, column, tail, index=99)
    db_session.commit()

    assert _column(db_session, column) == [("front", 0), ("a", 1), ("b", 2), ("tail", 3)]


def test_append_rejects_member_of_another_container(
    db_session: Session,
    tasks: Reindexer,
    sections: Reindexer,
    board_id: uuid.UUID,
    column: uuid.UUID,
) -> None:
    other = _section(db_session, sections, board_id, "Done")
    task_id = _task(db_session, tasks, other, "a")

    with pytest.raises(InvalidOrderingError):
        tasks.append_to_container(db_session, column, task_id)

    assert _column(db_session, other) == [("a", 0)]
    assert _column(db_session, column) == []


def test_append_rejects_negative_index(db_session: Session, tasks: Reindexer, column: uuid.UUID) -> None:
    task_id = uuid.uuid4()
    db_session.add(Task(id=task_id, section_id=column, title="a", created_by="user-1"))

    with pytest.raises(InvalidOrderingError):
        tasks.append_to_container(db_session, column, task_id, index=-1)

    # the pending insert went with the rollback
    assert db_session.get(Task, task_id) is None


def test_remove_closes_the_gap_preserving_relative_order(db_session: Session, tasks: Reindexer, column: uuid.UUID) -> None:
    ids = [_task(db_session, tasks, column, title) for title in ["a", "b", "c", "d"]]

    positions = tasks.remove_from_container(db_session, column, ids[1])
    db_session.commit()

    assert positions == {ids[0]: 0, ids[2]: 1, ids[3]: 2}
    assert _column(db_session, column) == [("a", 0), ("c", 1), ("d", 2)]


def test_delete_then_append_scenario(db_session: Session, tasks: Reindexer, column: uuid.UUID) -> None:
    _task(db_session, tasks, column, "T1")
    t2 = _task(db_session, tasks, column, "T2")
    _task(db_session, tasks, column, "T3")

    tasks.remove_from_container(db_session, column, t2)
    db_session.commit()
    assert _column(db_session, column) == [("T1", 0), ("T3", 1)]

    _task(db_session, tasks, column, "T4")
    assert _column(db_session, column) == [("T1", 0), ("T3", 1), ("T4", 2)]


def test_remove_cascades_comments_and_document_links(db_session: Session, tasks: Reindexer, column: uuid.UUID) -> None:
    task_id = _task(db_session, tasks, column, "a")
    db_session.add(TaskComment(task_id=task_id, author_id="user-1", comment="note"))
    db_session.add(TaskDocumentLink(task_id=task_id, document_id="doc-1", linked_by="user-1"))
    db_session.commit()

    tasks.remove_from_container(db_session, column, task_id)
    db_session.commit()

    assert db_session.scalars(select(TaskComment)).all() == []
    assert db_session.scalars(select(TaskDocumentLink)).all() == []


def test_remove_from_wrong_container_is_rejected(
    db_session: Session,
    tasks: Reindexer,
    sections: Reindexer,
    board_id: uuid.UUID,
    column: uuid.UUID,
) -> None:
    other = _section(db_session, sections, board_id, "Done")
    task_id = _task(db_session, tasks, column, "a")

    with pytest.raises(InvalidOrderingError):
        tasks.remove_from_container(db_session, other, task_id)

    assert _column(db_session, column) == [("a", 0)]


def test_remove_reports_missing_container_and_member(db_session: Session, tasks: Reindexer, column: uuid.UUID) -> None:
    task_id = _task(db_session, tasks, column, "a")

    with pytest.raises(NotFoundError) as missing_container:
        tasks.remove_from_container(db_session, uuid.uuid4(), task_id)
    assert missing_container.value.kind == "section"

    with pytest.raises(NotFoundError) as missing_member:
        tasks.remove_from_container(db_session, column, uuid.uuid4())
    assert missing_member.value.kind == "task"


def test_move_between_containers_writes_destination_order(
    db_session: Session,
    tasks: Reindexer,
    sections: Reindexer,
    board_id: uuid.UUID,
    column: uuid.UUID,
) -> None:
    other = _section(db_session, sections, board_id, "Doing")
    a = _task(db_session, tasks, column, "a")
    b = _task(db_session, tasks, column, "b")
    c = _task(db_session, tasks, column, "c")
    x = _task(db_session, tasks, other, "x")
    y = _task(db_session, tasks, other, "y")

    positions = tasks.move_between_containers(db_session, column, other, [x, b, y])
    db_session.commit()

    assert positions == {x: 0, b: 1, y: 2, a: 0, c: 1}
    assert _column(db_session, column) == [("a", 0), ("c", 1)]
    assert _column(db_session, other) == [("x", 0), ("b", 1), ("y", 2)]


def test_move_keeps_the_caller_orientation(db_session: Session, tasks: Reindexer, column: uuid.UUID) -> None:
    a = _task(db_session, tasks, column, "a")
    b = _task(db_session, tasks, column, "b")
    c = _task(db_session, tasks, column, "c")

    tasks.move_between_containers(db_session, column, column, [c, a, b])
    db_session.commit()

    assert _column(db_session, column) == [("c", 0), ("a", 1), ("b", 2)]


def test_move_into_an_empty_container(
    db_session: Session,
    tasks: Reindexer,
    sections: Reindexer,
    board_id: uuid.UUID,
    column: uuid.UUID,
) -> None:
    other = _section(db_session, sections, board_id, "Done")
    a = _task(db_session, tasks, column, "a")
    _task(db_session, tasks, column, "b")

    tasks.move_between_containers(db_session, column, other, [a])
    db_session.commit()

    assert _column(db_session, column) == [("b", 0)]
    assert _column(db_session, other) == [("a", 0)]


def test_move_rejects_duplicates(db_session: Session, tasks: Reindexer, column: uuid.UUID) -> None:
    a = _task(db_session, tasks, column, "a")
    b = _task(db_session, tasks, column, "b")

    with pytest.raises(InvalidOrderingError):
        tasks.move_between_containers(db_session, column, column, [a, b, a])

    assert _column(db_session, column) == [("a", 0), ("b", 1)]


def test_move_rejects_an_ordering_that_drops_destination_members(
    db_session: Session,
    tasks: Reindexer,
    column: uuid.UUID,
) -> None:
    a = _task(db_session, tasks, column, "a")
    _task(db_session, tasks, column, "b")

    with pytest.raises(InvalidOrderingError):
        tasks.move_between_containers(db_session, column, column, [a])

    assert _column(db_session, column) == [("a", 0), ("b", 1)]


def test_move_rejects_members_of_uninvolved_containers(
    db_session: Session,
    tasks: Reindexer,
    sections: Reindexer,
    board_id: uuid.UUID,
    column: uuid.UUID,
) -> None:
    stranger_section = _section(db_session, sections, board_id, "Elsewhere")
    a = _task(db_session, tasks, column, "a")
    stranger = _task(db_session, tasks, stranger_section, "s")

    with pytest.raises(InvalidOrderingError):
        tasks.move_between_containers(db_session, column, column, [a, stranger])

    with pytest.raises(NotFoundError):
        tasks.move_between_containers(db_session, column, column, [a, uuid.uuid4()])

    assert _column(db_session, stranger_section) == [("s", 0)]


def test_remove_many_reindexes_every_affected_container(
    db_session: Session,
    tasks: Reindexer,
    sections: Reindexer,
    board_id: uuid.UUID,
    column: uuid.UUID,
) -> None:
    other = _section(db_session, sections, board_id, "Done")
    a = _task(db_session, tasks, column, "a")
    b = _task(db_session, tasks, column, "b")
    c = _task(db_session, tasks, column, "c")
    x = _task(db_session, tasks, other, "x")
    y = _task(db_session, tasks, other, "y")

    positions = tasks.remove_many(db_session, [a, x, a])
    db_session.commit()

    assert positions == {b: 0, c: 1, y: 0}
    assert _column(db_session, column) == [("b", 0), ("c", 1)]
    assert _column(db_session, other) == [("y", 0)]


def test_remove_many_requires_ids(db_session: Session, tasks: Reindexer) -> None:
    with pytest.raises(InvalidOrderingError):
        tasks.remove_many(db_session, [])


def test_reindex_container_repairs_gaps_and_ties(db_session: Session, tasks: Reindexer, column: uuid.UUID) -> None:
    started = datetime(2026, 1, 1, tzinfo=timezone.utc)
    for index, (title, position) in enumerate([("a", 0), ("b", 4), ("c", 4), ("d", 9)]):
        db_session.add(
            Task(
                section_id=column,
                title=title,
                position=position,
                created_by="user-1",
                created_at=started + timedelta(minutes=index),
            )
        )
    db_session.commit()

    tasks.reindex_container(db_session, column)
    db_session.commit()

    assert _column(db_session, column) == [("a", 0), ("b", 1), ("c", 2), ("d", 3)]


def test_list_members_returns_typed_items(db_session: Session, tasks: Reindexer, column: uuid.UUID) -> None:
    a = _task(db_session, tasks, column, "a")
    b = _task(db_session, tasks, column, "b")

    items = tasks.list_members(db_session, column)

    assert items == [
        OrderedItem(member_id=a, container_id=column, position=0),
        OrderedItem(member_id=b, container_id=column, position=1),
    ]


@pytest.mark.parametrize("position", [-1, True, 1.5, "2"])
def test_ordered_item_rejects_invalid_positions(position: Any) -> None:
    with pytest.raises(InvalidOrderingError):
        OrderedItem(member_id=uuid.uuid4(), container_id=uuid.uuid4(), position=position)


def test_ordered_item_requires_uuid_identifiers() -> None:
    with pytest.raises(InvalidOrderingError):
        OrderedItem(member_id="task-1", container_id=uuid.uuid4(), position=0)  # type: ignore[arg-type]


def test_random_operation_sequence_keeps_every_container_dense(
    db_session: Session,
    tasks: Reindexer,
    sections: Reindexer,
    board_id: uuid.UUID,
    column: uuid.UUID,
) -> None:
    other = _section(db_session, sections, board_id, "Done")
    columns = [column, other]
    for index in range(6):
        _task(db_session, tasks, columns[index % 2], f"t{index}")

    for step in range(12):
        source = columns[step % 2]
        destination = columns[(step + 1) % 2]
        members = [item.member_id for item in tasks.list_members(db_session, source)]
        if step % 3 == 2 and members:
            tasks.remove_from_container(db_session, source, members[len(members) // 2])
        elif members:
            moved = members[0]
            destination_ids = [item.member_id for item in tasks.list_members(db_session, destination)]
            destination_ids.insert(step % (len(destination_ids) + 1), moved)
            tasks.move_between_containers(db_session, source, destination, destination_ids)
        else:
            _task(db_session, tasks, source, f"fresh{step}")
        db_session.commit()

        for container_id in columns:
            _assert_dense(db_session, container_id)


def test_sections_are_ordered_within_boards_and_removal_cascades(
    db_session: Session,
    tasks: Reindexer,
    sections: Reindexer,
    board_id: uuid.UUID,
) -> None:
    todo = _section(db_session, sections, board_id, "Todo")
    doing = _section(db_session, sections, board_id, "Doing")
    done = _section(db_session, sections, board_id, "Done")
    _task(db_session, tasks, doing, "a")

    positions = sections.remove_from_container(db_session, board_id, doing)
    db_session.commit()

    assert positions == {todo: 0, done: 1}
    assert db_session.scalars(select(Task)).all() == []
    assert [item.member_id for item in sections.list_members(db_session, board_id)] == [todo, done]


@dataclass(slots=True)
class FailingReindexer(Reindexer):
    """Writes the first ``written`` assignments, flushes them, then fails like the database would."""

    written: int = 1
    failure: Exception | None = None

    def _write_positions(self, session: Session, assignments: Sequence[tuple[Any, uuid.UUID, int]]) -> int:
        for member, container_id, position in assignments[: self.written]:
            setattr(member, self.collection.container_attr, container_id)
            member.position = position
        session.flush()
        assert self.failure is not None
        raise self.failure


@pytest.mark.parametrize(
    ("failure", "expected", "outcome"),
    [
        (
            OperationalError("UPDATE project_task", {}, Exception("canceling statement due to statement timeout")),
            PersistenceTimeoutError,
            "persistence_timeout",
        ),
        (StaleDataError("UPDATE statement on table expected to update 1 row(s); 0 were matched."), ConcurrentModificationError, "concurrent_modification"),
    ],
)
def test_failure_mid_batch_leaves_the_old_arrangement(
    db_session: Session,
    tasks: Reindexer,
    sections: Reindexer,
    metrics: ReindexMetrics,
    registry: CollectorRegistry,
    board_id: uuid.UUID,
    column: uuid.UUID,
    failure: Exception,
    expected: type[Exception],
    outcome: str,
) -> None:
    other = _section(db_session, sections, board_id, "Done")
    a = _task(db_session, tasks, column, "a")
    b = _task(db_session, tasks, column, "b")
    c = _task(db_session, tasks, column, "c")
    failing = FailingReindexer(collection=TASKS_IN_SECTIONS, metrics=metrics, written=2, failure=failure)

    with pytest.raises(expected):
        failing.move_between_containers(db_session, column, other, [c, b, a])

    assert _column(db_session, column) == [("a", 0), ("b", 1), ("c", 2)]
    assert _column(db_session, other) == []
    assert (
        registry.get_sample_value(
            "projects_reindex_operations_total",
            {"collection": "task", "operation": "move", "outcome": outcome},
        )
        == 1.0
    )


def test_concurrent_rewrite_of_the_same_container_conflicts(tmp_path: Path, metrics: ReindexMetrics) -> None:
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'board.db'}")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    tasks = Reindexer(collection=TASKS_IN_SECTIONS, metrics=metrics)
    sections = Reindexer(collection=SECTIONS_IN_BOARDS, metrics=metrics)

    with factory() as setup:
        board_id = _board(setup)
        section_id = _section(setup, sections, board_id, "Todo")
        _task(setup, tasks, section_id, "a")

    first = factory()
    second = factory()
    try:
        # the first writer holds the section it read before the second one commits
        section = first.get(Section, section_id)
        assert section is not None
        stale_version = section.row_version
        tasks.reindex_container(second, section_id)
        second.commit()
        assert second.get(Section, section_id).row_version > stale_version

        late_id = uuid.uuid4()
        first.add(Task(id=late_id, section_id=section_id, title="late", created_by="user-1"))
        with pytest.raises(ConcurrentModificationError):
            tasks.append_to_container(first, section_id, late_id)

        assert first.get(Task, late_id) is None
        assert _column(first, section_id) == [("a", 0)]
    finally:
        first.close()
        second.close()
        engine.dispose()


def test_operations_are_counted_and_traced(
    db_session: Session,
    tasks: Reindexer,
    registry: CollectorRegistry,
    column: uuid.UUID,
) -> None:
    exporter: InMemorySpanExporter = setup_inmemory_otel()
    exporter.clear()

    a = _task(db_session, tasks, column, "a")
    b = _task(db_session, tasks, column, "b")
    tasks.move_between_containers(db_session, column, column, [b, a])
    db_session.commit()

    assert (
        registry.get_sample_value(
            "projects_reindex_operations_total",
            {"collection": "task", "operation": "append", "outcome": "ok"},
        )
        == 2.0
    )
    # appending "a" keeps its inserted position 0, "b" moves to 1, then both swap places
    assert registry.get_sample_value("projects_reindex_rows_written_total", {"collection": "task"}) == 3.0

    move_spans = [span for span in exporter.get_finished_spans() if span.name == "projects.reindex.move"]
    assert move_spans
    assert move_spans[-1].attributes.get("collection") == "task"
    assert move_spans[-1].attributes.get("outcome") == "ok"
