"""Durable task store backed by SQLite.

Every write runs inside its own transaction. The store does no accounting of
its own: usage is replaced with whatever snapshot the caller supplies.
"""

import logging
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any, Optional, Union

from sqlalchemy import create_engine, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from apex_engine.core.errors import DuplicateIdError, TaskNotFoundError
from apex_engine.core.task import Task, TaskStatus, utcnow
from apex_engine.db.models import Base, TaskRecord

logger = logging.getLogger(__name__)

_COLUMNS = [column.key for column in TaskRecord.__table__.columns if column.key != "pk"]


def _to_row(task: Task) -> dict[str, Any]:
    data = task.model_dump(mode="python")
    data["usage"] = task.usage.model_dump(mode="json")
    for key in ("status", "autonomy", "priority"):
        data[key] = getattr(task, key).value
    return {key: data[key] for key in _COLUMNS}


def _to_task(record: TaskRecord) -> Task:
    return Task.model_validate({key: getattr(record, key) for key in _COLUMNS})


class TaskStore:
    """Entity store for task records."""

    def __init__(
        self,
        database_path: Union[str, Path, None] = None,
        *,
        url: Optional[str] = None,
        engine: Optional[Engine] = None,
    ):
        if engine is None:
            if url is None:
                if database_path is None:
                    raise ValueError("database_path, url or engine is required")
                path = Path(database_path)
                path.parent.mkdir(parents=True, exist_ok=True)
                url = f"sqlite:///{path}"
            engine = create_engine(url)

        self.engine = engine
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)
        Base.metadata.create_all(engine)

    def close(self) -> None:
        self.engine.dispose()

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    def create_task(self, task: Task) -> Task:
        """Persist a new task. Raises ``DuplicateIdError`` if the id is taken."""
        try:
            with self._sessions.begin() as session:
                if self._find(session, task.id) is not None:
                    raise DuplicateIdError(task.id)
                session.add(TaskRecord(**_to_row(task)))
        except IntegrityError as e:
            raise DuplicateIdError(task.id) from e

        logger.debug(f"Task {task.id} created")
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._sessions() as session:
            record = self._find(session, task_id)
            return _to_task(record) if record is not None else None

    def update_task(
        self,
        task_id: str,
        partial: Optional[dict[str, Any]] = None,
        **fields: Any,
    ) -> Task:
        """Merge ``partial``/``fields`` into the stored record.

        ``updated_at`` is bumped unless given explicitly. The merged record is
        validated before it is written, so invariant violations raise
        ``pydantic.ValidationError`` and leave the stored row untouched.
        """
        changes = {**(partial or {}), **fields}
        if "id" in changes and changes["id"] != task_id:
            raise ValueError("Task id cannot be changed")
        unknown = set(changes) - set(Task.model_fields)
        if unknown:
            raise ValueError(f"Unknown task fields: {', '.join(sorted(unknown))}")

        return self._mutate(task_id, lambda task: changes)

    def append_log(self, task_id: str, message: str) -> Task:
        return self._mutate(task_id, lambda task: {"logs": [*task.logs, message]})

    def add_artifact(self, task_id: str, reference: str) -> Task:
        def changes(task: Task) -> dict[str, Any]:
            if reference in task.artifacts:
                return {}
            return {"artifacts": [*task.artifacts, reference]}

        return self._mutate(task_id, changes)

    def list_tasks(
        self,
        status: Union[TaskStatus, str, Iterable[Union[TaskStatus, str]], None] = None,
        limit: Optional[int] = None,
    ) -> list[Task]:
        """Tasks ordered by creation time, most recent last.

        With ``limit`` the most recent ``limit`` tasks are returned, still in
        ascending order.
        """
        query = select(TaskRecord)
        if status is not None:
            if isinstance(status, (str, TaskStatus)):
                statuses = [TaskStatus(status).value]
            else:
                statuses = [TaskStatus(s).value for s in status]
            query = query.where(TaskRecord.status.in_(statuses))

        if limit is not None:
            query = query.order_by(TaskRecord.created_at.desc(), TaskRecord.pk.desc()).limit(limit)
        else:
            query = query.order_by(TaskRecord.created_at, TaskRecord.pk)

        with self._sessions() as session:
            records = session.scalars(query).all()
            tasks = [_to_task(record) for record in records]

        if limit is not None:
            tasks.reverse()
        return tasks

    def count_tasks(self, status: Union[TaskStatus, str, None] = None) -> int:
        query = select(func.count()).select_from(TaskRecord)
        if status is not None:
            query = query.where(TaskRecord.status == TaskStatus(status).value)
        with self._sessions() as session:
            return session.scalar(query) or 0

    def delete_task(self, task_id: str) -> bool:
        with self._sessions.begin() as session:
            record = self._find(session, task_id)
            if record is None:
                return False
            session.delete(record)
        return True

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _find(session: Session, task_id: str) -> Optional[TaskRecord]:
        return session.scalars(select(TaskRecord).where(TaskRecord.id == task_id)).first()

    def _mutate(self, task_id: str, compute: Callable[[Task], dict[str, Any]]) -> Task:
        """Read, merge and write one record inside a single transaction."""
        with self._sessions.begin() as session:
            record = self._find(session, task_id)
            if record is None:
                raise TaskNotFoundError(task_id)

            current = _to_task(record)
            changes = compute(current)
            if not changes:
                return current

            merged = current.model_dump()
            merged.update(changes)
            if "updated_at" not in changes:
                merged["updated_at"] = utcnow()
            task = Task.model_validate(merged)

            for key, value in _to_row(task).items():
                setattr(record, key, value)

        return task
