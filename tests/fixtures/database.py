"""
Database fixtures and utilities for testing.
"""

from typing import Iterator, List

from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from taskpilot.server import crud
from taskpilot.server.models import SubTaskDB, TaskCreate, TaskDB, TaskStatus

__all__ = ["MockDatabase", "TestDataManager"]


class MockDatabase:
    """In-memory SQLite shared by every session, usable from worker threads."""

    def __init__(self):
        self.engine = create_engine(
            "sqlite://",
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        SQLModel.metadata.create_all(self.engine)

    def get_session(self) -> Iterator[Session]:
        """Same generator contract as taskpilot.server.database.get_session."""
        with Session(self.engine) as session:
            yield session

    def reset(self):
        SQLModel.metadata.drop_all(self.engine)
        SQLModel.metadata.create_all(self.engine)

    def dispose(self):
        self.engine.dispose()


class TestDataManager:
    """Creates tasks and sub-tasks directly through the CRUD layer."""

    __test__ = False

    def __init__(self, session: Session):
        self.session = session

    def create_task(self, title: str = "Test goal", **kwargs) -> TaskDB:
        return crud.create_task(self.session, TaskCreate(title=title, **kwargs))

    def create_planned_task(self, titles, status: TaskStatus = TaskStatus.IN_PROGRESS) -> TaskDB:
        task = self.create_task()
        crud.create_sub_tasks(self.session, task.id, [(title, None) for title in titles])
        crud.update_task_status(self.session, task.id, status)
        self.session.refresh(task)
        return task

    def sub_tasks(self, task_id: str) -> List[SubTaskDB]:
        return crud.get_sub_tasks(self.session, task_id)
