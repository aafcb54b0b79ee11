"""
SOLE RESPONSIBILITY: Contains all database Create, Read, Update, Delete (CRUD) logic.
Functions in this module are pure, stateless, and accept a database session and data models as arguments.
Status transitions are guarded here: a record in a terminal state is never mutated again.
"""

from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlmodel import Session, select

from . import models

# Tasks


def create_task(session: Session, task_in: models.TaskCreate) -> models.TaskDB:
    """Persist a new PENDING task."""
    db_task = models.TaskDB(
        title=task_in.title,
        description=task_in.description,
        priority=task_in.priority,
        due_date=task_in.due_date,
        status=models.TaskStatus.PENDING,
    )
    session.add(db_task)
    session.commit()
    session.refresh(db_task)
    return db_task


def get_task(session: Session, task_id: str) -> Optional[models.TaskDB]:
    return session.get(models.TaskDB, task_id)


def get_all_tasks(session: Session, status: Optional[models.TaskStatus] = None) -> List[models.TaskDB]:
    """All tasks, newest first, optionally filtered by status."""
    statement = select(models.TaskDB)
    if status:
        statement = statement.where(models.TaskDB.status == status)
    statement = statement.order_by(models.TaskDB.created_at.desc())
    return list(session.exec(statement))


def update_task_status(
    session: Session, task_id: str, status: models.TaskStatus
) -> Optional[models.TaskDB]:
    """
    Guarded status transition: returns None when the task is missing or already terminal.
    Sets completed_at when the task transitions to COMPLETED.
    """
    task = session.get(models.TaskDB, task_id)
    if not task or task.status in models.TERMINAL_TASK_STATUSES:
        return None

    now = models.utc_now()
    task.status = status
    task.updated_at = now
    if status == models.TaskStatus.COMPLETED:
        task.completed_at = now

    session.add(task)
    session.commit()
    session.refresh(task)
    return task


def set_task_metadata(session: Session, task_id: str, metadata: models.TaskMetadata) -> Optional[models.TaskDB]:
    task = session.get(models.TaskDB, task_id)
    if task:
        task.task_metadata = metadata.model_dump_json()
        task.updated_at = models.utc_now()
        session.add(task)
        session.commit()
        session.refresh(task)
    return task


def read_task_metadata(task: models.TaskDB) -> models.TaskMetadata:
    if not task.task_metadata:
        return models.TaskMetadata()
    return models.TaskMetadata.model_validate_json(task.task_metadata)


def cancel_task_cascade(session: Session, task_id: str) -> bool:
    """
    Atomic cancellation: task plus every PENDING/IN_PROGRESS sub-task become CANCELLED in one commit.
    Returns False when the task is missing or already terminal.
    """
    task = session.get(models.TaskDB, task_id)
    if not task or task.status in models.TERMINAL_TASK_STATUSES:
        return False

    now = models.utc_now()
    task.status = models.TaskStatus.CANCELLED
    task.updated_at = now
    session.add(task)

    statement = select(models.SubTaskDB).where(
        models.SubTaskDB.task_id == task_id,
        models.SubTaskDB.status.in_([models.TaskStatus.PENDING, models.TaskStatus.IN_PROGRESS]),
    )
    for sub_task in session.exec(statement):
        sub_task.status = models.TaskStatus.CANCELLED
        sub_task.updated_at = now
        session.add(sub_task)

    session.commit()
    return True


def delete_task(session: Session, task_id: str) -> bool:
    """
    Delete a task together with its sub-tasks and logs.
    Returns False if not found or not yet in a terminal state.
    """
    task = get_task(session, task_id)
    if not task or task.status not in models.TERMINAL_TASK_STATUSES:
        return False

    session.delete(task)
    session.commit()
    return True


# Sub-tasks


def create_sub_tasks(
    session: Session, task_id: str, items: Iterable[Tuple[str, Optional[str]]]
) -> List[models.SubTaskDB]:
    """Batch creation right after planning; order is the position in the plan, starting at 0."""
    sub_tasks = [
        models.SubTaskDB(task_id=task_id, title=title, description=description, order=index)
        for index, (title, description) in enumerate(items)
    ]
    session.add_all(sub_tasks)
    session.commit()
    for sub_task in sub_tasks:
        session.refresh(sub_task)
    return sub_tasks


def get_sub_tasks(session: Session, task_id: str) -> List[models.SubTaskDB]:
    statement = (
        select(models.SubTaskDB)
        .where(models.SubTaskDB.task_id == task_id)
        .order_by(models.SubTaskDB.order)
    )
    return list(session.exec(statement))


def get_next_pending_sub_task(session: Session, task_id: str) -> Optional[models.SubTaskDB]:
    """Lowest-order PENDING sub-task, or None when nothing is left to run."""
    statement = (
        select(models.SubTaskDB)
        .where(
            models.SubTaskDB.task_id == task_id,
            models.SubTaskDB.status == models.TaskStatus.PENDING,
        )
        .order_by(models.SubTaskDB.order)
        .limit(1)
    )
    return session.exec(statement).first()


def get_in_progress_sub_task(session: Session, task_id: str) -> Optional[models.SubTaskDB]:
    statement = select(models.SubTaskDB).where(
        models.SubTaskDB.task_id == task_id,
        models.SubTaskDB.status == models.TaskStatus.IN_PROGRESS,
    )
    return session.exec(statement).first()


def update_sub_task_status(
    session: Session, sub_task_id: str, status: models.TaskStatus
) -> Optional[models.SubTaskDB]:
    """Guarded transition, same rules as update_task_status."""
    sub_task = session.get(models.SubTaskDB, sub_task_id)
    if not sub_task or sub_task.status in models.TERMINAL_TASK_STATUSES:
        return None

    now = models.utc_now()
    sub_task.status = status
    sub_task.updated_at = now
    if status == models.TaskStatus.COMPLETED:
        sub_task.completed_at = now

    session.add(sub_task)
    session.commit()
    session.refresh(sub_task)
    return sub_task


# Task logs


def add_task_log(
    session: Session,
    message: str,
    level: models.LogLevel = models.LogLevel.INFO,
    task_id: Optional[str] = None,
    sub_task_id: Optional[str] = None,
    details: Optional[models.LogDetails] = None,
) -> models.TaskLogDB:
    """Append one audit record; seq numbers a task's logs in write order."""
    last_seq = session.exec(
        select(func.max(models.TaskLogDB.seq)).where(models.TaskLogDB.task_id == task_id)
    ).one()
    log = models.TaskLogDB(
        task_id=task_id,
        seq=(last_seq or 0) + 1,
        sub_task_id=sub_task_id,
        message=message,
        level=level,
        details=details.model_dump_json() if details is not None else None,
    )
    session.add(log)
    session.commit()
    session.refresh(log)
    return log


def get_task_logs(session: Session, task_id: str) -> List[models.TaskLogDB]:
    """Logs for a task, newest first by write order."""
    statement = (
        select(models.TaskLogDB)
        .where(models.TaskLogDB.task_id == task_id)
        .order_by(models.TaskLogDB.seq.desc(), models.TaskLogDB.created_at.desc())
    )
    return list(session.exec(statement))


def read_log_details(log: models.TaskLogDB) -> Optional[models.LogDetails]:
    if not log.details:
        return None
    return models.log_details_adapter.validate_json(log.details)


# Sandbox sessions


def create_sandbox_session(
    session: Session, session_id: str, name: str, metadata: models.SessionMetadata
) -> models.SandboxSessionDB:
    record = models.SandboxSessionDB(
        id=session_id,
        name=name,
        session_metadata=metadata.model_dump_json(),
    )
    session.add(record)
    session.commit()
    session.refresh(record)
    return record


def get_sandbox_session(session: Session, session_id: str) -> Optional[models.SandboxSessionDB]:
    return session.get(models.SandboxSessionDB, session_id)


def get_all_sandbox_sessions(session: Session) -> List[models.SandboxSessionDB]:
    statement = select(models.SandboxSessionDB).order_by(models.SandboxSessionDB.created_at.desc())
    return list(session.exec(statement))


def get_stale_sandbox_sessions(session: Session, cutoff: datetime) -> List[models.SandboxSessionDB]:
    statement = select(models.SandboxSessionDB).where(models.SandboxSessionDB.updated_at < cutoff)
    return list(session.exec(statement))


def read_session_metadata(record: models.SandboxSessionDB) -> Optional[models.SessionMetadata]:
    """Raises pydantic.ValidationError on a corrupt blob; callers decide how to treat it."""
    if not record.session_metadata:
        return None
    return models.SessionMetadata.model_validate_json(record.session_metadata)


def append_command_history(
    session: Session,
    session_id: str,
    history: models.CommandHistoryEntry,
    output: models.CommandOutputEntry,
) -> Optional[models.SandboxSessionDB]:
    """Append one command entry and its matching output entry in a single commit."""
    record = session.get(models.SandboxSessionDB, session_id)
    if not record:
        return None

    commands = models.history_adapter.validate_json(record.commands or "[]")
    outputs = models.outputs_adapter.validate_json(record.outputs or "[]")
    commands.append(history)
    outputs.append(output)

    record.commands = models.history_adapter.dump_json(commands).decode()
    record.outputs = models.outputs_adapter.dump_json(outputs).decode()
    record.updated_at = models.utc_now()
    session.add(record)
    session.commit()
    session.refresh(record)
    return record


def get_command_history(session: Session, session_id: str) -> List[models.CommandHistoryItem]:
    """Command entries zipped with their output entries, oldest first."""
    record = session.get(models.SandboxSessionDB, session_id)
    if not record:
        return []

    commands = models.history_adapter.validate_json(record.commands or "[]")
    outputs = models.outputs_adapter.validate_json(record.outputs or "[]")
    return [
        models.CommandHistoryItem(
            command=entry.command,
            timestamp=entry.timestamp,
            success=entry.success,
            result=outputs[index] if index < len(outputs) else None,
        )
        for index, entry in enumerate(commands)
    ]


def mark_sandbox_session_inactive(session: Session, session_id: str) -> Optional[models.SandboxSessionDB]:
    record = session.get(models.SandboxSessionDB, session_id)
    if not record:
        return None

    try:
        metadata = read_session_metadata(record)
    except ValueError:
        metadata = None
    if metadata is not None:
        metadata.status = "inactive"
        record.session_metadata = metadata.model_dump_json()
    record.is_active = False
    session.add(record)
    session.commit()
    session.refresh(record)
    return record


def rename_sandbox_session(session: Session, session_id: str, name: str) -> Optional[models.SandboxSessionDB]:
    record = session.get(models.SandboxSessionDB, session_id)
    if record:
        record.name = name
        record.updated_at = models.utc_now()
        session.add(record)
        session.commit()
        session.refresh(record)
    return record


def touch_sandbox_session(session: Session, session_id: str, when: datetime) -> Optional[models.SandboxSessionDB]:
    """Set updated_at explicitly; used by retention tooling and tests."""
    record = session.get(models.SandboxSessionDB, session_id)
    if record:
        record.updated_at = when
        session.add(record)
        session.commit()
        session.refresh(record)
    return record


def delete_sandbox_session(session: Session, session_id: str) -> bool:
    record = session.get(models.SandboxSessionDB, session_id)
    if not record:
        return False
    session.delete(record)
    session.commit()
    return True
