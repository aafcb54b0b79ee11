"""
SOLE RESPONSIBILITY: Drives a task from goal to completion: plans sub-tasks with the chat model,
runs them strictly in order, and records every transition in the task log.
"""

import asyncio
import contextlib
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from . import crud, models
from .config import TaskConfig, get_config
from .database import get_session
from .errors import ExecutionError, PlanningError, TaskCancelledError, TaskPilotError, format_error
from .llm_client import ChatClient, ChatMessage
from .plan_parser import extract_shell_commands, parse_plan
from .sandbox import SandboxManager, SessionFactory

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are TaskPilot, an autonomous agent that completes goals on the user's computer.
You understand the task you are given, break it into sub-tasks, and carry them out one at a time.

You can use the following capabilities:
- Browser automation: open pages, search the web, fill in forms, collect information
- Sandbox shell: run commands in an isolated working directory
- File operations: read, create, edit and organise files
- Editor control: open projects and edit code in VSCode

When asked for a plan, answer with a numbered list. Each item starts on its own line as
"N. Title", followed by lines describing the sub-task. When asked to carry out a sub-task,
explain your approach in detail and put any shell commands in fenced code blocks."""

# Sub-task identity carried across database sessions: (id, title, description)
SubTaskRef = Tuple[str, str, Optional[str]]


class TaskOrchestrator:
    """
    Plans and runs tasks. One instance per application; all state lives in the database
    except the per-task cancellation tokens.
    """

    def __init__(
        self,
        chat_client: ChatClient,
        session_factory: SessionFactory = get_session,
        sandbox: Optional[SandboxManager] = None,
        config: Optional[TaskConfig] = None,
        model: Optional[str] = None,
    ):
        self.chat_client = chat_client
        self.sandbox = sandbox
        self.config = config or get_config().task
        self.model = model or get_config().model.name
        self._db = session_factory
        # Set by cancel_task; raced against in-flight model calls and command waits
        self._cancel_tokens: Dict[str, asyncio.Event] = {}

    # Task creation

    async def new_task(
        self,
        title: str,
        description: Optional[str] = None,
        priority: models.TaskPriority = models.TaskPriority.MEDIUM,
        due_date: Optional[datetime] = None,
    ) -> models.TaskRead:
        """Persist a PENDING task without planning it."""
        task_in = models.TaskCreate(title=title, description=description, priority=priority, due_date=due_date)
        for db in self._db():
            task = crud.create_task(db, task_in)
            task_read = self._to_read(task)
        logger.info(f"Created task {task_read.id}: {task_read.title}")
        return task_read

    async def create_task(
        self,
        title: str,
        description: Optional[str] = None,
        priority: models.TaskPriority = models.TaskPriority.MEDIUM,
        due_date: Optional[datetime] = None,
    ) -> models.TaskRead:
        """Create a task and run it to a terminal state."""
        task = await self.new_task(title, description, priority, due_date)
        await self.plan_task(task.id)
        return await self.get_task_info(task.id)

    # Planning and execution

    async def plan_task(self, task_id: str) -> Optional[models.TaskStatus]:
        """
        Ask the model for a plan, persist the sub-tasks, then run them.
        Failures end as a FAILED task with an ERROR log; nothing is raised.
        """
        title = description = None
        for db in self._db():
            task = crud.update_task_status(db, task_id, models.TaskStatus.IN_PROGRESS)
            if task is not None:
                title, description = task.title, task.description
        if title is None:
            logger.warning(f"Task {task_id} not found or already finished, not planning")
            return None

        self._token(task_id)
        prompt = f"Task: {title}\n"
        if description:
            prompt += f"Details: {description}\n"
        prompt += (
            "\nCreate a plan to complete this task. Break it into sub-tasks and list them "
            "in the order they must be executed."
        )

        try:
            reply = await self._chat(task_id, prompt)
            items = parse_plan(reply)
            for db in self._db():
                task = crud.get_task(db, task_id)
                # cancelled while the model was answering
                if task is not None and task.status not in models.TERMINAL_TASK_STATUSES:
                    crud.create_sub_tasks(db, task_id, items)
                    crud.add_task_log(
                        db,
                        "plan created",
                        task_id=task_id,
                        details=models.PlanDetails(plan=reply, sub_task_count=len(items)),
                    )
            logger.info(f"Task {task_id} planned with {len(items)} sub-tasks")
        except TaskCancelledError:
            logger.info(f"Planning of task {task_id} abandoned after cancellation")
        except Exception as e:
            logger.error(f"Planning failed for task {task_id}: {e}")
            if not isinstance(e, TaskPilotError):
                e = PlanningError(str(e), cause=e)
            return await self._fail(task_id, e)

        return await self.run_next_sub_task(task_id)

    async def run_next_sub_task(self, task_id: str) -> Optional[models.TaskStatus]:
        """
        Run pending sub-tasks in order until none are left, one fails, or the task is cancelled.
        Returns the task's final status, or None when the task does not exist.
        """
        self._token(task_id)
        while True:
            status, sub_task = self._advance(task_id)
            if sub_task is None:
                break

            sub_task_id, title, description = sub_task
            try:
                reply, commands = await self._execute_sub_task(task_id, title, description)
            except TaskCancelledError:
                logger.info(f"Sub-task {sub_task_id} abandoned after cancellation")
                continue
            except Exception as e:
                logger.error(f"Sub-task {sub_task_id} of task {task_id} failed: {e}")
                if not isinstance(e, TaskPilotError):
                    e = ExecutionError(str(e), cause=e)
                return await self._fail(task_id, e, sub_task_id=sub_task_id)

            for db in self._db():
                if crud.update_sub_task_status(db, sub_task_id, models.TaskStatus.COMPLETED) is not None:
                    crud.add_task_log(
                        db,
                        f"sub-task completed: {title}",
                        task_id=task_id,
                        sub_task_id=sub_task_id,
                        details=models.SubTaskResponseDetails(response=reply, commands=commands),
                    )

        self._cancel_tokens.pop(task_id, None)
        if status in models.TERMINAL_TASK_STATUSES:
            await self._release_sandbox(task_id)
        return status

    def _advance(self, task_id: str) -> Tuple[Optional[models.TaskStatus], Optional[SubTaskRef]]:
        """
        Loop head: re-read the task and start the lowest-order PENDING sub-task.
        Completes the task when nothing is pending; returns no sub-task when the task is terminal.
        """
        status, sub_task = None, None
        for db in self._db():
            task = crud.get_task(db, task_id)
            if task is None:
                continue
            status = task.status
            if status in models.TERMINAL_TASK_STATUSES:
                continue

            pending = crud.get_next_pending_sub_task(db, task_id)
            if pending is None:
                crud.update_task_status(db, task_id, models.TaskStatus.COMPLETED)
                crud.add_task_log(db, "all sub-tasks complete", task_id=task_id)
                status = models.TaskStatus.COMPLETED
                logger.info(f"Task {task_id} completed")
                continue

            sub_task = (pending.id, pending.title, pending.description)
            crud.update_sub_task_status(db, pending.id, models.TaskStatus.IN_PROGRESS)
            crud.add_task_log(db, f"sub-task started: {sub_task[1]}", task_id=task_id, sub_task_id=sub_task[0])
        return status, sub_task

    async def _execute_sub_task(
        self, task_id: str, title: str, description: Optional[str]
    ) -> Tuple[str, List[models.CommandResult]]:
        session = None
        if self.sandbox is not None and self.config.use_sandbox:
            session = self._ensure_sandbox(task_id)

        prompt = f"Carry out the following sub-task:\nTitle: {title}\n"
        if description:
            prompt += f"Description: {description}\n"
        if session is not None:
            prompt += f"Working directory: {session.working_directory}\n"
        prompt += "\nExplain in detail how you will approach it and use the tools needed to complete it."

        reply = await self._chat(task_id, prompt)

        commands: List[models.CommandResult] = []
        if session is not None and self.config.execute_shell_blocks:
            commands = await self._run_shell_blocks(task_id, session.id, reply)
        return reply, commands

    async def _run_shell_blocks(self, task_id: str, session_id: str, reply: str) -> List[models.CommandResult]:
        """Run fenced shell blocks line by line; the first failing command fails the sub-task."""
        token = self._token(task_id)
        results = []
        for command in extract_shell_commands(reply):
            result = await self.sandbox.execute_command(
                session_id,
                command,
                models.ExecutionOptions(timeout=self.config.command_timeout_seconds),
                cancel_event=token,
            )
            results.append(result)
            if token.is_set():
                raise TaskCancelledError(f"Task {task_id} cancelled while running: {command}")
            if not result.success:
                detail = result.stderr.strip() or f"exit code {result.exit_code}"
                raise ExecutionError(f"Command failed: {command}: {detail}")
        return results

    async def _chat(self, task_id: str, prompt: str) -> str:
        """One model request, abandoned as soon as the task's cancellation token is set."""
        token = self._token(task_id)
        if token.is_set():
            raise TaskCancelledError(f"Task {task_id} cancelled")

        messages = [
            ChatMessage(role="system", content=SYSTEM_PROMPT),
            ChatMessage(role="user", content=prompt),
        ]
        request = asyncio.ensure_future(self.chat_client.chat(self.model, messages))
        cancelled = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({request, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for future in (request, cancelled):
                if not future.done():
                    future.cancel()

        if not request.done() or request.cancelled():
            with contextlib.suppress(asyncio.CancelledError):
                await request
            raise TaskCancelledError(f"Task {task_id} cancelled")
        return request.result().content

    async def _fail(
        self, task_id: str, error: Exception, sub_task_id: Optional[str] = None
    ) -> Optional[models.TaskStatus]:
        """Mark the sub-task and task FAILED (unless already terminal) and log the error."""
        status = None
        for db in self._db():
            if sub_task_id is not None:
                crud.update_sub_task_status(db, sub_task_id, models.TaskStatus.FAILED)
            crud.add_task_log(
                db,
                format_error(error),
                level=models.LogLevel.ERROR,
                task_id=task_id,
                sub_task_id=sub_task_id,
                details=models.ErrorDetails(error_type=type(error).__name__, error=str(error)),
            )
            crud.update_task_status(db, task_id, models.TaskStatus.FAILED)
            task = crud.get_task(db, task_id)
            status = task.status if task else None

        self._cancel_tokens.pop(task_id, None)
        await self._release_sandbox(task_id)
        return status

    # Sandbox coupling

    def _ensure_sandbox(self, task_id: str) -> models.SandboxSession:
        """The task's sandbox session, created on first use and remembered in the task metadata."""
        metadata = models.TaskMetadata()
        for db in self._db():
            task = crud.get_task(db, task_id)
            if task is not None:
                metadata = crud.read_task_metadata(task)

        if metadata.sandbox_session_id:
            session = self.sandbox.get_session(metadata.sandbox_session_id)
            if session is not None:
                return session

        session = self.sandbox.create_session(f"task-{task_id[:8]}")
        metadata.sandbox_session_id = session.id
        for db in self._db():
            crud.set_task_metadata(db, task_id, metadata)
        logger.info(f"Task {task_id} attached to sandbox session {session.id}")
        return session

    async def _release_sandbox(self, task_id: str) -> None:
        if self.sandbox is None:
            return
        session_id = None
        for db in self._db():
            task = crud.get_task(db, task_id)
            if task is not None:
                session_id = crud.read_task_metadata(task).sandbox_session_id
        if session_id:
            await asyncio.to_thread(self.sandbox.terminate_session, session_id)

    def _token(self, task_id: str) -> asyncio.Event:
        token = self._cancel_tokens.get(task_id)
        if token is None:
            token = asyncio.Event()
            self._cancel_tokens[task_id] = token
        return token

    # Cancellation

    async def cancel_task(self, task_id: str) -> bool:
        """
        Cancel a task and its unfinished sub-tasks in one transaction.
        Returns False when the task is missing or already terminal.
        """
        cancelled = False
        for db in self._db():
            cancelled = crud.cancel_task_cascade(db, task_id)
            if cancelled:
                crud.add_task_log(db, "task cancelled", task_id=task_id)
        if not cancelled:
            return False

        token = self._cancel_tokens.get(task_id)
        if token is not None:
            token.set()
        await self._release_sandbox(task_id)
        logger.info(f"Task {task_id} cancelled")
        return True

    # Queries

    def _to_read(self, task: models.TaskDB) -> models.TaskRead:
        return models.TaskRead(
            id=task.id,
            title=task.title,
            description=task.description,
            status=task.status,
            priority=task.priority,
            due_date=task.due_date,
            completed_at=task.completed_at,
            created_at=task.created_at,
            sandbox_session_id=crud.read_task_metadata(task).sandbox_session_id,
            sub_tasks=[
                models.SubTaskRead(
                    id=s.id,
                    title=s.title,
                    description=s.description,
                    status=s.status,
                    order=s.order,
                    completed_at=s.completed_at,
                )
                for s in sorted(task.sub_tasks, key=lambda s: s.order)
            ],
        )

    async def get_task_info(self, task_id: str) -> Optional[models.TaskRead]:
        task_read = None
        for db in self._db():
            task = crud.get_task(db, task_id)
            if task is not None:
                task_read = self._to_read(task)
        return task_read

    async def get_all_tasks(self, status: Optional[models.TaskStatus] = None) -> List[models.TaskRead]:
        tasks: List[models.TaskRead] = []
        for db in self._db():
            tasks = [self._to_read(task) for task in crud.get_all_tasks(db, status)]
        return tasks

    async def get_task_logs(self, task_id: str) -> List[models.TaskLogRead]:
        logs = []
        for db in self._db():
            for log in crud.get_task_logs(db, task_id):
                logs.append(
                    models.TaskLogRead(
                        id=log.id,
                        task_id=log.task_id,
                        sub_task_id=log.sub_task_id,
                        message=log.message,
                        level=log.level,
                        details=crud.read_log_details(log),
                        created_at=log.created_at,
                    )
                )
        return logs

    async def delete_task(self, task_id: str) -> bool:
        """Delete a finished task with its sub-tasks and logs."""
        deleted = False
        for db in self._db():
            deleted = crud.delete_task(db, task_id)
        if deleted:
            logger.info(f"Deleted task {task_id}")
        return deleted
