"""
SOLE RESPONSIBILITY: Sandbox sessions: isolated working directories, command execution
through the process engine, persisted command history, and retention cleanup.
"""

import asyncio
import logging
import shutil
import threading
import time
from datetime import timedelta
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from . import crud
from .config import SandboxConfig, get_config
from .database import get_session
from .errors import (
    AlreadyTerminalError,
    DirectoryCreationError,
    LaunchError,
    ProcessNotFoundError,
    SessionNotFoundError,
    TaskPilotError,
)
from .models import (
    CleanupOutcome,
    CleanupResult,
    CommandHistoryEntry,
    CommandHistoryItem,
    CommandOutputEntry,
    CommandResult,
    ExecutionOptions,
    IsolationType,
    ProcessInfo,
    ProcessOptions,
    ProcessRead,
    ProcessStatus,
    SandboxSession,
    SandboxSessionDB,
    SessionMetadata,
    SessionRead,
    new_id,
    utc_now,
)
from .process_engine import ProcessEngine

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Iterator[Session]]

DETACHED_STDOUT = "Process started in background mode"


def parse_command_line(command_line: str) -> List[str]:
    """
    Split a command line into tokens.
    Whitespace separates tokens outside double quotes, a backslash escapes the
    next character, and the quotes themselves are dropped.
    """
    tokens: List[str] = []
    current: List[str] = []
    in_quotes = False
    escaped = False

    for char in command_line:
        if escaped:
            current.append(char)
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == '"':
            in_quotes = not in_quotes
        elif char.isspace() and not in_quotes:
            if current:
                tokens.append("".join(current))
                current = []
        else:
            current.append(char)

    if current:
        tokens.append("".join(current))
    return tokens


def to_session_read(session: SandboxSession) -> SessionRead:
    return SessionRead(
        id=session.id,
        name=session.name,
        working_directory=session.working_directory,
        temp_directory=session.temp_directory,
        is_isolated=session.is_isolated,
        status=session.status,
        created_at=session.created_at,
        processes=[
            ProcessRead(
                process_id=p.process_id,
                pid=p.pid,
                command=p.command,
                args=p.args,
                status=p.status,
                start_time=p.start_time,
                end_time=p.end_time,
                exit_code=p.exit_code,
            )
            for p in session.processes
        ],
    )


class SessionRegistry:
    """Cache of live sessions plus one asyncio.Lock per session serializing history writes."""

    def __init__(self):
        self._sessions: Dict[str, SandboxSession] = {}
        self._write_locks: Dict[str, asyncio.Lock] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str) -> Optional[SandboxSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def put(self, session: SandboxSession) -> None:
        with self._lock:
            self._sessions[session.id] = session

    def pop(self, session_id: str) -> Optional[SandboxSession]:
        with self._lock:
            self._write_locks.pop(session_id, None)
            return self._sessions.pop(session_id, None)

    def write_lock(self, session_id: str) -> asyncio.Lock:
        with self._lock:
            lock = self._write_locks.get(session_id)
            if lock is None:
                lock = asyncio.Lock()
                self._write_locks[session_id] = lock
            return lock

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class SandboxManager:
    """
    Owns sandbox sessions for one application instance.

    Sessions are persisted through the session factory and cached in a SessionRegistry;
    commands run through the injected ProcessEngine.
    """

    def __init__(
        self,
        engine: ProcessEngine,
        session_factory: SessionFactory = get_session,
        config: Optional[SandboxConfig] = None,
    ):
        self._engine = engine
        self._db = session_factory
        self._config = config or get_config().sandbox
        self._registry = SessionRegistry()

    @property
    def base_dir(self) -> Path:
        return Path(self._config.base_dir)

    def _default_paths(self, session_id: str) -> Tuple[str, str]:
        working = self.base_dir / f"session-{session_id[:8]}"
        return str(working), str(working / "temp")

    def _metadata_for(self, record: SandboxSessionDB) -> SessionMetadata:
        """Stored metadata, or the default layout when it is missing or unreadable."""
        try:
            metadata = crud.read_session_metadata(record)
        except ValueError as e:
            logger.warning(f"Unreadable metadata for sandbox session {record.id}: {e}")
            metadata = None
        if metadata is None:
            working, temp = self._default_paths(record.id)
            metadata = SessionMetadata(working_directory=working, temp_directory=temp)
        return metadata

    def _from_record(self, record: SandboxSessionDB) -> SandboxSession:
        metadata = self._metadata_for(record)
        return SandboxSession(
            id=record.id,
            name=record.name,
            working_directory=metadata.working_directory,
            temp_directory=metadata.temp_directory,
            created_at=record.created_at,
            is_isolated=metadata.is_isolated,
            status="active" if record.is_active else "inactive",
        )

    def create_session(self, name: str = "New Session", is_isolated: bool = True) -> SandboxSession:
        """
        Persist a session record, then create its working and temp directories.
        The record is removed again when the directories cannot be created.
        """
        session_id = new_id()
        working_dir = self.base_dir / f"session-{session_id[:8]}-{int(time.time())}"
        temp_dir = working_dir / "temp"
        metadata = SessionMetadata(
            working_directory=str(working_dir),
            temp_directory=str(temp_dir),
            is_isolated=is_isolated,
        )

        created_at = utc_now()
        for db in self._db():
            record = crud.create_sandbox_session(db, session_id, name, metadata)
            created_at = record.created_at

        try:
            temp_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Failed to create sandbox directories {working_dir}: {e}")
            for db in self._db():
                crud.delete_sandbox_session(db, session_id)
            raise DirectoryCreationError(f"Failed to create session directories: {e}", cause=e) from e

        session = SandboxSession(
            id=session_id,
            name=name,
            working_directory=str(working_dir),
            temp_directory=str(temp_dir),
            created_at=created_at,
            is_isolated=is_isolated,
        )
        self._registry.put(session)
        logger.info(f"Created sandbox session {session_id} at {working_dir}")
        return session

    def get_session(self, session_id: str) -> Optional[SandboxSession]:
        """Cached session with refreshed process states, else rehydrated from the store."""
        session = self._registry.get(session_id)
        if session is not None:
            refreshed = []
            for info in session.processes:
                try:
                    refreshed.append(self._engine.poll(info.process_id))
                except ProcessNotFoundError:
                    refreshed.append(info)
            session.processes = refreshed
            return session

        session = None
        for db in self._db():
            record = crud.get_sandbox_session(db, session_id)
            if record is not None:
                session = self._from_record(record)
        if session is None:
            return None

        self._registry.put(session)
        logger.debug(f"Rehydrated sandbox session {session_id}")
        return session

    def list_sessions(self) -> List[SandboxSession]:
        """Every persisted session, newest first; cached ones carry their processes."""
        sessions = []
        for db in self._db():
            for record in crud.get_all_sandbox_sessions(db):
                cached = self._registry.get(record.id)
                sessions.append(cached if cached is not None else self._from_record(record))
        return sessions

    def _track(self, session: SandboxSession, info: ProcessInfo) -> None:
        for index, existing in enumerate(session.processes):
            if existing.process_id == info.process_id:
                session.processes[index] = info
                return
        session.processes.append(info)

    async def _wait_for_exit(
        self, process_id: str, cancel_event: Optional[asyncio.Event]
    ) -> Tuple[ProcessInfo, bool]:
        """Poll until terminal. Returns the final snapshot and whether it was cancelled."""
        while True:
            info = self._engine.poll(process_id)
            if info.is_terminal:
                return info, False
            if cancel_event is not None and cancel_event.is_set():
                try:
                    info = await asyncio.to_thread(self._engine.stop, process_id, True)
                except AlreadyTerminalError:
                    continue
                return info, True
            await asyncio.sleep(self._config.poll_interval)

    async def execute_command(
        self,
        session_id: str,
        command_line: str,
        options: Optional[ExecutionOptions] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> CommandResult:
        """
        Run one command line inside a session and record it in the session history.
        Never raises: every failure is reported as a CommandResult with success False.
        """
        options = options or ExecutionOptions()
        timestamp = utc_now()
        started = time.monotonic()
        session = None

        try:
            session = self.get_session(session_id)
            if session is None:
                raise SessionNotFoundError(f"Session {session_id} not found")

            tokens = parse_command_line(command_line)
            if not tokens:
                raise LaunchError("Empty command")

            env = dict(options.env or {})
            env["TEMP"] = session.temp_directory
            env["TMP"] = session.temp_directory
            detached = options.isolation_type == IsolationType.FULL and session.is_isolated

            info = self._engine.start(
                tokens[0],
                tokens[1:],
                ProcessOptions(
                    working_dir=options.working_directory or session.working_directory,
                    env=env,
                    timeout=options.timeout,
                    detached=detached,
                ),
            )
            self._track(session, info)

            if detached:
                result = CommandResult(
                    success=True,
                    command=command_line,
                    stdout=DETACHED_STDOUT,
                    exit_code=0,
                    process_id=info.process_id,
                    execution_time=(time.monotonic() - started) * 1000,
                    timestamp=timestamp,
                )
            else:
                info, cancelled = await self._wait_for_exit(info.process_id, cancel_event)
                self._track(session, info)
                # The session keeps the final snapshot; the engine table only holds live work.
                self._engine.forget(info.process_id)
                exit_code = info.exit_code if info.exit_code is not None else -1
                stderr = info.stderr
                note = None
                if cancelled:
                    note = "Command cancelled"
                elif info.status == ProcessStatus.TIMEOUT:
                    note = f"Command timed out after {options.timeout}s"
                if note:
                    stderr = f"{stderr.rstrip()}\n{note}" if stderr else note
                result = CommandResult(
                    success=info.status == ProcessStatus.COMPLETED and exit_code == 0,
                    command=command_line,
                    stdout=info.stdout,
                    stderr=stderr,
                    exit_code=exit_code,
                    process_id=info.process_id,
                    execution_time=(time.monotonic() - started) * 1000,
                    timestamp=timestamp,
                )
        except Exception as e:
            logger.error(f"Command failed in session {session_id}: {command_line!r}: {e}")
            result = CommandResult(
                success=False,
                command=command_line,
                stderr=str(e) or type(e).__name__,
                exit_code=-1,
                execution_time=(time.monotonic() - started) * 1000,
                timestamp=timestamp,
            )

        if session is not None:
            await self._record(session_id, result)
        return result

    async def _record(self, session_id: str, result: CommandResult) -> None:
        """Append the command and its output to the persisted history."""
        async with self._registry.write_lock(session_id):
            try:
                for db in self._db():
                    crud.append_command_history(
                        db,
                        session_id,
                        CommandHistoryEntry(
                            command=result.command,
                            timestamp=result.timestamp,
                            success=result.success,
                        ),
                        CommandOutputEntry(
                            stdout=result.stdout,
                            stderr=result.stderr,
                            exit_code=result.exit_code,
                            execution_time=result.execution_time,
                            process_id=result.process_id,
                        ),
                    )
            except SQLAlchemyError as e:
                logger.error(f"Failed to record command history for session {session_id}: {e}")

    def get_command_history(self, session_id: str) -> List[CommandHistoryItem]:
        history: List[CommandHistoryItem] = []
        for db in self._db():
            history = crud.get_command_history(db, session_id)
        return history

    def _stop_processes(self, session: SandboxSession) -> int:
        stopped = 0
        for info in session.processes:
            if self._engine.is_terminal(info.status):
                continue
            try:
                self._engine.stop(info.process_id, force=True)
                stopped += 1
            except (ProcessNotFoundError, AlreadyTerminalError):
                continue
        return stopped

    def terminate_session(self, session_id: str) -> bool:
        """Stop live processes, evict from the cache and mark the record inactive."""
        session = self._registry.get(session_id)
        if session is None:
            return False

        stopped = self._stop_processes(session)
        for info in session.processes:
            self._engine.forget(info.process_id)
        self._registry.pop(session_id)
        session.status = "inactive"
        for db in self._db():
            crud.mark_sandbox_session_inactive(db, session_id)

        logger.info(f"Terminated sandbox session {session_id} ({stopped} processes stopped)")
        return True

    def rename_session(self, session_id: str, name: str) -> bool:
        record = None
        for db in self._db():
            record = crud.rename_sandbox_session(db, session_id, name)
        if record is None:
            return False
        session = self._registry.get(session_id)
        if session is not None:
            session.name = name
        return True

    def _remove_tree(self, working_directory: str) -> int:
        """Delete a session's working tree; returns the number of files removed."""
        path = Path(working_directory)
        if not path.exists():
            return 0
        files = sum(1 for p in path.rglob("*") if p.is_file())
        shutil.rmtree(path)
        return files

    def delete_session(self, session_id: str) -> bool:
        """Terminate if live, remove the working tree, and delete the record."""
        record_metadata = None
        for db in self._db():
            record = crud.get_sandbox_session(db, session_id)
            if record is not None:
                record_metadata = self._metadata_for(record)
        if record_metadata is None:
            return False

        if session_id in self._registry:
            self.terminate_session(session_id)
        self._remove_tree(record_metadata.working_directory)
        for db in self._db():
            crud.delete_sandbox_session(db, session_id)
        logger.info(f"Deleted sandbox session {session_id}")
        return True

    def cleanup_sandbox(self, older_than_days: Optional[int] = None) -> CleanupResult:
        """
        Remove sessions untouched for longer than older_than_days.
        Per-session failures are collected in the result and never abort the sweep.
        """
        if older_than_days is None:
            older_than_days = self._config.cleanup_days
        cutoff = utc_now() - timedelta(days=older_than_days)

        # (session id, working directory, metadata parse error)
        stale: List[Tuple[str, Optional[str], Optional[str]]] = []
        for db in self._db():
            for record in crud.get_stale_sandbox_sessions(db, cutoff):
                try:
                    metadata = crud.read_session_metadata(record)
                except ValueError as e:
                    stale.append((record.id, None, str(e)))
                    continue
                if metadata is None:
                    working_directory = self._default_paths(record.id)[0]
                else:
                    working_directory = metadata.working_directory
                stale.append((record.id, working_directory, None))

        result = CleanupResult()
        for session_id, working_directory, parse_error in stale:
            if parse_error is not None:
                # Directory unknown: nothing is removed and the record stays.
                if session_id in self._registry:
                    self.terminate_session(session_id)
                reason = f"metadata parse error: {parse_error}"
                message = f"Failed to clean up session {session_id}: {reason}"
                logger.error(message)
                result.errors.append(message)
                result.outcomes.append(CleanupOutcome(session_id=session_id, success=False, reason=reason))
                continue

            try:
                if session_id in self._registry:
                    self.terminate_session(session_id)
                files = self._remove_tree(working_directory)
                for db in self._db():
                    crud.delete_sandbox_session(db, session_id)
            except (OSError, SQLAlchemyError, TaskPilotError) as e:
                message = f"Failed to clean up session {session_id}: {e}"
                logger.error(message)
                result.errors.append(message)
                result.outcomes.append(CleanupOutcome(session_id=session_id, success=False, reason=str(e)))
                continue

            result.deleted_sessions += 1
            result.deleted_files += files
            result.outcomes.append(CleanupOutcome(session_id=session_id, success=True, files_deleted=files))

        if stale:
            logger.info(
                f"Sandbox cleanup: {result.deleted_sessions} sessions, "
                f"{result.deleted_files} files removed, {len(result.errors)} errors"
            )
        return result

