"""
Tests for sandbox sessions: directories, command execution, history and cleanup.
"""

import asyncio
import os
from datetime import timedelta
from pathlib import Path

import pytest

from taskpilot.server import crud
from taskpilot.server.config import SandboxConfig
from taskpilot.server.errors import DirectoryCreationError
from taskpilot.server.models import ExecutionOptions, IsolationType, SandboxSessionDB, utc_now
from taskpilot.server.sandbox import DETACHED_STDOUT, SandboxManager

from tests.fixtures import SampleDataGenerator

py = SampleDataGenerator.python_command


class TestSessions:
    def test_create_makes_directories(self, sandbox, sandbox_config):
        session = sandbox.create_session("demo")

        working = Path(session.working_directory)
        assert working.is_dir()
        assert Path(session.temp_directory) == working / "temp"
        assert Path(session.temp_directory).is_dir()
        assert working.parent == Path(sandbox_config.base_dir)
        assert working.name.startswith(f"session-{session.id[:8]}-")
        assert session.status == "active"

    def test_unknown_session(self, sandbox):
        assert sandbox.get_session("missing") is None

    def test_rehydrates_from_store(self, sandbox, process_engine, session_factory, sandbox_config):
        created = sandbox.create_session("persisted", is_isolated=False)

        fresh = SandboxManager(process_engine, session_factory, sandbox_config)
        session = fresh.get_session(created.id)

        assert session is not None
        assert session.name == "persisted"
        assert session.working_directory == created.working_directory
        assert session.is_isolated is False
        assert session.processes == []

    def test_unreadable_metadata_falls_back_to_default_layout(
        self, sandbox, process_engine, session_factory, sandbox_config, test_session
    ):
        created = sandbox.create_session()
        record = test_session.get(SandboxSessionDB, created.id)
        record.session_metadata = "{not json"
        test_session.add(record)
        test_session.commit()

        session = SandboxManager(process_engine, session_factory, sandbox_config).get_session(created.id)
        assert session.working_directory == str(Path(sandbox_config.base_dir) / f"session-{created.id[:8]}")
        assert session.temp_directory == str(Path(session.working_directory) / "temp")

    def test_directory_failure_removes_record(self, process_engine, session_factory, tmp_path, test_session):
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")
        manager = SandboxManager(process_engine, session_factory, SandboxConfig(base_dir=str(blocker)))

        with pytest.raises(DirectoryCreationError):
            manager.create_session()
        assert crud.get_all_sandbox_sessions(test_session) == []

    def test_list_rename_and_delete(self, sandbox):
        first = sandbox.create_session("first")
        second = sandbox.create_session("second")

        assert {s.id for s in sandbox.list_sessions()} == {first.id, second.id}

        assert sandbox.rename_session(first.id, "renamed") is True
        assert sandbox.get_session(first.id).name == "renamed"
        assert sandbox.rename_session("missing", "x") is False

        assert sandbox.delete_session(second.id) is True
        assert not Path(second.working_directory).exists()
        assert sandbox.get_session(second.id) is None
        assert sandbox.delete_session(second.id) is False


class TestExecuteCommand:
    async def test_success_is_recorded(self, sandbox):
        session = sandbox.create_session()

        result = await sandbox.execute_command(session.id, py("print(42)"))

        assert result.success is True
        assert result.exit_code == 0
        assert result.stdout.strip() == "42"
        assert result.process_id is not None
        assert result.execution_time >= 0

        history = sandbox.get_command_history(session.id)
        assert len(history) == 1
        assert history[0].success is True
        assert history[0].command == result.command
        assert history[0].result.stdout.strip() == "42"

    async def test_runs_in_session_directories(self, sandbox):
        session = sandbox.create_session()

        result = await sandbox.execute_command(
            session.id, py("import os; print(os.getcwd()); print(os.environ['TEMP']); print(os.environ['TMP'])")
        )

        cwd, temp, tmp = result.stdout.splitlines()
        assert os.path.realpath(cwd) == os.path.realpath(session.working_directory)
        assert temp == session.temp_directory
        assert tmp == session.temp_directory

    async def test_extra_env_and_working_directory(self, sandbox, tmp_path):
        session = sandbox.create_session()
        options = ExecutionOptions(working_directory=str(tmp_path), env={"GREETING": "hi"})

        result = await sandbox.execute_command(
            session.id, py("import os; print(os.getcwd()); print(os.environ['GREETING'])"), options
        )

        cwd, greeting = result.stdout.splitlines()
        assert os.path.realpath(cwd) == os.path.realpath(tmp_path)
        assert greeting == "hi"

    async def test_nonzero_exit_is_a_failure(self, sandbox):
        session = sandbox.create_session()

        result = await sandbox.execute_command(session.id, py("import sys; sys.exit(2)"))

        assert result.success is False
        assert result.exit_code == 2

    async def test_unknown_executable_never_raises(self, sandbox):
        session = sandbox.create_session()

        result = await sandbox.execute_command(session.id, "definitely-not-a-real-command-xyz --flag")

        assert result.success is False
        assert result.exit_code == -1
        assert result.stderr

        history = sandbox.get_command_history(session.id)
        assert len(history) == 1
        assert history[0].success is False
        assert history[0].result.exit_code == -1

    async def test_empty_command(self, sandbox):
        session = sandbox.create_session()

        result = await sandbox.execute_command(session.id, "   ")
        assert result.success is False
        assert result.exit_code == -1

    async def test_unknown_session_never_raises(self, sandbox):
        result = await sandbox.execute_command("missing", "echo hi")

        assert result.success is False
        assert result.exit_code == -1
        assert "not found" in result.stderr
        assert sandbox.get_command_history("missing") == []

    async def test_full_isolation_runs_in_background(self, sandbox):
        session = sandbox.create_session(is_isolated=True)

        result = await sandbox.execute_command(
            session.id, py("print(1)"), ExecutionOptions(isolation_type=IsolationType.FULL)
        )

        assert result.success is True
        assert result.exit_code == 0
        assert result.stdout == DETACHED_STDOUT
        assert result.process_id is not None

    async def test_full_isolation_ignored_for_shared_session(self, sandbox):
        session = sandbox.create_session(is_isolated=False)

        result = await sandbox.execute_command(
            session.id, py("print(1)"), ExecutionOptions(isolation_type=IsolationType.FULL)
        )
        assert result.stdout.strip() == "1"

    async def test_timeout(self, sandbox):
        session = sandbox.create_session()

        result = await sandbox.execute_command(
            session.id, py("import time; time.sleep(30)"), ExecutionOptions(timeout=0.5)
        )

        assert result.success is False
        assert "timed out" in result.stderr

    async def test_cancel_event_stops_the_command(self, sandbox):
        session = sandbox.create_session()
        cancel = asyncio.Event()

        pending = asyncio.create_task(
            sandbox.execute_command(session.id, py("import time; time.sleep(30)"), cancel_event=cancel)
        )
        await asyncio.sleep(0.3)
        cancel.set()
        result = await asyncio.wait_for(pending, timeout=15)

        assert result.success is False
        assert "cancelled" in result.stderr

    async def test_session_tracks_processes(self, sandbox):
        session = sandbox.create_session()
        result = await sandbox.execute_command(session.id, py("print(1)"))

        processes = sandbox.get_session(session.id).processes
        assert [p.process_id for p in processes] == [result.process_id]
        assert processes[0].is_terminal


class TestTerminate:
    async def test_terminate_stops_processes_and_marks_inactive(self, sandbox, process_engine, test_session):
        session = sandbox.create_session()
        result = await sandbox.execute_command(
            session.id, py("import time; time.sleep(30)"), ExecutionOptions(isolation_type=IsolationType.FULL)
        )

        assert sandbox.terminate_session(session.id) is True
        assert result.process_id not in [p.process_id for p in process_engine.list_processes()]
        assert session.status == "inactive"
        assert sandbox.terminate_session(session.id) is False

        record = crud.get_sandbox_session(test_session, session.id)
        test_session.refresh(record)
        assert record.is_active is False

    async def test_process_table_is_released(self, sandbox, process_engine):
        session = sandbox.create_session()
        for index in range(5):
            result = await sandbox.execute_command(session.id, py(f"print({index})"))
            assert result.success is True
        assert process_engine.list_processes() == []

        await sandbox.execute_command(
            session.id, py("import time; time.sleep(30)"), ExecutionOptions(isolation_type=IsolationType.FULL)
        )
        assert len(process_engine.list_processes()) == 1

        sandbox.terminate_session(session.id)
        assert process_engine.list_processes() == []

    def test_terminate_unknown(self, sandbox):
        assert sandbox.terminate_session("missing") is False


class TestCleanup:
    def test_removes_only_stale_sessions(self, sandbox, test_session):
        stale = sandbox.create_session("stale")
        fresh = sandbox.create_session("fresh")
        (Path(stale.working_directory) / "notes.txt").write_text("old")
        crud.touch_sandbox_session(test_session, stale.id, utc_now() - timedelta(days=30))

        result = sandbox.cleanup_sandbox(older_than_days=7)

        assert result.deleted_sessions == 1
        assert result.deleted_files == 1
        assert result.errors == []
        assert [o.session_id for o in result.outcomes] == [stale.id]
        assert not Path(stale.working_directory).exists()
        assert Path(fresh.working_directory).exists()
        assert sandbox.get_session(stale.id) is None
        assert sandbox.get_session(fresh.id) is not None

    def test_unreadable_metadata_is_reported_and_kept(self, sandbox, test_session):
        broken = sandbox.create_session("broken")
        healthy = sandbox.create_session("healthy")
        (Path(broken.working_directory) / "keep.txt").write_text("data")

        record = crud.get_sandbox_session(test_session, broken.id)
        record.session_metadata = "{not json"
        test_session.add(record)
        test_session.commit()
        for session in (broken, healthy):
            crud.touch_sandbox_session(test_session, session.id, utc_now() - timedelta(days=30))

        result = sandbox.cleanup_sandbox(older_than_days=7)

        assert result.deleted_sessions == 1
        assert len(result.errors) == 1
        assert "metadata parse error" in result.errors[0]
        failed = [o for o in result.outcomes if not o.success]
        assert [o.session_id for o in failed] == [broken.id]
        assert "metadata parse error" in failed[0].reason

        assert (Path(broken.working_directory) / "keep.txt").exists()
        assert not Path(healthy.working_directory).exists()
        test_session.expunge_all()
        assert crud.get_sandbox_session(test_session, broken.id) is not None
        assert crud.get_sandbox_session(test_session, healthy.id) is None

    def test_default_retention_from_config(self, sandbox, test_session):
        session = sandbox.create_session()
        crud.touch_sandbox_session(test_session, session.id, utc_now() - timedelta(days=3))

        assert sandbox.cleanup_sandbox().deleted_sessions == 0
        assert sandbox.cleanup_sandbox(older_than_days=1).deleted_sessions == 1

    def test_missing_directory_is_not_an_error(self, sandbox, test_session):
        session = sandbox.create_session()
        Path(session.temp_directory).rmdir()
        Path(session.working_directory).rmdir()
        crud.touch_sandbox_session(test_session, session.id, utc_now() - timedelta(days=30))

        result = sandbox.cleanup_sandbox()
        assert result.deleted_sessions == 1
        assert result.deleted_files == 0
        assert result.errors == []
