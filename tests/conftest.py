"""
Global pytest configuration and fixtures for TaskPilot testing.
"""

import sys
import time
from pathlib import Path

import pytest
from sqlmodel import Session

# Add the project root to sys.path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from taskpilot.server.config import Config, SandboxConfig, TaskConfig
from taskpilot.server.models import ProcessInfo
from taskpilot.server.orchestrator import TaskOrchestrator
from taskpilot.server.process_engine import ProcessEngine
from taskpilot.server.sandbox import SandboxManager

from tests.fixtures import TEST_MODEL, FakeChatClient, MockDatabase, TestDataManager


@pytest.fixture(scope="function")
def test_db():
    db = MockDatabase()
    yield db
    db.dispose()


@pytest.fixture(scope="function")
def test_session(test_db):
    with Session(test_db.engine) as session:
        yield session


@pytest.fixture(scope="function")
def session_factory(test_db):
    """Generator factory with the same contract as database.get_session."""
    return test_db.get_session


@pytest.fixture(scope="function")
def data(test_session):
    return TestDataManager(test_session)


@pytest.fixture(scope="function")
def sandbox_config(tmp_path):
    return SandboxConfig(base_dir=str(tmp_path / "sandbox"), poll_interval=0.01, cleanup_days=7)


@pytest.fixture(scope="function")
def process_engine():
    engine = ProcessEngine()
    yield engine
    engine.shutdown()


@pytest.fixture(scope="function")
def sandbox(process_engine, session_factory, sandbox_config):
    return SandboxManager(process_engine, session_factory, sandbox_config)


@pytest.fixture(scope="function")
def fake_chat():
    return FakeChatClient()


@pytest.fixture(scope="function")
def orchestrator(fake_chat, session_factory):
    """Orchestrator without a sandbox: sub-task replies are stored, never executed."""
    return TaskOrchestrator(
        fake_chat,
        session_factory,
        sandbox=None,
        config=TaskConfig(use_sandbox=False),
        model=TEST_MODEL,
    )


@pytest.fixture(scope="function")
def test_config(sandbox_config):
    config = Config()
    config.sandbox = sandbox_config
    config.model.name = TEST_MODEL
    return config


@pytest.fixture(scope="function")
def wait_terminal(process_engine):
    """Poll the engine until a process reaches a terminal state."""

    def wait(process_id: str, timeout: float = 10.0) -> ProcessInfo:
        engine = process_engine
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            info = engine.poll(process_id)
            if info.is_terminal:
                return info
            time.sleep(0.02)
        raise AssertionError(f"process {process_id} still {engine.poll(process_id).status} after {timeout}s")

    return wait
