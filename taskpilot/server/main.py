"""
SOLE RESPONSIBILITY: The system's central hub. Builds the FastAPI app, wires the process engine,
sandbox manager, chat client and orchestrator together, and defines all API endpoints.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Coroutine, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from . import models
from .config import Config, get_config
from .database import create_db_and_tables, get_session
from .errors import DirectoryCreationError
from .llm_client import ChatClient, OllamaClient
from .orchestrator import TaskOrchestrator
from .process_engine import ProcessEngine
from .sandbox import SandboxManager, SessionFactory, to_session_read
from .server_logger import (
    initialize_logging,
    log_crash,
    log_lifecycle,
    log_request_response,
    log_task_event,
)

logger = logging.getLogger(__name__)


async def run_task_async(orchestrator: TaskOrchestrator, task_id: str):
    """
    Background planning and execution of one task.
    The orchestrator records failures itself; anything escaping it is a crash.
    """
    try:
        log_task_event(task_id, "execution_started")
        status = await orchestrator.plan_task(task_id)
        log_task_event(task_id, "execution_finished", {"status": status})
    except asyncio.CancelledError:
        log_task_event(task_id, "execution_interrupted")
        raise
    except Exception as e:
        logger.error(f"Task {task_id} crashed: {e}", exc_info=True)
        log_task_event(task_id, "execution_crashed", {"error": str(e), "type": type(e).__name__})
        log_crash(e, {"task_id": task_id, "phase": "task_execution"})


async def _periodic_sandbox_cleanup(sandbox: SandboxManager, interval: float, older_than_days: int):
    """Hourly (by default) removal of sandbox sessions past their retention."""
    while True:
        await asyncio.sleep(interval)
        try:
            result = await asyncio.to_thread(sandbox.cleanup_sandbox, older_than_days)
            if result.deleted_sessions:
                logger.info(f"Cleaned up {result.deleted_sessions} stale sandbox sessions")
        except Exception as e:
            logger.error(f"Sandbox cleanup failed: {e}")


def _spawn(app: FastAPI, coro: Coroutine) -> asyncio.Task:
    """Start a background task and keep a reference until it finishes."""
    task = asyncio.create_task(coro)
    app.state.background_tasks.add(task)
    task.add_done_callback(app.state.background_tasks.discard)
    return task


def create_app(
    session_factory: Optional[SessionFactory] = None,
    chat_client: Optional[ChatClient] = None,
    config: Optional[Config] = None,
    init_logging: bool = True,
) -> FastAPI:
    """
    Application factory. Without arguments the app uses the configured database,
    a local Ollama server, and the loaded configuration.
    """
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if init_logging:
            initialize_logging(level=config.server.log_level)

        async with log_lifecycle("taskpilot"):
            if session_factory is None:
                create_db_and_tables()
            factory = session_factory or get_session

            engine = ProcessEngine()
            sandbox = SandboxManager(engine, factory, config.sandbox)
            client = chat_client or OllamaClient(config.model)

            app.state.process_engine = engine
            app.state.sandbox = sandbox
            app.state.chat_client = client
            app.state.orchestrator = TaskOrchestrator(
                client,
                factory,
                sandbox=sandbox if config.task.use_sandbox else None,
                config=config.task,
                model=config.model.name,
            )
            app.state.background_tasks = set()

            cleanup = asyncio.create_task(
                _periodic_sandbox_cleanup(
                    sandbox, config.sandbox.cleanup_interval_seconds, config.sandbox.cleanup_days
                )
            )
            logger.info("Server startup complete - ready to accept requests")

            try:
                yield
            finally:
                logger.info("Beginning shutdown sequence...")
                cleanup.cancel()
                for task in list(app.state.background_tasks):
                    task.cancel()
                stopped = await asyncio.to_thread(engine.shutdown)
                logger.info(f"Server shutdown complete ({stopped} processes stopped)")

    app = FastAPI(
        title="TaskPilot Server",
        description="Autonomous task planning and sandboxed command execution",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        return await log_request_response(request, call_next)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_routes(app)
    return app


def get_orchestrator(request: Request) -> TaskOrchestrator:
    return request.app.state.orchestrator


def get_sandbox(request: Request) -> SandboxManager:
    return request.app.state.sandbox


def _register_routes(app: FastAPI):
    # Tasks

    @app.post("/api/v1/tasks", response_model=models.TaskRead)
    async def create_task(
        task_in: models.TaskCreate,
        request: Request,
        orchestrator: TaskOrchestrator = Depends(get_orchestrator),
    ):
        """Create a task and plan it in the background; returns immediately."""
        task = await orchestrator.new_task(
            task_in.title, task_in.description, task_in.priority, task_in.due_date
        )
        log_task_event(task.id, "task_created", {"title": task.title})
        _spawn(request.app, run_task_async(orchestrator, task.id))
        return task

    @app.get("/api/v1/tasks", response_model=List[models.TaskRead])
    async def list_tasks(
        status: Optional[models.TaskStatus] = None,
        orchestrator: TaskOrchestrator = Depends(get_orchestrator),
    ):
        return await orchestrator.get_all_tasks(status)

    @app.get("/api/v1/tasks/{task_id}", response_model=models.TaskRead)
    async def get_task(task_id: str, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
        task = await orchestrator.get_task_info(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return task

    @app.get("/api/v1/tasks/{task_id}/logs", response_model=List[models.TaskLogRead])
    async def get_task_logs(task_id: str, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
        if await orchestrator.get_task_info(task_id) is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return await orchestrator.get_task_logs(task_id)

    @app.post("/api/v1/tasks/{task_id}/cancel", response_model=models.TaskRead)
    async def cancel_task(task_id: str, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
        if not await orchestrator.cancel_task(task_id):
            if await orchestrator.get_task_info(task_id) is None:
                raise HTTPException(status_code=404, detail="Task not found")
            raise HTTPException(status_code=400, detail="Task already finished")
        log_task_event(task_id, "task_cancelled")
        return await orchestrator.get_task_info(task_id)

    @app.delete("/api/v1/tasks/{task_id}")
    async def delete_task(task_id: str, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
        """Delete a finished task; running and pending tasks are refused."""
        if await orchestrator.delete_task(task_id):
            return {"success": True, "message": f"Task {task_id} deleted"}
        if await orchestrator.get_task_info(task_id) is None:
            raise HTTPException(status_code=404, detail="Task not found")
        raise HTTPException(status_code=400, detail="Task is still running")

    # Sandbox

    @app.post("/api/v1/sandbox/sessions", response_model=models.SessionRead)
    def create_session(session_in: models.SessionCreate, sandbox: SandboxManager = Depends(get_sandbox)):
        try:
            session = sandbox.create_session(session_in.name, session_in.is_isolated)
        except DirectoryCreationError as e:
            raise HTTPException(status_code=500, detail=str(e))
        return to_session_read(session)

    @app.get("/api/v1/sandbox/sessions", response_model=List[models.SessionRead])
    def list_sessions(sandbox: SandboxManager = Depends(get_sandbox)):
        return [to_session_read(s) for s in sandbox.list_sessions()]

    @app.get("/api/v1/sandbox/sessions/{session_id}", response_model=models.SessionRead)
    def get_session_info(session_id: str, sandbox: SandboxManager = Depends(get_sandbox)):
        session = sandbox.get_session(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return to_session_read(session)

    @app.post("/api/v1/sandbox/sessions/{session_id}/execute", response_model=models.CommandResult)
    async def execute_command(
        session_id: str,
        command: models.CommandRequest,
        sandbox: SandboxManager = Depends(get_sandbox),
    ):
        """Run a command line to completion; failures are reported in the result body."""
        if sandbox.get_session(session_id) is None:
            raise HTTPException(status_code=404, detail="Session not found")
        options = models.ExecutionOptions(
            working_directory=command.working_directory,
            timeout=command.timeout,
            env=command.env,
            isolation_type=command.isolation_type,
        )
        return await sandbox.execute_command(session_id, command.command, options)

    @app.get("/api/v1/sandbox/sessions/{session_id}/history", response_model=List[models.CommandHistoryItem])
    def get_command_history(session_id: str, sandbox: SandboxManager = Depends(get_sandbox)):
        if sandbox.get_session(session_id) is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return sandbox.get_command_history(session_id)

    @app.post("/api/v1/sandbox/sessions/{session_id}/terminate")
    def terminate_session(session_id: str, sandbox: SandboxManager = Depends(get_sandbox)):
        if sandbox.get_session(session_id) is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return {"success": sandbox.terminate_session(session_id), "session_id": session_id}

    @app.post("/api/v1/sandbox/cleanup", response_model=models.CleanupResult)
    def cleanup_sandbox(older_than_days: Optional[int] = None, sandbox: SandboxManager = Depends(get_sandbox)):
        if older_than_days is not None and older_than_days < 0:
            raise HTTPException(status_code=400, detail="older_than_days must not be negative")
        return sandbox.cleanup_sandbox(older_than_days)

    @app.get("/health")
    def health_check():
        from taskpilot import __version__

        return {"status": "healthy", "service": "taskpilot", "version": __version__}


app = create_app()
