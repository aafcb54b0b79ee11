"""
CLI tests: commands run through Typer's CliRunner against a mocked HTTP transport.
"""

import json

import httpx
import pytest
from typer.testing import CliRunner

from taskpilot import __version__
from taskpilot.cli import main as cli

runner = CliRunner()

TASK = {
    "id": "t1",
    "title": "Book a flight",
    "description": "Cheapest to Lisbon",
    "status": "IN_PROGRESS",
    "priority": "MEDIUM",
    "due_date": None,
    "completed_at": None,
    "created_at": "2026-10-17T09:30:00",
    "sandbox_session_id": None,
    "sub_tasks": [
        {"id": "s1", "title": "Open the browser", "description": None, "status": "COMPLETED", "order": 0},
        {"id": "s2", "title": "Search flights", "description": None, "status": "IN_PROGRESS", "order": 1},
    ],
}


@pytest.fixture
def api(monkeypatch):
    """
    Route table for the mocked server: (METHOD, path) -> (status, body).
    Requests are recorded in api.requests.
    """

    class Api:
        routes = {}
        requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        Api.requests.append(request)
        route = Api.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"detail": "Not Found"})
        if isinstance(route, Exception):
            raise route
        status, body = route
        return httpx.Response(status, json=body)

    Api.routes = {}
    Api.requests = []
    monkeypatch.setattr(
        cli, "_client", lambda: httpx.Client(base_url="http://taskpilot.test", transport=httpx.MockTransport(handler))
    )
    return Api


class TestTasks:
    def test_run(self, api):
        api.routes[("POST", "/api/v1/tasks")] = (200, {**TASK, "status": "PENDING", "sub_tasks": []})

        result = runner.invoke(cli.app, ["run", "Book a flight", "-d", "Cheapest to Lisbon"])

        assert result.exit_code == 0
        assert "Task created with ID" in result.output
        assert "t1" in result.output
        assert json.loads(api.requests[0].content) == {"title": "Book a flight", "description": "Cheapest to Lisbon"}

    def test_status(self, api):
        api.routes[("GET", "/api/v1/tasks/t1")] = (200, TASK)

        result = runner.invoke(cli.app, ["status", "t1"])

        assert result.exit_code == 0
        assert "Open the browser" in result.output
        assert "Search flights" in result.output
        assert "Cheapest to Lisbon" in result.output

    def test_status_not_found(self, api):
        api.routes[("GET", "/api/v1/tasks/nope")] = (404, {"detail": "Task not found"})

        result = runner.invoke(cli.app, ["status", "nope"])

        assert result.exit_code == 1
        assert "Task not found" in result.output

    def test_list_empty(self, api):
        api.routes[("GET", "/api/v1/tasks")] = (200, [])

        result = runner.invoke(cli.app, ["list"])

        assert result.exit_code == 0
        assert "No tasks found" in result.output

    def test_list_with_status_filter(self, api):
        api.routes[("GET", "/api/v1/tasks")] = (200, [TASK])

        result = runner.invoke(cli.app, ["list", "--status", "in_progress"])

        assert result.exit_code == 0
        assert "t1" in result.output
        assert "1/2" in result.output
        assert api.requests[0].url.params["status"] == "IN_PROGRESS"

    def test_logs(self, api):
        api.routes[("GET", "/api/v1/tasks/t1/logs")] = (
            200,
            [
                {"id": "l2", "message": "boom", "level": "ERROR", "created_at": "2026-10-17T09:31:00"},
                {"id": "l1", "message": "plan created", "level": "INFO", "created_at": "2026-10-17T09:30:00"},
            ],
        )

        result = runner.invoke(cli.app, ["logs", "t1"])

        assert result.exit_code == 0
        assert "boom" in result.output
        assert "plan created" in result.output

    def test_cancel(self, api):
        api.routes[("POST", "/api/v1/tasks/t1/cancel")] = (200, {**TASK, "status": "CANCELLED"})

        result = runner.invoke(cli.app, ["cancel", "t1"])

        assert result.exit_code == 0
        assert "CANCELLED" in result.output

    def test_cancel_finished_task(self, api):
        api.routes[("POST", "/api/v1/tasks/t1/cancel")] = (400, {"detail": "Task already finished"})

        result = runner.invoke(cli.app, ["cancel", "t1"])

        assert result.exit_code == 1
        assert "Task already finished" in result.output


class TestSandbox:
    def test_sessions(self, api):
        api.routes[("GET", "/api/v1/sandbox/sessions")] = (
            200,
            [
                {
                    "id": "abc",
                    "name": "scratch",
                    "status": "active",
                    "is_isolated": True,
                    "working_directory": "/tmp/w",
                }
            ],
        )

        result = runner.invoke(cli.app, ["sessions"])

        assert result.exit_code == 0
        assert "scratch" in result.output

    def test_exec_success(self, api):
        api.routes[("POST", "/api/v1/sandbox/sessions/abc/execute")] = (
            200,
            {"success": True, "stdout": "42\n", "stderr": "", "exit_code": 0, "execution_time": 12.0},
        )

        result = runner.invoke(cli.app, ["exec", "abc", "python -c 'print(42)'", "--timeout", "5"])

        assert result.exit_code == 0
        assert "42" in result.output
        assert "exit 0" in result.output
        assert json.loads(api.requests[0].content) == {"command": "python -c 'print(42)'", "timeout": 5.0}

    def test_exec_failure_exits_non_zero(self, api):
        api.routes[("POST", "/api/v1/sandbox/sessions/abc/execute")] = (
            200,
            {"success": False, "stdout": "", "stderr": "Command not found: nope", "exit_code": -1, "execution_time": 1.0},
        )

        result = runner.invoke(cli.app, ["exec", "abc", "nope"])

        assert result.exit_code == 1
        assert "Command not found" in result.output

    def test_cleanup(self, api):
        api.routes[("POST", "/api/v1/sandbox/cleanup")] = (
            200,
            {"deleted_sessions": 2, "deleted_files": 5, "errors": ["Failed to clean up session x: busy"], "outcomes": []},
        )

        result = runner.invoke(cli.app, ["cleanup", "--days", "3"])

        assert result.exit_code == 0
        assert "Removed 2 sessions" in result.output
        assert "busy" in result.output
        assert api.requests[0].url.params["older_than_days"] == "3"


class TestClientErrors:
    def test_server_unreachable(self, api):
        api.routes[("GET", "/api/v1/tasks")] = httpx.ConnectError("connection refused")

        result = runner.invoke(cli.app, ["list"])

        assert result.exit_code == 1
        assert "Cannot reach the server" in result.output

    def test_version(self):
        result = runner.invoke(cli.app, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output
