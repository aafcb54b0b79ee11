"""
SOLE RESPONSIBILITY: Client-side configuration: discovers the server URL
from the environment or the CLI's config file.
"""

import os
import json
from pathlib import Path
import typer

DEFAULT_SERVER_URL = "http://localhost:8000"


def get_config_file() -> Path:
    return Path(typer.get_app_dir("taskpilot")) / "config.json"


def get_server_url() -> str:
    """
    Priority: TASKPILOT_SERVER_URL > config file "server_url" > default localhost.
    """
    env_url = os.environ.get("TASKPILOT_SERVER_URL")
    if env_url:
        return env_url.rstrip("/")

    config_file = get_config_file()
    if config_file.exists():
        try:
            with open(config_file, "r") as f:
                config = json.load(f)
            if config.get("server_url"):
                return config["server_url"].rstrip("/")
        except (json.JSONDecodeError, OSError):
            pass  # unreadable file means default

    return DEFAULT_SERVER_URL
