"""
SOLE RESPONSIBILITY: Server configuration management with defaults and validation.
Provides centralized configuration for the model, task execution, sandbox and server settings.
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field, asdict
from typing import Optional
import logging

logger = logging.getLogger(__name__)

APP_DIR = Path.home() / ".taskpilot"


@dataclass
class ModelConfig:
    """Chat model configuration."""
    host: str = "http://localhost:11434"
    name: str = "llama3:8b-instruct-q4_0"
    temperature: float = 0.7
    request_timeout: Optional[float] = None  # No client-side timeout by default


@dataclass
class TaskConfig:
    """Task execution configuration."""
    use_sandbox: bool = True
    execute_shell_blocks: bool = False
    command_timeout_seconds: float = 300


@dataclass
class SandboxConfig:
    """Sandbox session configuration."""
    base_dir: str = str(APP_DIR / "sandbox")
    poll_interval: float = 0.1  # 100 ms
    cleanup_days: int = 7
    cleanup_interval_seconds: int = 3600


@dataclass
class ServerConfig:
    """Server configuration."""
    port: int = 8000
    host: str = "127.0.0.1"
    log_level: str = "INFO"


@dataclass
class DatabaseConfig:
    """Database configuration."""
    url: Optional[str] = None
    echo: bool = False


@dataclass
class Config:
    """Complete configuration."""
    model: ModelConfig = field(default_factory=ModelConfig)
    task: TaskConfig = field(default_factory=TaskConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)

    @classmethod
    def load(cls) -> "Config":
        """
        Load configuration from multiple sources in priority order:
        1. Environment variables (highest)
        2. Local config file (project)
        3. User config file (~/.taskpilot/config.json)
        4. Default values (lowest)
        """
        config = cls()

        for path in (APP_DIR / "config.json", Path.cwd() / ".taskpilot.json"):
            if path.exists():
                try:
                    with open(path) as f:
                        config._merge_dict(json.load(f))
                    logger.info(f"Loaded config from {path}")
                except (OSError, json.JSONDecodeError) as e:
                    logger.warning(f"Error loading config {path}: {e}")

        config._load_env_vars()
        return config

    def _merge_dict(self, config_dict: dict):
        """Merge dictionary into config, ignoring unknown sections and keys."""
        for section_name in ("model", "task", "sandbox", "server", "database"):
            section = getattr(self, section_name)
            for key, value in config_dict.get(section_name, {}).items():
                if hasattr(section, key):
                    setattr(section, key, value)

    def _load_env_vars(self):
        """Load configuration from environment variables."""
        # Model config
        if val := os.environ.get("TASKPILOT_OLLAMA_HOST"):
            self.model.host = val
        if val := os.environ.get("TASKPILOT_MODEL"):
            self.model.name = val

        # Task config
        if val := os.environ.get("TASKPILOT_EXECUTE_SHELL_BLOCKS"):
            self.task.execute_shell_blocks = val.lower() == "true"
        if val := os.environ.get("TASKPILOT_COMMAND_TIMEOUT"):
            self.task.command_timeout_seconds = float(val)

        # Sandbox config
        if val := os.environ.get("TASKPILOT_SANDBOX_DIR"):
            self.sandbox.base_dir = val

        # Server config
        if val := os.environ.get("SERVER_PORT"):
            self.server.port = int(val)
        if val := os.environ.get("SERVER_HOST"):
            self.server.host = val
        if val := os.environ.get("LOG_LEVEL"):
            self.server.log_level = val

        # Database config
        if val := os.environ.get("DATABASE_URL"):
            self.database.url = val

    def save(self, path: Optional[Path] = None):
        """Save configuration to file."""
        if path is None:
            path = APP_DIR / "config.json"

        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(asdict(self), f, indent=2)

        logger.info(f"Saved config to {path}")


# Global singleton
_config: Optional[Config] = None


def get_config() -> Config:
    """Get global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def reload_config():
    """Reload configuration from sources."""
    global _config
    _config = Config.load()
    logger.info("Configuration reloaded")
