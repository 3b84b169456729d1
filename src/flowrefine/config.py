"""Configuration management for flowrefine."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import yaml
from dotenv import load_dotenv

from .conversation import DEFAULT_MAX_ITERATIONS
from .prompt_builder import DEFAULT_HISTORY_WINDOW
from .supervisor import DEFAULT_AGENT_COMMAND, DEFAULT_KILL_GRACE_PERIOD

# One timeout for first attempts, retries, CLI and HTTP alike
DEFAULT_TIMEOUT = 90.0

_TRUE_VALUES = ("true", "1", "yes")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in _TRUE_VALUES


@dataclass
class RefinerConfig:
    """Runtime settings for the refinement engine."""

    # Agent process
    agent_command: List[str] = field(default_factory=lambda: list(DEFAULT_AGENT_COMMAND))
    timeout: float = DEFAULT_TIMEOUT
    kill_grace_period: float = DEFAULT_KILL_GRACE_PERIOD
    working_directory: Path = field(default_factory=Path.cwd)

    # Conversation
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    history_window: int = DEFAULT_HISTORY_WINDOW

    # Collaborators
    use_skills: bool = True
    schema_path: Optional[Path] = None

    # Runtime Settings
    config_dir: Path = field(default_factory=lambda: Path.cwd() / "config")
    log_level: str = "WARNING"
    log_dir: Optional[Path] = None
    mock_mode: bool = False

    @classmethod
    def from_dict(cls, data: dict, base: Optional[RefinerConfig] = None) -> RefinerConfig:
        """Create a config from the ``refinement`` section of a YAML file."""
        cfg = base or cls()
        section = data.get("refinement", {}) or {}

        command = section.get("agent_command", cfg.agent_command)
        if isinstance(command, str):
            command = shlex.split(command)

        schema_path = section.get("schema_path")
        log_dir = section.get("log_dir")
        return cls(
            agent_command=list(command),
            timeout=float(section.get("timeout", cfg.timeout)),
            kill_grace_period=float(section.get("kill_grace_period", cfg.kill_grace_period)),
            working_directory=cfg.working_directory,
            max_iterations=int(section.get("max_iterations", cfg.max_iterations)),
            history_window=int(section.get("history_window", cfg.history_window)),
            use_skills=bool(section.get("use_skills", cfg.use_skills)),
            schema_path=Path(schema_path) if schema_path else cfg.schema_path,
            config_dir=cfg.config_dir,
            log_level=str(section.get("log_level", cfg.log_level)),
            log_dir=Path(log_dir) if log_dir else cfg.log_dir,
            mock_mode=bool(section.get("mock_mode", cfg.mock_mode)),
        )

    @classmethod
    def load_from_file(cls, config_dir: Path, base: Optional[RefinerConfig] = None) -> RefinerConfig:
        """Load settings from ``refiner.yaml``; defaults if the file is absent."""
        config_path = config_dir / "refiner.yaml"
        if config_path.exists():
            with open(config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            return cls.from_dict(data, base=base)
        return base or cls()

    @classmethod
    def from_env(cls, project_path: Optional[Path] = None) -> RefinerConfig:
        """Load configuration from the config file and environment variables.

        Args:
            project_path: Project root; the agent runs here. Defaults to CWD.

        Returns:
            RefinerConfig with file values overridden by the environment.
        """
        load_dotenv()

        project = Path(project_path) if project_path else Path.cwd()
        config_dir = project / "config"
        cfg = cls.load_from_file(
            config_dir,
            base=cls(working_directory=project, config_dir=config_dir),
        )

        command = os.getenv("FLOWREFINE_AGENT_COMMAND")
        if command:
            cfg.agent_command = shlex.split(command)
        cfg.timeout = float(os.getenv("FLOWREFINE_TIMEOUT", str(cfg.timeout)))
        cfg.max_iterations = int(os.getenv("FLOWREFINE_MAX_ITERATIONS", str(cfg.max_iterations)))
        cfg.history_window = int(os.getenv("FLOWREFINE_HISTORY_WINDOW", str(cfg.history_window)))
        cfg.kill_grace_period = float(os.getenv("FLOWREFINE_KILL_GRACE", str(cfg.kill_grace_period)))
        cfg.use_skills = _env_flag("FLOWREFINE_USE_SKILLS", cfg.use_skills)
        cfg.mock_mode = _env_flag("FLOWREFINE_MOCK_MODE", cfg.mock_mode)
        cfg.log_level = os.getenv("FLOWREFINE_LOG_LEVEL", cfg.log_level)

        schema_path = os.getenv("FLOWREFINE_SCHEMA_PATH")
        if schema_path:
            cfg.schema_path = Path(schema_path)
        log_dir = os.getenv("FLOWREFINE_LOG_DIR")
        if log_dir:
            cfg.log_dir = Path(log_dir)
        return cfg

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors.

        Returns:
            List of validation error messages. Empty if valid.
        """
        errors = []

        if self.timeout <= 0:
            errors.append(f"Timeout must be positive, got {self.timeout}")

        if self.max_iterations < 1:
            errors.append(f"max_iterations must be at least 1, got {self.max_iterations}")

        if self.history_window < 0:
            errors.append(f"history_window must not be negative, got {self.history_window}")

        if self.kill_grace_period < 0:
            errors.append(f"kill_grace_period must not be negative, got {self.kill_grace_period}")

        if not self.agent_command:
            errors.append("Agent command must not be empty")

        if self.log_level.upper() not in LOG_LEVELS:
            errors.append(f"Unknown log level: {self.log_level}")

        if self.schema_path is not None and not self.schema_path.exists():
            errors.append(f"Schema file does not exist: {self.schema_path}")

        if not self.working_directory.exists():
            errors.append(f"Working directory does not exist: {self.working_directory}")

        return errors

    @property
    def config_file(self) -> Path:
        """Path to refiner.yaml."""
        return self.config_dir / "refiner.yaml"
