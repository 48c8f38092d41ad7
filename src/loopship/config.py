"""Configuration management for LoopShip."""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from .agent_runner import AGENTS, AgentSpec
from .errors import ConfigurationError
from .loop import EngineSettings
from .progress_log import DEFAULT_FILENAME as PROGRESS_FILENAME
from .progress_log import DEFAULT_TAIL_LINES
from .run_logger import DEFAULT_LOG_DIR
from .task_store import DEFAULT_FILENAME as STORE_FILENAME

CONFIG_FILENAME = "loopship.yaml"

_TRUE_VALUES = ("true", "1", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.lower() in _TRUE_VALUES


@dataclass
class LoopConfig:
    """Configuration settings for one loop run."""

    # Paths
    repo_path: Path = field(default_factory=Path.cwd)
    prd_file: str = STORE_FILENAME
    progress_file: str = PROGRESS_FILENAME
    log_dir: Path = DEFAULT_LOG_DIR
    prompt_template: Optional[Path] = None  # Jinja2 file replacing the built-in prompt

    # Loop settings
    agent: str = "claude"
    max_iterations: int = 25
    max_retries: int = 3
    timeout_minutes: float = 10.0  # per attempt
    delay: float = 1.0  # seconds between iterations
    progress_tail_lines: int = DEFAULT_TAIL_LINES
    retry_blocked: bool = False

    # Runtime settings
    verbose: bool = False
    dry_run: bool = False
    webhook: Optional[str] = None

    # Observer server
    ui: bool = False
    ui_host: str = "127.0.0.1"
    ui_port: int = 3099
    wait_for_start: bool = False

    agents: Dict[str, AgentSpec] = field(default_factory=lambda: dict(AGENTS))

    @classmethod
    def from_dict(cls, data: dict, repo_path: Optional[Path] = None) -> LoopConfig:
        """Create LoopConfig from a parsed ``loopship.yaml`` mapping.

        Args:
            data: Parsed YAML mapping. Unknown keys are ignored.
            repo_path: Repository the loop runs in. Defaults to CWD.

        Raises:
            ConfigurationError: If a value has the wrong type.
        """
        if not isinstance(data, dict):
            raise ConfigurationError(f"{CONFIG_FILENAME} must contain a mapping")

        agents = dict(AGENTS)
        agents_data = data.get("agents") or {}
        if not isinstance(agents_data, dict):
            raise ConfigurationError("'agents' must be a mapping of selector to launch settings")
        for key, entry in agents_data.items():
            agents[str(key)] = AgentSpec.from_dict(str(key), entry)

        ui_data = data.get("ui") or {}
        if not isinstance(ui_data, dict):
            raise ConfigurationError("'ui' must be a mapping")

        try:
            return cls(
                repo_path=Path(repo_path) if repo_path else Path.cwd(),
                prd_file=data.get("prd_file", STORE_FILENAME),
                progress_file=data.get("progress_file", PROGRESS_FILENAME),
                log_dir=Path(data.get("log_dir", DEFAULT_LOG_DIR)),
                prompt_template=Path(data["prompt_template"]) if data.get("prompt_template") else None,
                agent=data.get("agent", "claude"),
                max_iterations=int(data.get("max_iterations", 25)),
                max_retries=int(data.get("max_retries", 3)),
                timeout_minutes=float(data.get("timeout", 10.0)),
                delay=float(data.get("delay", 1.0)),
                progress_tail_lines=int(data.get("progress_tail_lines", DEFAULT_TAIL_LINES)),
                retry_blocked=bool(data.get("retry_blocked", False)),
                verbose=bool(data.get("verbose", False)),
                webhook=data.get("webhook"),
                ui=bool(ui_data.get("enabled", False)),
                ui_host=ui_data.get("host", "127.0.0.1"),
                ui_port=int(ui_data.get("port", 3099)),
                wait_for_start=bool(ui_data.get("wait_for_start", False)),
                agents=agents,
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid value in {CONFIG_FILENAME}: {e}")

    @classmethod
    def load_from_file(cls, repo_path: Path) -> LoopConfig:
        """Load config from ``loopship.yaml`` in the repo; defaults if absent."""
        config_path = Path(repo_path) / CONFIG_FILENAME
        if not config_path.exists():
            return cls(repo_path=Path(repo_path))
        try:
            with open(config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Could not parse {config_path}: {e}")
        return cls.from_dict(data, repo_path=repo_path)

    @classmethod
    def from_env(cls, repo_path: Optional[Path] = None) -> LoopConfig:
        """Load configuration from the config file, then environment variables.

        Args:
            repo_path: Optional path to the repository. Defaults to CWD.

        Returns:
            LoopConfig with ``LOOPSHIP_*`` variables taking precedence.
        """
        load_dotenv()

        repo = Path(repo_path) if repo_path else Path.cwd()
        base = cls.load_from_file(repo)

        return dataclasses.replace(
            base,
            agent=os.getenv("LOOPSHIP_AGENT") or base.agent,
            max_iterations=_env_int("LOOPSHIP_MAX_ITERATIONS", base.max_iterations),
            max_retries=_env_int("LOOPSHIP_MAX_RETRIES", base.max_retries),
            timeout_minutes=_env_float("LOOPSHIP_TIMEOUT", base.timeout_minutes),
            delay=_env_float("LOOPSHIP_DELAY", base.delay),
            verbose=_env_bool("LOOPSHIP_VERBOSE", base.verbose),
            webhook=os.getenv("LOOPSHIP_WEBHOOK") or base.webhook,
            ui_host=os.getenv("LOOPSHIP_UI_HOST") or base.ui_host,
            ui_port=_env_int("LOOPSHIP_UI_PORT", base.ui_port),
        )

    def merge(self, **overrides: Any) -> LoopConfig:
        """Return a copy with every non-None override applied (CLI flags)."""
        known = {f.name for f in dataclasses.fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigurationError(f"Unknown config options: {', '.join(sorted(unknown))}")
        return dataclasses.replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors.

        Returns:
            List of validation error messages. Empty if valid.
        """
        errors = []

        if self.agent not in self.agents:
            available = ", ".join(sorted(self.agents))
            errors.append(f"Unknown agent: {self.agent}. Available: {available}")

        if self.max_iterations < 1:
            errors.append("max_iterations must be at least 1")

        if self.max_retries < 1:
            errors.append("max_retries must be at least 1")

        if self.timeout_minutes <= 0:
            errors.append("timeout must be greater than 0 minutes")

        if self.delay < 0:
            errors.append("delay cannot be negative")

        if not 0 < self.ui_port < 65536:
            errors.append(f"ui_port must be between 1 and 65535, got {self.ui_port}")

        if not self.repo_path.exists():
            errors.append(f"Repository path does not exist: {self.repo_path}")

        template = self.prompt_template_path
        if template is not None and not template.is_file():
            errors.append(f"Prompt template not found: {template}")

        return errors

    def ensure_valid(self) -> LoopConfig:
        """Raise ConfigurationError listing every problem, else return self."""
        errors = self.validate()
        if errors:
            raise ConfigurationError("; ".join(errors))
        return self

    @property
    def prd_path(self) -> Path:
        """Path to the task store file."""
        return self.repo_path / self.prd_file

    @property
    def progress_path(self) -> Path:
        """Path to the progress log."""
        return self.repo_path / self.progress_file

    @property
    def log_path(self) -> Path:
        """Directory for JSON run logs."""
        return self.log_dir if self.log_dir.is_absolute() else self.repo_path / self.log_dir

    @property
    def prompt_template_path(self) -> Optional[Path]:
        if self.prompt_template is None:
            return None
        path = Path(self.prompt_template)
        return path if path.is_absolute() else self.repo_path / path

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_minutes * 60

    def load_prompt_template(self) -> Optional[str]:
        """Read the custom prompt template, if one is configured."""
        path = self.prompt_template_path
        if path is None:
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Could not read prompt template {path}: {e}")

    def engine_settings(self) -> EngineSettings:
        """Settings handed to the IterationEngine."""
        return EngineSettings(
            agent=self.agent,
            max_iterations=self.max_iterations,
            max_retries=self.max_retries,
            timeout=self.timeout_seconds,
            delay=self.delay,
            progress_tail_lines=self.progress_tail_lines,
            reset_blocked=self.retry_blocked,
            cwd=self.repo_path,
            prompt_template=self.load_prompt_template(),
        )
