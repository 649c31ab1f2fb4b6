"""
Orchestrator configuration.

Defaults come from environment variables; an optional YAML file overrides
them. Logging setup lives here as well so every entry point configures
handlers the same way.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional, Dict, Any

import yaml

logger = logging.getLogger("config")

# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------
DATA_DIR = os.getenv("ORCHESTRATOR_DATA_DIR", "data")
CONFIG_FILE = os.getenv("ORCHESTRATOR_CONFIG_FILE", "")
LOG_LEVEL = os.getenv("ORCHESTRATOR_LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("ORCHESTRATOR_LOG_FILE", "")

CLAUDE_CLI_PATH = os.getenv("CLAUDE_CLI_PATH", "claude")
CLAUDE_MODEL = os.getenv("CLAUDE_MODEL", "")
CLAUDE_PERMISSION_MODE = os.getenv("CLAUDE_PERMISSION_MODE", "acceptEdits")
WORKER_NICE_VALUE = int(os.getenv("ORCHESTRATOR_NICE_VALUE", "10"))

# Runner timeouts in seconds, 0 disables
TIMEOUT_TRIVIAL = int(os.getenv("ORCHESTRATOR_TIMEOUT_TRIVIAL", "300"))
TIMEOUT_MODERATE = int(os.getenv("ORCHESTRATOR_TIMEOUT_MODERATE", "900"))
TIMEOUT_COMPLEX = int(os.getenv("ORCHESTRATOR_TIMEOUT_COMPLEX", "2700"))
PLAN_TIMEOUT_CAP = int(os.getenv("ORCHESTRATOR_PLAN_TIMEOUT_CAP", "600"))

IMPROVE_MAX_COST_USD = float(os.getenv("ORCHESTRATOR_IMPROVE_MAX_COST_USD", "10.0"))
IMPROVE_BATCH_SIZE = int(os.getenv("ORCHESTRATOR_IMPROVE_BATCH_SIZE", "5"))
IMPROVE_ITERATION_DELAY = float(os.getenv("ORCHESTRATOR_IMPROVE_ITERATION_DELAY", "5"))

PROGRESS_BUFFER_SIZE = int(os.getenv("ORCHESTRATOR_PROGRESS_BUFFER_SIZE", "100"))
PROGRESS_WEBHOOK_URL = os.getenv("ORCHESTRATOR_PROGRESS_WEBHOOK_URL", "")

SERVICE_NAME = os.getenv("ORCHESTRATOR_SERVICE_NAME", "")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CONSOLE_HANDLER_NAME = "orchestrator-console"
FILE_HANDLER_NAME = "orchestrator-file"


@dataclass
class OrchestratorConfig:
    """Resolved configuration passed to every component at construction."""
    data_dir: Path = field(default_factory=lambda: Path(DATA_DIR))
    log_level: str = LOG_LEVEL
    log_file: str = LOG_FILE

    claude_cli_path: str = CLAUDE_CLI_PATH
    claude_model: str = CLAUDE_MODEL
    permission_mode: str = CLAUDE_PERMISSION_MODE
    nice_value: int = WORKER_NICE_VALUE

    timeout_trivial: int = TIMEOUT_TRIVIAL
    timeout_moderate: int = TIMEOUT_MODERATE
    timeout_complex: int = TIMEOUT_COMPLEX
    plan_timeout_cap: int = PLAN_TIMEOUT_CAP

    improve_max_cost_usd: float = IMPROVE_MAX_COST_USD
    improve_batch_size: int = IMPROVE_BATCH_SIZE
    improve_iteration_delay: float = IMPROVE_ITERATION_DELAY

    progress_buffer_size: int = PROGRESS_BUFFER_SIZE
    progress_webhook_url: str = PROGRESS_WEBHOOK_URL

    # Name of the service hosting the orchestrator, used to spot restart requests
    service_name: str = SERVICE_NAME

    def execution_timeout(self, complexity: str) -> int:
        """Runner timeout for the read-write phase of a task."""
        return {
            "trivial": self.timeout_trivial,
            "moderate": self.timeout_moderate,
            "complex": self.timeout_complex,
        }.get(complexity, self.timeout_moderate)

    def planning_timeout(self, complexity: str) -> int:
        """Read-only planning gets half the execution timeout, capped."""
        timeout = self.execution_timeout(complexity)
        if timeout <= 0:
            return 0
        half = timeout // 2
        if self.plan_timeout_cap <= 0:
            return half
        return min(half, self.plan_timeout_cap)

    def to_dict(self) -> Dict[str, Any]:
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            result[f.name] = str(value) if isinstance(value, Path) else value
        return result


def load_config(path: Optional[Path] = None) -> OrchestratorConfig:
    """
    Build the configuration from environment defaults and an optional YAML file.

    Args:
        path: YAML file to overlay. Falls back to ORCHESTRATOR_CONFIG_FILE.

    Returns:
        OrchestratorConfig

    Raises:
        ValueError: If the file is not a mapping or names unknown settings
    """
    config = OrchestratorConfig()
    if path is None and CONFIG_FILE:
        path = Path(CONFIG_FILE)
    if path is None:
        return config

    path = Path(path)
    if not path.exists():
        logger.warning(f"Config file {path} not found, using environment defaults")
        return config

    with open(path) as f:
        overrides = yaml.safe_load(f) or {}

    if not isinstance(overrides, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    known = {f.name for f in fields(OrchestratorConfig)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ValueError(f"Unknown config keys in {path}: {', '.join(unknown)}")

    for key, value in overrides.items():
        if key == "data_dir":
            value = Path(value)
        setattr(config, key, value)

    logger.info(f"Loaded config overrides from {path}: {sorted(overrides)}")
    return config


def configure_logging(config: OrchestratorConfig) -> logging.Logger:
    """
    Install console and optional file handlers on the root logger.

    Safe to call again: handlers installed by an earlier call are replaced,
    not duplicated.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(config.log_level).upper(), logging.INFO))

    for handler in list(root.handlers):
        if handler.get_name() in (CONSOLE_HANDLER_NAME, FILE_HANDLER_NAME):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    if config.log_file:
        try:
            Path(config.log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(config.log_file)
            file_handler.set_name(FILE_HANDLER_NAME)
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
        except (PermissionError, OSError) as e:
            logger.warning(f"Cannot write log file {config.log_file}: {e}")

    console_handler = logging.StreamHandler()
    console_handler.set_name(CONSOLE_HANDLER_NAME)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    return root
