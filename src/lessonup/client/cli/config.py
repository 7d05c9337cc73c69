"""Configuration utilities for the lessonup CLI.

This module provides shared configuration functions used across CLI commands.
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

from lessonup.core.config import ServerConfig, UploadSettings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_config_dir() -> Path:
    """Get the configuration directory for lessonup.

    Returns:
        Path to ~/.lessonup or equivalent.
    """
    return Path.home() / ".lessonup"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def get_state_db() -> Path:
    """Get the path to the upload state database."""
    return get_config_dir() / "uploads.db"


def get_log_file() -> Path:
    """Get the path to the log file."""
    return get_config_dir() / "lessonup.log"


def load_config() -> dict[str, str]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, str]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def build_server_config(config: dict[str, str]) -> ServerConfig:
    """Create the backend connection settings from the config file values."""
    return ServerConfig(api_url=config["api_url"], token=config["token"])


def build_upload_settings(config: dict[str, str]) -> UploadSettings:
    """Create the upload settings from the config file values."""
    return UploadSettings(default_resumable_endpoint=config.get("endpoint") or None)


def setup_logging(log_path: Path, verbose: bool = False) -> None:
    """Configure logging to output to both file and stdout.

    Existing handlers on the lessonup logger are replaced, so repeated
    calls do not duplicate output.

    Args:
        log_path: Path to the log file.
        verbose: Show INFO messages on stdout (warnings and errors only otherwise).
    """
    formatter = logging.Formatter(LOG_FORMAT)

    root_logger = logging.getLogger("lessonup")
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    # Stdout handler
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(logging.Formatter("%(message)s"))
    stdout_handler.setLevel(logging.INFO if verbose else logging.WARNING)
    root_logger.addHandler(stdout_handler)

    # File handler
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
