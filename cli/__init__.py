"""Command line front ends"""
from typing import Any, Dict, Optional

import typer

from config import Settings, load_settings
from core.errors import ConfigError
from utils.ui import console, print_error

# Filled by the app callback in main.py
state: Dict[str, Any] = {"config_file": None, "verbose": False}


def get_settings(require_credentials: bool = True) -> Settings:
    """Load settings or exit with a readable error."""
    try:
        return load_settings(state["config_file"], require_credentials=require_credentials)
    except ConfigError as e:
        print_error(str(e))
        raise typer.Exit(code=1)


def partial_settings() -> Optional[Settings]:
    """Settings without credentials, enough to report a failure. None if even those fail."""
    try:
        return load_settings(state["config_file"], require_credentials=False)
    except ConfigError:
        return None


def log_level() -> str:
    return "DEBUG" if state["verbose"] else "INFO"


__all__ = ["console", "state", "get_settings", "partial_settings", "log_level"]
