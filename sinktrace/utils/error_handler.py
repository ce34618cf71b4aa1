"""Command-level error handling for the sinktrace CLI."""

import traceback
from collections.abc import Callable
from datetime import datetime
from functools import wraps
from typing import Any

import click
import yaml

from sinktrace.taint.errors import TaintFidelityError
from sinktrace.utils.logging import get_request_id, logger

from .constants import ERROR_LOG_FILE, OUTPUT_DIR

# Bad IR / rule files: the user can fix these without a traceback
INPUT_ERRORS = (ValueError, KeyError, yaml.YAMLError)


def _append_error_log(command: str, exc: Exception) -> None:
    OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
    rule = "=" * 80
    with open(ERROR_LOG_FILE, "a", encoding="utf-8") as f:
        f.write(
            f"\n{rule}\n"
            f"[{datetime.now().isoformat()}] {command} failed (request {get_request_id()})\n"
            f"{rule}\n"
            f"{type(exc).__name__}: {exc}\n\n"
            f"{traceback.format_exc()}"
            f"{rule}\n\n"
        )


def _user_message(exc: Exception) -> str:
    if isinstance(exc, TaintFidelityError):
        errors = exc.details.get("errors", [])
        lines = [f"Fidelity check failed at stage '{exc.details.get('stage', '?')}'"]
        lines.extend(f"  - {err}" for err in errors)
        lines.append("Set SINKTRACE_FIDELITY_STRICT=0 to report instead of failing.")
        return "\n".join(lines)
    if isinstance(exc, INPUT_ERRORS):
        return f"Invalid input ({type(exc).__name__}): {exc}"
    return f"{type(exc).__name__}: {exc}"


def handle_exceptions(func: Callable[..., Any]) -> Callable[..., Any]:
    """Turn unexpected command failures into a ClickException.

    The full traceback goes to the logger and to ``.sinktrace/error.log``.
    Click's own exceptions (usage errors, aborts, explicit exits) pass through.
    """

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except (click.ClickException, click.exceptions.Exit, click.Abort):
            raise
        except Exception as e:
            logger.opt(exception=True).error(
                "Command '{cmd}' failed: {err}", cmd=func.__name__, err=str(e)
            )
            _append_error_log(func.__name__, e)
            raise click.ClickException(
                f"{_user_message(e)}\n\nFull traceback logged to: {ERROR_LOG_FILE}"
            ) from e

    return wrapper
