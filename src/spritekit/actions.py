"""GitHub Actions plumbing: inputs, outputs, state, masking and log rendering.

This is the only module that knows about the Actions runner.  It speaks the
two runner protocols:

- *workflow commands* printed to stdout (``::add-mask::``, ``::group::``,
  ``::warning::`` …), and
- *file commands*, appended to the files named by ``GITHUB_OUTPUT``,
  ``GITHUB_STATE`` and ``GITHUB_ENV``.

Core modules never import this one except for the default secret masker.
"""

from __future__ import annotations

import logging
import os
import sys
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import TextIO

logger = logging.getLogger(__name__)

REDACTED = "***"


# ── Escaping ─────────────────────────────────────────────────────────────────


def _escape_data(value: str) -> str:
    return value.replace("%", "%25").replace("\r", "%0D").replace("\n", "%0A")


def _escape_property(value: str) -> str:
    return _escape_data(value).replace(":", "%3A").replace(",", "%2C")


def format_command(command: str, message: str = "", **properties: str) -> str:
    """Render a workflow command, e.g. ``::warning file=a.py::message``."""
    props = ",".join(
        f"{key}={_escape_property(str(value))}"
        for key, value in properties.items()
        if value is not None
    )
    head = f"{command} {props}" if props else command
    return f"::{head}::{_escape_data(message)}"


# ── Secret redaction ─────────────────────────────────────────────────────────


class SecretRedactingFilter(logging.Filter):
    """Replace registered secrets with ``***`` in every log record.

    The runner masks ``::add-mask::`` values in the job log, but only for
    output that reaches stdout after the mask was registered.  This filter
    covers local runs and anything logged before registration completes.
    """

    def __init__(self) -> None:
        super().__init__()
        self._secrets: set[str] = set()

    def register(self, secret: str) -> None:
        if secret:
            self._secrets.add(secret)

    def redact(self, text: str) -> str:
        # Longest first so a secret containing another is fully hidden
        for secret in sorted(self._secrets, key=len, reverse=True):
            text = text.replace(secret, REDACTED)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if self._secrets:
            message = record.getMessage()
            redacted = self.redact(message)
            if redacted != message:
                record.msg = redacted
                record.args = None
        return True


redacting_filter = SecretRedactingFilter()


def add_mask(secret: str, stream: TextIO | None = None) -> None:
    """Register ``secret`` with the runner's log masking and the local filter."""
    if not secret:
        return
    redacting_filter.register(secret)
    print(format_command("add-mask", secret), file=stream or sys.stdout, flush=True)


# ── Log rendering ────────────────────────────────────────────────────────────


class WorkflowCommandHandler(logging.Handler):
    """Render log records the way the Actions log viewer expects.

    WARNING and above become ``::warning::`` / ``::error::`` annotations,
    DEBUG becomes ``::debug::`` (shown only when step debug logging is on),
    and INFO is printed as plain text.
    """

    def __init__(self, stream: TextIO | None = None):
        super().__init__()
        self.stream = stream

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = self.format(record)
            if record.levelno >= logging.ERROR:
                line = format_command("error", message)
            elif record.levelno >= logging.WARNING:
                line = format_command("warning", message)
            elif record.levelno < logging.INFO:
                line = format_command("debug", message)
            else:
                line = message
            stream = self.stream or sys.stdout
            stream.write(line + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)


def running_in_actions(env: Mapping[str, str] | None = None) -> bool:
    env = os.environ if env is None else env
    return env.get("GITHUB_ACTIONS") == "true"


# ── Runner I/O ───────────────────────────────────────────────────────────────


class ActionsRuntime:
    """Inputs, outputs and cross-step state for one action invocation.

    Args:
        env: Environment to read from (defaults to ``os.environ``).
        stream: Where workflow commands are printed (defaults to stdout).
    """

    def __init__(self, env: Mapping[str, str] | None = None, stream: TextIO | None = None):
        self.env = os.environ if env is None else env
        self.stream = stream

    # ── Reading ──────────────────────────────────────────────────────────

    def get_input(self, name: str, *, required: bool = False) -> str:
        """Read an action input (``INPUT_<NAME>``); empty string when unset."""
        key = f"INPUT_{name.replace(' ', '_').upper()}"
        value = self.env.get(key, "").strip()
        if required and not value:
            raise ValueError(f"Input required and not supplied: {name}")
        return value

    def get_bool_input(self, name: str, default: bool = False) -> bool:
        value = self.get_input(name).lower()
        if not value:
            return default
        if value in ("true", "1", "yes"):
            return True
        if value in ("false", "0", "no"):
            return False
        raise ValueError(f"Input {name} must be a boolean, got {value!r}")

    def get_state(self, name: str) -> str:
        """Read state saved by an earlier phase of the same action (``STATE_<name>``)."""
        return self.env.get(f"STATE_{name}", "")

    # ── Writing ──────────────────────────────────────────────────────────

    def _append_file_command(self, env_var: str, name: str, value: str) -> bool:
        path = self.env.get(env_var)
        if not path:
            logger.debug("%s is not set; dropping %s", env_var, name)
            return False
        if "\n" in value or "\r" in value:
            delimiter = f"ghadelimiter_{uuid.uuid4()}"
            entry = f"{name}<<{delimiter}\n{value}\n{delimiter}\n"
        else:
            entry = f"{name}={value}\n"
        with open(path, "a", encoding="utf-8") as f:
            f.write(entry)
        return True

    def set_output(self, name: str, value: object) -> None:
        self._append_file_command("GITHUB_OUTPUT", name, _stringify(value))

    def save_state(self, name: str, value: object) -> None:
        self._append_file_command("GITHUB_STATE", name, _stringify(value))

    def export_variable(self, name: str, value: object) -> None:
        """Make ``name`` visible to later steps of the job."""
        self._append_file_command("GITHUB_ENV", name, _stringify(value))

    def add_mask(self, secret: str) -> None:
        add_mask(secret, self.stream)

    def command(self, command: str, message: str = "", **properties: str) -> None:
        print(format_command(command, message, **properties), file=self.stream or sys.stdout, flush=True)

    @contextmanager
    def group(self, title: str) -> Iterator[None]:
        """Fold everything printed inside the block under ``title``."""
        self.command("group", title)
        try:
            yield
        finally:
            self.command("endgroup")

    def write(self, text: str) -> None:
        """Forward raw command output to the job log as it arrives."""
        stream = self.stream or sys.stdout
        stream.write(text)
        stream.flush()


def _stringify(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)
