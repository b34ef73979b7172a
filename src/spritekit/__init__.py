"""spritekit: persistent CI steps on Sprites sandboxes.

Checkpoints a sprite after each successful CI step and, on rerun, resumes
from the last good checkpoint instead of starting over.
"""

__version__ = "0.1.0"

from .client import SpritesClient
from .config import SpritesSettings, load_settings
from .errors import (
    ApiError,
    ConfigurationError,
    NotFoundError,
    SpritesError,
    StepFailedError,
    StreamProtocolError,
    TerminalApiError,
    TransientApiError,
)
from .identity import (
    CheckpointMetadata,
    ExecutionContext,
    SandboxIdentity,
    derive_identity,
    derive_job_key,
    derive_sandbox_name,
    find_checkpoint_for_step,
    find_last_checkpoint_for_job,
    format_checkpoint_comment,
    parse_checkpoint_comment,
)
from .models import Checkpoint, ExecResult, Sandbox, SandboxEntry, SandboxPage, StreamEvent

__all__ = [
    "ApiError",
    "Checkpoint",
    "CheckpointMetadata",
    "ConfigurationError",
    "ExecResult",
    "ExecutionContext",
    "NotFoundError",
    "Sandbox",
    "SandboxEntry",
    "SandboxIdentity",
    "SandboxPage",
    "SpritesClient",
    "SpritesError",
    "SpritesSettings",
    "StepFailedError",
    "StreamEvent",
    "StreamProtocolError",
    "TerminalApiError",
    "TransientApiError",
    "derive_identity",
    "derive_job_key",
    "derive_sandbox_name",
    "find_checkpoint_for_step",
    "find_last_checkpoint_for_job",
    "format_checkpoint_comment",
    "load_settings",
    "parse_checkpoint_comment",
]
