"""Deterministic identity for persistent CI steps.

Maps a CI job execution to:

- a sprite name, the *only* link between a rerun and the sandbox its
  earlier attempt used (nothing else is persisted), and
- a job key, used to tag and later match checkpoints.

Checkpoints are tagged with a compact comment::

    ghrun={run_id};job={job_key};step={step_key}

Everything here is pure: no I/O, no ambient CI state.  The caller builds an
:class:`ExecutionContext` and passes it in.
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from spritekit.errors import ConfigurationError
from spritekit.models import Checkpoint

# Sprites are addressed by a per-sprite hostname, so names stay within a DNS label.
MAX_SANDBOX_NAME_LENGTH = 63
HASH_LENGTH = 8
NAME_PREFIX = "gh"

_DISALLOWED_CHARS = re.compile(r"[^a-z0-9-]")
_HYPHEN_RUNS = re.compile(r"-+")
_COMMENT_RE = re.compile(r"^ghrun=([^;]+);job=([^;]+);step=([^;]+)$")
_RESERVED_COMMENT_CHARS = (";", "=")

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


# ── Records ──────────────────────────────────────────────────────────────────


class ExecutionContext(BaseModel):
    """Where a CI job is running. Built once per job invocation."""

    model_config = ConfigDict(frozen=True)

    owner: str
    repo: str
    workflow: str
    run_id: str
    job: str
    matrix: dict[str, Any] | None = None
    run_attempt: int = Field(default=1, description="Not part of the identity")

    @field_validator("run_id", mode="before")
    @classmethod
    def _run_id_as_text(cls, v: Any) -> Any:
        # The REST API reports run ids as integers
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @classmethod
    def from_github_env(
        cls,
        env: Mapping[str, str],
        *,
        matrix: dict[str, Any] | None = None,
    ) -> ExecutionContext:
        """Build a context from GitHub Actions default environment variables.

        The mapping is passed explicitly (usually ``os.environ``) so callers
        and tests control exactly what is read.

        Raises:
            ConfigurationError: If a required variable is missing or malformed.
        """
        required = ("GITHUB_REPOSITORY", "GITHUB_WORKFLOW", "GITHUB_RUN_ID", "GITHUB_JOB")
        missing = [name for name in required if not env.get(name)]
        if missing:
            raise ConfigurationError(
                f"Missing GitHub Actions environment variables: {', '.join(missing)}"
            )

        owner, sep, repo = env["GITHUB_REPOSITORY"].partition("/")
        if not sep or not owner or not repo:
            raise ConfigurationError(
                f"GITHUB_REPOSITORY must look like 'owner/repo', got {env['GITHUB_REPOSITORY']!r}"
            )

        attempt_raw = env.get("GITHUB_RUN_ATTEMPT") or "1"
        try:
            run_attempt = int(attempt_raw)
        except ValueError:
            raise ConfigurationError(f"GITHUB_RUN_ATTEMPT is not a number: {attempt_raw!r}")

        return cls(
            owner=owner,
            repo=repo,
            workflow=env["GITHUB_WORKFLOW"],
            run_id=env["GITHUB_RUN_ID"],
            job=env["GITHUB_JOB"],
            matrix=matrix or None,
            run_attempt=run_attempt,
        )


class SandboxIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    sandbox_name: str
    job_key: str


class CheckpointMetadata(BaseModel):
    """The structured content of a checkpoint comment."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    job_key: str
    step_key: str


# ── Name derivation ──────────────────────────────────────────────────────────


def normalize_name_part(value: str) -> str:
    """Lowercase, map anything outside ``[a-z0-9-]`` to ``-``, squeeze and trim hyphens."""
    value = _DISALLOWED_CHARS.sub("-", value.lower())
    return _HYPHEN_RUNS.sub("-", value).strip("-")


def short_hash(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()[:HASH_LENGTH]


def matrix_digest(matrix: Mapping[str, Any]) -> str:
    """8-hex-char digest of a matrix, independent of key order."""
    try:
        serialized = json.dumps(matrix, sort_keys=True, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Matrix values must be JSON-serializable: {e}") from e
    return short_hash(serialized)


def derive_sandbox_name(ctx: ExecutionContext) -> str:
    """Derive the sprite name: ``gh-{owner}-{repo}-{workflow}-{run_id}-{job}[-{matrix}]``.

    Names longer than :data:`MAX_SANDBOX_NAME_LENGTH` are cut and suffixed
    with a hash of the full name, so long inputs stay distinct.
    """
    parts = [
        NAME_PREFIX,
        normalize_name_part(ctx.owner),
        normalize_name_part(ctx.repo),
        normalize_name_part(ctx.workflow),
        ctx.run_id,
        normalize_name_part(ctx.job),
    ]
    if ctx.matrix:
        parts.append(matrix_digest(ctx.matrix))

    name = "-".join(parts)
    if len(name) > MAX_SANDBOX_NAME_LENGTH:
        base = name[: MAX_SANDBOX_NAME_LENGTH - HASH_LENGTH - 1]
        name = f"{base}-{short_hash(name)}"
    return name


def derive_job_key(ctx: ExecutionContext) -> str:
    """Derive the key that ties checkpoints to one job / matrix cell across reruns."""
    if ctx.matrix:
        return f"{ctx.job}-{matrix_digest(ctx.matrix)}"
    return ctx.job


def derive_identity(ctx: ExecutionContext) -> SandboxIdentity:
    return SandboxIdentity(sandbox_name=derive_sandbox_name(ctx), job_key=derive_job_key(ctx))


# ── Checkpoint comments ──────────────────────────────────────────────────────


def format_checkpoint_comment(run_id: str, job_key: str, step_key: str) -> str:
    """Render checkpoint metadata as ``ghrun=…;job=…;step=…``.

    The grammar has no escaping, so values containing ``;`` or ``=`` are
    refused rather than written as a comment that cannot be parsed back.

    Raises:
        ValueError: If a value is empty or contains a reserved character.
    """
    for label, value in (("run_id", run_id), ("job_key", job_key), ("step_key", step_key)):
        if not value:
            raise ValueError(f"{label} must not be empty")
        if any(ch in value for ch in _RESERVED_COMMENT_CHARS):
            raise ValueError(f"{label} must not contain ';' or '=': {value!r}")
    return f"ghrun={run_id};job={job_key};step={step_key}"


def parse_checkpoint_comment(comment: str | None) -> CheckpointMetadata | None:
    """Parse a checkpoint comment; ``None`` if it is not one of ours."""
    if not comment or not isinstance(comment, str):
        return None
    match = _COMMENT_RE.match(comment)
    if not match:
        return None
    return CheckpointMetadata(run_id=match[1], job_key=match[2], step_key=match[3])


# ── Checkpoint lookup ────────────────────────────────────────────────────────

CheckpointLike = Checkpoint | Mapping[str, Any]


def _field(checkpoint: CheckpointLike, name: str) -> Any:
    if isinstance(checkpoint, Mapping):
        return checkpoint.get(name)
    return getattr(checkpoint, name, None)


def _create_time(checkpoint: CheckpointLike) -> datetime:
    value = _field(checkpoint, "create_time")
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return _EPOCH
    if not isinstance(value, datetime):
        return _EPOCH
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _matches(
    checkpoint: CheckpointLike, run_id: str, job_key: str, step_key: str | None = None
) -> bool:
    metadata = parse_checkpoint_comment(_field(checkpoint, "comment"))
    if metadata is None:
        return False
    if metadata.run_id != run_id or metadata.job_key != job_key:
        return False
    return step_key is None or metadata.step_key == step_key


def find_checkpoint_for_step(
    checkpoints: Iterable[CheckpointLike],
    run_id: str,
    job_key: str,
    step_key: str,
) -> str | None:
    """Id of the first checkpoint (in list order) tagged for this exact step."""
    for checkpoint in checkpoints:
        if _matches(checkpoint, run_id, job_key, step_key):
            return _field(checkpoint, "id")
    return None


def find_last_checkpoint_for_job(
    checkpoints: Iterable[CheckpointLike],
    run_id: str,
    job_key: str,
) -> str | None:
    """Id of the most recently created checkpoint for this run and job."""
    matching = [cp for cp in checkpoints if _matches(cp, run_id, job_key)]
    if not matching:
        return None
    # sorted() is stable, so equal timestamps keep list order
    latest = sorted(matching, key=_create_time, reverse=True)[0]
    return _field(latest, "id")
