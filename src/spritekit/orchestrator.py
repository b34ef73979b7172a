"""Persistent-step flow: init a job's sprite, run steps, clean up sprites.

A job runs ``init`` once, then ``run`` per step::

    init:  derive identity → ensure sprite exists → find last good checkpoint
    run:   step already checkpointed?  → skip
           rerun with a last checkpoint? → restore it (once per attempt)
           exec command → non-zero exit fails the step
           checkpoint tagged ghrun=…;job=…;step=…

``clean`` removes the job's sprite, or sweeps stale ``gh-`` sprites.
Nothing here reads CI environment; the CLI marshals it into these calls.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Literal

from spritekit.errors import ApiError, ConfigurationError, NotFoundError, SpritesError, StepFailedError
from spritekit.identity import (
    NAME_PREFIX,
    ExecutionContext,
    derive_identity,
    find_checkpoint_for_step,
    find_last_checkpoint_for_job,
    format_checkpoint_comment,
    normalize_name_part,
    parse_checkpoint_comment,
)

if TYPE_CHECKING:
    from spritekit.client import SpritesClient
    from spritekit.streaming import OutputSink

logger = logging.getLogger(__name__)

CleanMode = Literal["global", "current"]


# ── Init ─────────────────────────────────────────────────────────────────────


@dataclass
class InitResult:
    sandbox_name: str
    sandbox_id: str
    job_key: str
    run_id: str
    last_checkpoint_id: str | None = None

    @property
    def needs_restore(self) -> bool:
        return self.last_checkpoint_id is not None


async def init_job(
    client: SpritesClient,
    ctx: ExecutionContext,
    *,
    job_key_override: str | None = None,
) -> InitResult:
    """Ensure the job's sprite exists and find where a rerun should resume."""
    identity = derive_identity(ctx)
    job_key = job_key_override or identity.job_key

    logger.info("Sprite name: %s", identity.sandbox_name)
    logger.info("Job key: %s", job_key)
    logger.info("Run ID: %s (attempt %d)", ctx.run_id, ctx.run_attempt)

    sandbox = await client.create_or_get_sandbox(identity.sandbox_name)
    checkpoints = await client.list_checkpoints(identity.sandbox_name)
    logger.info("Found %d existing checkpoints", len(checkpoints))

    last_checkpoint_id = find_last_checkpoint_for_job(checkpoints, ctx.run_id, job_key)
    if last_checkpoint_id:
        logger.info("Last successful checkpoint: %s", last_checkpoint_id)
    else:
        logger.info("No previous checkpoint found for this job")

    return InitResult(
        sandbox_name=identity.sandbox_name,
        sandbox_id=sandbox.id or sandbox.name,
        job_key=job_key,
        run_id=ctx.run_id,
        last_checkpoint_id=last_checkpoint_id,
    )


# ── Run ──────────────────────────────────────────────────────────────────────


@dataclass
class StepRequest:
    sandbox_name: str
    run_id: str
    job_key: str
    step_key: str
    command: str
    workdir: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    last_checkpoint_id: str | None = None
    restore_done: bool = False  # an earlier step of this attempt already restored
    checkpoint: bool = True


@dataclass
class StepResult:
    skipped: bool = False
    restored: bool = False
    executed: bool = False  # the command ran, so the sprite has moved on
    checkpoint_id: str | None = None
    exit_code: int = 0


async def maybe_restore(
    client: SpritesClient,
    sandbox_name: str,
    checkpoint_id: str,
    run_id: str,
    job_key: str,
) -> bool:
    """Restore ``checkpoint_id`` if it belongs to this run and job.

    A failed restore is logged and reported as ``False``: the step then
    runs on the sprite's current state.
    """
    try:
        checkpoint = await client.get_checkpoint(sandbox_name, checkpoint_id, expect_not_found=True)
    except NotFoundError:
        logger.warning("Checkpoint %s no longer exists, skipping restore", checkpoint_id)
        return False
    except ApiError as e:
        logger.warning("Failed to look up checkpoint %s: %s", checkpoint_id, e)
        return False

    metadata = parse_checkpoint_comment(checkpoint.comment)
    if metadata is None or metadata.run_id != run_id or metadata.job_key != job_key:
        logger.warning("Checkpoint %s does not match current run/job, skipping restore", checkpoint_id)
        return False

    logger.info("Restoring from checkpoint: %s", checkpoint_id)
    try:
        await client.restore_checkpoint(sandbox_name, checkpoint_id)
    except SpritesError as e:
        logger.warning("Failed to restore checkpoint %s: %s", checkpoint_id, e)
        return False
    return True


async def run_step(
    client: SpritesClient,
    request: StepRequest,
    *,
    on_output: OutputSink | None = None,
    progress: StepResult | None = None,
) -> StepResult:
    """Run one persistent step.

    Args:
        progress: Filled in as the step advances, so a caller can still
            report what happened (restore, exit code) when this raises.

    Raises:
        StepFailedError: The command exited non-zero; no checkpoint is taken.
    """
    result = progress if progress is not None else StepResult()

    checkpoints = await client.list_checkpoints(request.sandbox_name)
    existing = find_checkpoint_for_step(
        checkpoints, request.run_id, request.job_key, request.step_key
    )
    if existing:
        logger.info("Step %r already completed (checkpoint %s), skipping", request.step_key, existing)
        result.skipped = True
        result.checkpoint_id = existing
        return result

    if request.last_checkpoint_id and not request.restore_done:
        result.restored = await maybe_restore(
            client,
            request.sandbox_name,
            request.last_checkpoint_id,
            request.run_id,
            request.job_key,
        )

    logger.info("Executing step: %s", request.step_key)
    result.executed = True
    execution = await client.exec(
        request.sandbox_name,
        request.command,
        workdir=request.workdir,
        env=request.env or None,
        on_output=on_output,
    )
    result.exit_code = execution.exit_code
    if execution.exit_code != 0:
        raise StepFailedError(execution.exit_code, request.step_key)

    if request.checkpoint:
        comment = format_checkpoint_comment(request.run_id, request.job_key, request.step_key)
        result.checkpoint_id = await client.create_checkpoint(request.sandbox_name, comment)

    logger.info("Step %r completed successfully", request.step_key)
    return result


# ── Clean ────────────────────────────────────────────────────────────────────


@dataclass
class CleanResult:
    mode: CleanMode
    dry_run: bool
    found: int = 0
    cleaned: int = 0
    names: list[str] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return 0 if self.dry_run else self.found - self.cleaned


def default_prefix(owner: str, repo: str) -> str:
    """Prefix shared by every sprite this repository's workflows create."""
    return f"{NAME_PREFIX}-{normalize_name_part(owner)}-{normalize_name_part(repo)}-"


def is_expired(timestamp: datetime | None, max_age_hours: float, now: datetime) -> bool:
    """Whether ``timestamp`` is more than ``max_age_hours`` before ``now``.

    Sprites without a timestamp are never considered expired.
    """
    if timestamp is None:
        return False
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp < now - timedelta(hours=max_age_hours)


async def clean_sandboxes(
    client: SpritesClient,
    *,
    mode: CleanMode = "global",
    sandbox_name: str | None = None,
    prefix: str | None = None,
    max_age_hours: float = 24,
    dry_run: bool = False,
    now: datetime | None = None,
) -> CleanResult:
    """Delete the current job's sprite, or every stale sprite under ``prefix``.

    In ``global`` mode only ``gh-`` sprites last updated more than
    ``max_age_hours`` ago are removed.  Individual delete failures are
    logged and counted, not raised.
    """
    result = CleanResult(mode=mode, dry_run=dry_run)

    if mode == "current":
        if not sandbox_name:
            raise ConfigurationError(
                "Current mode requires a sprite name. Make sure init ran earlier in this job."
            )
        await _clean_one(client, sandbox_name, dry_run, result)
        return result

    if max_age_hours < 0:
        raise ConfigurationError("max-age must be a non-negative number of hours")

    now = now or datetime.now(timezone.utc)
    prefix = prefix or f"{NAME_PREFIX}-"
    logger.info("Looking for sprites with prefix %r older than %sh", prefix, max_age_hours)

    stale = []
    async for entry in client.iter_sandboxes(prefix):
        if not entry.name.startswith(f"{NAME_PREFIX}-"):
            logger.debug("Skipping %s: not created by spritekit", entry.name)
            continue
        if is_expired(entry.updated_at, max_age_hours, now):
            stale.append(entry)

    result.found = len(stale)
    if not stale:
        logger.info("No old sprites found to clean up")
        return result

    for entry in stale:
        if dry_run:
            logger.info("[DRY RUN] Would delete sprite: %s (updated %s)", entry.name, entry.updated_at)
            result.names.append(entry.name)
            continue
        try:
            await client.delete_sandbox(entry.name)
        except ApiError as e:
            logger.warning("Failed to delete sprite %s: %s", entry.name, e)
            continue
        result.cleaned += 1
        result.names.append(entry.name)

    if result.failed:
        logger.warning("%d sprites failed to delete", result.failed)
    logger.info("Cleaned up %d of %d old sprites", result.cleaned, result.found)
    return result


async def _clean_one(
    client: SpritesClient, sandbox_name: str, dry_run: bool, result: CleanResult
) -> None:
    try:
        sandbox = await client.get_sandbox(sandbox_name, expect_not_found=True)
    except NotFoundError:
        logger.info("Sprite %s not found (may already be deleted)", sandbox_name)
        return

    if not sandbox.name.startswith(f"{NAME_PREFIX}-"):
        logger.warning(
            "Sprite %s was not created by spritekit (missing %r prefix), skipping deletion",
            sandbox.name,
            f"{NAME_PREFIX}-",
        )
        return

    result.found = 1
    if dry_run:
        logger.info("[DRY RUN] Would delete sprite: %s", sandbox_name)
        result.names.append(sandbox_name)
        return
    try:
        await client.delete_sandbox(sandbox_name)
    except NotFoundError:
        logger.info("Sprite %s was deleted concurrently", sandbox_name)
        result.found = 0
        return
    except ApiError as e:
        logger.warning("Failed to delete sprite %s: %s", sandbox_name, e)
        return
    result.cleaned = 1
    result.names.append(sandbox_name)
