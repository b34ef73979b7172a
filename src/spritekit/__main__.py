"""spritekit CLI entry point.

Each subcommand backs one GitHub Action::

    spritekit init                      # once per job
    spritekit run --step-key build --run "make build"
    spritekit clean --mode current      # or: --mode global --max-age 24

Values come from flags first, then action inputs (``INPUT_*``), then the
``SPRITEKIT_*`` variables that ``init`` exports for later steps, then
the same values saved as action state (``STATE_*``).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

from pydantic import ValidationError

from spritekit.actions import ActionsRuntime, WorkflowCommandHandler, redacting_filter, running_in_actions
from spritekit.client import SpritesClient
from spritekit.config import SpritesSettings, load_settings
from spritekit.errors import ConfigurationError, SpritesError
from spritekit.identity import ExecutionContext
from spritekit.orchestrator import StepRequest, StepResult, clean_sandboxes, default_prefix, init_job, run_step

logger = logging.getLogger("spritekit")

# Variables exported by `init` for the rest of the job
ENV_SPRITE_NAME = "SPRITEKIT_SPRITE_NAME"
ENV_JOB_KEY = "SPRITEKIT_JOB_KEY"
ENV_RUN_ID = "SPRITEKIT_RUN_ID"
ENV_LAST_CHECKPOINT_ID = "SPRITEKIT_LAST_CHECKPOINT_ID"
ENV_RESTORE_DONE = "SPRITEKIT_RESTORE_DONE"


def _configure_logging(level: str) -> None:
    if running_in_actions():
        handler = WorkflowCommandHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        logging.basicConfig(level=getattr(logging, level), handlers=[handler])
    else:
        logging.basicConfig(
            level=getattr(logging, level),
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    for handler in logging.getLogger().handlers:
        handler.addFilter(redacting_filter)


def _pick(*values: str | None) -> str | None:
    """First non-empty value."""
    for value in values:
        if value:
            return value
    return None


def _job_value(
    runtime: ActionsRuntime, flag: str | None, input_name: str, env_name: str
) -> str | None:
    """Flag, then action input, then what `init` exported, then saved state."""
    return _pick(
        flag,
        runtime.get_input(input_name),
        runtime.env.get(env_name),
        runtime.get_state(env_name),
    )


def _settings(args: argparse.Namespace, runtime: ActionsRuntime) -> SpritesSettings:
    settings = load_settings(args.config, runtime.env)
    updates = {}
    token = runtime.get_input("token")
    if token:
        updates["token"] = token
    api_url = _pick(args.api_url, runtime.get_input("api-url"))
    if api_url:
        updates["api_url"] = api_url.rstrip("/")
    if not updates:
        return settings
    try:
        return SpritesSettings.model_validate({**settings.model_dump(), **updates})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid Sprites settings: {e}") from e


def _client(args: argparse.Namespace, runtime: ActionsRuntime) -> SpritesClient:
    settings = _settings(args, runtime)
    return SpritesClient.from_settings(settings, mask_secret=runtime.add_mask)


def _parse_matrix(raw: str | None) -> dict | None:
    if not raw:
        return None
    try:
        matrix = json.loads(raw)
    except ValueError as e:
        raise ConfigurationError(f"Matrix input is not valid JSON: {e}") from e
    if not isinstance(matrix, dict):
        raise ConfigurationError("Matrix input must be a JSON object")
    return matrix or None


# ── Commands ─────────────────────────────────────────────────────────────────


async def _init(args: argparse.Namespace, runtime: ActionsRuntime) -> int:
    matrix = _parse_matrix(_pick(args.matrix, runtime.get_input("matrix")))
    ctx = ExecutionContext.from_github_env(runtime.env, matrix=matrix)
    job_key = _pick(args.job_key, runtime.get_input("job-key"))

    async with _client(args, runtime) as client:
        result = await init_job(client, ctx, job_key_override=job_key)

    last = result.last_checkpoint_id or ""
    runtime.set_output("sprite-name", result.sandbox_name)
    runtime.set_output("sprite-id", result.sandbox_id)
    runtime.set_output("job-key", result.job_key)
    runtime.set_output("run-id", result.run_id)
    runtime.set_output("last-checkpoint-id", last)
    runtime.set_output("needs-restore", result.needs_restore)

    for name, value in (
        (ENV_SPRITE_NAME, result.sandbox_name),
        (ENV_JOB_KEY, result.job_key),
        (ENV_RUN_ID, result.run_id),
        (ENV_LAST_CHECKPOINT_ID, last),
    ):
        runtime.export_variable(name, value)
        runtime.save_state(name, value)
    logger.info("Init completed successfully")
    return 0


async def _run(args: argparse.Namespace, runtime: ActionsRuntime) -> int:
    env = runtime.env
    step_key = _pick(args.step_key, runtime.get_input("step-key"))
    command = _pick(args.run, runtime.get_input("run"))
    sandbox_name = _job_value(runtime, args.sprite_name, "sprite-name", ENV_SPRITE_NAME)
    job_key = _job_value(runtime, args.job_key, "job-key", ENV_JOB_KEY)
    run_id = _job_value(runtime, args.run_id, "run-id", ENV_RUN_ID)

    missing = [
        label
        for label, value in (
            ("step-key", step_key),
            ("run", command),
            ("sprite-name", sandbox_name),
            ("job-key", job_key),
            ("run-id", run_id),
        )
        if not value
    ]
    if missing:
        raise ConfigurationError(
            f"Missing required values: {', '.join(missing)}. Run the init action first or pass them as inputs."
        )

    request = StepRequest(
        sandbox_name=sandbox_name,
        run_id=run_id,
        job_key=job_key,
        step_key=step_key,
        command=command,
        workdir=_pick(args.workdir, runtime.get_input("workdir")),
        last_checkpoint_id=_job_value(
            runtime, args.last_checkpoint_id, "last-checkpoint-id", ENV_LAST_CHECKPOINT_ID
        ),
        restore_done=env.get(ENV_RESTORE_DONE) == "true",
        checkpoint=False if args.no_checkpoint else runtime.get_bool_input("checkpoint", default=True),
    )

    def forward(stream_name: str, text: str) -> None:
        if stream_name == "stderr":
            sys.stderr.write(text)
            sys.stderr.flush()
        else:
            runtime.write(text)

    progress = StepResult()
    try:
        async with _client(args, runtime) as client:
            with runtime.group(f"Running: {command}"):
                await run_step(client, request, on_output=forward, progress=progress)
    finally:
        runtime.set_output("skipped", progress.skipped)
        runtime.set_output("checkpoint-id", progress.checkpoint_id or "")
        runtime.set_output("restored", progress.restored)
        runtime.set_output("exit-code", progress.exit_code)
        if progress.restored or progress.executed:
            # The sprite has moved past the last checkpoint; later steps must not restore it
            runtime.export_variable(ENV_RESTORE_DONE, True)
        if progress.checkpoint_id and not progress.skipped:
            runtime.export_variable(ENV_LAST_CHECKPOINT_ID, progress.checkpoint_id)
    return 0


async def _clean(args: argparse.Namespace, runtime: ActionsRuntime) -> int:
    env = runtime.env
    sandbox_name = _job_value(runtime, args.sprite_name, "sprite-name", ENV_SPRITE_NAME)
    mode = _pick(args.mode, runtime.get_input("mode")) or ("current" if sandbox_name else "global")
    if mode not in ("current", "global"):
        raise ConfigurationError(f"mode must be 'current' or 'global', got {mode!r}")

    max_age_raw = _pick(args.max_age, runtime.get_input("max-age")) or "24"
    try:
        max_age = float(max_age_raw)
    except ValueError:
        raise ConfigurationError(f"max-age must be a number of hours, got {max_age_raw!r}")

    prefix = _pick(args.sprite_prefix, runtime.get_input("sprite-prefix"))
    if not prefix and mode == "global" and "/" in env.get("GITHUB_REPOSITORY", ""):
        owner, _, repo = env["GITHUB_REPOSITORY"].partition("/")
        prefix = default_prefix(owner, repo)

    dry_run = args.dry_run or runtime.get_bool_input("dry-run")

    async with _client(args, runtime) as client:
        result = await clean_sandboxes(
            client,
            mode=mode,
            sandbox_name=sandbox_name,
            prefix=prefix,
            max_age_hours=max_age,
            dry_run=dry_run,
        )

    runtime.set_output("sprites-cleaned", result.cleaned)
    runtime.set_output("sprites-found", result.found)
    runtime.set_output("deleted-sprites", json.dumps(result.names))
    runtime.set_output("dry-run", result.dry_run)
    runtime.set_output("mode", result.mode)
    return 0


COMMANDS = {"init": _init, "run": _run, "clean": _clean}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="spritekit",
        description="spritekit: persistent CI steps on Sprites sandboxes",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument("--config", type=Path, help="YAML settings file")
    parser.add_argument("--api-url", help="Sprites API base URL (default: SPRITES_API_URL or production)")

    subparsers = parser.add_subparsers(dest="command")

    # spritekit init
    init_parser = subparsers.add_parser("init", help="Create or reuse the job's sprite")
    init_parser.add_argument("--job-key", help="Override the derived job key")
    init_parser.add_argument("--matrix", help="Matrix values as a JSON object")

    # spritekit run
    run_parser = subparsers.add_parser("run", help="Run one persistent step")
    run_parser.add_argument("--step-key", help="Unique key for this step within the job")
    run_parser.add_argument("--run", help="Command to execute inside the sprite")
    run_parser.add_argument("--workdir", help="Working directory inside the sprite")
    run_parser.add_argument("--sprite-name", help="Sprite name (default: from init)")
    run_parser.add_argument("--job-key", help="Job key (default: from init)")
    run_parser.add_argument("--run-id", help="Run ID (default: from init)")
    run_parser.add_argument("--last-checkpoint-id", help="Checkpoint to restore on rerun")
    run_parser.add_argument(
        "--no-checkpoint",
        action="store_true",
        help="Do not checkpoint after the step succeeds",
    )

    # spritekit clean
    clean_parser = subparsers.add_parser("clean", help="Delete this job's sprite or stale sprites")
    clean_parser.add_argument("--mode", choices=["current", "global"])
    clean_parser.add_argument("--sprite-name", help="Sprite to delete in current mode")
    clean_parser.add_argument("--sprite-prefix", help="Name prefix to sweep in global mode")
    clean_parser.add_argument("--max-age", help="Age in hours after which sprites are deleted (default: 24)")
    clean_parser.add_argument("--dry-run", action="store_true", help="Only report what would be deleted")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    _configure_logging(args.log_level)
    runtime = ActionsRuntime(os.environ)

    try:
        return asyncio.run(COMMANDS[args.command](args, runtime))
    except (SpritesError, ValueError) as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
