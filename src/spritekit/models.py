"""Wire records exchanged with the Sprites API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


# ── Sandboxes ────────────────────────────────────────────────────────────────


class Sandbox(BaseModel):
    """A remote sprite (sandbox) descriptor.

    Only ``name`` is guaranteed; the API may add fields, which are kept.
    """

    model_config = ConfigDict(extra="allow")

    name: str
    id: str | None = None
    organization: str | None = None
    url: str | None = None
    status: str | None = Field(default=None, description="cold, warm or running")
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SandboxEntry(BaseModel):
    """A sprite as it appears in a list response."""

    model_config = ConfigDict(extra="allow")

    name: str
    org_slug: str | None = None
    updated_at: datetime | None = None


class SandboxPage(BaseModel):
    """One page of ``GET /sprites``."""

    sprites: list[SandboxEntry] = Field(default_factory=list)
    has_more: bool = False
    next_continuation_token: str | None = None


# ── Checkpoints ──────────────────────────────────────────────────────────────


class Checkpoint(BaseModel):
    """An immutable snapshot of a sprite, optionally tagged with a comment."""

    model_config = ConfigDict(extra="allow")

    id: str
    create_time: datetime
    source_id: str | None = None
    comment: str | None = None


# ── Streams & exec ───────────────────────────────────────────────────────────


class StreamEvent(BaseModel):
    """One parsed line of an NDJSON progress stream.

    Lines that are not JSON objects become ``type="raw"`` events carrying the
    original text in ``raw``.
    """

    model_config = ConfigDict(extra="allow")

    type: str
    data: str | None = None
    error: str | None = None
    code: int | None = None
    time: str | None = None
    raw: str | None = None


class ExecResult(BaseModel):
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0
