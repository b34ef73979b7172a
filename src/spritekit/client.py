"""Sprites API client for spritekit.

Handles bearer authentication, retry with exponential backoff for transient
failures, and consumption of the NDJSON progress streams returned by
checkpoint, restore and exec.  All sprite endpoints are addressed by sprite
*name*.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from spritekit import __version__
from spritekit.actions import add_mask
from spritekit.config import SpritesSettings
from spritekit.errors import ConfigurationError, NotFoundError, TerminalApiError
from spritekit.models import Checkpoint, ExecResult, Sandbox, SandboxEntry, SandboxPage, StreamEvent
from spritekit.retry import RetryPolicy, Sleep, classify_status, classify_transport_error, error_message
from spritekit.streaming import (
    OutputSink,
    consume_checkpoint_stream,
    consume_exec_stream,
    consume_restore_stream,
    iter_events,
)

logger = logging.getLogger(__name__)

NDJSON = "application/x-ndjson"

M = TypeVar("M", bound=BaseModel)


def _seg(value: str) -> str:
    """Quote a value for use as one URL path segment."""
    return quote(value, safe="")


class SpritesClient:
    """Async Sprites API client with retry and streaming support.

    Args:
        token: API token; registered with the log masker immediately.
        api_url: Overrides ``settings.api_url``.
        settings: Timeouts and retry policy; defaults to :class:`SpritesSettings`.
        sleep: Delay primitive used between retries.
        mask_secret: Called with the token at construction.
        transport: Optional httpx transport (tests, proxies).
    """

    def __init__(
        self,
        token: str | None,
        *,
        api_url: str | None = None,
        settings: SpritesSettings | None = None,
        sleep: Sleep = asyncio.sleep,
        mask_secret: Callable[[str], None] = add_mask,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not token:
            raise ConfigurationError(
                "Sprites token is required. Set SPRITES_TOKEN or provide the token input."
            )
        mask_secret(token)
        self._token = token

        self.settings = settings or SpritesSettings()
        self.api_url = (api_url or self.settings.api_url).rstrip("/")
        self.retry = RetryPolicy(
            max_retries=self.settings.max_retries,
            base_delay=self.settings.retry_base_delay,
            retry_statuses=self.settings.retry_statuses,
        )
        self._sleep = sleep
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: SpritesSettings, **kwargs: Any) -> SpritesClient:
        return cls(settings.require_token(), settings=settings, **kwargs)

    async def start(self) -> None:
        """Initialize HTTP client."""
        self._client = httpx.AsyncClient(
            base_url=self.api_url,
            headers={
                "Authorization": f"Bearer {self._token}",
                "Accept": "application/json",
                "User-Agent": f"spritekit/{__version__}",
            },
            timeout=self.settings.timeout,
            transport=self._transport,
        )
        logger.debug("Sprites client started (%s)", self.api_url)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> SpritesClient:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Sprites client not started")
        return self._client

    # ── Transport ────────────────────────────────────────────────────────

    async def _send(self, request: httpx.Request, *, stream: bool = False) -> httpx.Response:
        """One attempt: send and turn failures into classified API errors."""
        method, path = request.method, request.url.path
        try:
            resp = await self.client.send(request, stream=stream)
        except httpx.TransportError as e:
            raise classify_transport_error(e, method=method, path=path) from e

        if resp.status_code >= 400:
            if stream:
                try:
                    await resp.aread()
                except httpx.TransportError as e:
                    raise classify_transport_error(e, method=method, path=path) from e
                finally:
                    await resp.aclose()
            raise classify_status(
                resp.status_code,
                error_message(resp),
                method=method,
                path=path,
                retry_statuses=self.retry.retry_statuses,
            )
        return resp

    async def _request(
        self,
        method: str,
        path: str,
        *,
        expect_not_found: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        """Make an authenticated request, retrying transient failures.

        Args:
            expect_not_found: A 404 is a normal answer for this call; raise
                :class:`NotFoundError` at once, without retrying.
        """
        request = self.client.build_request(method, path, **kwargs)
        return await self.retry.run(
            lambda: self._send(request),
            sleep=self._sleep,
            expect_not_found=expect_not_found,
            description=f"{method} {path}",
        )

    @asynccontextmanager
    async def _stream(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
    ) -> AsyncIterator[AsyncIterator[StreamEvent]]:
        """Open an NDJSON stream and yield its events.

        Only opening the stream is retried; once events flow, a failure
        surfaces as-is because the stream cannot be resumed.
        """
        request = self.client.build_request(
            method,
            path,
            json=json,
            headers={"Accept": NDJSON},
            timeout=self.settings.stream_timeout,
        )
        resp = await self.retry.run(
            lambda: self._send(request, stream=True),
            sleep=self._sleep,
            description=f"{method} {path}",
        )
        events = iter_events(self._lines(resp))
        try:
            yield events
        finally:
            await events.aclose()
            await resp.aclose()

    @staticmethod
    async def _lines(resp: httpx.Response) -> AsyncIterator[str]:
        try:
            async for line in resp.aiter_lines():
                yield line
        except httpx.TransportError as e:
            raise classify_transport_error(
                e, method=resp.request.method, path=resp.request.url.path
            ) from e

    @staticmethod
    def _json(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise TerminalApiError(
                f"Unexpected non-JSON response: {resp.text[:200]!r}",
                status=resp.status_code,
                method=resp.request.method,
                path=resp.request.url.path,
            ) from e

    @classmethod
    def _parse(cls, model: type[M], resp: httpx.Response) -> M:
        try:
            return model.model_validate(cls._json(resp))
        except ValidationError as e:
            raise TerminalApiError(
                f"Unexpected {model.__name__} payload: {e}",
                status=resp.status_code,
                method=resp.request.method,
                path=resp.request.url.path,
            ) from e

    # ── Sprite Operations ────────────────────────────────────────────────

    async def get_sandbox(self, name: str, *, expect_not_found: bool = False) -> Sandbox:
        resp = await self._request(
            "GET", f"/sprites/{_seg(name)}", expect_not_found=expect_not_found
        )
        return self._parse(Sandbox, resp)

    async def create_or_get_sandbox(self, name: str) -> Sandbox:
        """Return the sprite called ``name``, creating it if needed.

        Safe to call repeatedly and concurrently for the same name: the API
        enforces name uniqueness, and losing a create race (409) falls back
        to reading the winner's sprite.
        """
        try:
            sandbox = await self.get_sandbox(name, expect_not_found=True)
            logger.info("Found existing sprite: %s", name)
            return sandbox
        except NotFoundError:
            logger.debug("Sprite %s not found, creating it", name)

        try:
            resp = await self._request("POST", "/sprites", json={"name": name})
        except TerminalApiError as e:
            if e.status != 409:
                raise
            logger.info("Sprite %s was created concurrently, fetching it", name)
            return await self.get_sandbox(name)

        sandbox = self._parse(Sandbox, resp)
        logger.info("Created sprite: %s", name)
        return sandbox

    async def delete_sandbox(self, name: str) -> None:
        await self._request("DELETE", f"/sprites/{_seg(name)}")
        logger.info("Deleted sprite: %s", name)

    async def list_sandboxes(
        self,
        prefix: str | None = None,
        continuation_token: str | None = None,
    ) -> SandboxPage:
        """One page of sprites. Use :meth:`iter_sandboxes` to walk every page."""
        params: dict[str, str] = {}
        if prefix:
            params["prefix"] = prefix
        if continuation_token:
            params["continuation_token"] = continuation_token
        resp = await self._request("GET", "/sprites", params=params)
        body = self._json(resp)
        if isinstance(body, list):
            # Unpaginated form: a bare array of sprites
            return SandboxPage(sprites=[SandboxEntry.model_validate(s) for s in body])
        return self._parse(SandboxPage, resp)

    async def iter_sandboxes(self, prefix: str | None = None) -> AsyncIterator[SandboxEntry]:
        """Yield every sprite matching ``prefix``, following continuation tokens."""
        token: str | None = None
        while True:
            page = await self.list_sandboxes(prefix, token)
            for entry in page.sprites:
                yield entry
            if not page.has_more:
                return
            if not page.next_continuation_token:
                logger.warning("Sprite list reported more pages but no continuation token")
                return
            token = page.next_continuation_token

    # ── Checkpoint Operations ────────────────────────────────────────────

    async def list_checkpoints(self, name: str) -> list[Checkpoint]:
        resp = await self._request("GET", f"/sprites/{_seg(name)}/checkpoints")
        body = self._json(resp)
        if not isinstance(body, list):
            raise TerminalApiError(
                "Expected a list of checkpoints",
                status=resp.status_code,
                method="GET",
                path=resp.request.url.path,
            )
        try:
            return [Checkpoint.model_validate(item) for item in body]
        except ValidationError as e:
            raise TerminalApiError(
                f"Unexpected Checkpoint payload: {e}",
                status=resp.status_code,
                method="GET",
                path=resp.request.url.path,
            ) from e

    async def get_checkpoint(
        self, name: str, checkpoint_id: str, *, expect_not_found: bool = False
    ) -> Checkpoint:
        resp = await self._request(
            "GET",
            f"/sprites/{_seg(name)}/checkpoints/{_seg(checkpoint_id)}",
            expect_not_found=expect_not_found,
        )
        return self._parse(Checkpoint, resp)

    async def create_checkpoint(self, name: str, comment: str | None = None) -> str:
        """Checkpoint the sprite and return the new checkpoint's id.

        Raises:
            StreamProtocolError: If the stream reports an error or ends
                without naming the checkpoint.
        """
        body = {"comment": comment} if comment else {}
        async with self._stream("POST", f"/sprites/{_seg(name)}/checkpoint", json=body) as events:
            checkpoint_id = await consume_checkpoint_stream(events)
        logger.info("Created checkpoint %s for sprite %s", checkpoint_id, name)
        return checkpoint_id

    async def restore_checkpoint(self, name: str, checkpoint_id: str) -> None:
        path = f"/sprites/{_seg(name)}/checkpoints/{_seg(checkpoint_id)}/restore"
        async with self._stream("POST", path) as events:
            await consume_restore_stream(events)
        logger.info("Restored sprite %s from checkpoint %s", name, checkpoint_id)

    # ── Exec ─────────────────────────────────────────────────────────────

    async def exec(
        self,
        name: str,
        command: str,
        *,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
        on_output: OutputSink | None = None,
    ) -> ExecResult:
        """Run ``command`` in the sprite, forwarding output as it streams in.

        Args:
            on_output: Receives ``("stdout" | "stderr", text)`` per chunk;
                defaults to writing to this process's stdout/stderr.
        """
        body: dict[str, Any] = {"command": command}
        if workdir:
            body["workdir"] = workdir
        if env:
            body["env"] = env

        logger.debug("Executing in sprite %s: %s", name, command)
        async with self._stream("POST", f"/sprites/{_seg(name)}/exec", json=body) as events:
            result = await consume_exec_stream(events, on_output)
        logger.debug("Command in sprite %s exited with %d", name, result.exit_code)
        return result
