"""
Persistent sessions to remote tool endpoints (MCP servers).

One live session per endpoint id. Each session is owned by a long-lived
runner task that enters the transport and ClientSession contexts and
keeps them open until the session is closed, so the anyio scopes inside
the ``mcp`` SDK are entered and exited by the same task.

Lifecycle: Disconnected -> Connecting -> Connected -> (Invalid ->
Reconnecting -> Connected) -> Closed.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
import time
import uuid
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any, AsyncContextManager, AsyncIterator, Awaitable, Callable
from urllib.parse import parse_qs, urlparse

import anyio
import httpx
from mcp import ClientSession, StdioServerParameters
from mcp.client.auth import OAuthClientProvider
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.auth import OAuthClientMetadata
from mcp.shared.exceptions import McpError
from mcp.types import EmbeddedResource, ImageContent, TextContent

from agentgate.core.cancellation import CancellationToken
from agentgate.core.credentials import EndpointCredentialStore
from agentgate.models.chat_config import RemoteEndpointConfig
from agentgate.models.tool_result import ResourcePart, TextPart, ToolResponse

logger = logging.getLogger(__name__)

CALL_ERROR_PREFIX = "MCP call error:"
SESSION_ID_HEADER = "mcp-session-id"
AUTH_CALLBACK_TIMEOUT = 600.0
CLOSE_TIMEOUT = 5.0

SessionOpener = Callable[
    [str, RemoteEndpointConfig, dict[str, str], httpx.Auth | None],
    AsyncContextManager[tuple[Any, Callable[[], str | None]]],
]


class RemoteErrorKind(str, Enum):
    SESSION_INVALID = "session_invalid"
    UNAUTHORIZED = "unauthorized"
    SESSION_REQUIRED = "session_required"
    OTHER = "other"


class SessionClosedError(ConnectionError):
    """The session's runner task has exited."""


class AuthorizationPendingError(Exception):
    """The endpoint needs the operator to complete an OAuth authorization."""

    def __init__(self, endpoint_id: str, authorization_url: str | None):
        self.endpoint_id = endpoint_id
        self.authorization_url = authorization_url
        where = f" Visit: {authorization_url}" if authorization_url else ""
        super().__init__(f"Authorization required for '{endpoint_id}'.{where}")


def classify_remote_error(error: BaseException) -> RemoteErrorKind:
    """
    Map a transport/SDK failure onto the recovery policy it calls for.

    SESSION_INVALID -> reconnect and retry once; UNAUTHORIZED -> pending
    authorization; SESSION_REQUIRED -> retry connect with a local session id.
    """
    if isinstance(error, BaseExceptionGroup):
        for inner in error.exceptions:
            kind = classify_remote_error(inner)
            if kind is not RemoteErrorKind.OTHER:
                return kind
        return RemoteErrorKind.OTHER

    if isinstance(error, AuthorizationPendingError):
        return RemoteErrorKind.UNAUTHORIZED

    if isinstance(error, (SessionClosedError, anyio.ClosedResourceError, anyio.BrokenResourceError)):
        return RemoteErrorKind.SESSION_INVALID

    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status in (401, 403):
            return RemoteErrorKind.UNAUTHORIZED
        if status == 404:
            return RemoteErrorKind.SESSION_INVALID
        if status == 400 and "session" in _response_text(error.response).lower():
            return RemoteErrorKind.SESSION_REQUIRED
        return RemoteErrorKind.OTHER

    if isinstance(error, McpError):
        message = (error.error.message or "").lower()
        if "session terminated" in message or "session not found" in message:
            return RemoteErrorKind.SESSION_INVALID
        if "unauthorized" in message or "401" in message:
            return RemoteErrorKind.UNAUTHORIZED
        if "session id" in message and ("required" in message or "missing" in message):
            return RemoteErrorKind.SESSION_REQUIRED

    return RemoteErrorKind.OTHER


def _response_text(response: httpx.Response) -> str:
    try:
        return response.text
    except httpx.ResponseNotRead:
        return ""


def _error_message(error: BaseException) -> str:
    if isinstance(error, BaseExceptionGroup) and error.exceptions:
        return _error_message(error.exceptions[0])
    if isinstance(error, McpError):
        return error.error.message
    return str(error) or type(error).__name__


def _consume_exception(future: asyncio.Future) -> None:
    if not future.cancelled() and future.exception() is not None:
        logger.debug("Background connect finished with: %s", future.exception())


def result_to_response(result: Any) -> ToolResponse:
    """Convert an ``mcp`` CallToolResult into a ToolResponse."""
    parts: list[TextPart | ResourcePart] = []
    for block in getattr(result, "content", None) or []:
        if isinstance(block, TextContent):
            parts.append(TextPart(text=block.text))
        elif isinstance(block, ImageContent):
            ext = block.mimeType.split("/")[-1]
            parts.append(ResourcePart(data=base64.b64decode(block.data), filename=f"image.{ext}", media_type=block.mimeType))
        elif isinstance(block, EmbeddedResource):
            resource = block.resource
            if getattr(resource, "blob", None) is not None:
                name = str(resource.uri).rsplit("/", 1)[-1] or "resource.bin"
                parts.append(
                    ResourcePart(
                        data=base64.b64decode(resource.blob),
                        filename=name,
                        media_type=resource.mimeType or "application/octet-stream",
                    )
                )
            else:
                parts.append(TextPart(text=getattr(resource, "text", "")))
        else:
            parts.append(TextPart(text=str(block)))

    if not parts:
        structured = getattr(result, "structuredContent", None)
        if structured is not None:
            return ToolResponse.from_text(json.dumps(structured, ensure_ascii=False))
        if getattr(result, "isError", False):
            return ToolResponse.from_text("Error: remote tool returned an error with no text payload.")
        return ToolResponse.from_text("")

    if all(isinstance(p, TextPart) for p in parts):
        return ToolResponse.from_text("\n".join(p.text for p in parts))
    return ToolResponse(content=parts)


@asynccontextmanager
async def open_mcp_session(
    endpoint_id: str,
    config: RemoteEndpointConfig,
    headers: dict[str, str],
    auth: httpx.Auth | None,
) -> AsyncIterator[tuple[ClientSession, Callable[[], str | None]]]:
    """Open and initialize a ClientSession over stdio or streamable HTTP."""
    timeout = timedelta(seconds=config.timeout)
    async with AsyncExitStack() as stack:
        if config.transport == "stdio":
            params = StdioServerParameters(
                command=config.command,
                args=config.args,
                env={**os.environ, **config.env} if config.env else None,
            )
            read, write = await stack.enter_async_context(stdio_client(params))

            def get_session_id() -> str | None:
                return None

        else:
            read, write, get_session_id = await stack.enter_async_context(
                streamablehttp_client(config.url, headers=headers or None, timeout=timeout, auth=auth)
            )
        session = await stack.enter_async_context(ClientSession(read, write, read_timeout_seconds=timeout))
        await session.initialize()
        logger.info("[%s] connected over %s", endpoint_id, config.transport)
        yield session, get_session_id


class PersistentOAuthProvider(OAuthClientProvider):
    """OAuth provider that writes the PKCE verifier to the endpoint's store."""

    async def _exchange_token_authorization_code(self, auth_code: str, code_verifier: str, **kwargs: Any) -> httpx.Request:
        storage = self.context.storage
        if isinstance(storage, EndpointCredentialStore):
            storage.save_code_verifier(code_verifier)
        return await super()._exchange_token_authorization_code(auth_code, code_verifier, **kwargs)


@dataclass
class PendingAuthorization:
    """OAuth flow waiting for the operator's authorization code."""

    endpoint_id: str
    authorization_url: str
    state: str | None
    code: asyncio.Future
    created_at: float = field(default_factory=time.time)


@dataclass
class RemoteSession:
    """External session record: one per endpoint."""

    endpoint_id: str
    config: RemoteEndpointConfig
    fingerprint: str
    session: Any = None
    tools: list[Any] = field(default_factory=list)
    _get_session_id: Callable[[], str | None] | None = field(default=None, repr=False)
    _task: asyncio.Task | None = field(default=None, repr=False)
    _ready: asyncio.Future | None = field(default=None, repr=False)
    _closed: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def session_id(self) -> str | None:
        return self._get_session_id() if self._get_session_id else None

    @property
    def alive(self) -> bool:
        return self.session is not None and self._task is not None and not self._task.done()


class RemoteSessionManager:
    """
    Connection cache for remote tool endpoints.

    The cache is a plain dict; concurrent connects to the same endpoint
    share one in-flight attempt instead of racing two connections.
    """

    def __init__(
        self,
        auth_store_dir: Path | str = "data/mcp-auth",
        opener: SessionOpener | None = None,
        on_authorization: Callable[[str, str], Awaitable[None]] | None = None,
    ):
        """
        Args:
            auth_store_dir: Where per-endpoint OAuth state is persisted
            opener: Session factory, replaceable for tests
            on_authorization: Called with (endpoint_id, url) when an operator must authorize
        """
        self.auth_store_dir = Path(auth_store_dir)
        self._opener = opener or open_mcp_session
        self.on_authorization = on_authorization
        self._sessions: dict[str, RemoteSession] = {}
        self._connecting: dict[str, tuple[str, asyncio.Task]] = {}
        self._authorizing: dict[str, RemoteSession] = {}
        self._configs: dict[str, RemoteEndpointConfig] = {}
        self._pending_auth: dict[str, PendingAuthorization] = {}
        self._auth_waiters: dict[str, asyncio.Future] = {}

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def get(self, endpoint_id: str) -> RemoteSession | None:
        record = self._sessions.get(endpoint_id)
        return record if record is not None and record.alive else None

    def is_connected(self, endpoint_id: str) -> bool:
        return self.get(endpoint_id) is not None

    async def connect(self, endpoint_id: str, config: RemoteEndpointConfig) -> RemoteSession:
        """
        Return a live session, reusing the cached one when the config is unchanged.

        Raises:
            AuthorizationPendingError: The endpoint is waiting for OAuth authorization
        """
        self._configs[endpoint_id] = config
        fingerprint = config.fingerprint()

        record = self._sessions.get(endpoint_id)
        if record is not None:
            if record.alive and record.fingerprint == fingerprint:
                return record
            reason = "config changed" if record.fingerprint != fingerprint else "session closed"
            logger.info("[%s] reconnecting: %s", endpoint_id, reason)
            await self.disconnect(endpoint_id)

        authorizing = self._authorizing.get(endpoint_id)
        if authorizing is not None:
            if authorizing.fingerprint != fingerprint or authorizing._task is None or authorizing._task.done():
                await self.disconnect(endpoint_id)
            else:
                pending = self._pending_auth.get(endpoint_id)
                if pending is not None:
                    raise AuthorizationPendingError(endpoint_id, pending.authorization_url)
                # code received, token exchange still running
                return await asyncio.shield(authorizing._ready)

        inflight = self._connecting.get(endpoint_id)
        if inflight is None or inflight[0] != fingerprint or inflight[1].done():
            task = asyncio.ensure_future(self._open_with_fallback(endpoint_id, config))
            self._connecting[endpoint_id] = (fingerprint, task)
            task.add_done_callback(lambda t, eid=endpoint_id: self._connect_done(eid, t))
            inflight = (fingerprint, task)

        return await asyncio.shield(inflight[1])

    def _connect_done(self, endpoint_id: str, task: asyncio.Task) -> None:
        current = self._connecting.get(endpoint_id)
        if current is not None and current[1] is task:
            del self._connecting[endpoint_id]
        if not task.cancelled() and task.exception() is not None:
            logger.debug("[%s] connect failed: %s", endpoint_id, task.exception())

    async def _open_with_fallback(self, endpoint_id: str, config: RemoteEndpointConfig) -> RemoteSession:
        try:
            return await self._open(endpoint_id, config, dict(config.headers))
        except Exception as e:
            has_id = any(k.lower() == SESSION_ID_HEADER for k in config.headers)
            if config.transport != "http" or has_id or classify_remote_error(e) is not RemoteErrorKind.SESSION_REQUIRED:
                raise
            session_id = uuid.uuid4().hex
            logger.warning("[%s] server demands a session id, retrying with %s", endpoint_id, session_id)
            return await self._open(endpoint_id, config, {**config.headers, SESSION_ID_HEADER: session_id})

    async def _open(self, endpoint_id: str, config: RemoteEndpointConfig, headers: dict[str, str]) -> RemoteSession:
        loop = asyncio.get_running_loop()
        record = RemoteSession(endpoint_id, config, config.fingerprint())
        ready: asyncio.Future = loop.create_future()
        record._ready = ready
        auth_required: asyncio.Future = loop.create_future()
        self._auth_waiters[endpoint_id] = auth_required

        auth = self._auth_provider(endpoint_id, config) if config.auth and config.transport == "http" else None
        logger.info("[%s] connecting...", endpoint_id)
        record._task = asyncio.create_task(self._run(record, headers, auth, ready), name=f"remote-session:{endpoint_id}")

        try:
            await asyncio.wait({ready, auth_required}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            record._closed.set()
            raise
        finally:
            if self._auth_waiters.get(endpoint_id) is auth_required:
                del self._auth_waiters[endpoint_id]

        if ready.done():
            ready.result()
            return record

        # the runner keeps waiting for the callback and registers the
        # session once authorization completes
        self._authorizing[endpoint_id] = record
        ready.add_done_callback(_consume_exception)
        raise AuthorizationPendingError(endpoint_id, auth_required.result())

    async def _run(
        self,
        record: RemoteSession,
        headers: dict[str, str],
        auth: httpx.Auth | None,
        ready: asyncio.Future,
    ) -> None:
        try:
            async with self._opener(record.endpoint_id, record.config, headers, auth) as (session, get_session_id):
                record.session = session
                record._get_session_id = get_session_id
                record.tools = list((await session.list_tools()).tools)
                self._sessions[record.endpoint_id] = record
                if self._authorizing.get(record.endpoint_id) is record:
                    del self._authorizing[record.endpoint_id]
                logger.info(
                    "[%s] loaded, tools: %s",
                    record.endpoint_id,
                    ", ".join(t.name for t in record.tools),
                )
                if not ready.done():
                    ready.set_result(record)
                await record._closed.wait()
        except Exception as e:
            if not ready.done():
                ready.set_exception(e)
            else:
                logger.warning("[%s] session ended: %s", record.endpoint_id, _error_message(e))
        finally:
            if not ready.done():
                ready.set_exception(SessionClosedError(f"session for '{record.endpoint_id}' closed"))
            if self._sessions.get(record.endpoint_id) is record and record._closed.is_set():
                del self._sessions[record.endpoint_id]

    async def disconnect(self, endpoint_id: str) -> bool:
        """Close the endpoint's session. Returns False if nothing was open."""
        record = self._sessions.pop(endpoint_id, None)
        authorizing = self._authorizing.pop(endpoint_id, None)
        pending = self._pending_auth.pop(endpoint_id, None)
        if pending is not None and not pending.code.done():
            pending.code.set_exception(SessionClosedError(f"authorization for '{endpoint_id}' abandoned"))
        if authorizing is not None:
            await self._close_record(authorizing)
        if record is None:
            return authorizing is not None
        await self._close_record(record)
        logger.info("[%s] disconnected", endpoint_id)
        return True

    async def _close_record(self, record: RemoteSession) -> None:
        record._closed.set()
        task = record._task
        if task is None or task.done():
            return
        done, _ = await asyncio.wait({task}, timeout=CLOSE_TIMEOUT)
        if not done:
            logger.debug("[%s] session did not close in time, cancelling", record.endpoint_id)
            task.cancel()

    async def disconnect_chat(self, chat_id: str | int) -> int:
        """Close every session scoped to one chat. Returns how many were closed."""
        prefix = f"chat_{chat_id}_"
        keys = [k for k in list(self._sessions) + list(self._authorizing) if k.startswith(prefix)]
        closed = 0
        for key in dict.fromkeys(keys):
            if await self.disconnect(key):
                closed += 1
        return closed

    async def close_all(self) -> None:
        for endpoint_id in list(self._sessions) + list(self._authorizing):
            await self.disconnect(endpoint_id)

    # ------------------------------------------------------------------
    # Tool access
    # ------------------------------------------------------------------

    async def list_tools(self, endpoint_id: str, config: RemoteEndpointConfig | None = None) -> list[Any]:
        config = config or self._configs.get(endpoint_id)
        if config is None:
            raise KeyError(f"Unknown endpoint: {endpoint_id}")
        record = await self.connect(endpoint_id, config)
        return record.tools

    async def call(
        self,
        endpoint_id: str,
        tool_name: str,
        arguments: dict[str, Any],
        config: RemoteEndpointConfig | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ToolResponse:
        """
        Invoke a tool on the endpoint.

        A session-invalid failure triggers exactly one reconnect and one
        retried call. An unauthorized failure starts the pending
        authorization flow. Failures are returned as text, never raised.
        """
        config = config or self._configs.get(endpoint_id)
        if config is None:
            return ToolResponse.from_text(f"MCP client not initialized: {endpoint_id}")
        token = cancel_token or CancellationToken()

        try:
            record = await self.connect(endpoint_id, config)
        except AuthorizationPendingError as e:
            return self._authorization_response(e)
        except Exception as e:
            return ToolResponse.from_text(f"{CALL_ERROR_PREFIX} {_error_message(e)}")

        for attempt in range(2):
            try:
                if not record.alive:
                    raise SessionClosedError(f"session for '{endpoint_id}' closed")
                result = await token.run(
                    record.session.call_tool(
                        tool_name,
                        arguments,
                        read_timeout_seconds=timedelta(seconds=config.timeout),
                    )
                )
                if result is None:
                    return ToolResponse.from_text("")
                return result_to_response(result)
            except Exception as e:
                kind = classify_remote_error(e)
                if kind is RemoteErrorKind.UNAUTHORIZED and config.auth is not None:
                    logger.warning("[%s] unauthorized, starting authorization", endpoint_id)
                    await self.disconnect(endpoint_id)
                    self.credential_store(endpoint_id, config).invalidate("tokens")
                    try:
                        await self.connect(endpoint_id, config)
                    except AuthorizationPendingError as ae:
                        return self._authorization_response(ae)
                    except Exception as ce:
                        return ToolResponse.from_text(f"{CALL_ERROR_PREFIX} {_error_message(ce)}")
                    return ToolResponse.from_text(f"{CALL_ERROR_PREFIX} {_error_message(e)}")

                if kind is RemoteErrorKind.SESSION_INVALID and attempt == 0:
                    logger.warning("[%s] session invalid (%s), reconnecting", endpoint_id, _error_message(e))
                    await self.disconnect(endpoint_id)
                    try:
                        record = await self.connect(endpoint_id, config)
                    except AuthorizationPendingError as ae:
                        return self._authorization_response(ae)
                    except Exception as ce:
                        return ToolResponse.from_text(f"{CALL_ERROR_PREFIX} {_error_message(ce)}")
                    continue

                logger.error("[%s] %s failed: %s", endpoint_id, tool_name, _error_message(e))
                return ToolResponse.from_text(f"{CALL_ERROR_PREFIX} {_error_message(e)}")

        return ToolResponse.from_text(f"{CALL_ERROR_PREFIX} retry failed")

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def credential_store(self, endpoint_id: str, config: RemoteEndpointConfig | None = None) -> EndpointCredentialStore:
        config = config or self._configs.get(endpoint_id)
        store_path = config.auth.store_path if config is not None and config.auth is not None else None
        return EndpointCredentialStore(endpoint_id, self.auth_store_dir, Path(store_path) if store_path else None)

    def _auth_handlers(
        self, endpoint_id: str
    ) -> tuple[Callable[[str], Awaitable[None]], Callable[[], Awaitable[tuple[str, str | None]]]]:
        """Redirect and callback hooks bridging the OAuth flow to the HTTP callback route."""

        async def redirect_handler(authorization_url: str) -> None:
            query = parse_qs(urlparse(authorization_url).query)
            state = (query.get("state") or [None])[0]
            self._pending_auth[endpoint_id] = PendingAuthorization(
                endpoint_id=endpoint_id,
                authorization_url=authorization_url,
                state=state,
                code=asyncio.get_running_loop().create_future(),
            )
            logger.warning("[%s] OAuth authorization required. Visit this URL to authorize:\n%s", endpoint_id, authorization_url)
            if self.on_authorization is not None:
                await self.on_authorization(endpoint_id, authorization_url)
            waiter = self._auth_waiters.get(endpoint_id)
            if waiter is not None and not waiter.done():
                waiter.set_result(authorization_url)

        async def callback_handler() -> tuple[str, str | None]:
            pending = self._pending_auth.get(endpoint_id)
            if pending is None:
                raise RuntimeError(f"No pending authorization for '{endpoint_id}'")
            return await pending.code

        return redirect_handler, callback_handler

    def _auth_provider(self, endpoint_id: str, config: RemoteEndpointConfig) -> OAuthClientProvider:
        auth = config.auth
        metadata = OAuthClientMetadata(
            client_name=auth.client_name,
            redirect_uris=[auth.callback_url],
            grant_types=["authorization_code", "refresh_token"],
            response_types=["code"],
            scope=" ".join(auth.scopes) or None,
        )
        redirect_handler, callback_handler = self._auth_handlers(endpoint_id)
        return PersistentOAuthProvider(
            server_url=config.url,
            client_metadata=metadata,
            storage=self.credential_store(endpoint_id, config),
            redirect_handler=redirect_handler,
            callback_handler=callback_handler,
            timeout=AUTH_CALLBACK_TIMEOUT,
        )

    def pending_authorizations(self) -> list[PendingAuthorization]:
        return list(self._pending_auth.values())

    def complete_pending_auth(self, state: str, code: str) -> bool:
        """
        Hand an authorization code to the flow waiting for it.

        ``state`` may be the OAuth state parameter or the endpoint id.

        Returns:
            True if a pending record existed and was completed
        """
        for endpoint_id, pending in list(self._pending_auth.items()):
            if state not in (endpoint_id, pending.state):
                continue
            del self._pending_auth[endpoint_id]
            if pending.code.done():
                return False
            pending.code.set_result((code, pending.state))
            logger.info("[%s] OAuth authorization code received", endpoint_id)
            return True
        return False

    def _authorization_response(self, error: AuthorizationPendingError) -> ToolResponse:
        return ToolResponse.from_text(f"{CALL_ERROR_PREFIX} {error}")
