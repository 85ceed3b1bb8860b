"""
CLG MCP Server implementation.

HTTP front door: routes inbound requests to the one-shot JSON-RPC path, SSE
session establishment, or SSE message injection.
"""

import argparse
import asyncio
import inspect
import logging
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

import aiohttp.web as web
from aiohttp_sse import sse_response

from clg_mcp.config import load_config
from clg_mcp.core.authenticator import BearerAuthenticator
from clg_mcp.core.dispatcher import MethodDispatcher
from clg_mcp.core.logging_config import setup_logging_from_config
from clg_mcp.core.protocol_handler import (
    JsonRpcRequest,
    error_response_from_exception,
    parse_request,
    parse_stream_request,
    peek_request_id,
)
from clg_mcp.core.rate_limiter import RateLimiter
from clg_mcp.core.session_manager import (
    CONNECTED_EVENT,
    RESPONSE_EVENT,
    ConnectionRegistry,
    SessionChannel,
    SSEMessage,
)
from clg_mcp.error_handling.exceptions import (
    AuthError,
    CLGMCPError,
    ConfigurationError,
    InternalError,
    InvalidRequestError,
    ParseError,
    SessionLimitError,
    SessionNotFoundError,
    SinkClosedError,
)
from clg_mcp.tools.provider import create_provider

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, POST, OPTIONS',
    'Access-Control-Allow-Headers': 'Content-Type, Authorization',
}


def _now_ms() -> int:
    return int(time.time() * 1000)


class ProtocolServer:
    """
    Composes authentication, dispatch and the stream session registry behind an aiohttp application.

    Routes:
        OPTIONS *             CORS preflight
        GET  /health          liveness + live session count
        GET  /                service descriptor
        GET  <stream path>    open an SSE session (auth)
        POST <stream path>    submit a request for delivery on a session (auth)
        POST <default path>   one-shot JSON-RPC exchange (auth)
    """

    def __init__(
        self,
        config: Dict[str, Any],
        provider: Optional[Any] = None,
        authenticator: Optional[BearerAuthenticator] = None,
        registry: Optional[ConnectionRegistry] = None,
        dispatcher: Optional[MethodDispatcher] = None,
    ):
        self.config = config
        http_config = config.get('http', {})
        self.stream_path = http_config.get('stream_path', '/sse')
        self.default_path = http_config.get('default_path', '/')

        self.authenticator = authenticator or BearerAuthenticator.from_config(config)
        self.registry = registry or ConnectionRegistry.from_config(config)
        self.provider = provider or create_provider(config)
        if dispatcher is None:
            rate_limiter = None
            if config.get('rate_limit', {}).get('enabled', True):
                rate_limiter = RateLimiter.from_config(config)
            dispatcher = MethodDispatcher.from_config(config, self.provider, rate_limiter)
        self.dispatcher = dispatcher

        self._deliveries: Set[asyncio.Task] = set()
        self.app = self.create_app()

    def create_app(self) -> web.Application:
        app = web.Application(middlewares=[self._cors_middleware, self._error_middleware])
        app.router.add_get('/health', self.handle_health)
        app.router.add_get(self.stream_path, self.handle_stream_open, allow_head=False)
        app.router.add_post(self.stream_path, self.handle_stream_message)
        app.router.add_post(self.default_path, self.handle_rpc)
        if self.stream_path != '/':
            app.router.add_get('/', self.handle_info)
        app.on_startup.append(self._on_startup)
        app.on_shutdown.append(self._on_shutdown)
        app.on_cleanup.append(self._on_cleanup)
        return app

    # --- middlewares ---

    @web.middleware
    async def _cors_middleware(self, request: web.Request, handler):
        if request.method == 'OPTIONS':
            return web.Response(status=200, headers=CORS_HEADERS)
        try:
            response = await handler(request)
        except web.HTTPException as e:
            e.headers.update(CORS_HEADERS)
            raise
        if not response.prepared:
            response.headers.update(CORS_HEADERS)
        return response

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler):
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            logger.exception(f"Unhandled error on {request.method} {request.path}")
            error = InternalError(original_exception=e)
            return web.json_response(error_response_from_exception(None, error).to_dict(), status=500)

    # --- helpers ---

    def _client_key(self, request: web.Request) -> str:
        return request.remote or 'unknown'

    def _check_auth(self, request: web.Request) -> Optional[web.Response]:
        """None if the request may proceed, else the 401 response to return."""
        try:
            self.authenticator.authenticate(request.headers.get('Authorization')).raise_for_denied()
        except AuthError as e:
            logger.warning(f"Rejected {request.method} {request.path} from {request.remote}: {e.reason}")
            return self._unauthorized(e)
        return None

    @staticmethod
    def _unauthorized(error: AuthError) -> web.Response:
        return web.json_response(
            {
                'error': 'Unauthorized',
                'reason': error.reason,
                'message': error.message,
                'timestamp': datetime.now(timezone.utc).isoformat(),
            },
            status=401,
            headers={'WWW-Authenticate': 'Bearer'},
        )

    @staticmethod
    def _error_reply(request_id: Any, error: CLGMCPError, status: int) -> web.Response:
        return web.json_response(error_response_from_exception(request_id, error).to_dict(), status=status)

    # --- handlers ---

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({'status': 'healthy', 'activeSessionCount': len(self.registry)})

    async def handle_info(self, request: web.Request) -> web.Response:
        return web.json_response({
            'name': self.config.get('server_name', 'clg-mcp'),
            'version': self.config.get('server_version', '1.0.0'),
            'description': self.config.get('server_description'),
            'protocol': f"MCP {self.config.get('protocol_version', '2024-11-05')}",
            'transports': ['http', 'sse'],
            'endpoints': {
                'health': '/health',
                'rpc': f"{self.default_path} (POST with JSON-RPC)",
                'stream': f"{self.stream_path} (GET to open, POST with sessionId to send)",
            },
        })

    async def handle_rpc(self, request: web.Request) -> web.Response:
        """One-shot exchange: the Response is the HTTP body."""
        denied = self._check_auth(request)
        if denied is not None:
            return denied

        body = await request.read()
        try:
            rpc_request = parse_request(body)
        except ParseError as e:
            return self._error_reply(None, e, status=400)
        except InvalidRequestError as e:
            return self._error_reply(peek_request_id(body), e, status=400)

        response = await self.dispatcher.dispatch(rpc_request, client_key=self._client_key(request))
        return web.json_response(response.to_dict())

    async def handle_stream_open(self, request: web.Request) -> web.StreamResponse:
        denied = self._check_auth(request)
        if denied is not None:
            return denied

        channel = self.registry.create_channel()
        try:
            session_id = self.registry.open(channel, remote=request.remote)
        except SessionLimitError as e:
            logger.warning(f"Refusing stream from {request.remote}: {e.message}")
            return self._error_reply(None, e, status=503)

        # Queued before the response starts, so it is always the first frame
        channel.send(SSEMessage.from_payload(
            CONNECTED_EVENT,
            {'sessionId': session_id, 'connectionId': session_id, 'protocol': 'sse', 'timestamp': _now_ms()},
            id='0',
        ))

        try:
            async with sse_response(request, sep='\n', headers=CORS_HEADERS) as resp:
                await self._pump(session_id, channel, resp)
        finally:
            self.registry.close(session_id)
        return resp

    async def _pump(self, session_id: str, channel: SessionChannel, resp) -> None:
        """Write queued frames to the client until the session closes or the client goes away."""
        try:
            while True:
                message = await channel.receive()
                if message is None:
                    break
                await resp.send(message.data, id=message.id, event=message.event, retry=message.retry)
        except ConnectionResetError:
            logger.info(f"Client of session {session_id} disconnected")

    async def handle_stream_message(self, request: web.Request) -> web.Response:
        """
        Accept a request addressed to a stream session.

        The HTTP reply only acknowledges receipt; the Response is delivered later
        as a `tool-response` frame, whether the tool succeeded or not.
        """
        denied = self._check_auth(request)
        if denied is not None:
            return denied

        body = await request.read()
        try:
            stream_request = parse_stream_request(body)
        except ParseError as e:
            return self._error_reply(None, e, status=400)
        except InvalidRequestError as e:
            return self._error_reply(peek_request_id(body), e, status=400)

        client_key = self._client_key(request)
        session_id = stream_request.session_id
        if session_id is None:
            response = await self.dispatcher.dispatch(stream_request, client_key=client_key)
            return web.json_response(response.to_dict())

        if self.registry.lookup(session_id) is None:
            logger.info(f"Request {stream_request.id!r} names unknown session {session_id}")
            return self._error_reply(stream_request.id, SessionNotFoundError(session_id), status=400)

        self.registry.touch(session_id)
        task = asyncio.create_task(self._dispatch_to_session(session_id, stream_request, client_key))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)
        return web.json_response({'status': 'sent'})

    async def _dispatch_to_session(self, session_id: str, rpc_request: JsonRpcRequest, client_key: str) -> None:
        try:
            response = await self.dispatcher.dispatch(rpc_request, client_key=client_key)
        except Exception as e:
            logger.exception(f"Dispatch for session {session_id} failed")
            response = error_response_from_exception(rpc_request.id, InternalError(original_exception=e))

        message = SSEMessage.from_payload(
            RESPONSE_EVENT,
            response.to_stream_payload(session_id),
            id=None if rpc_request.id is None else str(rpc_request.id),
        )
        try:
            self.registry.deliver(session_id, message)
        except (SessionNotFoundError, SinkClosedError):
            logger.warning(f"Dropped response {rpc_request.id!r}: session {session_id} closed before delivery")

    # --- lifecycle ---

    async def _on_startup(self, app: web.Application) -> None:
        self.registry.start()
        logger.info(f"{self.config.get('server_name', 'clg-mcp')} ready: rpc={self.default_path} stream={self.stream_path}")

    async def _on_shutdown(self, app: web.Application) -> None:
        # Closing every session ends the open streams so the server can stop
        await self.registry.stop()
        for task in list(self._deliveries):
            task.cancel()
        if self._deliveries:
            await asyncio.gather(*self._deliveries, return_exceptions=True)

    async def _on_cleanup(self, app: web.Application) -> None:
        close = getattr(self.provider, 'close', None)
        if close is not None:
            result = close()
            if inspect.isawaitable(result):
                await result
        logger.info("Server stopped")


def create_app(config: Optional[Dict[str, Any]] = None, **components: Any) -> web.Application:
    """Build the aiohttp application; without a config, defaults plus environment overrides are used."""
    if config is None:
        config = load_config()
    return ProtocolServer(config, **components).app


def main_cli() -> None:
    """Command line entry point."""
    parser = argparse.ArgumentParser(description='CLG MCP Server')
    parser.add_argument('--config', default=None, help='Path to YAML configuration file')
    parser.add_argument('--host', default=None, help='Bind address (overrides http.host)')
    parser.add_argument('--port', type=int, default=None, help='Bind port (overrides http.port)')
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error(f"Failed to load configuration: {e.message}")
        sys.exit(1)

    logging_config = dict(config.get('logging', {}))
    if config.get('debug'):
        logging_config['level'] = 'DEBUG'
    setup_logging_from_config(logging_config)

    host = args.host or config['http']['host']
    port = args.port or config['http']['port']
    server = ProtocolServer(config)
    try:
        web.run_app(server.app, host=host, port=port, print=lambda msg: logger.info(msg))
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception as e:
        logger.error(f"Server error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main_cli()
