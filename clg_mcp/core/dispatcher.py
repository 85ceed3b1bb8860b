"""
Method dispatch for the CLG MCP Server.

Maps a parsed request to its handler and always returns a response: every
failure, including one raised by the Resource Provider, becomes a structured error.
"""

import inspect
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from clg_mcp.core.protocol_handler import (
    JsonRpcRequest,
    JsonRpcResponse,
    create_response,
    error_response_from_exception,
)
from clg_mcp.core.rate_limiter import RateLimiter
from clg_mcp.error_handling.exceptions import (
    CLGMCPError,
    InternalError,
    InvalidParamsError,
    MethodNotFoundError,
    ToolExecutionError,
    UnknownToolError,
)
from clg_mcp.tools.catalog import ToolCatalog

logger = logging.getLogger(__name__)


class Method(str, Enum):
    """Closed set of dispatchable methods."""
    INITIALIZE = 'handshake/initialize'
    ACK = 'handshake/ack'
    LIST_TOOLS = 'catalog/list'
    CALL_TOOL = 'tool/invoke'


# Wire names sent by MCP clients, resolved to the same handlers
METHOD_ALIASES: Dict[str, Method] = {
    'initialize': Method.INITIALIZE,
    'initialized': Method.ACK,
    'notifications/initialized': Method.ACK,
    'tools/list': Method.LIST_TOOLS,
    'tools/call': Method.CALL_TOOL,
}


def resolve_method(name: str) -> Optional[Method]:
    try:
        return Method(name)
    except ValueError:
        return METHOD_ALIASES.get(name)


class MethodDispatcher:
    """
    Resolves requests through a static method table and a static tool catalog.

    The provider is anything with `invoke(tool_name, arguments)`, sync or async.
    """

    def __init__(
        self,
        provider: Any,
        catalog: Optional[ToolCatalog] = None,
        server_info: Optional[Dict[str, Any]] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.provider = provider
        self.catalog = catalog or ToolCatalog()
        self.rate_limiter = rate_limiter
        info = server_info or {}
        self._server_descriptor = {
            'protocolVersion': info.get('protocol_version', '2024-11-05'),
            'capabilities': {
                'tools': {},
                'resources': {},
            },
            'serverInfo': {
                'name': info.get('name', 'clg-mcp'),
                'version': info.get('version', '1.0.0'),
                'description': info.get('description', "Cyndi's List Genealogy MCP Server"),
            },
        }
        self._handlers: Dict[Method, Callable[[JsonRpcRequest, str], Awaitable[Any]]] = {
            Method.INITIALIZE: self._handle_initialize,
            Method.ACK: self._handle_ack,
            Method.LIST_TOOLS: self._handle_list_tools,
            Method.CALL_TOOL: self._handle_call_tool,
        }

    @classmethod
    def from_config(cls, config: Dict[str, Any], provider: Any, rate_limiter: Optional[RateLimiter] = None) -> "MethodDispatcher":
        return cls(
            provider,
            server_info={
                'name': config.get('server_name'),
                'version': config.get('server_version'),
                'description': config.get('server_description'),
                'protocol_version': config.get('protocol_version'),
            },
            rate_limiter=rate_limiter,
        )

    async def dispatch(self, request: JsonRpcRequest, client_key: str = "default") -> JsonRpcResponse:
        """
        Dispatch one request. Never raises; the response always echoes `request.id`.

        Args:
            request: The parsed request
            client_key: Rate limit key of the caller (remote address)
        """
        method = resolve_method(request.method)
        try:
            if method is None:
                raise MethodNotFoundError(request.method)
            result = await self._handlers[method](request, client_key)
            return create_response(request.id, result)
        except CLGMCPError as e:
            if not isinstance(e, (MethodNotFoundError, UnknownToolError)):
                logger.info(f"Request {request.id!r} ({request.method}) failed: {e.message}")
            return error_response_from_exception(request.id, e)
        except Exception as e:
            logger.exception(f"Unexpected error dispatching {request.method}")
            return error_response_from_exception(request.id, InternalError(original_exception=e))

    async def _handle_initialize(self, request: JsonRpcRequest, client_key: str) -> Dict[str, Any]:
        return json.loads(json.dumps(self._server_descriptor))

    async def _handle_ack(self, request: JsonRpcRequest, client_key: str) -> Dict[str, Any]:
        return {}

    async def _handle_list_tools(self, request: JsonRpcRequest, client_key: str) -> Dict[str, Any]:
        return {'tools': self.catalog.listing()}

    async def _handle_call_tool(self, request: JsonRpcRequest, client_key: str) -> Dict[str, Any]:
        params = request.params or {}
        if not isinstance(params, dict):
            raise InvalidParamsError("params must be an object with 'name' and 'arguments'")
        name = params.get('name')
        descriptor = self.catalog.get(name)
        if descriptor is None:
            raise UnknownToolError(name)

        if self.rate_limiter is not None:
            await self.rate_limiter.acquire(client_key)

        arguments = params.get('arguments')
        try:
            result = self.provider.invoke(descriptor.name.value, arguments)
            if inspect.isawaitable(result):
                result = await result
        except CLGMCPError as e:
            # Typed provider failures keep their code, with the diagnostic attached
            if e.data is None:
                e.data = {'type': type(e).__name__, 'originalMessage': e.message}
            raise
        except Exception as e:
            logger.warning(f"Tool {descriptor.name.value} failed: {e}")
            raise ToolExecutionError(descriptor.name.value, e)

        return {
            'content': [
                {
                    'type': 'text',
                    'text': json.dumps(result, indent=2, default=str),
                },
            ],
        }
