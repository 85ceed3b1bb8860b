"""
Custom exceptions for the CLG MCP Server.
This module provides the exception hierarchy and the stable JSON-RPC error codes.
"""

from typing import Any, Optional

# JSON-RPC error codes. Clients branch on these, never renumber them.
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
RATE_LIMITED = -32000
RESOURCE_NOT_FOUND = -32001
NETWORK_FAILURE = -32002
SESSION_LIMIT = -32003
CONFIGURATION_FAILURE = -32004
UNAUTHORIZED = -32005


class CLGMCPError(Exception):
    """Base exception class for CLG MCP errors."""
    def __init__(
        self,
        message: str,
        code: int = INTERNAL_ERROR,
        data: Optional[Any] = None,
        original_exception: Optional[Exception] = None,
    ):
        self.message = message
        self.code = code
        self.data = data
        self.original_exception = original_exception
        super().__init__(self.message)

    def to_jsonrpc_error(self) -> dict:
        """Convert exception to JSON-RPC error object."""
        error = {
            'code': self.code,
            'message': self.message,
        }
        if self.data is not None:
            error['data'] = self.data
        return error


class AuthError(CLGMCPError):
    """
    Authentication error.

    Never serialized as a JSON-RPC error: the server turns it into an HTTP 401
    carrying `reason` as the machine-readable rejection cause.
    """
    def __init__(self, reason: str = "invalid credential", message: Optional[str] = None):
        self.reason = reason
        super().__init__(message or reason, code=UNAUTHORIZED)


class ParseError(CLGMCPError):
    """Request body is not valid JSON."""
    def __init__(self, message: str = "Parse error", original_exception: Optional[Exception] = None):
        super().__init__(message, code=PARSE_ERROR, original_exception=original_exception)


class InvalidRequestError(CLGMCPError):
    """Request body is JSON but not a valid request envelope."""
    def __init__(self, message: str = "Invalid Request", data: Optional[Any] = None):
        super().__init__(message, code=INVALID_REQUEST, data=data)


class MethodNotFoundError(CLGMCPError):
    """Method is not part of the dispatch table."""
    def __init__(self, method: str):
        self.method = method
        super().__init__("Method not found", code=METHOD_NOT_FOUND, data={'method': method})


class InvalidParamsError(CLGMCPError):
    """Request or tool parameters failed validation."""
    def __init__(self, message: str = "Invalid parameters", data: Optional[Any] = None):
        super().__init__(message, code=INVALID_PARAMS, data=data)


class UnknownToolError(InvalidParamsError):
    """Tool name is not in the published catalog."""
    def __init__(self, name: Any):
        self.name = name
        super().__init__(f"Unknown tool: {name}", data={'tool': name})


class InternalError(CLGMCPError):
    """Unexpected failure inside the server."""
    def __init__(self, message: str = "Internal server error", original_exception: Optional[Exception] = None):
        data = None
        if original_exception is not None:
            data = {
                'type': type(original_exception).__name__,
                'originalMessage': str(original_exception),
            }
        super().__init__(message, code=INTERNAL_ERROR, data=data, original_exception=original_exception)


class ToolExecutionError(CLGMCPError):
    """A Resource Provider raised while executing a tool."""
    def __init__(self, tool: str, original_exception: Exception):
        self.tool = tool
        super().__init__(
            f"Tool execution failed: {original_exception}",
            code=INTERNAL_ERROR,
            data={
                'tool': tool,
                'type': type(original_exception).__name__,
                'originalMessage': str(original_exception),
            },
            original_exception=original_exception,
        )


class RateLimitError(CLGMCPError):
    """Rate limit error."""
    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[float] = None):
        self.retry_after = retry_after
        data = {'retryAfter': retry_after} if retry_after is not None else None
        super().__init__(message, code=RATE_LIMITED, data=data)


class ResourceNotFoundError(CLGMCPError):
    """Requested resource does not exist."""
    def __init__(self, message: str = "Resource not found", data: Optional[Any] = None):
        super().__init__(message, code=RESOURCE_NOT_FOUND, data=data)


class SessionNotFoundError(ResourceNotFoundError):
    """A stream request named a session that is not in the registry."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__("Connection not found", data={'sessionId': session_id})


class NetworkError(CLGMCPError):
    """Network error while talking to the upstream resource site."""
    def __init__(self, message: str = "Network error occurred", original_exception: Optional[Exception] = None):
        super().__init__(message, code=NETWORK_FAILURE, original_exception=original_exception)


class SessionLimitError(CLGMCPError):
    """The registry is at capacity and refuses new stream sessions."""
    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Too many open sessions (limit {limit})", code=SESSION_LIMIT, data={'limit': limit})


class ConfigurationError(CLGMCPError):
    """Configuration error."""
    def __init__(self, message: str = "Configuration error occurred", original_exception: Optional[Exception] = None):
        super().__init__(message, code=CONFIGURATION_FAILURE, original_exception=original_exception)


class SinkClosedError(CLGMCPError):
    """A frame was written to a stream sink that is closed or saturated."""
    def __init__(self, message: str = "Stream sink is closed"):
        super().__init__(message, code=INTERNAL_ERROR)
