"""
MCP Protocol envelope handling.
This module parses inbound JSON-RPC request bodies and builds the paired responses.
"""

import json
import logging
import time
from typing import Any, Dict, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from clg_mcp.error_handling.exceptions import CLGMCPError, InvalidRequestError, ParseError

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"

RequestId = Union[str, int]


class JsonRpcRequest(BaseModel):
    """JSON-RPC 2.0 request model. The version tag is accepted as `jsonrpc` or `protocolVersion`."""
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    jsonrpc: Literal["2.0"] = Field(
        JSONRPC_VERSION,
        validation_alias=AliasChoices('jsonrpc', 'protocolVersion'),
    )
    method: str = Field(..., min_length=1)
    params: Optional[Any] = None
    id: Optional[RequestId] = None


class StreamRequest(JsonRpcRequest):
    """A request posted to the stream path, optionally addressed to a live session."""
    session_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices('sessionId', 'connectionId', 'session_id'),
    )


class JsonRpcResponse(BaseModel):
    """JSON-RPC 2.0 response model. Exactly one of `result` and `error` is serialized."""
    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    id: Optional[RequestId] = None
    result: Optional[Any] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> Dict[str, Any]:
        response = {'jsonrpc': self.jsonrpc, 'id': self.id}
        if self.error is not None:
            response['error'] = self.error
        else:
            response['result'] = self.result if self.result is not None else {}
        return response

    def to_stream_payload(self, session_id: str) -> Dict[str, Any]:
        """The response as delivered on a stream session, tagged with its session and delivery time."""
        payload = self.to_dict()
        payload['sessionId'] = session_id
        payload['timestamp'] = int(time.time() * 1000)
        return payload


def decode_body(body: Union[str, bytes]) -> Any:
    """
    Decode a raw request body into a JSON value.

    Raises:
        ParseError: If the body is not UTF-8 encoded JSON
    """
    try:
        if isinstance(body, bytes):
            body = body.decode('utf-8')
        return json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ParseError(original_exception=e)


def _validate(model: type, data: Any) -> JsonRpcRequest:
    if not isinstance(data, dict):
        raise InvalidRequestError("Invalid Request: expected a JSON object")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise InvalidRequestError(
            "Invalid Request",
            data={'errors': [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]},
        )


def parse_request(body: Union[str, bytes, Dict[str, Any]]) -> JsonRpcRequest:
    """
    Parse and validate a JSON-RPC request.

    Raises:
        ParseError: If the body is not JSON
        InvalidRequestError: If the JSON is not a request envelope
    """
    data = body if isinstance(body, dict) else decode_body(body)
    return _validate(JsonRpcRequest, data)


def parse_stream_request(body: Union[str, bytes, Dict[str, Any]]) -> StreamRequest:
    """Parse a stream-path request, which may carry a `sessionId`."""
    data = body if isinstance(body, dict) else decode_body(body)
    return _validate(StreamRequest, data)


def peek_request_id(body: Union[str, bytes]) -> Optional[RequestId]:
    """Best effort recovery of the `id` of a body that failed envelope validation."""
    try:
        data = decode_body(body)
    except ParseError:
        return None
    if isinstance(data, dict) and isinstance(data.get('id'), (str, int)) and not isinstance(data.get('id'), bool):
        return data['id']
    return None


def create_response(request_id: Optional[RequestId], result: Any) -> JsonRpcResponse:
    return JsonRpcResponse(id=request_id, result=result)


def create_error_response(
    request_id: Optional[RequestId],
    code: int,
    message: str,
    data: Optional[Any] = None,
) -> JsonRpcResponse:
    """
    Create a JSON-RPC error response.

    Args:
        request_id: The request ID to echo
        code: The error code
        message: The error message
        data: Optional additional error data

    Returns:
        JsonRpcResponse: The formatted error response
    """
    error = {
        "code": code,
        "message": message,
    }
    if data is not None:
        error["data"] = data
    return JsonRpcResponse(id=request_id, error=error)


def error_response_from_exception(request_id: Optional[RequestId], error: CLGMCPError) -> JsonRpcResponse:
    return JsonRpcResponse(id=request_id, error=error.to_jsonrpc_error())
