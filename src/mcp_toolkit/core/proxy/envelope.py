"""
JSON-RPC 2.0 envelope types.

Defines the request, response and error documents exchanged with both the
gateway client and the backends.
"""

import json
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError, model_validator

from mcp_toolkit.core.exceptions import InvalidRequestError, ProtocolError

JSONRPC_VERSION = "2.0"
INITIALIZED_NOTIFICATION = "notifications/initialized"

RequestId = Union[int, str]


class JsonRpcError(BaseModel):
    """Error member of a response."""

    code: int = Field(..., description="Error code")
    message: str = Field(..., description="Short error description")
    data: Optional[Any] = Field(default=None, description="Additional error information")

    def to_dict(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


class JsonRpcRequest(BaseModel):
    """Request or notification.

    A request without an ``id`` member is a notification and is never
    answered. An explicit ``"id": null`` still counts as a request.
    """

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    method: str = Field(..., description="Method name")
    params: Optional[Union[Dict[str, Any], List[Any]]] = Field(default=None, description="Method parameters")
    id: Optional[RequestId] = Field(default=None, description="Request ID")

    @property
    def is_notification(self) -> bool:
        return "id" not in self.model_fields_set

    @classmethod
    def notification(cls, method: str, params: Optional[Dict[str, Any]] = None) -> "JsonRpcRequest":
        if params is None:
            return cls(method=method)
        return cls(method=method, params=params)

    def to_dict(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": self.method}
        if self.params is not None:
            message["params"] = self.params
        if not self.is_notification:
            message["id"] = self.id
        return message


class JsonRpcResponse(BaseModel):
    """Response carrying exactly one of ``result`` or ``error``."""

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    id: Optional[RequestId] = Field(default=None, description="ID of the answered request")
    result: Optional[Any] = Field(default=None, description="Response result")
    error: Optional[JsonRpcError] = Field(default=None, description="Error information")

    @model_validator(mode="after")
    def check_result_xor_error(self) -> "JsonRpcResponse":
        has_result = "result" in self.model_fields_set
        has_error = "error" in self.model_fields_set and self.error is not None
        if has_result == has_error:
            raise ValueError("response must carry exactly one of result or error")
        return self

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @classmethod
    def success(cls, request_id: Optional[RequestId], result: Any) -> "JsonRpcResponse":
        return cls(id=request_id, result=result)

    @classmethod
    def failure(
        cls,
        request_id: Optional[RequestId],
        code: int,
        message: str,
        data: Optional[Any] = None,
    ) -> "JsonRpcResponse":
        return cls(id=request_id, error=JsonRpcError(code=int(code), message=message, data=data))

    def to_dict(self) -> Dict[str, Any]:
        response: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": self.id}
        if self.error is not None:
            response["error"] = self.error.to_dict()
        else:
            response["result"] = self.result
        return response


def encode(message: Union[JsonRpcRequest, JsonRpcResponse]) -> str:
    """Serialize a message to a single line of JSON."""
    return json.dumps(message.to_dict(), separators=(",", ":"), ensure_ascii=False)


def is_response(payload: Dict[str, Any]) -> bool:
    """Whether a decoded message is a response rather than a request."""
    return "method" not in payload and ("result" in payload or "error" in payload)


def parse_request(raw: Union[str, bytes, Dict[str, Any]]) -> JsonRpcRequest:
    """
    Decode an incoming request.

    Raises:
        InvalidRequestError: For malformed JSON or an invalid envelope. The
            request id, when one could be read, is kept in ``details["id"]``.
    """
    if isinstance(raw, (str, bytes)):
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidRequestError(f"Invalid JSON: {e}") from e
    else:
        payload = raw

    if not isinstance(payload, dict):
        raise InvalidRequestError("Request must be a JSON object")

    request_id = payload.get("id")
    details = {"id": request_id if isinstance(request_id, (int, str)) else None}

    if payload.get("jsonrpc") != JSONRPC_VERSION:
        raise InvalidRequestError("Invalid JSON-RPC version", details=details)
    if not isinstance(payload.get("method"), str):
        raise InvalidRequestError("Missing or invalid method", details=details)

    try:
        return JsonRpcRequest.model_validate(payload)
    except ValidationError as e:
        raise InvalidRequestError(f"Invalid request: {e.errors()[0]['msg']}", details=details) from e


def parse_response(payload: Dict[str, Any]) -> JsonRpcResponse:
    """
    Validate a decoded response from a backend.

    Raises:
        ProtocolError: If the document is not a valid JSON-RPC response.
    """
    try:
        return JsonRpcResponse.model_validate(payload)
    except ValidationError as e:
        raise ProtocolError(f"Malformed response from backend: {e.errors()[0]['msg']}") from e
