"""
Electrum JSON-RPC envelopes.

Requests:       {"jsonrpc": "2.0", "method": ..., "params": [...], "id": ...}
Responses:      {"id": ..., "result": ...} or {"id": ..., "error": ...}
Notifications:  {"method": "<name>.subscribe", "params": [...]}

Responses and notifications are told apart by the presence of "id" vs
"method"; an envelope never carries both meanings.

Subscription routing keys are the subscribe method name, suffixed with
"-<first param>" when the first param is a string (e.g. a script hash):

    blockchain.headers.subscribe
    blockchain.scripthash.subscribe-<scripthash>
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, Field, ValidationError

SUBSCRIBE_SUFFIX = ".subscribe"
UNSUBSCRIBE_SUFFIX = ".unsubscribe"


class ProtocolError(Exception):
    """Malformed or error-carrying RPC response."""

    def __init__(self, message: str, code: int | None = None, method: str | None = None):
        super().__init__(message)
        self.code = code
        self.method = method


class RpcRequest(BaseModel):
    jsonrpc: str = "2.0"
    method: str
    params: list[Any] = Field(default_factory=list)
    id: int

    def serialize(self) -> bytes:
        return self.model_dump_json().encode("utf-8")


class RpcResponse(BaseModel):
    id: int | str | None
    result: Any = None
    error: Any = None

    @property
    def has_result(self) -> bool:
        # A null result is valid (e.g. status of an unused script hash)
        return "result" in self.model_fields_set

    def unwrap(self, method: str | None = None) -> Any:
        """Return the result or raise ProtocolError."""
        if self.error is not None:
            if isinstance(self.error, dict):
                raise ProtocolError(
                    str(self.error.get("message", self.error)),
                    code=self.error.get("code"),
                    method=method,
                )
            raise ProtocolError(str(self.error), method=method)
        if not self.has_result:
            raise ProtocolError("No result", method=method)
        return self.result


class RpcNotification(BaseModel):
    method: str
    params: list[Any] = Field(default_factory=list)

    @property
    def is_subscription(self) -> bool:
        return self.method.endswith("subscribe")

    @property
    def routing_key(self) -> str:
        return subscription_key(self.method, self.params)


def subscription_key(method: str, params: list[Any] | tuple[Any, ...]) -> str:
    if params and isinstance(params[0], str):
        return f"{method}-{params[0]}"
    return method


def subscribe_method(method: str) -> str:
    return method if method.endswith(SUBSCRIBE_SUFFIX) else f"{method}{SUBSCRIBE_SUFFIX}"


def parse_message(data: bytes | str) -> RpcResponse | RpcNotification:
    """
    Decode one wire message.

    Raises:
        ProtocolError: if the payload is not a JSON object of either shape
    """
    try:
        obj = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e

    if not isinstance(obj, dict):
        raise ProtocolError(f"Unexpected message type: {type(obj).__name__}")

    try:
        if "id" in obj and obj["id"] is not None:
            return RpcResponse.model_validate(obj)
        if "method" in obj:
            return RpcNotification.model_validate(obj)
    except ValidationError as e:
        raise ProtocolError(f"Malformed message: {e}") from e

    raise ProtocolError("Message carries neither id nor method")
