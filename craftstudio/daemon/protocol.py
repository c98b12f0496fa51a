"""
JSON-RPC 2.0 message models for the daemon control channel

Requests carry an integer id; responses echo it with ``result`` or ``error``.
Messages with a ``method`` and no pending id are server-push events.
"""

import json
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict


class RpcRequest(BaseModel):
    """Client -> daemon request"""
    jsonrpc: str = "2.0"
    id: int
    method: str
    params: Optional[Dict[str, Any]] = None

    def to_json(self) -> str:
        return json.dumps(self.model_dump(exclude_none=True))


class RpcErrorBody(BaseModel):
    model_config = ConfigDict(extra="allow")

    code: int = 0
    message: str = ""
    data: Any = None


class RpcMessage(BaseModel):
    """Any daemon -> client message (response or event)"""
    model_config = ConfigDict(extra="allow")

    jsonrpc: Optional[str] = None
    id: Optional[Union[int, str]] = None
    result: Any = None
    error: Optional[RpcErrorBody] = None
    method: Optional[str] = None
    params: Any = None

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "RpcMessage":
        return cls.model_validate(json.loads(raw))
