"""Data models for tool definitions, tool content, tool calls, and conversation messages."""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field

TOOL_ID_SEPARATOR = "__"


def make_tool_id(server_name: str, tool_name: str) -> str:
    """Build the ``server__tool`` identifier used for routing and config lookup."""
    return f"{server_name}{TOOL_ID_SEPARATOR}{tool_name}"


def split_tool_id(tool_id: str) -> Tuple[str, str]:
    """
    Split a ``server__tool`` identifier back into its two parts.

    Raises ValueError if the identifier has no separator or an empty part.
    """
    server_name, sep, tool_name = tool_id.partition(TOOL_ID_SEPARATOR)
    if not sep or not server_name or not tool_name:
        raise ValueError(f"Invalid tool identifier: {tool_id!r}")
    return server_name, tool_name


class ToolDef(BaseModel):
    """A tool as declared by a connected server."""

    name: str  # bare name on the server, e.g. "get_transcripts"
    server: str  # e.g. "youtube-transcript"
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=dict)

    @property
    def tool_id(self) -> str:
        """Full identifier as ``server__tool``."""
        return make_tool_id(self.server, self.name)

    @property
    def model_description(self) -> str:
        """Description prefixed with the owning server so the model can tell tools apart."""
        return f"[{self.server}] {self.description}"

    def to_openai(self) -> Dict[str, Any]:
        """Function-tool entry for an OpenAI-style chat completion request."""
        return {
            "type": "function",
            "function": {
                "name": self.tool_id,
                "description": self.model_description,
                "parameters": self.input_schema,
            },
        }


ContentKind = Literal["text", "structured", "binary"]


def _is_plain_text_part(part: Any) -> bool:
    return (
        isinstance(part, dict)
        and part.get("type") == "text"
        and isinstance(part.get("text"), str)
        and set(part) <= {"type", "text", "annotations"}
    )


class ToolContent(BaseModel):
    """
    Tool output normalized to one of three shapes.

    Servers return plain text parts, structured payloads, or base64 media.
    The registry resolves every ``tools/call`` result into one of these so
    the dispatcher and transformers never inspect raw protocol payloads.
    """

    kind: ContentKind
    text: str = ""
    data: Any = None
    mime_type: Optional[str] = None

    @classmethod
    def from_raw(cls, value: Any) -> "ToolContent":
        if isinstance(value, str):
            return cls(kind="text", text=value)
        if isinstance(value, (bytes, bytearray)):
            return cls(kind="binary", data=bytes(value), mime_type="application/octet-stream")
        return cls(kind="structured", data=value)

    @classmethod
    def from_result(cls, result: Dict[str, Any]) -> "ToolContent":
        """Resolve an MCP ``tools/call`` result into a ToolContent."""
        if result.get("structuredContent") is not None:
            return cls(kind="structured", data=result["structuredContent"])

        parts = result.get("content", [])
        if not isinstance(parts, list):
            return cls.from_raw(parts)
        if not parts:
            return cls(kind="text", text="")

        if all(_is_plain_text_part(p) for p in parts):
            return cls(kind="text", text="\n".join(p["text"] for p in parts))

        if len(parts) == 1 and isinstance(parts[0], dict):
            part = parts[0]
            if part.get("type") in ("image", "audio") and isinstance(part.get("data"), str):
                try:
                    decoded = base64.b64decode(part["data"], validate=True)
                except (binascii.Error, ValueError):
                    return cls(kind="structured", data=parts)
                return cls(kind="binary", data=decoded, mime_type=part.get("mimeType"))

        return cls(kind="structured", data=parts)

    def to_jsonable(self) -> Any:
        """JSON-serializable form sent back to the model."""
        if self.kind == "text":
            return self.text
        if self.kind == "binary":
            return {
                "mimeType": self.mime_type,
                "data": base64.b64encode(self.data or b"").decode("ascii"),
            }
        return self.data

    def display(self) -> str:
        """Human-readable form for the caller-facing trace."""
        if self.kind == "text":
            return self.text
        if self.kind == "binary":
            return f"[binary content: {self.mime_type or 'unknown type'}, {len(self.data or b'')} bytes]"
        return json.dumps(self.data, indent=2, ensure_ascii=False, default=str)


class ToolCallRequest(BaseModel):
    """A tool call requested by the model."""

    id: str
    tool_id: str  # server__tool
    arguments: str = "{}"  # serialized JSON, as the model produced it

    def to_openai(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.tool_id, "arguments": self.arguments},
        }

    @classmethod
    def from_openai(cls, raw: Dict[str, Any]) -> "ToolCallRequest":
        function = raw.get("function") or {}
        arguments = function.get("arguments", "{}")
        if not isinstance(arguments, str):
            # Some backends (Ollama) return arguments as an object
            arguments = json.dumps(arguments, ensure_ascii=False)
        return cls(id=raw.get("id") or "", tool_id=function.get("name", ""), arguments=arguments)


Role = Literal["user", "assistant", "tool", "system"]


class ConversationMessage(BaseModel):
    """One message in the conversation history of a query."""

    role: Role
    content: str = ""
    tool_calls: Optional[List[ToolCallRequest]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    @classmethod
    def user(cls, content: str) -> "ConversationMessage":
        return cls(role="user", content=content)

    @classmethod
    def tool_result(cls, call_id: str, tool_id: str, content: str) -> "ConversationMessage":
        return cls(role="tool", content=content, tool_call_id=call_id, name=tool_id)

    def to_openai(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [call.to_openai() for call in self.tool_calls]
        if self.tool_call_id is not None:
            message["tool_call_id"] = self.tool_call_id
        if self.name is not None:
            message["name"] = self.name
        return message
