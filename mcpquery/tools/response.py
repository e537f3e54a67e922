"""Normalized tool responses and the coercion applied to transformer output."""

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from mcpquery.errors import ResponseValidationError

logger = logging.getLogger(__name__)


class NormalizedToolResponse(BaseModel):
    """What a response transformer hands back: a summary, artifact paths, and a payload."""

    message: str = ""
    paths: Dict[str, str] = Field(default_factory=dict)
    raw_content: Any = None

    def to_payload(self) -> Dict[str, Any]:
        """JSON-ready form, using the ``rawContent`` key the model sees."""
        return {"message": self.message, "paths": dict(self.paths), "rawContent": self.raw_content}


def create_tool_response(
    message: Optional[str] = None,
    paths: Optional[Dict[str, str]] = None,
    raw_content: Any = None,
) -> NormalizedToolResponse:
    """Build a response with every missing field set to its default."""
    return NormalizedToolResponse(message=message or "", paths=paths or {}, raw_content=raw_content)


def validate_tool_response(value: Any, strict: bool = False) -> NormalizedToolResponse:
    """
    Coerce any value into a NormalizedToolResponse.

    Valid fields are kept; anything missing or of the wrong type falls back
    to its default. Already-normalized input comes back unchanged.

    Args:
        value: Transformer output (a NormalizedToolResponse or a dict with
            ``message``, ``paths`` and ``rawContent``/``raw_content``).
        strict: Raise ResponseValidationError instead of coercing.
    """
    if isinstance(value, NormalizedToolResponse):
        return value.model_copy(deep=True)

    problems: List[str] = []

    if not isinstance(value, dict):
        problems.append(f"expected a mapping, got {type(value).__name__}")
        value = {}

    message = value.get("message", "")
    if not isinstance(message, str):
        problems.append("message is not a string")
        message = ""

    paths = value.get("paths", {})
    if not isinstance(paths, dict):
        problems.append("paths is not a mapping")
        paths = {}
    else:
        valid_paths = {k: v for k, v in paths.items() if isinstance(k, str) and isinstance(v, str)}
        if len(valid_paths) != len(paths):
            problems.append("paths contains non-string entries")
        paths = valid_paths

    if "rawContent" in value:
        raw_content = value["rawContent"]
    else:
        raw_content = value.get("raw_content")

    if problems:
        detail = "; ".join(problems)
        if strict:
            raise ResponseValidationError(f"Invalid tool response: {detail}")
        logger.warning("Invalid tool response, using defaults: %s", detail)

    return NormalizedToolResponse(message=message, paths=paths, raw_content=raw_content)


def merge_tool_responses(responses: List[Any]) -> NormalizedToolResponse:
    """
    Merge several responses into one.

    Messages are joined by newlines, paths are merged (later wins), and raw
    contents are kept as-is when there is one or gathered into a list.
    """
    if not responses:
        return create_tool_response()

    validated = [validate_tool_response(r) for r in responses]

    merged_paths: Dict[str, str] = {}
    for response in validated:
        merged_paths.update(response.paths)

    raw_contents = [r.raw_content for r in validated if r.raw_content is not None]
    if len(raw_contents) == 1:
        merged_raw = raw_contents[0]
    elif raw_contents:
        merged_raw = raw_contents
    else:
        merged_raw = None

    return NormalizedToolResponse(
        message="\n".join(r.message for r in validated if r.message),
        paths=merged_paths,
        raw_content=merged_raw,
    )
