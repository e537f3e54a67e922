"""
YouTube transcript transformer.

Turns the output of the ``youtube-transcript`` server's ``get_transcripts``
tool into saved artifacts (plain transcript, raw JSON, Markdown summary) and
a short message for the trace. Long transcripts are summarized chunk by
chunk and the chunk summaries merged.
"""

import json
import logging
import re
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from mcpquery.mcp.schema import ConversationMessage, ToolContent
from mcpquery.providers.base import Provider
from mcpquery.storage.filesystem import FileSystemStorage
from mcpquery.tools.response import NormalizedToolResponse, create_tool_response

logger = logging.getLogger(__name__)

CHUNK_SIZE = 30000  # characters
TOKEN_LIMIT = 64000
SUMMARY_TEMPERATURE = 0.3

_CJK = re.compile(r"[\u4e00-\u9fa5]")
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_VIDEO_ID = re.compile(r"[\w-]+")

SUMMARY_SYSTEM_PROMPT = """You are a professional content summarization assistant. \
Summarize the main points and key information of the following video transcript in detail:
1. Keep all important points and key details
2. Preserve the logical structure of the original content
3. Use clear headings and subheadings
4. Keep concrete numbers for important data
5. Keep the key explanations of technical concepts
6. For discussions or debates, keep every side's position"""

MERGE_SYSTEM_PROMPT = """You are a professional content summarization assistant. \
Merge the following partial summaries into one coherent, structured summary:
1. Keep all important points and key details
2. Make the parts flow logically into each other
3. Use clear headings and subheadings
4. Keep concrete numbers for important data
5. Keep the key explanations of technical concepts
6. For discussions or debates, keep every side's position
7. Keep as much of the original length as possible; do not over-compress"""


# ── Text helpers ──────────────────────────────────────────────────────────

def estimate_tokens(text: str, chunked: bool = False) -> Tuple[int, int, int]:
    """
    Rough token estimate for a summarization request.

    CJK characters count as 2 tokens, everything else as 1. The output budget
    is a quarter of the input clamped to 2k-4k, or half of it clamped to
    4k-8k for chunked content.

    Returns:
        (input_tokens, output_tokens, total_tokens)
    """
    cjk = len(_CJK.findall(text))
    input_tokens = cjk * 2 + (len(text) - cjk)
    if chunked:
        output_tokens = int(min(max(input_tokens / 2, 4000), 8000))
    else:
        output_tokens = int(min(max(input_tokens / 4, 2000), 4000))
    return input_tokens, output_tokens, input_tokens + output_tokens


def split_into_chunks(text: str, chunk_size: int = CHUNK_SIZE) -> List[str]:
    """Split text at paragraph boundaries into chunks of about ``chunk_size`` characters."""
    chunks: List[str] = []
    current = ""
    for paragraph in _PARAGRAPH_BREAK.split(text):
        if current and len(current) + len(paragraph) > chunk_size:
            chunks.append(current.strip())
            current = paragraph
        else:
            current = f"{current}\n\n{paragraph}" if current else paragraph
    if current.strip():
        chunks.append(current.strip())
    return chunks


def format_duration(seconds: float) -> str:
    """``H:MM:SS`` or ``M:SS``."""
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def metadata_header(metadata: Optional[Dict[str, Any]]) -> str:
    """Title/duration header written above the saved transcript."""
    if not metadata:
        return ""
    duration = metadata.get("totalDuration")
    try:
        duration_text = format_duration(float(duration)) if duration else "unknown"
    except (TypeError, ValueError):
        duration_text = "unknown"
    return f"Video title: {metadata.get('title') or 'unknown'}\nDuration: {duration_text}\n\n"


def strip_title_line(text: str) -> str:
    """Drop a leading ``# title`` line."""
    if text.startswith("# "):
        newline = text.find("\n")
        if newline != -1:
            return text[newline + 1:].lstrip()
    return text


# ── Transformer ───────────────────────────────────────────────────────────

class YoutubeTranscriptTransformer:
    """
    Response transformer for ``youtube-transcript__get_transcripts``.

    Never raises: bad input and internal failures come back as a response
    whose message describes the problem.
    """

    def __init__(self, storage: FileSystemStorage, provider: Optional[Provider] = None):
        self.storage = storage
        self.provider = provider

    async def __call__(self, content: Any) -> NormalizedToolResponse:
        try:
            return await self._transform(content)
        except Exception as e:
            logger.error("Error processing YouTube transcript: %s", e)
            return create_tool_response(message=f"Error processing YouTube transcript: {e}")

    async def _transform(self, content: Any) -> NormalizedToolResponse:
        items, problem = self._extract_items(content)
        if problem:
            logger.error("Invalid transcript response: %s", problem)
            return create_tool_response(message=problem)

        first = items[0]
        metadata: Dict[str, Any] = first["metadata"]
        video_id = metadata["videoId"]
        transcript = strip_title_line(first["text"])
        logger.info("Processing transcript for video %s (%d chars)", video_id, len(transcript))

        self.storage.initialize()
        full_metadata = {
            **metadata,
            "processedAt": datetime.now().isoformat(),
            "transcriptLength": len(transcript),
        }
        tags = ["youtube", "transcript"]
        if metadata.get("title"):
            tags.append(f"title:{metadata['title']}")

        transcript_path = self.storage.save(
            f"youtube_transcripts/transcripts/{video_id}.txt",
            metadata_header(metadata) + transcript,
            tags=tags,
            metadata=full_metadata,
        )

        summary = await self.summarize(transcript)

        json_path = self.storage.save(
            f"youtube_transcripts/json/{video_id}.json",
            items,
            tags=tags + ["json", "raw"],
            metadata=full_metadata,
        )
        markdown_path = self.storage.save(
            f"youtube_transcripts/summaries/{video_id}.md",
            summary,
            tags=tags + ["markdown"],
            metadata=full_metadata,
        )

        return create_tool_response(
            message=(
                f"Processed YouTube transcript: {metadata.get('title') or video_id}, "
                f"length: {len(transcript)} chars, summary: {len(summary)} chars"
            ),
            paths={"transcript": transcript_path, "json": json_path, "markdown": markdown_path},
            raw_content={
                "transcript": transcript,
                "summary": summary,
                "videoId": video_id,
                "metadata": full_metadata,
                "exportFormats": ["markdown"],
            },
        )

    @staticmethod
    def _extract_items(content: Any) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Validate the tool output; returns (items, problem)."""
        if isinstance(content, ToolContent):
            if content.kind == "structured":
                content = content.data
            elif content.kind == "text":
                content = content.text
            else:
                return [], "Processing failed: binary content is not a transcript"

        if not content:
            return [], "Input content is empty"

        if isinstance(content, str):
            try:
                content = json.loads(content)
            except json.JSONDecodeError as e:
                return [], f"Failed to parse content: {e}"

        if not isinstance(content, list) or not content or not isinstance(content[0], dict):
            return [], "Processing failed: invalid server response structure (array)"

        first = content[0]
        if not first.get("text") or not isinstance(first.get("metadata"), dict):
            return [], "Processing failed: invalid server response structure (item)"

        video_id = first["metadata"].get("videoId")
        if not isinstance(video_id, str) or not video_id:
            return [], "Processing failed: server response has no videoId"
        if not _VIDEO_ID.fullmatch(video_id):
            return [], f"Processing failed: invalid videoId {video_id!r}"

        return content, None

    # ── Summaries ─────────────────────────────────────────────────────────

    async def summarize(self, transcript: str) -> str:
        """Summarize a transcript, chunking it when it is too long for one call."""
        _, _, total_tokens = estimate_tokens(transcript)
        logger.debug("Transcript token estimate: %d", total_tokens)

        if total_tokens <= TOKEN_LIMIT:
            return await self._summarize_chunk(transcript, 1)

        chunks = split_into_chunks(transcript)
        logger.info("Transcript too long, summarizing %d chunks", len(chunks))
        summaries = []
        for index, chunk in enumerate(chunks, start=1):
            t0 = time.perf_counter()
            summaries.append(await self._summarize_chunk(chunk, index))
            logger.debug("Chunk %d/%d done in %.1fs", index, len(chunks), time.perf_counter() - t0)
        return await self._merge_summaries(summaries)

    async def _summarize_chunk(self, chunk: str, index: int) -> str:
        system_prompt = SUMMARY_SYSTEM_PROMPT
        if index > 1:
            system_prompt += (
                f"\n\nThis is part {index} of the video; "
                "pay attention to continuity with the surrounding parts."
            )
        _, output_tokens, _ = estimate_tokens(chunk)

        reply = await self._ask(system_prompt, chunk, output_tokens)
        if reply is None:
            return f"Summary of part {index} failed"
        return reply

    async def _merge_summaries(self, summaries: List[str]) -> str:
        if len(summaries) == 1:
            return summaries[0]
        combined = "\n\n---\n\n".join(summaries)
        _, output_tokens, _ = estimate_tokens(combined, chunked=True)

        reply = await self._ask(MERGE_SYSTEM_PROMPT, combined, output_tokens)
        return reply if reply is not None else combined

    async def _ask(self, system_prompt: str, text: str, max_tokens: int) -> Optional[str]:
        """One summarization call; None when no model is available or the call failed."""
        if self.provider is None:
            logger.warning("No model configured, skipping summary")
            return None
        messages = [
            ConversationMessage(role="system", content=system_prompt),
            ConversationMessage.user(text),
        ]
        try:
            response = await self.provider.complete(
                messages, max_tokens=max_tokens, temperature=SUMMARY_TEMPERATURE
            )
        except Exception as e:
            logger.error("Summary generation failed: %s", e)
            return None
        return response.content or None
