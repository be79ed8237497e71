"""Document loading and structure-aware chunking.

Rich formats (PDF, DOCX, slides, OCR) are parsed by external loaders that
implement ``DocumentLoader``. The built-in loaders cover plain text,
Markdown-like files and web pages.
"""

import html
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import aiofiles
import httpx
from loguru import logger

from ..config.defaults import get_file_type
from .exceptions import DocumentLoadError
from .models import Chunk, ChunkMetadata, SourceType, utc_now
from .path_utils import is_url

CHUNKING_STRATEGY = "structure"

_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+)$")
_SETEXT_RE = re.compile(r"^(=+|-+)\s*$")
_LIST_RE = re.compile(r"^\s*([-*+]|\d+[.)])\s+")
_TABLE_RE = re.compile(r"^\s*\|.*\|\s*$")
_SEPARATOR_RE = re.compile(r"^\s*(-{3,}|\*{3,}|_{3,})\s*$")
_FENCE_RE = re.compile(r"^\s*(```|~~~)")
_SENTENCE_END_RE = re.compile(r"(?<=[。！？!?；;.])")

_SCRIPT_RE = re.compile(r"<(script|style|noscript)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_BLOCK_TAG_RE = re.compile(r"</?(p|div|br|li|tr|h[1-6]|section|article)[^>]*>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")


class DocumentLoader(Protocol):
    """Turns one source (file path or URL) into chunks."""

    async def load(self, source: str, tags: list[str] | None = None) -> list[Chunk]: ...


@dataclass
class ContentBlock:
    kind: str
    text: str
    start: int
    heading: str = ""


@dataclass
class _Pending:
    parts: list[str] = field(default_factory=list)
    kinds: list[str] = field(default_factory=list)
    heading: str = ""
    start: int = 0

    @property
    def length(self) -> int:
        return sum(len(p) for p in self.parts)


def split_blocks(text: str) -> list[ContentBlock]:
    """Split text into heading, code, table, list, separator and paragraph blocks."""
    blocks: list[ContentBlock] = []
    lines = text.replace("\r\n", "\n").split("\n")
    offset = 0
    buffer: list[str] = []
    buffer_kind = "paragraph"
    buffer_start = 0
    in_fence = False

    def flush() -> None:
        nonlocal buffer
        content = "\n".join(buffer).strip()
        if content:
            blocks.append(ContentBlock(buffer_kind, content, buffer_start))
        buffer = []

    for index, line in enumerate(lines):
        line_start = offset
        offset += len(line) + 1

        if in_fence:
            buffer.append(line)
            if _FENCE_RE.match(line):
                in_fence = False
                flush()
            continue
        if _FENCE_RE.match(line):
            flush()
            buffer_kind, buffer_start, in_fence = "code", line_start, True
            buffer.append(line)
            continue

        heading = _HEADING_RE.match(line)
        next_line = lines[index + 1] if index + 1 < len(lines) else ""
        if heading:
            flush()
            blocks.append(
                ContentBlock("heading", line.strip(), line_start, heading.group(2).strip())
            )
            continue
        if line.strip() and not buffer and _SETEXT_RE.match(next_line) and len(next_line) >= 3:
            blocks.append(ContentBlock("heading", line.strip(), line_start, line.strip()))
            continue
        if _SETEXT_RE.match(line) and blocks and blocks[-1].kind == "heading" and not buffer:
            continue
        if _SEPARATOR_RE.match(line):
            flush()
            continue
        if not line.strip():
            flush()
            continue

        kind = "paragraph"
        if _TABLE_RE.match(line):
            kind = "table"
        elif _LIST_RE.match(line):
            kind = "list"
        if buffer and kind != buffer_kind and not (buffer_kind == "list" and kind == "paragraph"):
            flush()
        if not buffer:
            buffer_kind, buffer_start = kind, line_start
        buffer.append(line)

    flush()
    return blocks


def _split_long(text: str, max_size: int) -> list[str]:
    """Split text longer than ``max_size`` at sentence boundaries, then hard."""
    pieces: list[str] = []
    current = ""
    for sentence in (s for s in _SENTENCE_END_RE.split(text) if s):
        if len(current) + len(sentence) <= max_size:
            current += sentence
            continue
        if current.strip():
            pieces.append(current.strip())
        while len(sentence) > max_size:
            pieces.append(sentence[:max_size].strip())
            sentence = sentence[max_size:]
        current = sentence
    if current.strip():
        pieces.append(current.strip())
    return [p for p in pieces if p]


def _overlap_tail(previous: str, overlap: int) -> str:
    if overlap <= 0:
        return ""
    start = max(0, len(previous) - overlap)
    sentence_end = previous.rfind("。", 0, len(previous) - 1)
    period_end = previous.rfind(". ", 0, len(previous) - 1)
    if sentence_end > start:
        start = sentence_end + 1
    elif period_end > start:
        start = period_end + 2
    return previous[start:].strip()


def chunk_text(
    text: str, chunk_size: int = 800, chunk_overlap: int = 100
) -> list[tuple[str, ContentBlock, list[str]]]:
    """Group blocks into chunks of at most ``chunk_size`` characters.

    A heading always starts a new chunk and code or table blocks never share
    a chunk with preceding text. Each chunk after the first is prefixed with
    the tail of its predecessor (``[...] tail``) up to ``chunk_overlap``
    characters, cut at a sentence boundary when possible.

    Returns:
        (text, first block, block kinds) per chunk
    """
    grouped: list[tuple[str, ContentBlock, list[str]]] = []
    pending = _Pending()
    first_block: ContentBlock | None = None

    def flush() -> None:
        nonlocal pending, first_block
        content = "\n\n".join(pending.parts).strip()
        if content and first_block is not None:
            anchor = ContentBlock(first_block.kind, content, pending.start, pending.heading)
            grouped.append((content, anchor, sorted(set(pending.kinds))))
        pending = _Pending()
        first_block = None

    for block in split_blocks(text):
        if len(block.text) > chunk_size:
            flush()
            for piece in _split_long(block.text, chunk_size):
                grouped.append(
                    (piece, ContentBlock(block.kind, piece, block.start), [block.kind])
                )
            continue

        starts_new = (
            block.kind == "heading"
            or pending.length + len(block.text) > chunk_size
            or (block.kind in ("code", "table") and pending.parts)
        )
        if starts_new and pending.parts:
            flush()

        if not pending.parts:
            pending.start = block.start
            first_block = block
        pending.parts.append(block.text)
        pending.kinds.append(block.kind)
        if block.kind == "heading" and not pending.heading:
            pending.heading = block.heading

    flush()

    if chunk_overlap <= 0 or len(grouped) <= 1:
        return grouped

    overlapped = [grouped[0]]
    for previous, current in zip(grouped, grouped[1:], strict=False):
        tail = _overlap_tail(previous[0], chunk_overlap)
        content = current[0]
        if tail and not content.startswith(tail):
            content = f"[...] {tail}\n\n{content}"
        overlapped.append((content, current[1], current[2]))
    return overlapped


def html_to_text(markup: str) -> str:
    """Visible text of an HTML page with block elements on their own lines."""
    text = _SCRIPT_RE.sub(" ", markup)
    text = _BLOCK_TAG_RE.sub("\n\n", text)
    text = _TAG_RE.sub(" ", text)
    text = html.unescape(text)
    lines = [re.sub(r"[ \t]+", " ", line).strip() for line in text.split("\n")]
    return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()


class TextDocumentLoader:
    """Loads text-like files and web pages and splits them into chunks.

    Example:
        loader = TextDocumentLoader(chunk_size=800, chunk_overlap=100)
        chunks = await loader.load("/docs/notes.md", tags=["project-x"])
    """

    def __init__(
        self,
        chunk_size: int = 800,
        chunk_overlap: int = 100,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.timeout = timeout
        self._transport = transport

    async def _read_file(self, path: Path) -> str:
        try:
            async with aiofiles.open(path, encoding="utf-8", errors="replace") as f:
                return await f.read()
        except OSError as e:
            raise DocumentLoadError(f"Cannot read {path}: {e}", {"path": str(path)}) from e

    async def _fetch_url(self, url: str) -> str:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport, follow_redirects=True
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise DocumentLoadError(f"Cannot fetch {url}: {e}", {"url": url}) from e

        if "html" in response.headers.get("content-type", "html"):
            return html_to_text(response.text)
        return response.text

    async def load(self, source: str, tags: list[str] | None = None) -> list[Chunk]:
        """Read ``source`` and return its chunks (empty for blank documents).

        Raises:
            DocumentLoadError: If the file cannot be read or the URL fetched
        """
        if is_url(source):
            text = await self._fetch_url(source)
            source_type, file_type = SourceType.URL, "html"
        else:
            path = Path(source)
            text = await self._read_file(path)
            source_type, file_type = SourceType.FILE, get_file_type(path.suffix)
            if file_type == "html":
                text = html_to_text(text)

        imported_at = utc_now()
        chunks = []
        for index, (content, block, kinds) in enumerate(
            chunk_text(text, self.chunk_size, self.chunk_overlap)
        ):
            metadata = ChunkMetadata(
                source=source,
                file_type=file_type,
                position=block.start,
                source_type=source_type,
                imported_at=imported_at,
                chunk_index=index,
                tags=list(tags or []),
                block_types=kinds,
                has_heading="heading" in kinds,
                heading_text=block.heading,
                chunking_strategy=CHUNKING_STRATEGY,
            )
            chunks.append(Chunk(text=content, metadata=metadata))

        logger.debug(f"Loaded {len(chunks)} chunks from {source}")
        return chunks
