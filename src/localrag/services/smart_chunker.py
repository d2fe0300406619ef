"""
Smart Chunker for RAG ingestion.

Splits document text into bounded chunks tagged with structural context:
- Markup (XML/HTML): one section per closing tag
- Code (PowerShell/JS/Python): one section per top-level declaration
- Markdown: one section per heading, with a breadcrumb of parent headings
- Plain text: the whole document as a single section

Sections larger than max_chunk_size are split on paragraph boundaries,
then on sentence boundaries, carrying `overlap` trailing characters into
the next chunk.
"""

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Tuple, Union


@dataclass(frozen=True)
class Chunk:
    """
    A bounded span of document text.

    ::: This is a value-object.
    """
    text: str
    header_context: str
    level: int = 0

    @property
    def token_estimate(self) -> int:
        return len(self.text) // 4


class ContentKind(Enum):
    STRUCTURED_MARKUP = "structured_markup"
    CODE = "code"
    HEADING_PROSE = "heading_prose"
    PLAIN_TEXT = "plain_text"


_KIND_BY_EXTENSION: Dict[str, ContentKind] = {
    ".xml": ContentKind.STRUCTURED_MARKUP,
    ".html": ContentKind.STRUCTURED_MARKUP,
    ".htm": ContentKind.STRUCTURED_MARKUP,
    ".xaml": ContentKind.STRUCTURED_MARKUP,
    ".csproj": ContentKind.STRUCTURED_MARKUP,
    ".config": ContentKind.STRUCTURED_MARKUP,
    ".ps1": ContentKind.CODE,
    ".psm1": ContentKind.CODE,
    ".js": ContentKind.CODE,
    ".mjs": ContentKind.CODE,
    ".ts": ContentKind.CODE,
    ".py": ContentKind.CODE,
    ".md": ContentKind.HEADING_PROSE,
    ".markdown": ContentKind.HEADING_PROSE,
}


def infer_content_kind(path: Union[str, Path]) -> ContentKind:
    """Map a file path to its content kind by extension (PLAIN_TEXT if unknown)."""
    return _KIND_BY_EXTENSION.get(Path(path).suffix.lower(), ContentKind.PLAIN_TEXT)


_SENTENCE_ENDINGS = ".?!\n"

_HEADING_RE = re.compile(r'^(#{1,6})\s+(.+)$')
_FENCE_RE = re.compile(r'^\s*(```|~~~)')
_CODE_BOUNDARY_RE = re.compile(
    r'^(?:async\s+def|function|class|const|let|def)\s+', re.MULTILINE
)
_CODE_NAME_RE = re.compile(
    r'^(?:async\s+def|function|class|const|let|def)\s+([^\s{(:=]+)'
)
_CLOSING_TAG_RE = re.compile(r'</([\w:.-]+)\s*>')
_PARAGRAPH_RE = re.compile(r'\n\n+')


class SmartChunker:
    """
    Content-aware text chunker.

    ::: This is-in-layer Service-Layer.
    ::: This is stateless.

    Output is deterministic: the same content, kind and settings always
    produce the same chunk sequence. No chunk is longer than max_chunk_size.

    Attributes:
        max_chunk_size: Maximum characters per chunk
        overlap: Characters carried from one chunk into the next
    """

    def __init__(self, max_chunk_size: int = 1000, overlap: int = 200):
        if max_chunk_size < 1:
            raise ValueError(f"max_chunk_size must be positive, got {max_chunk_size}")
        if overlap < 0 or overlap >= max_chunk_size:
            raise ValueError(
                f"overlap must be in [0, {max_chunk_size}), got {overlap}"
            )
        self.max_chunk_size = max_chunk_size
        self.overlap = overlap

        self._splitters: Dict[ContentKind, Callable[[str, str], Iterator[Chunk]]] = {
            ContentKind.STRUCTURED_MARKUP: self._split_markup,
            ContentKind.CODE: self._split_code,
            ContentKind.HEADING_PROSE: self._split_markdown,
            ContentKind.PLAIN_TEXT: self._split_plain_text,
        }

    def chunk_file(self, path: Union[str, Path], content: str) -> Iterator[Chunk]:
        """
        Chunk file content using the strategy for the file's extension.

        Args:
            path: File path (only the name and extension are used)
            content: Decoded file content

        Returns:
            Single-pass iterator of chunks in document order
        """
        return self.chunk_text(content, infer_content_kind(path), Path(path).name)

    def chunk_text(
        self,
        content: str,
        kind: Union[ContentKind, str] = ContentKind.PLAIN_TEXT,
        file_name: str = "",
    ) -> Iterator[Chunk]:
        """
        Chunk content with an explicitly chosen strategy.

        Raises:
            ValueError: If kind is not a ContentKind value
        """
        splitter = self._splitters[ContentKind(kind)]
        return self._chunks(splitter, content, file_name)

    @staticmethod
    def _chunks(splitter, content: str, file_name: str) -> Iterator[Chunk]:
        if not content or not content.strip():
            return
        yield from splitter(content.replace("\r\n", "\n"), file_name)

    @staticmethod
    def find_sentence_boundary(text: str, start: int, limit: int) -> int:
        """
        Find where to cut text[start:limit].

        Scans backward over the last 20% of the span for a sentence ending
        (.?! or newline), then for whitespace. Returns the index just after
        the boundary character, or `limit` if neither is found.
        """
        last = min(limit, len(text)) - 1
        floor = max(start, last - (limit - start) // 5)

        for i in range(last, floor - 1, -1):
            if text[i] in _SENTENCE_ENDINGS:
                return i + 1
        for i in range(last, floor - 1, -1):
            if text[i].isspace():
                return i + 1
        return limit

    def _join(self, buffer: str, text: str) -> str:
        return f"{buffer}\n\n{text}" if buffer else text

    def _fits(self, buffer: str, text: str) -> bool:
        return len(self._join(buffer, text)) <= self.max_chunk_size

    def process_section(self, text: str, context: str, level: int = 0) -> Iterator[Chunk]:
        """
        Emit one section as one or more chunks labelled with `context`.

        A section within the maximum is emitted whole. Larger sections are
        accumulated paragraph by paragraph; oversize paragraphs are cut at
        sentence boundaries.
        """
        text = text.strip()
        if not text:
            return
        if len(text) <= self.max_chunk_size:
            yield Chunk(text, context, level)
            return

        buffer = ""
        for para in _PARAGRAPH_RE.split(text):
            para = para.strip()
            if not para:
                continue

            if not self._fits(buffer, para):
                if buffer:
                    yield Chunk(buffer, context, level)
                    seed = ""
                    if self.overlap > 0 and len(buffer) > self.overlap:
                        seed = buffer[-self.overlap:]
                    buffer = seed if self._fits(seed, para) else ""

                if len(para) > self.max_chunk_size:
                    start = 0
                    while start < len(para):
                        if len(para) - start <= self.max_chunk_size:
                            tail = para[start:]
                            buffer = self._join(buffer, tail) if self._fits(buffer, tail) else tail
                            break
                        cut = self.find_sentence_boundary(
                            para, start, start + self.max_chunk_size
                        )
                        yield Chunk(para[start:cut], context, level)
                        start = max(start + 1, cut - self.overlap)
                    continue

            buffer = self._join(buffer, para)

        if buffer:
            yield Chunk(buffer, context, level)

    def _split_plain_text(self, content: str, file_name: str) -> Iterator[Chunk]:
        yield from self.process_section(content, file_name)

    def _split_code(self, content: str, file_name: str) -> Iterator[Chunk]:
        """Split on top-level function/class/def/const/let declarations."""
        starts = [m.start() for m in _CODE_BOUNDARY_RE.finditer(content)]
        if not starts:
            yield from self._split_plain_text(content, file_name)
            return

        preamble = content[:starts[0]].strip()
        if preamble:
            yield from self.process_section(preamble, f"{file_name} > Preamble")

        for i, start in enumerate(starts):
            end = starts[i + 1] if i + 1 < len(starts) else len(content)
            section = content[start:end].strip()
            name_match = _CODE_NAME_RE.match(section)
            name = name_match.group(1) if name_match else f"Block_{i}"
            yield from self.process_section(section, f"{file_name} > {name}")

    def _split_markup(self, content: str, file_name: str) -> Iterator[Chunk]:
        """Split after each closing tag."""
        closings = list(_CLOSING_TAG_RE.finditer(content))
        if len(closings) <= 1:
            yield from self._split_plain_text(content, file_name)
            return

        last_end = 0
        for m in closings:
            section = content[last_end:m.end()].strip()
            if section:
                yield from self.process_section(section, f"{file_name} > <{m.group(1)}>")
            last_end = m.end()

        trailing = content[last_end:].strip()
        if trailing:
            yield from self.process_section(trailing, f"{file_name} > Trailing")

    @staticmethod
    def _find_headings(content: str) -> List[Tuple[int, int, int, str]]:
        """Return (start, end, level, title) for each heading outside code fences."""
        headings = []
        offset = 0
        in_fence = False
        for line in content.split("\n"):
            if _FENCE_RE.match(line):
                in_fence = not in_fence
            elif not in_fence:
                m = _HEADING_RE.match(line)
                if m:
                    headings.append(
                        (offset, offset + len(line), len(m.group(1)), m.group(2).strip())
                    )
            offset += len(line) + 1
        return headings

    def _split_markdown(self, content: str, file_name: str) -> Iterator[Chunk]:
        """Split on headings, labelling each section with its heading breadcrumb."""
        headings = self._find_headings(content)
        if not headings:
            yield from self.process_section(content, "Markdown Document")
            return

        preamble = content[:headings[0][0]].strip()
        if preamble:
            yield from self.process_section(preamble, "Introduction")

        stack: List[Tuple[int, str]] = []
        for i, (_, body_start, level, title) in enumerate(headings):
            body_end = headings[i + 1][0] if i + 1 < len(headings) else len(content)
            body = content[body_start:body_end].strip()

            while stack and stack[-1][0] >= level:
                stack.pop()
            stack.append((level, title))
            breadcrumb = " > ".join(t for _, t in stack)

            yield from self.process_section(
                f"{'#' * level} {title}\n{body}", breadcrumb, level
            )
