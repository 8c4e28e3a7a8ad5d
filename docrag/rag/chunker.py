"""Document chunking with overlap for the RAG pipeline.

Implements character-based chunking to avoid tokenizer dependencies.
Three strategies are available:

- ``recursive``: level-2 sections, split along their subsections, then by
  paragraph, sentence and finally fixed character windows
- ``section``: one chunk per top-level section, oversized ones text-split
- ``fixed``: sliding window over the whole body, trimmed to sentence ends
"""
import math
import re
import uuid
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional, Tuple

import structlog

from docrag.config import ChunkingConfig
from docrag.errors import ChunkingFailed
from docrag.rag.md_parser import ParsedDocument, Section

logger = structlog.get_logger()

STRATEGIES = ("recursive", "section", "fixed")

PARAGRAPH_BREAK = re.compile(r"\n[ \t]*\n")
SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+")


def estimate_tokens(text: str) -> int:
    """Cheap token estimate: one token per four characters, rounded up."""
    return math.ceil(len(text) / 4)


@dataclass
class Chunk:
    """A bounded span of a document's text, the unit of retrieval."""

    content: str
    position: int
    char_start: int
    char_end: int
    document_title: str
    section_heading: Optional[str] = None
    token_count: int = 0
    document_id: str = ""  # assigned once the owning document is saved
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        if not self.token_count:
            self.token_count = estimate_tokens(self.content)

    @property
    def metadata(self) -> dict:
        """Fields persisted alongside the chunk content."""
        return {
            "position": self.position,
            "section_heading": self.section_heading,
            "char_start": self.char_start,
            "char_end": self.char_end,
            "token_count": self.token_count,
            "document_title": self.document_title,
        }


@dataclass
class _Piece:
    """Intermediate chunk body before ids and positions are assigned."""

    body: str
    char_start: int
    char_end: int
    heading: Optional[str] = None
    prefix: str = ""


@dataclass
class _Span:
    """Text with the source offsets it was taken from."""

    text: str
    start: int
    end: int

    @classmethod
    def strip(cls, source: str, start: int, end: int) -> "_Span":
        raw = source[start:end]
        text = raw.strip()
        if not text:
            return cls("", start, start)
        lead = len(raw) - len(raw.lstrip())
        return cls(text, start + lead, start + lead + len(text))

    def slice(self, start: int, end: int) -> "_Span":
        """Sub-span of a verbatim span, by positions within its text."""
        return _Span(self.text[start:end], self.start + start, self.start + end)


class DocumentChunker:
    """Splits parsed documents into overlapping, size-bounded chunks."""

    def __init__(self, config: Optional[ChunkingConfig] = None):
        """Initialize the chunker.

        Args:
            config: Chunking configuration (defaults from docrag.config)

        Raises:
            ChunkingFailed: If the configuration is invalid
        """
        self.config = config or ChunkingConfig()
        self._validate(self.config)

        logger.info(
            "chunker_initialized",
            strategy=self.config.strategy,
            max_chunk_size=self.config.max_chunk_size,
            overlap=self.config.overlap,
        )

    @staticmethod
    def _validate(config: ChunkingConfig) -> None:
        if config.strategy not in STRATEGIES:
            raise ChunkingFailed(
                f"Unknown chunking strategy {config.strategy!r}, expected one of {STRATEGIES}"
            )
        if config.max_chunk_size <= 0:
            raise ChunkingFailed(f"max_chunk_size must be positive, got {config.max_chunk_size}")
        if config.min_chunk_size < 0 or config.min_chunk_size > config.max_chunk_size:
            raise ChunkingFailed(
                f"min_chunk_size ({config.min_chunk_size}) must be between 0 and "
                f"max_chunk_size ({config.max_chunk_size})"
            )
        if config.overlap < 0 or config.overlap >= config.max_chunk_size:
            raise ChunkingFailed(
                f"Overlap ({config.overlap}) must be less than "
                f"chunk size ({config.max_chunk_size})"
            )

    def create_chunks(
        self, document: ParsedDocument, config: Optional[ChunkingConfig] = None
    ) -> List[Chunk]:
        """Split a parsed document into chunks.

        Args:
            document: Parsed markdown document
            config: Optional configuration overriding the chunker's own

        Returns:
            Chunks in source order, positions 0..n-1

        Raises:
            ChunkingFailed: On invalid configuration or any splitting error
        """
        cfg = config or self.config
        try:
            self._validate(cfg)

            if cfg.strategy == "fixed":
                pieces = self._chunk_fixed(document, cfg)
            elif cfg.strategy == "section":
                pieces = self._chunk_by_section(document, cfg)
            else:
                pieces = self._chunk_recursive(document, cfg)

            chunks = [
                self._make_chunk(piece, position, document)
                for position, piece in enumerate(p for p in pieces if p.body.strip())
            ]
        except ChunkingFailed:
            raise
        except Exception as e:
            logger.error(
                "chunking_failed",
                path=document.filepath,
                strategy=cfg.strategy,
                error=str(e),
            )
            raise ChunkingFailed(f"Failed to chunk {document.filepath}: {e}") from e

        logger.info(
            "document_chunked",
            path=document.filepath,
            strategy=cfg.strategy,
            chunk_count=len(chunks),
        )
        return chunks

    # Strategies

    def _chunk_fixed(self, document: ParsedDocument, cfg: ChunkingConfig) -> List[_Piece]:
        content = document.raw_content
        length = len(content)
        pieces = []
        start = 0

        while start < length:
            end = min(start + cfg.max_chunk_size, length)
            window = content[start:end]

            # Not at the end: avoid cutting mid-sentence
            if end < length:
                last_break = max(window.rfind("."), window.rfind("!"), window.rfind("?"))
                if last_break > cfg.min_chunk_size:
                    window = window[: last_break + 1]

            pieces.append(_Piece(window.strip(), start, start + len(window)))

            if start + len(window) >= length:
                break
            start += max(1, len(window) - cfg.overlap)

        return pieces

    def _chunk_by_section(self, document: ParsedDocument, cfg: ChunkingConfig) -> List[_Piece]:
        top_level = [s for s in document.sections if s.parent_index is None]
        regions = []

        for start, end in self._gaps(document, top_level):
            regions.append((start, self._split_region(document, start, end, None, cfg)))

        for section in top_level:
            regions.append((section.char_start, self._split_section_text(document, section, cfg)))

        return self._in_source_order(regions)

    def _chunk_recursive(self, document: ParsedDocument, cfg: ChunkingConfig) -> List[_Piece]:
        level_two = [s for s in document.sections if s.level == 2]

        regions = []
        for start, end in self._gaps(document, level_two):
            # Text outside level-2 sections, cut at each level-1 heading
            cuts = [start]
            cuts += [s.char_start for s in document.sections if s.level == 1 and start < s.char_start < end]
            cuts.append(end)
            for cut_start, cut_end in zip(cuts, cuts[1:]):
                heading = self._enclosing_heading(document, cut_start)
                regions.append(
                    (cut_start, self._split_region(document, cut_start, cut_end, heading, cfg, 1))
                )
        for section in level_two:
            regions.append((section.char_start, self._split_section_recursive(document, section, cfg)))

        return self._in_source_order(regions)

    @staticmethod
    def _in_source_order(regions: List[Tuple[int, List[_Piece]]]) -> List[_Piece]:
        """Concatenate disjoint regions by start offset, keeping each region's
        pieces in the order they were produced."""
        return [piece for _, pieces in sorted(regions, key=lambda r: r[0]) for piece in pieces]

    def _split_section_recursive(
        self, document: ParsedDocument, section: Section, cfg: ChunkingConfig
    ) -> List[_Piece]:
        prefix = self._heading_prefix(section, cfg)
        if len(prefix) + len(section.content) <= cfg.max_chunk_size:
            return [_Piece(section.content, section.char_start, section.char_end, section.heading, prefix)]

        children = [s for s in document.sections if s.parent_index == section.position]
        if not children:
            return self._split_section_text(document, section, cfg)

        # Text between the heading and the first subsection
        pieces = self._split_region(
            document, section.body_start, children[0].char_start, section.heading, cfg, section.level
        )
        for child in children:
            pieces.extend(self._split_section_recursive(document, child, cfg))
        return pieces

    def _split_section_text(
        self, document: ParsedDocument, section: Section, cfg: ChunkingConfig
    ) -> List[_Piece]:
        return self._split_region(
            document, section.body_start, section.char_end, section.heading, cfg, section.level
        )

    # Text splitter
    #
    # Every unit below is a verbatim slice of the source body, so spans are
    # carried along while splitting and never searched for afterwards.

    def _split_region(
        self,
        document: ParsedDocument,
        start: int,
        end: int,
        heading: Optional[str],
        cfg: ChunkingConfig,
        level: int = 2,
    ) -> List[_Piece]:
        """Text-split the body between two offsets, heading lines excluded."""
        paragraphs = self._paragraphs(document, start, end)
        if not paragraphs:
            return []

        prefix = ""
        if heading and cfg.preserve_headings:
            prefix = f"{'#' * level} {heading}\n\n"
            # A prefix that leaves no room beyond the overlap is dropped
            if cfg.max_chunk_size - len(prefix) <= cfg.overlap:
                prefix = ""

        limit = cfg.max_chunk_size - len(prefix)
        return [
            _Piece(span.text, span.start, span.end, heading, prefix)
            for span in self._split_paragraphs(paragraphs, limit, cfg.overlap)
        ]

    def _split_paragraphs(self, paragraphs: List[_Span], limit: int, overlap: int) -> List[_Span]:
        joined = self._join(paragraphs, "\n\n")
        if len(joined.text) <= limit:
            return [joined]

        if len(paragraphs) > 1:
            return self._accumulate(
                paragraphs, "\n\n", limit, overlap,
                lambda p: self._split_sentences(p, limit, overlap),
            )
        return self._split_sentences(paragraphs[0], limit, overlap)

    def _split_sentences(self, span: _Span, limit: int, overlap: int) -> List[_Span]:
        if len(span.text) <= limit:
            return [span]

        sentences = []
        cursor = 0
        for match in SENTENCE_BREAK.finditer(span.text):
            sentences.append(span.slice(cursor, match.start()))
            cursor = match.end()
        sentences.append(span.slice(cursor, len(span.text)))
        sentences = [s for s in sentences if s.text]

        if len(sentences) > 1:
            return self._accumulate(
                sentences, " ", limit, overlap,
                lambda s: self._split_chars(s, limit, overlap),
            )
        return self._split_chars(span, limit, overlap)

    @staticmethod
    def _split_chars(span: _Span, limit: int, overlap: int) -> List[_Span]:
        """Last resort: fixed windows of ``limit`` characters with overlap."""
        step = max(1, limit - overlap)
        pieces = []
        start = 0
        while True:
            end = min(start + limit, len(span.text))
            pieces.append(span.slice(start, end))
            if end >= len(span.text):
                break
            start += step
        return pieces

    def _accumulate(
        self,
        units: List[_Span],
        separator: str,
        limit: int,
        overlap: int,
        split_oversized: Callable[[_Span], List[_Span]],
    ) -> List[_Span]:
        """Greedily pack units up to ``limit``, seeding each new piece with
        the tail of the previous one."""
        pieces: List[_Span] = []
        current: List[_Span] = []
        size = 0

        for unit in units:
            if len(unit.text) > limit:
                if current:
                    pieces.append(self._join(current, separator))
                    current, size = [], 0
                pieces.extend(split_oversized(unit))
                continue

            candidate = size + len(separator) + len(unit.text) if current else len(unit.text)
            if candidate <= limit:
                current.append(unit)
                size = candidate
                continue

            pieces.append(self._join(current, separator))
            room = limit - len(unit.text) - len(separator)
            current = self._overlap_tail(current, separator, min(overlap, room)) + [unit]
            size = len(self._join(current, separator).text)

        if current:
            pieces.append(self._join(current, separator))
        return pieces

    @staticmethod
    def _overlap_tail(units: List[_Span], separator: str, size: int) -> List[_Span]:
        """At most ``size`` trailing characters of the joined units, starting
        at a word boundary."""
        if size <= 0:
            return []

        text = separator.join(u.text for u in units)
        cut = max(0, len(text) - size)
        if cut > 0 and not text[cut - 1].isspace():
            boundary = re.search(r"\s", text[cut:])
            if boundary is None:
                return []
            cut += boundary.start()
        while cut < len(text) and text[cut].isspace():
            cut += 1
        if cut >= len(text):
            return []

        tail = []
        offset = 0
        for unit in units:
            unit_end = offset + len(unit.text)
            if cut < unit_end:
                tail.append(unit.slice(max(0, cut - offset), len(unit.text)))
            offset = unit_end + len(separator)
        return tail

    @staticmethod
    def _join(units: List[_Span], separator: str) -> _Span:
        return _Span(separator.join(u.text for u in units), units[0].start, units[-1].end)

    # Helpers

    @staticmethod
    def _heading_prefix(section: Section, cfg: ChunkingConfig) -> str:
        if not cfg.preserve_headings:
            return ""
        prefix = f"{'#' * section.level} {section.heading}\n\n"
        if cfg.max_chunk_size - len(prefix) <= cfg.overlap:
            return ""
        return prefix

    @staticmethod
    def _gaps(document: ParsedDocument, sections: List[Section]) -> List[Tuple[int, int]]:
        """Body spans not covered by any of the given (disjoint) sections."""
        gaps = []
        cursor = 0
        for section in sorted(sections, key=lambda s: s.char_start):
            if section.char_start > cursor:
                gaps.append((cursor, section.char_start))
            cursor = max(cursor, section.char_end)
        if cursor < len(document.raw_content):
            gaps.append((cursor, len(document.raw_content)))
        return gaps

    @staticmethod
    def _enclosing_heading(document: ParsedDocument, offset: int) -> Optional[str]:
        enclosing = [
            s for s in document.sections
            if s.level == 1 and s.char_start <= offset < s.char_end
        ]
        return enclosing[-1].heading if enclosing else None

    @staticmethod
    def _paragraphs(document: ParsedDocument, start: int, end: int) -> List[_Span]:
        """Blank-line separated blocks between two offsets, heading lines skipped."""
        source = document.raw_content
        segments = []
        cursor = start
        for section in document.sections:
            if section.char_start < start or section.char_start >= end:
                continue
            segments.append((cursor, section.char_start))
            cursor = max(cursor, min(section.body_start, end))
        segments.append((cursor, end))

        paragraphs = []
        for segment_start, segment_end in segments:
            block_start = segment_start
            for match in PARAGRAPH_BREAK.finditer(source, segment_start, segment_end):
                paragraphs.append(_Span.strip(source, block_start, match.start()))
                block_start = match.end()
            paragraphs.append(_Span.strip(source, block_start, segment_end))
        return [p for p in paragraphs if p.text]

    def _make_chunk(self, piece: _Piece, position: int, document: ParsedDocument) -> Chunk:
        body = piece.body.strip()
        content = f"{piece.prefix}{body}" if piece.prefix else body
        return Chunk(
            content=content,
            position=position,
            char_start=piece.char_start,
            char_end=piece.char_end,
            document_title=document.title,
            section_heading=piece.heading,
        )

    def get_chunk_stats(self, chunks: List[Chunk]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: List of Chunk objects

        Returns:
            Dictionary with chunk statistics
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
            }

        chunk_sizes = [len(c.content) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "total_tokens": sum(c.token_count for c in chunks),
        }


def with_strategy(config: ChunkingConfig, strategy: str) -> ChunkingConfig:
    """Copy of a chunking config using another strategy."""
    return replace(config, strategy=strategy)
