"""Markdown parser for extracting sections and metadata from .md files.

Handles:
- YAML frontmatter parsing
- Title resolution (frontmatter, first H1, file path)
- Heading hierarchy reconstruction into flat sections
"""
import re
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Any, Tuple, Union
from dataclasses import dataclass, field
import yaml
import structlog

from docrag.errors import DocumentNotFound, DocumentParseError

logger = structlog.get_logger()


@dataclass
class Heading:
    """Represents a markdown heading with hierarchy."""

    level: int  # 1-6 for h1-h6
    text: str
    char_position: int  # offset of the heading line in the body
    line_end: int  # offset just past the heading line
    line_number: int


@dataclass
class Section:
    """A heading and the body text it governs.

    Sections form a tree through ``parent_index``, which is the ``position``
    of the enclosing section in the flat section list (``None`` at the top).
    """

    level: int
    heading: str
    content: str
    position: int
    char_start: int  # start of the heading line
    char_end: int  # start of the next heading at this level or shallower
    body_start: int  # just past the heading line
    parent_index: Optional[int] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class ParsedDocument:
    """Parsed markdown document with sections and metadata."""

    metadata: Dict[str, Any]
    sections: List[Section]
    raw_content: str  # body without frontmatter
    filepath: str

    @property
    def title(self) -> str:
        return self.metadata.get("title") or self.filepath

    @property
    def tags(self) -> List[str]:
        return list(self.metadata.get("tags") or [])


class MarkdownParser:
    """Parser for markdown documents with frontmatter support."""

    # Regex for YAML frontmatter (must be at start of file)
    FRONTMATTER_PATTERN = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)

    # ATX heading on a single line, optional closing hashes
    HEADING_PATTERN = re.compile(r"^(#{1,6})[ \t]+(.+?)(?:[ \t]+#+)?[ \t]*$")

    FENCE_PATTERN = re.compile(r"^[ \t]{0,3}(`{3,}|~{3,})")

    def parse_file(self, file_path: Union[str, Path]) -> ParsedDocument:
        """Parse a markdown file into metadata and sections.

        Args:
            file_path: Path to the markdown file

        Returns:
            ParsedDocument with sections in document order

        Raises:
            DocumentNotFound: If the file doesn't exist
            DocumentParseError: If the file can't be read or parsed
        """
        path = Path(file_path)
        if not path.exists():
            raise DocumentNotFound(f"Markdown file not found: {file_path}")

        try:
            content = path.read_text(encoding="utf-8")
            document = self.parse_text(content, str(file_path))
        except DocumentParseError:
            raise
        except Exception as e:
            logger.error("markdown_parse_error", path=str(file_path), error=str(e))
            raise DocumentParseError(f"Failed to parse {file_path}: {e}") from e

        logger.info(
            "markdown_parsed",
            path=str(file_path),
            title=document.title,
            section_count=len(document.sections),
            content_length=len(document.raw_content),
        )

        return document

    def parse_text(self, content: str, filepath: str) -> ParsedDocument:
        """Parse markdown text that has already been read.

        Args:
            content: Full markdown content, frontmatter included
            filepath: Source path recorded on the document

        Returns:
            ParsedDocument
        """
        frontmatter, body = self._parse_frontmatter(content)
        headings = self._extract_headings(body)
        sections = self._build_sections(headings, body)
        metadata = self._build_metadata(frontmatter, headings, filepath)

        return ParsedDocument(
            metadata=metadata,
            sections=sections,
            raw_content=body,
            filepath=filepath,
        )

    def _parse_frontmatter(self, content: str) -> Tuple[Dict[str, Any], str]:
        """Extract YAML frontmatter from markdown content.

        Args:
            content: Full markdown content

        Returns:
            Tuple of (frontmatter_dict, content_without_frontmatter)
        """
        match = self.FRONTMATTER_PATTERN.match(content)

        if not match:
            return {}, content

        yaml_content = match.group(1)
        try:
            frontmatter = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            logger.warning(
                "frontmatter_parse_error",
                error=str(e),
                yaml_preview=yaml_content[:100],
            )
            frontmatter = {}

        if not isinstance(frontmatter, dict):
            frontmatter = {}

        return frontmatter, content[match.end() :]

    def _extract_headings(self, content: str) -> List[Heading]:
        """Extract ATX headings, ignoring anything inside fenced code blocks.

        Args:
            content: Markdown content (without frontmatter)

        Returns:
            List of Heading objects in document order
        """
        headings = []
        fence: Optional[str] = None
        offset = 0

        for line_number, line in enumerate(content.splitlines(keepends=True), 1):
            stripped = line.rstrip("\r\n")
            fence_match = self.FENCE_PATTERN.match(stripped)

            if fence is not None:
                # Closing fence must use the same character, at least as long
                if fence_match and fence_match.group(1)[0] == fence[0] and len(fence_match.group(1)) >= len(fence):
                    fence = None
            elif fence_match:
                fence = fence_match.group(1)
            else:
                match = self.HEADING_PATTERN.match(stripped)
                if match:
                    headings.append(
                        Heading(
                            level=len(match.group(1)),
                            text=match.group(2).strip(),
                            char_position=offset,
                            line_end=offset + len(line),
                            line_number=line_number,
                        )
                    )

            offset += len(line)

        return headings

    def _build_sections(self, headings: List[Heading], body: str) -> List[Section]:
        """Turn headings into sections with parent links.

        The open-section stack holds indices into ``sections``. A new heading
        pops every entry at its own level or deeper; whatever remains on top
        is its parent.
        """
        sections: List[Section] = []
        stack: List[int] = []

        for index, heading in enumerate(headings):
            while stack and sections[stack[-1]].level >= heading.level:
                stack.pop()
            parent_index = stack[-1] if stack else None

            end = len(body)
            for later in headings[index + 1 :]:
                if later.level <= heading.level:
                    end = later.char_position
                    break

            # Body text only: nested heading lines are dropped, their text kept
            parts = []
            cursor = heading.line_end
            for nested in headings[index + 1 :]:
                if nested.char_position >= end:
                    break
                parts.append(body[cursor : nested.char_position])
                cursor = nested.line_end
            parts.append(body[cursor:end])

            sections.append(
                Section(
                    level=heading.level,
                    heading=heading.text,
                    content=self._normalize_blocks("".join(parts)),
                    position=index,
                    char_start=heading.char_position,
                    char_end=end,
                    body_start=heading.line_end,
                    parent_index=parent_index,
                )
            )
            stack.append(index)

        return sections

    @staticmethod
    def _normalize_blocks(text: str) -> str:
        # Collapse runs of blank lines so blocks are separated by exactly one
        return re.sub(r"\n[ \t]*(?:\n[ \t]*)+", "\n\n", text).strip()

    def _build_metadata(
        self, frontmatter: Dict[str, Any], headings: List[Heading], filepath: str
    ) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {}
        for key, value in frontmatter.items():
            # Convert date/datetime objects to ISO format strings
            if hasattr(value, "isoformat"):
                value = value.isoformat()
            metadata[str(key)] = value

        first_h1 = next((h.text for h in headings if h.level == 1), None)
        title = frontmatter.get("title")
        metadata["title"] = str(title) if title else (first_h1 or filepath)
        metadata["tags"] = self._normalize_tags(frontmatter.get("tags"))

        return metadata

    @staticmethod
    def _normalize_tags(raw: Any) -> List[str]:
        if raw is None:
            return []
        if isinstance(raw, str):
            return [t.strip() for t in raw.split(",") if t.strip()]
        if isinstance(raw, (list, tuple, set)):
            return [str(t).strip() for t in raw if str(t).strip()]
        return [str(raw)]
