"""Tests for markdown parsing."""
import pytest

from docrag.errors import DocumentNotFound, DocumentParseError
from docrag.rag.md_parser import MarkdownParser


@pytest.fixture
def parser():
    return MarkdownParser()


def test_frontmatter_metadata_and_title(parser):
    """Test that frontmatter fields become metadata and the title wins."""
    doc = parser.parse_text(
        "---\ntitle: Setup Guide\ntags: docker, linux\ncreated: 2024-01-15\nauthor: ops\n---\n# Other\n\nBody.\n",
        "guide.md",
    )

    assert doc.title == "Setup Guide"
    assert doc.tags == ["docker", "linux"]
    assert doc.metadata["created"] == "2024-01-15"
    assert doc.metadata["author"] == "ops"
    assert not doc.raw_content.startswith("---")


def test_title_falls_back_to_first_h1(parser):
    """Test that the first level-1 heading is used without a frontmatter title."""
    doc = parser.parse_text("Intro text\n\n## Minor\n\n# Main Title\n\nText\n", "notes/a.md")
    assert doc.title == "Main Title"


def test_title_falls_back_to_filepath(parser):
    """Test that the file path is the title of last resort."""
    doc = parser.parse_text("Just some text.\n", "notes/plain.md")
    assert doc.title == "notes/plain.md"


def test_section_hierarchy_uses_parent_indices(parser):
    """Test that each heading attaches to the nearest shallower open heading."""
    doc = parser.parse_text(
        "# A\n\na\n\n## B\n\nb\n\n### C\n\nc\n\n## D\n\nd\n\n# E\n\ne\n",
        "tree.md",
    )

    assert [s.heading for s in doc.sections] == ["A", "B", "C", "D", "E"]
    assert [s.parent_index for s in doc.sections] == [None, 0, 1, 0, None]
    assert [s.level for s in doc.sections] == [1, 2, 3, 2, 1]


def test_section_content_stops_at_same_or_shallower_heading(parser):
    """Test that section content includes nested text but no heading lines."""
    doc = parser.parse_text(
        "# A\n\nalpha\n\n## B\n\nbeta\n\n# C\n\ngamma\n",
        "content.md",
    )
    a, b, c = doc.sections

    assert a.content == "alpha\n\nbeta"
    assert b.content == "beta"
    assert c.content == "gamma"
    assert "#" not in a.content


def test_headings_in_code_fences_are_ignored(parser):
    """Test that '#' lines inside fenced code blocks are not headings."""
    doc = parser.parse_text(
        "# Script\n\n```bash\n# not a heading\necho hi\n```\n\n## Real\n\ntext\n",
        "code.md",
    )

    assert [s.heading for s in doc.sections] == ["Script", "Real"]
    assert "# not a heading" in doc.sections[0].content


def test_invalid_frontmatter_is_ignored(parser):
    """Test that malformed YAML does not fail the parse."""
    doc = parser.parse_text("---\ntitle: [unclosed\n---\n# Fallback\n", "bad.md")
    assert doc.title == "Fallback"
    assert doc.tags == []


def test_parse_file_reads_from_disk(parser, tmp_path):
    """Test parsing a file on disk."""
    path = tmp_path / "note.md"
    path.write_text("# Note\n\nHello.\n", encoding="utf-8")

    doc = parser.parse_file(path)

    assert doc.filepath == str(path)
    assert doc.sections[0].content == "Hello."


def test_parse_file_missing_raises_not_found(parser, tmp_path):
    """Test that a missing file raises DocumentNotFound."""
    with pytest.raises(DocumentNotFound):
        parser.parse_file(tmp_path / "missing.md")


def test_parse_file_unreadable_raises_parse_error(parser, tmp_path):
    """Test that other read failures are wrapped as DocumentParseError."""
    directory = tmp_path / "folder.md"
    directory.mkdir()

    with pytest.raises(DocumentParseError):
        parser.parse_file(directory)
