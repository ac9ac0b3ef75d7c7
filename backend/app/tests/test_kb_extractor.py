"""Unit tests for archive extraction and path validation."""
import io
import zipfile

import pytest

from app.kb.errors import ArchiveExtractionError, InvalidArchiveEntry
from app.kb.extractor import content_type_for, extract_archive, is_markdown, resolve_entry_path


def _zip(entries: dict[str, str]) -> io.BytesIO:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in entries.items():
            archive.writestr(name, content)
    buffer.seek(0)
    return buffer


class TestClassification:
    """Test document classification by extension."""

    def test_markdown_extensions(self):
        """Test .md and .markdown are markdown regardless of case."""
        assert is_markdown("guide.md")
        assert is_markdown("docs/Guide.MD")
        assert is_markdown("notes.markdown")
        assert not is_markdown("notes.txt")
        assert not is_markdown("md")

    def test_content_types(self):
        """Test stored content types."""
        assert content_type_for("a/b.md") == "text/markdown"
        assert content_type_for("notes.txt") == "text/plain"
        assert content_type_for("image.png") == "application/octet-stream"


class TestResolveEntryPath:
    """Test extraction root containment."""

    def test_nested_entry_allowed(self, tmp_path):
        """Test nested entries resolve under the root."""
        target = resolve_entry_path(tmp_path, "docs/rates.md")
        assert target == (tmp_path / "docs" / "rates.md").resolve()

    @pytest.mark.parametrize("name", ["../evil.md", "docs/../../evil.md", "/etc/passwd"])
    def test_escaping_entry_rejected(self, tmp_path, name):
        """Test entries resolving outside the root are rejected."""
        with pytest.raises(InvalidArchiveEntry) as exc_info:
            resolve_entry_path(tmp_path / "root", name)
        assert exc_info.value.entry_name == name
        assert exc_info.value.status_code == 400


class TestExtractArchive:
    """Test archive extraction."""

    def test_counts_and_sizes(self, tmp_path):
        """Test statistics match the archive contents."""
        entries = {
            "rates.md": "Rate: 5%",
            "docs/policy.markdown": "# Policy\n\nBe nice.",
            "notes.txt": "not for the model",
        }
        result = extract_archive(_zip(entries), tmp_path / "out")

        assert result.success
        assert result.error is None
        assert result.files_extracted == 3
        assert result.markdown_files == 2
        assert result.total_size_bytes == sum(len(c.encode()) for c in entries.values())
        assert result.extracted_paths == ["rates.md", "docs/policy.markdown", "notes.txt"]
        assert (tmp_path / "out" / "docs" / "policy.markdown").read_text() == "# Policy\n\nBe nice."

    def test_directory_entries_not_counted(self, tmp_path):
        """Test directory entries are created but not counted as files."""
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:
            archive.writestr(zipfile.ZipInfo("docs/"), "")
            archive.writestr("docs/a.md", "A")
        buffer.seek(0)

        result = extract_archive(buffer, tmp_path / "out")

        assert result.success
        assert result.files_extracted == 1
        assert (tmp_path / "out" / "docs").is_dir()

    def test_traversal_rejected_before_any_write(self, tmp_path):
        """Test one escaping entry aborts extraction with nothing written."""
        archive = _zip({"good.md": "fine", "../evil.md": "bad"})
        out = tmp_path / "out"

        result = extract_archive(archive, out)

        assert not result.success
        assert isinstance(result.error, InvalidArchiveEntry)
        assert result.files_extracted == 0
        assert list(out.iterdir()) == []
        assert not (tmp_path / "evil.md").exists()

    def test_not_a_zip(self, tmp_path):
        """Test garbage input fails with an extraction error."""
        result = extract_archive(io.BytesIO(b"this is not a zip"), tmp_path / "out")

        assert not result.success
        assert isinstance(result.error, ArchiveExtractionError)
        assert result.error.status_code == 422

    def test_summary(self, tmp_path):
        """Test summary carries the error message."""
        result = extract_archive(io.BytesIO(b"nope"), tmp_path / "out")
        summary = result.summary()

        assert summary.success is False
        assert summary.error.startswith("Failed to open archive")

    def test_empty_archive(self, tmp_path):
        """Test an empty archive succeeds with zero files."""
        result = extract_archive(_zip({}), tmp_path / "out")

        assert result.success
        assert result.files_extracted == 0
        assert result.total_size_bytes == 0
