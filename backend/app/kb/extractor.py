"""Archive extraction with path validation and extraction statistics."""
import logging
import os
import shutil
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO

from app.kb.errors import ArchiveExtractionError, InvalidArchiveEntry, KnowledgeBaseError
from app.kb.models import ExtractionSummary

logger = logging.getLogger(__name__)

ARCHIVE_EXTENSION = ".zip"
MARKDOWN_EXTENSIONS = (".md", ".markdown")


def is_markdown(path: str) -> bool:
    """Classify a document path by extension."""
    return path.lower().endswith(MARKDOWN_EXTENSIONS)


def content_type_for(path: str) -> str:
    """Content type stored alongside extracted objects."""
    lowered = path.lower()
    if is_markdown(lowered):
        return "text/markdown"
    if lowered.endswith(".txt"):
        return "text/plain"
    return "application/octet-stream"


@dataclass
class ExtractionResult:
    """Transient outcome of one archive extraction."""
    success: bool = True
    files_extracted: int = 0
    markdown_files: int = 0
    total_size_bytes: int = 0
    error: KnowledgeBaseError | None = None
    # Relative POSIX paths of written files, in archive order
    extracted_paths: list[str] = field(default_factory=list)

    def fail(self, error: KnowledgeBaseError) -> "ExtractionResult":
        self.success = False
        self.error = error
        return self

    def summary(self) -> ExtractionSummary:
        return ExtractionSummary(
            success=self.success,
            files_extracted=self.files_extracted,
            markdown_files=self.markdown_files,
            total_size_bytes=self.total_size_bytes,
            error=self.error.message if self.error else None,
        )


def resolve_entry_path(root: Path, entry_name: str) -> Path:
    """
    Resolve where an archive entry would land under ``root``.

    Raises:
        InvalidArchiveEntry: If the entry resolves outside ``root``
    """
    resolved_root = root.resolve()
    target = (resolved_root / entry_name).resolve()
    if target != resolved_root and resolved_root not in target.parents:
        raise InvalidArchiveEntry(entry_name)
    return target


def extract_archive(
    source: str | os.PathLike | BinaryIO,
    destination: str | os.PathLike,
) -> ExtractionResult:
    """
    Unpack a zip archive into ``destination``.

    All entry paths are validated before anything is written, so a single
    traversing entry aborts the extraction with no files created. A failure
    while copying an entry fails the whole extraction; files already written
    are left in place for the caller to clean up.

    Args:
        source: Path to the archive or a seekable binary stream
        destination: Directory to extract into (created if missing)

    Returns:
        ExtractionResult; ``success`` is False and ``error`` is set on failure
    """
    result = ExtractionResult()
    root = Path(destination)

    try:
        root.mkdir(parents=True, exist_ok=True)
        archive = zipfile.ZipFile(source)
    except (OSError, zipfile.BadZipFile) as e:
        logger.error(f"Failed to open archive: {e}")
        return result.fail(ArchiveExtractionError(f"Failed to open archive: {e}"))

    with archive:
        entries = archive.infolist()

        try:
            targets = [resolve_entry_path(root, entry.filename) for entry in entries]
        except InvalidArchiveEntry as e:
            logger.warning(f"Rejected archive entry outside extraction root: {e.entry_name}")
            return result.fail(e)

        for entry, target in zip(entries, targets):
            if entry.is_dir():
                try:
                    target.mkdir(parents=True, exist_ok=True)
                except OSError as e:
                    return result.fail(ArchiveExtractionError(f"Failed to create directory {entry.filename}: {e}"))
                continue

            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                with archive.open(entry) as src, open(target, "wb") as out:
                    shutil.copyfileobj(src, out)
                    written = out.tell()
            except Exception as e:
                logger.error(f"Failed to extract {entry.filename}: {e}")
                return result.fail(ArchiveExtractionError(f"Failed to extract {entry.filename}: {e}"))

            relative = target.relative_to(root.resolve()).as_posix()
            result.files_extracted += 1
            result.total_size_bytes += written
            result.extracted_paths.append(relative)
            if is_markdown(relative):
                result.markdown_files += 1

    logger.info(
        f"Extracted {result.files_extracted} files "
        f"({result.markdown_files} markdown, {result.total_size_bytes} bytes)"
    )
    return result
