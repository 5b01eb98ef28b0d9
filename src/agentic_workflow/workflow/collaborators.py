"""Narrow contracts for the engine's external collaborators.

Memory files, file chunking and repository indexing are consumed through
these protocols. Each ships with a small local implementation.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from agentic_workflow.workflow.models import ChunkConfig

logger = logging.getLogger(__name__)


class MemoryStore(Protocol):
    def context(self) -> str:
        """Return memory text to prepend to actions, or an empty string."""
        ...

    def append(self, text: str) -> None: ...


class FileChunker(Protocol):
    def split(self, path: Path, config: ChunkConfig, work_dir: Path) -> list[Path]:
        """Split ``path`` into chunk files under ``work_dir``."""
        ...


class RepoIndexer(Protocol):
    def index(self, root: Path, max_files: int = 0) -> str:
        """Return a textual index of the repository at ``root``."""
        ...


@dataclass
class FileMemoryStore:
    """Memory backed by a single markdown file plus optional external text."""

    path: Path | None = None
    external: str = ""
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def context(self) -> str:
        parts: list[str] = []
        if self.external.strip():
            parts.append(self.external.strip())
        if self.path is not None and self.path.exists():
            text = self.path.read_text(encoding="utf-8").strip()
            if text:
                parts.append(text)
        return "\n\n".join(parts)

    def append(self, text: str) -> None:
        if self.path is None:
            logger.warning("MEMORY output requested but no memory file is configured")
            return
        stamp = datetime.now(UTC).isoformat(timespec="seconds")
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(f"\n## {stamp}\n\n{text.strip()}\n")


class LineChunker:
    """Split text files on line boundaries with optional overlap."""

    def split(self, path: Path, config: ChunkConfig, work_dir: Path) -> list[Path]:
        lines = path.read_text(encoding="utf-8").splitlines(keepends=True)
        step = max(config.size - config.overlap, 1)

        work_dir.mkdir(parents=True, exist_ok=True)
        chunks: list[Path] = []
        for start in range(0, max(len(lines), 1), step):
            if config.max_chunks and len(chunks) >= config.max_chunks:
                break
            chunk_path = work_dir / f"{path.stem}.chunk{len(chunks)}{path.suffix}"
            chunk_path.write_text("".join(lines[start : start + config.size]), encoding="utf-8")
            chunks.append(chunk_path)
            if start + config.size >= len(lines):
                break

        logger.debug(f"Split {path} into {len(chunks)} chunks")
        return chunks


_SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", "dist", "build"}


class FileTreeIndexer:
    """Markdown listing of a repository's files."""

    def index(self, root: Path, max_files: int = 0) -> str:
        lines = [f"# Repository index: {root.resolve().name}", ""]
        count = 0
        for path in sorted(root.rglob("*")):
            rel = path.relative_to(root)
            if any(part in _SKIP_DIRS or part.startswith(".") for part in rel.parts):
                continue
            if not path.is_file():
                continue
            lines.append(f"- `{rel.as_posix()}` ({path.stat().st_size} bytes)")
            count += 1
            if max_files and count >= max_files:
                lines.append(f"- ... truncated after {max_files} files")
                break
        lines.insert(2, f"{count} files indexed.")
        lines.insert(3, "")
        return "\n".join(lines) + "\n"


def index_variable_name(root: Path) -> str:
    """``<REPO>_INDEX`` for the repository at ``root``."""
    return f"{root.resolve().name.upper().replace('-', '_')}_INDEX"
