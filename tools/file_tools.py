"""
File tools for aterm-agent.

- ReadFileTool: read a file (optionally a line window)
- WriteFileTool: create or overwrite a file
- EditFileTool: exact-text replacement with stale-write detection

All paths are resolved against the workspace root; anything that resolves
outside of it is rejected before touching the filesystem.
"""

import asyncio
import hashlib
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import Field

from tools.base import (
    CancellationToken,
    ConflictingConcurrentWrite,
    ExecutionError,
    InvalidParameters,
    NoChangeProduced,
    OutputCallback,
    ResourceNotFound,
    Tool,
    ToolInvocation,
    ToolInvocationResult,
    ToolParams,
    check_cancelled,
)

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 100_000
# Undecodable bytes survive a read-modify-write cycle unchanged
ENCODING_ERRORS = "surrogateescape"


class PathLocks:
    """Per-path locks and last-seen digests shared by the file tools of a workspace.

    The digest recorded by a read or write is what edit_file expects to find
    on disk; anything else means the file was changed behind the agent's back.
    """

    def __init__(self):
        self._locks: Dict[Path, asyncio.Lock] = {}
        self._seen: Dict[Path, str] = {}

    def for_path(self, path: Path) -> asyncio.Lock:
        lock = self._locks.get(path)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[path] = lock
        return lock

    def remember(self, path: Path, digest: str) -> None:
        self._seen[path] = digest

    def last_seen(self, path: Path) -> Optional[str]:
        return self._seen.get(path)


@dataclass(frozen=True)
class FileSnapshot:
    text: str
    digest: str
    mtime_ns: int
    size: int


def _digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _text_digest(text: str) -> str:
    return _digest(text.encode("utf-8", errors=ENCODING_ERRORS))


def _read_snapshot(path: Path) -> FileSnapshot:
    data = path.read_bytes()
    st = path.stat()
    return FileSnapshot(
        text=data.decode("utf-8", errors=ENCODING_ERRORS),
        digest=_digest(data),
        mtime_ns=st.st_mtime_ns,
        size=st.st_size,
    )


def _atomic_write(path: Path, content: str) -> None:
    """Write via a sibling temp file and rename so readers never see half a file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8", errors=ENCODING_ERRORS, newline="") as fh:
            fh.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class WorkspaceTool(Tool):
    """Base for tools rooted in a workspace directory."""

    def __init__(self, workspace_root: Union[str, Path, None] = None, locks: Optional[PathLocks] = None):
        self.workspace_root = Path(workspace_root or os.getcwd()).resolve()
        self.locks = locks or PathLocks()

    def resolve_path(self, path: str) -> Path:
        if not path or not path.strip():
            raise InvalidParameters("path must not be empty")
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self.workspace_root / candidate
        resolved = candidate.resolve()
        if resolved != self.workspace_root and not resolved.is_relative_to(self.workspace_root):
            raise InvalidParameters(f"Access denied: {path} is outside the workspace")
        return resolved

    def relative(self, path: Path) -> str:
        try:
            return str(path.relative_to(self.workspace_root))
        except ValueError:
            return str(path)


# =============================================================================
# read_file
# =============================================================================


class ReadFileParams(ToolParams):
    path: str = Field(description="Path to the file (relative to the workspace)")
    offset: Optional[int] = Field(default=None, ge=1, description="1-based line to start reading from")
    limit: Optional[int] = Field(default=None, ge=1, description="Maximum number of lines to return")


class ReadFileInvocation(ToolInvocation):
    params: ReadFileParams

    def __init__(self, tool: "ReadFileTool", params: ReadFileParams):
        super().__init__(params)
        self.tool = tool
        self.path = tool.resolve_path(params.path)

    def describe(self) -> str:
        window = ""
        if self.params.offset or self.params.limit:
            window = f" (lines {self.params.offset or 1}+{self.params.limit or ''})"
        return f"Read {self.tool.relative(self.path)}{window}"

    def locations(self) -> List[str]:
        return [str(self.path)]

    async def execute(
        self,
        cancel: Optional[CancellationToken] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> ToolInvocationResult:
        check_cancelled(cancel)
        if not self.path.exists():
            raise ResourceNotFound(f"File not found: {self.params.path}")
        if not self.path.is_file():
            raise InvalidParameters(f"Not a file: {self.params.path}")

        size = self.path.stat().st_size
        if size > self.tool.max_file_size:
            raise ExecutionError(f"File too large: {size} bytes (max {self.tool.max_file_size})")

        try:
            data = self.path.read_bytes()
        except OSError as e:
            raise ExecutionError(f"Failed to read file: {e}") from e
        text = data.decode("utf-8", errors="replace")
        self.tool.locks.remember(self.path, _digest(data))

        lines = text.splitlines(keepends=True)
        start = (self.params.offset or 1) - 1
        end = start + self.params.limit if self.params.limit else len(lines)
        window = lines[start:end]
        content = "".join(window) if (self.params.offset or self.params.limit) else text

        return ToolInvocationResult(
            content=content,
            display=f"Read {len(window)} line(s) from {self.tool.relative(self.path)}",
            metadata={"path": str(self.path), "size": size, "total_lines": len(lines)},
        )


class ReadFileTool(WorkspaceTool):
    """Read the contents of a file."""

    name = "read_file"
    display_name = "Read File"
    description = "Read the contents of a file at the given path. Use offset/limit to read a window of lines."
    params_model = ReadFileParams
    read_only = True

    def __init__(self, workspace_root=None, locks=None, max_file_size: int = MAX_FILE_SIZE):
        super().__init__(workspace_root, locks)
        self.max_file_size = max_file_size

    def build(self, params: ReadFileParams) -> ReadFileInvocation:
        return ReadFileInvocation(self, params)


# =============================================================================
# write_file
# =============================================================================


class WriteFileParams(ToolParams):
    path: str = Field(description="Path to the file (relative to the workspace)")
    content: str = Field(description="Full content to write to the file")


class WriteFileInvocation(ToolInvocation):
    params: WriteFileParams

    def __init__(self, tool: "WriteFileTool", params: WriteFileParams):
        super().__init__(params)
        self.tool = tool
        self.path = tool.resolve_path(params.path)

    def describe(self) -> str:
        return f"Write {len(self.params.content)} chars to {self.tool.relative(self.path)}"

    def locations(self) -> List[str]:
        return [str(self.path)]

    async def execute(
        self,
        cancel: Optional[CancellationToken] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> ToolInvocationResult:
        check_cancelled(cancel)
        content = self.params.content
        if len(content) > self.tool.max_file_size:
            raise InvalidParameters(f"Content too large: {len(content)} chars (max {self.tool.max_file_size})")

        async with self.tool.locks.for_path(self.path):
            existed = self.path.exists()
            if existed and self.path.is_dir():
                raise InvalidParameters(f"Path is a directory: {self.params.path}")
            if existed and _read_snapshot(self.path).text == content:
                raise NoChangeProduced(f"{self.params.path} already has the requested content")

            check_cancelled(cancel)
            try:
                _atomic_write(self.path, content)
            except OSError as e:
                raise ExecutionError(f"Failed to write file: {e}") from e
            self.tool.locks.remember(self.path, _text_digest(content))

        action = "Updated" if existed else "Created"
        logger.debug("%s %s (%d chars)", action, self.path, len(content))
        return ToolInvocationResult(
            content=f"Successfully wrote {len(content)} chars to {self.params.path}",
            display=f"{action} {self.tool.relative(self.path)}",
            metadata={"path": str(self.path), "size": len(content), "created": not existed},
        )


class WriteFileTool(WorkspaceTool):
    """Write content to a file, creating parent directories."""

    name = "write_file"
    display_name = "Write File"
    description = "Write content to a file at the given path. Creates parent directories if needed."
    params_model = WriteFileParams

    def __init__(self, workspace_root=None, locks=None, max_file_size: int = MAX_FILE_SIZE):
        super().__init__(workspace_root, locks)
        self.max_file_size = max_file_size

    def build(self, params: WriteFileParams) -> WriteFileInvocation:
        return WriteFileInvocation(self, params)


# =============================================================================
# edit_file
# =============================================================================


class EditFileParams(ToolParams):
    path: str = Field(description="Path to the file (relative to the workspace)")
    old_text: str = Field(min_length=1, description="Exact text to replace")
    new_text: str = Field(description="Replacement text")
    replace_all: bool = Field(default=False, description="Replace every occurrence instead of exactly one")


class EditFileInvocation(ToolInvocation):
    params: EditFileParams

    def __init__(self, tool: "EditFileTool", params: EditFileParams):
        super().__init__(params)
        self.tool = tool
        self.path = tool.resolve_path(params.path)

    def describe(self) -> str:
        scope = "all occurrences" if self.params.replace_all else "one occurrence"
        return f"Edit {self.tool.relative(self.path)} ({scope})"

    def locations(self) -> List[str]:
        return [str(self.path)]

    async def execute(
        self,
        cancel: Optional[CancellationToken] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> ToolInvocationResult:
        check_cancelled(cancel)
        p = self.params
        if p.old_text == p.new_text:
            raise NoChangeProduced("old_text and new_text are identical")

        async with self.tool.locks.for_path(self.path):
            if not self.path.is_file():
                raise ResourceNotFound(f"File not found: {p.path}")
            before = _read_snapshot(self.path)
            seen = self.tool.locks.last_seen(self.path)
            if seen is not None and seen != before.digest:
                raise ConflictingConcurrentWrite(
                    f"{p.path} changed on disk since it was last read; re-read it and retry"
                )

            count = before.text.count(p.old_text)
            if count == 0:
                raise NoChangeProduced(f"old_text not found in {p.path}")
            if count > 1 and not p.replace_all:
                raise InvalidParameters(
                    f"old_text occurs {count} times in {p.path}; "
                    "add more context or set replace_all"
                )

            updated = before.text.replace(p.old_text, p.new_text, -1 if p.replace_all else 1)

            check_cancelled(cancel)
            current = _read_snapshot(self.path)
            if current.digest != before.digest:
                raise ConflictingConcurrentWrite(
                    f"{p.path} changed on disk since it was read; re-read it and retry"
                )
            try:
                _atomic_write(self.path, updated)
            except OSError as e:
                raise ExecutionError(f"Failed to write file: {e}") from e
            self.tool.locks.remember(self.path, _text_digest(updated))

        replaced = count if p.replace_all else 1
        return ToolInvocationResult(
            content=f"Replaced {replaced} occurrence(s) in {p.path}",
            display=f"Edited {self.tool.relative(self.path)}",
            metadata={"path": str(self.path), "replacements": replaced},
        )


class EditFileTool(WorkspaceTool):
    """Replace exact text inside an existing file."""

    name = "edit_file"
    display_name = "Edit File"
    description = (
        "Replace an exact snippet of text in an existing file. old_text must match "
        "exactly once unless replace_all is true."
    )
    params_model = EditFileParams

    def build(self, params: EditFileParams) -> EditFileInvocation:
        return EditFileInvocation(self, params)
