"""Storage-level permission enforcement for deep-agent invocations.

The deep-agent executor hands the agent a filesystem backend rooted at the
workspace. The backend built here enforces the invocation's permission scope
at the storage layer, so a tool set that omits ``Write`` cannot create files
even if the model asks for it:

1. **Reads are always allowed** -- ``ls``, ``read``, ``grep``, ``glob`` and
   ``download_files`` pass straight through.
2. **Tool-scoped mutations** -- ``write``/``upload_files``/``delete`` require
   the ``Write`` tool, ``edit`` requires the ``Edit`` tool, and plan mode
   forbids all of them.
3. **Write-once workspace records** -- the requirements document and the
   audit ledger can never be modified by an agent.

Composition order (innermost to outermost)::

    FilesystemBackend(root_dir, virtual_mode=True) -> PermissionScopedBackend
"""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath

from deepagents.backends import FilesystemBackend
from deepagents.backends.protocol import (
    BackendProtocol,
    DeleteResult,
    EditResult,
    FileDownloadResponse,
    FileUploadResponse,
    GlobResult,
    GrepResult,
    LsResult,
    ReadResult,
    WriteResult,
)

from .models import AUDIT_FILENAME, REQUIREMENTS_FILENAME, PermissionMode

logger = logging.getLogger(__name__)

PROTECTED_PATHS: frozenset[str] = frozenset({REQUIREMENTS_FILENAME, AUDIT_FILENAME})


def _workspace_relative(file_path: str) -> str:
    """Normalize a virtual path (``/src/a.ts``) to its workspace-relative form (``src/a.ts``)."""
    return PurePosixPath("/", file_path).as_posix().lstrip("/")


class PermissionScopedBackend(BackendProtocol):
    """Wraps a backend and rejects mutations outside the invocation's permission scope.

    Denials are returned as error results per the ``BackendProtocol``
    contract, which the agent sees as a failed tool call.
    """

    _PROTECTED_ERROR = "Cannot modify write-once workspace record: {path}"
    _SCOPE_ERROR = "Permission denied: '{operation}' is not allowed in this step (mode={mode}, tools={tools})"

    def __init__(
        self,
        backend: BackendProtocol,
        *,
        allowed_tools: tuple[str, ...],
        permission_mode: PermissionMode,
        protected_paths: frozenset[str] = PROTECTED_PATHS,
    ) -> None:
        self._backend = backend
        self.allowed_tools = tuple(allowed_tools)
        self.permission_mode = permission_mode
        self.protected_paths = protected_paths

    @property
    def can_write(self) -> bool:
        return "Write" in self.allowed_tools and self.permission_mode != PermissionMode.PLAN

    @property
    def can_edit(self) -> bool:
        return "Edit" in self.allowed_tools and self.permission_mode != PermissionMode.PLAN

    def _is_protected(self, file_path: str) -> bool:
        return _workspace_relative(file_path) in self.protected_paths

    def _denial(self, file_path: str, *, operation: str, allowed: bool) -> str | None:
        """Return a denial message for a mutation, or None when it is permitted."""
        if self._is_protected(file_path):
            msg = self._PROTECTED_ERROR.format(path=file_path)
        elif not allowed:
            msg = self._SCOPE_ERROR.format(
                operation=operation,
                mode=self.permission_mode.value,
                tools=",".join(self.allowed_tools) or "none",
            )
        else:
            return None
        logger.warning(msg)
        return msg

    def ls(self, path: str) -> LsResult:
        return self._backend.ls(path)

    def read(self, file_path: str, offset: int = 0, limit: int = 2000) -> ReadResult:
        return self._backend.read(file_path, offset=offset, limit=limit)

    def grep(
        self,
        pattern: str,
        path: str | None = None,
        glob: str | None = None,
        *,
        max_count: int | None = None,
    ) -> GrepResult:
        return self._backend.grep(pattern, path=path, glob=glob, max_count=max_count)

    def glob(self, pattern: str, path: str | None = None) -> GlobResult:
        return self._backend.glob(pattern, path=path)

    def write(self, file_path: str, content: str) -> WriteResult:
        denial = self._denial(file_path, operation="write", allowed=self.can_write)
        if denial is not None:
            return WriteResult(error=denial)
        return self._backend.write(file_path, content)

    def edit(self, file_path: str, old_string: str, new_string: str, replace_all: bool = False) -> EditResult:
        denial = self._denial(file_path, operation="edit", allowed=self.can_edit)
        if denial is not None:
            return EditResult(error=denial)
        return self._backend.edit(file_path, old_string, new_string, replace_all=replace_all)

    def delete(self, file_path: str) -> DeleteResult:
        """Delete a path; the root and any directory holding a protected record are refused too."""
        relative = _workspace_relative(file_path)
        shields_record = relative == "" or any(
            protected.startswith(f"{relative}/") for protected in self.protected_paths
        )
        denial = self._denial(file_path, operation="delete", allowed=self.can_write)
        if denial is None and shields_record:
            denial = self._PROTECTED_ERROR.format(path=file_path)
            logger.warning(denial)
        if denial is not None:
            return DeleteResult(error=denial)
        return self._backend.delete(file_path)

    def upload_files(self, files: list[tuple[str, bytes]]) -> list[FileUploadResponse]:
        """Upload files; the whole batch is rejected if any target is denied."""
        denials = [
            (path, self._denial(path, operation="write", allowed=self.can_write)) for path, _ in files
        ]
        blocked = [(path, msg) for path, msg in denials if msg is not None]
        if blocked:
            return [FileUploadResponse(path=path, error=msg) for path, msg in blocked]
        return self._backend.upload_files(files)

    def download_files(self, paths: list[str]) -> list[FileDownloadResponse]:
        return self._backend.download_files(paths)


def build_workspace_backend(
    root_dir: str | Path,
    *,
    allowed_tools: tuple[str, ...],
    permission_mode: PermissionMode,
) -> BackendProtocol:
    """Construct the permission-scoped backend for one agent invocation in ``root_dir``."""
    base = FilesystemBackend(root_dir=root_dir, virtual_mode=True)
    return PermissionScopedBackend(base, allowed_tools=allowed_tools, permission_mode=permission_mode)
