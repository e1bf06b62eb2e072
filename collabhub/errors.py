from __future__ import annotations


class WorkspaceError(Exception):
    """Base class for errors surfaced to engine callers."""

    code = "workspace_error"
    retryable = False

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": str(self)}


class SandboxUnavailable(WorkspaceError):
    """Provisioning failed or the sandbox crashed. Callers may retry."""

    code = "sandbox_unavailable"
    retryable = True

    def __init__(
        self, project_id: str, message: str = "environment unavailable, retry"
    ) -> None:
        super().__init__(message)
        self.project_id = project_id


class PathInvalid(WorkspaceError, ValueError):
    code = "path_invalid"


class AlreadyLocked(WorkspaceError):
    code = "already_locked"

    def __init__(self, file_id: str, holder: str) -> None:
        super().__init__(f"file '{file_id}' is locked by '{holder}'")
        self.file_id = file_id
        self.holder = holder

    def to_dict(self) -> dict:
        out = super().to_dict()
        out["file_id"] = self.file_id
        out["holder"] = self.holder
        return out


class NotLockHolder(WorkspaceError):
    code = "not_lock_holder"

    def __init__(self, file_id: str, user_id: str) -> None:
        super().__init__(f"user '{user_id}' does not hold the lock on '{file_id}'")
        self.file_id = file_id
        self.user_id = user_id


class SyncConflict(WorkspaceError):
    """Concurrent edits to the same path; last write wins."""

    code = "sync_conflict"

    def __init__(self, path: str, message: str | None = None) -> None:
        super().__init__(message or f"conflicting changes to '{path}'")
        self.path = path


class TerminalProcessExited(WorkspaceError):
    """The shell behind a terminal session has ended."""

    code = "terminal_exited"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"terminal process for session '{session_id}' has exited")
        self.session_id = session_id


class TerminalNotFound(WorkspaceError, LookupError):
    code = "terminal_not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"terminal session not found: {session_id}")
        self.session_id = session_id


class SessionLimitReached(WorkspaceError):
    code = "session_limit_reached"
    retryable = True


class EntryExists(WorkspaceError):
    """A canonical entry already exists for the requested path."""

    code = "entry_exists"

    def __init__(self, project_id: str, path: str) -> None:
        super().__init__(f"entry already exists: {path}")
        self.project_id = project_id
        self.path = path
