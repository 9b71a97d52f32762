"""Classification of commands that may be deferred while offline.

Only write-type commands that are idempotent enough, or acceptably
eventually consistent, are allowed into the queue. Everything else,
including every read, must fail immediately when the backend is not
reachable so that callers never mistake a deferred read for a result.
"""

from __future__ import annotations

from collections.abc import Iterable

# Write commands known to be safe to replay later.
DEFAULT_QUEUEABLE_COMMANDS: frozenset[str] = frozenset({
    # Tasks
    "create_task",
    "update_task",
    "update_task_status",
    "delete_task",
    # Sessions
    "create_session",
    "update_session",
    "update_session_status",
    "delete_session",
    # PRDs and requirements
    "create_prd",
    "update_prd",
    "delete_prd",
    "add_requirement",
    "update_requirement_status",
    "delete_requirement",
    # Projects
    "update_project_name",
    "toggle_project_favorite",
    # Notes and context
    "add_ralph_progress_note",
    "save_context_file",
})


class CommandClassifier:
    """Allow-list based predicate deciding whether a command is queueable.

    The classifier holds no mutable state and performs no I/O, so it can
    be called at any frequency from any thread.
    """

    def __init__(
        self,
        allowed: Iterable[str] | None = None,
        extra: Iterable[str] = (),
    ) -> None:
        """Initialize the classifier.

        Args:
            allowed: Allow-list replacing the default one.
            extra: Additional commands appended to the allow-list.
        """
        base = DEFAULT_QUEUEABLE_COMMANDS if allowed is None else frozenset(allowed)
        self._allowed = base | frozenset(extra)

    @property
    def allowed(self) -> frozenset[str]:
        """Commands accepted by this classifier."""
        return self._allowed

    def is_queueable(self, command: str) -> bool:
        """Check if a command may be deferred.

        Args:
            command: Backend command name.

        Returns:
            True only for allow-listed commands.
        """
        return command in self._allowed


_default_classifier = CommandClassifier()


def is_queueable(command: str) -> bool:
    """Check a command against the default allow-list."""
    return _default_classifier.is_queueable(command)
