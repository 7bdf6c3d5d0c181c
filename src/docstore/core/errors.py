"""
Error types shared by every backend.

There is no NotFound error: a missing id is a normal outcome
(`get` returns None, `delete` reports deleted=False).
"""


class DocstoreError(Exception):
    """Base class for all docstore errors."""


class ConflictError(DocstoreError):
    """
    A write precondition failed.

    Raised for create_only on an existing id, update_only on a missing id,
    or a stale version token. Callers are expected to re-read and retry.
    """

    def __init__(self, doc_id: str, reason: str):
        self.doc_id = doc_id
        self.reason = reason
        super().__init__(f"Conflict on {doc_id}: {reason}")


class ValidationError(DocstoreError):
    """Input was rejected before reaching a backend."""


class BackendError(DocstoreError):
    """A storage or transport failure reported by a backend."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class InvalidTransitionError(DocstoreError):
    """An Action was asked to move between states that are not connected."""

    def __init__(self, action_id: str, current: str, target: str):
        self.action_id = action_id
        self.current = current
        self.target = target
        super().__init__(f"Action {action_id} cannot move from {current} to {target}")
