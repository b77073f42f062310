"""
Error taxonomy for the data-synchronization core.

Reads report absence as ``None``; only failures are exceptions.
"""
from typing import Optional


class StoreError(RuntimeError):
    """Transport, permission or precondition failure from the document store."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code or "store_error"
        self.message = message


class IndexNotReadyError(StoreError):
    """The compound index a query needs is missing or still building."""

    def __init__(self, index: str, message: Optional[str] = None):
        super().__init__(message or f"index '{index}' is not ready", code="index_not_ready")
        self.index = index


class DocumentNotFoundError(StoreError):
    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} does not exist", code="not_found")
        self.collection = collection
        self.doc_id = doc_id


class PreconditionFailedError(StoreError):
    def __init__(self, collection: str, doc_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"precondition failed for {collection}/{doc_id}",
            code="failed_precondition",
        )
        self.collection = collection
        self.doc_id = doc_id


class DuplicateDocumentError(StoreError):
    def __init__(self, collection: str, message: Optional[str] = None):
        super().__init__(message or f"duplicate document in {collection}", code="already_exists")
        self.collection = collection


class CapacityError(Exception):
    """Raised before any write when a project already holds its task ceiling."""

    def __init__(self, project_id: str, limit: int):
        super().__init__(
            f"Maximum of {limit} tasks reached for this project. "
            "Delete tasks before adding more."
        )
        self.project_id = project_id
        self.limit = limit


class InvalidTransitionError(Exception):
    def __init__(self, invitation_id: str, target: str):
        super().__init__(f"Invitation {invitation_id} is no longer pending and cannot be {target}.")
        self.invitation_id = invitation_id
        self.target = target


class MembershipError(Exception):
    """Membership change that would break the single-owner invariant."""


class NotificationError(Exception):
    """Email delivery failed. Never surfaced to the caller of a mutation."""
