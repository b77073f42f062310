"""
Invitation lifecycle: pending -> accepted | declined.

Accepting only flips the invitation; adding the invitee to the project is a
separate write (see ``reconcile.accept_invitation``).
"""
import logging
from typing import List, Optional

from database import (
    INVITATIONS,
    INVITATIONS_BY_INVITEE,
    INVITATIONS_BY_PROJECT,
    SERVER_TIMESTAMP,
    DocumentStore,
    Where,
)
from errors import DuplicateDocumentError, InvalidTransitionError, PreconditionFailedError
from notifications import NotificationOutbox
from querying import query_with_fallback
from schemas import ACCEPTED, DECLINED, PENDING, Invitation, InvitationCreate

logger = logging.getLogger(__name__)


class InvitationService:
    def __init__(self, store: DocumentStore, outbox: Optional[NotificationOutbox] = None):
        self._store = store
        self._outbox = outbox

    async def _pending_for(self, project_id: str, invitee_id: str) -> Optional[Invitation]:
        records = await self._store.query(
            INVITATIONS,
            [
                Where("projectId", "==", project_id),
                Where("invitedTo", "==", invitee_id),
                Where("status", "==", PENDING),
            ],
            limit=1,
        )
        return Invitation.from_record(records[0]) if records else None

    async def create(self, data: InvitationCreate) -> str:
        """Create a pending invitation, or return the one already pending for this invitee."""
        existing = await self._pending_for(data.project_id, data.invited_to)
        if existing:
            logger.info("Invitation %s already pending for %s", existing.id, data.invited_to)
            return existing.id

        doc = data.to_document()
        doc["invitedToEmail"] = doc["invitedToEmail"].strip().lower()
        doc["status"] = PENDING
        try:
            invitation_id = await self._store.insert(INVITATIONS, doc)
        except DuplicateDocumentError:
            # lost a race with a concurrent create for the same invitee
            existing = await self._pending_for(data.project_id, data.invited_to)
            if existing is None:
                raise
            return existing.id
        logger.info("Invitation %s created for project %s", invitation_id, data.project_id)

        if self._outbox is not None:
            try:
                await self._outbox.enqueue(
                    "invitation",
                    data.project_id,
                    recipient_id=data.invited_to,
                    recipient_email=doc["invitedToEmail"],
                    invitation_id=invitation_id,
                    actor_id=data.invited_by,
                )
            except Exception as exc:
                logger.warning("Could not queue invitation email for %s: %s", invitation_id, exc)
        return invitation_id

    async def get(self, invitation_id: str) -> Optional[Invitation]:
        record = await self._store.get(INVITATIONS, invitation_id)
        return Invitation.from_record(record) if record else None

    async def list_pending_for_user(self, uid: str) -> List[Invitation]:
        records = await query_with_fallback(
            self._store,
            INVITATIONS,
            [Where("invitedTo", "==", uid), Where("status", "==", PENDING)],
            index=INVITATIONS_BY_INVITEE,
        )
        return [Invitation.from_record(r) for r in records]

    async def list_pending_for_project(self, project_id: str) -> List[Invitation]:
        records = await query_with_fallback(
            self._store,
            INVITATIONS,
            [Where("projectId", "==", project_id), Where("status", "==", PENDING)],
            index=INVITATIONS_BY_PROJECT,
        )
        return [Invitation.from_record(r) for r in records]

    async def list_unsettled(self) -> List[Invitation]:
        """Accepted invitations whose membership write has not been confirmed."""
        records = await self._store.query(
            INVITATIONS,
            [
                Where("status", "==", ACCEPTED),
                Where("memberAddedAt", "==", None),
                Where("orphanedAt", "==", None),
            ],
        )
        return [Invitation.from_record(r) for r in records]

    async def mark_member_added(self, invitation_id: str) -> None:
        await self._store.update(INVITATIONS, invitation_id, {"memberAddedAt": SERVER_TIMESTAMP})

    async def mark_orphaned(self, invitation_id: str) -> None:
        # the project is gone; there is no membership left to write
        await self._store.update(INVITATIONS, invitation_id, {"orphanedAt": SERVER_TIMESTAMP})

    async def _transition(self, invitation_id: str, target: str) -> None:
        try:
            await self._store.update(
                INVITATIONS,
                invitation_id,
                {"status": target},
                preconditions=[Where("status", "==", PENDING)],
            )
        except PreconditionFailedError as exc:
            raise InvalidTransitionError(invitation_id, target) from exc
        logger.info("Invitation %s %s", invitation_id, target)

    async def accept(self, invitation_id: str) -> None:
        await self._transition(invitation_id, ACCEPTED)

    async def decline(self, invitation_id: str) -> None:
        await self._transition(invitation_id, DECLINED)

    async def delete(self, invitation_id: str) -> None:
        await self._store.delete(INVITATIONS, invitation_id)
