"""
Invitation acceptance and the repair sweep behind it.

Accepting is three writes: the invitation flips to ``accepted``, the invitee
is added to the project's ``teamMembers``, and the invitation is stamped
``memberAddedAt``. If the process dies between the first and the last write,
the invitation stays accepted without the stamp; the sweep picks those up,
adds any missing membership with the invited role and stamps them. Stamped
invitations are never revisited, so removing a member later sticks.
Invitations whose project was deleted are reported once and stamped
``orphanedAt``.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from errors import DocumentNotFoundError, StoreError
from invitations import InvitationService
from projects import ProjectService, is_member
from schemas import ACCEPTED, Invitation, User

logger = logging.getLogger(__name__)


@dataclass
class Inconsistency:
    invitation: Invitation
    # the project was deleted, so there is nothing to repair
    orphaned: bool = False


@dataclass
class SweepReport:
    found: int = 0
    repaired: List[str] = field(default_factory=list)
    settled: List[str] = field(default_factory=list)
    orphaned: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "found": self.found,
            "repaired": self.repaired,
            "settled": self.settled,
            "orphaned": self.orphaned,
            "errors": self.errors,
        }


async def accept_invitation(
    invitations: InvitationService,
    projects: ProjectService,
    invitation_id: str,
    user: User,
) -> Optional[Invitation]:
    """Accept ``invitation_id`` on behalf of ``user`` and join the project.

    Returns ``None`` if the invitation does not exist or is addressed to
    someone else. Calling it again for an accepted invitation finishes the
    membership write if it never happened.
    """
    invitation = await invitations.get(invitation_id)
    if invitation is None or invitation.invited_to != user.uid:
        return None
    if invitation.status == ACCEPTED and invitation.member_added_at is not None:
        return invitation
    if invitation.status != ACCEPTED:
        await invitations.accept(invitation_id)
    project = await projects.get(invitation.project_id)
    # an existing membership keeps the role and join time it already has
    if project is None or not is_member(project, user.uid):
        await projects.add_member(invitation.project_id, user.uid, user.email, invitation.role)
    await invitations.mark_member_added(invitation_id)
    return await invitations.get(invitation_id)


class Reconciler:
    def __init__(self, invitations: InvitationService, projects: ProjectService):
        self._invitations = invitations
        self._projects = projects

    async def find_inconsistencies(self) -> List[Inconsistency]:
        """Accepted invitations whose invitee is missing from the project."""
        found = []
        for invitation in await self._invitations.list_unsettled():
            project = await self._projects.get(invitation.project_id)
            if project is None:
                found.append(Inconsistency(invitation, orphaned=True))
            elif not is_member(project, invitation.invited_to):
                found.append(Inconsistency(invitation))
        return found

    async def sweep(self) -> SweepReport:
        report = SweepReport()
        for invitation in await self._invitations.list_unsettled():
            try:
                await self._settle(invitation, report)
            except StoreError as exc:
                logger.warning("Could not reconcile invitation %s: %s", invitation.id, exc)
                report.errors.append(invitation.id)
        report.found = len(report.repaired) + len(report.orphaned)
        if report.found or report.errors:
            logger.info("Reconciliation sweep: %s", report.as_dict())
        return report

    async def _settle(self, invitation: Invitation, report: SweepReport) -> None:
        project = await self._projects.get(invitation.project_id)
        if project is None:
            await self._orphan(invitation, report)
            return
        if is_member(project, invitation.invited_to):
            report.settled.append(invitation.id)
        else:
            try:
                await self._projects.add_member(
                    invitation.project_id,
                    invitation.invited_to,
                    invitation.invited_to_email,
                    invitation.role,
                )
            except DocumentNotFoundError:
                await self._orphan(invitation, report)
                return
            logger.info("Repaired membership of %s in project %s", invitation.invited_to, invitation.project_id)
            report.repaired.append(invitation.id)
        await self._invitations.mark_member_added(invitation.id)

    async def _orphan(self, invitation: Invitation, report: SweepReport) -> None:
        logger.warning("Invitation %s points at deleted project %s", invitation.id, invitation.project_id)
        await self._invitations.mark_orphaned(invitation.id)
        report.orphaned.append(invitation.id)

    async def run_forever(self, interval_seconds: float) -> None:
        while True:
            try:
                await self.sweep()
            except Exception:
                logger.exception("Reconciliation sweep failed")
            await asyncio.sleep(interval_seconds)
