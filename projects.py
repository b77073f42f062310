"""
Projects and their embedded team-membership map.

``teamMembers`` maps uid -> {role, joinedAt}. The creator is always stored in
it with role Owner, and no other member can hold that role. Member edits are
single-field writes on ``teamMembers.<uid>`` so concurrent changes to
different members never overwrite each other.
"""
import logging
import re
from typing import List, Optional

from database import (
    DELETE_FIELD,
    PROJECTS,
    PROJECTS_BY_MEMBER,
    SERVER_TIMESTAMP,
    DocumentStore,
    Where,
)
from errors import DocumentNotFoundError, MembershipError
from querying import query_with_fallback
from schemas import Project, ProjectCreate, ProjectUpdate, Role

logger = logging.getLogger(__name__)

OWNER = "Owner"
MEMBER = "Member"
VIEWER = "Viewer"

# uids become field paths, so dots and dollar signs are not allowed
_UID_RE = re.compile(r"^[A-Za-z0-9_\-:@+]+$")


def member_path(uid: str) -> str:
    if not uid or not _UID_RE.match(uid):
        raise ValueError(f"invalid user id: {uid!r}")
    return f"teamMembers.{uid}"


def role_of(project: Project, uid: str) -> Optional[str]:
    member = project.team_members.get(uid)
    if member:
        return member.role
    # projects written before the owner was always materialized
    if uid and uid == project.created_by:
        return OWNER
    return None


def is_member(project: Project, uid: str) -> bool:
    return role_of(project, uid) is not None


def is_owner(project: Project, uid: str) -> bool:
    return role_of(project, uid) == OWNER


def can_edit_tasks(project: Project, uid: str) -> bool:
    return role_of(project, uid) in (OWNER, MEMBER)


class ProjectService:
    def __init__(self, store: DocumentStore):
        self._store = store

    async def create(self, data: ProjectCreate) -> str:
        member_path(data.created_by)
        doc = data.to_document()
        members = {}
        for uid, role in data.team_members.items():
            member_path(uid)
            if uid != data.created_by:
                members[uid] = {"role": role, "joinedAt": SERVER_TIMESTAMP}
        members[data.created_by] = {"role": OWNER, "joinedAt": SERVER_TIMESTAMP}
        doc["teamMembers"] = members
        project_id = await self._store.insert(PROJECTS, doc)
        logger.info("Project %s created by %s", project_id, data.created_by)
        return project_id

    async def get(self, project_id: str) -> Optional[Project]:
        record = await self._store.get(PROJECTS, project_id)
        return Project.from_record(record) if record else None

    async def update(self, project_id: str, changes: ProjectUpdate) -> None:
        partial = {k: (DELETE_FIELD if v is None else v) for k, v in changes.changes().items()}
        if "projectName" in partial and partial["projectName"] is DELETE_FIELD:
            raise ValueError("projectName cannot be cleared")
        if not partial:
            return
        await self._store.update(PROJECTS, project_id, partial)

    async def delete(self, project_id: str) -> None:
        # tasks and invitations of the project are left in place
        await self._store.delete(PROJECTS, project_id)
        logger.info("Project %s deleted", project_id)

    async def list_for_user(self, uid: str) -> List[Project]:
        records = await query_with_fallback(
            self._store,
            PROJECTS,
            [Where(member_path(uid), "exists")],
            index=PROJECTS_BY_MEMBER,
        )
        return [Project.from_record(r) for r in records]

    async def _require(self, project_id: str) -> Project:
        project = await self.get(project_id)
        if project is None:
            raise DocumentNotFoundError(PROJECTS, project_id)
        return project

    async def add_member(self, project_id: str, uid: str, email: str, role: Role = MEMBER) -> None:
        path = member_path(uid)
        project = await self._require(project_id)
        if role == OWNER and uid != project.created_by:
            raise MembershipError("only the project creator can be Owner")
        if uid == project.created_by and role != OWNER:
            raise MembershipError("the project owner cannot be demoted")
        await self._store.update(PROJECTS, project_id, {path: {"role": role, "joinedAt": SERVER_TIMESTAMP}})
        logger.info("Added %s (%s) to project %s as %s", uid, email, project_id, role)

    async def remove_member(self, project_id: str, uid: str) -> None:
        path = member_path(uid)
        project = await self._require(project_id)
        if uid == project.created_by:
            raise MembershipError("the project owner cannot be removed")
        await self._store.update(PROJECTS, project_id, {path: DELETE_FIELD})
        logger.info("Removed %s from project %s", uid, project_id)

    async def update_member_role(self, project_id: str, uid: str, role: Role) -> None:
        path = member_path(uid)
        project = await self._require(project_id)
        if uid == project.created_by and role != OWNER:
            raise MembershipError("the project owner cannot be demoted")
        if role == OWNER and uid != project.created_by:
            raise MembershipError("only the project creator can be Owner")
        if uid not in project.team_members or project.team_members[uid].role == role:
            return
        await self._store.update(
            PROJECTS,
            project_id,
            {f"{path}.role": role},
            preconditions=[Where(path, "exists")],
        )
