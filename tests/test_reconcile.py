from __future__ import annotations

from database import INVITATIONS
from fakes import new_project, run, sign_up
from reconcile import Reconciler, accept_invitation
from schemas import InvitationCreate


def _setup(users, projects, invitations):
    run(sign_up(users, "alice", "alice@example.com"))
    bob = run(sign_up(users, "bob", "bob@example.com"))
    project_id = run(new_project(projects, "alice"))
    invitation_id = run(
        invitations.create(
            InvitationCreate(
                project_id=project_id,
                project_name="Apollo",
                invited_by="alice",
                invited_by_email="alice@example.com",
                invited_to="bob",
                invited_to_email="bob@example.com",
                role="Viewer",
            )
        )
    )
    return bob, project_id, invitation_id


def test_accept_joins_project(users, projects, invitations):
    bob, project_id, invitation_id = _setup(users, projects, invitations)

    invitation = run(accept_invitation(invitations, projects, invitation_id, bob))

    assert invitation.status == "accepted"
    assert invitation.member_added_at is not None
    assert run(projects.get(project_id)).team_members["bob"].role == "Viewer"


def test_accept_for_someone_else_is_refused(users, projects, invitations):
    _, project_id, invitation_id = _setup(users, projects, invitations)
    carol = run(sign_up(users, "carol", "carol@example.com"))

    assert run(accept_invitation(invitations, projects, invitation_id, carol)) is None
    assert run(invitations.get(invitation_id)).status == "pending"


def test_sweep_repairs_interrupted_accept(users, projects, invitations):
    _, project_id, invitation_id = _setup(users, projects, invitations)
    # the process died right after flipping the invitation
    run(invitations.accept(invitation_id))
    reconciler = Reconciler(invitations, projects)

    found = run(reconciler.find_inconsistencies())
    assert [i.invitation.id for i in found] == [invitation_id]

    report = run(reconciler.sweep())
    assert report.repaired == [invitation_id]
    assert run(projects.get(project_id)).team_members["bob"].role == "Viewer"
    assert run(reconciler.find_inconsistencies()) == []


def test_removal_after_accept_sticks(users, projects, invitations):
    bob, project_id, invitation_id = _setup(users, projects, invitations)
    run(accept_invitation(invitations, projects, invitation_id, bob))
    run(projects.remove_member(project_id, "bob"))

    report = run(Reconciler(invitations, projects).sweep())

    assert report.found == 0
    assert "bob" not in run(projects.get(project_id)).team_members


def test_sweep_settles_membership_written_before_stamp(users, projects, invitations, store):
    bob, project_id, invitation_id = _setup(users, projects, invitations)
    run(invitations.accept(invitation_id))
    run(projects.add_member(project_id, "bob", bob.email, "Viewer"))

    report = run(Reconciler(invitations, projects).sweep())

    assert report.settled == [invitation_id]
    assert store.raw(INVITATIONS, invitation_id)["memberAddedAt"] is not None


def test_sweep_reports_deleted_projects_once(users, projects, invitations, store):
    _, project_id, invitation_id = _setup(users, projects, invitations)
    run(invitations.accept(invitation_id))
    run(projects.delete(project_id))

    reconciler = Reconciler(invitations, projects)
    assert run(reconciler.find_inconsistencies())[0].orphaned
    report = run(reconciler.sweep())
    assert report.orphaned == [invitation_id]
    assert report.repaired == []
    assert store.raw(INVITATIONS, invitation_id)["orphanedAt"] is not None

    # reported once, then left alone
    again = run(reconciler.sweep())
    assert again.orphaned == []
    assert again.found == 0
    assert run(invitations.list_unsettled()) == []
    assert run(reconciler.find_inconsistencies()) == []


def test_retrying_accept_finishes_membership(users, projects, invitations):
    bob, project_id, invitation_id = _setup(users, projects, invitations)
    run(invitations.accept(invitation_id))

    invitation = run(accept_invitation(invitations, projects, invitation_id, bob))

    assert invitation.member_added_at is not None
    assert "bob" in run(projects.get(project_id)).team_members


def test_accept_keeps_role_of_existing_member(users, projects, invitations):
    bob, project_id, invitation_id = _setup(users, projects, invitations)
    run(projects.add_member(project_id, "bob", bob.email, "Member"))
    joined = run(projects.get(project_id)).team_members["bob"].joined_at

    invitation = run(accept_invitation(invitations, projects, invitation_id, bob))

    assert invitation.status == "accepted"
    assert invitation.member_added_at is not None
    member = run(projects.get(project_id)).team_members["bob"]
    assert member.role == "Member"
    assert member.joined_at == joined
