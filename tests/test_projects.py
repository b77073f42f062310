from __future__ import annotations

import asyncio

import pytest

from database import PROJECTS
from errors import MembershipError
from fakes import InMemoryStore, new_project, run
from projects import ProjectService, is_member, is_owner, member_path, role_of
from schemas import Project, ProjectUpdate, TaskCreate


def test_create_materializes_owner(projects, store):
    project_id = run(new_project(projects, "alice", team_members={"bob": "Viewer"}))

    project = run(projects.get(project_id))
    assert project.team_members["alice"].role == "Owner"
    assert project.team_members["bob"].role == "Viewer"
    assert project.team_members["alice"].joined_at == project.created_at
    assert store.raw(PROJECTS, project_id)["createdBy"] == "alice"


def test_creator_cannot_be_listed_as_non_owner(projects):
    project_id = run(new_project(projects, "alice", team_members={"alice": "Viewer"}))
    assert run(projects.get(project_id)).team_members["alice"].role == "Owner"


def test_legacy_project_without_owner_entry():
    project = Project.from_record({"id": "p1", "projectName": "Old", "createdBy": "alice", "teamMembers": {}})
    assert is_owner(project, "alice")
    assert role_of(project, "bob") is None


def test_member_path_rejects_field_path_characters():
    assert member_path("uid_123") == "teamMembers.uid_123"
    with pytest.raises(ValueError):
        member_path("a.b")
    with pytest.raises(ValueError):
        member_path("$where")


def test_concurrent_member_adds_both_survive(projects):
    project_id = run(new_project(projects, "alice"))

    async def add_both():
        await asyncio.gather(
            projects.add_member(project_id, "bob", "bob@example.com"),
            projects.add_member(project_id, "carol", "carol@example.com", "Viewer"),
        )

    run(add_both())
    project = run(projects.get(project_id))
    assert set(project.team_members) == {"alice", "bob", "carol"}
    assert project.team_members["carol"].role == "Viewer"


def test_owner_cannot_be_removed_or_demoted(projects):
    project_id = run(new_project(projects, "alice"))
    with pytest.raises(MembershipError):
        run(projects.remove_member(project_id, "alice"))
    with pytest.raises(MembershipError):
        run(projects.update_member_role(project_id, "alice", "Member"))
    with pytest.raises(MembershipError):
        run(projects.add_member(project_id, "bob", "bob@example.com", "Owner"))


def test_remove_and_role_change(projects):
    project_id = run(new_project(projects, "alice", team_members={"bob": "Member", "carol": "Member"}))

    run(projects.update_member_role(project_id, "bob", "Viewer"))
    run(projects.remove_member(project_id, "carol"))
    # not a member: no write
    run(projects.update_member_role(project_id, "dave", "Viewer"))

    project = run(projects.get(project_id))
    assert project.team_members["bob"].role == "Viewer"
    assert not is_member(project, "carol")
    assert not is_member(project, "dave")


def test_update_cannot_clear_name(projects):
    project_id = run(new_project(projects))
    with pytest.raises(ValueError):
        run(projects.update(project_id, ProjectUpdate(project_name=None)))

    run(projects.update(project_id, ProjectUpdate(goal="Ship it", deadline=None)))
    project = run(projects.get(project_id))
    assert project.goal == "Ship it"
    assert project.deadline is None


def test_list_for_user_newest_first(projects):
    first = run(new_project(projects, "alice"))
    second = run(new_project(projects, "bob", team_members={"alice": "Member"}))
    run(new_project(projects, "bob"))

    assert [p.id for p in run(projects.list_for_user("alice"))] == [second, first]


def test_list_for_user_fallback_matches_indexed_result(clock):
    ready = InMemoryStore(clock=clock)
    cold = InMemoryStore(clock=clock, ready_indexes=set())
    for store in (ready, cold):
        service = ProjectService(store)
        run(new_project(service, "alice"))
        run(new_project(service, "bob", team_members={"alice": "Viewer"}))
        run(new_project(service, "carol"))

    def shape(store):
        return [(p.project_name, p.created_by) for p in run(ProjectService(store).list_for_user("alice"))]

    result = shape(cold)
    assert result == shape(ready)
    assert len(result) == 2
    # the rejected indexed query plus the full scan
    assert cold.count_calls("query", PROJECTS) == 2


def test_delete_leaves_tasks(projects, tasks, store):
    project_id = run(new_project(projects))
    task_id = run(tasks.create(TaskCreate(project_id=project_id, title="Orphan", created_by="alice")))
    run(projects.delete(project_id))

    assert run(projects.get(project_id)) is None
    assert run(tasks.get(task_id)) is not None

