from __future__ import annotations

from database import NOTIFICATIONS, TASKS
from fakes import FailingEmailSender, InMemoryStore, new_project, run, sign_up
from notifications import EmailRenderer, NotificationDispatcher
from schemas import InvitationCreate, TaskCreate


def _dispatcher(store, users, sender, clock, **options) -> NotificationDispatcher:
    return NotificationDispatcher(store, users, sender, EmailRenderer("https://app.example.com"), clock=clock, **options)


def _seed(users, projects):
    run(sign_up(users, "alice", "alice@example.com", "Alice"))
    run(sign_up(users, "bob", "bob@example.com", "Bob"))
    return run(new_project(projects, "alice", team_members={"bob": "Member"}))


def test_assignment_email(users, projects, tasks, store, sender, clock):
    project_id = _seed(users, projects)
    run(tasks.create(TaskCreate(project_id=project_id, title="Write docs", created_by="alice", assigned_to="bob")))

    report = run(_dispatcher(store, users, sender, clock).dispatch_pending())

    assert report == {"sent": 1, "retrying": 0, "failed": 0, "skipped": 0}
    email = sender.sent[0]
    assert email.recipient_email == "bob@example.com"
    assert email.subject == 'New task assigned: "Write docs" in "Apollo"'
    assert "Alice" in email.html_body
    assert f"https://app.example.com/project/{project_id}" in email.html_body
    note = next(iter(store.collections[NOTIFICATIONS].values()))
    assert note["status"] == "sent"
    assert note["attempts"] == 1


def test_completion_email_goes_to_owner(users, projects, tasks, store, sender, clock):
    project_id = _seed(users, projects)
    task_id = run(tasks.create(TaskCreate(project_id=project_id, title="Ship", created_by="alice")))
    run(tasks.update_status(task_id, "Done", actor_id="bob"))

    run(_dispatcher(store, users, sender, clock).dispatch_pending())

    assert [e.recipient_email for e in sender.sent] == ["alice@example.com"]
    assert sender.sent[0].kind == "task_completion"
    assert "Bob" in sender.sent[0].html_body


def test_invitation_email_escapes_project_name(users, invitations, store, sender, clock):
    run(
        invitations.create(
            InvitationCreate(
                project_id="p1",
                project_name="<b>Apollo</b>",
                invited_by="alice",
                invited_by_email="alice@example.com",
                invited_to="bob",
                invited_to_email="bob@example.com",
            )
        )
    )

    run(_dispatcher(store, users, sender, clock).dispatch_pending())

    email = sender.sent[0]
    assert email.recipient_email == "bob@example.com"
    assert "&lt;b&gt;Apollo&lt;/b&gt;" in email.html_body
    assert "Create and manage tasks" in email.html_body


def test_failed_delivery_backs_off_then_gives_up(users, projects, tasks, store, clock):
    project_id = _seed(users, projects)
    run(tasks.create(TaskCreate(project_id=project_id, title="Write docs", created_by="alice", assigned_to="bob")))
    sender = FailingEmailSender()
    dispatcher = _dispatcher(store, users, sender, clock, max_attempts=3, backoff_seconds=30)

    assert run(dispatcher.dispatch_pending())["retrying"] == 1
    # not due again until the backoff elapses
    assert run(dispatcher.dispatch_pending())["retrying"] == 0
    clock.advance(31)
    assert run(dispatcher.dispatch_pending())["retrying"] == 1
    clock.advance(61)
    assert run(dispatcher.dispatch_pending())["failed"] == 1

    note = next(iter(store.collections[NOTIFICATIONS].values()))
    assert note["status"] == "failed"
    assert note["attempts"] == 3
    assert note["lastError"] == "SMTP connection refused"
    assert sender.attempts == 3


def test_deleted_task_is_dropped(users, projects, tasks, store, sender, clock):
    project_id = _seed(users, projects)
    task_id = run(tasks.create(TaskCreate(project_id=project_id, title="Gone", created_by="alice", assigned_to="bob")))
    run(tasks.delete(task_id))

    report = run(_dispatcher(store, users, sender, clock).dispatch_pending())

    assert report["failed"] == 1
    assert sender.sent == []


def test_claimed_notification_is_skipped(users, projects, tasks, store, sender, clock):
    project_id = _seed(users, projects)
    run(tasks.create(TaskCreate(project_id=project_id, title="Race", created_by="alice", assigned_to="bob")))
    dispatcher = _dispatcher(store, users, sender, clock)
    note = run(dispatcher.due())[0]

    assert run(dispatcher.dispatch_one(note)) == "sent"
    # a second dispatcher holding the same stale snapshot loses the claim
    assert run(dispatcher.dispatch_one(note)) == "skipped"
    assert len(sender.sent) == 1


def test_due_falls_back_without_index(users, sender, clock):
    store = InMemoryStore(clock=clock, ready_indexes=set())
    store.put(TASKS, "t1", {"projectId": "p1", "title": "x", "createdBy": "alice"})
    store.put(
        NOTIFICATIONS,
        "n1",
        {
            "kind": "task_assignment",
            "status": "pending",
            "projectId": "p1",
            "taskId": "t1",
            "recipientId": "bob",
            "attempts": 0,
            "nextAttemptAt": clock.current,
        },
    )

    assert [n.id for n in run(_dispatcher(store, users, sender, clock).due())] == ["n1"]
