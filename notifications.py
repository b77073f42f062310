"""
Email notifications through a durable outbox.

Mutations record what should be sent in the ``notifications`` collection;
``NotificationDispatcher`` later resolves the people involved, renders the
email and hands it to an ``EmailSender``, retrying with backoff. A failed
send never reaches the caller of the mutation that triggered it.
"""
import asyncio
import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from email.message import EmailMessage
from typing import Any, Callable, Dict, Optional

from jinja2 import DictLoader, Environment, select_autoescape
from pymongo import ASCENDING

from database import (
    INVITATIONS,
    NOTIFICATIONS,
    NOTIFICATIONS_DUE,
    PROJECTS,
    SERVER_TIMESTAMP,
    TASKS,
    DocumentStore,
    Where,
)
from errors import NotificationError, PreconditionFailedError, StoreError
from querying import query_with_fallback
from schemas import Invitation, Notification, Project, Task, User, utcnow
from users import UserDirectory

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BACKOFF_SECONDS = 30
# how long a claimed notification stays invisible to other dispatchers
CLAIM_LEASE_SECONDS = 120


@dataclass(frozen=True)
class OutgoingEmail:
    recipient_email: str
    subject: str
    html_body: str
    kind: str


# -----------------------------
# Senders
# -----------------------------

class EmailSender(ABC):
    @abstractmethod
    async def send(self, email: OutgoingEmail) -> None:
        """Deliver ``email`` or raise NotificationError."""


class LoggingEmailSender(EmailSender):
    async def send(self, email: OutgoingEmail) -> None:
        logger.info("[email:%s] to=%s subject=%s", email.kind, email.recipient_email, email.subject)


class SmtpEmailSender(EmailSender):
    def __init__(
        self,
        host: str,
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        sender: str = "noreply@synchro.local",
        starttls: bool = True,
        timeout: float = 30.0,
    ):
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._sender = sender
        self._starttls = starttls
        self._timeout = timeout

    def _send_blocking(self, email: OutgoingEmail) -> None:
        msg = EmailMessage()
        msg["From"] = self._sender
        msg["To"] = email.recipient_email
        msg["Subject"] = email.subject
        msg.set_content("This message requires an HTML capable email client.")
        msg.add_alternative(email.html_body, subtype="html")
        with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as smtp:
            if self._starttls:
                smtp.starttls()
            if self._username:
                smtp.login(self._username, self._password or "")
            smtp.send_message(msg)

    async def send(self, email: OutgoingEmail) -> None:
        try:
            await asyncio.to_thread(self._send_blocking, email)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationError(f"SMTP delivery to {email.recipient_email} failed: {exc}") from exc


# -----------------------------
# Templates
# -----------------------------

_TEMPLATES = {
    "invitation.html": """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h2 style="color: #1976d2;">Project Invitation</h2>
  <p><strong>{{ invitation.invited_by_email }}</strong> invited you to join
     <strong>"{{ invitation.project_name }}"</strong> as a <strong>{{ invitation.role }}</strong>.</p>
  <ul>
    <li>View project details and tasks</li>
    <li>Collaborate with team members</li>
    {% if invitation.role == "Member" %}<li>Create and manage tasks</li>{% endif %}
  </ul>
  <p>Sign in and open your notifications to accept or decline.</p>
  <p><a href="{{ base_url }}">Go to Synchro</a></p>
</div>
""",
    "task_assignment.html": """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h2 style="color: #1976d2;">New Task Assignment</h2>
  <p><strong>{{ actor_name }}</strong> assigned you a task in <strong>"{{ project.project_name }}"</strong>.</p>
  <p><strong>Title:</strong> {{ task.title }}</p>
  <p><strong>Description:</strong> {{ task.description }}</p>
  <p><strong>Status:</strong> {{ task.status }}</p>
  {% if task.priority %}<p><strong>Priority:</strong> {{ task.priority }}</p>{% endif %}
  {% if task.due_date %}<p><strong>Due:</strong> {{ task.due_date.strftime("%Y-%m-%d") }}</p>{% endif %}
  <p><a href="{{ base_url }}/project/{{ project.id }}">View task in project</a></p>
</div>
""",
    "task_completion.html": """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h2 style="color: #4caf50;">Task Completed</h2>
  <p>Hello <strong>{{ recipient_name }}</strong>,</p>
  <p><strong>"{{ task.title }}"</strong> in <strong>"{{ project.project_name }}"</strong> is done.</p>
  <p><strong>Description:</strong> {{ task.description }}</p>
  <p><strong>Completed by:</strong> {{ actor_name }}</p>
  <p><a href="{{ base_url }}/project/{{ project.id }}">View project progress</a></p>
</div>
""",
}

_SUBJECTS = {
    "invitation": 'You\'ve been invited to join "{project}"',
    "task_assignment": 'New task assigned: "{task}" in "{project}"',
    "task_completion": 'Task completed: "{task}" in "{project}"',
}


class EmailRenderer:
    def __init__(self, base_url: str = "http://localhost:3000"):
        self._base_url = base_url.rstrip("/")
        self._env = Environment(
            loader=DictLoader(_TEMPLATES),
            autoescape=select_autoescape(["html"]),
        )

    def render(self, kind: str, **context: Any) -> str:
        return self._env.get_template(f"{kind}.html").render(base_url=self._base_url, **context)

    @staticmethod
    def subject(kind: str, project: str, task: str = "") -> str:
        return _SUBJECTS[kind].format(project=project, task=task)


def _display(user: Optional[User]) -> str:
    if user is None:
        return "Unknown"
    return user.display_name or user.email or "Unknown"


# -----------------------------
# Outbox
# -----------------------------

class NotificationOutbox:
    def __init__(self, store: DocumentStore):
        self._store = store

    async def enqueue(
        self,
        kind: str,
        project_id: str,
        *,
        recipient_id: Optional[str] = None,
        recipient_email: Optional[str] = None,
        task_id: Optional[str] = None,
        invitation_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> str:
        doc = {
            "kind": kind,
            "status": "pending",
            "projectId": project_id,
            "attempts": 0,
            "nextAttemptAt": SERVER_TIMESTAMP,
        }
        optional = {
            "recipientId": recipient_id,
            "recipientEmail": recipient_email,
            "taskId": task_id,
            "invitationId": invitation_id,
            "actorId": actor_id,
        }
        doc.update({k: v for k, v in optional.items() if v is not None})
        return await self._store.insert(NOTIFICATIONS, doc)


class _Undeliverable(Exception):
    """The notification can never be sent (its subject or recipient is gone)."""


class NotificationDispatcher:
    def __init__(
        self,
        store: DocumentStore,
        users: UserDirectory,
        sender: EmailSender,
        renderer: Optional[EmailRenderer] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        batch_size: int = 50,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._users = users
        self._sender = sender
        self._renderer = renderer or EmailRenderer()
        self._max_attempts = max_attempts
        self._batch_size = batch_size
        self._backoff_seconds = backoff_seconds
        self._clock = clock

    async def due(self) -> list:
        records = await query_with_fallback(
            self._store,
            NOTIFICATIONS,
            [Where("status", "==", "pending"), Where("nextAttemptAt", "<=", self._clock())],
            order=(("nextAttemptAt", ASCENDING), ("id", ASCENDING)),
            index=NOTIFICATIONS_DUE,
            limit=self._batch_size,
        )
        return [Notification.from_record(r) for r in records]

    async def dispatch_pending(self) -> Dict[str, int]:
        report = {"sent": 0, "retrying": 0, "failed": 0, "skipped": 0}
        for note in await self.due():
            outcome = await self.dispatch_one(note)
            report[outcome] += 1
        if any(report[k] for k in ("sent", "retrying", "failed")):
            logger.info("Outbox dispatch: %s", report)
        return report

    async def dispatch_one(self, note: Notification) -> str:
        attempt = note.attempts + 1
        try:
            await self._store.update(
                NOTIFICATIONS,
                note.id,
                {"attempts": attempt, "nextAttemptAt": self._clock() + timedelta(seconds=CLAIM_LEASE_SECONDS)},
                preconditions=[Where("status", "==", "pending"), Where("attempts", "==", note.attempts)],
            )
        except PreconditionFailedError:
            # another dispatcher claimed it
            return "skipped"

        try:
            email = await self._compose(note)
            await self._sender.send(email)
        except _Undeliverable as exc:
            logger.warning("Dropping notification %s (%s): %s", note.id, note.kind, exc)
            await self._store.update(NOTIFICATIONS, note.id, {"status": "failed", "lastError": str(exc)})
            return "failed"
        except (NotificationError, StoreError) as exc:
            return await self._record_failure(note, attempt, exc)
        except Exception as exc:
            logger.exception("Unexpected error sending notification %s", note.id)
            return await self._record_failure(note, attempt, exc)

        await self._store.update(
            NOTIFICATIONS,
            note.id,
            {"status": "sent", "sentAt": SERVER_TIMESTAMP, "recipientEmail": email.recipient_email},
        )
        return "sent"

    async def run_forever(self, interval_seconds: float) -> None:
        while True:
            try:
                await self.dispatch_pending()
            except Exception:
                logger.exception("Outbox dispatch failed")
            await asyncio.sleep(interval_seconds)

    async def _record_failure(self, note: Notification, attempt: int, exc: Exception) -> str:
        logger.warning("Notification %s attempt %s failed: %s", note.id, attempt, exc)
        if attempt >= self._max_attempts:
            await self._store.update(NOTIFICATIONS, note.id, {"status": "failed", "lastError": str(exc)})
            return "failed"
        delay = self._backoff_seconds * (2 ** (attempt - 1))
        await self._store.update(
            NOTIFICATIONS,
            note.id,
            {"lastError": str(exc), "nextAttemptAt": self._clock() + timedelta(seconds=delay)},
        )
        return "retrying"

    async def _load_project(self, project_id: str) -> Project:
        record = await self._store.get(PROJECTS, project_id)
        if not record:
            raise _Undeliverable(f"project {project_id} no longer exists")
        return Project.from_record(record)

    async def _load_task(self, task_id: Optional[str]) -> Task:
        record = await self._store.get(TASKS, task_id) if task_id else None
        if not record:
            raise _Undeliverable(f"task {task_id} no longer exists")
        return Task.from_record(record)

    async def _compose(self, note: Notification) -> OutgoingEmail:
        if note.kind == "invitation":
            return await self._compose_invitation(note)

        task = await self._load_task(note.task_id)
        project = await self._load_project(task.project_id)
        if note.kind == "task_assignment":
            recipient = await self._users.find_by_id(note.recipient_id or "")
        else:
            recipient = await self._users.find_by_id(project.created_by)
        if recipient is None or not recipient.email:
            raise _Undeliverable(f"no email address for recipient of {note.kind}")
        actor = await self._users.find_by_id(note.actor_id or task.created_by)

        html = self._renderer.render(
            note.kind,
            task=task,
            project=project,
            actor_name=_display(actor),
            recipient_name=_display(recipient),
        )
        subject = self._renderer.subject(note.kind, project.project_name, task.title)
        return OutgoingEmail(recipient.email, subject, html, note.kind)

    async def _compose_invitation(self, note: Notification) -> OutgoingEmail:
        record = await self._store.get(INVITATIONS, note.invitation_id) if note.invitation_id else None
        if not record:
            raise _Undeliverable(f"invitation {note.invitation_id} no longer exists")
        invitation = Invitation.from_record(record)
        if not invitation.invited_to_email:
            raise _Undeliverable("invitation has no recipient email")
        html = self._renderer.render("invitation", invitation=invitation)
        subject = self._renderer.subject("invitation", invitation.project_name)
        return OutgoingEmail(invitation.invited_to_email, subject, html, "invitation")
