from __future__ import annotations

import pytest

from cache import TimedCache
from fakes import Clock, InMemoryStore, RecordingEmailSender
from invitations import InvitationService
from main import Services
from notifications import NotificationOutbox
from projects import ProjectService
from tasks import TaskService
from users import UserDirectory


class Ticker:
    """Manual monotonic clock for cache expiry."""

    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def store(clock: Clock) -> InMemoryStore:
    return InMemoryStore(clock=clock)


@pytest.fixture
def ticker() -> Ticker:
    return Ticker()


@pytest.fixture
def users(store: InMemoryStore, ticker: Ticker) -> UserDirectory:
    return UserDirectory(store, TimedCache(ttl_seconds=300, clock=ticker))


@pytest.fixture
def outbox(store: InMemoryStore) -> NotificationOutbox:
    return NotificationOutbox(store)


@pytest.fixture
def projects(store: InMemoryStore) -> ProjectService:
    return ProjectService(store)


@pytest.fixture
def tasks(store: InMemoryStore, outbox: NotificationOutbox) -> TaskService:
    return TaskService(store, outbox)


@pytest.fixture
def invitations(store: InMemoryStore, outbox: NotificationOutbox) -> InvitationService:
    return InvitationService(store, outbox)


@pytest.fixture
def sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def services(store: InMemoryStore, sender: RecordingEmailSender, clock: Clock) -> Services:
    return Services.build(store, sender=sender, clock=clock)

