from __future__ import annotations

import os
import pytest
from _pytest.fixtures import FixtureLookupError

from datetime import datetime, timezone
from labres import new_scheduler, registry
from labres.context.clock import FixedClock
from labres.modules.auth import Actor
from uuid import uuid4 as new_uuid


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Callable
    from collections.abc import Generator
    from labres.db.models import Resource
    from labres.db.models.notification import NotificationRecord
    from labres.db.scheduler import Scheduler


# a monday, 08:00 in Zurich
NOW = datetime(2024, 5, 27, 6, 0, tzinfo=timezone.utc)


class RecordingEmitter:
    """ Remembers the emitted notifications, optionally failing. """

    def __init__(self) -> None:
        self.records: list[NotificationRecord] = []
        self.fail = False

    def emit(self, notification: NotificationRecord) -> None:
        if self.fail:
            raise ConnectionError('mail server unreachable')

        self.records.append(notification)

    def kinds(self, user: str | None = None) -> list[str]:
        return [
            r.kind for r in self.records
            if user is None or r.user == user
        ]


def travel(scheduler: Scheduler, now: datetime) -> None:
    """ Moves the clock of the scheduler to the given time. """
    scheduler.context.set_service('clock', lambda context: FixedClock(now))
    scheduler.clear_cache()


def new_test_scheduler(
    dsn: str,
    context_name: str | None = None,
    scheduler_name: str | None = None
) -> Scheduler:

    context_name = context_name or new_uuid().hex
    scheduler_name = scheduler_name or new_uuid().hex

    context = registry.register_context(context_name, replace=True)
    context.set_setting('dsn', dsn)

    return new_scheduler(
        context=context,
        name=scheduler_name,
        timezone='Europe/Zurich'
    )


@pytest.fixture
def emitter() -> RecordingEmitter:
    return RecordingEmitter()


@pytest.fixture
def scheduler(
    request: pytest.FixtureRequest,
    dsn: str,
    emitter: RecordingEmitter
) -> Generator[Scheduler, None, None]:

    # clear the events before each test
    from labres.modules import events
    for event in (e for e in dir(events) if e.startswith('on_')):
        del getattr(events, event)[:]

    try:
        context = request.getfixturevalue('scheduler_context')
    except FixtureLookupError:
        context = None

    try:
        name = request.getfixturevalue('scheduler_name')
    except FixtureLookupError:
        name = None

    scheduler = new_test_scheduler(dsn, context, name)
    scheduler.context.set_service(
        'notification_emitter', lambda context: emitter
    )
    travel(scheduler, NOW)

    yield scheduler

    scheduler.rollback()
    scheduler.extinguish_managed_records()
    scheduler.commit()
    scheduler.close()
    registry.unregister_context(scheduler.context.name)


@pytest.fixture(scope="session")
def dsn(
    tmp_path_factory: pytest.TempPathFactory
) -> Generator[str, None, None]:

    # set LABRES_TEST_POSTGRESQL to run the tests against a temporary
    # postgres server instead of sqlite
    if os.environ.get('LABRES_TEST_POSTGRESQL'):
        from testing.postgresql import Postgresql  # type: ignore[import-untyped]
        postgres = Postgresql()
        url = postgres.url()
    else:
        postgres = None
        path = tmp_path_factory.mktemp('labres') / 'labres.db'
        url = f'sqlite:///{path}'

    scheduler = new_test_scheduler(url)
    scheduler.setup_database()
    scheduler.commit()

    yield url

    scheduler.close()
    scheduler.session_provider.stop_service()

    if postgres is not None:
        postgres.stop()


@pytest.fixture
def admin() -> Actor:
    return Actor('admin', 'admin')


@pytest.fixture
def alice() -> Actor:
    return Actor('alice')


@pytest.fixture
def bob() -> Actor:
    return Actor('bob')


@pytest.fixture
def resource(scheduler: Scheduler, admin: Actor) -> Resource:
    return scheduler.resources.add_resource(
        admin, 'PC-01', 'Room 101', 'RTX 4090, 64 GB RAM'
    )


@pytest.fixture
def travel_to(scheduler: Scheduler) -> Callable[[datetime], None]:
    def travel_to(now: datetime) -> None:
        travel(scheduler, now)
    return travel_to
