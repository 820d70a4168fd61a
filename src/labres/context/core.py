from __future__ import annotations

import enum
import labres
import threading
from contextlib import contextmanager
from functools import cached_property

from labres.modules import errors


from typing import Any
from typing import Literal
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Callable
    from collections.abc import Iterator
    from collections.abc import Mapping
    from sqlalchemy.orm import Session
    from typing_extensions import TypeAlias
    from uuid import UUID

    from labres.context.clock import Clock
    from labres.context.locks import ResourceLocks
    from labres.context.registry import Registry
    from labres.context.session import SessionProvider
    from labres.db.notifications import Emitter
    from labres.modules.policy import BookingPolicy


class _Marker(enum.Enum):
    missing = enum.auto()
    required = enum.auto()


missing_t: TypeAlias = Literal[_Marker.missing]  # noqa: PYI042
required_t: TypeAlias = Literal[_Marker.required]  # noqa: PYI042
missing: missing_t = _Marker.missing
required: required_t = _Marker.required


class StoppableService:
    """ A service holding resources (connections, locks) which have to be
    released when the service is replaced or its context is unregistered.

    """

    def stop_service(self) -> None:
        pass


class ContextServicesMixin:
    """ Gives the scheduler and its parts access to the services of their
    context, expects a ``context`` attribute.

    The clock, the policy, the emitter and the uuid generator are looked up
    once per instance, see :meth:`clear_cache`. The session is looked up on
    each access, as it is bound to the current thread.

    """

    context: Context

    @cached_property
    def generate_uuid(self) -> Callable[[str], UUID]:
        return self.context.get_service('uuid_generator')  # type: ignore[no-any-return]

    @cached_property
    def clock(self) -> Clock:
        return self.context.get_service('clock')  # type: ignore[no-any-return]

    @cached_property
    def policy(self) -> BookingPolicy:
        return self.context.get_service('policy')  # type: ignore[no-any-return]

    @cached_property
    def emitter(self) -> Emitter:
        return self.context.get_service('notification_emitter')  # type: ignore[no-any-return]

    def clear_cache(self) -> None:
        """ Clears the cache of the mixin. """

        for name in ('generate_uuid', 'clock', 'policy', 'emitter'):
            try:
                delattr(self, name)
            except AttributeError:
                pass

    @property
    def resource_locks(self) -> ResourceLocks:
        return self.context.get_service('resource_locks')  # type: ignore[no-any-return]

    @property
    def session_provider(self) -> SessionProvider:
        return self.context.get_service('session_provider')  # type: ignore[no-any-return]

    @property
    def session(self) -> Session:
        """ Returns the current session. """
        return self.session_provider.session()  # type: ignore[no-any-return]

    def close(self) -> None:
        """ Closes the current session. """
        self.session.close()

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()


class Context:
    """ Holds the settings and services a lab scheduler works with: the
    database connection, the booking policy, the clock, the notification
    emitter and so on.

    Contexts are kept in a :class:`~labres.context.registry.Registry`
    (usually ``labres.registry``). Each application using labres registers
    its own context, which inherits from the master context of the
    registry. Lookups go to the own context first and fall back to the
    master context, which holds the defaults::

        from labres import registry

        context = registry.register_context('my_app')
        context.set_setting('dsn', 'postgresql://localhost/labres')
        context.update_settings({'max_booking_days': 15})

    Schedulers cache the services they get from their context. After
    changing a context, create a new
    :class:`~labres.db.scheduler.Scheduler` or call
    :meth:`~.ContextServicesMixin.clear_cache`.

    """

    def __init__(
        self,
        name: str,
        registry: Registry | None = None,
        parent: Context | None = None,
        locked: bool = False
    ):
        self.name = name
        self.registry = registry or labres.registry
        self.values: dict[str, Any] = {}
        self.parent = parent
        self.locked = locked
        self.thread_lock = threading.RLock()

    def __repr__(self) -> str:
        return f"<Labres Context(name='{self.name}')>"

    @contextmanager
    def as_current_context(self) -> Iterator[None]:
        with self.registry.context(self.name):
            yield

    def switch_to(self) -> None:
        self.registry.switch_context(self.name)

    def lock(self) -> None:
        with self.thread_lock:
            self.locked = True

    def unlock(self) -> None:
        with self.thread_lock:
            self.locked = False

    def get(self, key: str) -> Any | missing_t:
        if key in self.values:
            return self.values[key]
        if self.parent is not None:
            return self.parent.get(key)
        return missing

    def set(self, key: str, value: Any) -> None:
        if self.locked:
            raise errors.ContextIsLocked(self.name)

        with self.thread_lock:
            # replaced services may hold connections or locks
            previous = self.values.get(key)
            if isinstance(previous, StoppableService):
                previous.stop_service()

            self.values[key] = value

    def get_setting(self, name: str, default: Any = None) -> Any:
        """ Returns the given setting, or the default if it is unknown or
        set to None.

        """
        value = self.get(f'settings.{name}')

        if value is missing or value is None:
            return default

        return value

    def set_setting(self, name: str, value: Any) -> None:
        self.set(f'settings.{name}', value)

    def update_settings(self, values: Mapping[str, Any]) -> None:
        with self.thread_lock:
            for name, value in values.items():
                self.set_setting(name, value)

    def has_service(self, name: str) -> bool:
        return self.get(f'service/{name}') is not missing

    def get_service(self, name: str) -> Any:
        service_id = f'service/{name}'
        factory = self.get(service_id)

        if factory is missing:
            raise errors.UnknownService(service_id)

        cache_id = f'service/{name}/cache'
        cached = self.get(cache_id)

        if cached is missing:
            return factory(self)

        # the first lookup creates the shared instance
        if cached is required:
            with self.thread_lock:
                if self.get(cache_id) is required:
                    self.set(cache_id, factory(self))

        return self.get(cache_id)

    def set_service(
        self,
        name: str,
        factory: Callable[[Context], Any],
        cache: bool = False
    ) -> None:
        """ Registers the factory of a service. The factory is called with
        the context on each lookup, unless ``cache`` is set, in which case
        the service is created once and shared.

        """
        with self.thread_lock:
            self.set(f'service/{name}', factory)

            if cache:
                self.set(f'service/{name}/cache', required)
