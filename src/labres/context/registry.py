from __future__ import annotations

import threading

from contextlib import contextmanager

from labres.modules import errors
from labres.context.core import Context, StoppableService


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Callable
    from collections.abc import Iterator
    from uuid import UUID

    from labres.context.clock import Clock
    from labres.context.locks import ResourceLocks
    from labres.context.session import SessionProvider
    from labres.db.notifications import Emitter
    from labres.modules.policy import BookingPolicy


def create_default_registry() -> Registry:
    """ Creates the default registry for labres. """

    from labres.context.clock import Clock
    from labres.context.locks import ResourceLocks
    from labres.context.session import SessionProvider
    from labres.context.settings import set_default_settings
    from labres.db.notifications import LogEmitter
    from labres.modules.policy import policy_from_settings

    from uuid import uuid5 as new_namespace_uuid

    registry = Registry()

    def session_provider(context: Context) -> SessionProvider:
        return SessionProvider(context.get_setting('dsn'))

    def resource_locks_factory(context: Context) -> ResourceLocks:
        return ResourceLocks()

    def clock_factory(context: Context) -> Clock:
        return Clock()

    def policy_factory(context: Context) -> BookingPolicy:
        return policy_from_settings(context)

    def emitter_factory(context: Context) -> Emitter:
        return LogEmitter()

    def uuid_generator_factory(context: Context) -> Callable[[str], UUID]:
        def uuid_generator(name: str) -> UUID:
            return new_namespace_uuid(
                context.get_setting('uuid_namespace'),
                f'{context.name}/{name}'
            )
        return uuid_generator

    master = registry.master_context
    assert master is not None
    master.set_service('session_provider', session_provider, cache=True)
    master.set_service('resource_locks', resource_locks_factory, cache=True)
    master.set_service('clock', clock_factory)
    master.set_service('policy', policy_factory)
    master.set_service('notification_emitter', emitter_factory)
    master.set_service('uuid_generator', uuid_generator_factory)

    set_default_settings(master)

    master.lock()

    return registry


class Registry:
    """ Holds the contexts of the applications using labres and knows
    which one is current in each thread.

    The global registry is found in labres::

        from labres import registry

    Applications (and tests) which cannot share global state create their
    own registry::

        from labres.context.registry import create_default_registry
        registry = create_default_registry()

    """

    contexts: dict[str, Context]
    master_context: Context | None = None

    def __init__(self) -> None:
        self.thread_lock = threading.RLock()
        self.contexts = {}
        self.local = threading.local()

        self.master_context = self.register_context('master')

    @property
    def current_context(self) -> Context:
        if not hasattr(self.local, 'current_context'):
            self.local.current_context = self.master_context

        return self.local.current_context  # type: ignore[no-any-return]

    def is_existing_context(self, name: str) -> bool:
        return name in self.contexts

    def assert_not_locked(self, name: str) -> None:
        if self.get_context(name).locked:
            raise errors.ContextIsLocked(name)

    def assert_exists(self, name: str) -> None:
        if not self.is_existing_context(name):
            raise errors.UnknownContext(name)

    def assert_does_not_exist(self, name: str) -> None:
        if self.is_existing_context(name):
            raise errors.ContextAlreadyExists(name)

    def register_context(self, name: str, replace: bool = False) -> Context:
        """ Registers a new context with the given name and returns it.

        An existing context is only replaced if ``replace`` is set and the
        existing context is not locked.

        """
        with self.thread_lock:
            if replace and self.is_existing_context(name):
                self.assert_not_locked(name)
            else:
                self.assert_does_not_exist(name)

            self.contexts[name] = Context(
                name,
                registry=self,
                parent=self.master_context
            )

            return self.contexts[name]

    def unregister_context(self, name: str) -> None:
        """ Removes a context, stopping the services it created (e.g. the
        connection pool of its session provider).

        """
        with self.thread_lock:
            self.assert_exists(name)
            self.assert_not_locked(name)

            context = self.contexts.pop(name)

            for value in context.values.values():
                if isinstance(value, StoppableService):
                    value.stop_service()

            if self.current_context is context:
                self.local.current_context = self.master_context

    def switch_context(self, name: str) -> None:
        with self.thread_lock:
            self.assert_exists(name)
            self.local.current_context = self.get_context(name)

    @contextmanager
    def context(self, name: str) -> Iterator[Context]:
        previous = self.current_context.name
        self.switch_context(name)
        try:
            yield self.current_context
        finally:
            self.switch_context(previous)

    def get_current_context(self) -> Context:
        return self.current_context

    def get_context(self, name: str, autocreate: bool = False) -> Context:
        with self.thread_lock:
            if autocreate and not self.is_existing_context(name):
                return self.register_context(name)

            self.assert_exists(name)
            return self.contexts[name]
