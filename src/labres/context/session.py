from __future__ import annotations

from sqlalchemy import create_engine, text
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import scoped_session, sessionmaker

from labres.context.core import StoppableService


from typing import Any


SERIALIZABLE = 'SERIALIZABLE'


class SessionProvider(StoppableService):
    """Provides the SERIALIZABLE session labres works with.
    If you want to override this provider, be sure to set the isolation_level
    to SERIALIZABLE as well.

    PostgreSQL is the production backend, its row locks keep two processes
    from approving overlapping reservations of the same computer. SQLite
    works within a single process, which is what the tests use.

    """

    def __init__(
        self,
        dsn: str,
        engine_config: dict[str, Any] | None = None,
        session_config: dict[str, Any] | None = None
    ):
        assert dsn, 'No dsn configured, see settings.dsn'

        if self.is_postgres(dsn):
            self.assert_valid_postgres_version(dsn)

        self.dsn = dsn

        engine_config = dict(engine_config or {})

        # the scoped sessions of different threads share the pool
        if self.is_sqlite(dsn):
            engine_config.setdefault(
                'connect_args', {'check_same_thread': False}
            )

        self.engine = create_engine(
            dsn, poolclass=QueuePool, pool_size=5, max_overflow=5,
            isolation_level=SERIALIZABLE,
            **engine_config
        )

        self.session = scoped_session(sessionmaker(
            bind=self.engine, **(session_config or {})
        ))

    @staticmethod
    def is_postgres(dsn: str) -> bool:
        return dsn.startswith('postgres')

    @staticmethod
    def is_sqlite(dsn: str) -> bool:
        return dsn.startswith('sqlite')

    def stop_service(self) -> None:
        """ Called by the labres context when the session provider is being
        discarded (only in testing).

        This makes sure that replacing the session provider on the context
        doesn't leave behind any idle connections.

        """

        self.session.remove()
        self.engine.dispose()

    def get_postgres_version(self, dsn: str) -> tuple[str, int]:
        """ Returns the postgres version as a tuple (string, integer).

        Uses it's own connection to be independent from any session.

        """
        assert 'postgres' in dsn, 'Not a postgres database'

        query = text("""
            SELECT current_setting('server_version'),
                   current_setting('server_version_num')
        """)

        engine = create_engine(dsn)

        try:
            with engine.connect() as connection:
                result = connection.execute(query).first()
            assert result is not None
            version, number = result
            return version, int(number)
        finally:
            engine.dispose()

    def assert_valid_postgres_version(self, dsn: str) -> str:
        v, n = self.get_postgres_version(dsn)

        if n < 90100:
            raise RuntimeError(f'PostgreSQL 9.1+ is required, got {v}')

        return dsn
