""" Actors and the checks performed on them.

Labres trusts the identity it is given. Whoever calls the scheduler is
responsible for authenticating the user and passing an :class:`Actor`
to every operation::

    from labres.modules.auth import Actor

    scheduler.approve_reservation(Actor('uid-1', 'admin'), reservation.id)

"""
from __future__ import annotations

from labres.modules import errors


from typing import Literal
from typing import NamedTuple
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from typing_extensions import TypeAlias


Role: TypeAlias = Literal['user', 'admin']
ROLES = ('user', 'admin')


class Actor(NamedTuple):
    id: str
    role: Role = 'user'

    @property
    def is_admin(self) -> bool:
        return self.role == 'admin'

    def owns(self, owner: str) -> bool:
        return self.id == owner


def assert_valid_actor(actor: Actor) -> None:
    if not actor.id or actor.role not in ROLES:
        raise errors.AuthorizationError('Unknown actor')


def require_admin(actor: Actor) -> None:
    assert_valid_actor(actor)

    if not actor.is_admin:
        raise errors.AuthorizationError(
            f'{actor.id} is not an administrator'
        )


def require_owner(actor: Actor, owner: str) -> None:
    assert_valid_actor(actor)

    if not actor.owns(owner):
        raise errors.AuthorizationError(f'{actor.id} is not the owner')


def require_owner_or_admin(actor: Actor, owner: str) -> None:
    assert_valid_actor(actor)

    if not (actor.owns(owner) or actor.is_admin):
        raise errors.AuthorizationError(
            f'{actor.id} is neither the owner nor an administrator'
        )
