from __future__ import annotations

from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from labres.db.models import Reservation


class LabresError(Exception):
    pass


class ContextAlreadyExists(LabresError):
    pass


class UnknownContext(LabresError):
    pass


class ContextIsLocked(LabresError):
    pass


class UnknownService(LabresError):
    pass


class ValidationError(LabresError):
    """ The request is malformed. Raised before anything is written. """


class InvalidDateRange(ValidationError):
    pass


class InvalidTimeWindow(ValidationError):
    pass


class ReasonRequired(ValidationError):
    pass


class InvalidReleaseDates(ValidationError):
    pass


class InvalidExtension(ValidationError):
    pass


class ResourceUnderMaintenance(ValidationError):
    pass


class PolicyViolation(ValidationError):

    __slots__ = ('rule', )

    def __init__(self, rule: str, message: str):
        super().__init__(message)
        self.rule = rule


class NotFoundError(LabresError):
    pass


class UnknownResource(NotFoundError):
    pass


class UnknownReservation(NotFoundError):
    pass


class UnknownRelease(NotFoundError):
    pass


class ConflictError(LabresError):
    """ Raised if an overlap with an approved reservation exists.

    The blocking reservation is available as ``existing``, its id as
    ``reservation_id``.

    """

    __slots__ = ('existing', 'reservation_id')

    def __init__(self, existing: Reservation, message: str | None = None):
        super().__init__(
            message or f'Conflicts with reservation {existing.id}'
        )
        self.existing = existing
        self.reservation_id = existing.id


class ResourceInUse(ConflictError):
    pass


class IllegalStateTransitionError(LabresError):

    __slots__ = ('current', 'target')

    def __init__(self, current: str, target: str):
        super().__init__(f'Cannot change status from {current} to {target}')
        self.current = current
        self.target = target


class AuthorizationError(LabresError):
    pass
