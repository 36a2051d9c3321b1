"""
Error taxonomy shared by the document store and the services.
"""


class StudyMateError(Exception):
    """Base class for all errors surfaced to callers."""
    kind = 'error'


class NotFoundError(StudyMateError):
    """A referenced record or document does not exist."""
    kind = 'not_found'


class UnauthorizedError(StudyMateError):
    """The authenticated caller is not the actor the operation requires."""
    kind = 'unauthorized'


class InvalidStateError(StudyMateError):
    """An operation precondition does not hold, e.g. accepting a request that was already handled."""
    kind = 'invalid_state'


class BackendUnavailableError(StudyMateError):
    """Transport or store level failure, including an ambiguous partial write."""
    kind = 'backend_unavailable'
