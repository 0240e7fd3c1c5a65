class ClaimsError(Exception):
    """Base class for conditions the HTTP layer maps to a client error."""


class NotFound(ClaimsError):
    pass


class PreconditionFailed(ClaimsError):
    """An operation was asked of a record in a state that does not allow it."""


class Ineligible(ClaimsError):
    """The creator does not meet the terms for the requested policy action."""


class Forbidden(ClaimsError):
    """The caller does not own the record it is acting on."""
