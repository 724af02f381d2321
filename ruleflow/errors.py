"""Error taxonomy shared by the rule source, preference store and controller."""


class RuleflowError(Exception):
    """Base class for all rule flow errors."""


class InputMissing(RuleflowError, ValueError):
    """A required parameter (subject name, rule id) was not supplied."""


class NotFound(RuleflowError, LookupError):
    """The requested subject or rule does not exist."""


class TransportFailure(RuleflowError, ConnectionError):
    """The backing store could not be reached or failed mid-request."""
