class RollcallError(Exception):
    """Base class for domain errors raised by the session services."""


class InvalidCoordinates(RollcallError):
    pass


class ActiveSessionExists(RollcallError):
    pass


class SessionAccessDenied(RollcallError):
    """The session does not exist or belongs to another owner.

    Both cases share one error so callers cannot probe for session ids.
    """


class SessionNotActive(RollcallError):
    pass


class DeviceAlreadyRecorded(RollcallError):
    pass
