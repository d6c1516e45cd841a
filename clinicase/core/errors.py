"""Exception types raised across the turn engine."""


class ClinicaseError(RuntimeError):
    """Base class for engine errors."""


class UpstreamError(ClinicaseError):
    """The generator or an evidence service failed."""


class UpstreamTimeoutError(UpstreamError):
    """A bounded wait on an upstream call expired."""


class InvalidRequestError(ClinicaseError, ValueError):
    """An exchange request cannot be processed."""
