"""Exception types raised inside Wardcord."""


class WardcordError(Exception):
    """Base class for all Wardcord errors."""


class ActionConfigurationError(WardcordError):
    """A moderation action cannot run because the guild is misconfigured.

    Raised for a missing mute role, a non-positive timeout and
    similar problems an operator has to fix.
    """


class JobExecutionError(WardcordError):
    """A scheduled job failed in a way that is worth retrying."""


class UnknownJobTypeError(JobExecutionError):
    """A claimed job carries a type no handler is registered for."""
