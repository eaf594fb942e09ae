"""Custom exceptions for the procwatch package."""


class ProcWatchError(Exception):
    """Base exception for all procwatch errors."""
    pass


class SubscriptionError(ProcWatchError):
    """A process event source could not be established."""
    pass


class ObserverUnavailableError(ProcWatchError):
    """The handler directory cannot be watched for changes."""
    pass


class HandlerLaunchError(ProcWatchError):
    """A handler script could not be launched."""
    pass


class EngineAlreadyRunningError(ProcWatchError):
    """Monitoring engine is already running."""
    pass
