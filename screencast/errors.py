class ScreencastError(Exception):
    """Base class for errors raised by the screencast viewer."""


class DiscoveryError(ScreencastError):
    """The CDP endpoint of a container could not be discovered."""
