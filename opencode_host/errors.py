"""Exception hierarchy for the host companion daemon.

Every request handler failure surfaces to the remote caller as a failed
outcome carrying ``str(exc)``; only ``ConfigError`` is allowed to stop the
daemon, and only during startup.
"""


class HostError(Exception):
    """Base exception for all host companion errors."""


class AuthError(HostError):
    """Bad one-time code, bad signature, or a token past its usable window."""


class AllocationError(HostError):
    """No free local port in the configured range."""


class StartupError(HostError):
    """A worker process did not become healthy in time.

    The process has already been force-killed when this is raised.
    """


class RelayError(HostError):
    """Stream or transport failure, or the overall relay timeout, while relaying."""


class ValidationError(HostError):
    """Missing payload field, unknown request type, or a path outside the base directory."""


class ConfigError(HostError):
    """Unrecoverable startup configuration problem."""


class QueueError(HostError):
    """The hosted request queue rejected a call or could not be reached."""
