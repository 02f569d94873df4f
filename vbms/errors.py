# errors.py


class VbmsError(Exception):
    """Base class for errors raised by the monitoring service."""


class ConfigError(VbmsError):
    """Invalid environment configuration; fatal at startup."""


class StoreError(VbmsError):
    """The servers store is missing or cannot be opened."""


class ClaimError(VbmsError):
    """Claiming a batch of servers failed; fatal to the process."""


class PersistError(VbmsError):
    """Writing a server's results failed; fatal to the process."""

    def __init__(self, server_id, message):
        super().__init__(message)
        self.server_id = server_id
