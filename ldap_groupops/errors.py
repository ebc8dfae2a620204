"""
Directory error hierarchy.

Kept free of ldap3 imports so the engine can report a missing directory
library as an infrastructure failure instead of crashing on import.
"""


class DirectoryError(Exception):
    """Base exception for directory gateway errors."""
    pass


class DirectoryConnectionError(DirectoryError):
    """Raised when the directory cannot be reached or bound."""
    pass


class DirectoryQueryError(DirectoryError):
    """Raised when a directory search fails."""
    pass


class DirectoryOperationError(DirectoryError):
    """Raised when a directory mutation is rejected by the server."""
    pass


class GatewayUnavailableError(DirectoryError):
    """Raised when the directory access layer cannot be loaded or reached at all."""

    def __init__(self, message: str, remediation: str = ''):
        self.remediation = remediation
        super().__init__(f"{message}. {remediation}" if remediation else message)
