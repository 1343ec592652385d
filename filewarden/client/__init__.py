"""Filewarden client implementation."""

from filewarden.errors import FilewardenError


class FilewardenClientError(FilewardenError):
    """The server could not be reached or answered with an error."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code

# Reexport under shorter path.
from filewarden.client.client import RemoteClient
