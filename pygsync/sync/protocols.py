"""Protocols for the collaborators used by the sync engine.

The engine only depends on these capabilities; :class:`pygsync.api.DriveClient`
and :class:`pygsync.auth.OAuthCredentials` are the concrete implementations.
"""

from typing import BinaryIO, Optional, Protocol


class CredentialProvider(Protocol):
    """Supplies access tokens, refreshing them transparently."""

    def get_valid_access_token(self) -> str:
        """Return a usable access token.

        Raises:
            AuthError: If no valid token can be obtained
        """
        ...

    def invalidate(self) -> None:
        """Forget the cached token, e.g. after the server rejected it."""
        ...


class StorageClient(Protocol):
    """Remote object storage operations used by the executor."""

    def create_folder(self, parent_id: str, name: str) -> str:
        """Create a folder and return its remote identifier."""
        ...

    def upload_file(
        self, parent_id: str, name: str, stream: BinaryIO, fingerprint: str
    ) -> str:
        """Upload a new file and return its remote identifier."""
        ...

    def update_file(self, remote_id: str, stream: BinaryIO, fingerprint: str) -> None:
        """Replace the content of an existing file."""
        ...

    def delete_object(self, remote_id: str) -> None:
        """Delete a file or folder."""
        ...

    def find_folder(self, name: str, parent_id: str) -> Optional[str]:
        """Return the identifier of a folder with this name, if one exists."""
        ...

    def find_file(self, name: str, parent_id: str, fingerprint: str) -> Optional[str]:
        """Return the identifier of a file with this name and fingerprint, if any."""
        ...
