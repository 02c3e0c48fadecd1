"""OAuth credential handling for the Google Drive API."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

import httpx

from .config import Config
from .exceptions import AuthError, ConfigError, NetworkError, ServerError

logger = logging.getLogger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"

# Refresh the access token this many seconds before it expires
EXPIRY_MARGIN = 60.0


class OAuthCredentials:
    """Access tokens obtained from a long-lived refresh token.

    The token is cached and refreshed transparently when it is about to
    expire. Safe to share between worker threads.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        token_url: str = TOKEN_URL,
        http_client: httpx.Client | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize credentials.

        Args:
            client_id: OAuth client ID
            client_secret: OAuth client secret
            refresh_token: Refresh token obtained from the consent flow
            token_url: Token endpoint
            http_client: Optional httpx client (mainly for tests)
            clock: Function returning the current time in seconds
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.token_url = token_url
        self._http = http_client
        self._clock = clock
        self._access_token: str | None = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, cfg: Config) -> OAuthCredentials:
        """Create credentials from the stored configuration.

        Raises:
            ConfigError: If client ID, secret or refresh token are missing
        """
        client_id = cfg.client_id
        client_secret = cfg.client_secret
        refresh_token = cfg.refresh_token
        if not (client_id and client_secret and refresh_token):
            raise ConfigError(
                "Credentials not configured. Run 'pygsync config' with "
                "--id, --secret and --refresh-token."
            )
        return cls(client_id, client_secret, refresh_token)

    def get_valid_access_token(self) -> str:
        """Return a valid access token, refreshing it if necessary.

        Raises:
            AuthError: If the refresh token was rejected
            NetworkError: If the token endpoint could not be reached
        """
        with self._lock:
            if self._access_token and self._clock() < self._expires_at - EXPIRY_MARGIN:
                return self._access_token
            return self._refresh()

    def invalidate(self) -> None:
        """Forget the cached token so the next call refreshes it."""
        with self._lock:
            self._access_token = None
            self._expires_at = 0.0

    def _refresh(self) -> str:
        logger.debug("Refreshing access token")
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": self.refresh_token,
            "grant_type": "refresh_token",
        }
        client = self._http or httpx.Client(timeout=httpx.Timeout(30.0))
        try:
            response = client.post(self.token_url, data=data)
        except httpx.RequestError as e:
            raise NetworkError(f"Cannot reach token endpoint: {e}") from e
        finally:
            if self._http is None:
                client.close()

        if response.status_code in (400, 401, 403):
            detail = ""
            try:
                payload = response.json()
                detail = payload.get("error_description") or payload.get("error") or ""
            except ValueError:
                pass
            raise AuthError(
                f"Refreshing the access token failed ({response.status_code})"
                + (f": {detail}" if detail else "")
            )
        if response.status_code >= 500:
            raise ServerError(
                f"Token endpoint failed with status {response.status_code}",
                response.status_code,
            )
        if response.status_code != 200:
            raise AuthError(f"Unexpected token response status {response.status_code}")

        try:
            payload = response.json()
            access_token = str(payload["access_token"])
            expires_in = float(payload.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError) as e:
            raise AuthError(f"Invalid token response: {e}") from e
        self._access_token = access_token
        self._expires_at = self._clock() + expires_in
        logger.debug(f"Access token valid for {expires_in:.0f}s")
        return access_token
