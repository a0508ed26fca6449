"""Gmail REST API client for mailbox sync."""

import logging

import httpx

from app.config import get_settings
from app.exceptions import GmailAPIError, GmailAuthError

logger = logging.getLogger(__name__)
settings = get_settings()


class GmailClient:
    """
    Minimal async Gmail client: list message ids, fetch a message, refresh a token.

    Holds one httpx.AsyncClient for connection reuse across the calls of a
    sync run; use as an async context manager or call close().
    """

    def __init__(
        self,
        base_url: str | None = None,
        token_url: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.gmail_api_base_url).rstrip("/")
        self.token_url = token_url or settings.google_token_url
        self.client_id = client_id if client_id is not None else settings.google_client_id
        self.client_secret = client_secret if client_secret is not None else settings.google_client_secret
        self.client = httpx.AsyncClient(
            timeout=timeout if timeout is not None else settings.http_timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> "GmailClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        await self.client.aclose()

    @staticmethod
    def _headers(access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code == 401:
            raise GmailAuthError("Gmail access token was rejected", status_code=401)
        if response.is_error:
            raise GmailAPIError(
                f"Gmail API error: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )

    async def list_message_ids(self, access_token: str, query: str, max_results: int) -> list[str]:
        """
        List message ids matching a Gmail search query (newest first).

        Raises:
            GmailAuthError: Token rejected (401)
            GmailAPIError: Any other non-success response
        """
        response = await self.client.get(
            f"{self.base_url}/messages",
            params={"q": query, "maxResults": max_results},
            headers=self._headers(access_token),
        )
        self._raise_for_status(response)
        return [ref["id"] for ref in response.json().get("messages", [])]

    async def get_message(self, access_token: str, message_id: str) -> dict:
        """Fetch a full message resource (headers, payload, internalDate)."""
        response = await self.client.get(
            f"{self.base_url}/messages/{message_id}",
            headers=self._headers(access_token),
        )
        self._raise_for_status(response)
        return response.json()

    async def refresh_access_token(self, refresh_token: str | None) -> str | None:
        """
        Exchange a refresh token for a new access token.

        Returns None when refreshing is impossible (no refresh token or no
        client credentials) or the token endpoint refuses.
        """
        if not refresh_token or not self.client_id or not self.client_secret:
            return None

        try:
            response = await self.client.post(
                self.token_url,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except httpx.HTTPError as e:
            logger.error("Error refreshing Gmail token: %s", e)
            return None

        if response.is_error:
            logger.warning("Gmail token refresh failed: %s %s", response.status_code, response.text[:200])
            return None
        return response.json().get("access_token")
