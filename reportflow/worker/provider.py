"""
External movie-data provider client.

Wraps the OMDb-style HTTP API behind a one-method interface and maps every
failure onto the FetchError family: NotFoundError, RateLimitedError or
UnavailableError.
"""

from typing import Any, Optional, Protocol

import httpx

from reportflow.core.errors import NotFoundError, RateLimitedError, UnavailableError
from reportflow.observability.logger import get_logger

logger = get_logger(__name__)


class MovieDataProvider(Protocol):
    """Anything that can fetch a movie payload by external id."""

    def fetch(self, subject_id: str) -> dict[str, Any]:
        """
        Fetch the payload for a subject.

        Raises:
            NotFoundError: The subject does not exist
            RateLimitedError: The provider throttled the call
            UnavailableError: The provider could not be reached or failed
        """
        ...


class OmdbMovieProvider:
    """
    HTTP client for an OMDb-compatible movie API.

    The API answers HTTP 200 with {"Response": "False", "Error": "..."} for
    most failures, so the body is inspected as well as the status code.
    """

    def __init__(
        self,
        base_url: str = "https://www.omdbapi.com/",
        api_key: Optional[str] = None,
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
    ):
        """
        Initialize the provider client.

        Args:
            base_url: API endpoint
            api_key: API key sent as the apikey query parameter
            timeout: Per-request timeout in seconds
            client: Pre-built httpx client (tests)
        """
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def fetch(self, subject_id: str) -> dict[str, Any]:
        params = {"i": subject_id, "plot": "short"}
        if self.api_key:
            params["apikey"] = self.api_key

        try:
            response = self._client.get(self.base_url, params=params, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise UnavailableError(f"Provider timed out for {subject_id}", subject_id) from e
        except httpx.RequestError as e:
            raise UnavailableError(f"Provider unreachable for {subject_id}: {e}", subject_id) from e

        if response.status_code == 404:
            raise NotFoundError(f"Movie {subject_id} not found", subject_id)
        if response.status_code == 429:
            raise RateLimitedError(f"Provider rate limit reached for {subject_id}", subject_id)
        if response.status_code >= 500:
            raise UnavailableError(
                f"Provider returned HTTP {response.status_code} for {subject_id}", subject_id
            )
        if response.status_code >= 400:
            raise UnavailableError(
                f"Provider rejected request for {subject_id} (HTTP {response.status_code})", subject_id
            )

        try:
            body = response.json()
        except ValueError as e:
            raise UnavailableError(f"Provider returned invalid JSON for {subject_id}", subject_id) from e

        if not isinstance(body, dict):
            raise UnavailableError(f"Provider returned unexpected body for {subject_id}", subject_id)

        if str(body.get("Response", "True")).lower() == "false":
            message = str(body.get("Error") or "unknown provider error")
            lowered = message.lower()
            if "not found" in lowered or "incorrect imdb id" in lowered:
                raise NotFoundError(f"Movie {subject_id} not found: {message}", subject_id)
            if "limit" in lowered:
                raise RateLimitedError(f"Provider rate limit reached: {message}", subject_id)
            raise UnavailableError(f"Provider error for {subject_id}: {message}", subject_id)

        logger.debug(f"Fetched provider payload for {subject_id}")
        return body

    def close(self) -> None:
        self._client.close()
