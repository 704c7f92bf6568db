"""HTTP transport and error taxonomy for practice-management APIs."""

import asyncio
import logging
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Any, Callable

import requests

from models import ApiResponse
from patterns import Patterns

logger = logging.getLogger(__name__)

USER_AGENT = "pm-billing-sync/1.0"


class PracticeManagementError(Exception):
    """Base error for practice management operations."""

    code = "PM_ERROR"
    transient = False

    def __init__(
        self,
        message: str,
        platform: str | None = None,
        status_code: int | None = None,
        code: str | None = None,
    ):
        super().__init__(message)
        self.platform = platform
        self.status_code = status_code
        if code:
            self.code = code


class AuthenticationError(PracticeManagementError):
    code = "AUTH_ERROR"

    def __init__(self, platform: str | None = None, message: str = "Authentication failed"):
        super().__init__(message, platform, 401)


class RateLimitError(PracticeManagementError):
    code = "RATE_LIMIT"
    transient = True

    def __init__(self, platform: str | None = None, retry_after: float | None = None):
        super().__init__("Rate limit exceeded", platform, 429)
        self.retry_after = retry_after


class ValidationError(PracticeManagementError):
    code = "VALIDATION_ERROR"

    def __init__(self, platform: str | None, field: str, message: str):
        super().__init__(f"Validation failed for {field}: {message}", platform, 400)
        self.field = field
        self.reason = message


class ConflictError(PracticeManagementError):
    code = "CONFLICT"

    def __init__(self, platform: str | None = None, message: str = "Record was modified remotely"):
        super().__init__(message, platform, 409)


class NetworkError(PracticeManagementError):
    """Timeouts, connection failures and 5xx answers."""

    code = "NETWORK_ERROR"
    transient = True


class ConfigurationError(PracticeManagementError):
    code = "NOT_CONFIGURED"


TRANSIENT_CODES = {RateLimitError.code, NetworkError.code}


def _parse_retry_after(value: str | None) -> float | None:
    """Retry-After is either delta-seconds or an HTTP date."""
    if not value:
        return None
    m = Patterns.RETRY_AFTER_SECONDS.match(value)
    if m:
        return float(m.group(1))
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def _error_message(response: requests.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        for key in ("message", "Message", "error", "error_description"):
            if isinstance(body.get(key), str):
                return body[key]
    return None


def _handle_api_error(response: requests.Response, platform: str) -> PracticeManagementError:
    """Convert HTTP errors to typed, user-friendly errors."""
    status = response.status_code
    detail = _error_message(response)

    messages = {
        401: f"{platform}: Authentication failed. Check your API key or token!",
        403: f"{platform}: Access denied. Check your permissions!",
        404: f"{platform}: Resource not found.",
        409: f"{platform}: Record was modified by someone else.",
        500: f"{platform}: Server error. The service may be temporarily unavailable.",
        502: f"{platform}: Bad gateway. The service may be temporarily unavailable.",
        503: f"{platform}: Service unavailable. Try again later.",
    }
    message = messages.get(status, f"{platform}: HTTP {status} - {response.reason}")
    if detail:
        message = f"{message} ({detail})"

    if status == 401:
        return AuthenticationError(platform, message)
    if status == 429:
        return RateLimitError(platform, _parse_retry_after(response.headers.get("Retry-After")))
    if status in (400, 422):
        return ValidationError(platform, "request", detail or f"HTTP {status}")
    if status == 409:
        return ConflictError(platform, message)
    if status >= 500:
        return NetworkError(message, platform, status)
    return PracticeManagementError(message, platform, status, code=f"HTTP_{status}")


class HttpClient:
    """Thin async wrapper around a requests session for one platform.

    Requests run in a worker thread so the event loop is never blocked.
    Expected failures come back as failed ApiResponse values, never raised.
    """

    def __init__(
        self,
        platform: str,
        base_url: str,
        auth: Callable[[], dict[str, Any]],
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ):
        self.platform = platform
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._auth = auth
        self.session = session or requests.Session()

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
        auth_kwargs = self._auth()
        headers.update(auth_kwargs.get("headers", {}))
        return self.session.request(
            method,
            url,
            headers=headers,
            auth=auth_kwargs.get("auth"),
            timeout=self.timeout,
            **kwargs,
        )

    async def request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: dict | None = None,
        data: dict | None = None,
        absolute: bool = False,
    ) -> ApiResponse:
        url = path if absolute else f"{self.base_url}{path}"
        logger.debug("%s API request %s %s params=%s", self.platform, method, url, params)
        try:
            r = await asyncio.to_thread(self._send, method, url, json=json, params=params, data=data)
        except requests.exceptions.Timeout:
            return ApiResponse.fail(NetworkError(f"{self.platform}: Connection timed out.", self.platform))
        except requests.exceptions.ConnectionError:
            return ApiResponse.fail(
                NetworkError(f"{self.platform}: Cannot connect to {self.base_url}.", self.platform)
            )
        except (
            requests.exceptions.InvalidURL,
            requests.exceptions.MissingSchema,
            requests.exceptions.InvalidSchema,
        ) as e:
            return ApiResponse.fail(ConfigurationError(f"{self.platform}: Invalid URL {url}: {e}", self.platform))
        except requests.exceptions.RequestException as e:
            # Truncated bodies, bad encodings, redirect loops
            return ApiResponse.fail(
                NetworkError(f"{self.platform}: Request failed ({type(e).__name__}: {e})", self.platform)
            )

        logger.debug("%s API response %s %s", self.platform, r.status_code, url)
        if not r.ok:
            error = _handle_api_error(r, self.platform)
            logger.warning("%s API error %s: %s", self.platform, r.status_code, error)
            return ApiResponse.fail(error)

        if not r.content:
            return ApiResponse.ok(None)
        try:
            return ApiResponse.ok(r.json())
        except ValueError:
            return ApiResponse.fail(
                PracticeManagementError(f"{self.platform}: Invalid JSON in response", self.platform, r.status_code, "BAD_RESPONSE")
            )

    def close(self) -> None:
        self.session.close()
