"""HTTP plumbing shared by the Supabase REST and auth endpoints."""

from __future__ import annotations

from typing import Any

import aiohttp

from ...exceptions import (
    AuthError,
    NetworkError,
    PySmartParkingError,
    StoreError,
    ValidationError,
)
from .const import APIKEY_HEADER, DEFAULT_HEADERS

_DEFAULT_TIMEOUT = aiohttp.ClientTimeout(total=30)
_MESSAGE_KEYS = ("message", "msg", "error_description", "error")


def normalize_base_url(base_url: str | None) -> str:
    if not isinstance(base_url, str) or not base_url.strip():
        raise ValidationError("base_url must be a non-empty string.")
    return base_url.strip().rstrip("/")


class SupabaseEndpoint:
    """One Supabase service (REST or auth) reached through a shared session."""

    api_uri = ""
    rejection_error: type[PySmartParkingError] = StoreError

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        api_key: str,
        *,
        timeout: aiohttp.ClientTimeout | None = None,
        retry_count: int = 0,
    ) -> None:
        if session is None:
            raise ValidationError("Session is required.")
        if not isinstance(api_key, str) or not api_key.strip():
            raise ValidationError("api_key must be a non-empty string.")
        self._session = session
        self._base_url = normalize_base_url(base_url)
        self._api_key = api_key.strip()
        self._timeout = timeout or _DEFAULT_TIMEOUT
        self._retry_count = max(0, retry_count)

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def api_key(self) -> str:
        return self._api_key

    def _build_url(self, path: str) -> str:
        if not isinstance(path, str) or not path:
            raise ValidationError("Path must be a non-empty string.")
        if path.startswith("http://") or path.startswith("https://"):
            raise ValidationError("Use relative paths when building requests.")
        normalized_path = path if path.startswith("/") else f"/{path}"
        return f"{self._base_url}{self.api_uri}{normalized_path}"

    def _build_headers(self, access_token: str | None = None) -> dict[str, str]:
        headers = dict(DEFAULT_HEADERS)
        headers[APIKEY_HEADER] = self._api_key
        headers["Authorization"] = f"Bearer {access_token or self._api_key}"
        return headers

    async def _request_json(self, method: str, path: str, **kwargs: Any) -> Any:
        url = self._build_url(path)
        return await self._request(method, url, expect_json=True, **kwargs)

    async def _request(self, method: str, url: str, *, expect_json: bool, **kwargs: Any) -> Any:
        retries = self._retry_count if method.upper() == "GET" else 0
        attempts = retries + 1
        last_error: Exception | None = None
        for attempt in range(attempts):
            try:
                timeout = kwargs.pop("timeout", self._timeout)
                if timeout is None:
                    timeout = self._timeout
                async with self._session.request(
                    method,
                    url,
                    timeout=timeout,
                    **kwargs,
                ) as response:
                    await self._raise_for_status(response)
                    text = await response.text()
                    if not expect_json:
                        return text
                    if not text.strip():
                        return None
                    try:
                        return await response.json(content_type=None)
                    except (aiohttp.ContentTypeError, ValueError) as exc:
                        raise self.rejection_error(
                            "Response did not contain valid JSON."
                        ) from exc
            except (aiohttp.ClientError, TimeoutError) as exc:
                last_error = exc
                if attempt >= attempts - 1:
                    raise NetworkError("Network request failed.", detail=str(exc)) from exc
        if last_error is not None:
            raise NetworkError("Network request failed.") from last_error
        raise self.rejection_error("Request failed.")

    async def _raise_for_status(self, response: aiohttp.ClientResponse) -> None:
        if 200 <= response.status < 300:
            return
        message, code = await self._error_from_response(response)
        if response.status in (401, 403):
            raise AuthError(message or "Authentication failed.", error_code=code)
        raise self.rejection_error(
            message or f"Request failed with status {response.status}.",
            error_code=code,
        )

    async def _error_from_response(
        self,
        response: aiohttp.ClientResponse,
    ) -> tuple[str | None, str | None]:
        try:
            data = await response.json(content_type=None)
        except (aiohttp.ContentTypeError, ValueError):
            return None, None
        if not isinstance(data, dict):
            return None, None
        message = None
        for key in _MESSAGE_KEYS:
            value = data.get(key)
            if isinstance(value, str) and value.strip():
                message = value.strip()
                break
        code = data.get("code") or data.get("error_code")
        return message, str(code) if code is not None else None
