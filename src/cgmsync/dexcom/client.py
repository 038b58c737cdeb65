"""
Async client for the Dexcom REST API.

One instance wraps one user's access token. Every call goes through _get(),
which counts calls for the audit log and turns any non-2xx response or
network failure into DexcomAPIError, so callers handle a single exception
type per vendor call.

Endpoints used (relative to {base_url}/{api_version}):
    /users/self                       identity probe
    /users/self/egvs                  windowed glucose values
    /users/self/devices               transmitters / receivers
    /users/self/dataRange             sensor session date ranges

Query timestamps must be whole seconds with no zone suffix:
``2026-10-19T08:00:00``.
"""
import functools
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import httpx


DEFAULT_BASE_URL = "https://sandbox-api.dexcom.com"
DEXCOM_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S"


class DexcomAPIError(RuntimeError):
    """A Dexcom call failed. ``status_code`` is None for network failures."""

    def __init__(self, endpoint: str, status_code: Optional[int], detail: str = ""):
        self.endpoint = endpoint
        self.status_code = status_code
        self.detail = detail
        status = status_code if status_code is not None else "network error"
        super().__init__(f"Dexcom {endpoint} failed: {status} {detail}".strip())


def format_dexcom_time(dt: datetime) -> str:
    """Format a naive UTC datetime for Dexcom query params (no sub-seconds)."""
    return dt.strftime(DEXCOM_TIME_FORMAT)


class DexcomClient:
    """Thin async wrapper over httpx.AsyncClient for one access token."""

    def __init__(
        self,
        access_token: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        api_version: str = "v3",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            access_token: OAuth bearer token for the user.
            base_url: Sandbox or production API host.
            api_version: Path prefix, "v3" for the current API.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (MockTransport in tests).
        """
        self._prefix = f"/{api_version.strip('/')}"
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )
        self.api_calls = 0

    async def __aenter__(self) -> "DexcomClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _get(self, endpoint: str, params: Optional[Dict[str, str]] = None) -> Any:
        self.api_calls += 1
        try:
            response = await self._http.get(self._prefix + endpoint, params=params)
        except httpx.HTTPError as exc:
            raise DexcomAPIError(endpoint, None, str(exc)) from exc

        if not response.is_success:
            raise DexcomAPIError(endpoint, response.status_code, response.text[:200])

        try:
            return response.json()
        except ValueError as exc:
            raise DexcomAPIError(endpoint, response.status_code, "invalid JSON body") from exc

    async def get_user(self) -> Dict[str, Any]:
        """Fetch the token owner's profile. Used as a liveness probe."""
        return await self._get("/users/self")

    async def get_egvs(self, start: datetime, end: datetime) -> Any:
        """Fetch glucose values in [start, end). Response shape varies."""
        return await self._get(
            "/users/self/egvs",
            params={"startDate": format_dexcom_time(start), "endDate": format_dexcom_time(end)},
        )

    async def get_devices(self) -> Any:
        """Fetch the user's transmitters and display devices."""
        return await self._get("/users/self/devices")

    async def get_data_range(self, start: datetime, end: datetime) -> Any:
        """Fetch sensor session / data range info in [start, end)."""
        return await self._get(
            "/users/self/dataRange",
            params={"startDate": format_dexcom_time(start), "endDate": format_dexcom_time(end)},
        )


def client_factory_from_settings(settings) -> Callable[[str], DexcomClient]:
    """Return ``access_token -> DexcomClient`` bound to the configured host."""
    return functools.partial(
        DexcomClient,
        base_url=settings.dexcom_base_url,
        api_version=settings.dexcom_api_version,
        timeout=settings.dexcom_timeout_seconds,
    )
