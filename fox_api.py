import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

import httpx

# Upstream tokens live 30 minutes; refresh 5 minutes early.
TOKEN_LIFETIME_SECONDS = 25 * 60
CONTROL_TIMEOUT_SECONDS = 900.0
DEFAULT_TIMEOUT_SECONDS = 30.0


# ═══════════════════════════════════════════════════
#  ERRORS
# ═══════════════════════════════════════════════════

class FoxError(Exception):
    pass


class AuthenticationError(FoxError):
    pass


class OperationError(FoxError):
    pass


class OperationInProgressError(OperationError):
    def __init__(self, running: str):
        super().__init__(f"A server {running} is already in progress. Please wait for it to finish.")
        self.running = running


# ═══════════════════════════════════════════════════
#  RESOURCE SNAPSHOTS
# ═══════════════════════════════════════════════════

@dataclass(frozen=True)
class EmptyResources:
    message: str

    @property
    def public_ip(self) -> Optional[str]:
        return None


@dataclass(frozen=True)
class ProvisionedResources:
    stack_name: Optional[str]
    outputs: dict[str, str] = field(default_factory=dict)

    @property
    def public_ip(self) -> Optional[str]:
        return self.outputs.get("public_ip") or None


ResourceSnapshot = Union[EmptyResources, ProvisionedResources]


def parse_resources(data: Any) -> ResourceSnapshot:
    """Turn the /resources body into one of the two snapshot variants."""
    if not isinstance(data, dict):
        return EmptyResources("No resources found")
    if data.get("message"):
        return EmptyResources(str(data["message"]))
    outputs = data.get("outputs")
    if isinstance(outputs, dict):
        return ProvisionedResources(
            stack_name=data.get("stack_name"),
            outputs={str(k): str(v) for k, v in outputs.items() if v is not None},
        )
    return EmptyResources("No resources found")


def _upstream_detail(response: Optional[httpx.Response]) -> Optional[str]:
    if response is None:
        return None
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and body.get("detail"):
        return str(body["detail"])
    return None


def _describe_failure(error: httpx.HTTPError) -> str:
    if isinstance(error, httpx.HTTPStatusError):
        return f"HTTP {error.response.status_code}: {error.response.text}"
    return str(error) or type(error).__name__


# ═══════════════════════════════════════════════════
#  API CLIENT
# ═══════════════════════════════════════════════════

class FoxAPIClient:
    """Control-plane client that keeps its own bearer token fresh.

    The token is refreshed lazily: every remote call checks it first, so an
    idle bot never talks to the API. Start and stop share a single-flight
    guard; a second one issued while the first is running is rejected.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        resource: str = "tetracubed",
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.username = username
        self._password = password
        self.resource = resource
        self.access_token: Optional[str] = None
        self.token_expiry: Optional[float] = None
        self._clock = clock
        self._http = http_client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT_SECONDS)
        self._control_lock = asyncio.Lock()
        self._running_operation: Optional[str] = None

    async def __aenter__(self) -> "FoxAPIClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def _clear_session(self) -> None:
        self.access_token = None
        self.token_expiry = None

    async def authenticate(self) -> bool:
        try:
            resp = await self._http.post(
                f"{self.base_url}/token",
                data={"username": self.username, "password": self._password},
            )
            resp.raise_for_status()
            token = resp.json()["access_token"]
            if not isinstance(token, str) or not token:
                raise ValueError("empty access_token")
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            self._clear_session()
            detail = _describe_failure(e) if isinstance(e, httpx.HTTPError) else f"malformed token response ({e!r})"
            logging.error(f"Authentication failed: {detail}")
            raise AuthenticationError("Failed to authenticate with Tetracubed API") from e

        issued_at = self._clock()
        self.access_token = token
        self.token_expiry = issued_at + TOKEN_LIFETIME_SECONDS
        logging.info("Authenticated with control-plane API")
        return True

    async def ensure_authenticated(self) -> None:
        if not self.access_token or self.token_expiry is None or self._clock() >= self.token_expiry:
            await self.authenticate()

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    async def _request(self, method: str, action: str, fallback: str, timeout: Optional[float] = None) -> Any:
        await self.ensure_authenticated()
        url = f"{self.base_url}/{self.resource}/{action}"
        kwargs: dict[str, Any] = {"headers": self._auth_headers()}
        if timeout is not None:
            kwargs["timeout"] = timeout
        if method == "POST":
            kwargs["json"] = {}
        try:
            resp = await self._http.request(method, url, **kwargs)
            resp.raise_for_status()
            if not resp.content:
                return {}
            return resp.json()
        except httpx.HTTPStatusError as e:
            logging.error(f"{method} /{self.resource}/{action} failed: {_describe_failure(e)}")
            raise OperationError(_upstream_detail(e.response) or fallback) from e
        except httpx.HTTPError as e:
            logging.error(f"{method} /{self.resource}/{action} failed: {_describe_failure(e)}")
            raise OperationError(fallback) from e
        except ValueError as e:
            logging.error(f"{method} /{self.resource}/{action} returned a non-JSON body")
            raise OperationError(fallback) from e

    async def _control(self, action: str, fallback: str) -> Any:
        if self._control_lock.locked():
            raise OperationInProgressError(self._running_operation or "operation")
        async with self._control_lock:
            self._running_operation = action
            try:
                return await self._request("POST", action, fallback, timeout=CONTROL_TIMEOUT_SECONDS)
            finally:
                self._running_operation = None

    async def start_server(self) -> Any:
        return await self._control("start", "Failed to start server")

    async def stop_server(self) -> Any:
        return await self._control("stop", "Failed to stop server")

    async def get_resources(self) -> ResourceSnapshot:
        data = await self._request("GET", "resources", "Failed to get resources")
        return parse_resources(data)
