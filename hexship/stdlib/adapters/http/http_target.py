"""HTTP deployment target - drives a platform API over httpx.

Expected endpoints, relative to ``base_url``::

    POST {prefix}/environments/{environment}/traffic   {"version": ..., "percent": ...}
    POST {prefix}/environments/{environment}/rollback  {"version": ... | null}
    GET  {prefix}/environments/{environment}/health?version=...
         -> {"error_rate": 0.01, "probe_ok": true}

YAML configuration::

    deployment_target:
      name: http_target
      params:
        base_url: "https://deploy.internal"
        bearer_token: "${DEPLOY_TOKEN}"
        timeout: 10.0
"""

from __future__ import annotations

from typing import Any

import httpx

from hexship.kernel.domain.deployment import HealthSample
from hexship.kernel.exceptions import HexShipError
from hexship.kernel.logging import get_logger

logger = get_logger(__name__)


class DeploymentTargetError(HexShipError):
    """Raised when the platform API answers with a non-2xx status."""

    def __init__(self, status_code: int, body: Any, message: str | None = None) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(message or f"HTTP {status_code}: {body}")


class HttpDeploymentTarget:
    """DeploymentTarget adapter backed by ``httpx.AsyncClient``.

    Parameters
    ----------
    base_url : str
        Root URL of the platform API.
    timeout : float
        Request timeout in seconds (default: 30.0).
    headers : dict[str, str] | None
        Headers sent with every request.
    bearer_token : str | None
        Adds ``Authorization: Bearer <token>``.
    prefix : str
        Path prefix placed before ``/environments`` (e.g. ``/api/v1``).
    transport : httpx.AsyncBaseTransport | None
        Custom transport, e.g. ``httpx.MockTransport`` in tests.
    """

    def __init__(
        self,
        base_url: str = "",
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        bearer_token: str | None = None,
        prefix: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._timeout = timeout
        self._headers = dict(headers) if headers else {}
        if bearer_token:
            self._headers["Authorization"] = f"Bearer {bearer_token}"
        self._prefix = prefix.rstrip("/")
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        """Lazily create the httpx client on first use."""
        if self._client is None:
            kwargs: dict[str, Any] = {
                "base_url": self._base_url,
                "timeout": self._timeout,
                "headers": self._headers,
            }
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._client = httpx.AsyncClient(**kwargs)
        return self._client

    def _path(self, environment: str, action: str) -> str:
        return f"{self._prefix}/environments/{environment}/{action}"

    @staticmethod
    def _check(response: httpx.Response) -> Any:
        content_type = response.headers.get("content-type", "")
        body: Any = response.json() if "application/json" in content_type else response.text
        if not response.is_success:
            raise DeploymentTargetError(response.status_code, body)
        return body

    async def aapply(self, environment: str, version: str, traffic_percent: float) -> None:
        response = await self._get_client().post(
            self._path(environment, "traffic"),
            json={"version": version, "percent": traffic_percent},
        )
        self._check(response)
        logger.debug(
            "Routed {percent}% of '{environment}' to {version}",
            percent=traffic_percent,
            environment=environment,
            version=version,
        )

    async def arollback(self, environment: str, version: str | None) -> None:
        response = await self._get_client().post(
            self._path(environment, "rollback"), json={"version": version}
        )
        self._check(response)

    async def ahealth(self, environment: str, version: str) -> HealthSample:
        response = await self._get_client().get(
            self._path(environment, "health"), params={"version": version}
        )
        body = self._check(response)
        if not isinstance(body, dict):
            raise DeploymentTargetError(response.status_code, body, "health body is not JSON")
        return HealthSample(
            error_rate=float(body.get("error_rate", 0.0)),
            probe_ok=bool(body.get("probe_ok", True)),
        )

    async def aclose(self) -> None:
        """Close the underlying httpx client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
