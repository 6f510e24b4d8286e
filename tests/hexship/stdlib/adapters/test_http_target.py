"""Tests for the HTTP deployment target."""

from __future__ import annotations

import json

import httpx
import pytest

from hexship.drivers.observer_manager.local import LocalObserverManager
from hexship.kernel.domain.deployment import RolloutState
from hexship.kernel.domain.pipeline import CanaryPolicy
from hexship.kernel.exceptions import DeploymentHealthCheckFailure
from hexship.stdlib.adapters.http import DeploymentTargetError, HttpDeploymentTarget
from hexship.stdlib.adapters.memory import InMemoryCollectionStorage
from hexship.stdlib.lib.rollout_controller import RolloutController

BASE_URL = "http://deploy.test"


class FakePlatform:
    """Records requests and answers like a deployment platform API."""

    def __init__(self, error_rates: dict[str, float] | None = None) -> None:
        self.error_rates = error_rates or {}
        self.requests: list[httpx.Request] = []
        self.fail_with: int | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"detail": "platform unavailable"})
        if request.url.path.endswith("/health"):
            version = request.url.params["version"]
            return httpx.Response(
                200, json={"error_rate": self.error_rates.get(version, 0.0), "probe_ok": True}
            )
        return httpx.Response(200, json={"ok": True})

    def bodies(self) -> list[tuple[str, str, dict | None]]:
        return [
            (r.method, r.url.path, json.loads(r.content) if r.content else None)
            for r in self.requests
        ]


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform(error_rates={"v2": 0.3})


@pytest.fixture
def target(platform: FakePlatform) -> HttpDeploymentTarget:
    return HttpDeploymentTarget(
        base_url=BASE_URL,
        bearer_token="deploy-token",
        prefix="/api/v1/",
        transport=httpx.MockTransport(platform),
    )


class TestHttpDeploymentTarget:
    @pytest.mark.asyncio()
    async def test_apply_posts_traffic(
        self, target: HttpDeploymentTarget, platform: FakePlatform
    ) -> None:
        await target.aapply("prod", "v1", 10)

        assert platform.bodies() == [
            ("POST", "/api/v1/environments/prod/traffic", {"version": "v1", "percent": 10})
        ]
        assert platform.requests[0].headers["Authorization"] == "Bearer deploy-token"
        await target.aclose()

    @pytest.mark.asyncio()
    async def test_rollback_posts_version(
        self, target: HttpDeploymentTarget, platform: FakePlatform
    ) -> None:
        await target.arollback("prod", "v1")
        await target.arollback("staging", None)

        assert platform.bodies() == [
            ("POST", "/api/v1/environments/prod/rollback", {"version": "v1"}),
            ("POST", "/api/v1/environments/staging/rollback", {"version": None}),
        ]
        await target.aclose()

    @pytest.mark.asyncio()
    async def test_health_sample(self, target: HttpDeploymentTarget) -> None:
        sample = await target.ahealth("prod", "v2")

        assert sample.error_rate == pytest.approx(0.3)
        assert sample.probe_ok
        await target.aclose()

    @pytest.mark.asyncio()
    async def test_non_success_status_raises(
        self, target: HttpDeploymentTarget, platform: FakePlatform
    ) -> None:
        platform.fail_with = 503

        with pytest.raises(DeploymentTargetError) as exc_info:
            await target.aapply("prod", "v1", 10)

        assert exc_info.value.status_code == 503
        assert exc_info.value.body == {"detail": "platform unavailable"}
        await target.aclose()

    @pytest.mark.asyncio()
    async def test_non_json_health_body(self) -> None:
        target = HttpDeploymentTarget(
            base_url=BASE_URL,
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="ok")),
        )

        with pytest.raises(DeploymentTargetError, match="not JSON"):
            await target.ahealth("prod", "v1")
        await target.aclose()

    @pytest.mark.asyncio()
    async def test_close_is_idempotent(self, target: HttpDeploymentTarget) -> None:
        await target.aclose()
        await target.aapply("prod", "v1", 100)
        await target.aclose()
        await target.aclose()


class TestRolloutOverHttp:
    """The rollout controller driving the HTTP target."""

    @pytest.mark.asyncio()
    async def test_unhealthy_canary_is_rolled_back_over_http(
        self, target: HttpDeploymentTarget, platform: FakePlatform
    ) -> None:
        controller = RolloutController(
            InMemoryCollectionStorage(),
            target,
            LocalObserverManager(),
            default_policy=CanaryPolicy(
                observation_window_seconds=0.01, poll_interval_seconds=0.005
            ),
        )
        await controller.arollout("prod", "v1")

        with pytest.raises(DeploymentHealthCheckFailure):
            await controller.arollout("prod", "v2")

        posts = [(path, body) for method, path, body in platform.bodies() if method == "POST"]
        assert posts[-2:] == [
            ("/api/v1/environments/prod/traffic", {"version": "v2", "percent": 10}),
            ("/api/v1/environments/prod/rollback", {"version": "v1"}),
        ]
        assert (await controller.aget("prod")).state == RolloutState.IDLE
        await target.aclose()
