"""flagd HTTP controller using the OpenFeature Remote Evaluation Protocol (OFREP)."""
from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from faultlab.core.config import FlagdSettings, get_settings
from faultlab.core.exceptions import (
    FlagConnectionFailure,
    FlagEvaluationError,
    FlagInvalidValue,
    FlagNotFound,
)
from faultlab.core.models import FeatureFlag, FlagEvaluation

logger = logging.getLogger(__name__)


class FlagdHttpController:
    """Async OFREP client for flagd.

    flagd serves flags read-only, so ``enable``/``disable`` evaluate the flag
    with an override targeting key and fail with ``FlagInvalidValue`` when
    the backend does not report the requested state.
    """

    def __init__(
        self,
        settings: Optional[FlagdSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings().flagd
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            timeout_s = self.settings.timeout_ms / 1000.0
            self._client = httpx.AsyncClient(
                base_url=self.settings.ofrep_url,
                timeout=httpx.Timeout(timeout_s, connect=min(timeout_s, 5.0)),
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _evaluate_raw(self, name: str, context: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.post(
                f"/ofrep/v1/evaluate/flags/{name}",
                json={"context": context},
            )
        except httpx.RequestError as e:
            raise FlagConnectionFailure(
                f"Failed to reach flagd at {self.settings.ofrep_url}: {e}",
                context={"flag": name},
            ) from e

        if response.status_code == 404:
            raise FlagNotFound(name)

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            if response.status_code < 400:
                raise FlagEvaluationError(
                    f"Failed to evaluate flag '{name}': response is not a JSON object",
                    context={"flag": name, "status": response.status_code},
                )
            body = {"errorDetails": response.text[:500]}

        if response.status_code >= 400:
            raise FlagEvaluationError(
                f"Failed to evaluate flag '{name}': HTTP {response.status_code} "
                f"{body.get('errorCode', '')} {body.get('errorDetails', '')}".strip(),
                context={"flag": name, "status": response.status_code},
            )
        return body

    async def evaluate(self, name: str, ctx: Optional[dict[str, Any]] = None) -> FlagEvaluation:
        context: dict[str, Any] = {}
        if ctx and ctx.get("targetingKey"):
            context["targetingKey"] = str(ctx["targetingKey"])

        body = await self._evaluate_raw(name, context)
        value = body.get("value")
        if not isinstance(value, bool):
            raise FlagEvaluationError(
                f"Flag '{name}' returned non-boolean value {value!r}",
                context={"flag": name},
            )
        return FlagEvaluation(
            value=value,
            variant=body.get("variant"),
            reason=body.get("reason") or "DEFAULT",
            error_code=body.get("errorCode"),
            error_message=body.get("errorDetails"),
        )

    async def get_value(self, name: str) -> bool:
        return (await self.evaluate(name)).value

    async def _expect(self, name: str, targeting_key: str, expected: bool) -> None:
        evaluation = await self.evaluate(name, {"targetingKey": targeting_key})
        if evaluation.value is not expected:
            action = "enable" if expected else "disable"
            raise FlagInvalidValue(
                f"Failed to {action} flag '{name}': backend reports value={evaluation.value}",
                context={"flag": name, "variant": evaluation.variant},
            )

    async def enable(self, name: str) -> None:
        logger.info(f"[FlagdHttp] Enabling flag {name}")
        await self._expect(name, "override-enable", True)

    async def disable(self, name: str) -> None:
        logger.info(f"[FlagdHttp] Disabling flag {name}")
        await self._expect(name, "override-disable", False)

    async def list(self) -> list[FeatureFlag]:
        flags: list[FeatureFlag] = []
        for name in self.settings.known_flags:
            try:
                evaluation = await self.evaluate(name)
                flags.append(
                    FeatureFlag(
                        name=name,
                        value=evaluation.value,
                        default_value=False,
                        description=f"Feature flag: {name}",
                        metadata={"variant": evaluation.variant, "reason": evaluation.reason},
                    )
                )
            except FlagConnectionFailure:
                raise
            except (FlagNotFound, FlagEvaluationError) as e:
                logger.debug(f"[FlagdHttp] {name} not evaluable, reporting default: {e}")
                flags.append(
                    FeatureFlag(name=name, value=False, default_value=False, description=f"Feature flag: {name}")
                )
        return flags
