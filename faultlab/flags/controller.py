"""
Feature flag controller contract.

The orchestrator only needs enable/disable, but every backend also exposes
value lookup, detailed evaluation and listing.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from faultlab.core.exceptions import FlagError, FlagNotFound
from faultlab.core.models import FeatureFlag, FlagEvaluation

logger = logging.getLogger(__name__)


@runtime_checkable
class FlagController(Protocol):
    """Toggle and evaluate named boolean flags."""

    async def enable(self, name: str) -> None: ...

    async def disable(self, name: str) -> None: ...

    async def get_value(self, name: str) -> bool: ...

    async def evaluate(self, name: str, ctx: Optional[Dict[str, Any]] = None) -> FlagEvaluation: ...

    async def list(self) -> List[FeatureFlag]: ...


class InMemoryFlagController:
    """
    Process-local flag table.

    Useful for dry runs and tests. ``fail_on`` maps an operation name
    (``enable``, ``disable``, ...) to the error it should raise, and
    ``calls`` records every operation in order.
    """

    def __init__(self, flags: Optional[Dict[str, bool]] = None, strict: bool = False):
        """
        Args:
            flags: Initial flag values
            strict: Raise FlagNotFound for unknown flags instead of creating them
        """
        self._flags: Dict[str, bool] = dict(flags or {})
        self._lock = asyncio.Lock()
        self.strict = strict
        self.fail_on: Dict[str, FlagError] = {}
        self.calls: List[tuple[str, str]] = []

    def _check(self, op: str, name: str) -> None:
        self.calls.append((op, name))
        err = self.fail_on.get(op)
        if err is not None:
            raise err
        if self.strict and name not in self._flags:
            raise FlagNotFound(name)

    async def enable(self, name: str) -> None:
        async with self._lock:
            self._check("enable", name)
            self._flags[name] = True
        logger.info(f"[FlagController] Flag {name} enabled (in-memory)")

    async def disable(self, name: str) -> None:
        async with self._lock:
            self._check("disable", name)
            self._flags[name] = False
        logger.info(f"[FlagController] Flag {name} disabled (in-memory)")

    async def get_value(self, name: str) -> bool:
        async with self._lock:
            self._check("get_value", name)
            return self._flags.get(name, False)

    async def evaluate(self, name: str, ctx: Optional[Dict[str, Any]] = None) -> FlagEvaluation:
        async with self._lock:
            self._check("evaluate", name)
            if name not in self._flags:
                return FlagEvaluation(
                    value=False,
                    reason="FLAG_NOT_FOUND",
                    error_code="FLAG_NOT_FOUND",
                    error_message=f"Flag {name} not found",
                )
            value = self._flags[name]
            return FlagEvaluation(value=value, variant="on" if value else "off", reason="STATIC")

    async def list(self) -> List[FeatureFlag]:
        async with self._lock:
            self.calls.append(("list", "*"))
            return [
                FeatureFlag(name=name, value=value, default_value=False, description=f"Feature flag: {name}")
                for name, value in sorted(self._flags.items())
            ]
