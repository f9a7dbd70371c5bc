"""
Filesystem flagd controller.

Edits the flagd JSON configuration directly instead of talking to the flagd
service. flagd watches its config file, so a rewrite is picked up on the next
evaluation. Intended for local demo stacks.

Config shape:
    {"flags": {"<name>": {"state": "ENABLED",
                          "variants": {"on": true, "off": false},
                          "defaultVariant": "off"}}}
"""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from faultlab.core.config import get_settings
from faultlab.core.exceptions import FlagConnectionFailure, FlagInvalidValue, FlagNotFound
from faultlab.core.models import FeatureFlag, FlagEvaluation

logger = logging.getLogger(__name__)

# flagd polls the file; give it a moment after a write
RELOAD_GRACE_SECONDS = 0.1


def variant_is_on(variant: str, variants: Dict[str, Any]) -> bool:
    """True for ``on``/``true`` variants, boolean true, or a positive number."""
    if variant in ("on", "true"):
        return True
    value = variants.get(variant)
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value > 0
    return False


def pick_enable_variant(variants: Dict[str, Any]) -> Optional[str]:
    if "on" in variants:
        return "on"
    if "100%" in variants:
        return "100%"
    numeric = [(k, v) for k, v in variants.items() if isinstance(v, (int, float)) and not isinstance(v, bool)]
    if numeric:
        return max(numeric, key=lambda kv: kv[1])[0]
    return None


def pick_disable_variant(variants: Dict[str, Any]) -> Optional[str]:
    if "off" in variants:
        return "off"
    if "0" in variants:
        return "0"
    numeric = [(k, v) for k, v in variants.items() if isinstance(v, (int, float)) and not isinstance(v, bool)]
    if numeric:
        return min(numeric, key=lambda kv: kv[1])[0]
    return None


class FlagdFileController:
    """FlagController that rewrites ``defaultVariant`` in a flagd config file."""

    def __init__(self, config_path: Optional[Union[str, Path]] = None, reload_grace: float = RELOAD_GRACE_SECONDS):
        self.config_path = Path(config_path) if config_path else get_settings().flagd.config_path
        self.reload_grace = reload_grace
        self._lock = asyncio.Lock()

    def _read_sync(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            logger.warning(f"[FlagdFile] Config not found at {self.config_path}, treating as empty")
            return {"flags": {}}
        with open(self.config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        data.setdefault("flags", {})
        return data

    def _write_sync(self, data: Dict[str, Any]) -> None:
        tmp = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        tmp.replace(self.config_path)

    async def _read(self) -> Dict[str, Any]:
        try:
            return await asyncio.to_thread(self._read_sync)
        except (OSError, json.JSONDecodeError) as e:
            raise FlagConnectionFailure(f"Failed to read flag config {self.config_path}: {e}") from e

    async def _set_variant(self, name: str, enable: bool) -> None:
        async with self._lock:
            data = await self._read()
            flag = data["flags"].get(name)
            if flag is None:
                raise FlagNotFound(name)

            variants = flag.get("variants", {})
            variant = pick_enable_variant(variants) if enable else pick_disable_variant(variants)
            if variant is None:
                action = "enable" if enable else "disable"
                raise FlagInvalidValue(f"Failed to {action} flag '{name}': no suitable variant in {list(variants)}")

            flag["defaultVariant"] = variant
            try:
                await asyncio.to_thread(self._write_sync, data)
            except OSError as e:
                raise FlagConnectionFailure(f"Failed to write flag config {self.config_path}: {e}") from e

        if self.reload_grace > 0:
            await asyncio.sleep(self.reload_grace)
        logger.info(f"[FlagdFile] Flag {name} {'enabled' if enable else 'disabled'} (variant={variant})")

    async def enable(self, name: str) -> None:
        await self._set_variant(name, enable=True)

    async def disable(self, name: str) -> None:
        await self._set_variant(name, enable=False)

    async def get_value(self, name: str) -> bool:
        data = await self._read()
        flag = data["flags"].get(name)
        if flag is None:
            raise FlagNotFound(name)
        return variant_is_on(flag.get("defaultVariant", ""), flag.get("variants", {}))

    async def evaluate(self, name: str, ctx: Optional[Dict[str, Any]] = None) -> FlagEvaluation:
        data = await self._read()
        flag = data["flags"].get(name)
        if flag is None:
            return FlagEvaluation(
                value=False,
                reason="FLAG_NOT_FOUND",
                error_code="FLAG_NOT_FOUND",
                error_message=f"Flag {name} not found",
            )
        variant = flag.get("defaultVariant", "")
        return FlagEvaluation(
            value=variant_is_on(variant, flag.get("variants", {})),
            variant=variant,
            reason="STATIC",
        )

    async def list(self) -> List[FeatureFlag]:
        data = await self._read()
        flags: List[FeatureFlag] = []
        for name, flag in data["flags"].items():
            variants = flag.get("variants", {})
            flags.append(
                FeatureFlag(
                    name=name,
                    value=variant_is_on(flag.get("defaultVariant", ""), variants),
                    default_value=False,
                    description=flag.get("description"),
                    metadata={
                        "state": flag.get("state"),
                        "variants": variants,
                        "defaultVariant": flag.get("defaultVariant"),
                    },
                )
            )
        return flags
