"""Reconciliation configuration: validation, warnings and JSON persistence.

The configuration document lives at ``RECONCILIATION_CONFIG_PATH`` with the
camelCase keys of ``RECONCILIATION_DEFAULTS``. A missing file is created from
the defaults on first read; an unreadable or invalid file is reported and the
defaults are used instead (the file is left untouched for inspection).

Overrides may be given in camelCase or snake_case, and nested threshold
overrides are merged key by key.
"""
from __future__ import annotations

import asyncio
import copy
import json
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError
from pydantic.alias_generators import to_camel, to_snake

from month_end.config import CONFIG_WARNING_LIMITS, RECONCILIATION_CONFIG_PATH, RECONCILIATION_DEFAULTS
from month_end.errors import ConfigValidationError
from month_end.models.schemas import ConfigValidationResult, ReconciliationConfig
from month_end.utils import get_logger

logger = get_logger(__name__)


def _camelize(data: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in data.items():
        out[to_camel(key) if "_" in key else key] = _camelize(value) if isinstance(value, Mapping) else value
    return out


def _deep_merge(base: Dict[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _format_errors(exc: ValidationError) -> List[str]:
    messages: List[str] = []
    for err in exc.errors():
        loc = ".".join(to_snake(str(part)) for part in err["loc"])
        messages.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return messages


def _warnings_for(config: ReconciliationConfig) -> List[str]:
    limits = CONFIG_WARNING_LIMITS
    thresholds = config.significant_change_thresholds
    warnings: List[str] = []
    if config.max_reconciliation_days > limits["max_reconciliation_days"]:
        warnings.append(f"max_reconciliation_days of {config.max_reconciliation_days} is unusually long and may delay month-end data")
    if config.check_frequency_hours < limits["min_check_frequency_hours"]:
        warnings.append(f"check_frequency_hours of {config.check_frequency_hours} may put excessive load on the data source")
    if config.check_frequency_hours > limits["max_check_frequency_hours"]:
        warnings.append(f"check_frequency_hours of {config.check_frequency_hours} may miss changes between checks")
    if config.max_extension_days > limits["max_extension_days"]:
        warnings.append(f"max_extension_days of {config.max_extension_days} allows very long reconciliation periods")
    if thresholds.membership_percent > limits["membership_percent"]:
        warnings.append(f"significant_change_thresholds.membership_percent of {thresholds.membership_percent} may hide real membership changes")
    if thresholds.distinguished_percent > limits["distinguished_percent"]:
        warnings.append(f"significant_change_thresholds.distinguished_percent of {thresholds.distinguished_percent} may hide real distinguished changes")
    if config.max_extension_days > 0 and not config.auto_extension_enabled:
        warnings.append("max_extension_days is set but auto_extension_enabled is false; only manual extensions will apply")
    return warnings


class ReconciliationConfigService:
    def __init__(self, config_path: str | Path = RECONCILIATION_CONFIG_PATH, *, defaults: Optional[Mapping[str, Any]] = None):
        self.config_path = Path(config_path)
        self._defaults = _camelize(defaults if defaults is not None else RECONCILIATION_DEFAULTS)
        self._config: Optional[ReconciliationConfig] = None
        self._lock = asyncio.Lock()

    # ----------------------------- validation ----------------------------- #
    def get_default_config(self) -> ReconciliationConfig:
        return ReconciliationConfig.model_validate(self._defaults)

    def validate_config(self, candidate: Mapping[str, Any] | ReconciliationConfig) -> List[str]:
        """Return validation errors (empty when valid). Each error names its field."""
        return self.validate_with_warnings(candidate).errors

    def validate_with_warnings(self, candidate: Mapping[str, Any] | ReconciliationConfig) -> ConfigValidationResult:
        if isinstance(candidate, ReconciliationConfig):
            return ConfigValidationResult(is_valid=True, warnings=_warnings_for(candidate))
        try:
            config = ReconciliationConfig.model_validate(_camelize(candidate))
        except ValidationError as exc:
            return ConfigValidationResult(is_valid=False, errors=_format_errors(exc))
        return ConfigValidationResult(is_valid=True, warnings=_warnings_for(config))

    def merge_config(self, base: ReconciliationConfig, overrides: Optional[Mapping[str, Any]] = None) -> ReconciliationConfig:
        """Apply (possibly partial) overrides to ``base``; raise ``ConfigValidationError`` when invalid."""
        if not overrides:
            return base
        merged = _deep_merge(base.to_document(), _camelize(overrides))
        try:
            return ReconciliationConfig.model_validate(merged)
        except ValidationError as exc:
            raise ConfigValidationError(_format_errors(exc)) from exc

    # ----------------------------- persistence ---------------------------- #
    def _read_document(self) -> Optional[Dict[str, Any]]:
        if not self.config_path.exists():
            return None
        return json.loads(self.config_path.read_text(encoding="utf-8"))

    def _write_document(self, document: Dict[str, Any]) -> None:
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
        tmp.write_text(json.dumps(document, indent=2), encoding="utf-8")
        tmp.replace(self.config_path)

    async def get_config(self) -> ReconciliationConfig:
        """Current configuration, loaded once and cached."""
        async with self._lock:
            if self._config is None:
                self._config = await self._load()
            return self._config

    async def _load(self) -> ReconciliationConfig:
        try:
            document = await asyncio.to_thread(self._read_document)
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Unreadable reconciliation config, using defaults", path=str(self.config_path), error=str(exc))
            return self.get_default_config()
        if document is None:
            config = self.get_default_config()
            await asyncio.to_thread(self._write_document, config.to_document())
            logger.info("Created default reconciliation config", path=str(self.config_path))
            return config
        try:
            # Missing keys fall back to defaults
            return ReconciliationConfig.model_validate(_deep_merge(self._defaults, document))
        except ValidationError as exc:
            logger.error("Invalid reconciliation config, using defaults", path=str(self.config_path), errors=_format_errors(exc))
            return self.get_default_config()

    async def validate_update(self, updates: Mapping[str, Any]) -> ConfigValidationResult:
        """Validate a partial update merged over the current configuration, without saving."""
        current = await self.get_config()
        return self.validate_with_warnings(_deep_merge(current.to_document(), _camelize(updates)))

    async def update_config(self, updates: Mapping[str, Any]) -> ReconciliationConfig:
        current = await self.get_config()
        updated = self.merge_config(current, updates)
        for warning in _warnings_for(updated):
            logger.warning("Reconciliation config warning", warning=warning)
        async with self._lock:
            await asyncio.to_thread(self._write_document, updated.to_document())
            self._config = updated
        logger.info("Reconciliation config updated", updated_fields=sorted(_camelize(updates)))
        return updated

    async def reset_to_defaults(self) -> ReconciliationConfig:
        config = self.get_default_config()
        async with self._lock:
            await asyncio.to_thread(self._write_document, config.to_document())
            self._config = config
        return config


__all__ = ["ReconciliationConfigService"]
