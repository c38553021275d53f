"""
Configuration loader (``budget_config.loader``).

Responsibility
--------------
Reads a YAML file and parses it into the frozen dataclasses of
``budget_config.schema``.  Runtime callers go through
``budget_config.get_active_config()``, not this module.

Failure modes
-------------
* Missing file -> ``FileNotFoundError`` propagates.
* Malformed YAML -> ``yaml.YAMLError`` propagates.
* Missing or invalid keys -> ``ConfigError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from budget_config.schema import (
    ApprovalChainDef,
    ConfigError,
    DatabaseConfig,
    EngineConfig,
    HierarchyConfig,
    LoggingConfig,
    SequenceDef,
)
from budget_kernel.services.document_sequencer import check_format_pattern

_REQUEST_KINDS = frozenset({
    "budget_request",
    "material_request",
    "purchase_order",
    "payment_order",
    "invoice",
    "rfq",
})

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return data


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _positive_int(value: Any, name: str, minimum: int = 1) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ConfigError(f"{name} must be an integer >= {minimum}, got {value!r}")
    return value


def parse_database(data: dict[str, Any]) -> DatabaseConfig:
    if not data.get("url"):
        raise ConfigError("database.url is required")
    return DatabaseConfig(
        url=str(data["url"]),
        echo=bool(data.get("echo", False)),
        pool_size=_positive_int(data.get("pool_size", 20), "database.pool_size"),
        max_overflow=_positive_int(
            data.get("max_overflow", 10), "database.max_overflow", minimum=0
        ),
        pool_timeout=_positive_int(data.get("pool_timeout", 30), "database.pool_timeout"),
    )


def parse_logging(data: dict[str, Any]) -> LoggingConfig:
    level = str(data.get("level", "INFO")).upper()
    if level not in _LOG_LEVELS:
        raise ConfigError(f"logging.level must be one of {sorted(_LOG_LEVELS)}, got {level!r}")
    return LoggingConfig(level=level)


def parse_hierarchy(data: dict[str, Any]) -> HierarchyConfig:
    return HierarchyConfig(
        max_depth=_positive_int(data.get("max_depth", 32), "hierarchy.max_depth"),
    )


def parse_approval_chain(data: dict[str, Any]) -> ApprovalChainDef:
    kind = data.get("request_kind")
    if kind not in _REQUEST_KINDS:
        raise ConfigError(f"unknown request_kind {kind!r} in approval_chains")
    approvers = tuple(str(a) for a in data.get("approvers") or ())
    if not approvers:
        raise ConfigError(f"approval chain for {kind} has no approvers")
    timeout = data.get("timeout_hours")
    return ApprovalChainDef(
        request_kind=kind,
        approvers=approvers,
        escalation_user_id=data.get("escalation_user_id"),
        timeout_hours=(
            _positive_int(timeout, f"{kind}.timeout_hours") if timeout is not None else None
        ),
    )


def parse_sequence(data: dict[str, Any]) -> SequenceDef:
    try:
        module = str(data["module"])
        document_type = str(data["document_type"])
    except KeyError as exc:
        raise ConfigError(f"sequence definition is missing {exc.args[0]!r}") from exc
    name = f"{module}/{document_type}"
    format_pattern = data.get("format_pattern")
    if format_pattern is not None:
        try:
            check_format_pattern(str(format_pattern))
        except ValueError as exc:
            raise ConfigError(f"{name}: {exc}") from exc
    return SequenceDef(
        module=module,
        document_type=document_type,
        prefix=str(data.get("prefix", "")),
        suffix=str(data.get("suffix", "")),
        starting_number=_positive_int(
            data.get("starting_number", 1), f"{name}.starting_number", minimum=0
        ),
        increment_by=_positive_int(data.get("increment_by", 1), f"{name}.increment_by"),
        padding_length=_positive_int(data.get("padding_length", 4), f"{name}.padding_length"),
        format_pattern=str(format_pattern) if format_pattern is not None else None,
        per_fiscal_year=bool(data.get("per_fiscal_year", False)),
    )


def parse_config(data: dict[str, Any], database_url: str | None = None) -> EngineConfig:
    """
    Build an EngineConfig from a parsed YAML mapping.

    ``database_url`` replaces ``database.url`` when given.
    """
    database = dict(data.get("database") or {})
    if database_url:
        database["url"] = database_url

    chains = tuple(parse_approval_chain(c) for c in data.get("approval_chains") or ())
    kinds = [c.request_kind for c in chains]
    duplicates = sorted({k for k in kinds if kinds.count(k) > 1})
    if duplicates:
        raise ConfigError(f"duplicate approval chains for {duplicates}")

    return EngineConfig(
        database=parse_database(database),
        logging=parse_logging(data.get("logging") or {}),
        hierarchy=parse_hierarchy(data.get("hierarchy") or {}),
        approval_chains=chains,
        sequences=tuple(parse_sequence(s) for s in data.get("sequences") or ()),
        checksum=compute_checksum(data),
    )


def load_config(path: Path, database_url: str | None = None) -> EngineConfig:
    return parse_config(load_yaml_file(path), database_url=database_url)
