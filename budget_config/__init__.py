"""
budget_config -- single public entrypoint for runtime configuration.

Responsibility:
    ``get_active_config()`` is the only way to obtain configuration at
    runtime.  It reads the YAML file named by ``BUDGET_KERNEL_CONFIG`` (or
    the bundled ``defaults.yaml``), lets ``DATABASE_URL`` override the
    database URL, validates, and returns a frozen ``EngineConfig``.

Architecture position:
    Configuration layer.  Sits above ``budget_kernel``; the kernel never
    imports from here.  ``budget_config.bridges`` turns a config into
    kernel calls.

Failure modes:
    - ``FileNotFoundError`` -- the configured path does not exist.
    - ``ConfigError`` (a ``ValueError``) -- missing or invalid values.

Audit relevance:
    Every successful call logs a ``BUDGET_CONFIG_TRACE`` entry with the
    source path and the checksum of the parsed YAML, tying a running
    engine to the exact configuration it was started with.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from budget_config.loader import load_config
from budget_config.schema import (
    ApprovalChainDef,
    ConfigError,
    DatabaseConfig,
    EngineConfig,
    HierarchyConfig,
    LoggingConfig,
    SequenceDef,
)

_logger = logging.getLogger("budget_kernel.config")

CONFIG_PATH_ENV = "BUDGET_KERNEL_CONFIG"
DATABASE_URL_ENV = "DATABASE_URL"
DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_config(path: Path | str | None = None) -> EngineConfig:
    """
    Load the active configuration.

    Resolution order for the file: ``path`` argument, then
    ``$BUDGET_KERNEL_CONFIG``, then the bundled defaults.

    Raises:
        FileNotFoundError: If the resolved file does not exist.
        ConfigError: If validation fails.
    """
    source = Path(path or os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)
    if not source.is_file():
        raise FileNotFoundError(f"Configuration file not found: {source}")

    config = load_config(source, database_url=os.environ.get(DATABASE_URL_ENV))

    _logger.info(
        "BUDGET_CONFIG_TRACE",
        extra={
            "trace_type": "BUDGET_CONFIG_TRACE",
            "config_path": str(source),
            "checksum": config.checksum,
            "approval_chain_count": len(config.approval_chains),
            "sequence_count": len(config.sequences),
        },
    )
    return config


__all__ = [
    "ApprovalChainDef",
    "ConfigError",
    "DatabaseConfig",
    "EngineConfig",
    "HierarchyConfig",
    "LoggingConfig",
    "SequenceDef",
    "get_active_config",
]
