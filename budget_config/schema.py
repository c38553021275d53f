"""
Engine configuration schema.

Frozen dataclasses the loader parses ``defaults.yaml`` (or an operator's
YAML file) into.  Nothing here reads files or the environment.
"""

from __future__ import annotations

from dataclasses import dataclass, field


class ConfigError(ValueError):
    """A configuration file is missing a required key or holds a bad value."""


@dataclass(frozen=True)
class DatabaseConfig:
    url: str
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10
    pool_timeout: int = 30


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(frozen=True)
class HierarchyConfig:
    """Guard for walks up the cost center tree."""

    max_depth: int = 32


@dataclass(frozen=True)
class ApprovalChainDef:
    """Default approver chain for one request kind."""

    request_kind: str
    approvers: tuple[str, ...]
    escalation_user_id: str | None = None
    # Hours an approver may hold a step before escalation
    timeout_hours: int | None = None


@dataclass(frozen=True)
class SequenceDef:
    """A document sequence to create for every company / fiscal year."""

    module: str
    document_type: str
    prefix: str = ""
    suffix: str = ""
    starting_number: int = 1
    increment_by: int = 1
    padding_length: int = 4
    format_pattern: str | None = None
    per_fiscal_year: bool = False


@dataclass(frozen=True)
class EngineConfig:
    """The whole runtime configuration."""

    database: DatabaseConfig
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    hierarchy: HierarchyConfig = field(default_factory=HierarchyConfig)
    approval_chains: tuple[ApprovalChainDef, ...] = ()
    sequences: tuple[SequenceDef, ...] = ()
    checksum: str = ""

    def approval_chain_for(self, request_kind: str) -> ApprovalChainDef | None:
        kind = getattr(request_kind, "value", request_kind)
        for chain in self.approval_chains:
            if chain.request_kind == kind:
                return chain
        return None
