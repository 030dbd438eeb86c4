"""
Configuration loader.

App config: reads config.yaml, resolves env vars for broker secrets and the
live-trading switch.
"""

from config.loader import (
    AgentConfig,
    AlertingConfig,
    AppConfig,
    BrokerConfig,
    ConfigError,
    CooldownConfig,
    ExecutionConfig,
    InstrumentConfig,
    JournalConfig,
    MarketHoursConfig,
    PlannerConfig,
    RiskConfig,
    build_config,
    load_config,
)

__all__ = [
    "AgentConfig",
    "AlertingConfig",
    "AppConfig",
    "BrokerConfig",
    "ConfigError",
    "CooldownConfig",
    "ExecutionConfig",
    "InstrumentConfig",
    "JournalConfig",
    "MarketHoursConfig",
    "PlannerConfig",
    "RiskConfig",
    "build_config",
    "load_config",
]
