"""Global app configuration (connection, generation, crucible pacing, prompts)."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

_CONFIG_DEFAULTS: dict[str, Any] = {
    "connection": {
        "provider_url": "",
        "api_key": "",
        "model": "",
        "timeout": 120.0,
    },
    "generation": {
        "auto_continue": False,
        "budget_tick_seconds": 1.0,
        # Output-token allowance; capacity 0 disables client-side budgeting.
        "token_budget": {"capacity": 0, "refill_per_second": 0.0},
    },
    "crucible": {
        "director_cadence": 3,
        "max_beats": 15,
        "auto_chain_delay_seconds": 0.0,
        "max_solver_stalls": 3,
    },
    "prompts": {},
}

# Section schemas. update_config validates against these before writing.

class ConnectionSettings(BaseModel):
    provider_url: str = ""
    api_key: str = ""
    model: str = ""
    timeout: float = 120.0


class TokenBudgetSettings(BaseModel):
    capacity: int = 0
    refill_per_second: float = 0.0


class GenerationSettings(BaseModel):
    auto_continue: bool = False
    budget_tick_seconds: float = 1.0
    token_budget: TokenBudgetSettings = Field(default_factory=TokenBudgetSettings)


class CrucibleSettings(BaseModel):
    director_cadence: int = 3
    max_beats: int = 15
    auto_chain_delay_seconds: float = 0.0
    max_solver_stalls: int = 3


class AppConfig(BaseModel):
    connection: ConnectionSettings
    generation: GenerationSettings
    crucible: CrucibleSettings
    prompts: dict[str, str]


# Environment variables that fill blank connection settings.
_CONNECTION_ENV = {
    "provider_url": "PROVIDER_URL",
    "api_key": "API_KEY",
    "model": "MODEL",
}


def _config_path(data_dir: Path) -> Path:
    return data_dir / "config.json"


def _defaults() -> dict[str, Any]:
    return json.loads(json.dumps(_CONFIG_DEFAULTS))


def _merge(config: dict[str, Any], fields: dict[str, Any]) -> None:
    for section, vals in fields.items():
        if section not in config:
            continue
        if section == "prompts" and isinstance(vals, dict):
            config["prompts"].update(vals)
        elif isinstance(vals, dict) and isinstance(config[section], dict):
            for key, val in vals.items():
                if key in config[section]:
                    if isinstance(val, dict) and isinstance(config[section][key], dict):
                        config[section][key].update(val)
                    else:
                        config[section][key] = val


def get_config(data_dir: Path) -> dict[str, Any]:
    """Read config, returning defaults merged with stored values."""
    config = _defaults()
    path = _config_path(data_dir)
    if path.is_file():
        _merge(config, json.loads(path.read_text()))
    for key, env in _CONNECTION_ENV.items():
        if not config["connection"][key] and os.getenv(env):
            config["connection"][key] = os.getenv(env)
    return config


def update_config(data_dir: Path, fields: dict[str, Any]) -> dict[str, Any]:
    """Merge fields into config and persist. Returns full config.

    Raises pydantic.ValidationError (a ValueError) and leaves the stored file
    untouched when the merged config does not validate.
    """
    path = _config_path(data_dir)
    stored = _defaults()
    if path.is_file():
        _merge(stored, json.loads(path.read_text()))
    _merge(stored, fields)
    stored = AppConfig.model_validate(stored).model_dump()
    path.write_text(json.dumps(stored, indent=2))
    return get_config(data_dir)
