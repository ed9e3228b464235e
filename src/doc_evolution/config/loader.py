from __future__ import annotations

import dataclasses
from pathlib import Path
from typing import Any

import yaml

from doc_evolution.core.types import (
    Difficulty,
    EngineConfig,
    LedgerConfig,
    MutationKind,
    QuestionCategory,
    RuleType,
    SelfEvolutionConfig,
)

CONFIGS_DIR = Path(__file__).parent.parent.parent.parent / "configs"
DEFAULT_CONFIG_PATH = CONFIGS_DIR / "default.yaml"


def _field_names(cls: type) -> set[str]:
    return {f.name for f in dataclasses.fields(cls)}


def _check_keys(section: str, data: dict[str, Any], cls: type) -> None:
    unknown = set(data) - _field_names(cls)
    if unknown:
        raise ValueError(f"Unknown {section} config key(s): {sorted(unknown)}")


def _enum_list(enum_cls: type, values: list[Any], key: str) -> list[Any]:
    try:
        return [enum_cls(str(v).lower()) for v in values]
    except ValueError as e:
        allowed = [m.value for m in enum_cls]
        raise ValueError(f"Invalid {key}: {e}. Allowed: {allowed}") from e


def _build_self_evolution(data: dict[str, Any]) -> SelfEvolutionConfig:
    _check_keys("self_evolution", data, SelfEvolutionConfig)
    data = dict(data)
    if "categories" in data:
        data["categories"] = _enum_list(QuestionCategory, data["categories"], "categories")
    if "difficulty_mix" in data:
        mix = data["difficulty_mix"]
        keys = _enum_list(Difficulty, list(mix), "difficulty_mix")
        data["difficulty_mix"] = {k: float(v) for k, v in zip(keys, mix.values())}
    return SelfEvolutionConfig(**data)


def engine_config_from_dict(data: dict[str, Any]) -> EngineConfig:
    """Build an EngineConfig from a plain mapping, rejecting unknown keys."""
    _check_keys("engine", data, EngineConfig)
    data = dict(data)

    if "mutation_kinds" in data:
        data["mutation_kinds"] = _enum_list(MutationKind, data["mutation_kinds"], "mutation_kinds")
    if "rule_types" in data:
        data["rule_types"] = _enum_list(RuleType, data["rule_types"], "rule_types")
    if "ledger" in data:
        ledger = data["ledger"] or {}
        _check_keys("ledger", ledger, LedgerConfig)
        data["ledger"] = LedgerConfig(**ledger)
    if "self_evolution" in data:
        data["self_evolution"] = _build_self_evolution(data["self_evolution"] or {})

    config = EngineConfig(**data)
    if config.ledger.delta_down <= config.ledger.delta_up:
        raise ValueError("ledger.delta_down must be larger than ledger.delta_up")
    if config.min_win_margin < 0:
        raise ValueError("min_win_margin must not be negative")
    return config


def build_engine_config(
    path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> EngineConfig:
    """Load config from a YAML file (optional) and apply explicit overrides.

    Overrides whose value is None are ignored, so CLI options that were not
    given leave the file's value in place.
    """
    data: dict[str, Any] = {}
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        data = yaml.safe_load(path.read_text()) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")

    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value

    return engine_config_from_dict(data)
