"""Evolution strategies, looked up by name from config and the CLI.

A strategy pairs a candidate generator with the adopter that knows how
to evaluate and apply its candidates.
"""

from __future__ import annotations

from doc_evolution.strategies.base import StrategyPlugin

_strategies: dict[str, StrategyPlugin] = {}


def register_strategy(plugin: StrategyPlugin, replace: bool = False) -> None:
    if plugin.name in _strategies and not replace:
        raise ValueError(f"Strategy {plugin.name!r} is already registered")
    _strategies[plugin.name] = plugin


def get_strategy(name: str) -> StrategyPlugin:
    try:
        return _strategies[name]
    except KeyError:
        raise ValueError(
            f"Unknown strategy {name!r}; choose one of: {', '.join(list_strategies())}"
        ) from None


def list_strategies() -> list[str]:
    return sorted(_strategies)


def _load_builtin_strategies() -> None:
    from doc_evolution.strategies.interpretation import InterpretationStrategy
    from doc_evolution.strategies.rewrite import RewriteStrategy

    for plugin in (RewriteStrategy(), InterpretationStrategy()):
        register_strategy(plugin)


_load_builtin_strategies()
