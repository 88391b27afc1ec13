"""
Stage contract and registry.

A stage is an async callable with no arguments returning a result dict.
Returning normally is success; a non-empty ``errors`` list in the result
marks recoverable per-item failures. Raising is a fatal stage failure.
Stage configuration is the stage's own concern.
"""

import asyncio
import importlib
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Optional

from clawstrate.core.models import PipelineStageName

StageResult = dict[str, Any]
Stage = Callable[[], Awaitable[StageResult]]


class StageNotConfiguredError(RuntimeError):
    """Raised when a stage is invoked with no implementation registered."""

    def __init__(self, stage: str):
        super().__init__(f"No implementation registered for stage '{stage}'")
        self.stage = stage


def has_recoverable_errors(result: Any) -> bool:
    """True if a stage result carries a non-empty ``errors`` list."""
    if not isinstance(result, Mapping):
        return False
    errors = result.get("errors")
    return isinstance(errors, list) and len(errors) > 0


def load_entrypoint(path: str) -> Stage:
    """
    Resolve ``"package.module:attribute"`` to a stage callable.

    Raises:
        ValueError: If the path is malformed
        ImportError / AttributeError: If the target does not exist
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Invalid stage entrypoint '{path}', expected 'module:callable'")

    target: Any = importlib.import_module(module_name)
    for part in attr.split("."):
        target = getattr(target, part)

    if not callable(target):
        raise TypeError(f"Stage entrypoint '{path}' is not callable")
    return target


def gather_stages(primary: Stage, **extras: Stage) -> Stage:
    """
    Combine a primary stage with side stages that run concurrently.

    The combined result is the primary result with each side result nested
    under its keyword name, e.g. ``gather_stages(detect_coordination,
    communities=detect_communities)``. Any failure fails the whole stage.
    """
    names = list(extras)

    async def combined() -> StageResult:
        results = await asyncio.gather(primary(), *(extras[n]() for n in names))
        merged = dict(results[0] or {})
        for name, extra in zip(names, results[1:]):
            merged[name] = extra
        return merged

    combined.__name__ = getattr(primary, "__name__", "combined_stage")
    return combined


class StageRegistry:
    """Stage name -> stage callable."""

    def __init__(self, stages: Optional[Mapping[str, Stage]] = None):
        self._stages: dict[str, Stage] = {}
        for name, stage in (stages or {}).items():
            self.register(name, stage)

    @classmethod
    def from_entrypoints(cls, entrypoints: Mapping[str, str]) -> "StageRegistry":
        """Build a registry from ``{"ingest": "pkg.mod:run_ingestion", ...}``."""
        return cls({name: load_entrypoint(path) for name, path in entrypoints.items()})

    @staticmethod
    def _key(name: str | PipelineStageName) -> str:
        return name.value if isinstance(name, PipelineStageName) else str(name)

    def register(self, name: str | PipelineStageName, stage: Stage) -> None:
        self._stages[self._key(name)] = stage

    def get(self, name: str | PipelineStageName) -> Stage:
        key = self._key(name)
        try:
            return self._stages[key]
        except KeyError:
            raise StageNotConfiguredError(key) from None

    async def execute(self, name: str | PipelineStageName) -> StageResult:
        """Invoke a stage and return its result (``{}`` for a None result)."""
        result = await self.get(name)()
        if result is None:
            return {}
        if not isinstance(result, Mapping):
            raise TypeError(
                f"Stage '{self._key(name)}' returned {type(result).__name__}, expected a mapping"
            )
        return dict(result)

    def __contains__(self, name: object) -> bool:
        if isinstance(name, (str, PipelineStageName)):
            return self._key(name) in self._stages
        return False

    def names(self) -> list[str]:
        return list(self._stages)
