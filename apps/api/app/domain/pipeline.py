"""Declarative pipeline configuration and progress math."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

DEFAULT_STAGE_ORDER: tuple[str, ...] = ("fetch", "extract", "transcribe", "enhance")
DEFAULT_STAGE_WEIGHTS: dict[str, int] = {"fetch": 30, "extract": 10, "transcribe": 40, "enhance": 20}

_TOTAL_WEIGHT = 100


class PipelineConfigError(ValueError):
    """Raised when a pipeline definition cannot be used to run jobs."""


@dataclass(frozen=True, slots=True)
class StageDefinition:
    name: str
    weight: int
    max_attempts: int = 1


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    """Ordered, validated stage list. Invalid definitions fail at construction."""

    stages: tuple[StageDefinition, ...]

    def __post_init__(self) -> None:
        if not self.stages:
            raise PipelineConfigError("pipeline must declare at least one stage")

        seen: set[str] = set()
        for stage in self.stages:
            if not stage.name or not stage.name.strip():
                raise PipelineConfigError("stage names must be non-empty")
            if stage.name in seen:
                raise PipelineConfigError(f"duplicate stage name {stage.name!r}")
            seen.add(stage.name)
            if isinstance(stage.weight, bool) or not isinstance(stage.weight, int) or stage.weight < 0:
                raise PipelineConfigError(f"stage {stage.name!r} weight must be a non-negative integer")
            if stage.max_attempts < 1:
                raise PipelineConfigError(f"stage {stage.name!r} max_attempts must be at least 1")

        total = sum(stage.weight for stage in self.stages)
        if total != _TOTAL_WEIGHT:
            raise PipelineConfigError(f"stage weights must sum to {_TOTAL_WEIGHT}, got {total}")

    @property
    def stage_names(self) -> list[str]:
        return [stage.name for stage in self.stages]

    def prior_weight(self, index: int) -> int:
        """Total weight of the stages before ``index``."""
        return sum(stage.weight for stage in self.stages[:index])


def build_pipeline_config(
    weights: Mapping[str, int],
    *,
    order: Iterable[str] | None = None,
    max_attempts: Mapping[str, int] | None = None,
) -> PipelineConfig:
    """Build a config from a weight map, keeping ``order`` when given."""
    names = list(order) if order is not None else list(weights)
    unknown = set(weights) - set(names)
    if unknown:
        raise PipelineConfigError(f"weights reference unknown stages: {sorted(unknown)}")
    missing = [name for name in names if name not in weights]
    if missing:
        raise PipelineConfigError(f"no weight configured for stages: {missing}")

    attempts = max_attempts or {}
    return PipelineConfig(
        stages=tuple(
            StageDefinition(name=name, weight=weights[name], max_attempts=attempts.get(name, 1)) for name in names
        )
    )


def overall_progress(prior_weight: int, stage_weight: int, sub_progress: float) -> int:
    """Map a stage's 0-100 sub-progress into the pipeline's 0-100 range.

    Rounds down and clamps so a partial stage never reports past its band.
    """
    bounded = min(100.0, max(0.0, float(sub_progress)))
    value = prior_weight + int(stage_weight * bounded // 100)
    return min(_TOTAL_WEIGHT, max(0, value))
