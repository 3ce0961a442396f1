from __future__ import annotations

import os
from dataclasses import dataclass

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(frozen=True)
class AnalyserConfig:
    """Tuning knobs for the fact propagation fixpoint."""

    max_iterations: int = 100_000
    fold_constants: bool = True

    def __post_init__(self) -> None:
        if self.max_iterations <= 0:
            raise ValueError("max_iterations must be positive")

    @classmethod
    def from_env(cls) -> AnalyserConfig:
        return cls(
            max_iterations=_env_int("INFERFLOW_MAX_ITERATIONS", cls.max_iterations),
            fold_constants=_env_bool("INFERFLOW_FOLD_CONSTANTS", cls.fold_constants),
        )


@dataclass(frozen=True)
class PlanConfig:
    use_folded_constants: bool = True
    validate_inputs: bool = True

    @classmethod
    def from_env(cls) -> PlanConfig:
        return cls(
            use_folded_constants=_env_bool(
                "INFERFLOW_USE_FOLDED_CONSTANTS", cls.use_folded_constants
            ),
            validate_inputs=_env_bool("INFERFLOW_VALIDATE_INPUTS", cls.validate_inputs),
        )
