"""Environment-driven settings.

    AUTODIFF_ML_BACKEND           default backend name (ndarray | wgpu)
    AUTODIFF_ML_DTYPE             element type of the ndarray backend (float32 | float64)
    AUTODIFF_ML_SEED              seed for backend random generators (unset = entropy)
    AUTODIFF_ML_POWER_PREFERENCE  wgpu adapter preference (high-performance | low-power)
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

_VALID_DTYPES = ("float32", "float64")
_VALID_POWER = ("high-performance", "low-power")

_settings = None


@dataclass(frozen=True)
class Settings:
    backend: str = "ndarray"
    dtype: str = "float32"
    seed: Optional[int] = None
    power_preference: str = "high-performance"


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from environment variables."""
    env = os.environ if environ is None else environ

    backend = env.get("AUTODIFF_ML_BACKEND", "ndarray").strip().lower()

    dtype = env.get("AUTODIFF_ML_DTYPE", "float32").strip().lower()
    if dtype not in _VALID_DTYPES:
        raise ValueError(f"AUTODIFF_ML_DTYPE must be one of {_VALID_DTYPES}, got {dtype!r}")

    seed = None
    raw_seed = env.get("AUTODIFF_ML_SEED", "").strip()
    if raw_seed:
        try:
            seed = int(raw_seed)
        except ValueError:
            raise ValueError(f"AUTODIFF_ML_SEED must be an integer, got {raw_seed!r}") from None

    power = env.get("AUTODIFF_ML_POWER_PREFERENCE", "high-performance").strip().lower()
    if power not in _VALID_POWER:
        raise ValueError(
            f"AUTODIFF_ML_POWER_PREFERENCE must be one of {_VALID_POWER}, got {power!r}"
        )

    return Settings(backend=backend, dtype=dtype, seed=seed, power_preference=power)


def get_settings() -> Settings:
    """Return the process settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reload_settings() -> Settings:
    """Re-read the environment (used by tests)."""
    global _settings
    _settings = load_settings()
    return _settings
