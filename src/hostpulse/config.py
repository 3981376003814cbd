"""Typed configuration for the telemetry engine."""

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace

log = logging.getLogger(__name__)

ENV_PREFIX = "HOSTPULSE_"


@dataclass(slots=True, frozen=True)
class StabilizerConfig:
    """Tuning of the GPU stabilizer."""

    min_update_ms: int = 2000
    alpha: float = 0.30
    zero_confirm: int = 4
    unsupported: int = -1
    fail_grace_ms: int = 8000  # raised to at least 4 * min_update_ms


@dataclass(slots=True, frozen=True)
class MonitorConfig:
    """
    Cadences and tuning of the sampling engine.

    All intervals are in milliseconds unless the name says otherwise.
    Out-of-range values are clamped rather than rejected.
    """

    loop_ms: int = 250
    cpu_ms: int = 500
    disk_ms: int = 1000
    gpu_ms: int = 200
    disk_warmup_ms: int = 900
    probe_timeout_s: float = 5.0
    counter_pause_s: float = 0.1
    gpu_cooldown_ms: int = 1500
    disk_alpha: float = 0.35
    gpu_ema_alpha: float = 0.30
    stabilizer: StabilizerConfig = field(default_factory=StabilizerConfig)

    def __post_init__(self) -> None:
        # Frozen dataclass: clamp through object.__setattr__
        object.__setattr__(self, "loop_ms", max(1, int(self.loop_ms)))
        object.__setattr__(self, "cpu_ms", max(0, int(self.cpu_ms)))
        object.__setattr__(self, "disk_ms", max(0, int(self.disk_ms)))
        object.__setattr__(self, "gpu_ms", max(1, int(self.gpu_ms)))
        object.__setattr__(self, "disk_warmup_ms", max(0, int(self.disk_warmup_ms)))
        object.__setattr__(self, "probe_timeout_s", max(0.1, float(self.probe_timeout_s)))
        object.__setattr__(self, "counter_pause_s", max(0.0, float(self.counter_pause_s)))
        object.__setattr__(self, "gpu_cooldown_ms", max(0, int(self.gpu_cooldown_ms)))
        object.__setattr__(self, "disk_alpha", min(1.0, max(0.01, float(self.disk_alpha))))
        object.__setattr__(self, "gpu_ema_alpha", min(1.0, max(0.01, float(self.gpu_ema_alpha))))

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "MonitorConfig":
        """
        Build a config from HOSTPULSE_<FIELD> environment overrides.

        Stabilizer fields use the HOSTPULSE_STABILIZER_<FIELD> form.
        Unparsable values are logged and ignored.
        """
        env = os.environ if environ is None else environ
        config = cls()

        overrides = _read_overrides(config, ENV_PREFIX, env, skip={"stabilizer"})
        stab_overrides = _read_overrides(
            config.stabilizer, ENV_PREFIX + "STABILIZER_", env, skip=set()
        )
        if stab_overrides:
            overrides["stabilizer"] = replace(config.stabilizer, **stab_overrides)

        return replace(config, **overrides) if overrides else config


def _read_overrides(
    instance: object, prefix: str, env: Mapping[str, str], skip: set[str]
) -> dict[str, int | float]:
    """Collect typed overrides for the dataclass fields of instance."""
    overrides: dict[str, int | float] = {}
    for f in fields(instance):
        if f.name in skip:
            continue
        raw = env.get(prefix + f.name.upper())
        if raw is None:
            continue
        current = getattr(instance, f.name)
        try:
            overrides[f.name] = int(raw) if isinstance(current, int) else float(raw)
        except ValueError:
            log.warning("Ignoring invalid %s%s=%r", prefix, f.name.upper(), raw)
    return overrides
