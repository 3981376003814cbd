"""GPU utilization sources, their fallback chain, and the stabilizer."""

import logging
import threading
import time
from collections.abc import Callable, Sequence
from pathlib import Path

import pynvml

from hostpulse.config import MonitorConfig, StabilizerConfig
from hostpulse.models import GpuDevice
from hostpulse.probe import ProbeRunner, is_windows
from hostpulse.util import clamp_float, clamp_int, ema_step_int, monotonic_ms

log = logging.getLogger(__name__)

UNAVAILABLE = -1

GPU_ENGINE_COUNTER = r"\GPU Engine(*)\Utilization Percentage"

# One line per sample: the busiest engine instance, aggregate instances excluded
GPU_COUNTER_PS = (
    f"Get-Counter -Counter '{GPU_ENGINE_COUNTER}' -SampleInterval 1 -MaxSamples 2 | "
    "ForEach-Object { ($_.CounterSamples | "
    "Where-Object { $_.InstanceName -notlike '*_total*' } | "
    "Measure-Object -Property CookedValue -Maximum).Maximum }"
)

DRM_ROOT = Path("/sys/class/drm")

NVIDIA_SMI_QUERY = ["--query-gpu=utilization.gpu", "--format=csv,noheader,nounits"]

NVIDIA_SMI_PATHS = [
    "nvidia-smi",
    r"C:\Program Files\NVIDIA Corporation\NVSMI\nvidia-smi.exe",
    r"C:\Windows\System32\nvidia-smi.exe",
    "/usr/bin/nvidia-smi",
]


def parse_number(text: str) -> float | None:
    """Parse a counter value, tolerating decimal commas; None if not numeric."""
    t = text.strip().replace(" ", "")
    if not t or t.upper() == "N/A":
        return None
    if "," in t and "." not in t:
        t = t.replace(",", ".")
    try:
        value = float(t)
    except ValueError:
        return None
    if value != value or value in (float("inf"), float("-inf")):
        return None
    return value


class GpuUsageProvider:
    """
    A source of instantaneous overall GPU utilization.

    Subclasses implement read(), returning 0..100 or None when unavailable.
    read_gpu_usage_percent() maps None to the -1 sentinel for callers that
    expect the integer contract.
    """

    name = "gpu"

    def read(self) -> int | None:
        raise NotImplementedError

    def read_gpu_usage_percent(self) -> int:
        """GPU usage 0..100, or -1 if unavailable or an error occurred."""
        try:
            value = self.read()
        except Exception:
            log.debug("GPU source %s raised", self.name, exc_info=True)
            return UNAVAILABLE
        if value is None or value < 0:
            return UNAVAILABLE
        return clamp_int(int(value), 0, 100)

    def is_available(self) -> bool:
        """Whether this source is expected to work on this host."""
        return True

    def close(self) -> None:
        pass


class PerfCounterGpuProvider(GpuUsageProvider):
    """Windows performance counters for GPU engines, queried via PowerShell."""

    name = "perf-counter"

    def __init__(self, probe: ProbeRunner) -> None:
        self._probe = probe

    def read(self) -> int | None:
        if not is_windows():
            return None
        output = self._probe.powershell(GPU_COUNTER_PS)
        if output is None:
            return None

        maxima = [v for v in (parse_number(line) for line in output.splitlines()) if v is not None]
        if not maxima:
            return None
        return clamp_int(round(sum(maxima) / len(maxima)), 0, 100)

    def is_available(self) -> bool:
        return is_windows()


class SysfsGpuProvider(GpuUsageProvider):
    """Kernel-exposed gpu_busy_percent of DRM cards (amdgpu and friends)."""

    name = "sysfs"

    def __init__(self, root: Path = DRM_ROOT, pause_s: float = 0.1, samples: int = 2) -> None:
        self._root = root
        self._pause_s = pause_s
        self._samples = max(1, samples)

    def _busy_files(self) -> list[Path]:
        try:
            return sorted(self._root.glob("card*/device/gpu_busy_percent"))
        except OSError:
            return []

    def _read_max(self, files: Sequence[Path]) -> float | None:
        values: list[float] = []
        for path in files:
            try:
                value = parse_number(path.read_text(encoding="utf-8"))
            except OSError:
                continue
            if value is not None:
                values.append(value)
        return max(values) if values else None

    def read(self) -> int | None:
        files = self._busy_files()
        if not files:
            return None

        maxima: list[float] = []
        for i in range(self._samples):
            if i > 0 and self._pause_s > 0:
                time.sleep(self._pause_s)
            value = self._read_max(files)
            if value is not None:
                maxima.append(value)

        if not maxima:
            return None
        return clamp_int(round(sum(maxima) / len(maxima)), 0, 100)

    def is_available(self) -> bool:
        return bool(self._busy_files())


class VendorSmiGpuProvider(GpuUsageProvider):
    """NVIDIA's nvidia-smi, tried at each known install location in turn."""

    name = "nvidia-smi"

    def __init__(self, probe: ProbeRunner, executables: Sequence[str] = NVIDIA_SMI_PATHS) -> None:
        self._probe = probe
        self._executables = list(executables)

    def read(self) -> int | None:
        for exe in self._executables:
            lines = self._probe.run_lines([exe, *NVIDIA_SMI_QUERY])
            # One line per GPU; the busiest one represents the host
            values = [v for v in (parse_number(line) for line in lines) if v is not None]
            if values:
                return clamp_int(round(max(values)), 0, 100)
            log.debug("nvidia-smi failed: %s", exe)
        return None


class NvmlGpuUsageProvider(GpuUsageProvider):
    """
    In-process NVIDIA utilization through NVML (pynvml).

    NVML is initialized on the first read, retried on later reads while it
    keeps failing, and shut down by close().
    """

    name = "nvml"

    def __init__(self, nvml=pynvml) -> None:
        self._nvml = nvml
        self._handles: list | None = None
        self._closed = False
        self._lock = threading.Lock()

    def _ensure_handles(self) -> list | None:
        if self._handles is not None:
            return self._handles
        try:
            self._nvml.nvmlInit()
        except self._nvml.NVMLError as exc:
            log.debug("NVML unavailable: %s", exc)
            return None
        try:
            count = self._nvml.nvmlDeviceGetCount()
            self._handles = [self._nvml.nvmlDeviceGetHandleByIndex(i) for i in range(count)]
        except self._nvml.NVMLError as exc:
            log.debug("NVML device enumeration failed: %s", exc)
            self._nvml.nvmlShutdown()
            return None
        return self._handles

    def read(self) -> int | None:
        with self._lock:
            if self._closed:
                return None
            handles = self._ensure_handles()
            if not handles:
                return None
            values: list[int] = []
            for handle in handles:
                try:
                    values.append(int(self._nvml.nvmlDeviceGetUtilizationRates(handle).gpu))
                except self._nvml.NVMLError as exc:
                    log.debug("NVML utilization query failed: %s", exc)
            # The busiest GPU represents the host
            return clamp_int(max(values), 0, 100) if values else None

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._handles is None:
                return
            self._handles = None
            try:
                self._nvml.nvmlShutdown()
            except self._nvml.NVMLError as exc:
                log.debug("NVML shutdown failed: %s", exc)


class HybridGpuUsageProvider(GpuUsageProvider):
    """
    Tries each source in priority order and returns the first success.

    The last source that answered is tried first on the next read and
    demoted when it fails. A source that fails is skipped for a cooldown
    period so a persistently broken probe is not respawned on every poll.
    """

    name = "hybrid"

    def __init__(
        self,
        sources: Sequence[GpuUsageProvider],
        cooldown_ms: int = 1500,
        clock_ms: Callable[[], int] = monotonic_ms,
    ) -> None:
        """
        Initialize the HybridGpuUsageProvider.

        Args:
            sources: Sources in priority order.
            cooldown_ms: How long a failed source is skipped.
            clock_ms: Millisecond clock used for cooldowns.
        """
        self._sources = list(sources)
        self._cooldown_ms = cooldown_ms
        self._clock_ms = clock_ms
        self._next_try_ms: dict[int, int] = {}
        self._active: int | None = None
        self._closed = False
        self._lock = threading.Lock()

    @property
    def sources(self) -> list[GpuUsageProvider]:
        return list(self._sources)

    @property
    def active(self) -> GpuUsageProvider | None:
        """The source that answered last, if it has not failed since."""
        active = self._active
        return None if active is None else self._sources[active]

    def read(self) -> int | None:
        if self._closed:
            return None

        now = self._clock_ms()
        active = self._active
        if active is not None:
            value = self._sources[active].read_gpu_usage_percent()
            if value >= 0:
                return value
            self._active = None
            self._next_try_ms[active] = now + self._cooldown_ms

        for i, source in enumerate(self._sources):
            if i == active or now < self._next_try_ms.get(i, 0):
                continue
            value = source.read_gpu_usage_percent()
            if value >= 0:
                self._next_try_ms.pop(i, None)
                self._active = i
                return value
            self._next_try_ms[i] = now + self._cooldown_ms
        return None

    def is_available(self) -> bool:
        if self._closed:
            return False
        return any(source.is_available() for source in self._sources)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._active = None
        for source in self._sources:
            try:
                source.close()
            except Exception:
                log.debug("Closing GPU source %s failed", source.name, exc_info=True)


def build_gpu_provider(
    gpus: Sequence[GpuDevice],
    probe: ProbeRunner,
    config: MonitorConfig,
    clock_ms: Callable[[], int] = monotonic_ms,
) -> HybridGpuUsageProvider:
    """
    Assemble the chain: NVML first on NVIDIA hosts, then the platform
    counter source, then nvidia-smi as the last NVIDIA fallback.
    """
    nvidia = any("nvidia" in f"{g.vendor} {g.name}".lower() for g in gpus)

    sources: list[GpuUsageProvider] = []
    if nvidia:
        sources.append(NvmlGpuUsageProvider())
    if is_windows():
        sources.append(PerfCounterGpuProvider(probe))
    else:
        sources.append(SysfsGpuProvider(pause_s=config.counter_pause_s))

    if nvidia:
        sources.append(VendorSmiGpuProvider(probe))

    return HybridGpuUsageProvider(sources, cooldown_ms=config.gpu_cooldown_ms, clock_ms=clock_ms)


class GpuStabilizer:
    """
    Turns noisy, occasionally failing GPU samples into a presentable value.

    - Throttle: at most one accepted update per min_update_ms.
    - Failure (raw < 0): hold the last stable value for fail_grace_ms after
      the last good sample, then report the unsupported sentinel.
    - Zero: ignore isolated zeros while a positive value is shown until
      zero_confirm consecutive zeros arrive.
    - Positive: stable += alpha * (raw - stable), rounded.
    """

    def __init__(
        self,
        min_update_ms: int = 2000,
        alpha: float = 0.30,
        zero_confirm: int = 4,
        unsupported: int = UNAVAILABLE,
        fail_grace_ms: int = 0,
    ) -> None:
        self.min_update_ms = max(250, min_update_ms)
        self.alpha = clamp_float(alpha, 0.08, 0.45)
        self.zero_confirm = max(1, zero_confirm)
        self.unsupported = unsupported
        # Never shorter than four accepted updates
        self.fail_grace_ms = max(1500, self.min_update_ms * 4, fail_grace_ms)

        self._stable = -1
        self._zero_streak = 0
        self._fail_streak = 0
        self._last_good_ms: int | None = None
        self._last_update_ms: int | None = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: StabilizerConfig) -> "GpuStabilizer":
        return cls(
            min_update_ms=config.min_update_ms,
            alpha=config.alpha,
            zero_confirm=config.zero_confirm,
            unsupported=config.unsupported,
            fail_grace_ms=config.fail_grace_ms,
        )

    @property
    def stable(self) -> int:
        return self._stable

    @property
    def fail_streak(self) -> int:
        return self._fail_streak

    @property
    def zero_streak(self) -> int:
        return self._zero_streak

    def _current(self) -> int:
        return self.unsupported if self._stable < 0 else self._stable

    def update(self, raw: int, now_ms: int) -> int:
        """Feed one raw sample taken at now_ms and return the stable value."""
        with self._lock:
            if self._last_update_ms is not None and now_ms - self._last_update_ms < self.min_update_ms:
                return self._current()
            self._last_update_ms = now_ms

            if raw < 0:
                self._fail_streak += 1
                if (
                    self._stable >= 0
                    and self._last_good_ms is not None
                    and now_ms - self._last_good_ms <= self.fail_grace_ms
                ):
                    return self._stable
                self._stable = self.unsupported
                return self._stable

            raw = clamp_int(raw, 0, 100)
            self._last_good_ms = now_ms
            self._fail_streak = 0

            if raw == 0:
                self._zero_streak += 1
                if self._stable > 0 and self._zero_streak < self.zero_confirm:
                    return self._stable
                self._stable = self._smooth(0)
                return self._stable

            self._zero_streak = 0
            self._stable = self._smooth(raw)
            return self._stable

    def _smooth(self, target: int) -> int:
        if self._stable < 0:
            return target
        return ema_step_int(self._stable, target, self.alpha)
