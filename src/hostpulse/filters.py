"""Noise filters that turn raw load readings into display-ready values."""

from collections import deque

from hostpulse.util import clamp_int, clamp_percent, ema_step_int, median


class CpuFilter:
    """
    Median-of-5 pre-filter feeding a dual-rate EMA with a deadband.

    The fast and slow EMAs are fused 65/35; moves smaller than DEADBAND
    re-emit the previous value.
    """

    WINDOW = 5
    ALPHA_FAST = 0.45
    ALPHA_SLOW = 0.12
    FAST_WEIGHT = 0.65
    DEADBAND = 0.3

    def __init__(self) -> None:
        """Initialize the CpuFilter."""
        self._window: deque[float] = deque(maxlen=self.WINDOW)
        self._ema_fast = 0.0
        self._ema_slow = 0.0
        self._seeded = False
        self._last_emitted = 0.0

    @property
    def last_emitted(self) -> float:
        """Get the most recently emitted value."""
        return self._last_emitted

    def update(self, raw_percent: float) -> float:
        """
        Feed one raw load reading and return the stable percentage.

        A negative reading means the measurement was unavailable; the last
        emitted value is returned unchanged.
        """
        if raw_percent < 0:
            return self._last_emitted

        self._window.append(clamp_percent(raw_percent))
        med = median(self._window)

        if not self._seeded:
            self._ema_fast = med
            self._ema_slow = med
            self._seeded = True
        else:
            self._ema_fast += self.ALPHA_FAST * (med - self._ema_fast)
            self._ema_slow += self.ALPHA_SLOW * (med - self._ema_slow)

        fused = self.FAST_WEIGHT * self._ema_fast + (1 - self.FAST_WEIGHT) * self._ema_slow

        if abs(fused - self._last_emitted) < self.DEADBAND:
            return self._last_emitted

        self._last_emitted = clamp_percent(fused)
        return self._last_emitted


class GpuSmoother:
    """
    Second smoothing stage for stabilized GPU values: median-of-3 then EMA.

    Vendor tools report utilization in coarse steps; this stage rounds off
    the resulting staircase before the value reaches the display.
    """

    WINDOW = 3

    def __init__(self, alpha: float = 0.30) -> None:
        self._alpha = alpha
        self._window: deque[int] = deque(maxlen=self.WINDOW)
        self._ema: int | None = None

    @property
    def value(self) -> int | None:
        """Get the current smoothed value, or None before the first sample."""
        return self._ema

    def update(self, stable: int) -> int:
        """Push one stabilized value and return the smoothed one."""
        self._window.append(clamp_int(stable, 0, 100))

        if len(self._window) == 2:
            # Two samples: mean, not the upper element
            med = (self._window[0] + self._window[1]) // 2
        else:
            med = int(median(self._window))

        if self._ema is None:
            self._ema = med
        else:
            self._ema = clamp_int(ema_step_int(self._ema, med, self._alpha), 0, 100)
        return self._ema

    def reset(self) -> None:
        """Forget all history."""
        self._window.clear()
        self._ema = None
