"""Per-disk activity and physical/logical capacity reconciliation."""

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

from hostpulse.models import DiskDevice, DiskType, FileStore, PhysicalDiskSnapshot
from hostpulse.util import clamp_percent, safe_text


@dataclass(slots=True, frozen=True)
class LogicalUsage:
    """Aggregate capacity across all mounted file systems."""

    total_bytes: int
    used_bytes: int


def aggregate_logical_usage(stores: Iterable[FileStore]) -> LogicalUsage:
    """Sum file-system capacity, skipping stores with no positive total."""
    total = 0
    used = 0
    for store in stores:
        if store.total_bytes <= 0:
            continue
        total += store.total_bytes
        used += max(0, store.total_bytes - store.free_bytes)
    return LogicalUsage(total_bytes=total, used_bytes=used)


def busy_percent(delta_transfer_ms: int, delta_wall_ms: int) -> float:
    """Share of wall time a disk spent on transfers; 0 for degenerate deltas."""
    if delta_wall_ms <= 0 or delta_transfer_ms < 0:
        return 0.0
    return clamp_percent(delta_transfer_ms * 100.0 / delta_wall_ms)


class DiskReconciler:
    """
    Turns cumulative transfer-time counters into smoothed busy percentages.

    Disk indexes are fixed at construction from enumeration order; all delta
    and EMA state is keyed by that index. Logical (file-system) usage is only
    attributed to a disk when exactly one physical disk exists, because the
    two enumerations share no common key.
    """

    def __init__(
        self,
        disks: Sequence[DiskDevice],
        read_transfer_ms: Callable[[str], int],
        alpha: float = 0.35,
    ) -> None:
        """
        Initialize the DiskReconciler.

        Args:
            disks: Physical disks in enumeration order.
            read_transfer_ms: Returns the cumulative transfer time of a disk.
            alpha: EMA factor for the activity percentage.
        """
        self._disks = list(disks)
        self._read_transfer_ms = read_transfer_ms
        self._alpha = alpha
        count = len(self._disks)
        self._prev_transfer = [0] * count
        self._prev_ts = [0] * count
        self._ema: list[float | None] = [None] * count

    @property
    def disks(self) -> list[DiskDevice]:
        """Get the enumerated disks."""
        return list(self._disks)

    def prime(self, now_ms: int) -> None:
        """Record baseline counters so the first delta covers a real interval."""
        for i, disk in enumerate(self._disks):
            self._prev_transfer[i] = max(0, self._read_transfer_ms(disk.name))
            self._prev_ts[i] = now_ms

    def sample(
        self,
        usage: LogicalUsage,
        now_ms: int,
        labels: dict[int, str] | None = None,
        warm: bool = True,
    ) -> list[PhysicalDiskSnapshot]:
        """
        Produce one snapshot per physical disk and advance the delta state.

        With warm=False only the baseline counters move: activity reads 0 and
        the EMA is left unseeded, so start-up noise never enters it.
        """
        labels = labels or {}
        single_physical = len(self._disks) == 1 and usage.total_bytes > 0
        snapshots: list[PhysicalDiskSnapshot] = []

        for i, disk in enumerate(self._disks):
            transfer = max(0, self._read_transfer_ms(disk.name))
            prev_ts = self._prev_ts[i]
            if prev_ts == 0:
                busy = 0.0
            else:
                busy = busy_percent(transfer - self._prev_transfer[i], now_ms - prev_ts)

            prev = self._ema[i]
            if not warm:
                ema = 0.0
            elif prev is None:
                ema = busy
                self._ema[i] = ema
            else:
                ema = prev + self._alpha * (busy - prev)
                self._ema[i] = ema

            # Stored unconditionally, even for degenerate deltas
            self._prev_transfer[i] = transfer
            self._prev_ts[i] = now_ms

            if single_physical:
                total = usage.total_bytes
                used = usage.used_bytes
                used_percent = clamp_percent(used * 100.0 / total)
                has_usage = True
            else:
                total = disk.size_bytes
                used = 0
                used_percent = 0.0
                has_usage = False

            snapshots.append(
                PhysicalDiskSnapshot(
                    index=i,
                    model=safe_text(disk.model, "Disk"),
                    type_label=labels.get(i, DiskType.UNKNOWN.value),
                    size_bytes=disk.size_bytes,
                    used_bytes=used,
                    total_bytes=total,
                    used_percent=used_percent,
                    has_usage=has_usage,
                    active_percent=clamp_percent(ema),
                )
            )

        return snapshots
