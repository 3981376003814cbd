"""Thin adapter over OS hardware and software inventory (psutil)."""

import logging
import sys
from pathlib import Path

import psutil

from hostpulse.models import DiskDevice, FileStore, GpuDevice
from hostpulse.probe import ProbeRunner, is_windows
from hostpulse.util import safe_text

log = logging.getLogger(__name__)

SYS_BLOCK = Path("/sys/block")

# Block devices that never correspond to a physical medium
VIRTUAL_DISK_PREFIXES = ("loop", "ram", "zram", "dm-", "md", "sr", "fd", "nbd")

WIN_DISK_DRIVES_PS = (
    "Get-CimInstance Win32_DiskDrive | "
    'ForEach-Object { "$($_.Index)|$($_.Model)|$($_.Size)" }'
)

WIN_VIDEO_CONTROLLERS_PS = (
    "Get-CimInstance Win32_VideoController | "
    'ForEach-Object { "$($_.AdapterCompatibility)|$($_.Name)" }'
)

GPU_VENDORS = ("NVIDIA", "AMD", "Intel", "Advanced Micro Devices", "Apple")


class MetricSource:
    """
    Stateless queries against the operating system.

    All methods return plain values and absorb OS errors; the filters that
    consume them own every piece of state.
    """

    def __init__(self, probe: ProbeRunner | None = None) -> None:
        """
        Initialize the MetricSource.

        Args:
            probe: Runner for the few inventories psutil cannot provide.
        """
        self._probe = probe or ProbeRunner()
        # Initialize CPU percent (first call returns 0.0)
        psutil.cpu_percent(interval=None)

    @property
    def probe(self) -> ProbeRunner:
        """Get the probe runner used for external inventories."""
        return self._probe

    def read_cpu_percent(self) -> float:
        """System-wide CPU load since the previous call, or -1.0 if unavailable."""
        try:
            return float(psutil.cpu_percent(interval=None))
        except (psutil.Error, OSError):
            return -1.0

    def read_memory(self) -> tuple[int, int]:
        """Return (total, available) physical memory in bytes."""
        mem = psutil.virtual_memory()
        return int(mem.total), int(mem.available)

    def list_physical_disks(self) -> list[DiskDevice]:
        """Enumerate physical disks in a stable order."""
        try:
            counters = psutil.disk_io_counters(perdisk=True) or {}
        except (psutil.Error, OSError, RuntimeError):
            counters = {}

        if sys.platform.startswith("linux"):
            return self._list_linux_disks(counters)
        if is_windows():
            return self._list_windows_disks(counters)
        return [DiskDevice(name=name, model="Disk", size_bytes=0) for name in sorted(counters)]

    def _list_linux_disks(self, counters: dict) -> list[DiskDevice]:
        """Whole-disk block devices under /sys/block that have I/O counters."""
        disks: list[DiskDevice] = []
        try:
            names = sorted(entry.name for entry in SYS_BLOCK.iterdir())
        except OSError:
            return disks

        for name in names:
            if name.startswith(VIRTUAL_DISK_PREFIXES) or name not in counters:
                continue
            model = _read_sysfs(SYS_BLOCK / name / "device" / "model")
            sectors = _read_sysfs(SYS_BLOCK / name / "size")
            try:
                size = int(sectors) * 512
            except ValueError:
                size = 0
            disks.append(DiskDevice(name=name, model=safe_text(model, "Disk"), size_bytes=size))
        return disks

    def _list_windows_disks(self, counters: dict) -> list[DiskDevice]:
        """PhysicalDriveN counters, with model and size from Win32_DiskDrive."""
        details: dict[str, tuple[str, int]] = {}
        output = self._probe.powershell(WIN_DISK_DRIVES_PS)
        for line in (output or "").splitlines():
            parts = line.strip().split("|")
            if len(parts) < 3:
                continue
            try:
                details[f"PhysicalDrive{int(parts[0])}"] = (parts[1].strip(), int(parts[2] or 0))
            except ValueError:
                log.debug("Skipping disk drive line: %r", line)
                continue

        def drive_number(name: str) -> int:
            digits = "".join(ch for ch in name if ch.isdigit())
            return int(digits) if digits else 0

        disks: list[DiskDevice] = []
        for name in sorted(counters, key=drive_number):
            model, size = details.get(name, ("", 0))
            disks.append(DiskDevice(name=name, model=safe_text(model, "Disk"), size_bytes=size))
        return disks

    def read_disk_transfer_ms(self, name: str) -> int:
        """
        Cumulative milliseconds the disk spent servicing transfers.

        Uses busy_time where psutil provides it and read_time + write_time
        elsewhere. Returns 0 when the disk is no longer reported.
        """
        try:
            counters = psutil.disk_io_counters(perdisk=True) or {}
        except (psutil.Error, OSError, RuntimeError):
            return 0

        c = counters.get(name)
        if c is None:
            return 0
        busy = getattr(c, "busy_time", None)
        if busy is None:
            busy = c.read_time + c.write_time
        return max(0, int(busy))

    def list_file_stores(self) -> list[FileStore]:
        """Capacity of each mounted file system, one entry per device."""
        stores: list[FileStore] = []
        seen: set[str] = set()
        try:
            partitions = psutil.disk_partitions(all=False)
        except (psutil.Error, OSError):
            return stores

        for part in partitions:
            if part.device in seen:
                continue
            try:
                usage = psutil.disk_usage(part.mountpoint)
            except (PermissionError, OSError):
                # Unmounted media, empty card readers, restricted mounts
                continue
            seen.add(part.device)
            stores.append(FileStore(total_bytes=int(usage.total), free_bytes=int(usage.free)))
        return stores

    def list_gpus(self) -> list[GpuDevice]:
        """Enumerate display adapters; empty when nothing can be identified."""
        if is_windows():
            gpus = self._list_windows_gpus()
        else:
            gpus = self._list_lspci_gpus()
        if gpus:
            return gpus

        names = self._probe.run_lines(["nvidia-smi", "--query-gpu=name", "--format=csv,noheader"])
        return [GpuDevice(vendor="NVIDIA", name=name) for name in names]

    def _list_windows_gpus(self) -> list[GpuDevice]:
        output = self._probe.powershell(WIN_VIDEO_CONTROLLERS_PS)
        gpus: list[GpuDevice] = []
        for line in (output or "").splitlines():
            if "|" not in line:
                continue
            vendor, _, name = line.strip().partition("|")
            if vendor.strip() or name.strip():
                gpus.append(GpuDevice(vendor=vendor.strip(), name=name.strip()))
        return gpus

    def _list_lspci_gpus(self) -> list[GpuDevice]:
        gpus: list[GpuDevice] = []
        for line in self._probe.run_lines(["lspci"]):
            if "VGA compatible controller" not in line and "3D controller" not in line:
                continue
            description = line.split(": ", 1)[-1].strip()
            vendor = next((v for v in GPU_VENDORS if v.lower() in description.lower()), "")
            gpus.append(GpuDevice(vendor=vendor, name=description))
        return gpus


def _read_sysfs(path: Path) -> str:
    """Read a sysfs attribute, returning '' when it is missing."""
    try:
        return path.read_text(encoding="utf-8", errors="replace").strip()
    except OSError:
        return ""
