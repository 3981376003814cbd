"""Sampling engine for hostpulse."""

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor

from hostpulse.classifier import DiskTypeCache, DiskTypeClassifier, default_inventories
from hostpulse.config import MonitorConfig
from hostpulse.disks import DiskReconciler, aggregate_logical_usage
from hostpulse.filters import CpuFilter, GpuSmoother
from hostpulse.gpu import GpuStabilizer, GpuUsageProvider, build_gpu_provider
from hostpulse.models import DiskDevice, GpuDevice, PhysicalDiskSnapshot, RamSnapshot
from hostpulse.probe import ProbeRunner
from hostpulse.sources import MetricSource
from hostpulse.util import clamp_percent, monotonic_ms

log = logging.getLogger(__name__)

Listener = Callable[[float, RamSnapshot, list[PhysicalDiskSnapshot], int], None]


class SystemMonitorService:
    """
    Telemetry engine that samples CPU, RAM, disks and GPU for a live display.

    A daemon scheduler thread ticks at loop_ms and samples RAM every tick,
    CPU and disks at their own slower cadences, then hands one consolidated
    update to the listener. A second daemon thread polls the GPU, because
    GPU probes may block for hundreds of milliseconds. Disk types are
    classified once on a worker thread.

    The listener runs on the scheduler thread; consumers marshal to their
    own UI thread. No failure inside the engine propagates to the caller.
    """

    def __init__(
        self,
        source: MetricSource | None = None,
        config: MonitorConfig | None = None,
        gpu_provider: GpuUsageProvider | None = None,
        classifier: DiskTypeClassifier | None = None,
        clock_ms: Callable[[], int] = monotonic_ms,
    ) -> None:
        """
        Initialize the SystemMonitorService.

        Args:
            source: OS query adapter. Defaults to the psutil-backed source.
            config: Cadences and tuning. Defaults to MonitorConfig().
            gpu_provider: GPU usage source chain. Defaults to the hybrid chain
                for the enumerated GPUs.
            classifier: Disk type classifier. Defaults to the platform
                inventories with a fresh label cache.
            clock_ms: Millisecond clock driving every cadence.
        """
        self._config = config or MonitorConfig()
        self._clock_ms = clock_ms
        self._source = source or MetricSource(ProbeRunner(self._config.probe_timeout_s))

        self._disks: list[DiskDevice] = self._enumerate(self._source.list_physical_disks, "disks")
        self._gpus: list[GpuDevice] = self._enumerate(self._source.list_gpus, "GPUs")

        self._disk_lock = threading.Lock()
        self._reconciler = DiskReconciler(
            self._disks, self._source.read_disk_transfer_ms, alpha=self._config.disk_alpha
        )
        self._reconciler.prime(self._clock_ms())

        self._classifier = classifier or DiskTypeClassifier(
            default_inventories(self._source.probe), DiskTypeCache()
        )
        self._gpu_provider = gpu_provider or build_gpu_provider(
            self._gpus, self._source.probe, self._config, clock_ms=self._clock_ms
        )

        self._cpu_filter = CpuFilter()
        self._gpu_stabilizer = GpuStabilizer.from_config(self._config.stabilizer)
        self._gpu_smoother = GpuSmoother(self._config.gpu_ema_alpha)

        self._listener: Listener | None = None
        # Replaced by every start(); each run's threads keep the event they started with
        self._stop_event = threading.Event()
        self._gpu_lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._gpu_thread: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._classification: Future | None = None

        self._started_ms = self._clock_ms()
        self._last_cpu_ms: int | None = None
        self._last_cpu_percent = 0.0
        self._last_disk_ms: int | None = None
        self._last_disks: list[PhysicalDiskSnapshot] = []
        self._last_gpu = self._gpu_stabilizer.unsupported

    @staticmethod
    def _enumerate(query: Callable[[], list], what: str) -> list:
        try:
            return list(query())
        except Exception:
            log.warning("Could not enumerate %s", what, exc_info=True)
            return []

    @property
    def config(self) -> MonitorConfig:
        """Get the engine configuration."""
        return self._config

    @property
    def disks(self) -> list[DiskDevice]:
        """Get the physical disks enumerated at construction."""
        return list(self._disks)

    @property
    def disk_types(self) -> DiskTypeCache:
        """Get the disk type labels published by the classifier."""
        return self._classifier.cache

    @property
    def classification(self) -> Future | None:
        """Get the pending or finished disk classification task."""
        return self._classification

    @property
    def is_running(self) -> bool:
        """Check if the scheduler thread is running."""
        return self._thread is not None and self._thread.is_alive()

    def set_listener(self, listener: Listener | None) -> None:
        """Register the callback receiving (cpu, ram, disks, gpu) each tick."""
        self._listener = listener

    def start(self) -> None:
        """Start sampling. Does nothing if already running."""
        if self.is_running:
            return

        stop_event = threading.Event()
        self._stop_event = stop_event
        self._started_ms = self._clock_ms()
        self._last_cpu_ms = None
        self._last_disk_ms = None

        if self._classification is None or self._classification.cancelled():
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="hostpulse-disk-detect")
            self._classification = self._executor.submit(self._classifier.run, self._disks)

        self._gpu_thread = threading.Thread(
            target=self._gpu_loop,
            args=(stop_event,),
            daemon=True,
            name="hostpulse-gpu",
        )
        self._gpu_thread.start()

        self._thread = threading.Thread(
            target=self._run_loop,
            args=(stop_event,),
            daemon=True,
            name="hostpulse-monitor",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop sampling. Safe to call repeatedly or before start().

        Args:
            timeout: How long to wait for each thread to stop (seconds).
        """
        self._stop_event.set()

        for thread in (self._gpu_thread, self._thread):
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=timeout)
                if thread.is_alive():
                    log.debug("%s still busy after %ss; it exits when its call returns", thread.name, timeout)
        self._gpu_thread = None
        self._thread = None

        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    def close(self) -> None:
        """Stop sampling and release the GPU sources."""
        self.stop()
        try:
            self._gpu_provider.close()
        except Exception:
            log.debug("Closing GPU provider failed", exc_info=True)

    def _run_loop(self, stop_event: threading.Event) -> None:
        """Fixed-rate scheduler loop running in the background thread."""
        interval = self._config.loop_ms / 1000.0
        deadline = time.monotonic()

        while not stop_event.is_set():
            try:
                self.sample_and_notify(stop_event=stop_event)
            except Exception:
                log.warning("Sampling tick failed", exc_info=True)

            deadline += interval
            delay = deadline - time.monotonic()
            if delay < 0:
                # Fell behind; resynchronize instead of bursting
                deadline = time.monotonic()
                delay = 0.0

            if stop_event.wait(timeout=delay):
                break

    def _gpu_loop(self, stop_event: threading.Event) -> None:
        """GPU polling loop; a stop request wakes it out of its sleep."""
        interval = self._config.gpu_ms / 1000.0

        while not stop_event.is_set():
            try:
                now = self._clock_ms()
                raw = self._gpu_provider.read_gpu_usage_percent()
                # Stopped while the read blocked: drop the stale sample
                if stop_event.is_set():
                    break
                self._publish_gpu(raw, now)
            except Exception:
                log.warning("GPU sample failed", exc_info=True)

            if stop_event.wait(timeout=interval):
                break

    def sample_gpu_once(self, now_ms: int | None = None) -> int:
        """Read, stabilize and smooth one GPU sample; return the display value."""
        now = self._clock_ms() if now_ms is None else now_ms
        return self._publish_gpu(self._gpu_provider.read_gpu_usage_percent(), now)

    def _publish_gpu(self, raw: int, now_ms: int) -> int:
        with self._gpu_lock:
            stable = self._gpu_stabilizer.update(raw, now_ms)
            if stable >= 0:
                self._last_gpu = self._gpu_smoother.update(stable)
            else:
                self._gpu_smoother.reset()
                self._last_gpu = self._gpu_stabilizer.unsupported
            return self._last_gpu

    def sample_and_notify(
        self, now_ms: int | None = None, stop_event: threading.Event | None = None
    ) -> None:
        """Run one scheduler tick and deliver the consolidated update."""
        with self._tick_lock:
            if stop_event is not None and stop_event.is_set():
                return
            self._tick(now_ms)

    def _tick(self, now_ms: int | None) -> None:
        listener = self._listener
        if listener is None:
            return

        now = self._clock_ms() if now_ms is None else now_ms

        if self._last_cpu_ms is None or now - self._last_cpu_ms >= self._config.cpu_ms:
            self._last_cpu_percent = self._cpu_filter.update(self._source.read_cpu_percent())
            self._last_cpu_ms = now

        ram = self.read_ram_once()

        if self._last_disk_ms is None or now - self._last_disk_ms >= self._config.disk_ms:
            warm = now - self._started_ms >= self._config.disk_warmup_ms
            self._last_disks = self._sample_disks(now, warm)
            self._last_disk_ms = now

        try:
            listener(self._last_cpu_percent, ram, list(self._last_disks), self._last_gpu)
        except Exception:
            log.warning("Listener raised", exc_info=True)

    def _sample_disks(self, now_ms: int, warm: bool = True) -> list[PhysicalDiskSnapshot]:
        try:
            usage = aggregate_logical_usage(self._source.list_file_stores())
        except Exception:
            log.debug("File store query failed", exc_info=True)
            usage = aggregate_logical_usage([])

        with self._disk_lock:
            return self._reconciler.sample(
                usage, now_ms, labels=self._classifier.cache.snapshot(), warm=warm
            )

    def read_ram_once(self) -> RamSnapshot:
        """Read physical memory usage now."""
        try:
            total, available = self._source.read_memory()
        except Exception:
            log.debug("Memory query failed", exc_info=True)
            return RamSnapshot(total_bytes=0, used_bytes=0, percent=0.0)

        used = max(0, total - available)
        percent = clamp_percent(used * 100.0 / total) if total > 0 else 0.0
        return RamSnapshot(total_bytes=total, used_bytes=used, percent=percent)

    def sample_disks_once(self) -> list[PhysicalDiskSnapshot]:
        """Sample every physical disk now, outside the scheduler cadence."""
        return self._sample_disks(self._clock_ms())

    def get_gpu_name(self) -> str:
        """Vendor and name of the primary GPU, or 'Unknown'."""
        if not self._gpus:
            return "Unknown"
        gpu = self._gpus[0]
        vendor = (gpu.vendor or "").strip()
        name = (gpu.name or "").strip()
        if vendor and name.lower().startswith(vendor.lower()):
            vendor = ""
        combined = f"{vendor} {name}".strip()
        return combined or "Unknown"

    def is_gpu_usage_supported(self) -> bool:
        """Whether the GPU currently yields usage values (not the sentinel)."""
        return self._last_gpu >= 0

    def last_gpu_percent(self) -> int:
        """Get the latest smoothed GPU value or the unsupported sentinel."""
        return self._last_gpu
