"""Tests for GPU sources, the hybrid chain and the stabilizer."""

import pytest

from fakes import FakeClock, FakeGpuProvider, FakeNvml, FakeProbe

import hostpulse.gpu as gpu_module
from hostpulse.config import MonitorConfig, StabilizerConfig
from hostpulse.gpu import (
    UNAVAILABLE,
    GpuStabilizer,
    HybridGpuUsageProvider,
    NvmlGpuUsageProvider,
    PerfCounterGpuProvider,
    SysfsGpuProvider,
    VendorSmiGpuProvider,
    build_gpu_provider,
    parse_number,
)
from hostpulse.models import GpuDevice


def test_parse_number():
    """Test counter values parse with either decimal separator."""
    assert parse_number("12.5") == 12.5
    assert parse_number(" 12,5 ") == 12.5
    assert parse_number("N/A") is None
    assert parse_number("") is None
    assert parse_number("Timestamp") is None
    assert parse_number("nan") is None


class TestPerfCounterGpuProvider:
    """Tests for the Windows performance counter source."""

    def test_averages_per_sample_maxima(self, monkeypatch):
        """Test the two per-sample maxima are averaged."""
        monkeypatch.setattr(gpu_module, "is_windows", lambda: True)
        probe = FakeProbe(powershell_outputs={"GPU Engine": "30.0\r\n50.0\r\n"})
        provider = PerfCounterGpuProvider(probe)

        assert provider.read_gpu_usage_percent() == 40

    def test_query_excludes_total_instances(self):
        """Test the aggregate _Total instance is filtered out of the query."""
        assert "-notlike '*_total*'" in gpu_module.GPU_COUNTER_PS
        assert "-MaxSamples 2" in gpu_module.GPU_COUNTER_PS

    def test_non_numeric_output_fails(self, monkeypatch):
        """Test output without numbers yields the sentinel."""
        monkeypatch.setattr(gpu_module, "is_windows", lambda: True)
        probe = FakeProbe(powershell_outputs={"GPU Engine": "Get-Counter : error\n"})
        provider = PerfCounterGpuProvider(probe)

        assert provider.read_gpu_usage_percent() == UNAVAILABLE

    def test_off_windows_is_unavailable(self, monkeypatch):
        """Test nothing is spawned off Windows."""
        monkeypatch.setattr(gpu_module, "is_windows", lambda: False)
        probe = FakeProbe()
        provider = PerfCounterGpuProvider(probe)

        assert provider.read_gpu_usage_percent() == UNAVAILABLE
        assert probe.calls == []
        assert not provider.is_available()


class TestSysfsGpuProvider:
    """Tests for the Linux DRM busy-percent source."""

    def _card(self, root, name, value):
        device = root / name / "device"
        device.mkdir(parents=True)
        (device / "gpu_busy_percent").write_text(value)

    def test_reads_busiest_card(self, tmp_path):
        """Test the maximum across cards is reported."""
        self._card(tmp_path, "card0", "12\n")
        self._card(tmp_path, "card1", "64\n")
        provider = SysfsGpuProvider(root=tmp_path, pause_s=0.0)

        assert provider.read_gpu_usage_percent() == 64
        assert provider.is_available()

    def test_no_cards_is_unavailable(self, tmp_path):
        """Test a host without busy files reports the sentinel."""
        provider = SysfsGpuProvider(root=tmp_path, pause_s=0.0)

        assert provider.read_gpu_usage_percent() == UNAVAILABLE
        assert not provider.is_available()

    def test_garbled_file_is_skipped(self, tmp_path):
        """Test unreadable values are skipped, not fatal."""
        self._card(tmp_path, "card0", "garbage")
        self._card(tmp_path, "card1", "7")
        provider = SysfsGpuProvider(root=tmp_path, pause_s=0.0)

        assert provider.read_gpu_usage_percent() == 7


class TestVendorSmiGpuProvider:
    """Tests for the nvidia-smi source."""

    def test_falls_through_install_locations(self):
        """Test each known location is tried until one answers."""
        probe = FakeProbe(outputs={"/opt/nvsmi": "37\n"})
        provider = VendorSmiGpuProvider(probe, executables=["nvidia-smi", "/opt/nvsmi"])

        assert provider.read_gpu_usage_percent() == 37
        assert [call[0] for call in probe.calls] == ["nvidia-smi", "/opt/nvsmi"]

    def test_multi_gpu_takes_maximum(self):
        """Test one line per GPU is reduced to the busiest one."""
        probe = FakeProbe(outputs={"nvidia-smi": "5\n81\n"})
        provider = VendorSmiGpuProvider(probe, executables=["nvidia-smi"])

        assert provider.read_gpu_usage_percent() == 81

    def test_all_locations_exhausted(self):
        """Test the sentinel is returned when no location works."""
        probe = FakeProbe(outputs={"nvidia-smi": "NVIDIA-SMI has failed\n"})
        provider = VendorSmiGpuProvider(probe, executables=["nvidia-smi", "/missing"])

        assert provider.read_gpu_usage_percent() == UNAVAILABLE


class TestNvmlGpuUsageProvider:
    """Tests for the NVML source."""

    def test_nothing_happens_until_first_read(self):
        """Test NVML is not initialized at construction."""
        nvml = FakeNvml([40])
        NvmlGpuUsageProvider(nvml)

        assert nvml.init_calls == 0

    def test_multi_gpu_takes_maximum(self):
        """Test the busiest device is reported."""
        provider = NvmlGpuUsageProvider(FakeNvml([15, 82, 40]))

        assert provider.read_gpu_usage_percent() == 82

    def test_initializes_once(self):
        """Test handles are reused across reads."""
        nvml = FakeNvml([30])
        provider = NvmlGpuUsageProvider(nvml)

        provider.read_gpu_usage_percent()
        provider.read_gpu_usage_percent()

        assert nvml.init_calls == 1

    def test_missing_library_is_unavailable(self):
        """Test a failing nvmlInit maps to the sentinel and is retried later."""
        nvml = FakeNvml([30], init_fails=True)
        provider = NvmlGpuUsageProvider(nvml)

        assert provider.read_gpu_usage_percent() == UNAVAILABLE
        nvml.init_fails = False
        assert provider.read_gpu_usage_percent() == 30

    def test_lost_device_is_skipped(self):
        """Test a device whose query fails does not hide the others."""
        provider = NvmlGpuUsageProvider(FakeNvml([-1, 55]))

        assert provider.read_gpu_usage_percent() == 55

    def test_no_devices_is_unavailable(self):
        """Test a host without NVIDIA devices reports the sentinel."""
        provider = NvmlGpuUsageProvider(FakeNvml([]))

        assert provider.read_gpu_usage_percent() == UNAVAILABLE

    def test_close_shuts_down_once(self):
        """Test close() releases NVML once and stops reads."""
        nvml = FakeNvml([30])
        provider = NvmlGpuUsageProvider(nvml)
        provider.read_gpu_usage_percent()

        provider.close()
        provider.close()

        assert nvml.shutdown_calls == 1
        assert provider.read_gpu_usage_percent() == UNAVAILABLE

    def test_close_before_read_skips_shutdown(self):
        """Test NVML is not shut down when it was never initialized."""
        nvml = FakeNvml([30])
        NvmlGpuUsageProvider(nvml).close()

        assert nvml.shutdown_calls == 0


class TestHybridGpuUsageProvider:
    """Tests for the fallback chain."""

    def test_first_success_wins(self):
        """Test the primary source is used when it works."""
        primary = FakeGpuProvider(default=25)
        fallback = FakeGpuProvider(default=70)
        hybrid = HybridGpuUsageProvider([primary, fallback], clock_ms=FakeClock())

        assert hybrid.read_gpu_usage_percent() == 25
        assert fallback.reads == 0

    def test_falls_back_when_primary_fails(self):
        """Test the fallback answers when the primary fails."""
        primary = FakeGpuProvider(default=-1)
        fallback = FakeGpuProvider(default=70)
        hybrid = HybridGpuUsageProvider([primary, fallback], clock_ms=FakeClock())

        assert hybrid.read_gpu_usage_percent() == 70

    def test_all_fail_returns_sentinel(self):
        """Test the sentinel is returned when every source fails."""
        hybrid = HybridGpuUsageProvider(
            [FakeGpuProvider(default=-1), FakeGpuProvider(default=-1)], clock_ms=FakeClock()
        )

        assert hybrid.read_gpu_usage_percent() == UNAVAILABLE

    def test_failed_source_cools_down(self):
        """Test a failed source is skipped until its cooldown expires."""
        clock = FakeClock()
        primary = FakeGpuProvider(default=-1)
        fallback = FakeGpuProvider(default=-1)
        hybrid = HybridGpuUsageProvider([primary, fallback], cooldown_ms=1500, clock_ms=clock)

        hybrid.read_gpu_usage_percent()
        clock.advance(200)
        hybrid.read_gpu_usage_percent()
        assert primary.reads == 1
        assert fallback.reads == 1

        clock.advance(1500)
        hybrid.read_gpu_usage_percent()
        assert primary.reads == 2

    def test_last_winner_is_tried_first(self):
        """Test the source that answered last skips the failing ones."""
        clock = FakeClock()
        primary = FakeGpuProvider(default=-1)
        fallback = FakeGpuProvider(default=70)
        hybrid = HybridGpuUsageProvider([primary, fallback], cooldown_ms=1500, clock_ms=clock)

        assert hybrid.read_gpu_usage_percent() == 70
        assert hybrid.active is fallback

        clock.advance(5000)
        assert hybrid.read_gpu_usage_percent() == 70
        assert primary.reads == 1

    def test_failed_winner_is_demoted(self):
        """Test a winner that fails is dropped and the chain is walked again."""
        clock = FakeClock()
        primary = FakeGpuProvider(values=[-1, 40])
        fallback = FakeGpuProvider(values=[70], default=-1)
        hybrid = HybridGpuUsageProvider([primary, fallback], cooldown_ms=1500, clock_ms=clock)

        assert hybrid.read_gpu_usage_percent() == 70

        clock.advance(2000)
        assert hybrid.read_gpu_usage_percent() == 40
        assert hybrid.active is primary
        assert fallback.reads == 2

    def test_raising_source_is_absorbed(self):
        """Test an exception inside a source counts as a failure."""

        class Broken(FakeGpuProvider):
            def read(self):
                raise RuntimeError("driver went away")

        hybrid = HybridGpuUsageProvider(
            [Broken(), FakeGpuProvider(default=12)], clock_ms=FakeClock()
        )

        assert hybrid.read_gpu_usage_percent() == 12

    def test_close_closes_sources(self):
        """Test closing the chain closes every source and stops reads."""
        source = FakeGpuProvider(default=50)
        hybrid = HybridGpuUsageProvider([source], clock_ms=FakeClock())

        hybrid.close()
        hybrid.close()

        assert source.closed
        assert hybrid.read_gpu_usage_percent() == UNAVAILABLE
        assert not hybrid.is_available()


class TestBuildGpuProvider:
    """Tests for assembling the chain from the enumerated GPUs."""

    def test_nvidia_gets_nvml_and_vendor_tool(self, monkeypatch):
        """Test NVIDIA hosts try NVML first and nvidia-smi last."""
        monkeypatch.setattr(gpu_module, "is_windows", lambda: True)
        gpus = [GpuDevice(vendor="NVIDIA", name="NVIDIA GeForce RTX 3070")]

        hybrid = build_gpu_provider(gpus, FakeProbe(), MonitorConfig())
        kinds = [type(s) for s in hybrid.sources]

        assert kinds == [NvmlGpuUsageProvider, PerfCounterGpuProvider, VendorSmiGpuProvider]

    def test_nvidia_on_linux(self, monkeypatch):
        """Test the sysfs source sits between NVML and nvidia-smi off Windows."""
        monkeypatch.setattr(gpu_module, "is_windows", lambda: False)
        gpus = [GpuDevice(vendor="NVIDIA Corporation", name="GA104")]

        hybrid = build_gpu_provider(gpus, FakeProbe(), MonitorConfig())
        kinds = [type(s) for s in hybrid.sources]

        assert kinds == [NvmlGpuUsageProvider, SysfsGpuProvider, VendorSmiGpuProvider]

    def test_other_vendor_has_no_vendor_tool(self, monkeypatch):
        """Test non-NVIDIA hosts only use platform counters."""
        monkeypatch.setattr(gpu_module, "is_windows", lambda: False)
        gpus = [GpuDevice(vendor="AMD", name="Radeon RX 6800")]

        hybrid = build_gpu_provider(gpus, FakeProbe(), MonitorConfig())

        assert [type(s) for s in hybrid.sources] == [SysfsGpuProvider]


class TestGpuStabilizer:
    """Tests for GpuStabilizer."""

    def test_constructor_clamps_tuning(self):
        """Test out-of-range tuning is clamped."""
        s = GpuStabilizer(min_update_ms=10, alpha=0.9, zero_confirm=0)

        assert s.min_update_ms == 250
        assert s.alpha == 0.45
        assert s.zero_confirm == 1
        assert s.fail_grace_ms == 1500

    def test_fail_grace_scales_with_interval(self):
        """Test the grace window is at least four update intervals."""
        s = GpuStabilizer(min_update_ms=2000)
        assert s.fail_grace_ms == 8000

    def test_fail_grace_is_configurable(self):
        """Test a longer grace window is kept as given."""
        s = GpuStabilizer(min_update_ms=250, fail_grace_ms=10_000)
        assert s.fail_grace_ms == 10_000

    def test_short_fail_grace_is_raised(self):
        """Test a grace window below four update intervals is raised."""
        s = GpuStabilizer(min_update_ms=2000, fail_grace_ms=100)
        assert s.fail_grace_ms == 8000

    def test_configured_grace_holds_value_longer(self):
        """Test a failure past the default window is still held."""
        s = GpuStabilizer(min_update_ms=250, fail_grace_ms=5000)
        s.update(60, now_ms=0)

        assert s.update(-1, now_ms=4000) == 60
        assert s.update(-1, now_ms=5500) == UNAVAILABLE

    def test_from_config(self):
        """Test the stabilizer is built from its config section."""
        s = GpuStabilizer.from_config(
            StabilizerConfig(min_update_ms=500, alpha=0.2, zero_confirm=3, fail_grace_ms=12_000)
        )

        assert s.min_update_ms == 500
        assert s.alpha == 0.2
        assert s.zero_confirm == 3
        assert s.fail_grace_ms == 12_000

    def test_no_data_is_unsupported(self):
        """Test failures without any good sample report the sentinel."""
        s = GpuStabilizer(min_update_ms=250)
        assert s.update(-1, 1000) == -1

    def test_first_sample_seeds_value(self):
        """Test the first good sample is taken as-is."""
        s = GpuStabilizer(min_update_ms=250)
        assert s.update(40, 1000) == 40

    def test_throttle_returns_previous_value(self):
        """Test updates inside min_update_ms are ignored."""
        s = GpuStabilizer(min_update_ms=1000)
        s.update(40, 1000)

        assert s.update(90, 1500) == 40
        assert s.update(-1, 1900) == 40

    def test_throttle_before_any_value_is_unsupported(self):
        """Test a throttled call before any good sample returns the sentinel."""
        s = GpuStabilizer(min_update_ms=1000)
        s.update(-1, 1000)
        assert s.update(50, 1200) == -1

    def test_failure_inside_grace_holds_value(self):
        """Test failures within fail_grace_ms keep returning the good value."""
        s = GpuStabilizer(min_update_ms=250, alpha=0.3, zero_confirm=2)
        good = s.update(40, 1000)

        for t in range(1250, 2501, 250):
            assert s.update(-1, t) == good
        assert s.fail_streak == 6

    def test_failure_past_grace_is_unsupported(self):
        """Test the sentinel replaces the value once the grace window ends."""
        s = GpuStabilizer(min_update_ms=250)
        s.update(40, 1000)
        s.update(-1, 1250)

        assert s.update(-1, 2750) == -1
        assert s.stable == -1

    def test_isolated_zero_is_suppressed(self):
        """Test a single zero among 40s does not drop the value."""
        s = GpuStabilizer(min_update_ms=250, alpha=0.3, zero_confirm=2)
        outputs = [
            s.update(40, 1000),
            s.update(40, 1250),
            s.update(0, 1500),
            s.update(40, 1750),
            s.update(40, 2000),
        ]

        assert outputs[2] == 40
        assert all(abs(v - 40) <= 2 for v in outputs)

    def test_confirmed_zero_decays(self):
        """Test consecutive zeros past zero_confirm smooth toward 0."""
        s = GpuStabilizer(min_update_ms=250, alpha=0.3, zero_confirm=2)
        s.update(40, 1000)

        assert s.update(0, 1250) == 40
        assert s.update(0, 1500) == 28
        t = 1500
        value = 28
        for _ in range(40):
            t += 250
            value = s.update(0, t)
        assert value == 0

    def test_zero_from_idle_is_reported(self):
        """Test a genuinely idle GPU reads 0 rather than the sentinel."""
        s = GpuStabilizer(min_update_ms=250, zero_confirm=4)
        assert s.update(0, 1000) == 0

    def test_positive_samples_smooth(self):
        """Test positive samples move the value by alpha of the gap."""
        s = GpuStabilizer(min_update_ms=250, alpha=0.3)
        s.update(20, 1000)
        assert s.update(80, 1250) == 38

    def test_raw_values_are_clamped(self):
        """Test raw readings above 100 are clamped."""
        s = GpuStabilizer(min_update_ms=250)
        assert s.update(250, 1000) == 100

    @pytest.mark.parametrize("raw", [10, 55, 100])
    def test_recovery_after_unsupported(self, raw):
        """Test a good sample after the sentinel restarts from that sample."""
        s = GpuStabilizer(min_update_ms=250)
        s.update(-1, 1000)
        assert s.update(raw, 1250) == raw
