"""Tests for the CPU filter and the GPU smoothing stage."""

import random

from hostpulse.filters import CpuFilter, GpuSmoother


class TestCpuFilter:
    """Tests for CpuFilter."""

    def test_first_sample_is_emitted(self):
        """Test the first reading seeds both EMAs and is emitted as-is."""
        f = CpuFilter()
        assert f.update(42.0) == 42.0

    def test_output_stays_in_range(self):
        """Test output is within [0, 100] for arbitrary in-range input."""
        rng = random.Random(1234)
        f = CpuFilter()
        for _ in range(500):
            out = f.update(rng.uniform(0.0, 100.0))
            assert 0.0 <= out <= 100.0

    def test_out_of_range_input_is_clamped(self):
        """Test readings above 100 never push the output past 100."""
        f = CpuFilter()
        for _ in range(10):
            assert f.update(250.0) <= 100.0

    def test_constant_input_converges(self):
        """Test a constant 50 settles at 50 +/- 1 within 20 ticks."""
        f = CpuFilter()
        out = None
        for _ in range(20):
            out = f.update(50.0)
        assert abs(out - 50.0) <= 1.0

    def test_step_input_converges(self):
        """Test the output follows a step from idle to 50% load."""
        f = CpuFilter()
        for _ in range(10):
            f.update(0.0)
        out = None
        for _ in range(40):
            out = f.update(50.0)
        assert abs(out - 50.0) <= 1.0

    def test_unavailable_holds_last_value(self):
        """Test a negative reading returns the last value without decay."""
        f = CpuFilter()
        first = f.update(60.0)
        for _ in range(5):
            assert f.update(-1.0) == first

    def test_deadband_suppresses_small_moves(self):
        """Test sub-threshold movement re-emits the previous value."""
        f = CpuFilter()
        f.update(30.0)
        # Fused value moves by well under 0.3
        out = f.update(30.2)
        assert out == 30.0
        assert f.last_emitted == 30.0

    def test_large_moves_pass_deadband(self):
        """Test a real change is emitted."""
        f = CpuFilter()
        f.update(10.0)
        f.update(80.0)
        out = f.update(80.0)
        assert out > 10.0

    def test_median_rejects_single_spike(self):
        """Test one spike inside a steady window does not move the output."""
        f = CpuFilter()
        for _ in range(5):
            f.update(20.0)
        assert f.update(100.0) == 20.0

    def test_oscillating_input_is_damped(self):
        """Test alternating extremes produce much smaller output changes."""
        f = CpuFilter()
        pattern = [10.0, 90.0, 12.0, 88.0, 11.0]
        outputs = [f.update(v) for v in pattern * 6]

        deltas = [abs(b - a) for a, b in zip(outputs, outputs[1:])]
        assert max(deltas) < 76.0
        # Once the window is full the median is stable
        assert max(deltas[5:]) < 10.0


class TestGpuSmoother:
    """Tests for GpuSmoother."""

    def test_first_value_passes_through(self):
        """Test the first sample seeds the EMA."""
        s = GpuSmoother()
        assert s.update(40) == 40
        assert s.value == 40

    def test_two_samples_use_mean(self):
        """Test a two-sample window uses the mean instead of a median."""
        s = GpuSmoother(alpha=1.0)
        s.update(20)
        assert s.update(40) == 30

    def test_median_of_three_rejects_outlier(self):
        """Test a single outlier inside three samples is discarded."""
        s = GpuSmoother(alpha=1.0)
        s.update(30)
        s.update(30)
        assert s.update(100) == 30

    def test_converges_to_target(self):
        """Test steady input converges exactly, without stalling short of it."""
        s = GpuSmoother(alpha=0.30)
        s.update(0)
        out = None
        for _ in range(40):
            out = s.update(40)
        assert out == 40

    def test_reset_forgets_history(self):
        """Test reset clears the EMA and window."""
        s = GpuSmoother()
        s.update(50)
        s.reset()
        assert s.value is None
        assert s.update(10) == 10

    def test_values_are_clamped(self):
        """Test values outside 0..100 are clamped."""
        s = GpuSmoother()
        assert s.update(150) == 100
