import dataclasses
import logging

import numpy as np
import pytest

from BodeAnalysis import (
    BodeAnalysisResult,
    CrossoverPoint,
    InvalidRangeError,
    NoRootInRangeError,
    SolverConfig,
    analyze,
    bode,
)

from responses import CountingResponse, reference_loop, third_order


def test_reference_loop_end_to_end() -> None:
    out = analyze(reference_loop, wmin=0.1, wmax=10, points=100, co=True, ra1=True)

    assert 0.1 < out.wco < 10
    assert 0.1 < out.w1 < 10
    assert np.interp(out.wco, out.omega, out.phase) == pytest.approx(-np.pi, abs=1e-8)
    assert out.RAco == pytest.approx(abs(reference_loop(1j * out.wco)))
    assert abs(reference_loop(1j * out.w1)) == pytest.approx(1.0, abs=1e-8)
    assert out.phi1 == pytest.approx(np.interp(out.w1, out.omega, out.phase))
    # Gain crossover comes before the phase crossover for this loop
    assert out.w1 < out.wco


def test_result_curves_are_sampled_and_unwrapped() -> None:
    out = analyze(reference_loop, points=100)

    H = reference_loop(1j * out.omega)
    assert out.omega.shape == out.magnitude.shape == out.phase.shape == (100,)
    assert np.allclose(out.magnitude, np.abs(H))
    assert np.all(np.abs(np.diff(out.phase)) <= np.pi)
    # The phase goes past -180 degrees without wrapping back
    assert out.phase_deg[-1] < -180
    assert np.allclose(out.phase_deg, np.degrees(out.phase))


def test_crossovers_not_requested_are_absent(counting_reference) -> None:
    out = analyze(counting_reference, points=40)

    assert out.phase_crossover is None
    assert out.gain_crossover is None
    assert out.wco is None and out.RAco is None
    assert out.w1 is None and out.phi1 is None
    assert counting_reference.calls == 40


def test_only_requested_crossover_is_computed() -> None:
    out = analyze(reference_loop, co=True)

    assert isinstance(out.phase_crossover, CrossoverPoint)
    assert out.gain_crossover is None


def test_defaults_match_bode_alias() -> None:
    a = analyze(third_order, co=True)
    b = bode(third_order, co=True)

    assert np.array_equal(a.omega, b.omega)
    assert a.omega[0] == pytest.approx(0.1)
    assert a.omega[-1] == pytest.approx(10.0)
    assert len(a.omega) == 100
    assert a.phase_crossover == b.phase_crossover


def test_missing_crossover_is_absent_and_logged(caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="BodeAnalysis"):
        out = analyze(lambda s: 100 / s, co=True, ra1=True)

    assert out.phase_crossover is None
    assert out.gain_crossover is None
    assert "No gain crossover" in caplog.text
    assert "No phase crossover" in caplog.text


def test_missing_crossover_raises_in_strict_mode() -> None:
    with pytest.raises(NoRootInRangeError) as excinfo:
        analyze(lambda s: 100 / s, ra1=True, strict=True)

    assert excinfo.value.kind == "gain"


def test_wider_window_finds_the_missing_crossover() -> None:
    with pytest.raises(NoRootInRangeError):
        analyze(lambda s: 100 / s, wmax=10, ra1=True, strict=True)

    out = analyze(lambda s: 100 / s, wmax=1000, ra1=True, strict=True)
    assert out.w1 == pytest.approx(100.0, rel=1e-9)
    assert out.phi1 == pytest.approx(-np.pi / 2)


def test_invalid_range_is_detected_before_sampling() -> None:
    response = CountingResponse(third_order)

    with pytest.raises(InvalidRangeError):
        analyze(response, wmin=1.0, wmax=0.1, co=True)

    with pytest.raises(InvalidRangeError):
        analyze(response, wmin=1.0, wmax=1.0 + 1e-13, points=1000, ra1=True)

    assert response.calls == 0


def test_concurrent_searches_match_sequential() -> None:
    sequential = analyze(reference_loop, co=True, ra1=True)
    concurrent = analyze(reference_loop, co=True, ra1=True, concurrent=True)

    assert concurrent.phase_crossover == sequential.phase_crossover
    assert concurrent.gain_crossover == sequential.gain_crossover


def test_concurrent_strict_propagates_missing_crossover() -> None:
    with pytest.raises(NoRootInRangeError):
        analyze(lambda s: 100 / s, co=True, ra1=True, strict=True, concurrent=True)


def test_config_controls_precision() -> None:
    coarse = analyze(reference_loop, ra1=True, config=SolverConfig(xtol=1e-2))
    fine = analyze(reference_loop, ra1=True, config=SolverConfig(xtol=1e-12))

    assert coarse.gain_crossover.tolerance > fine.gain_crossover.tolerance
    assert coarse.w1 == pytest.approx(fine.w1, abs=2e-2)


def test_result_is_immutable() -> None:
    out = analyze(reference_loop, co=True)

    with pytest.raises(dataclasses.FrozenInstanceError):
        out.phase_crossover = None
    with pytest.raises(ValueError):
        out.omega[0] = 1.0
    with pytest.raises(ValueError):
        out.phase[:] = 0.0


def test_result_copies_input_arrays() -> None:
    omega = np.array([1.0, 2.0])
    out = BodeAnalysisResult(omega, np.array([1.0, 0.5]), np.array([0.0, -1.0]))

    omega[0] = 5.0
    assert out.omega[0] == 1.0


def test_result_rejects_mismatched_curves() -> None:
    with pytest.raises(ValueError):
        BodeAnalysisResult(np.array([1.0, 2.0]), np.array([1.0]), np.array([0.0, 0.0]))
