from __future__ import annotations

import math

import pytest
from scipy import stats

from trialstream.audit import (
    longest_run_test,
    monobit_test,
    run_audit,
    runs_test,
    validate_randomness,
)


def _bits(text: str) -> list[int]:
    return [int(char) for char in text]


def test_frequency_test_reference_value():
    result = monobit_test(_bits("1011010101"))
    assert result.statistic == pytest.approx(2 / math.sqrt(10))
    assert result.p_value == pytest.approx(0.527089, abs=1e-6)
    assert result.passed


def test_runs_test_reference_value():
    result = runs_test(_bits("1001101011"))
    assert result.statistic == 7.0
    assert result.p_value == pytest.approx(0.147232, abs=1e-6)
    assert result.passed


def test_runs_test_requires_balanced_frequency():
    result = runs_test([1] * 100)
    assert not result.passed
    assert result.p_value == 0.0
    assert result.note == "frequency prerequisite failed"


def test_alternating_bits_fail_the_runs_test():
    assert monobit_test([1, 0] * 64).passed
    assert not runs_test([1, 0] * 64).passed


def test_longest_run_needs_128_bits():
    assert not longest_run_test([1, 0] * 60).passed
    assert longest_run_test([1, 0] * 60).p_value is None
    assert not longest_run_test([0] * 128).passed


def test_longest_run_chi_squared_on_eight_bit_blocks():
    result = longest_run_test([1, 1, 0, 0] * 32)
    assert result.statistic == pytest.approx(27.573, abs=1e-3)
    assert result.p_value == pytest.approx(float(stats.chi2.sf(result.statistic, 3)))
    assert not result.passed


def test_run_audit_passes_only_when_every_test_passes():
    audit = run_audit([1, 1, 0, 0] * 250)
    assert audit["bit_length"] == 1000
    assert audit["tests"]["frequency"]["passed"]
    assert audit["tests"]["runs"]["passed"]
    assert not audit["tests"]["longest_run"]["passed"]
    assert audit["all_pass"] is False


def test_quick_screen():
    screen = validate_randomness([1, 1, 0, 0] * 250)
    assert screen["is_random"]
    assert screen["max_run"] == 2
    assert screen["proportion_z"] == 0.0

    streaky = validate_randomness([1] * 40 + [0] * 40)
    assert not streaky["is_random"]
    assert not streaky["max_run_pass"]

    assert validate_randomness([1])["reason"] == "too short"
