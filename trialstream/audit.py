"""Randomness audit of delivered bits (NIST SP 800-22 subset plus a quick screen).

Example:
    >>> from trialstream.audit import monobit_test
    >>> monobit_test([1, 0] * 64).passed
    True
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from scipy import stats as sp_stats

from .stats import binomial_z, count_runs, longest_run, runs_z

NIST_ALPHA = 0.01

# (min length, block size M, category upper bounds, expected category probabilities)
_LONGEST_RUN_TABLE = (
    (750_000, 10_000, (10, 11, 12, 13, 14, 15), (0.0882, 0.2092, 0.2483, 0.1933, 0.1208, 0.0675, 0.0727)),
    (6_272, 128, (4, 5, 6, 7, 8), (0.1174, 0.2430, 0.2493, 0.1752, 0.1027, 0.1124)),
    (128, 8, (1, 2, 3), (0.2148, 0.3672, 0.2305, 0.1875)),
)


@dataclass(frozen=True)
class AuditResult:
    name: str
    statistic: Optional[float]
    p_value: Optional[float]
    passed: bool
    note: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "statistic": self.statistic,
            "p_value": self.p_value,
            "passed": self.passed,
            "note": self.note,
        }


def monobit_test(bits: Sequence[int]) -> AuditResult:
    """Frequency (monobit) test."""
    n = len(bits)
    if n == 0:
        return AuditResult("frequency", None, None, False, "empty sequence")
    signed_sum = float(np.sum(np.where(np.asarray(bits, dtype=np.int8) > 0, 1, -1)))
    s_obs = abs(signed_sum) / math.sqrt(n)
    p_value = math.erfc(s_obs / math.sqrt(2.0))
    return AuditResult("frequency", s_obs, p_value, p_value >= NIST_ALPHA)


def runs_test(bits: Sequence[int]) -> AuditResult:
    """Runs test; fails outright when the frequency prerequisite is violated."""
    n = len(bits)
    if n == 0:
        return AuditResult("runs", None, None, False, "empty sequence")
    pi = float(np.count_nonzero(np.asarray(bits, dtype=np.int8))) / n
    tau = 2.0 / math.sqrt(n)
    if abs(pi - 0.5) >= tau:
        return AuditResult("runs", None, 0.0, False, "frequency prerequisite failed")
    observed = count_runs(bits)
    numerator = abs(observed - 2.0 * n * pi * (1.0 - pi))
    denominator = 2.0 * math.sqrt(2.0 * n) * pi * (1.0 - pi)
    p_value = math.erfc(numerator / denominator)
    return AuditResult("runs", float(observed), p_value, p_value >= NIST_ALPHA)


def longest_run_test(bits: Sequence[int]) -> AuditResult:
    """Longest run of ones in M-bit blocks; needs at least 128 bits."""
    n = len(bits)
    for min_length, block_size, bounds, expected in _LONGEST_RUN_TABLE:
        if n >= min_length:
            break
    else:
        return AuditResult("longest_run", None, None, False, "sequence too short (need >= 128 bits)")

    categories = len(expected)
    blocks = n // block_size
    counts = [0] * categories
    for start in range(0, blocks * block_size, block_size):
        run = longest_run(bits[start:start + block_size], value=1)
        category = categories - 1
        for position, bound in enumerate(bounds):
            if run <= bound:
                category = position
                break
        counts[category] += 1

    chi_squared = sum(
        (observed - blocks * probability) ** 2 / (blocks * probability)
        for observed, probability in zip(counts, expected)
    )
    p_value = float(sp_stats.chi2.sf(chi_squared, categories - 1))
    return AuditResult("longest_run", chi_squared, p_value, p_value >= NIST_ALPHA)


def run_audit(bits: Sequence[int]) -> Dict[str, Any]:
    """Run the three NIST tests; the audit passes only if all of them pass."""
    results: List[AuditResult] = [monobit_test(bits), runs_test(bits), longest_run_test(bits)]
    return {
        "bit_length": len(bits),
        "all_pass": all(result.passed for result in results),
        "tests": {result.name: result.to_dict() for result in results},
    }


def validate_randomness(bits: Sequence[int]) -> Dict[str, Any]:
    """Quick screen: proportion |z| < 3, runs |z| < 3, longest run < 3 log2(n)."""
    n = len(bits)
    if n < 2:
        return {"is_random": False, "length": n, "reason": "too short"}
    ones = int(np.count_nonzero(np.asarray(bits, dtype=np.int8)))
    proportion_z = abs(binomial_z(ones, n))
    runs = runs_z(bits)
    max_run = longest_run(bits)
    max_run_limit = 3.0 * math.log2(n)
    proportion_pass = proportion_z < 3.0
    runs_pass = abs(runs["z"]) < 3.0 if runs["variance"] > 0 else False
    max_run_pass = max_run < max_run_limit
    return {
        "is_random": proportion_pass and runs_pass and max_run_pass,
        "length": n,
        "ones": ones,
        "ones_ratio": ones / n,
        "proportion_z": proportion_z,
        "proportion_pass": proportion_pass,
        "runs": runs["observed"],
        "expected_runs": runs["expected"],
        "runs_z": abs(runs["z"]),
        "runs_pass": runs_pass,
        "max_run": max_run,
        "max_run_limit": max_run_limit,
        "max_run_pass": max_run_pass,
    }
