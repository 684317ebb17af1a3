"""Binomial, entropy and coherence primitives shared by blocks and analysis.

Example:
    >>> from trialstream.stats import binomial_z, two_sided_p
    >>> z = binomial_z(60, 100)
    >>> round(z, 2), round(two_sided_p(z), 4)
    (2.0, 0.0455)
"""

from __future__ import annotations

import math
from typing import Optional, Sequence

import numpy as np
from scipy import stats as sp_stats


def binomial_z(k: int, n: int, p0: float = 0.5) -> float:
    """Normal approximation ``z = (k - n p0) / sqrt(n p0 (1 - p0))``; 0 for n == 0."""
    if n <= 0:
        return 0.0
    sd = math.sqrt(n * p0 * (1.0 - p0)) or 1.0
    return (k - n * p0) / sd


def two_sided_p(z: float) -> float:
    """Two-sided p-value from a standard normal statistic, clamped to [0, 1]."""
    return min(1.0, max(0.0, float(2.0 * sp_stats.norm.sf(abs(z)))))


def binomial_tail_at_or_above(k: int, n: int, p0: float = 0.5) -> float:
    """Exact ``P(X >= k)`` for ``X ~ Binomial(n, p0)``."""
    if k <= 0:
        return 1.0
    if k > n:
        return 0.0
    return float(sp_stats.binom.sf(k - 1, n, p0))


def two_proportion_z(k1: int, n1: int, k2: int, n2: int) -> float:
    """Pooled two-proportion z statistic; 0 when undefined."""
    if n1 <= 0 or n2 <= 0:
        return 0.0
    pooled = (k1 + k2) / (n1 + n2)
    se = math.sqrt(pooled * (1.0 - pooled) * (1.0 / n1 + 1.0 / n2))
    if se == 0:
        return 0.0
    return (k1 / n1 - k2 / n2) / se


def shannon_entropy(bits: Sequence[int]) -> Optional[float]:
    """Binary Shannon entropy in bits per symbol; ``None`` for an empty sequence."""
    n = len(bits)
    if n == 0:
        return None
    p = float(np.count_nonzero(np.asarray(bits, dtype=np.int8))) / n
    if p in (0.0, 1.0):
        return 0.0
    return float(-p * math.log2(p) - (1.0 - p) * math.log2(1.0 - p))


def _signed(bits: Sequence[int]) -> np.ndarray:
    return np.where(np.asarray(bits, dtype=np.int8) > 0, 1.0, -1.0)


def cumulative_range(bits: Sequence[int]) -> int:
    """Range (max - min) of the running ±1 walk, including the origin."""
    if len(bits) == 0:
        return 0
    walk = np.concatenate(([0.0], np.cumsum(_signed(bits))))
    return int(walk.max() - walk.min())


def hurst_estimate(bits: Sequence[int]) -> float:
    """Rough rescaled-range Hurst exponent on the ±1 mapping.

    Returns 0.5 below 20 samples and clamps the estimate to [0, 1].
    """
    n = len(bits)
    if n < 20:
        return 0.5
    x = _signed(bits)
    deviations = x - x.mean()
    walk = np.concatenate(([0.0], np.cumsum(deviations)))
    spread = float(walk.max() - walk.min())
    scale = math.sqrt(float(np.mean(deviations**2))) or 1.0
    ratio = spread / scale
    if ratio <= 0:
        return 0.0
    return max(0.0, min(1.0, math.log(ratio) / math.log(n)))


def lag1_autocorrelation(bits: Sequence[int]) -> float:
    """Lag-1 autocorrelation of the ±1 mapping; 0 below 3 samples or zero variance."""
    if len(bits) < 3:
        return 0.0
    return autocorrelation(_signed(bits), 1)


def autocorrelation(series: Sequence[float], lag: int) -> float:
    """Textbook ``r(k) = gamma(k) / gamma(0)`` using the full-series mean."""
    x = np.asarray(series, dtype=float)
    n = x.size
    if lag < 0 or n <= lag:
        return 0.0
    centered = x - x.mean()
    denominator = float(np.dot(centered, centered))
    if denominator == 0:
        return 0.0
    numerator = float(np.dot(centered[: n - lag], centered[lag:]))
    return numerator / denominator


def required_hit_percent(n: int, alpha: float = 0.01) -> int:
    """Rounded percent a session must reach to be significant (one-sided, p0 = 0.5)."""
    if n <= 0:
        return 100
    if not 0.0 < alpha < 1.0:
        raise ValueError("alpha must lie in (0, 1)")
    z_crit = float(sp_stats.norm.ppf(1.0 - alpha))
    return int(round((0.5 + z_crit * math.sqrt(0.25 / n)) * 100))


def required_hits(n: int, alpha: float = 0.01) -> int:
    return math.ceil(required_hit_percent(n, alpha) / 100 * n)


def is_session_significant(k: int, n: int, alpha: float = 0.01) -> bool:
    if n <= 0:
        return False
    return round(100 * k / n) >= required_hit_percent(n, alpha)


def count_runs(bits: Sequence[int]) -> int:
    if len(bits) == 0:
        return 0
    x = np.asarray(bits, dtype=np.int8)
    return int(np.count_nonzero(x[1:] != x[:-1])) + 1


def runs_z(bits: Sequence[int]) -> dict:
    """Wald-Wolfowitz runs statistics for a binary sequence.

    ``expected = 2 n1 n2 / n + 1`` and
    ``variance = 2 n1 n2 (2 n1 n2 - n) / (n^2 (n - 1))``; ``z`` is 0 when the
    variance is not positive.
    """
    n = len(bits)
    n1 = int(np.count_nonzero(np.asarray(bits, dtype=np.int8))) if n else 0
    n2 = n - n1
    observed = count_runs(bits)
    if n < 2:
        return {"observed": observed, "expected": float(observed), "variance": 0.0, "z": 0.0, "n1": n1, "n2": n2}
    product = 2.0 * n1 * n2
    expected = product / n + 1.0
    variance = product * (product - n) / (n * n * (n - 1))
    z = (observed - expected) / math.sqrt(variance) if variance > 0 else 0.0
    return {"observed": observed, "expected": expected, "variance": variance, "z": z, "n1": n1, "n2": n2}


def longest_run(bits: Sequence[int], value: Optional[int] = None) -> int:
    """Longest run of equal bits, or of ``value`` only when given."""
    best = current = 0
    previous: Optional[int] = None
    for bit in bits:
        if value is not None and bit != value:
            current = 0
            previous = bit
            continue
        current = current + 1 if bit == previous else 1
        previous = bit
        best = max(best, current)
    return best
