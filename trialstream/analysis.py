"""Cross-session statistics over persisted block records.

All reductions are read-only over session documents as produced by
``load_sessions`` (``{"session_id", "blocks": [record, ...], ...}``). Only
blocks that were not invalidated contribute.

The spectral, harmonic and damped-oscillator detectors are exploratory
heuristics; they report shape, not significance.
"""

from __future__ import annotations

import math
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from scipy import signal

from .entropy import split_entropies
from .stats import (
    autocorrelation,
    binomial_tail_at_or_above,
    binomial_z,
    runs_z,
    two_proportion_z,
    two_sided_p,
)

SIGNIFICANCE_T = 1.96
BLOCK_LAGS: Tuple[int, ...] = (1, 2, 3, 4, 5)
TRIAL_LAGS: Tuple[int, ...] = (1, 2, 3, 5, 10)


# -- series helpers -------------------------------------------------------


def summarize_values(values: Sequence[float]) -> Dict[str, Any]:
    """Mean, sample sd and ``t = |mean| / se`` of a set of per-session values."""
    count = len(values)
    if count == 0:
        return {"mean": None, "sd": None, "count": 0, "t": 0.0, "significant": False}
    arr = np.asarray(values, dtype=float)
    mean = float(arr.mean())
    variance = float(arr.var(ddof=1)) if count > 1 else 0.0
    se = math.sqrt(variance / count)
    t = abs(mean) / se if se > 0 else 0.0
    return {"mean": mean, "sd": math.sqrt(variance), "count": count, "t": t, "significant": t > SIGNIFICANCE_T}


def cross_correlation(x: Sequence[float], y: Sequence[float], lag: int = 0) -> float:
    """Pearson correlation of ``x[i]`` with ``y[i + lag]`` over the overlapping span.

    Means come from the full series; both variances from the overlap only.
    """
    if len(x) != len(y) or len(x) == 0:
        return 0.0
    n = len(x)
    effective = n - abs(lag)
    if effective <= 0:
        return 0.0
    xa = np.asarray(x, dtype=float) - float(np.mean(x))
    ya = np.asarray(y, dtype=float) - float(np.mean(y))
    if lag >= 0:
        xs, ys = xa[:effective], ya[lag:lag + effective]
    else:
        xs, ys = xa[-lag:-lag + effective], ya[:effective]
    denominator = math.sqrt(float(np.dot(xs, xs)) * float(np.dot(ys, ys)))
    return float(np.dot(xs, ys)) / denominator if denominator > 0 else 0.0


def max_cross_correlation(x: Sequence[float], y: Sequence[float]) -> Optional[Dict[str, Any]]:
    """Strongest |r| over lags in ``±min(20, n / 4)``; ``None`` below 10 samples."""
    n = min(len(x), len(y))
    if n < 10:
        return None
    x, y = list(x[:n]), list(y[:n])
    max_lag = int(min(20, n / 4))
    best_r, best_lag = 0.0, 0
    for lag in range(-max_lag, max_lag + 1):
        r = cross_correlation(x, y, lag)
        if abs(r) > abs(best_r):
            best_r, best_lag = r, lag
    return {"max_r": best_r, "lag": best_lag, "lag0_r": cross_correlation(x, y, 0)}


def analyze_turning_points(data: Sequence[float]) -> Dict[str, Any]:
    n = len(data)
    if n < 3:
        return {"total": 0, "maxima": 0, "minima": 0, "expected": 0.0, "rate": 0.0, "excess": 0.0, "ratio": 0.0}
    maxima = minima = 0
    for i in range(1, n - 1):
        if data[i] > data[i - 1] and data[i] > data[i + 1]:
            maxima += 1
        elif data[i] < data[i - 1] and data[i] < data[i + 1]:
            minima += 1
    total = maxima + minima
    expected = (n - 2) * 0.5
    if minima:
        ratio = maxima / minima
    else:
        ratio = math.inf if maxima else 1.0
    return {
        "total": total,
        "maxima": maxima,
        "minima": minima,
        "expected": expected,
        "rate": total / (n - 2),
        "excess": total - expected,
        "ratio": ratio,
    }


def linear_trend(data: Sequence[float]) -> Dict[str, float]:
    """Least-squares slope, intercept and r² against the sample index."""
    n = len(data)
    if n < 2:
        return {"slope": 0.0, "intercept": 0.0, "r2": 0.0}
    y = np.asarray(data, dtype=float)
    x = np.arange(n, dtype=float)
    dx = x - x.mean()
    slope = float(np.dot(dx, y - y.mean()) / np.dot(dx, dx))
    intercept = float(y.mean() - slope * x.mean())
    residual = float(np.sum((y - (slope * x + intercept)) ** 2))
    total = float(np.sum((y - y.mean()) ** 2))
    return {"slope": slope, "intercept": intercept, "r2": 1.0 - residual / total if total else 0.0}


def spectral_analysis(
    data: Sequence[float],
    *,
    windowed: bool = True,
    welch: bool = False,
    segment_length: int = 128,
) -> Dict[str, Any]:
    """Power spectrum of the mean-removed series at frequencies ``k / n`` (DC dropped).

    With ``welch`` the series is cut into 50%-overlapping segments whose
    periodograms are averaged; a series shorter than one segment falls back
    to a single periodogram.
    """
    n = len(data)
    if n < 4:
        return {"peak_frequency": 0.0, "peak_power": 0.0, "total_power": 0.0, "spectrum": [], "method": "none"}
    x = np.asarray(data, dtype=float)
    window = "hann" if windowed else "boxcar"

    if welch and n >= segment_length:
        frequencies, power = signal.welch(
            x,
            fs=1.0,
            window=window,
            nperseg=segment_length,
            noverlap=segment_length // 2,
            detrend="constant",
        )
        method = "welch"
    else:
        frequencies, power = signal.periodogram(x, fs=1.0, window=window, detrend="constant")
        method = "periodogram-hann" if windowed else "periodogram"

    frequencies, power = frequencies[1:], power[1:]
    peak = int(np.argmax(power))
    return {
        "peak_frequency": float(frequencies[peak]),
        "peak_power": float(power[peak]),
        "total_power": float(power.sum()),
        "spectrum": [{"frequency": float(f), "power": float(p)} for f, p in zip(frequencies, power)],
        "method": method,
    }


def detect_harmonics(data: Sequence[float]) -> Dict[str, float]:
    """Strongest mean lagged product over periods ``2 .. n / 4``."""
    n = len(data)
    if n < 10:
        return {"dominant_frequency": 0.0, "dominant_power": 0.0, "oscillation_strength": 0.0}
    x = np.asarray(data, dtype=float)
    best_power, best_period = 0.0, 0
    for period in range(2, int(n / 4) + 1):
        power = abs(float(np.mean(x[:n - period] * x[period:])))
        if power > best_power:
            best_power, best_period = power, period
    return {
        "dominant_frequency": 1.0 / best_period if best_period else 0.0,
        "dominant_power": best_power,
        "oscillation_strength": min(1.0, float(x.var()) * 4.0),
    }


def detect_damped_oscillator(data: Sequence[float]) -> Dict[str, Any]:
    """Fit exponential decay to local-maximum amplitudes.

    Detected iff damping > 0.01, fit r² > 0.3 and peaks are spaced.
    Requires 20 samples and at least three peaks and three troughs.
    """
    n = len(data)
    if n < 20:
        return {"detected": False}
    peaks = [i for i in range(1, n - 1) if data[i] > data[i - 1] and data[i] > data[i + 1]]
    troughs = [i for i in range(1, n - 1) if data[i] < data[i - 1] and data[i] < data[i + 1]]
    if len(peaks) < 3 or len(troughs) < 3:
        return {"detected": False}
    values = [data[i] for i in peaks]
    if min(values) <= 0:
        return {"detected": False}
    trend = linear_trend([math.log(value) for value in values])
    damping = -trend["slope"]
    spacing = (peaks[-1] - peaks[0]) / (len(peaks) - 1)
    natural_frequency = 1.0 / spacing if spacing > 0 else 0.0
    detected = damping > 0.01 and trend["r2"] > 0.3 and natural_frequency > 0
    return {
        "detected": detected,
        "damping": damping if detected else None,
        "natural_frequency": natural_frequency if detected else None,
        "fit_r2": trend["r2"] if detected else None,
    }


# -- session access -------------------------------------------------------


def valid_blocks(session: Dict[str, Any]) -> List[Dict[str, Any]]:
    blocks = [block for block in session.get("blocks", []) if not block.get("invalidated")]
    return sorted(blocks, key=lambda block: block["block_index"])


def block_hit_rates(session: Dict[str, Any]) -> List[float]:
    return [block["hits"] / block["trial_count"] for block in valid_blocks(session) if block["trial_count"]]


def trial_sequence(session: Dict[str, Any], channel: str) -> List[int]:
    bits: List[int] = []
    for block in valid_blocks(session):
        bits.extend(trial[channel] for trial in block.get("trials", []) if channel in trial)
    return bits


class StatisticsEngine:
    """Read-only analysis over a list of session documents.

    Args:
        sessions: Session documents, each holding block records.
        min_blocks: Minimum valid blocks for a session to enter block-level
            temporal analyses.
    """

    def __init__(self, sessions: Iterable[Dict[str, Any]], *, min_blocks: int = 10):
        self.sessions = list(sessions)
        self.min_blocks = min_blocks

    @property
    def long_sessions(self) -> List[Dict[str, Any]]:
        return [session for session in self.sessions if len(block_hit_rates(session)) >= self.min_blocks]

    def aggregate(self) -> Dict[str, Any]:
        totals: Dict[str, List[int]] = {"subject": [0, 0], "ghost": [0, 0], "demon": [0, 0]}
        for session in self.sessions:
            for block in valid_blocks(session):
                n = block["trial_count"]
                totals["subject"][0] += block["hits"]
                totals["subject"][1] += n
                totals["ghost"][0] += block["ghost_hits"]
                totals["ghost"][1] += n
                if block.get("demon_hits") is not None:
                    totals["demon"][0] += block["demon_hits"]
                    totals["demon"][1] += n

        channels: Dict[str, Any] = {}
        for channel, (k, n) in totals.items():
            if n == 0 and channel == "demon":
                continue
            z = binomial_z(k, n)
            channels[channel] = {
                "hits": k,
                "trials": n,
                "hit_rate": k / n if n else None,
                "z": z,
                "p_two_sided": two_sided_p(z),
                "p_exact_at_or_above": binomial_tail_at_or_above(k, n),
            }
        subject_k, subject_n = totals["subject"]
        ghost_k, ghost_n = totals["ghost"]
        difference_z = two_proportion_z(subject_k, subject_n, ghost_k, ghost_n)
        return {
            "sessions": len(self.sessions),
            "channels": channels,
            "subject_vs_ghost": {"z": difference_z, "p_two_sided": two_sided_p(difference_z)},
        }

    def block_autocorrelation(self, lags: Sequence[int] = BLOCK_LAGS) -> Dict[int, Dict[str, Any]]:
        """Per-lag mean block hit-rate autocorrelation across long sessions."""
        rates = [block_hit_rates(session) for session in self.long_sessions]
        return {lag: summarize_values([autocorrelation(series, lag) for series in rates]) for lag in lags}

    def block_runs_test(self, threshold: float = 0.5) -> Dict[str, Any]:
        """Wald-Wolfowitz runs test on block hit rates binarized at ``> threshold``."""
        series: List[float] = []
        for session in self.long_sessions:
            series.extend(block_hit_rates(session))
        binary = [1 if rate > threshold else 0 for rate in series]
        stats = runs_z(binary)
        degenerate = stats["n1"] == 0 or stats["n2"] == 0
        return {
            "observed": stats["observed"],
            "expected": 0.0 if degenerate else stats["expected"],
            "variance": stats["variance"],
            "z": 0.0 if degenerate else stats["z"],
            "p_two_sided": 1.0 if degenerate else two_sided_p(stats["z"]),
        }

    def trial_autocorrelation(self, lags: Sequence[int] = TRIAL_LAGS) -> Dict[int, Dict[str, Any]]:
        result: Dict[int, Dict[str, Any]] = {}
        for lag in lags:
            per_channel: Dict[str, Any] = {}
            for channel in ("subject", "ghost"):
                values = [
                    autocorrelation(bits, lag)
                    for bits in (trial_sequence(session, channel) for session in self.sessions)
                    if len(bits) > lag
                ]
                per_channel[channel] = summarize_values(values)
            result[lag] = per_channel
        return result

    def trial_cross_correlation(self) -> Dict[str, Any]:
        per_session = []
        for session in self.sessions:
            subject = trial_sequence(session, "subject")
            ghost = trial_sequence(session, "ghost")
            found = max_cross_correlation(subject, ghost)
            if found is not None:
                per_session.append(dict(found, session_id=session.get("session_id"), trials=len(subject)))
        return {
            "lag0": summarize_values([item["lag0_r"] for item in per_session]),
            "sessions": per_session,
        }

    def turning_points(self) -> Dict[str, Any]:
        analyses = [analyze_turning_points(block_hit_rates(session)) for session in self.long_sessions]
        if not analyses:
            return {"sessions": 0}
        keys = ("total", "maxima", "minima", "expected", "rate", "excess")
        averaged: Dict[str, Any] = {key: float(np.mean([item[key] for item in analyses])) for key in keys}
        averaged["sessions"] = len(analyses)
        return averaged

    def half_comparison(self) -> Dict[str, Any]:
        """Second-half minus first-half mean block hit rate, per long session."""
        firsts, seconds, differences = [], [], []
        for session in self.long_sessions:
            rates = block_hit_rates(session)
            midpoint = len(rates) // 2
            first = float(np.mean(rates[:midpoint]))
            second = float(np.mean(rates[midpoint:]))
            firsts.append(first)
            seconds.append(second)
            differences.append(second - first)
        if not differences:
            return {"sessions": 0, "t": 0.0, "significant": False}
        mean_difference = float(np.mean(differences))
        variance = float(np.var(differences))
        se = math.sqrt(variance / len(differences))
        t = mean_difference / se if se > 0 else 0.0
        return {
            "sessions": len(differences),
            "first_half_mean": float(np.mean(firsts)),
            "second_half_mean": float(np.mean(seconds)),
            "difference": mean_difference,
            "t": t,
            "significant": abs(t) > SIGNIFICANCE_T,
        }

    def sequential_differences(self) -> Dict[str, Any]:
        diffs: List[float] = []
        for session in self.long_sessions:
            diffs.extend(float(d) for d in np.diff(block_hit_rates(session)))
        if not diffs:
            return {"count": 0, "mean": 0.0, "sd": 0.0}
        return {"count": len(diffs), "mean": float(np.mean(diffs)), "sd": float(np.std(diffs))}

    def linear_trends(self) -> List[Dict[str, Any]]:
        return [
            dict(linear_trend(block_hit_rates(session)), session_id=session.get("session_id"))
            for session in self.long_sessions
        ]

    def spectral(self, *, min_trials: int = 32, welch_below: int = 500) -> List[Dict[str, Any]]:
        """Per-session spectrum of the subject decision sequence."""
        results = []
        for session in self.sessions:
            bits = trial_sequence(session, "subject")
            if len(bits) < min_trials:
                continue
            spectrum = spectral_analysis(bits, windowed=True, welch=len(bits) < welch_below, segment_length=64)
            results.append(
                {
                    "session_id": session.get("session_id"),
                    "trials": len(bits),
                    "peak_frequency": spectrum["peak_frequency"],
                    "peak_power": spectrum["peak_power"],
                    "total_power": spectrum["total_power"],
                    "method": spectrum["method"],
                }
            )
        return results

    def oscillations(self) -> List[Dict[str, Any]]:
        return [
            {
                "session_id": session.get("session_id"),
                "harmonics": detect_harmonics(block_hit_rates(session)),
                "damped": detect_damped_oscillator(block_hit_rates(session)),
            }
            for session in self.long_sessions
        ]

    def temporal_entropy(self) -> Dict[str, Any]:
        """Paired second-minus-first-half entropy of subject decisions (k=2 split)."""
        differences = []
        for session in self.sessions:
            halves = split_entropies(trial_sequence(session, "subject"), 2)
            if halves and None not in halves:
                differences.append(halves[1] - halves[0])
        return summarize_values(differences)

    def report(self) -> Dict[str, Any]:
        return {
            "aggregate": self.aggregate(),
            "block_autocorrelation": self.block_autocorrelation(),
            "block_runs_test": self.block_runs_test(),
            "trial_autocorrelation": self.trial_autocorrelation(),
            "trial_cross_correlation": self.trial_cross_correlation(),
            "turning_points": self.turning_points(),
            "half_comparison": self.half_comparison(),
            "sequential_differences": self.sequential_differences(),
            "linear_trends": self.linear_trends(),
            "spectral": self.spectral(),
            "oscillations": self.oscillations(),
            "temporal_entropy": self.temporal_entropy(),
        }
