from __future__ import annotations

import math

import pytest

from trialstream.analysis import (
    StatisticsEngine,
    analyze_turning_points,
    block_hit_rates,
    cross_correlation,
    detect_damped_oscillator,
    detect_harmonics,
    linear_trend,
    max_cross_correlation,
    spectral_analysis,
    summarize_values,
    trial_sequence,
)

TRIALS = 20


def _session(rates, *, session_id: str = "s", invalid: tuple[int, ...] = ()) -> dict:
    blocks = []
    for index, rate in enumerate(rates):
        hits = round(rate * TRIALS)
        subject = [1] * hits + [0] * (TRIALS - hits)
        ghost = [1, 0] * (TRIALS // 2)
        blocks.append(
            {
                "block_index": index,
                "invalidated": index in invalid,
                "hits": hits,
                "ghost_hits": TRIALS // 2,
                "demon_hits": None,
                "trial_count": TRIALS,
                "trials": [{"subject": s, "ghost": g} for s, g in zip(subject, ghost)],
            }
        )
    return {"session_id": session_id, "blocks": blocks}


def test_aggregate_skips_invalidated_blocks():
    sessions = [_session([0.6, 0.4, 1.0], invalid=(2,)), _session([0.5, 0.5], session_id="t")]
    aggregate = StatisticsEngine(sessions).aggregate()

    assert aggregate["sessions"] == 2
    assert aggregate["channels"]["subject"]["hits"] == 40
    assert aggregate["channels"]["subject"]["trials"] == 80
    assert aggregate["channels"]["subject"]["z"] == 0.0
    assert aggregate["channels"]["ghost"]["hits"] == 40
    assert "demon" not in aggregate["channels"]
    assert aggregate["subject_vs_ghost"]["z"] == 0.0


def test_short_sessions_stay_out_of_block_level_analyses():
    engine = StatisticsEngine([_session([0.5] * 5), _session([0.6, 0.4] * 6, session_id="long")])
    assert [session["session_id"] for session in engine.long_sessions] == ["long"]


def test_block_runs_test_on_alternating_hit_rates():
    result = StatisticsEngine([_session([0.6, 0.4] * 6)]).block_runs_test()
    assert result["observed"] == 12
    assert result["expected"] == pytest.approx(7.0)
    assert result["z"] > 0


def test_block_runs_test_is_neutral_when_every_block_is_on_one_side():
    result = StatisticsEngine([_session([0.6] * 12)]).block_runs_test()
    assert result["z"] == 0.0
    assert result["p_two_sided"] == 1.0


def test_block_at_exactly_half_counts_on_the_low_side():
    result = StatisticsEngine([_session([0.5, 0.4] * 6)]).block_runs_test()
    assert result["observed"] == 1
    assert result["z"] == 0.0
    assert result["p_two_sided"] == 1.0


def test_half_comparison_and_trends():
    engine = StatisticsEngine([_session([0.4] * 6 + [0.6] * 6)])
    halves = engine.half_comparison()
    assert halves["sessions"] == 1
    assert halves["first_half_mean"] == pytest.approx(0.4)
    assert halves["difference"] == pytest.approx(0.2)
    assert halves["t"] == 0.0
    assert engine.linear_trends()[0]["slope"] > 0
    assert engine.sequential_differences()["count"] == 11


def test_temporal_entropy_compares_session_halves():
    session = _session([0.0] * 3)
    session["blocks"][2]["trials"] = [{"subject": bit, "ghost": 0} for bit in [1, 0] * 10]
    session["blocks"].append(
        {
            "block_index": 3,
            "invalidated": False,
            "hits": 10,
            "ghost_hits": 10,
            "demon_hits": None,
            "trial_count": TRIALS,
            "trials": [{"subject": bit, "ghost": 0} for bit in [0, 1] * 10],
        }
    )
    assert len(trial_sequence(session, "subject")) == 80

    result = StatisticsEngine([session]).temporal_entropy()
    assert result["count"] == 1
    assert result["mean"] == pytest.approx(1.0)


def test_report_has_every_section():
    report = StatisticsEngine([_session([0.6, 0.4] * 6)]).report()
    assert set(report) == {
        "aggregate",
        "block_autocorrelation",
        "block_runs_test",
        "trial_autocorrelation",
        "trial_cross_correlation",
        "turning_points",
        "half_comparison",
        "sequential_differences",
        "linear_trends",
        "spectral",
        "oscillations",
        "temporal_entropy",
    }
    assert set(report["block_autocorrelation"]) == {1, 2, 3, 4, 5}
    assert set(report["trial_autocorrelation"]) == {1, 2, 3, 5, 10}
    assert report["block_autocorrelation"][1]["count"] == 1
    assert report["spectral"][0]["method"] == "welch"


def test_block_hit_rates_are_ordered_by_index():
    session = _session([0.6, 0.4])
    session["blocks"].reverse()
    assert block_hit_rates(session) == [0.6, 0.4]


def test_summarize_values():
    assert summarize_values([])["count"] == 0
    flat = summarize_values([1.0, 1.0, 1.0])
    assert flat["sd"] == 0.0
    assert flat["t"] == 0.0
    spread = summarize_values([1.0, 3.0])
    assert spread["mean"] == 2.0
    assert spread["t"] == pytest.approx(2.0)


def test_cross_correlation():
    x = [1.0, 2.0, 3.0, 4.0, 5.0]
    assert cross_correlation(x, x) == pytest.approx(1.0)
    assert cross_correlation(x, list(reversed(x))) == pytest.approx(-1.0)
    assert cross_correlation(x, x[:3]) == 0.0
    assert max_cross_correlation(x, x) is None

    series = [float(i % 3) for i in range(30)]
    found = max_cross_correlation(series, series)
    assert found["lag0_r"] == pytest.approx(1.0)
    assert abs(found["max_r"]) == pytest.approx(1.0)


def test_turning_points_and_linear_trend():
    points = analyze_turning_points([0, 1, 0, 1, 0])
    assert (points["maxima"], points["minima"], points["total"]) == (2, 1, 3)
    assert points["expected"] == 1.5

    trend = linear_trend([1.0, 2.0, 3.0, 4.0])
    assert trend["slope"] == pytest.approx(1.0)
    assert trend["intercept"] == pytest.approx(1.0)
    assert trend["r2"] == pytest.approx(1.0)


def test_spectral_peak_of_a_pure_tone():
    tone = [math.sin(2 * math.pi * i / 8) for i in range(64)]
    plain = spectral_analysis(tone, windowed=False)
    assert plain["method"] == "periodogram"
    assert plain["peak_frequency"] == pytest.approx(0.125)

    long_tone = [math.sin(2 * math.pi * i / 8) for i in range(256)]
    averaged = spectral_analysis(long_tone, welch=True, segment_length=64)
    assert averaged["method"] == "welch"
    assert averaged["peak_frequency"] == pytest.approx(0.125)

    short = spectral_analysis(tone[:40], welch=True, segment_length=64)
    assert short["method"] == "periodogram-hann"
    assert short["spectrum"][0]["frequency"] == pytest.approx(1 / 40)

    assert spectral_analysis([1.0, 0.0])["method"] == "none"


def test_damped_oscillator_detection():
    decaying = [math.exp(-0.1 * i) * math.cos(2 * math.pi * i / 8) for i in range(40)]
    result = detect_damped_oscillator(decaying)
    assert result["detected"]
    assert result["damping"] == pytest.approx(0.8)
    assert result["natural_frequency"] == pytest.approx(0.125)

    assert detect_damped_oscillator([0.5] * 10) == {"detected": False}
    assert detect_harmonics([0.5] * 5)["dominant_frequency"] == 0.0
