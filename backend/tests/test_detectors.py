from __future__ import annotations

import pytest

from app.chat import detectors


def _series(values):
    return [{"bucket": f"2025-07-{day:02d}", "value": value} for day, value in enumerate(values, start=1)]


def test_median_and_mad():
    assert detectors.median([]) == 0.0
    assert detectors.median([3, 1, 2]) == 2.0
    assert detectors.median([4, 1, 2, 3]) == 2.5
    assert detectors.mad([10, 12, 11, 13, 10, 12, 11]) == 1


def test_unknown_sensitivity_falls_back_to_medium():
    assert detectors.threshold_for("extreme") == detectors.SENSITIVITY_THRESHOLDS["medium"]


def test_timeseries_spike_is_flagged():
    found = detectors.detect_timeseries_anomalies(_series([10, 12, 11, 13, 10, 12, 11, 30]), metric="pageviews")

    assert len(found) == 1
    spike = found[0]
    assert spike["bucket"] == "2025-07-08"
    assert spike["direction"] == "spike"
    assert spike["expected"] == 11
    assert spike["metric"] == "pageviews"
    assert spike["z"] == pytest.approx(19 / detectors.MAD_SCALE)


def test_timeseries_needs_a_full_baseline_and_spread():
    assert detectors.detect_timeseries_anomalies(_series([10, 12, 11, 50])) == []
    assert detectors.detect_timeseries_anomalies(_series([10] * 7 + [40])) == []


def test_timeseries_dip_respects_sensitivity():
    values = [10, 12, 11, 13, 10, 12, 11, 7]
    # |7 - 11| / 1.4826 is about 2.7: above "medium", below "low".
    assert detectors.detect_timeseries_anomalies(_series(values), sensitivity="medium")[0]["direction"] == "dip"
    assert detectors.detect_timeseries_anomalies(_series(values), sensitivity="low") == []


def _cohort_rows(rates_at_k1):
    rows = []
    for index, rate in enumerate(rates_at_k1):
        cohort = f"2025-06-{2 + 7 * index:02d}"
        rows.append({"cohort_start": cohort, "k": 0, "active_users": 100})
        rows.append({"cohort_start": cohort, "k": 1, "active_users": round(rate * 100)})
    return rows


def test_retention_dip_found_for_weak_cohort():
    result = detectors.detect_retention_dips(_cohort_rows([0.35, 0.36, 0.34, 0.35, 0.10]))

    assert len(result["findings"]) == 1
    finding = result["findings"][0]
    assert finding["cohort_start"] == "2025-06-30"
    assert finding["period_number"] == 1
    assert finding["effect_size"] == pytest.approx(0.25)
    assert finding["severity"] == "high"
    assert result["summary"].startswith("Detected 1 retention dip(s)")
    assert result["extras"]["cohort_count"] == 5
    assert result["extras"]["total_users_analyzed"] == 500


def test_retention_small_cohorts_are_ignored():
    result = detectors.detect_retention_dips(_cohort_rows([0.35, 0.10]), min_cohort_size=200)

    assert result["findings"] == []
    assert result["extras"]["cohort_count"] == 0
    assert result["summary"].startswith("No significant retention dips")


def test_segment_shifts_both_directions():
    current = [{"label": "US", "value": 300}, {"label": "DE", "value": 100}]
    previous = [{"label": "US", "value": 200}, {"label": "DE", "value": 200}]

    findings = detectors.rank_segment_shifts(
        detectors.detect_segment_shifts(current, previous, "country", use_chi_square=True)
    )

    assert [f["label"] for f in findings] == ["DE", "US"]
    assert findings[0]["effect_size"] == pytest.approx(0.25)
    assert "decreased" in findings[0]["explanation"]
    assert "increased" in findings[1]["explanation"]
    assert findings[1]["p_value"] < 0.05


def test_segment_shifts_require_support():
    current = [{"label": "US", "value": 30}, {"label": "DE", "value": 10}]
    previous = [{"label": "US", "value": 20}, {"label": "DE", "value": 20}]

    assert detectors.detect_segment_shifts(current, previous, "country") == []


def test_chi_square_bounds():
    assert detectors.chi_square_p_value(0, 0, 0, 0) == 1.0
    assert 0.0 <= detectors.chi_square_p_value(50, 50, 50, 50) <= 1.0


def test_chi_square_uses_one_degree_of_freedom():
    assert detectors.yates_chi_square(60, 940, 40, 960) == pytest.approx(3.8)
    assert detectors.chi_square_p_value(60, 940, 40, 960) == pytest.approx(0.0513, abs=1e-3)
    assert detectors.chi_square_p_value(50, 50, 50, 50) == pytest.approx(1.0)


def test_moderate_shift_passes_chi_square_gate():
    current = [{"label": "US", "value": 70}, {"label": "other", "value": 930}]
    previous = [{"label": "US", "value": 45}, {"label": "other", "value": 955}]

    findings = detectors.detect_segment_shifts(current, previous, "country", use_chi_square=True)

    us = [f for f in findings if f["label"] == "US"]
    assert len(us) == 1
    assert us[0]["p_value"] == pytest.approx(0.021, abs=2e-3)


def test_exit_rate_outlier():
    rows = []
    for path, exits in (("/a", 20), ("/b", 22), ("/c", 18), ("/d", 20), ("/pricing", 150)):
        rows.append({"from_path": path, "to_path": None, "transitions": exits})
        rows.append({"from_path": path, "to_path": "/next", "transitions": 200 - exits})

    result = detectors.detect_path_dropoffs(rows, include_step_dropoffs=False)

    assert [f["path_sequence"] for f in result["findings"]] == [["/pricing"]]
    assert result["findings"][0]["metric"] == "exit_rate"
    assert result["findings"][0]["value"] == pytest.approx(0.75)
    assert len(result["extras"]["exit_rates"]) == 5


def test_weak_next_step_choice():
    rows = [
        {"from_path": "/home", "to_path": "/a", "transitions": 300},
        {"from_path": "/home", "to_path": "/b", "transitions": 280},
        {"from_path": "/home", "to_path": "/c", "transitions": 310},
        {"from_path": "/home", "to_path": "/d", "transitions": 20},
    ]

    result = detectors.detect_path_dropoffs(rows, min_support=10)

    assert [f["path_sequence"] for f in result["findings"]] == [["/home", "/d"]]
    assert result["findings"][0]["metric"] == "transition_rate"


def test_path_dropoffs_without_findings():
    result = detectors.detect_path_dropoffs([])

    assert result["findings"] == []
    assert result["summary"].startswith("No significant path drop-offs")
