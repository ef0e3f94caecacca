"""Robust-statistics anomaly detectors over analytics series."""

from __future__ import annotations

import statistics
from collections import defaultdict
from typing import Any, Iterable, Optional

from scipy import stats

# Robust z-score cut-off per sensitivity level.
SENSITIVITY_THRESHOLDS = {
    "low": 3.0,
    "medium": 2.5,
    "high": 2.0,
}

# Scales MAD to a standard-deviation estimate for normal data.
MAD_SCALE = 1.4826

ROLLING_WINDOW = 7

ENTRY = "__ENTRY__"
EXIT = "__EXIT__"


def median(values: Iterable[float]) -> float:
    values = list(values)
    if not values:
        return 0.0
    return float(statistics.median(values))


def mad(values: Iterable[float], center: Optional[float] = None) -> float:
    """Median absolute deviation around `center` (default: the median)."""
    values = list(values)
    if not values:
        return 0.0
    mu = median(values) if center is None else center
    return median(abs(v - mu) for v in values)


def robust_sigma(values: Iterable[float], center: Optional[float] = None) -> float:
    return MAD_SCALE * mad(values, center)


def threshold_for(sensitivity: str) -> float:
    return SENSITIVITY_THRESHOLDS.get(sensitivity, SENSITIVITY_THRESHOLDS["medium"])


def detect_timeseries_anomalies(
    series: list[dict[str, Any]],
    sensitivity: str = "medium",
    metric: str = "visits",
) -> list[dict[str, Any]]:
    """
    Flag buckets whose value sits far from the median of the preceding
    7 buckets. Needs at least 8 points; flat baselines are skipped.
    """
    threshold = threshold_for(sensitivity)
    anomalies: list[dict[str, Any]] = []
    if len(series) <= ROLLING_WINDOW:
        return anomalies

    for i in range(ROLLING_WINDOW, len(series)):
        current = series[i]
        baseline = [float(point["value"]) for point in series[i - ROLLING_WINDOW:i]]
        expected = median(baseline)
        sigma = robust_sigma(baseline, expected)
        if sigma == 0:
            continue
        value = float(current["value"])
        z = abs(value - expected) / sigma
        if z >= threshold:
            anomalies.append({
                "bucket": current["bucket"],
                "metric": metric,
                "value": value,
                "expected": expected,
                "z": z,
                "direction": "spike" if value > expected else "dip",
            })
    return anomalies


def _retention_severity(effect: float, abs_z: float) -> str:
    if effect >= 0.2 or abs_z >= 3:
        return "high"
    if effect >= 0.1 or abs_z >= 2.5:
        return "medium"
    return "low"


def detect_retention_dips(
    rows: Iterable[dict[str, Any]],
    max_k: int = 12,
    min_cohort_size: int = 50,
    min_effect_size: float = 0.15,
    sensitivity: str = "medium",
) -> dict[str, Any]:
    """
    Compare each cohort's retention at offset k against the median retention
    of all sufficiently large cohorts at the same k.

    `rows` are `{cohort_start, k, active_users}`; k == 0 gives the cohort size.
    """
    z_threshold = threshold_for(sensitivity)

    sizes: dict[str, int] = {}
    actives: dict[str, dict[int, int]] = defaultdict(dict)
    for row in rows:
        cohort = str(row["cohort_start"])
        k = int(row["k"])
        users = int(row["active_users"] or 0)
        if k == 0:
            sizes[cohort] = users
        elif 0 < k <= max_k:
            actives[cohort][k] = users
        sizes.setdefault(cohort, 0)

    analyzed = {cohort: size for cohort, size in sizes.items() if size >= min_cohort_size and size > 0}

    rates_by_k: dict[int, list[tuple[str, float, int]]] = defaultdict(list)
    for cohort, size in analyzed.items():
        for k, active in actives[cohort].items():
            rates_by_k[k].append((cohort, active / size, size))

    baselines: dict[int, tuple[float, float]] = {}
    for k, entries in rates_by_k.items():
        rates = [rate for _, rate, _ in entries]
        base = median(rates)
        baselines[k] = (base, robust_sigma(rates, base))

    findings = []
    for k, entries in rates_by_k.items():
        baseline, sigma = baselines[k]
        for cohort, rate, size in entries:
            effect = max(0.0, baseline - rate)
            z = (rate - baseline) / sigma if sigma > 0 else 0.0
            if effect >= min_effect_size and abs(z) >= z_threshold:
                findings.append({
                    "type": "retention_dip",
                    "cohort_start": cohort,
                    "period_number": k,
                    "metric": "retention",
                    "value": rate,
                    "expected": baseline,
                    "effect_size": effect,
                    "z_score": z,
                    "support": size,
                    "severity": _retention_severity(effect, abs(z)),
                    "drop_percentage": effect * 100,
                    "actual_percentage": rate * 100,
                    "baseline_percentage": baseline * 100,
                })

    findings.sort(key=lambda f: (
        -max(abs(f["z_score"]), f["effect_size"]),
        -(f["expected"] - f["value"]),
        f["cohort_start"],
    ))

    if findings:
        top = findings[0]
        summary = (
            f"Detected {len(findings)} retention dip(s). Top: cohort {top['cohort_start']} "
            f"at period {top['period_number']} ({top['actual_percentage']:.0f}% vs "
            f"{top['baseline_percentage']:.0f}%)."
        )
    else:
        summary = "No significant retention dips detected for the selected period."

    baseline_summary = [
        {
            "period_number": k,
            "median_retention": base,
            "normal_range": [max(0.0, base - sigma), min(1.0, base + sigma)],
        }
        for k, (base, sigma) in sorted(baselines.items())
    ]
    return {
        "findings": findings,
        "summary": summary,
        "extras": {
            "cohort_count": len(analyzed),
            "total_users_analyzed": sum(analyzed.values()),
            "baseline_summary": baseline_summary,
        },
    }


def yates_chi_square(a: float, b: float, c: float, d: float) -> float:
    """
    Yates-corrected chi-square statistic of the 2x2 table [[a, b], [c, d]].

    a = current label, b = current rest, c = previous label, d = previous rest.
    """
    n = a + b + c + d
    margins = (a + b) * (c + d) * (a + c) * (b + d)
    if n == 0 or margins == 0:
        return 0.0
    num = max(0.0, abs(a * d - b * c) - n / 2)
    return (n * num ** 2) / margins


def chi_square_p_value(a: float, b: float, c: float, d: float) -> float:
    """Upper-tail p-value (1 degree of freedom) of `yates_chi_square`."""
    return float(stats.chi2.sf(yates_chi_square(a, b, c, d), df=1))


def _label_totals(rows: Iterable[dict[str, Any]]) -> dict[str, float]:
    totals: dict[str, float] = defaultdict(float)
    for row in rows:
        totals[row.get("label") or "unknown"] += float(row.get("value") or 0)
    return totals


def detect_segment_shifts(
    current_rows: Iterable[dict[str, Any]],
    previous_rows: Iterable[dict[str, Any]],
    segment_by: str,
    metric: str = "visits",
    min_effect_size: float = 0.01,
    min_share: float = 0.05,
    min_support: int = 100,
    use_chi_square: bool = False,
) -> list[dict[str, Any]]:
    """Share changes per label between a current and a previous window."""
    current = _label_totals(current_rows)
    previous = _label_totals(previous_rows)
    current_total = sum(current.values())
    previous_total = sum(previous.values())
    if current_total < min_support or previous_total < min_support:
        return []

    findings = []
    for label in sorted(current.keys() | previous.keys()):
        ci = current.get(label, 0.0)
        pi = previous.get(label, 0.0)
        share = ci / current_total if current_total > 0 else 0.0
        prev_share = pi / previous_total if previous_total > 0 else 0.0
        if share < min_share and prev_share < min_share:
            continue

        delta = share - prev_share
        if abs(delta) < min_effect_size:
            continue

        p_value = None
        if use_chi_square:
            p_value = chi_square_p_value(ci, current_total - ci, pi, previous_total - pi)
            if p_value >= 0.05:
                continue

        findings.append({
            "type": "shift",
            "metric": metric,
            "segment_by": segment_by,
            "label": label,
            "value": share,
            "expected": prev_share,
            "effect_size": abs(delta),
            "p_value": p_value,
            "support_curr": current_total,
            "support_prev": previous_total,
            "explanation": (
                f"{segment_by}={label} share {'increased' if delta >= 0 else 'decreased'} "
                f"by {abs(delta) * 100:.0f}pp ({prev_share * 100:.0f}% → {share * 100:.0f}%)"
            ),
            "recommended_checks": [
                "inspect campaigns/referrers",
                "review geo/device targeting",
                "check landing page relevance",
            ],
        })
    return findings


def rank_segment_shifts(findings: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(
        findings,
        key=lambda f: (-f["effect_size"], -(f["support_curr"] + f["support_prev"]), f["segment_by"], f["label"]),
    )


def detect_path_dropoffs(
    rows: Iterable[dict[str, Any]],
    min_support: int = 100,
    min_effect_size: float = 0.15,
    sensitivity: str = "medium",
    include_step_dropoffs: bool = True,
) -> dict[str, Any]:
    """
    Exit-rate outliers across pages, and next-step choices that fall well
    below the median choice from the same page.
    """
    rows = list(rows)
    k = threshold_for(sensitivity)

    totals: dict[str, int] = defaultdict(int)
    exits: dict[str, int] = defaultdict(int)
    pairs: dict[tuple[str, str], int] = defaultdict(int)
    for row in rows:
        a = row.get("from_path") or ENTRY
        b = row.get("to_path") or EXIT
        transitions = int(row.get("transitions") or 0)
        totals[a] += transitions
        if b == EXIT:
            exits[a] += transitions
        pairs[(a, b)] += transitions

    exit_rates = []
    for path, total_from in sorted(totals.items()):
        if path == ENTRY or total_from < min_support:
            continue
        exit_rates.append({
            "path": path,
            "rate": exits[path] / total_from if total_from > 0 else 0.0,
            "support": total_from,
        })

    rates = [item["rate"] for item in exit_rates]
    base = median(rates)
    sigma = robust_sigma(rates, base)

    findings = []
    for item in exit_rates:
        z = (item["rate"] - base) / sigma if sigma > 0 else 0.0
        delta = item["rate"] - base
        if delta >= min_effect_size and abs(z) >= k:
            findings.append({
                "type": "dropoff",
                "metric": "exit_rate",
                "path_sequence": [item["path"]],
                "value": item["rate"],
                "expected": base,
                "effect_size": delta,
                "z": z,
                "support": item["support"],
                "explanation": (
                    f"Exit rate on {item['path']} is {item['rate'] * 100:.0f}% vs {base * 100:.0f}% baseline"
                ),
                "recommended_checks": [
                    "inspect UX & copy",
                    "check page speed & errors",
                    "review pricing or form friction",
                ],
            })

    if include_step_dropoffs:
        by_source: dict[str, list[tuple[str, float, int]]] = defaultdict(list)
        for (a, b), count in sorted(pairs.items()):
            if a == ENTRY or b == EXIT:
                continue
            total_from = totals[a]
            if total_from < min_support:
                continue
            by_source[a].append((b, count / total_from if total_from > 0 else 0.0, count))

        for a, choices in by_source.items():
            if len(choices) < 2:
                continue
            probabilities = [p for _, p, _ in choices]
            med = median(probabilities)
            sigma_a = robust_sigma(probabilities, med)
            for b, p, support in choices:
                delta = med - p
                z = (p - med) / sigma_a if sigma_a > 0 else 0.0
                if support >= min_support and delta >= min_effect_size and abs(z) >= k:
                    findings.append({
                        "type": "dropoff",
                        "metric": "transition_rate",
                        "path_sequence": [a, b],
                        "value": p,
                        "expected": med,
                        "effect_size": delta,
                        "z": z,
                        "support": support,
                        "explanation": (
                            f"Transition {a} → {b} is {p * 100:.0f}% vs {med * 100:.0f}% among next-step choices"
                        ),
                        "recommended_checks": [
                            "verify CTA to next step",
                            "check layout changes",
                            "analyze referrer expectations",
                        ],
                    })

    findings.sort(key=lambda f: (
        -max(abs(f["z"]), f["effect_size"]),
        -abs(f["value"] - f["expected"]),
        f["path_sequence"],
    ))

    if findings:
        top = findings[0]
        summary = f"Detected {len(findings)} drop-off(s). Top: {top['metric']} at {' → '.join(top['path_sequence'])}"
    else:
        summary = "No significant path drop-offs detected for the selected period."

    return {
        "findings": findings,
        "summary": summary,
        "extras": {"exit_rates": exit_rates, "transitions": rows},
    }
