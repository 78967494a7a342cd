from __future__ import annotations


def _issue(sev: str, cat: str = "x"):
    from doctor.core.models import Issue

    return Issue(severity=sev, category=cat, message=cat)


def test_empty_is_perfect() -> None:
    from doctor.diagnostics.scoring import score_issues

    s = score_issues([])
    assert (s.score, s.level, s.status) == (100, "EXCELLENT", "HEALTHY")


def test_penalties_and_levels() -> None:
    from doctor.diagnostics.scoring import score_counts

    assert score_counts(warning=1).score == 90
    assert score_counts(warning=1).status == "WARNING"
    assert score_counts(critical=1).score == 75
    assert score_counts(critical=1).level == "GOOD"
    assert score_counts(critical=1).status == "CRITICAL"
    assert score_counts(critical=2).level == "FAIR"
    assert score_counts(critical=3).level == "POOR"
    assert score_counts(info=3).score == 85
    assert score_counts(info=3).level == "EXCELLENT"
    assert score_counts(info=3).status == "HEALTHY"


def test_score_is_clamped_and_non_increasing() -> None:
    from doctor.diagnostics.scoring import score_issues

    issues = []
    prev = 100
    for sev in ["CRITICAL", "WARNING", "INFO"] * 6:
        issues.append(_issue(sev))
        s = score_issues(issues).score
        assert 0 <= s <= prev
        prev = s
    assert prev == 0


def test_aggregate_adds_correlation_penalty() -> None:
    from doctor.core.models import CorrelationFinding, Diagnosis, Recommendation
    from doctor.diagnostics.scoring import aggregate_score, score_diagnosis

    a = Diagnosis(criticals=[_issue("CRITICAL", "disk_critical")])
    b = Diagnosis(criticals=[_issue("CRITICAL", "compaction_score_very_high")])
    finding = CorrelationFinding(
        rule_name="r",
        impact_level="HIGH",
        explanation="",
        remediation=Recommendation(priority="HIGH", category="c", title="t"),
    )
    plain = aggregate_score([a, b])
    assert plain.score == 50
    agg = aggregate_score([a, b], [finding])
    assert agg.score == 35
    assert agg.score < min(score_diagnosis(a).score, score_diagnosis(b).score)


def test_aggregate_of_placeholders_is_perfect() -> None:
    from doctor.diagnostics.manifest import error_diagnosis
    from doctor.diagnostics.scoring import aggregate_score

    s = aggregate_score([error_diagnosis("storage", "t", "boom")])
    assert s.score == 100
