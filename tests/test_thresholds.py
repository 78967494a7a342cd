from __future__ import annotations

import pytest


def test_two_level_rule_partitions_the_number_line() -> None:
    from doctor.diagnostics.thresholds import above, evaluate

    rule = above("disk", warning=85, critical=95)
    assert evaluate(rule, 84.99) is None
    assert evaluate(rule, 85).severity == "WARNING"
    assert evaluate(rule, 94.9).severity == "WARNING"
    assert evaluate(rule, 95).severity == "CRITICAL"
    assert evaluate(rule, 1000).severity == "CRITICAL"


def test_below_rule_for_hit_ratios() -> None:
    from doctor.diagnostics.thresholds import below, evaluate

    rule = below("hit", warning=50, critical=30)
    assert evaluate(rule, 20).severity == "CRITICAL"
    assert evaluate(rule, 30).severity == "WARNING"
    assert evaluate(rule, 49.9).severity == "WARNING"
    assert evaluate(rule, 50) is None


def test_non_numeric_values_never_fire() -> None:
    from doctor.diagnostics.thresholds import above, evaluate

    rule = above("x", warning=1, critical=2)
    for v in (None, "", "n/a", True, float("nan"), float("inf")):
        assert evaluate(rule, v) is None
    # Percent strings are accepted.
    assert evaluate(rule, "3%").severity == "CRITICAL"


def test_first_match_wins_and_carries_threshold_category() -> None:
    from doctor.diagnostics.thresholds import MetricRule, Threshold, evaluate

    rule = MetricRule(
        "disk_usage_pct",
        (
            Threshold("CRITICAL", ">=", 98, category="disk_emergency"),
            Threshold("CRITICAL", ">=", 95, category="disk_critical"),
            Threshold("WARNING", ">=", 85, category="disk_warning"),
        ),
    )
    assert rule.category_for(evaluate(rule, 99)) == "disk_emergency"
    assert rule.category_for(evaluate(rule, 96)) == "disk_critical"
    assert rule.category_for(evaluate(rule, 90)) == "disk_warning"


def test_rule_rejects_bad_ordering_and_empty_thresholds() -> None:
    from doctor.diagnostics.thresholds import MetricRule, Threshold

    with pytest.raises(ValueError):
        MetricRule("x", ())
    with pytest.raises(ValueError):
        MetricRule("x", (Threshold("WARNING", ">=", 1), Threshold("CRITICAL", ">=", 2)))
    with pytest.raises(ValueError):
        Threshold("WARNING", "==", 1)


def test_rule_table_is_read_only_and_unique() -> None:
    from doctor.diagnostics.thresholds import above, rule_table

    table = rule_table(above("a", warning=1, critical=2))
    with pytest.raises(TypeError):
        table["b"] = above("b", warning=1, critical=2)  # type: ignore[index]
    with pytest.raises(ValueError):
        rule_table(above("a", warning=1, critical=2), above("a", warning=3, critical=4))


def test_ratio_pct_guards_zero_denominator() -> None:
    from doctor.diagnostics.thresholds import ratio_pct

    assert ratio_pct(20, 100) == 20.0
    assert ratio_pct(1, 0) is None
    assert ratio_pct(1, None) is None


def test_every_expert_rule_table_is_well_formed() -> None:
    from doctor.diagnostics.registry import get_default_registry
    from doctor.diagnostics.thresholds import MetricRule

    for expert in get_default_registry().experts:
        assert expert.rules, expert.name
        for name, rule in expert.rules.items():
            assert isinstance(rule, MetricRule)
            assert rule.metric == name
