import pytest

from accessaudit.audit.patterns import (
    calculate_pattern_stats,
    calculate_severity_pattern_summary,
    count_unique_patterns,
    get_pattern_groups,
    group_by_pattern,
    normalize_selector,
    normalize_xpath,
)


@pytest.mark.parametrize(
    "selector, expected",
    [
        (".card:nth-child(3) > img", ".card > img"),
        ("ul > li:first-child > a", "ul > li > a"),
        ("#item-12 > a", "#item-* > a"),
        ("#row_7", "#row_*"),
        (".btn-a1b2c3d4", ".btn-*"),
        ('div[data-index="5"] > span', "div[data-index] > span"),
        ("  > main   section > ", "main section"),
        ("", ""),
        (None, ""),
    ],
)
def test_normalize_selector(selector, expected):
    assert normalize_selector(selector) == expected


def test_normalize_xpath():
    assert normalize_xpath("/html[1]/body[1]/div[3]/img[2]") == "/html/body/div/img"
    assert normalize_xpath("//div[@id='card-12']") == "//div[@id='*']"


def test_group_by_pattern_prefers_full_path():
    elements = [
        {"selector": "#x", "full_path": ".card:nth-child(1) > img"},
        {"selector": "#y", "fullPath": ".card:nth-child(2) > img"},
        {"selector": "footer > img"},
        {"html": "<img>"},
    ]
    groups = group_by_pattern(elements)
    assert list(groups) == [".card > img", "footer > img"]
    assert groups[".card > img"] == [".card:nth-child(1) > img", ".card:nth-child(2) > img"]
    assert count_unique_patterns(elements) == 2


def test_pattern_groups_and_stats():
    elements = [{"selector": f"li:nth-child({i}) > a"} for i in range(1, 6)] + [{"selector": "nav > a"}]
    groups = get_pattern_groups(elements)
    assert groups[0]["pattern"] == "li > a"
    assert groups[0]["occurrences"] == 5
    assert len(groups[0]["examples"]) == 3

    stats = calculate_pattern_stats(elements)
    assert stats["total_occurrences"] == 6
    assert stats["unique_patterns"] == 2
    assert stats["template_ratio"] == pytest.approx(5 / 6)
    assert calculate_pattern_stats([])["template_ratio"] == 0.0


def test_severity_pattern_summary():
    violations = [
        {
            "impact": "critical",
            "unique_elements": [
                {"selector": ".card:nth-child(1) > img"},
                {"selector": ".card:nth-child(2) > img"},
            ],
        },
        {"impact": "minor", "unique_elements": [{"selector": "#a"}]},
        {"impact": "bogus", "unique_elements": [{"selector": "#b"}]},
    ]
    summary = calculate_severity_pattern_summary(violations)
    assert summary["critical"] == {"occurrences": 2, "patterns": 1}
    assert summary["minor"] == {"occurrences": 2, "patterns": 2}
    assert summary["serious"] == {"occurrences": 0, "patterns": 0}
    assert summary["total"] == {"occurrences": 4, "patterns": 3}
