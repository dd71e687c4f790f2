# accessaudit/audit/patterns.py
"""
Template pattern grouping.

The same violation repeated by a reused component (".card:nth-child(1) > img",
".card:nth-child(2) > img", ...) is collapsed into a single pattern
(".card > img") so scores reflect the number of things to fix rather than the
number of places they appear.
"""
import re
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..schemas import SEVERITIES

# Applied in order; later steps see the output of earlier ones.
_SELECTOR_STEPS = [
    (re.compile(r":nth-child\(\d+\)"), ""),
    (re.compile(r":nth-of-type\(\d+\)"), ""),
    (re.compile(r":nth-last-child\(\d+\)"), ""),
    (re.compile(r":nth-last-of-type\(\d+\)"), ""),
    (re.compile(r":first-child"), ""),
    (re.compile(r":last-child"), ""),
    (re.compile(r":first-of-type"), ""),
    (re.compile(r":last-of-type"), ""),
    (re.compile(r"#([\w-]+)-\d+"), r"#\1-*"),
    (re.compile(r"#([\w-]+)_\d+"), r"#\1_*"),
    (re.compile(r"#\d+"), "#*"),
    (re.compile(r"\.([\w-]+)-\d+"), r".\1-*"),
    (re.compile(r"\.([\w-]+)_\d+"), r".\1_*"),
    (re.compile(r"\.([\w-]+)-[a-f0-9]{6,}", re.IGNORECASE), r".\1-*"),
    (re.compile(r'\[([^\]=]+)="?\d+"?\]'), r"[\1]"),
    (re.compile(r'\[([^\]=]+)="[^"]*\d+[^"]*"\]'), r"[\1]"),
]

_XPATH_STEPS = [
    (re.compile(r"\[\d+\]"), ""),
    (re.compile(r"\[@([^\]=]+)='?\d+'?\]"), r"[@\1]"),
    (re.compile(r"@id='[^']*\d+[^']*'"), "@id='*'"),
    (re.compile(r"contains\(@class,\s*'[^']*\d+[^']*'\)"), "contains(@class,'*')"),
]

_WS = re.compile(r"\s+")
_LEADING_GT = re.compile(r"^\s*>\s*")
_TRAILING_GT = re.compile(r"\s*>\s*$")


def normalize_selector(selector: Optional[str]) -> str:
    if not selector:
        return ""
    out = selector
    for pattern, repl in _SELECTOR_STEPS:
        out = pattern.sub(repl, out)
    out = _WS.sub(" ", out).strip()
    out = _LEADING_GT.sub("", out)
    out = _TRAILING_GT.sub("", out)
    return out


def normalize_xpath(xpath: Optional[str]) -> str:
    if not xpath:
        return ""
    out = xpath
    for pattern, repl in _XPATH_STEPS:
        out = pattern.sub(repl, out)
    return _WS.sub(" ", out).strip()


def _field(element: Any, *names: str) -> Optional[str]:
    for name in names:
        if isinstance(element, Mapping):
            value = element.get(name)
        else:
            value = getattr(element, name, None)
        if value:
            return value
    return None


def _element_path(element: Any, use_xpath: bool) -> Optional[str]:
    if use_xpath:
        return _field(element, "xpath", "xPath")
    return _field(element, "full_path", "fullPath", "selector")


def group_by_pattern(elements: Iterable[Any], use_xpath: bool = False) -> "OrderedDict[str, List[str]]":
    """Map normalized pattern -> original paths, in first-seen order."""
    groups: "OrderedDict[str, List[str]]" = OrderedDict()
    for element in elements or ():
        original = _element_path(element, use_xpath)
        if not original:
            continue
        normalized = normalize_xpath(original) if use_xpath else normalize_selector(original)
        if not normalized:
            continue
        groups.setdefault(normalized, []).append(original)
    return groups


def count_unique_patterns(elements: Iterable[Any], use_xpath: bool = False) -> int:
    return len(group_by_pattern(elements, use_xpath))


def get_pattern_groups(elements: Iterable[Any], use_xpath: bool = False) -> List[Dict[str, Any]]:
    groups = [
        {"pattern": pattern, "occurrences": len(originals), "examples": originals[:3]}
        for pattern, originals in group_by_pattern(elements, use_xpath).items()
    ]
    # stable sort keeps first-seen order among ties
    groups.sort(key=lambda g: g["occurrences"], reverse=True)
    return groups


def calculate_pattern_stats(elements: Iterable[Any], use_xpath: bool = False) -> Dict[str, Any]:
    groups = get_pattern_groups(elements, use_xpath)
    total = sum(g["occurrences"] for g in groups)
    templated = sum(g["occurrences"] for g in groups if g["occurrences"] > 1)
    return {
        "total_occurrences": total,
        "unique_patterns": len(groups),
        "by_pattern": groups,
        "template_ratio": (templated / total) if total else 0.0,
    }


def calculate_severity_pattern_summary(
    violations: Iterable[Any], use_xpath: bool = False
) -> Dict[str, Dict[str, int]]:
    """
    Per-severity {occurrences, patterns} over aggregated violations.

    `occurrences` counts unique elements; `patterns` counts the distinct
    normalized paths among them.
    """
    result = {s.value: {"occurrences": 0, "patterns": 0} for s in SEVERITIES}
    by_severity: Dict[str, List[Any]] = {s.value: [] for s in SEVERITIES}

    for v in violations or ():
        impact = _field(v, "impact") or "minor"
        impact = getattr(impact, "value", impact)
        if impact not in by_severity:
            impact = "minor"
        elements = list(_field(v, "unique_elements") or [])
        by_severity[impact].extend(elements)
        result[impact]["occurrences"] += len(elements)

    for severity, elements in by_severity.items():
        result[severity]["patterns"] = count_unique_patterns(elements, use_xpath)

    result["total"] = {
        "occurrences": sum(result[s.value]["occurrences"] for s in SEVERITIES),
        "patterns": sum(result[s.value]["patterns"] for s in SEVERITIES),
    }
    return result
