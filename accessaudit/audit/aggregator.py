# accessaudit/audit/aggregator.py
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..schemas import SEVERITIES, AuditSummary, PatternCounts, Severity
from .auditor import RawViolation
from .patterns import calculate_severity_pattern_summary
from .urls import canonicalize

logger = logging.getLogger(__name__)

AFFECTED_PAGES_CAP = 50
UNIQUE_ELEMENTS_CAP = 20
HTML_KEY_LENGTH = 500

IMPACT_BASE = {
    Severity.CRITICAL.value: 40,
    Severity.SERIOUS.value: 30,
    Severity.MODERATE.value: 20,
    Severity.MINOR.value: 10,
}

PageViolations = Tuple[str, Sequence[RawViolation]]


@dataclass
class UniqueElement:
    html: str
    selector: str
    full_path: Optional[str]
    xpath: Optional[str]
    count: int = 0
    pages: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AggregatedViolation:
    fingerprint: str
    rule_id: str
    impact: Severity
    help: str
    description: str
    help_url: Optional[str]
    occurrences: int
    page_count: int
    affected_pages: List[str]
    unique_elements: List[UniqueElement]
    sample_selector: str
    sample_html: str
    sample_page_url: str
    priority: int

    def to_record(self) -> Dict[str, Any]:
        """Plain dict for persistence (unique elements as dicts)."""
        data = asdict(self)
        data["impact"] = self.impact.value
        return data


def calculate_priority(impact, occurrences: int, page_count: int) -> int:
    """
    Triage priority 0..100: a severity base plus capped frequency and spread
    bonuses. Never decreases when any input grows.
    """
    impact = getattr(impact, "value", impact)
    base = IMPACT_BASE.get(impact, IMPACT_BASE[Severity.MINOR.value])
    frequency = min(max(occurrences, 0) * 2, 30)
    spread = min(max(page_count, 0) * 3, 30)
    return min(base + frequency + spread, 100)


def aggregate(
    per_page: Iterable[PageViolations],
    affected_pages_cap: int = AFFECTED_PAGES_CAP,
    unique_elements_cap: int = UNIQUE_ELEMENTS_CAP,
) -> Dict[str, AggregatedViolation]:
    """
    Roll raw violations up by fingerprint.

    The result does not depend on the order pages (or violations within a
    page) arrive in: page lists and unique elements are sorted, and the
    representative sample is the occurrence that sorts first.
    """
    groups: Dict[str, List[Tuple[str, RawViolation]]] = defaultdict(list)
    for page_url, violations in per_page:
        url = canonicalize(page_url)
        for v in violations or ():
            groups[v.fingerprint].append((url, v))

    out: Dict[str, AggregatedViolation] = {}
    for fingerprint in sorted(groups):
        entries = sorted(groups[fingerprint], key=lambda e: (e[0], e[1].selector, e[1].html))
        sample_url, sample = entries[0]

        pages = sorted({url for url, _ in entries})

        elements: Dict[str, UniqueElement] = {}
        element_pages: Dict[str, set] = defaultdict(set)
        for url, v in entries:
            key = (v.html or "")[:HTML_KEY_LENGTH]
            el = elements.get(key)
            if el is None:
                el = elements[key] = UniqueElement(
                    html=key, selector=v.selector, full_path=v.full_path, xpath=v.xpath
                )
            el.count += 1
            element_pages[key].add(url)
        for key, el in elements.items():
            el.pages = sorted(element_pages[key])

        out[fingerprint] = AggregatedViolation(
            fingerprint=fingerprint,
            rule_id=sample.rule_id,
            impact=Severity(sample.impact),
            help=sample.help,
            description=sample.description,
            help_url=sample.help_url,
            occurrences=len(entries),
            page_count=len(pages),
            affected_pages=pages[:affected_pages_cap],
            unique_elements=[elements[k] for k in sorted(elements)][:unique_elements_cap],
            sample_selector=sample.selector,
            sample_html=sample.html,
            sample_page_url=sample_url,
            priority=calculate_priority(sample.impact, len(entries), len(pages)),
        )

    logger.debug("Aggregated %d fingerprints", len(out))
    return out


def summarize_counts(per_page: Iterable[PageViolations]) -> Dict[str, int]:
    """Raw occurrence counts per severity, plus total."""
    counts = {s.value: 0 for s in SEVERITIES}
    for _, violations in per_page:
        for v in violations or ():
            counts[Severity(v.impact).value] += 1
    counts["total"] = sum(counts[s.value] for s in SEVERITIES)
    return counts


def _get(obj: Any, name: str, default=None):
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)


def build_summary(aggregated: Iterable[Any]) -> AuditSummary:
    """
    Summary from aggregated violations (dataclasses or stored rows): severity
    occurrence totals plus unique template patterns per severity.
    """
    aggregated = list(aggregated)
    counts = {s.value: 0 for s in SEVERITIES}
    for v in aggregated:
        impact = getattr(_get(v, "impact"), "value", _get(v, "impact")) or Severity.MINOR.value
        if impact not in counts:
            impact = Severity.MINOR.value
        counts[impact] += int(_get(v, "occurrences", 0) or 0)

    pattern_summary = calculate_severity_pattern_summary(aggregated)
    patterns = PatternCounts(
        **{s.value: pattern_summary[s.value]["patterns"] for s in SEVERITIES},
        total=pattern_summary["total"]["patterns"],
    )
    return AuditSummary(**counts, total=sum(counts.values()), patterns=patterns)
