"""Deterministic scoring: (component, severity, eligibility) -> points.

No I/O happens here. The classifier proposes keys; this module resolves them
against the organization's configuration and computes the score, so the
whole rule set can be replayed from stored verdicts.
"""
from __future__ import annotations

from dataclasses import dataclass

OTHER_KEY = "OTHER"


class ConfigurationError(Exception):
    """Scoring configuration is missing (no components, severities or ruleset)."""


@dataclass(frozen=True)
class ComponentSpec:
    key: str
    multiplier: float = 1.0
    name: str = ""
    description: str = ""
    id: int | None = None


@dataclass(frozen=True)
class SeveritySpec:
    key: str
    base_points: float
    sort_order: int = 0
    name: str = ""
    description: str = ""
    id: int | None = None


@dataclass(frozen=True)
class Eligibility:
    issue: bool = False
    fix_implementation: bool = False
    pr_linked: bool = False
    tests: bool = False

    @property
    def all_passed(self) -> bool:
        return self.issue and self.fix_implementation and self.pr_linked and self.tests


@dataclass(frozen=True)
class ScoreResult:
    component: ComponentSpec
    severity: SeveritySpec
    eligibility: Eligibility
    is_eligible: bool
    base_points: float
    multiplier: float
    final_score: float
    component_fallback: bool = False
    severity_fallback: bool = False


_SYNTHETIC_OTHER = ComponentSpec(key=OTHER_KEY, multiplier=1.0, name="Other")


def resolve_component(key: str | None, components: list[ComponentSpec]) -> tuple[ComponentSpec, bool]:
    """Exact key match, else the OTHER sentinel. Returns (component, fell_back)."""
    by_key = {c.key: c for c in components}
    if key and key in by_key:
        return by_key[key], False
    return by_key.get(OTHER_KEY, _SYNTHETIC_OTHER), True


def resolve_severity(key: str | None, severities: list[SeveritySpec]) -> tuple[SeveritySpec, bool]:
    """Exact key match, else the lowest-ranked severity. Returns (severity, fell_back)."""
    if not severities:
        raise ConfigurationError("No severity levels configured")
    for s in severities:
        if key and s.key == key:
            return s, False
    lowest = max(severities, key=lambda s: (s.sort_order, -s.base_points))
    return lowest, True


def score(
    component_key: str | None,
    severity_key: str | None,
    eligibility: Eligibility,
    components: list[ComponentSpec],
    severities: list[SeveritySpec],
) -> ScoreResult:
    if not components:
        raise ConfigurationError("No components configured")
    if not severities:
        raise ConfigurationError("No severity levels configured")

    component, component_fallback = resolve_component(component_key, components)
    severity, severity_fallback = resolve_severity(severity_key, severities)
    eligible = eligibility.all_passed
    base = float(severity.base_points)
    multiplier = float(component.multiplier)
    return ScoreResult(
        component=component,
        severity=severity,
        eligibility=eligibility,
        is_eligible=eligible,
        base_points=base,
        multiplier=multiplier,
        final_score=base * multiplier if eligible else 0.0,
        component_fallback=component_fallback,
        severity_fallback=severity_fallback,
    )
