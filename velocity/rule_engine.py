"""
Rule merge, evaluation and decision.

Rules are case-insensitive regular expressions run against the full
extracted text. Matches are bucketed by rule type; a single blocker fails the
application, otherwise any condition makes it conditional, otherwise it passes.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from velocity.config import DEFAULT_EVIDENCE_MAX_CHARS
from velocity.models import Decision, Overlay, Rule, RulePack, to_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleMatch:
    rule_id: str
    title: str
    severity: str
    evidence: str
    source: str

    def as_dict(self) -> dict[str, str]:
        return {
            "ruleId": self.rule_id,
            "title": self.title,
            "severity": self.severity,
            "evidence": self.evidence,
            "source": self.source,
        }


@dataclass
class EvaluationResult:
    rules_evaluated: int
    findings: list[RuleMatch] = field(default_factory=list)
    conditions: list[RuleMatch] = field(default_factory=list)
    blockers: list[RuleMatch] = field(default_factory=list)
    skipped_rules: list[str] = field(default_factory=list)

    @property
    def decision(self) -> Decision:
        return decide(blockers=len(self.blockers), conditions=len(self.conditions))

    @property
    def summary(self) -> str:
        return (
            f"Rules evaluated: {self.rules_evaluated}. "
            f"Findings matched: {len(self.findings)}. "
            f"Conditions matched: {len(self.conditions)}. "
            f"Decision: {self.decision}."
        )


@dataclass(frozen=True)
class OverlayInfo:
    applied: bool = False
    overlay_id: str | None = None
    overlay_name: str | None = None
    rule_count: int = 0

    @classmethod
    def from_overlay(cls, overlay: Overlay | None) -> "OverlayInfo":
        if overlay is None:
            return cls()
        return cls(applied=True, overlay_id=overlay.overlay_id, overlay_name=overlay.name, rule_count=len(overlay.rules))


def decide(*, blockers: int, conditions: int) -> Decision:
    if blockers:
        return "fail"
    if conditions:
        return "conditional"
    return "pass"


def merge_rules(base: list[Rule], overlay: list[Rule]) -> list[Rule]:
    """Base rules first, then overlay rules; ids are not de-duplicated."""
    return [replace(r, source="base") for r in base] + [replace(r, source="overlay") for r in overlay]


def compile_rule(pattern: str) -> re.Pattern[str] | None:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error:
        return None


def first_match_evidence(match: re.Match[str], *, max_chars: int = DEFAULT_EVIDENCE_MAX_CHARS) -> str:
    matched = (match.group(0) or "").strip()
    if not matched:
        return "Matched pattern"
    return f'Matched: "{matched[:max_chars]}"'


def evaluate_rules(
    rules: list[Rule],
    text: str,
    *,
    evidence_max_chars: int = DEFAULT_EVIDENCE_MAX_CHARS,
) -> EvaluationResult:
    result = EvaluationResult(rules_evaluated=len(rules))
    for rule in rules:
        pattern = rule.pattern.strip()
        if not pattern:
            continue
        compiled = compile_rule(pattern)
        if compiled is None:
            logger.debug("rule_pattern_invalid rule_id=%s pattern=%r", rule.rule_id, pattern)
            result.skipped_rules.append(rule.rule_id)
            continue
        match = compiled.search(text)
        if match is None:
            continue
        item = RuleMatch(
            rule_id=rule.rule_id,
            title=rule.title,
            severity=rule.effective_severity(),
            evidence=first_match_evidence(match, max_chars=evidence_max_chars),
            source=rule.source,
        )
        if rule.type == "condition":
            result.conditions.append(item)
        elif rule.type == "blocker":
            result.blockers.append(item)
        else:
            result.findings.append(item)
    return result


def build_decision_artifacts(
    *,
    app_id: str,
    company_profile_id: str,
    rule_pack: RulePack,
    program_id: str | None,
    program_name: str | None,
    overlay: OverlayInfo,
    result: EvaluationResult,
    evaluated_at: datetime,
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Return (public, raw) artifacts; raw adds blockers, pack version and notes."""
    findings = [m.as_dict() for m in result.findings]
    conditions = [m.as_dict() for m in result.conditions]
    shared: dict[str, Any] = {
        "appId": app_id,
        "rulePackId": rule_pack.rule_pack_id,
        "companyProfileId": company_profile_id,
        "programId": program_id,
        "programName": program_name,
        "overlayApplied": overlay.applied,
        "overlayId": overlay.overlay_id,
        "overlayName": overlay.overlay_name,
        "overlayRuleCount": overlay.rule_count,
        "decision": result.decision,
        "summary": result.summary,
        "evaluatedAt": to_iso(evaluated_at),
    }
    public = {
        **shared,
        "matchedFindings": findings,
        "findings": findings,
        "conditions": conditions,
    }
    notes = [f"Skipped invalid pattern for rule {rule_id}" for rule_id in result.skipped_rules]
    raw = {
        **shared,
        "rulePackVersion": rule_pack.rule_pack_version,
        "matchedFindings": findings,
        "conditions": conditions,
        "blockers": [m.as_dict() for m in result.blockers],
        "notes": notes,
    }
    return public, raw


def build_fail_closed_artifacts(
    *,
    app_id: str,
    company_profile_id: str | None,
    rule_pack_id: str | None,
    program_id: str | None,
    error: str,
    evaluated_at: datetime,
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Conditional artifacts for a job that could not be evaluated; replaces any earlier run's."""
    shared: dict[str, Any] = {
        "appId": app_id,
        "rulePackId": rule_pack_id,
        "companyProfileId": company_profile_id or None,
        "programId": program_id,
        "programName": None,
        "overlayApplied": False,
        "overlayId": None,
        "overlayName": None,
        "overlayRuleCount": 0,
        "decision": "conditional",
        "summary": f"Rules not evaluated: {error}. Decision: conditional.",
        "evaluatedAt": to_iso(evaluated_at),
        "matchedFindings": [],
        "conditions": [],
        "error": error,
    }
    public = {**shared, "findings": []}
    raw = {**shared, "rulePackVersion": None, "blockers": [], "notes": [error]}
    return public, raw
