# gate.py
"""
Gate evaluation: turn a job's exit status and optional scanner report into
a stage outcome.

The gate is independent of the raw exit code when a report is
present: many scanners exit 0 while reporting HIGH/CRITICAL findings, and
some exit non-zero on any finding at all. The report is the source of truth.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ReportError
from .model import FailureKind, Finding, Report, Severity

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Report schema
# ---------------------------------------------------------------------

class FindingModel(BaseModel):
    severity: Severity
    category: str = "general"
    location: str = ""
    title: str = ""
    rule_id: Optional[str] = None

    @field_validator("severity", mode="before")
    @classmethod
    def _parse_severity(cls, value: Any) -> Severity:
        return Severity.parse(value)

    @field_validator("location", mode="before")
    @classmethod
    def _flatten_location(cls, value: Any) -> str:
        # {"path": "app.py", "line": 12} -> "app.py:12"
        if isinstance(value, dict):
            path = value.get("path") or value.get("file") or value.get("uri") or ""
            line = value.get("line") or value.get("start_line")
            return f"{path}:{line}" if line else str(path)
        return "" if value is None else str(value)

    def to_finding(self) -> Finding:
        return Finding(
            severity=self.severity,
            category=self.category,
            location=self.location,
            title=self.title,
            rule_id=self.rule_id,
        )


class ReportModel(BaseModel):
    tool: Optional[str] = None
    findings: List[FindingModel] = Field(default_factory=list)


_SARIF_LEVELS = {
    "error": Severity.HIGH,
    "warning": Severity.MEDIUM,
    "note": Severity.LOW,
    "none": Severity.INFO,
}


def _from_security_severity(value: Any) -> Optional[Severity]:
    """CVSS-style score used by GitHub code scanning: 9.0+ critical, 7.0+ high, 4.0+ medium."""
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    if score >= 9.0:
        return Severity.CRITICAL
    if score >= 7.0:
        return Severity.HIGH
    if score >= 4.0:
        return Severity.MEDIUM
    if score > 0.0:
        return Severity.LOW
    return Severity.INFO


def _from_sarif(doc: dict) -> dict:
    """Flatten a SARIF 2.1 log into the native report shape."""
    findings: List[dict] = []
    tool_name = None
    for run in doc.get("runs") or []:
        driver = ((run.get("tool") or {}).get("driver") or {})
        tool_name = tool_name or driver.get("name")
        rule_props = {
            rule.get("id"): rule.get("properties") or {}
            for rule in driver.get("rules") or []
            if isinstance(rule, dict)
        }
        for result in run.get("results") or []:
            props = result.get("properties") or {}
            # result score, then the rule's score, then an explicit label, then the level
            severity: Union[str, Severity, None] = _from_security_severity(
                props.get("security-severity", rule_props.get(result.get("ruleId"), {}).get("security-severity"))
            )
            if severity is None:
                severity = props.get("severity") or _SARIF_LEVELS.get(result.get("level", "warning"), Severity.MEDIUM)
            location = ""
            locations = result.get("locations") or []
            if locations:
                physical = locations[0].get("physicalLocation") or {}
                uri = (physical.get("artifactLocation") or {}).get("uri", "")
                line = (physical.get("region") or {}).get("startLine")
                location = f"{uri}:{line}" if line else uri
            findings.append(
                {
                    "severity": severity,
                    "category": props.get("category") or result.get("ruleId") or "general",
                    "location": location,
                    "title": (result.get("message") or {}).get("text", ""),
                    "rule_id": result.get("ruleId"),
                }
            )
    return {"tool": tool_name, "findings": findings}


def parse_report(data: bytes | str) -> Report:
    """
    Parse a scanner report.

    Accepted shapes:
      - {"tool": "...", "findings": [{...}, ...]}
      - [{...}, ...]                           (bare list of findings)
      - SARIF 2.1 ({"version": "2.1.0", "runs": [...]})

    Raises ReportError if the document cannot be parsed.
    """
    try:
        doc = json.loads(data)
    except (ValueError, UnicodeDecodeError) as e:
        raise ReportError(f"report is not valid JSON: {e}") from e

    if isinstance(doc, list):
        doc = {"findings": doc}
    elif isinstance(doc, dict) and "runs" in doc and "findings" not in doc:
        doc = _from_sarif(doc)

    if not isinstance(doc, dict):
        raise ReportError(f"report must be an object or a list, got {type(doc).__name__}")

    try:
        model = ReportModel.model_validate(doc)
    except (ValidationError, ValueError) as e:
        raise ReportError(f"report does not match the findings schema: {e}") from e

    return Report(findings=tuple(f.to_finding() for f in model.findings), tool=model.tool)


# ---------------------------------------------------------------------
# Decision
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class GateDecision:
    passed: bool
    kind: FailureKind | None = None
    message: str = ""
    findings: Tuple[Finding, ...] = ()
    blocking: Tuple[Finding, ...] = field(default_factory=tuple)


class GateEvaluator:
    """Maps (exit code, report, threshold) to passed/failed."""

    def evaluate(
        self,
        exit_code: int | None,
        report: Report | None,
        threshold: Severity,
        *,
        report_expected: bool = False,
    ) -> GateDecision:
        if report is not None:
            blocking = report.at_or_above(threshold)
            if blocking:
                worst = max(f.severity for f in blocking)
                return GateDecision(
                    passed=False,
                    kind=FailureKind.GATE_REJECTED,
                    message=(
                        f"{len(blocking)} finding(s) at or above {threshold.name} "
                        f"(worst: {worst.name}, exit code {exit_code})"
                    ),
                    findings=report.findings,
                    blocking=blocking,
                )
            return GateDecision(
                passed=True,
                message=f"{len(report.findings)} finding(s), none at or above {threshold.name}",
                findings=report.findings,
            )

        if exit_code != 0:
            return GateDecision(
                passed=False,
                kind=FailureKind.JOB_CRASH,
                message=f"job exited with code {exit_code} and produced no report",
            )

        if report_expected:
            return GateDecision(
                passed=False,
                kind=FailureKind.JOB_CRASH,
                message="scanner exited 0 but produced no parseable report",
            )

        return GateDecision(passed=True, message="job exited 0")
