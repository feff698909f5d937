from __future__ import annotations

import json

import pytest

from gateci.errors import ReportError
from gateci.gate import GateEvaluator, parse_report
from gateci.model import FailureKind, Finding, Report, Severity


def _report(*severities: Severity) -> Report:
    return Report(findings=tuple(Finding(s, "sast", f"app.py:{i}") for i, s in enumerate(severities)))


@pytest.fixture
def gate():
    return GateEvaluator()


def test_critical_finding_fails_even_when_scanner_exits_zero(gate):
    decision = gate.evaluate(0, _report(Severity.LOW, Severity.CRITICAL), Severity.HIGH)
    assert not decision.passed
    assert decision.kind == FailureKind.GATE_REJECTED
    assert [f.severity for f in decision.blocking] == [Severity.CRITICAL]
    assert len(decision.findings) == 2


def test_findings_below_threshold_pass_regardless_of_exit_code(gate):
    decision = gate.evaluate(1, _report(Severity.MEDIUM, Severity.HIGH), Severity.CRITICAL)
    assert decision.passed
    assert decision.blocking == ()
    assert len(decision.findings) == 2


def test_threshold_is_inclusive(gate):
    assert not gate.evaluate(0, _report(Severity.HIGH), Severity.HIGH).passed


def test_empty_report_passes(gate):
    assert gate.evaluate(0, Report(), Severity.INFO).passed


def test_crash_without_report_fails(gate):
    decision = gate.evaluate(2, None, Severity.CRITICAL)
    assert not decision.passed
    assert decision.kind == FailureKind.JOB_CRASH


def test_build_step_mirrors_exit_code(gate):
    assert gate.evaluate(0, None, Severity.CRITICAL).passed


def test_scanner_without_report_is_a_crash(gate):
    decision = gate.evaluate(0, None, Severity.CRITICAL, report_expected=True)
    assert not decision.passed
    assert decision.kind == FailureKind.JOB_CRASH


def test_parse_native_report():
    report = parse_report(
        json.dumps(
            {
                "tool": "semgrep",
                "findings": [
                    {"severity": "high", "category": "sqli", "location": {"path": "db.py", "line": 7}},
                    {"severity": "Informational", "category": "style"},
                ],
            }
        )
    )
    assert report.tool == "semgrep"
    assert [f.severity for f in report.findings] == [Severity.HIGH, Severity.INFO]
    assert report.findings[0].location == "db.py:7"
    assert report.max_severity() == Severity.HIGH


def test_parse_bare_list():
    report = parse_report(b'[{"severity": "moderate", "category": "dep", "location": "requirements.txt"}]')
    assert report.findings[0].severity == Severity.MEDIUM


def test_parse_sarif():
    sarif = {
        "version": "2.1.0",
        "runs": [
            {
                "tool": {"driver": {"name": "trivy"}},
                "results": [
                    {
                        "ruleId": "CVE-2024-0001",
                        "level": "error",
                        "message": {"text": "openssl"},
                        "locations": [
                            {"physicalLocation": {"artifactLocation": {"uri": "Dockerfile"}, "region": {"startLine": 3}}}
                        ],
                    },
                    {"ruleId": "CVE-2024-0002", "level": "note", "properties": {"severity": "critical"}},
                ],
            }
        ],
    }
    report = parse_report(json.dumps(sarif))
    assert report.tool == "trivy"
    assert [f.severity for f in report.findings] == [Severity.HIGH, Severity.CRITICAL]
    assert report.findings[0].location == "Dockerfile:3"
    assert report.findings[0].rule_id == "CVE-2024-0001"


def test_sarif_security_severity_score_wins_over_level():
    sarif = {
        "version": "2.1.0",
        "runs": [
            {
                "tool": {
                    "driver": {
                        "name": "codeql",
                        "rules": [
                            {"id": "py/sql-injection", "properties": {"security-severity": "9.8"}},
                            {"id": "py/weak-hash", "properties": {"security-severity": "4.0"}},
                        ],
                    }
                },
                "results": [
                    {"ruleId": "py/sql-injection", "level": "warning"},
                    {"ruleId": "py/weak-hash", "level": "error"},
                    {"ruleId": "py/clear-text", "level": "note", "properties": {"security-severity": 7.5}},
                    {"ruleId": "py/unused", "level": "note", "properties": {"security-severity": "0.1"}},
                    {"ruleId": "py/unknown", "level": "error", "properties": {"security-severity": "n/a"}},
                ],
            }
        ],
    }
    report = parse_report(json.dumps(sarif))
    assert [f.severity for f in report.findings] == [
        Severity.CRITICAL,
        Severity.MEDIUM,
        Severity.HIGH,
        Severity.LOW,
        Severity.HIGH,
    ]


@pytest.mark.parametrize(
    "raw",
    [
        b"not json",
        b'"just a string"',
        b'{"findings": [{"severity": "apocalyptic"}]}',
        b'{"findings": [{"category": "no severity"}]}',
    ],
)
def test_unparseable_reports_raise(raw):
    with pytest.raises(ReportError):
        parse_report(raw)


def test_severity_parse_accepts_names_aliases_and_numbers():
    assert Severity.parse("CRITICAL") is Severity.CRITICAL
    assert Severity.parse("warning") is Severity.MEDIUM
    assert Severity.parse(3) is Severity.HIGH
    assert Severity.LOW < Severity.MEDIUM < Severity.HIGH
    with pytest.raises(ValueError):
        Severity.parse("severe")
