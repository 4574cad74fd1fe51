from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

SUMMARY_KEYS = {"passed", "failed", "skipped", "failures"}
JEST_KEYS = {"testResults", "numFailedTests", "numPassedTests"}


@dataclass(slots=True, frozen=True)
class CheckFailure:
    id: str
    diagnostic: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "diagnostic": self.diagnostic}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CheckFailure:
        return cls(id=str(payload["id"]), diagnostic=str(payload.get("diagnostic") or ""))


@dataclass(slots=True)
class CheckReport:
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    failures: list[CheckFailure] = field(default_factory=list)

    @property
    def has_failures(self) -> bool:
        return self.failed > 0 or bool(self.failures)

    def failure_ids(self) -> list[str]:
        ids: list[str] = []
        for failure in self.failures:
            if failure.id not in ids:
                ids.append(failure.id)
        return ids

    def distinct_failures(self) -> list[CheckFailure]:
        """One failure per id; diagnostics of repeated ids are joined."""
        merged: dict[str, list[str]] = {}
        for failure in self.failures:
            diagnostics = merged.setdefault(failure.id, [])
            if failure.diagnostic and failure.diagnostic not in diagnostics:
                diagnostics.append(failure.diagnostic)
        return [CheckFailure(id=key, diagnostic="\n".join(value)) for key, value in merged.items()]

    def summary(self) -> str:
        total = self.passed + self.failed + self.skipped
        text = f"{self.failed} of {total} checks failed"
        ids = self.failure_ids()
        if ids:
            text += ": " + ", ".join(ids)
        return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "failures": [failure.to_dict() for failure in self.failures],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CheckReport:
        return cls(
            passed=int(payload.get("passed") or 0),
            failed=int(payload.get("failed") or 0),
            skipped=int(payload.get("skipped") or 0),
            failures=[
                CheckFailure.from_dict(item)
                for item in payload.get("failures") or []
                if isinstance(item, dict) and "id" in item
            ],
        )


def extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
    """Return every top-level JSON object embedded in free text, in order."""
    decoder = json.JSONDecoder()
    payloads: list[dict[str, Any]] = []
    index = raw_text.find("{")
    while index != -1:
        try:
            payload, end = decoder.raw_decode(raw_text, index)
        except json.JSONDecodeError:
            index = raw_text.find("{", index + 1)
            continue
        if isinstance(payload, dict):
            payloads.append(payload)
        index = raw_text.find("{", end)
    return payloads


def _int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _from_summary(payload: dict[str, Any]) -> CheckReport:
    failures: list[CheckFailure] = []
    for item in payload.get("failures") or []:
        if isinstance(item, dict):
            failure_id = item.get("id") or item.get("name") or item.get("test")
            if failure_id is None:
                continue
            diagnostic = item.get("diagnostic") or item.get("message") or item.get("error") or ""
            failures.append(CheckFailure(id=str(failure_id), diagnostic=str(diagnostic)))
        elif isinstance(item, str) and item.strip():
            failures.append(CheckFailure(id=item.strip()))
    failed = _int(payload.get("failed"))
    return CheckReport(
        passed=_int(payload.get("passed")),
        failed=max(failed, len({failure.id for failure in failures})),
        skipped=_int(payload.get("skipped")),
        failures=failures,
    )


def _from_jest(payload: dict[str, Any]) -> CheckReport:
    passed = failed = skipped = 0
    failures: list[CheckFailure] = []
    for suite in payload.get("testResults") or []:
        if not isinstance(suite, dict):
            continue
        for assertion in suite.get("assertionResults") or []:
            if not isinstance(assertion, dict):
                continue
            status = str(assertion.get("status", ""))
            if status == "passed":
                passed += 1
            elif status == "failed":
                failed += 1
                name = assertion.get("fullName") or assertion.get("title") or "unnamed test"
                messages = assertion.get("failureMessages") or []
                failures.append(
                    CheckFailure(id=str(name), diagnostic="\n".join(str(m) for m in messages))
                )
            else:
                skipped += 1
    if not (passed or failed or skipped):
        passed = _int(payload.get("numPassedTests"))
        failed = _int(payload.get("numFailedTests"))
        skipped = _int(payload.get("numPendingTests"))
    return CheckReport(passed=passed, failed=failed, skipped=skipped, failures=failures)


def parse_check_report(raw_text: str | None) -> CheckReport | None:
    """Parse the last check report found in agent output.

    Accepts the compact summary object (``passed``/``failed``/``skipped``/``failures``)
    and jest ``--json`` output. Returns ``None`` when no report is present.
    """
    if not raw_text:
        return None
    report: CheckReport | None = None
    for payload in extract_json_objects(raw_text):
        if JEST_KEYS & payload.keys():
            report = _from_jest(payload)
        elif SUMMARY_KEYS & payload.keys() and {"passed", "failed"} & payload.keys():
            report = _from_summary(payload)
    return report
