#!/usr/bin/env python3
"""
Privacy Schema Enforcement Check.

Validates that nothing able to identify a visitor is stored by the
collection endpoint: no raw identifier columns in the SQL schema or the
persisted record model, and a complete forbidden-field list in both the
default ingestion config and rules.yaml.

PII fields that must never be stored:
- ip, ip_address (IP addresses)
- user_agent, ua_raw (raw user agent strings)
- cookie, cookie_id (cookies)
- fingerprint, device_id (device identifiers)
- email (email addresses)

visitor_id is the one exception: it is stored, but only as the keyed,
day-scoped hash produced by the anonymize component.

This script can be run standalone or as part of CI quality gates.
"""

from __future__ import annotations

import dataclasses
import json
import re
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))


# --- PII Definitions ---

# Field names that would indicate PII storage
PII_FIELD_PATTERNS: frozenset[str] = frozenset({
    "ip",
    "ip_address",
    "ip_addr",
    "client_ip",
    "remote_ip",
    "user_agent",
    "ua_raw",
    "ua_string",
    "user_agent_string",
    "cookie",
    "cookie_id",
    "session_cookie",
    "visitor_id",
    "visitor_key",
    "device_id",
    "fingerprint",
    "email",
    "email_address",
    "user_email",
    "phone",
})

# Stored only as the anonymized hash
HASHED_FIELDS: frozenset[str] = frozenset({"visitor_id"})

# Payload fields every forbidden-field list must reject
REQUIRED_BLOCKED: frozenset[str] = frozenset({
    "ip",
    "ip_address",
    "user_agent",
    "cookie",
    "visitor_id",
    "fingerprint",
    "email",
})

CREATE_TABLE_RE = re.compile(
    r"CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?(\w+)\s*\((.*?)\);",
    re.IGNORECASE | re.DOTALL,
)
ALTER_ADD_COLUMN_RE = re.compile(
    r'ALTER\s+TABLE\s+(\w+)\s+ADD\s+(?:COLUMN\s+)?["`]?(\w+)',
    re.IGNORECASE,
)
CONSTRAINT_WORDS = {"primary", "foreign", "unique", "check", "constraint"}


# --- Check Results ---


@dataclasses.dataclass
class CheckResult:
    """Result of a privacy check."""

    name: str
    passed: bool
    message: str
    details: list[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class PrivacyReport:
    """Full privacy schema check report."""

    timestamp: str
    passed: bool
    checks: list[CheckResult]
    summary: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "timestamp": self.timestamp,
            "passed": self.passed,
            "summary": self.summary,
            "checks": [dataclasses.asdict(c) for c in self.checks],
        }


# --- Helpers ---


def find_pii_fields(fields: set[str]) -> set[str]:
    """PII field names among fields, excluding the hashed visitor id."""
    return {f for f in fields if f.lower() in PII_FIELD_PATTERNS} - HASHED_FIELDS


def _split_definitions(body: str) -> list[str]:
    # Commas inside parentheses belong to a constraint, not a new column
    parts: list[str] = []
    depth = 0
    current = ""
    for char in body:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        if char == "," and depth == 0:
            parts.append(current)
            current = ""
        else:
            current += char
    parts.append(current)
    return parts


def parse_table_columns(sql: str) -> dict[str, list[str]]:
    """Column names per table, from CREATE TABLE and ALTER TABLE ADD COLUMN statements."""
    tables: dict[str, list[str]] = {}
    for match in CREATE_TABLE_RE.finditer(sql):
        columns = []
        for line in _split_definitions(match.group(2)):
            words = line.strip().split()
            if words and words[0].lower() not in CONSTRAINT_WORDS:
                columns.append(words[0].strip('"`'))
        tables[match.group(1)] = columns
    for match in ALTER_ADD_COLUMN_RE.finditer(sql):
        tables.setdefault(match.group(1), []).append(match.group(2))
    return tables


# --- Check Functions ---


def check_pageview_record_model() -> CheckResult:
    """
    Check PageviewRecord has no raw identifier fields.

    PageviewRecord is the only analytics model written to storage.
    """
    from src.components.analytics.models import PageviewRecord

    fields = {f.name for f in dataclasses.fields(PageviewRecord)}
    pii_found = find_pii_fields(fields)
    if pii_found:
        return CheckResult(
            name="pageview_record_model",
            passed=False,
            message=f"PII fields found in PageviewRecord: {sorted(pii_found)}",
            details=[f"Forbidden field: {f}" for f in sorted(pii_found)],
        )

    return CheckResult(
        name="pageview_record_model",
        passed=True,
        message=f"PageviewRecord has {len(fields)} fields, all non-PII",
        details=[f"Field: {f}" for f in sorted(fields)],
    )


def check_ingestion_config() -> CheckResult:
    """Check the default IngestionConfig blocks all core PII field names."""
    from src.components.analytics import IngestionConfig

    forbidden = IngestionConfig().forbidden_fields
    missing = REQUIRED_BLOCKED - forbidden
    if missing:
        return CheckResult(
            name="ingestion_config",
            passed=False,
            message=f"IngestionConfig missing required blocked fields: {sorted(missing)}",
            details=[f"Missing: {f}" for f in sorted(missing)],
        )

    return CheckResult(
        name="ingestion_config",
        passed=True,
        message=f"IngestionConfig blocks {len(forbidden)} PII field patterns",
        details=[f"Blocked: {f}" for f in sorted(forbidden)],
    )


def check_rules_privacy_settings(rules_path: Path | None = None) -> CheckResult:
    """
    Check rules.yaml keeps the privacy screening fully enabled.

    The forbidden field list must cover the required set and every PII
    value pattern must stay on.
    """
    from src.components.analytics import build_config
    from src.rules.loader import load_rules

    rules_path = rules_path or PROJECT_ROOT / "rules.yaml"
    try:
        rules = load_rules(rules_path)
    except (FileNotFoundError, ValueError) as e:
        return CheckResult(
            name="rules_privacy_settings",
            passed=False,
            message=f"Rules file unusable: {e}",
        )

    config = build_config(rules)
    errors = [f"Not forbidden: {f}" for f in sorted(REQUIRED_BLOCKED - config.forbidden_fields)]
    patterns = rules.anonymization.pii_patterns
    for name in ("email", "ipv4", "phone"):
        if not getattr(patterns, name):
            errors.append(f"PII value pattern disabled: {name}")

    if errors:
        return CheckResult(
            name="rules_privacy_settings",
            passed=False,
            message=f"Rules weaken privacy screening: {len(errors)} issue(s)",
            details=errors,
        )

    return CheckResult(
        name="rules_privacy_settings",
        passed=True,
        message="Rules file keeps privacy screening enabled",
        details=[f"Rules version {rules.project.rules_version}"],
    )


def check_migration_schema(migrations_dir: Path | None = None) -> CheckResult:
    """Check no table created by the migrations has a PII column."""
    migrations_dir = migrations_dir or PROJECT_ROOT / "migrations"
    files = sorted(migrations_dir.glob("*.sql"))
    if not files:
        return CheckResult(
            name="migration_schema",
            passed=False,
            message=f"No migrations found in {migrations_dir}",
        )

    violations: list[str] = []
    details: list[str] = []
    for path in files:
        up_script = path.read_text().split("-- Down", 1)[0]
        for table, columns in parse_table_columns(up_script).items():
            details.append(f"{path.name}: {table} ({len(columns)} columns)")
            for column in sorted(find_pii_fields(set(columns))):
                violations.append(f"{path.name}: {table}.{column}")

    if violations:
        return CheckResult(
            name="migration_schema",
            passed=False,
            message=f"PII columns found in {len(violations)} place(s)",
            details=violations,
        )

    return CheckResult(
        name="migration_schema",
        passed=True,
        message=f"Checked {len(files)} migration(s), no PII columns",
        details=details,
    )


def check_runtime_ingestion() -> CheckResult:
    """
    Ingest a sample event and inspect what would be stored.

    Neither the client IP nor its user agent may appear in the record.
    """
    from src.components.analytics import (
        ClientContext,
        InMemoryPageviewStore,
        create_ingestion_service,
    )
    from src.components.anonymize import create_anonymization_service

    ip = "198.51.100.77"
    user_agent = "PrivacyCheck/1.0 (runtime check)"
    store = InMemoryPageviewStore()
    service = create_ingestion_service(
        store=store,
        anonymizer=create_anonymization_service(b"privacy-check-key"),
    )
    records, errors = service.ingest(
        ({"siteId": "privacy-check", "path": "/check?email=x"},),
        ClientContext(ip=ip, user_agent=user_agent),
    )
    if errors:
        return CheckResult(
            name="runtime_ingestion",
            passed=False,
            message="Sample event was rejected",
            details=[e.message for e in errors],
        )

    stored = "".join(repr(r) for r in store.get_all())
    leaks = [label for label, raw in (("ip", ip), ("user_agent", user_agent)) if raw in stored]
    if "email=" in stored:
        leaks.append("query string")
    if leaks:
        return CheckResult(
            name="runtime_ingestion",
            passed=False,
            message=f"Raw client data persisted: {', '.join(leaks)}",
            details=leaks,
        )

    return CheckResult(
        name="runtime_ingestion",
        passed=True,
        message="Stored record carries only the anonymized visitor id",
        details=[f"visitor_id length {len(records[0].visitor_id)}"],
    )


# --- Main Runner ---


def run_privacy_checks() -> PrivacyReport:
    """Run all privacy schema checks and return report."""
    checks = [
        check_pageview_record_model(),
        check_ingestion_config(),
        check_rules_privacy_settings(),
        check_migration_schema(),
        check_runtime_ingestion(),
    ]

    all_passed = all(c.passed for c in checks)
    failed_count = sum(1 for c in checks if not c.passed)

    if all_passed:
        summary = f"All {len(checks)} privacy checks passed"
    else:
        summary = f"{failed_count}/{len(checks)} privacy checks failed"

    return PrivacyReport(
        timestamp=datetime.now(UTC).isoformat(),
        passed=all_passed,
        checks=checks,
        summary=summary,
    )


def main(argv: list[str] | None = None) -> int:
    """Run privacy schema checks and output results."""
    import argparse

    parser = argparse.ArgumentParser(description="Privacy Schema Enforcement Check")
    parser.add_argument(
        "--output",
        "-o",
        type=Path,
        default=None,
        help="Output JSON report to file",
    )
    parser.add_argument(
        "--quiet",
        "-q",
        action="store_true",
        help="Only output on failure",
    )
    args = parser.parse_args(argv)

    report = run_privacy_checks()

    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        with open(args.output, "w") as f:
            json.dump(report.to_dict(), f, indent=2)

    if not args.quiet or not report.passed:
        print(f"\n{'=' * 60}")
        print("Privacy Schema Enforcement Check")
        print(f"{'=' * 60}")
        print(f"Timestamp: {report.timestamp}")
        print(f"Status: {'PASSED' if report.passed else 'FAILED'}")
        print(f"Summary: {report.summary}")
        print(f"{'=' * 60}\n")

        for check in report.checks:
            status = "PASS" if check.passed else "FAIL"
            print(f"[{status}] {check.name}: {check.message}")
            if check.details and (not args.quiet or not check.passed):
                for detail in check.details[:5]:  # Limit details shown
                    print(f"       - {detail}")
                if len(check.details) > 5:
                    print(f"       ... and {len(check.details) - 5} more")
            print()

    return 0 if report.passed else 1


if __name__ == "__main__":
    sys.exit(main())
