"""Vulnerability scanning with Trivy.

The scan runs against an immutable reference (repository@digest), so the
report always describes the exact image content that was built. The JSON
report is parsed into findings; ``trivy convert`` turns the same report
into SARIF for GitHub code scanning without a second scan.
"""

import json
import logging
import os
import tempfile
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from shipyard.exceptions import CommandError, ScanError
from shipyard.models.config import Settings
from shipyard.models.entities import Severity
from shipyard.services.commands import run_command

logger = logging.getLogger(__name__)


@dataclass
class FindingData:
    vulnerability_id: str
    severity: Severity
    package_name: str
    installed_version: str | None = None
    fixed_version: str | None = None
    title: str | None = None
    target: str | None = None


@dataclass
class ScanResult:
    image_reference: str
    findings: list[FindingData]
    scanner_version: str | None = None
    sarif: bytes | None = None
    counts: dict[str, int] = field(default_factory=dict)

    def blocking(self, severities: list[str]) -> list[FindingData]:
        """Findings whose severity is in the configured blocking set."""
        wanted = {s.upper() for s in severities}
        return [f for f in self.findings if f.severity.value in wanted]


def _severity(value: str | None) -> Severity:
    try:
        return Severity((value or "UNKNOWN").upper())
    except ValueError:
        return Severity.UNKNOWN


def parse_trivy_report(report: dict[str, Any]) -> list[FindingData]:
    """Extract findings from a Trivy JSON report (schema version 2).

    Trivy repeats a vulnerability once per affected package; each pair
    (id, package, target) is kept once.
    """
    findings: list[FindingData] = []
    seen: set[tuple[str, str, str | None]] = set()

    for result in report.get("Results") or []:
        target = result.get("Target")
        for vuln in result.get("Vulnerabilities") or []:
            key = (vuln.get("VulnerabilityID", ""), vuln.get("PkgName", ""), target)
            if key in seen:
                continue
            seen.add(key)
            findings.append(
                FindingData(
                    vulnerability_id=vuln.get("VulnerabilityID", "UNKNOWN"),
                    severity=_severity(vuln.get("Severity")),
                    package_name=vuln.get("PkgName", "unknown"),
                    installed_version=vuln.get("InstalledVersion"),
                    fixed_version=vuln.get("FixedVersion") or None,
                    title=vuln.get("Title"),
                    target=target,
                )
            )
    return findings


def count_by_severity(findings: list[FindingData]) -> dict[str, int]:
    counts = Counter(f.severity.value for f in findings)
    return {severity.value: counts.get(severity.value, 0) for severity in Severity}


class VulnerabilityScanner:
    """Runs Trivy against published images."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        if self.settings.github_token:
            env["TRIVY_USERNAME"] = self.settings.github_actor
            env["TRIVY_PASSWORD"] = self.settings.github_token
        return env

    def version(self) -> str | None:
        try:
            result = run_command([self.settings.trivy_binary, "--version", "--format", "json"], timeout=60)
            return json.loads(result.output).get("Version")
        except (CommandError, ValueError):
            logger.warning("Could not determine trivy version")
            return None

    def scan(self, image_reference: str, *, with_sarif: bool = True) -> ScanResult:
        """Scan an image. Findings are data; only scanner failures raise ScanError."""
        trivy = self.settings.trivy_binary
        with tempfile.TemporaryDirectory(prefix="shipyard-scan-") as tmp:
            json_path = Path(tmp) / "report.json"
            sarif_path = Path(tmp) / "report.sarif"

            try:
                run_command(
                    [
                        trivy,
                        "image",
                        "--quiet",
                        "--format",
                        "json",
                        "--severity",
                        ",".join(self.settings.scan_severities),
                        "--output",
                        str(json_path),
                        image_reference,
                    ],
                    env=self._env(),
                    timeout=self.settings.scan_timeout_seconds,
                    redact=(self.settings.github_token,),
                )
                report = json.loads(json_path.read_text())
            except CommandError as exc:
                raise ScanError(f"trivy failed on {image_reference}: {exc.output.strip()}") from exc
            except (OSError, ValueError) as exc:
                raise ScanError(f"Unreadable trivy report for {image_reference}: {exc}") from exc

            sarif = None
            if with_sarif:
                try:
                    run_command(
                        [trivy, "convert", "--format", "sarif", "--output", str(sarif_path), str(json_path)],
                        timeout=120,
                    )
                    sarif = sarif_path.read_bytes()
                except (CommandError, OSError) as exc:
                    raise ScanError(f"SARIF conversion failed: {exc}") from exc

        findings = parse_trivy_report(report)
        counts = count_by_severity(findings)
        logger.info("Scanned %s: %d findings %s", image_reference, len(findings), counts)
        return ScanResult(
            image_reference=image_reference,
            findings=findings,
            scanner_version=self.version(),
            sarif=sarif,
            counts=counts,
        )
