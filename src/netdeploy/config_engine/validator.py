"""Pre-flight validation for rendered configurations.

Catches syntax and policy errors before any device communication.
"""
import logging
import re
from pathlib import Path
from typing import Iterable, Optional

from ..config.settings import ValidationSettings
from ..utils.logging_config import timed
from .diff import diff
from .schema import DiffOp, Finding, RenderedConfig, Severity, ValidationResult

logger = logging.getLogger(__name__)


# Top-level statements of the hierarchical CLI grammar
CLI_STATEMENTS = [
    r"^hostname \S+$",
    r"^interface \S+$",
    r"^router bgp \d+$",
    r"^router ospf \d+$",
    r"^vlan \d+$",
    r"^ip route \S+ \S+( \S+)?$",
    r"^ip domain-name \S+$",
    r"^ip name-server \S+$",
    r"^(no )?ip http (secure-)?server$",
    r"^ntp server \S+$",
    r"^logging host \S+$",
    r"^(no )?service \S+$",
    r"^username \S+ .+$",
    r"^aaa .+$",
    r"^snmp-server .+$",
    r"^banner .+$",
    r"^end$",
]

# Child statements per block keyword
CLI_CHILDREN = {
    "interface": [
        r"^ description .+$",
        r"^ ip address \S+( \S+)?$",
        r"^ (no )?shutdown$",
        r"^ mtu \d+$",
        r"^ switchport mode (access|trunk)$",
        r"^ switchport access vlan \d+$",
        r"^ switchport trunk allowed vlan [\d,\-]+$",
    ],
    "router": [
        r"^ bgp router-id \S+$",
        r"^ neighbor \S+ remote-as \d+$",
        r"^ neighbor \S+ description .+$",
        r"^ network \S+( mask \S+)?$",
    ],
    "vlan": [
        r"^ name \S+$",
    ],
}

# Flat set-statement grammar (api and controller families)
SET_STATEMENTS = [
    r"^set system host-name \S+$",
    r"^set system domain-name \S+$",
    r"^set system name-server \S+$",
    r"^set system ntp server \S+$",
    r"^set system syslog host \S+$",
    r"^set system login .+$",
    r"^set interfaces \S+ (enabled|disable)$",
    r'^set interfaces \S+ description ".*"$',
    r"^set interfaces \S+ mtu \d+$",
    r"^set interfaces \S+ address \S+$",
    r"^set interfaces \S+ vlan \d+( (access|trunk))?$",
    r"^set protocols bgp local-as \d+$",
    r"^set protocols bgp router-id \S+$",
    r"^set protocols bgp neighbor \S+ remote-as \d+$",
    r"^set protocols bgp network \S+$",
    r"^set routing-options static route \S+ next-hop \S+$",
]

GRAMMARS = {
    "cli": "hierarchical",
    "api": "set",
    "controller": "set",
}

SET_INTERFACE = re.compile(r"^set interfaces (\S+) ")


def _match_any(patterns: Iterable[str], line: str) -> bool:
    return any(re.match(p, line) for p in patterns)


def _is_comment(line: str) -> bool:
    return not line.strip() or line.lstrip().startswith(("!", "#"))


class ConfigValidator:
    """Validate rendered configuration text. Pure: never touches a device."""

    def __init__(
        self,
        settings: Optional[ValidationSettings] = None,
        golden_dir: Optional[Path] = None,
        volatile_patterns: Optional[list[str]] = None,
    ):
        self.settings = settings or ValidationSettings()
        self.golden_dir = Path(golden_dir) if golden_dir else None
        self.volatile_patterns = volatile_patterns

    @timed("validate")
    def validate(self, rendered: RenderedConfig) -> ValidationResult:
        """
        Validate a rendered configuration.

        Performs, in order:
        - Integrity check of the content hash
        - Structural check against the platform grammar
        - Policy check (required and forbidden statements, interface hygiene)
        - Golden config diff, when a golden file exists for the device

        Returns:
            ValidationResult; any finding with severity >= error fails it
        """
        findings: list[Finding] = []

        if not rendered.verify_integrity():
            findings.append(Finding(
                Severity.CRITICAL,
                "Content does not match its hash; rendered config was modified",
                check="integrity",
            ))

        findings.extend(self._check_syntax(rendered))
        findings.extend(self._check_policy(rendered))
        findings.extend(self._check_golden(rendered))

        result = ValidationResult(findings=findings, content_hash=rendered.content_hash)
        if result.valid:
            logger.info(f"Validation passed for {rendered.device_id} ({len(result.warnings)} warnings)")
        else:
            logger.warning(
                f"Validation failed for {rendered.device_id}: "
                + "; ".join(str(f) for f in result.errors)
            )
        return result

    # --- Syntax ---

    def _check_syntax(self, rendered: RenderedConfig) -> list[Finding]:
        grammar = GRAMMARS.get(rendered.platform)
        if grammar is None:
            return [Finding(Severity.ERROR, f"No grammar for platform '{rendered.platform}'", check="syntax")]
        if grammar == "hierarchical":
            return self._check_hierarchical(rendered.content)
        return self._check_set(rendered.content)

    def _check_hierarchical(self, content: str) -> list[Finding]:
        findings = []
        block: Optional[str] = None
        seen_interfaces: dict[str, int] = {}

        for number, line in enumerate(content.splitlines(), start=1):
            if _is_comment(line):
                if line.strip().startswith("!"):
                    block = None
                continue

            if line.startswith(" "):
                if block is None:
                    findings.append(Finding(
                        Severity.ERROR, f"Orphaned indented statement: '{line.strip()}'", number, "syntax"
                    ))
                elif not _match_any(CLI_CHILDREN[block], line):
                    findings.append(Finding(
                        Severity.ERROR, f"Unknown statement in {block} block: '{line.strip()}'", number, "syntax"
                    ))
                continue

            if not _match_any(CLI_STATEMENTS, line):
                findings.append(Finding(Severity.ERROR, f"Unknown statement: '{line}'", number, "syntax"))
                block = None
                continue

            keyword = line.split()[0]
            block = keyword if keyword in CLI_CHILDREN else None
            if keyword == "interface":
                name = line.split()[1]
                if name in seen_interfaces:
                    findings.append(Finding(
                        Severity.ERROR,
                        f"Duplicate interface block {name} (first at line {seen_interfaces[name]})",
                        number,
                        "syntax",
                    ))
                else:
                    seen_interfaces[name] = number
        return findings

    def _check_set(self, content: str) -> list[Finding]:
        findings = []
        for number, line in enumerate(content.splitlines(), start=1):
            if _is_comment(line):
                continue
            if line.startswith((" ", "\t")):
                findings.append(Finding(
                    Severity.ERROR, f"Orphaned indented statement: '{line.strip()}'", number, "syntax"
                ))
            elif not _match_any(SET_STATEMENTS, line):
                findings.append(Finding(Severity.ERROR, f"Unknown statement: '{line}'", number, "syntax"))
        return findings

    # --- Policy ---

    def _check_policy(self, rendered: RenderedConfig) -> list[Finding]:
        findings = []
        lines = rendered.content.splitlines()

        for rule in self.settings.required:
            if not rule.applies_to(rendered.platform):
                continue
            if not any(re.search(rule.pattern, line) for line in lines):
                findings.append(Finding(
                    Severity(rule.severity),
                    rule.message or f"Missing required statement ({rule.name})",
                    check="policy",
                ))

        for rule in self.settings.forbidden:
            if not rule.applies_to(rendered.platform):
                continue
            for number, line in enumerate(lines, start=1):
                if re.search(rule.pattern, line):
                    findings.append(Finding(
                        Severity(rule.severity),
                        f"{rule.message or 'Forbidden statement'} ({rule.name}): '{line.strip()}'",
                        number,
                        "policy",
                    ))

        if self.settings.require_interface_description:
            for name, number in self._undescribed_interfaces(rendered):
                findings.append(Finding(
                    Severity.WARNING, f"Interface {name} has no description", number, "policy"
                ))
        return findings

    def _undescribed_interfaces(self, rendered: RenderedConfig) -> list[tuple[str, int]]:
        lines = rendered.content.splitlines()
        if GRAMMARS.get(rendered.platform) == "hierarchical":
            result = []
            current: Optional[tuple[str, int]] = None
            described = False
            for number, line in enumerate(lines + ["!"], start=1):
                if line.startswith("interface "):
                    if current and not described:
                        result.append(current)
                    current, described = (line.split()[1], number), False
                elif line.startswith(" description "):
                    described = True
                elif not line.startswith(" ") and current:
                    if not described:
                        result.append(current)
                    current = None
            return result

        first_seen: dict[str, int] = {}
        described_set = set()
        for number, line in enumerate(lines, start=1):
            match = SET_INTERFACE.match(line)
            if match:
                first_seen.setdefault(match.group(1), number)
                if " description " in line:
                    described_set.add(match.group(1))
        return [(name, number) for name, number in first_seen.items() if name not in described_set]

    # --- Golden ---

    def golden_path(self, device_id: str) -> Optional[Path]:
        if not self.golden_dir:
            return None
        path = self.golden_dir / f"{device_id}.cfg"
        return path if path.exists() else None

    def _check_golden(self, rendered: RenderedConfig) -> list[Finding]:
        path = self.golden_path(rendered.device_id)
        if path is None:
            return []

        golden = path.read_text()
        changes = diff(golden, rendered.content, self.volatile_patterns)
        findings = []
        other = 0
        for change in changes:
            removed = change.old if change.op in (DiffOp.REMOVED, DiffOp.CHANGED) else None
            if removed and any(re.search(p, removed) for p in self.settings.protected):
                findings.append(Finding(
                    Severity.ERROR, f"Protected golden line removed or changed: '{removed.strip()}'", check="golden"
                ))
            else:
                other += 1

        if other > self.settings.golden_change_budget:
            findings.append(Finding(
                Severity.WARNING,
                f"{other} differences from golden config {path.name} "
                f"(budget {self.settings.golden_change_budget})",
                check="golden",
            ))
        return findings
