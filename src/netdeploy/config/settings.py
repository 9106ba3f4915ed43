"""Pipeline settings loaded from netdeploy.yaml.

Example:

```yaml
paths:
  intent_dir: ./intent
  templates_dir: ./templates     # defaults to the bundled templates
  state_dir: ~/.netdeploy/state
  golden_dir: ./golden
  audit_log: ~/.netdeploy/audit.log
concurrency: 8
retry:
  max_attempts: 3
  min_wait: 1
  max_wait: 10
  timeout: 60
postcheck:
  timeout: 120
  min_wait: 2
  max_wait: 15
drift:
  interval: 900
  threshold: 5
  auto_approve_max_severity: null
  criticality:
    - {pattern: '^router bgp|^ neighbor ', weight: 5}
validation:
  required:
    - {name: ntp, pattern: '^ntp server ', message: 'NTP source is mandatory'}
  forbidden:
    - {name: plaintext-passwords, pattern: '^no service password-encryption', severity: error}
  protected:
    - '^hostname '
  golden_change_budget: 20
volatile_patterns:
  - '^! Last configuration change'
```

Environment overrides:
    NETDEPLOY_CONFIG: settings file path
    NETDEPLOY_STATE_DIR: state directory
    NETDEPLOY_CONCURRENCY: worker pool size
"""
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".netdeploy"
BUNDLED_TEMPLATES = Path(__file__).resolve().parent.parent / "templates"


@dataclass
class PolicyRule:
    """A required or forbidden line pattern."""
    name: str
    pattern: str
    message: str = ""
    severity: str = "error"
    platforms: list[str] = field(default_factory=list)  # empty = all

    def applies_to(self, platform: str) -> bool:
        return not self.platforms or platform in self.platforms


@dataclass
class CriticalityRule:
    """Weight for drift lines matching a pattern."""
    pattern: str
    weight: float


DEFAULT_REQUIRED = [
    PolicyRule("hostname", r"^(hostname |set system host-name )", "Device hostname is mandatory"),
    PolicyRule("ntp", r"^(ntp server |set system ntp server )", "At least one NTP source is mandatory"),
    PolicyRule("logging", r"^(logging host |set system syslog host )", "Remote syslog host is mandatory", severity="warning"),
]

DEFAULT_FORBIDDEN = [
    PolicyRule(
        "plaintext-passwords",
        r"^no service password-encryption",
        "Password encryption must not be disabled",
    ),
    PolicyRule("http-server", r"^ip http server$", "Plain HTTP management enabled", severity="warning"),
]

DEFAULT_PROTECTED = [
    r"^hostname ",
    r"^set system host-name ",
    r"^ntp server ",
    r"^aaa ",
    r"^username ",
]

DEFAULT_CRITICALITY = [
    CriticalityRule(r"^router bgp|^ neighbor |^set protocols bgp", 5),
    CriticalityRule(r"^ip route |^router ospf|^set routing-options", 5),
    CriticalityRule(r"^aaa |^username |^set system login", 4),
    CriticalityRule(r"^ ip address |^ shutdown|^set interfaces \S+ (address|disable)", 3),
    CriticalityRule(r"^interface |^ switchport", 2),
    CriticalityRule(r"^ntp |^logging |^ip name-server|^set system (ntp|syslog|name-server)", 2),
    CriticalityRule(r"description", 0.5),
]

DEFAULT_VOLATILE = [
    r"^!\s*Last configuration change",
    r"^!\s*NVRAM config last updated",
    r"^!\s*Time:",
    r"^Building configuration",
    r"^Current configuration\s*:",
    r"^ntp clock-period",
    r"^\s*(input|output) packets",
    r"^\s*\d+ (packets|bytes) (input|output)",
    r"^#\s*generated",
    r"^## Last (commit|changed)",
]


@dataclass
class RetrySettings:
    max_attempts: int = 3
    min_wait: float = 1
    max_wait: float = 10
    timeout: float = 60

    def as_kwargs(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "min_wait": self.min_wait,
            "max_wait": self.max_wait,
            "timeout": self.timeout,
        }


@dataclass
class PostCheckSettings:
    timeout: float = 120
    min_wait: float = 2
    max_wait: float = 15


@dataclass
class DriftSettings:
    interval: float = 900
    threshold: float = 5
    auto_approve_max_severity: Optional[float] = None
    criticality: list[CriticalityRule] = field(default_factory=lambda: list(DEFAULT_CRITICALITY))


@dataclass
class ValidationSettings:
    required: list[PolicyRule] = field(default_factory=lambda: list(DEFAULT_REQUIRED))
    forbidden: list[PolicyRule] = field(default_factory=lambda: list(DEFAULT_FORBIDDEN))
    protected: list[str] = field(default_factory=lambda: list(DEFAULT_PROTECTED))
    golden_change_budget: int = 20
    require_interface_description: bool = True


@dataclass
class PipelineSettings:
    """All tunables of the pipeline."""
    intent_dir: Path = field(default_factory=lambda: Path.cwd() / "intent")
    templates_dir: Path = BUNDLED_TEMPLATES
    state_dir: Path = DEFAULT_HOME / "state"
    golden_dir: Optional[Path] = None
    audit_log: Optional[Path] = DEFAULT_HOME / "audit.log"
    default_template: str = "device"
    concurrency: int = 8
    retry: RetrySettings = field(default_factory=RetrySettings)
    postcheck: PostCheckSettings = field(default_factory=PostCheckSettings)
    drift: DriftSettings = field(default_factory=DriftSettings)
    validation: ValidationSettings = field(default_factory=ValidationSettings)
    volatile_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_VOLATILE))

    @classmethod
    def load(cls, path: Optional[str] = None) -> "PipelineSettings":
        """Load settings from a file, the search paths, or defaults."""
        config_path = path or os.environ.get("NETDEPLOY_CONFIG") or cls._find_config()
        if config_path:
            settings = cls.from_file(Path(config_path))
        else:
            logger.debug("No netdeploy.yaml found, using defaults")
            settings = cls()
        settings.apply_env()
        return settings

    @staticmethod
    def _find_config() -> Optional[str]:
        search_paths = [
            Path.cwd() / "configs" / "netdeploy.yaml",
            Path.cwd() / "netdeploy.yaml",
            Path.home() / ".config" / "netdeploy" / "netdeploy.yaml",
            Path("/etc/netdeploy/netdeploy.yaml"),
        ]
        for candidate in search_paths:
            if candidate.exists():
                return str(candidate)
        return None

    @classmethod
    def from_file(cls, path: Path) -> "PipelineSettings":
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        # Relative paths are relative to the settings file
        return cls.from_dict(data, base_dir=path.resolve().parent)

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_dir: Optional[Path] = None) -> "PipelineSettings":
        base_dir = base_dir or Path.cwd()
        settings = cls()

        def _path(value: Optional[str]) -> Optional[Path]:
            if value is None:
                return None
            p = Path(os.path.expanduser(str(value)))
            return p if p.is_absolute() else base_dir / p

        paths = data.get("paths", {})
        if "intent_dir" in paths:
            settings.intent_dir = _path(paths["intent_dir"])
        if "templates_dir" in paths:
            settings.templates_dir = _path(paths["templates_dir"])
        if "state_dir" in paths:
            settings.state_dir = _path(paths["state_dir"])
        if "golden_dir" in paths:
            settings.golden_dir = _path(paths["golden_dir"])
        if "audit_log" in paths:
            settings.audit_log = _path(paths["audit_log"])

        settings.default_template = data.get("default_template", settings.default_template)
        settings.concurrency = int(data.get("concurrency", settings.concurrency))

        if "retry" in data:
            settings.retry = RetrySettings(**data["retry"])
        if "postcheck" in data:
            settings.postcheck = PostCheckSettings(**data["postcheck"])

        drift = data.get("drift", {})
        if drift:
            criticality = [CriticalityRule(**c) for c in drift["criticality"]] if "criticality" in drift \
                else list(DEFAULT_CRITICALITY)
            settings.drift = DriftSettings(
                interval=drift.get("interval", settings.drift.interval),
                threshold=drift.get("threshold", settings.drift.threshold),
                auto_approve_max_severity=drift.get("auto_approve_max_severity"),
                criticality=criticality,
            )

        validation = data.get("validation", {})
        if validation:
            defaults = ValidationSettings()
            settings.validation = ValidationSettings(
                required=[PolicyRule(**r) for r in validation["required"]] if "required" in validation
                else defaults.required,
                forbidden=[PolicyRule(**r) for r in validation["forbidden"]] if "forbidden" in validation
                else defaults.forbidden,
                protected=validation.get("protected", defaults.protected),
                golden_change_budget=validation.get("golden_change_budget", defaults.golden_change_budget),
                require_interface_description=validation.get(
                    "require_interface_description", defaults.require_interface_description
                ),
            )

        if "volatile_patterns" in data:
            settings.volatile_patterns = list(data["volatile_patterns"])

        return settings

    def apply_env(self) -> None:
        """Apply NETDEPLOY_* environment overrides."""
        state_dir = os.environ.get("NETDEPLOY_STATE_DIR")
        if state_dir:
            self.state_dir = Path(os.path.expanduser(state_dir))
        concurrency = os.environ.get("NETDEPLOY_CONCURRENCY")
        if concurrency:
            self.concurrency = int(concurrency)
