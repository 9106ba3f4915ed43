"""Template renderer: intent records + Jinja2 templates -> RenderedConfig.

Templates live in ``<templates_dir>/<family>/<name>.j2``. A template's
version is taken from a ``{# version: X #}`` header, or else from a short
hash of its source. Rendering is a pure function of (intent, template): the
context carries no clock, environment or host state.
"""
import hashlib
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import jinja2
from jinja2 import Environment, FileSystemLoader, StrictUndefined

from ..devices.base import DeviceConfig
from ..errors import RenderError
from ..intent.schema import IntentRecord
from ..utils.logging_config import timed
from .schema import RenderedConfig

logger = logging.getLogger(__name__)

VERSION_HEADER = re.compile(r"\{#\s*version:\s*(\S+?)\s*#\}")

# Intent fields every template may rely on
REQUIRED_FIELDS = ("device_id", "site", "role", "hostname", "platform")


@dataclass(frozen=True)
class Template:
    """A named, versioned template for one platform family."""
    name: str
    family: str
    version: str
    path: str
    jinja: jinja2.Template = field(compare=False, repr=False)


class TemplateRegistry:
    """Filesystem-backed template registry."""

    def __init__(self, templates_dir: Path):
        self.templates_dir = Path(templates_dir)
        self.env = Environment(
            loader=FileSystemLoader(str(self.templates_dir)),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
            autoescape=False,
        )

    def list_templates(self, family: Optional[str] = None) -> list[str]:
        """Template names as '<family>/<name>'."""
        names = [n[:-3] for n in self.env.list_templates(extensions=["j2"])]
        if family:
            names = [n for n in names if n.startswith(f"{family}/")]
        return sorted(names)

    def get(self, name: str, family: str, version: Optional[str] = None) -> Template:
        """
        Look up a template.

        Raises:
            RenderError: If the template does not exist, fails to compile, or
                its version differs from the requested one
        """
        path = f"{family}/{name}.j2"
        try:
            source, _, _ = self.env.loader.get_source(self.env, path)
            compiled = self.env.get_template(path)
        except jinja2.TemplateNotFound:
            raise RenderError(f"Unknown template '{name}' for platform '{family}'")
        except jinja2.TemplateSyntaxError as e:
            raise RenderError(f"Template {path} line {e.lineno}: {e.message}")

        actual = self.template_version(source)
        if version is not None and str(version) != actual:
            raise RenderError(f"Template {path} is version {actual}, requested {version}")
        return Template(name=name, family=family, version=actual, path=path, jinja=compiled)

    @staticmethod
    def template_version(source: str) -> str:
        match = VERSION_HEADER.search(source)
        if match:
            return match.group(1)
        return "h" + hashlib.sha256(source.encode("utf-8")).hexdigest()[:12]

    def render(self, template: Template, context: dict[str, Any]) -> str:
        """Render a template with a context.

        Raises:
            RenderError: On undefined variables or any template fault
        """
        try:
            return template.jinja.render(**context)
        except jinja2.UndefinedError as e:
            raise RenderError(f"Template {template.path}: {e.message}")
        except jinja2.TemplateError as e:
            raise RenderError(f"Template {template.path}: {e}")
        except (TypeError, ValueError, ArithmeticError, LookupError) as e:
            raise RenderError(f"Template {template.path}: {type(e).__name__}: {e}")


def normalize_output(text: str) -> str:
    """Strip trailing whitespace per line and end with exactly one newline."""
    lines = [line.rstrip() for line in text.splitlines()]
    while lines and not lines[-1]:
        lines.pop()
    while lines and not lines[0]:
        lines.pop(0)
    return "\n".join(lines) + "\n" if lines else ""


class Renderer:
    """Render intent records into immutable RenderedConfigs."""

    def __init__(self, registry: TemplateRegistry, default_template: str = "device"):
        self.registry = registry
        self.default_template = default_template

    @timed("render")
    def render(
        self,
        intent: IntentRecord,
        device: Optional[DeviceConfig] = None,
        template_name: Optional[str] = None,
        template_version: Optional[str] = None,
    ) -> RenderedConfig:
        """
        Render one device's configuration.

        Args:
            intent: Versioned intent snapshot
            device: Inventory entry, supplies platform/site/template defaults
            template_name: Overrides the intent/inventory template
            template_version: Require this template version

        Returns:
            RenderedConfig with content hash

        Raises:
            RenderError: Missing required data or any template fault
        """
        device_id = intent.device_id
        context = intent.to_context()
        if device:
            context["platform"] = context.get("platform") or device.platform
            context["site"] = context.get("site") or device.site
            context["device"] = {"id": device.device_id, "name": device.name, "host": device.host}
        else:
            context["device"] = {"id": device_id, "name": device_id, "host": ""}

        missing = [name for name in REQUIRED_FIELDS if not context.get(name)]
        if missing:
            raise RenderError(
                f"Intent for {device_id} is missing required field(s): {', '.join(missing)}",
                device_id=device_id,
            )

        name = template_name or intent.template or (device.template if device else None) or self.default_template
        platform = context["platform"]
        try:
            template = self.registry.get(name, platform, template_version)
            content = normalize_output(self.registry.render(template, context))
        except RenderError as e:
            e.device_id = device_id
            raise

        rendered = RenderedConfig.create(
            device_id=device_id,
            template_name=name,
            template_version=template.version,
            intent_version=intent.version,
            platform=platform,
            content=content,
        )
        logger.info(
            f"Rendered {device_id} with {platform}/{name} v{template.version} "
            f"(intent v{intent.version}, {rendered.content_hash[:19]})"
        )
        return rendered
