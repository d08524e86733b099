"""Manifest rendering for build jobs.

This module handles:
- Loading the manifest template (bundled kaniko pod or a custom file)
- Rendering JobSpec fields into the template with Jinja2
- Checking that the rendered manifest parses as YAML

Undefined template variables are errors, and values are inserted verbatim,
so the rendered manifest contains the exact name, namespace, image
reference and tag from the JobSpec.
"""

from __future__ import annotations

import logging
import posixpath
from pathlib import Path
from typing import Any

import jinja2
import yaml

from podbuild.errors import TemplateError
from podbuild.jobs.models import JobSpec
from podbuild.types import TlsPolicy

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_NAME = "kaniko-pod.yaml"

# Values that may legitimately be empty or false
OPTIONAL_VALUES = frozenset({"skip_tls_verify"})


def template_environment(search_path: Path | None = None) -> jinja2.Environment:
    """Create the Jinja2 environment used for manifests.

    Args:
        search_path: Directory holding custom templates; the bundled
            ``podbuild/templates`` directory when omitted.

    Returns:
        Environment that fails on undefined variables.
    """
    loader: jinja2.BaseLoader
    if search_path is None:
        loader = jinja2.PackageLoader("podbuild", "templates")
    else:
        loader = jinja2.FileSystemLoader(str(search_path))
    return jinja2.Environment(
        loader=loader,
        undefined=jinja2.StrictUndefined,
        keep_trailing_newline=True,
        autoescape=False,
    )


def load_template(path: Path | None = None) -> jinja2.Template:
    """Load a manifest template.

    Args:
        path: Custom template file; the bundled kaniko pod template is used
            when omitted.

    Returns:
        Compiled template.

    Raises:
        TemplateError: If the template cannot be read or does not compile.
    """
    try:
        if path is None:
            return template_environment().get_template(DEFAULT_TEMPLATE_NAME)
        return template_environment(path.parent).get_template(path.name)
    except jinja2.TemplateNotFound as e:
        raise TemplateError(f"Manifest template not found: {path or e.name}") from e
    except jinja2.TemplateSyntaxError as e:
        raise TemplateError(
            f"Malformed template {e.name or ''} line {e.lineno}: {e.message}"
        ) from e
    except OSError as e:
        raise TemplateError(f"Cannot read manifest template {path}: {e}") from e


def compile_template(source: str) -> jinja2.Template:
    """Compile template text in the manifest environment.

    Raises:
        TemplateError: If the text is not a valid template.
    """
    try:
        return template_environment().from_string(source)
    except jinja2.TemplateSyntaxError as e:
        raise TemplateError(f"Malformed template line {e.lineno}: {e.message}") from e


def template_values(spec: JobSpec) -> dict[str, Any]:
    """Compute template variables for a JobSpec.

    Args:
        spec: Job specification.

    Returns:
        Mapping of variable name to value.
    """
    return {
        "name": spec.name,
        "namespace": spec.namespace,
        "image": spec.image,
        "tag": spec.tag,
        "image_ref": spec.image_ref,
        "context_path": spec.context_path,
        "context_dir": posixpath.dirname(spec.context_path) or "/",
        "dockerfile": spec.dockerfile,
        "builder_image": spec.builder_image,
        "receiver_container": spec.receiver_container,
        "receiver_image": spec.receiver_image,
        "registry_secret": spec.registry_secret,
        "active_deadline_seconds": spec.active_deadline_seconds,
        "skip_tls_verify": spec.tls_policy == TlsPolicy.SKIP,
        "tls_policy": spec.tls_policy.value,
    }


def render_manifest(
    spec: JobSpec, template: jinja2.Template | str | None = None
) -> str:
    """Render a job manifest from a template.

    Args:
        spec: Job specification.
        template: Compiled template or template text; the bundled template
            when omitted.

    Returns:
        Rendered manifest text.

    Raises:
        TemplateError: If a required field is empty, the template uses an
            undefined variable or is malformed, or the result is not a YAML
            mapping.
    """
    if template is None:
        template = load_template()
    elif isinstance(template, str):
        template = compile_template(template)

    values = template_values(spec)
    missing = sorted(
        key
        for key, value in values.items()
        if value in ("", None) and key not in OPTIONAL_VALUES
    )
    if missing:
        raise TemplateError(f"Required job fields are unset: {', '.join(missing)}")

    try:
        rendered = template.render(**values)
    except jinja2.UndefinedError as e:
        raise TemplateError(f"Undefined variable in template: {e.message}") from e
    except jinja2.TemplateError as e:
        raise TemplateError(f"Template rendering failed: {e}") from e

    try:
        document = yaml.safe_load(rendered)
    except yaml.YAMLError as e:
        raise TemplateError(f"Rendered manifest is not valid YAML: {e}") from e
    if not isinstance(document, dict):
        raise TemplateError(
            f"Rendered manifest must be a mapping, got {type(document).__name__}"
        )

    logger.debug("Rendered manifest for %s/%s", spec.namespace, spec.name)
    return rendered


__all__ = [
    "DEFAULT_TEMPLATE_NAME",
    "compile_template",
    "load_template",
    "render_manifest",
    "template_environment",
    "template_values",
]
