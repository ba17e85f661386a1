"""
NGINX configuration rendering from `${VAR}` templates using Jinja2.

Templates keep the envsubst syntax the nginx image uses: `${NAME}` is
replaced from the substitution mapping, and names that are not defined
are written back verbatim so nginx's own `${var}` references survive.
"""

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, TemplateError, Undefined

logger = logging.getLogger(__name__)


class TemplateRenderError(Exception):
    """A template could not be rendered or written."""

    def __init__(self, message: str, template: Optional[str] = None):
        self.message = message
        self.template = template
        super().__init__(message)


class _PassthroughUndefined(Undefined):
    """Render unknown variables back as `${name}`."""

    def __str__(self) -> str:
        return "${%s}" % self._undefined_name


class TemplateRenderer:
    """
    Renders `*.template` files from a template directory into an output directory.

    `templates/default.conf.template` becomes `conf.d/default.conf`;
    subdirectories are mirrored.
    """

    def __init__(self, template_dir: Path, output_dir: Path, suffix: str = ".template"):
        self.template_dir = Path(template_dir)
        self.output_dir = Path(output_dir)
        self.suffix = suffix

        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            variable_start_string="${",
            variable_end_string="}",
            # nginx configs have no use for Jinja blocks or comments
            block_start_string="<%certkeeper%",
            block_end_string="%certkeeper%>",
            comment_start_string="<#certkeeper#",
            comment_end_string="#certkeeper#>",
            undefined=_PassthroughUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )

    def list_templates(self) -> list[str]:
        if not self.template_dir.is_dir():
            return []
        return sorted(name for name in self.env.list_templates() if name.endswith(self.suffix))

    def render_string(self, source: str, variables: Mapping[str, str]) -> str:
        """Render a template source string with the given variables."""
        return self.env.from_string(source).render(dict(variables))

    def render_all(self, variables: Mapping[str, str]) -> list[Path]:
        """
        Render every template into the output directory.

        Args:
            variables: Substitution mapping

        Returns:
            Paths of written files

        Raises:
            TemplateRenderError: If any template fails to render or write
        """
        written = []
        for name in self.list_templates():
            target = self.output_dir / name[: -len(self.suffix)]
            try:
                content = self.env.get_template(name).render(dict(variables))
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(content)
            except (TemplateError, OSError) as e:
                raise TemplateRenderError(f"Failed to render {name}: {e}", template=name)

            logger.info(f"Rendered {name} to {target}")
            written.append(target)

        return written
