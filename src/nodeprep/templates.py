"""Template rendering for files nodeprep writes onto the node."""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

from jinja2 import (
    BaseLoader,
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
)

from .providers.shell import ps_literal


class TemplateEngine:
    """Render built-in Jinja2 templates, optionally shadowed by an override directory."""

    def __init__(self, loader: BaseLoader) -> None:
        """Build the Jinja2 environment around *loader*."""
        self._env = Environment(
            loader=loader,
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,  # noqa: S701 - PowerShell output, not HTML
        )
        self._env.filters["psquote"] = ps_literal

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates found in *override_dir*."""
        loaders: list[BaseLoader] = []
        if override_dir is not None and override_dir.exists():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("nodeprep", "templates"))
        return cls(ChoiceLoader(loaders))

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context* and return the text."""
        template = self._env.get_template(template_name)
        return template.render(**dict(context))

    def render_to_path(
        self,
        template_name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int | None = None,
    ) -> bool:
        """Render into *destination*; return ``True`` when the file content changed."""
        content = self.render_to_string(template_name, context)
        if destination.is_file() and destination.read_bytes() == content.encode("utf-8"):
            return False
        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{destination.name}.", suffix=".tmp", dir=str(destination.parent)
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
                handle.write(content)
            if mode is not None:
                tmp_path.chmod(mode)
            os.replace(tmp_path, destination)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise
        return True


__all__ = ["TemplateEngine"]
