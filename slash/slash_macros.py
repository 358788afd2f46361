"""
Application-wide macro rendering.

Host macros such as `{{user}}` are rendered with Mustache before the
closure-level substitution runs. Tags the host does not define are written
back unchanged, so `{{pipe}}`, `{{var::name}}` and closure macros survive for
the evaluator.
"""

import logging
from typing import Any, Dict, Mapping, Optional

import pystache

logger = logging.getLogger(__name__)


class _Passthrough:
    """Renders an undefined tag back to its source text."""
    def __init__(self, key: str):
        self.key = key

    def __getattr__(self, part: str):
        if part.startswith('__'):
            raise AttributeError(part)
        # dotted names are resolved one part at a time
        return _Passthrough(f"{self.key}.{part}")

    def __str__(self) -> str:
        return "{{%s}}" % self.key


class _MacroContext(dict):
    """A Mustache context in which every name resolves."""
    def __contains__(self, key: Any) -> bool:
        return True

    def __missing__(self, key: str) -> _Passthrough:
        return _Passthrough(key)


class MacroRenderer:
    """Renders the host's global macros into script text."""

    def __init__(self, macros: Optional[Mapping[str, Any]] = None):
        self.macros: Dict[str, Any] = dict(macros or {})
        self._renderer = pystache.Renderer(escape=lambda u: u, missing_tags='ignore')

    def update(self, macros: Mapping[str, Any]):
        self.macros.update(macros)

    def render(self, text: str) -> str:
        if not self.macros or '{{' not in text:
            return text
        try:
            return self._renderer.render(text, _MacroContext(self.macros))
        except Exception as e:
            # Mustache rejected the text (e.g. a stray '{{/name}}'); leave it untouched
            logger.debug("macro rendering skipped for %r: %s", text, e)
            return text

    def __call__(self, text: str) -> str:
        return self.render(text)
