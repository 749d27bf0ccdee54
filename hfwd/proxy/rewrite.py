"""Path rewriting for forwarded requests.

Rules are applied in declaration order and the first rule that actually
changes the path wins; later rules are never consulted for that request.

Replacement templates accept the group references of the original command
line tool (``$1``, ``${1}``, ``${name}``, ``$$``) as well as Python's own
``\\1`` and ``\\g<name>`` forms.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Protocol

from hfwd.errors import ConfigurationError
from hfwd.logging_config import get_logger

logger = get_logger(__name__)

# $$ | ${name} | $name
_DOLLAR_REF = re.compile(r"\$(?:(\$)|\{(\w+)\}|(\w+))")


class PathRewriter(Protocol):
    """Anything that can rewrite a request path."""

    def rewrite(self, path: str) -> tuple[str, bool]:
        """Return ``(new_path, changed)``."""
        ...


def _convert_template(replacement: str) -> str:
    """Translate ``$``-style group references into ``re`` template syntax."""

    def _sub(m: re.Match[str]) -> str:
        if m.group(1):
            return "$"
        return f"\\g<{m.group(2) or m.group(3)}>"

    return _DOLLAR_REF.sub(_sub, replacement)


@dataclass(frozen=True)
class RegexPathRewriter:
    """Replace every match of ``pattern`` in the path with ``template``."""

    pattern: re.Pattern[str]
    template: str

    @classmethod
    def compile(cls, pattern: str, replacement: str) -> RegexPathRewriter:
        """Compile a rule, raising ConfigurationError on a bad pattern or template."""
        try:
            rex = re.compile(pattern)
        except re.error as e:
            raise ConfigurationError(
                f"failed to compile regexp for path rewriter {pattern!r}: {e}"
            ) from e

        template = _convert_template(replacement)
        # Empty alternative keeps the group layout and always matches, so
        # expand() checks every group reference without a real path.
        matcher = re.compile(rex.pattern + "|", rex.flags)
        try:
            matcher.match("").expand(template)
        except (re.error, IndexError) as e:
            raise ConfigurationError(
                f"invalid replacement {replacement!r} for path rewriter {pattern!r}: {e}"
            ) from e

        return cls(pattern=rex, template=template)

    def rewrite(self, path: str) -> tuple[str, bool]:
        replaced = self.pattern.sub(self.template, path)
        return replaced, replaced != path


@dataclass(frozen=True)
class PrefixPathRewriter:
    """Replace a literal leading ``prefix`` of the path with ``replacement``."""

    prefix: str
    replacement: str

    def rewrite(self, path: str) -> tuple[str, bool]:
        if not path.startswith(self.prefix):
            return path, False
        replaced = self.replacement + path[len(self.prefix) :]
        return replaced, replaced != path


class PathRewriteEngine:
    """Ordered collection of path rewriters; first effective rewrite wins."""

    def __init__(self, rewriters: Sequence[PathRewriter] = ()):
        self._rewriters = tuple(rewriters)

    @classmethod
    def from_rules(cls, rules: Iterable[tuple[str, str]]) -> PathRewriteEngine:
        """Build an engine of regex rewriters from ``(pattern, replacement)`` pairs.

        Fails as a whole if any single rule does not compile.
        """
        return cls([RegexPathRewriter.compile(pattern, repl) for pattern, repl in rules])

    @property
    def rewriters(self) -> tuple[PathRewriter, ...]:
        return self._rewriters

    def __len__(self) -> int:
        return len(self._rewriters)

    def rewrite(self, path: str) -> tuple[str, bool]:
        """Apply the first rewriter that changes ``path``.

        Returns the original path and ``False`` if none does.
        """
        for rewriter in self._rewriters:
            new_path, changed = rewriter.rewrite(path)
            if changed:
                logger.debug("Rewrote request path", old_path=path, new_path=new_path)
                return new_path, True
        return path, False
