"""
LDAP search filter templates.

A filter template is an LDAP filter string with ``{{name}}`` placeholders, for
example ``(&(uid={{name}})(memberOf=cn=staff,ou=groups,dc=example,dc=com))``.
Templates are parsed once into a sequence of literal and placeholder segments;
rendering escapes every substituted value with python-ldap's
:py:func:`ldap.filter.escape_filter_chars` so that a username like
``a)(uid=*`` can never change the shape of the filter.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from django.core.exceptions import ImproperlyConfigured
from ldap.filter import escape_filter_chars
from ldap_filter import Filter

from .exceptions import InvalidVariable

#: The filter used when the configuration does not name one.
DEFAULT_FILTER = "(uid={{name}})"


@dataclass(frozen=True)
class Literal:
    text: str


@dataclass(frozen=True)
class Placeholder:
    name: str


Segment = Literal | Placeholder


@dataclass(frozen=True)
class FilterTemplate:
    """
    A parsed filter template.

    Build one with :py:meth:`FilterTemplate.parse`, then call
    :py:meth:`render` once per search.

    Args:
        source: the template text this was parsed from
        segments: the literal and placeholder segments, in order

    """

    source: str
    segments: tuple[Segment, ...]

    @classmethod
    def parse(cls, text: str) -> "FilterTemplate":
        """
        Split ``text`` into literal and placeholder segments.

        A placeholder is ``{{`` followed by a non-empty name containing no
        ``}``, followed by ``}}``.  Anything else, including an unterminated
        ``{{``, is literal text.

        Args:
            text: the template text

        Returns:
            The parsed template.

        """
        segments: list[Segment] = []
        literal: list[str] = []
        pos = 0
        while True:
            start = text.find("{{", pos)
            if start == -1:
                break
            end = text.find("}}", start + 2)
            if end == -1:
                break
            name = text[start + 2 : end]
            if not name or "}" in name:
                # Not a placeholder here; keep the first brace and rescan
                literal.append(text[pos : start + 1])
                pos = start + 1
                continue
            literal.append(text[pos:start])
            if "".join(literal):
                segments.append(Literal("".join(literal)))
            literal = []
            segments.append(Placeholder(name))
            pos = end + 2
        literal.append(text[pos:])
        if "".join(literal):
            segments.append(Literal("".join(literal)))
        return cls(source=text, segments=tuple(segments))

    @property
    def variables(self) -> list[str]:
        """The placeholder names referenced by this template, in order of first use."""
        names: list[str] = []
        for segment in self.segments:
            if isinstance(segment, Placeholder) and segment.name not in names:
                names.append(segment.name)
        return names

    def render(self, variables: Mapping[str, Any]) -> str:
        """
        Substitute every placeholder with the escaped value of its variable.

        Args:
            variables: the values to substitute, keyed by placeholder name

        Raises:
            InvalidVariable: a placeholder names a variable not in ``variables``

        Returns:
            A filter string safe to hand to the directory.

        """
        parts: list[str] = []
        for segment in self.segments:
            if isinstance(segment, Literal):
                parts.append(segment.text)
                continue
            if segment.name not in variables:
                raise InvalidVariable(segment.name)
            parts.append(escape_filter_chars(str(variables[segment.name])))
        return "".join(parts)

    def validate(self) -> None:
        """
        Check that the template renders to a syntactically valid LDAP filter.

        Every placeholder is filled with a neutral value and the result is
        parsed with :py:meth:`ldap_filter.Filter.parse`.

        Raises:
            ImproperlyConfigured: the template is not a valid filter

        """
        sample = self.render({name: "x" for name in self.variables})
        try:
            Filter.parse(sample)
        except Exception as e:  # noqa: BLE001
            msg = f"Invalid LDAP filter template {self.source!r}: {e}"
            raise ImproperlyConfigured(msg) from e

    def __str__(self) -> str:
        return self.source


def render(template: str | FilterTemplate, variables: Mapping[str, Any]) -> str:
    """
    Render ``template`` with ``variables``.

    Args:
        template: template text, or an already parsed :py:class:`FilterTemplate`
        variables: the values to substitute

    Raises:
        InvalidVariable: the template references a missing variable

    Returns:
        The rendered, escaped filter string.

    """
    if not isinstance(template, FilterTemplate):
        template = FilterTemplate.parse(template)
    return template.render(variables)
