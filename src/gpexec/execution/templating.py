"""Command line templater.

Turns a task's command-line template plus a substitution environment into
an argv list.

Placeholder rules:

* ``<name>`` is replaced by the environment value for ``name``; names with
  no value become ``""``.
* A ``<`` whose delimiter body contains a space, or which ends its token
  (``prog < <input.file>``), is a literal, typically a stdin redirection,
  and is kept verbatim.
* A formal parameter's ``prefix_when_specified`` is glued in front of the
  value, but only when the value is non-empty.
* A token that resolves to ``""`` is dropped from argv when it only cites
  optional (or undeclared) parameters.

The template is split into tokens *before* substitution so a value such as
``/data/my file.txt`` remains a single argv entry. Substitution is applied
twice, so one parameter may reference another (``<output>`` =
``<input.file_basename>.out``).

Example:
    >>> env = SubstitutionEnvironment({"perl": "perl -Ifoo", "x": "1"})
    >>> build_command_line("<perl> run.pl <x> <y>", env, [])
    ['perl', '-Ifoo', 'run.pl', '1']
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence

from gpexec.core.errors import TemplateError
from gpexec.core.models import FormalParameter

logger = logging.getLogger(__name__)

LEFT_DELIMITER = "<"
RIGHT_DELIMITER = ">"
QUOTE = '"'


def _index(formals: Iterable[FormalParameter] | Mapping[str, FormalParameter]) -> Mapping[str, FormalParameter]:
    if isinstance(formals, Mapping):
        return formals
    return {f.name: f for f in formals}


def substitute(
    text: str,
    env: Mapping[str, str],
    formals: Iterable[FormalParameter] | Mapping[str, FormalParameter] = (),
    *,
    strict: bool = True,
) -> str | None:
    """Replace every ``<name>`` placeholder in ``text``.

    ``strict`` applies to template text. Text that already went through a
    substitution (parameter values such as ``score<0.05``) is scanned with
    ``strict=False``, where an unmatched ``<`` is kept as a literal.

    Returns:
        The substituted text, or ``None`` when the result is empty and no
        non-optional formal parameter was cited (the caller drops the token).

    Raises:
        TemplateError: A ``<`` has no matching ``>`` and ``strict`` is set.
    """
    formal_by_name = _index(formals)
    pieces: list[str] = []
    cites_required = False
    pos = 0
    while True:
        start = text.find(LEFT_DELIMITER, pos)
        if start == -1:
            break
        end = text.find(RIGHT_DELIMITER, start + 1)
        blank = text.find(" ", start + 1)
        if start + 1 == len(text) or (blank != -1 and (end == -1 or blank < end)):
            # literal "<", e.g. stdin redirection
            pieces.append(text[pos:start + 1])
            pos = start + 1
            continue
        if end == -1:
            if not strict:
                logger.debug("unmatched %r in %r, keeping the rest verbatim", LEFT_DELIMITER, text)
                break
            raise TemplateError(
                f"missing right delimiter '{RIGHT_DELIMITER}' after position {start} in: {text}"
            )

        name = text[start + 1:end]
        value = env.get(name)
        if value is None:
            logger.debug("no value for <%s>, substituting empty string", name)
            value = ""
        formal = formal_by_name.get(name)
        if formal is not None:
            if not formal.optional:
                cites_required = True
            if value and formal.prefix_when_specified:
                value = formal.prefix_when_specified + value

        pieces.append(text[pos:start])
        pieces.append(value)
        pos = end + 1

    pieces.append(text[pos:])
    result = "".join(pieces)
    if not result and not cites_required:
        return None
    return result


def tokenize(command_line: str) -> list[str]:
    """Split a command line into tokens.

    A leading double quote marks the run up to the next double quote as the
    program token (which may contain spaces); everything else splits on
    whitespace.
    """
    line = command_line.strip()
    if line.startswith(QUOTE):
        close = line.find(QUOTE, 1)
        if close == -1:
            raise TemplateError(f"missing closing quote in command line: {command_line}")
        return [line[1:close]] + line[close + 1:].split()
    return line.split()


def _substitute_all(
    tokens: Sequence[str],
    env: Mapping[str, str],
    formals: Mapping[str, FormalParameter],
    *,
    strict: bool,
) -> list[str]:
    argv = []
    for token in tokens:
        if not token:
            # kept by an earlier pass: it cites a required parameter
            argv.append(token)
            continue
        value = substitute(token, env, formals, strict=strict)
        if value is None:
            logger.debug("dropping empty optional token %r", token)
            continue
        argv.append(value)
    return argv


def build_command_line(
    template: str,
    env: Mapping[str, str],
    formals: Iterable[FormalParameter] | Mapping[str, FormalParameter] = (),
    *,
    command_prefix: str | None = None,
) -> list[str]:
    """Build the argv for a task invocation.

    Raises:
        TemplateError: Empty template, unclosed quote or delimiter, or an
            argv that ends up empty.
    """
    line = (template or "").strip()
    if not line:
        raise TemplateError("Command line not defined")
    if command_prefix and command_prefix.strip():
        line = f"{command_prefix.strip()} {line}"

    formal_by_name = _index(formals)
    if line.startswith(QUOTE):
        tokens = tokenize(line)
        program = substitute(tokens[0], env, formal_by_name)
        head = [] if program is None else [program]
        tokens = tokens[1:]
    else:
        # The first token may expand to several words, e.g. <perl> = "perl -Ifoo".
        first, *rest = line.split(None, 1)
        expanded = substitute(first, env, formal_by_name) or ""
        head = expanded.split()
        tokens = rest[0].split() if rest else []

    # head is already substituted; only template tokens are parsed strictly
    argv = _substitute_all(head, env, formal_by_name, strict=False)
    argv += _substitute_all(tokens, env, formal_by_name, strict=True)
    argv = _substitute_all(argv, env, formal_by_name, strict=False)
    if not argv:
        raise TemplateError(f"command line is empty after substitution: {template}")
    return argv


def render_command_line(argv: Sequence[str]) -> str:
    """Single-line rendering of an argv for logs and diagnostics."""
    return " ".join(argv)


__all__ = [
    "LEFT_DELIMITER",
    "RIGHT_DELIMITER",
    "substitute",
    "tokenize",
    "build_command_line",
    "render_command_line",
]
