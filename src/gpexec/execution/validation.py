"""Parameter validator and platform compatibility checks.

``validate_parameters`` is used both when a task is defined (design time)
and right before a job runs (run time). It never stops at the first
problem: callers get the complete list so a user can fix everything in one
pass.

Checks:
    - task name is a legal identifier (letters, digits, ``.``; no leading
      digit or ``.``; not an R keyword)
    - command line is defined
    - no duplicate parameter names
    - every supplied parameter is declared
    - parameter names do not shadow built-in environment names
    - every non-optional formal parameter is cited in the command line
    - default values (and selected values at run time) are permitted choices
    - at run time, non-optional parameters are supplied and not blank
    - with an environment, every cited placeholder can be resolved
"""

from __future__ import annotations

import platform
import re
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence

from gpexec.core.errors import ParameterValidationError, PlatformError
from gpexec.core.models import FormalParameter, Parameter, TaskTemplate
from gpexec.execution.environment import INPUT_PATH, WELL_KNOWN_NAMES

R_RESERVED_WORDS = frozenset({
    "if", "else", "repeat", "while", "function", "for", "in", "next", "break",
    "true", "false", "null", "na", "inf", "nan",
})

_TASK_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9.]*$")
_PLACEHOLDER_RE = re.compile(r"<([^<> ]+)>")

ANY = "any"


def is_legal_task_name(name: str) -> bool:
    """True if ``name`` can be used as an identifier by every task language."""
    if not name or not _TASK_NAME_RE.match(name):
        return False
    return name not in R_RESERVED_WORDS


def cited_names(command_line: str) -> list[str]:
    """Placeholder names cited in a command line, in order of appearance."""
    return _PLACEHOLDER_RE.findall(command_line or "")


def validate_parameters(
    task_name: str,
    command_line: str,
    actuals: Sequence[Parameter],
    formals: Sequence[FormalParameter],
    env: Mapping[str, str] | None = None,
    *,
    runtime: bool = False,
) -> list[str]:
    """Return every problem found; an empty list means valid."""
    problems: list[str] = []
    command_line = command_line or ""
    cited = set(cited_names(command_line))
    formal_by_name = {f.name: f for f in formals}

    if not is_legal_task_name(task_name):
        problems.append(
            f"'{task_name}' is not a legal task name. It must contain only letters, digits "
            f"and periods, may not begin with a period or digit, and may not be one of: "
            f"{', '.join(sorted(R_RESERVED_WORDS))}"
        )
    if not command_line.strip():
        problems.append("Command line not defined")

    for name, count in Counter(f.name for f in formals).items():
        if count > 1:
            problems.append(f"duplicate parameter name {name} in the task definition")
    inputs = [p for p in actuals if not p.is_output]
    for name, count in Counter(p.name for p in inputs).items():
        if count > 1:
            problems.append(f"parameter {name} was supplied {count} times")

    for formal in formals:
        if formal.name in WELL_KNOWN_NAMES:
            problems.append(f"{formal.name} is a reserved name and cannot be used as a parameter name")
        if not formal.optional and formal.name not in cited:
            problems.append(f"non-optional parameter {formal.name} is not cited in the command line")
        if formal.default_value and not formal.accepts(formal.default_value):
            problems.append(
                f"default value '{formal.default_value}' for parameter {formal.name} "
                f"is not one of the permitted choices"
            )

    supplied = {p.name: p for p in inputs}
    for param in inputs:
        formal = formal_by_name.get(param.name)
        if formal is None:
            problems.append(f"supplied parameter {param.name} is not part of the definition")
            continue
        if not runtime:
            continue
        value = param.value or ""
        if not formal.optional and not value and not formal.default_value:
            problems.append(f"non-optional parameter {param.name} is blank")
        if value and not formal.accepts(value):
            problems.append(
                f"value '{value}' for parameter {param.name} is not one of the permitted choices"
            )

    if runtime:
        for formal in formals:
            if not formal.optional and formal.name not in supplied and not formal.default_value:
                problems.append(f"non-optional parameter {formal.name} was not supplied")

    if env is not None:
        problems.extend(validate_substitutions(command_line, env, formal_by_name))

    return problems


def validate_substitutions(
    command_line: str,
    env: Mapping[str, str],
    formals: Mapping[str, FormalParameter],
) -> list[str]:
    problems = []
    seen = set()
    for name in cited_names(command_line):
        if name in seen or name in env or name.endswith(INPUT_PATH):
            continue
        seen.add(name)
        formal = formals.get(name)
        if formal is not None and formal.optional:
            continue
        problems.append(f"no substitution available for <{name}>")
    return problems


def validate_task(template: TaskTemplate) -> list[str]:
    """Design-time validation of a task definition."""
    actuals = [Parameter(name=f.name, value=f.default_value) for f in template.formal_parameters]
    return validate_parameters(
        template.name, template.command_line, actuals, list(template.formal_parameters)
    )


def ensure_valid(problems: Iterable[str]) -> None:
    problems = list(problems)
    if problems:
        raise ParameterValidationError(problems)


# ── Platform ─────────────────────────────────────────────────────────────

_X86_ALIASES = frozenset({"x86_64", "amd64", "x64", "i86pc"})
_MAC_ALIASES = frozenset({"darwin", "mac os x", "macos", "osx"})


def _is_x86(cpu: str) -> bool:
    cpu = cpu.lower()
    return cpu.endswith("86") or cpu in _X86_ALIASES


def validate_cpu(expected: str | None, actual: str | None = None) -> None:
    """Raise ``PlatformError`` if the host CPU cannot run the task."""
    expected = (expected or "").strip()
    if not expected or expected.lower() == ANY:
        return
    actual = actual or platform.machine()
    if expected.lower() == actual.lower():
        return
    if _is_x86(expected) and _is_x86(actual):
        return
    raise PlatformError(
        f"Cannot run on this platform. Task requires a {expected} CPU, but this is {actual}"
    )


def validate_os(expected: str | None, actual: str | None = None) -> None:
    """Raise ``PlatformError`` if the host operating system cannot run the task."""
    expected = (expected or "").strip()
    if not expected or expected.lower() == ANY:
        return
    actual = actual or platform.system()
    exp, act = expected.lower(), actual.lower()
    if exp == act:
        return
    if exp.startswith("windows") and act.startswith("windows"):
        return
    if exp in _MAC_ALIASES and act in _MAC_ALIASES:
        return
    raise PlatformError(
        f"Cannot run on this platform. Task requires a {expected} operating system, "
        f"but this is {actual}"
    )


__all__ = [
    "is_legal_task_name",
    "cited_names",
    "validate_parameters",
    "validate_substitutions",
    "validate_task",
    "ensure_valid",
    "validate_cpu",
    "validate_os",
    "R_RESERVED_WORDS",
]
