"""
Whitelisted display directives.

The backend's `script` field is never executed as code. The browser side only
applies operations that parse into this vocabulary:

    navigate('/path')      also router.push('/path')
    speak('text')
    scroll('top' | 'bottom')
    highlight('css selector')

Statements are separated by `;` or newlines. Anything else is rejected and
reported next to the accepted operations.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Literal

from pydantic import BaseModel, Field

from logging_setup import Component, get_logger

logger = get_logger(Component.DECODER)


OpName = Literal["navigate", "speak", "scroll", "highlight"]

_CALL_PATTERN = re.compile(
    r"""
    (?P<name>[A-Za-z_][\w.]*)\s*\(\s*
    (?P<q>["'`])(?P<arg>.*?)(?P=q)
    \s*\)
    """,
    re.VERBOSE | re.DOTALL,
)

_ALIASES = {
    "navigate": "navigate",
    "router.push": "navigate",
    "speak": "speak",
    "scroll": "scroll",
    "highlight": "highlight",
}

SCROLL_TARGETS = ("top", "bottom")
MAX_SELECTOR_LENGTH = 200


class DirectiveOp(BaseModel):
    """One accepted display operation."""

    op: OpName
    argument: str = Field(..., min_length=1)


@dataclass
class DirectiveInterpretation:
    operations: List[DirectiveOp] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)

    @property
    def accepted_all(self) -> bool:
        return not self.rejected


def _validate(op: str, argument: str) -> bool:
    if not argument:
        return False
    if op == "navigate":
        return argument.startswith("/") and "//" not in argument and not any(c.isspace() for c in argument)
    if op == "scroll":
        return argument in SCROLL_TARGETS
    if op == "highlight":
        return len(argument) <= MAX_SELECTOR_LENGTH and "<" not in argument
    return True


def _leftovers(directive: str, spans: List[tuple]) -> List[str]:
    """Text outside the matched calls, split into statements."""
    pieces, cursor = [], 0
    for start, end in spans:
        pieces.append(directive[cursor:start])
        cursor = end
    pieces.append(directive[cursor:])
    statements = re.split(r"[;\n]", "".join(pieces))
    return [s.strip() for s in statements if s.strip()]


def interpret(directive: str) -> DirectiveInterpretation:
    """Parse a raw directive into whitelisted operations."""
    result = DirectiveInterpretation()
    if not directive or not directive.strip():
        return result

    spans = []
    for match in _CALL_PATTERN.finditer(directive):
        spans.append(match.span())
        name = match.group("name")
        argument = match.group("arg").strip()
        op = _ALIASES.get(name)
        if op is None or not _validate(op, argument):
            result.rejected.append(match.group(0))
            continue
        result.operations.append(DirectiveOp(op=op, argument=argument))

    result.rejected.extend(_leftovers(directive, spans))

    if result.rejected:
        logger.warning(
            "Rejected directive statements",
            accepted=len(result.operations),
            rejected=len(result.rejected),
        )
    return result
