"""
Shell command analysis for the policy engine.

The engine never runs commands; it only needs to know which simple commands a
command line is made of and whether it redirects output. Both questions are
answered lexically with shlex, without invoking a shell.

Security Note:
    Anything the lexer cannot take apart with confidence (unbalanced quotes,
    command or process substitution) is reported as unparseable so the engine
    can fall back to asking the user.
"""

import re
import shlex
from dataclasses import dataclass

# Characters that end a word and start an operator
_OPERATOR_CHARS = "();<>|&\n"

# Longest first so runs like ";;" or "&&" are not split into single characters
_OPERATORS = (
    "&&", "||", "|&", ";;", ">>", "<<", "&>", ">&", "<&", "<>",
    "(", ")", ";", "|", "&", "<", ">", "\n",
)

_SEPARATORS = frozenset({"&&", "||", "|&", ";;", ";", "|", "&", "\n"})
_GROUPING = frozenset({"(", ")"})

# $(...), `...`, <(...) and >(...) run nested commands we cannot see into
_SUBSTITUTION = re.compile(r"\$\(|`|[<>]\(")


class ShellParseError(ValueError):
    """Raised when a command line cannot be analysed lexically."""


@dataclass(frozen=True)
class ParsedCommand:
    """
    A command line broken into its simple commands.

    Attributes:
        parts: Simple commands, in order, with operators removed
        redirection: Whether any redirection operator appears
    """

    parts: tuple[str, ...]
    redirection: bool

    @property
    def is_compound(self) -> bool:
        return len(self.parts) > 1


def _split_operator_run(run: str) -> list[str]:
    """Break a run of operator characters (e.g. ";\\n" or ")|") into operators."""
    operators = []
    i = 0
    while i < len(run):
        for op in _OPERATORS:
            if run.startswith(op, i):
                operators.append(op)
                i += len(op)
                break
        else:
            # Unreachable for runs made of _OPERATOR_CHARS
            operators.append(run[i])
            i += 1
    return operators


def _is_operator(token: str) -> bool:
    return bool(token) and all(c in _OPERATOR_CHARS for c in token)


def _tokenize(command: str) -> list[str]:
    # Non-POSIX mode keeps quotes on their tokens, so a quoted ";" is never
    # mistaken for an operator.
    lexer = shlex.shlex(command, posix=False, punctuation_chars=_OPERATOR_CHARS)
    lexer.whitespace_split = True
    lexer.whitespace = " \t\r"
    lexer.commenters = ""
    try:
        return list(lexer)
    except ValueError as e:
        raise ShellParseError(str(e)) from e


def parse_command(command: str) -> ParsedCommand:
    """
    Split a command line into simple commands.

    Args:
        command: The full command line

    Returns:
        ParsedCommand with one entry per simple command

    Raises:
        ShellParseError: If the command has unbalanced quotes or contains
            command/process substitution

    Example:
        >>> parse_command("git status && rm -rf build > log").parts
        ('git status', 'rm -rf build > log')
    """
    if _SUBSTITUTION.search(command):
        raise ShellParseError("command substitution is not supported")

    # POSIX splitting is stricter about quoting; use it only as a validity check
    try:
        shlex.split(command)
    except ValueError as e:
        raise ShellParseError(str(e)) from e

    parts: list[str] = []
    current: list[str] = []
    redirection = False

    for token in _tokenize(command):
        if not _is_operator(token):
            current.append(token)
            continue
        for op in _split_operator_run(token):
            if op in _SEPARATORS:
                if current:
                    parts.append(" ".join(current))
                current = []
            elif op in _GROUPING:
                continue
            else:
                redirection = True
                current.append(op)

    if current:
        parts.append(" ".join(current))

    if len(parts) == 1:
        # Keep the original spacing for simple commands
        return ParsedCommand(parts=(command.strip(),), redirection=redirection)
    return ParsedCommand(parts=tuple(parts), redirection=redirection)


def split_commands(command: str) -> list[str]:
    """Return the simple commands of a command line (see parse_command)."""
    return list(parse_command(command).parts)


def has_redirection(command: str) -> bool:
    """
    Check whether a command line redirects input or output.

    Unparseable commands are treated as redirecting.
    """
    try:
        return parse_command(command).redirection
    except ShellParseError:
        return True
