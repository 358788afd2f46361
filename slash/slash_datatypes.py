"""
Defines the core data types for the slash-command runtime.

This module provides the scope, closure and executor classes produced by the
parser and consumed by the evaluator, the command metadata held by the
registry, and the exception hierarchy shared by all of them.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union, TYPE_CHECKING

if TYPE_CHECKING:
    from slash.slash_interpreter import Evaluator


# =================================================================
# Errors
# =================================================================

class SlashError(Exception):
    """Base class for every error raised by the slash-command core."""
    pass


class IllegalNameError(SlashError, ValueError):
    def __init__(self, name: str):
        super().__init__(f'Illegal Name. Slash command name cannot begin with "{name[:1]}".')
        self.name = name


class ParserError(SlashError):
    """A parse-time error carrying the offending source location."""
    def __init__(self, message: str, text: str, offset: int, fragment: str = '', name: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.text = text
        self.offset = offset
        self.fragment = fragment
        self.name = name

    @property
    def line(self) -> int:
        return self.text.count('\n', 0, max(self.offset, 0)) + 1

    @property
    def col(self) -> int:
        line_start = self.text.rfind('\n', 0, max(self.offset, 0)) + 1
        return self.offset - line_start + 1

    def __repr__(self) -> str:
        return f"ParserError({self.message!r}, offset={self.offset})"


class SlashRuntimeError(SlashError, RuntimeError):
    """Base class for errors raised while executing a closure."""
    pass


class ClosureNotFoundError(SlashRuntimeError):
    def __init__(self, variable: str):
        super().__init__(f"{variable} is not a closure.")
        self.variable = variable


class UnknownCommandError(SlashRuntimeError):
    def __init__(self, name: str):
        super().__init__(f'Unknown command: "/{name}"')
        self.name = name


class UndeclaredVariableError(SlashRuntimeError, KeyError):
    def __init__(self, name: str):
        SlashRuntimeError.__init__(self, f"No such variable: {name}")
        self.name = name

    def __str__(self) -> str:
        return f"No such variable: {self.name}"


# =================================================================
# Escaping
# =================================================================

# Characters whose syntactic role a preceding backslash suppresses.
BRACES = '{}'
SYNTAX_CHARS = ' \t\r\n"[]|'
ESCAPABLE = BRACES + SYNTAX_CHARS


def _escapable(c: str, chars: str) -> bool:
    # any whitespace counts as escapable when ' ' is in the set
    return c in chars or (c.isspace() and ' ' in chars)


def escape(text: str, chars: str = ESCAPABLE) -> str:
    """Backslash-escape every character of `text` that appears in `chars`."""
    return ''.join(f'\\{c}' if _escapable(c, chars) else c for c in text)


def unescape(text: str, chars: str = ESCAPABLE) -> str:
    """Drop each backslash that directly precedes a character of `chars`."""
    return re.sub(
        r'\\(?=(.))',
        lambda m: '' if _escapable(m.group(1), chars) else '\\',
        text,
        flags=re.DOTALL,
    )


# =================================================================
# Commands
# =================================================================

@dataclass
class CommandArgument:
    """Describes one named or unnamed argument of a command for the help listing."""
    name: str = ''
    description: str = ''
    type_list: List[str] = field(default_factory=lambda: ['string'])
    is_required: bool = False
    default_value: Optional[str] = None
    accepts_multiple: bool = False
    enum_list: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Command:
    """A registered slash command. Immutable once registered."""
    name: str
    callback: Callable[..., Any]
    aliases: List[str] = field(default_factory=list)
    help_text: str = ''
    interrupts_generation: bool = False
    purge_from_message: bool = True
    named_arguments: List[CommandArgument] = field(default_factory=list)
    unnamed_arguments: List[CommandArgument] = field(default_factory=list)
    return_type: str = 'void'


# =================================================================
# Scope
# =================================================================

class Scope:
    """A lexically chained variable environment owned by one Closure.

    `variable_names` records what is declared here (the parser declares
    names before anything is bound), `variables` holds the bound values.
    `pipe` is the latest command result of the owning closure's current
    execution and is never looked up through `parent`.
    """
    def __init__(self, parent: Optional['Scope'] = None):
        self.parent = parent
        self.variable_names: List[str] = []
        self.variables: Dict[str, 'Value'] = {}
        self.pipe: Any = None
        self.macro_list: List[Tuple[str, str]] = []

    @property
    def all_variable_names(self) -> List[str]:
        """Declared names visible from this scope, innermost first."""
        names: List[str] = []
        cur = self
        while cur is not None:
            for name in cur.variable_names:
                if name not in names:
                    names.append(name)
            cur = cur.parent
        return names

    def declare(self, name: str):
        if name not in self.variable_names:
            self.variable_names.append(name)

    def find_owner(self, name: str) -> Optional['Scope']:
        """Finds the nearest scope in the chain that declares `name`."""
        cur = self
        while cur is not None:
            if name in cur.variables or name in cur.variable_names:
                return cur
            cur = cur.parent
        return None

    def exists_variable(self, name: str) -> bool:
        return self.find_owner(name) is not None

    def let_variable(self, name: str, value: 'Value'):
        """Binds `name` in this scope only, shadowing any outer binding."""
        self.declare(name)
        self.variables[name] = value

    def set_variable(self, name: str, value: 'Value'):
        """Rebinds `name` in the nearest scope that declares it."""
        owner = self.find_owner(name)
        if owner is None:
            raise UndeclaredVariableError(name)
        owner.variables[name] = value

    def get_variable(self, name: str, default: Any = None) -> Any:
        cur = self
        while cur is not None:
            if name in cur.variables:
                return cur.variables[name]
            cur = cur.parent
        return default

    def set_macro(self, key: str, value: str, overwrite: bool = True):
        for i, (k, _) in enumerate(self.macro_list):
            if k == key:
                if overwrite:
                    self.macro_list[i] = (key, value)
                return
        self.macro_list.append((key, value))

    def get_copy(self) -> 'Scope':
        """Fresh bindings, same lexical ancestry."""
        scope = Scope(self.parent)
        scope.variable_names = list(self.variable_names)
        scope.variables = dict(self.variables)
        scope.macro_list = list(self.macro_list)
        return scope

    def __repr__(self) -> str:
        keys = ', '.join(self.variable_names)
        parent_id = f", parent=#{id(self.parent)}" if self.parent else ""
        return f"<Scope names=[{keys}]{parent_id}>"


# =================================================================
# Executors
# =================================================================

class Executor:
    """A parsed, not-yet-run command invocation."""
    def __init__(self, start: int):
        self.start = start
        self.end: Optional[int] = None
        self.name = ''
        self.args: Dict[str, 'Value'] = {}
        self.value: Optional['Value'] = None
        self.inject_pipe = True
        self.command: Optional[Command] = None

    def __repr__(self) -> str:
        return f"<Executor /{self.name} [{self.start}:{self.end}]>"


class ClosureExecutor:
    """Invokes the closure held by scope variable `name` (`/:name`), or an inline closure."""
    def __init__(self, start: int, name: str = ':'):
        self.start = start
        self.end: Optional[int] = None
        self.name = name
        self.provided_arguments: Dict[str, 'Value'] = {}
        self.closure: Optional['Closure'] = None
        self.inject_pipe = True

    def __repr__(self) -> str:
        target = 'inline' if self.closure is not None else self.name
        return f"<ClosureExecutor {target} [{self.start}:{self.end}]>"


# =================================================================
# Closures
# =================================================================

@dataclass
class ClosureResult:
    """The outcome of one closure execution."""
    interrupt: bool = False
    pipe: Any = None
    new_text: str = ''


class Closure:
    """An executable block: an executor list, an owned Scope and argument bindings.

    A parsed closure is a template. Every execution works on a copy with a
    fresh scope, so one parsed closure can be run repeatedly or re-entrantly.
    """
    def __init__(self, parent: Optional[Scope] = None):
        self.scope = Scope(parent)
        self.execute_now = False
        self.arguments: Dict[str, 'Value'] = {}
        self.provided_arguments: Dict[str, 'Value'] = {}
        self.executor_list: List[Union[Executor, ClosureExecutor]] = []
        self.kept_text = ''
        self.source = ''
        # Evaluator that last ran or handed out this closure; used by execute().
        self.evaluator: Optional['Evaluator'] = None

    def get_copy(self) -> 'Closure':
        closure = Closure()
        closure.scope = self.scope.get_copy()
        closure.execute_now = self.execute_now
        closure.arguments = self.arguments
        closure.provided_arguments = self.provided_arguments
        closure.executor_list = self.executor_list
        closure.kept_text = self.kept_text
        closure.source = self.source
        closure.evaluator = self.evaluator
        return closure

    async def execute(self, parent: Optional[Scope] = None,
                      provided_arguments: Optional[Dict[str, 'Value']] = None) -> ClosureResult:
        """Runs a copy of this closure; see Evaluator.execute."""
        evaluator = self.evaluator
        if evaluator is None:
            from slash.slash_interpreter import Evaluator  # local import to avoid cycle
            evaluator = Evaluator()
        return await evaluator.execute(self, parent=parent, provided_arguments=provided_arguments)

    def __str__(self) -> str:
        return '[Closure]'

    def __repr__(self) -> str:
        return f"<Closure executors={len(self.executor_list)} now={self.execute_now}>"


# The variant every value slot (argument, pipe, macro target) ranges over.
Value = Union[str, Closure, List[Union[str, Closure]]]
