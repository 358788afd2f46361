"""
The slash-command parser.

A single forward-only cursor walks the script text and builds the executable
tree by recursive descent. The whole script is wrapped in an implicit
closure (`{:` ... `:}`) so the top level is parsed with the closure grammar.
All cursor state lives in a `Cursor` value handed to each parse function,
which keeps one `Parser` safe to share between independent parses.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from slash.slash_datatypes import (
    Closure, ClosureExecutor, Executor, ParserError, Scope, SYNTAX_CHARS, Value, unescape,
)
from slash.slash_registry import CommandRegistry

logger = logging.getLogger(__name__)

NAMED_ARGUMENT_RE = re.compile(r'(\w+)=')

# Length of the implicit '{:' wrapper; offsets reported to callers exclude it.
WRAP = 2


@dataclass
class Cursor:
    """Mutable parse state for one pass over one script."""
    text: str
    source: str
    strict: bool = True
    index: int = 0
    scope: Optional[Scope] = None
    open_closures: List[int] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)
    executor_index: List[Union[Executor, ClosureExecutor]] = field(default_factory=list)
    scope_index: List[Scope] = field(default_factory=list)

    @classmethod
    def for_text(cls, source: str, strict: bool = True) -> 'Cursor':
        return cls(text=f'{{:{source}:}}', source=source, strict=strict)

    @property
    def char(self) -> str:
        return self.text[self.index] if self.index < len(self.text) else ''

    @property
    def ahead(self) -> str:
        return self.text[self.index + 1:]

    @property
    def escaped(self) -> bool:
        """True when the current character is preceded by a backslash."""
        return self.index > 0 and self.text[self.index - 1] == '\\'

    @property
    def end_of_text(self) -> bool:
        ahead = self.ahead
        return self.index >= len(self.text) or (bool(ahead) and ahead.isspace())

    def pos(self, index: Optional[int] = None) -> int:
        """Offset in the caller's text for a cursor index."""
        return (self.index if index is None else index) - WRAP

    def take(self, length: int = 1) -> str:
        content = self.text[self.index:self.index + length]
        self.index += length
        return content

    def discard_whitespace(self):
        while self.char and self.char.isspace():
            self.index += 1

    def push_index(self, executor: Union[Executor, ClosureExecutor]):
        self.executor_index.append(executor)
        self.scope_index.append(self.scope.get_copy())


@dataclass
class ParseResult:
    closure: Closure
    executor_index: List[Union[Executor, ClosureExecutor]]
    scope_index: List[Scope]


@dataclass
class CommandAt:
    """What applies at a text offset: the innermost executor and the names in scope there."""
    executor: Union[Executor, ClosureExecutor]
    scope: Scope
    variable_names: List[str]


def _trim(text: str) -> str:
    # like str.strip(), but keeps trailing whitespace that is escaped
    text = text.lstrip()
    end = len(text)
    while end > 0 and text[end - 1].isspace() and not (end >= 2 and text[end - 2] == '\\'):
        end -= 1
    return text[:end]


class Parser:
    """Turns script text into a root Closure. Stateless apart from the command registry."""

    def __init__(self, registry: Optional[CommandRegistry] = None):
        self.registry = registry if registry is not None else CommandRegistry()

    # -----------------------------------------------------------------
    # Entry points
    # -----------------------------------------------------------------

    def parse(self, text: str, strict: bool = True) -> Closure:
        return self.parse_with_index(text, strict).closure

    def parse_with_index(self, text: str, strict: bool = True) -> ParseResult:
        cur = Cursor.for_text(text, strict)
        closure = self._parse_root(cur)
        return ParseResult(closure, cur.executor_index, cur.scope_index)

    def command_at(self, text: str, offset: int) -> Optional[CommandAt]:
        """Finds the most specific executor whose span contains `offset`.

        Parses leniently; when even the lenient parse fails, whatever was
        indexed before the failure is still searched.
        """
        cur = Cursor.for_text(text, strict=False)
        try:
            self._parse_root(cur)
        except ParserError as e:
            logger.debug("command_at: partial parse of %r: %s", text, e)
        found: Optional[int] = None
        for i, executor in enumerate(cur.executor_index):
            if executor.start <= offset and (executor.end is None or offset <= executor.end):
                found = i
        if found is None:
            return None
        scope = cur.scope_index[found]
        return CommandAt(cur.executor_index[found], scope, scope.all_variable_names)

    def _parse_root(self, cur: Cursor) -> Closure:
        closure = self.parse_closure(cur)
        closure.source = cur.source
        if cur.strict and cur.index < len(cur.text):
            pos = cur.pos()
            raise ParserError(
                f"Unexpected text after end of closure at position {pos}",
                cur.source, pos, fragment=cur.source[pos:],
            )
        return closure

    # -----------------------------------------------------------------
    # Closures
    # -----------------------------------------------------------------

    def test_closure(self, cur: Cursor) -> bool:
        # a trailing '{' must not pair up with the wrapper's closing ':}'
        return (
            cur.char == '{'
            and cur.ahead[:1] == ':'
            and cur.index + 1 < len(cur.text) - WRAP
            and not cur.escaped
        )

    def _unclosed(self, cur: Cursor):
        start = cur.open_closures[-1] if cur.open_closures else 0
        raise ParserError(f"Unclosed closure at position {start}", cur.source, start, fragment=cur.source[start:])

    def test_closure_end(self, cur: Cursor) -> bool:
        if len(cur.ahead) < 1:
            if cur.strict:
                self._unclosed(cur)
            return True
        if cur.char != ':' or cur.ahead[0] != '}' or cur.escaped:
            return False
        # the wrapper's closing ':}' only ends the root closure
        if cur.strict and len(cur.open_closures) > 1 and cur.index == len(cur.text) - WRAP:
            self._unclosed(cur)
        return True

    def parse_closure(self, cur: Cursor) -> Closure:
        open_index = cur.index
        cur.open_closures.append(max(cur.pos(), 0))
        inject_pipe = True
        cur.take(2)  # discard opening {:
        closure = Closure(cur.scope)
        cur.scope = closure.scope
        kept_mark = len(cur.kept)
        cur.discard_whitespace()
        while self.test_named_argument(cur):
            key, value = self.parse_named_argument(cur)
            closure.arguments[key] = value
            closure.scope.declare(key)
            cur.discard_whitespace()
        while not self.test_closure_end(cur):
            if self.test_closure(cur):
                executor = self.parse_closure_statement(cur)
                executor.inject_pipe = inject_pipe
                closure.executor_list.append(executor)
                inject_pipe = True
            elif self.test_run_shorthand(cur):
                executor = self.parse_run_shorthand(cur)
                executor.inject_pipe = inject_pipe
                closure.executor_list.append(executor)
                inject_pipe = True
            elif self.test_command(cur):
                executor = self.parse_command(cur)
                executor.inject_pipe = inject_pipe
                closure.executor_list.append(executor)
                inject_pipe = True
            else:
                # plain text and // comments are discarded
                while not self.test_command_end(cur):
                    cur.take()
            cur.discard_whitespace()
            if cur.char == '|':
                cur.take()
                # a second pipe stops the result flowing into the next command
                if cur.char == '|':
                    inject_pipe = False
            while cur.char and (cur.char.isspace() or cur.char == '|'):
                cur.take()
        cur.take(2)  # discard closing :}
        cur.open_closures.pop()
        closure.source = cur.text[open_index:cur.index]
        if cur.char == '(' and cur.ahead[:1] == ')':
            cur.take(2)
            closure.execute_now = True
        cur.discard_whitespace()
        cur.scope = closure.scope.parent
        closure.kept_text = '\n'.join(cur.kept[kept_mark:])
        return closure

    def parse_closure_statement(self, cur: Cursor) -> ClosureExecutor:
        """A closure literal in statement position runs in place."""
        executor = ClosureExecutor(cur.pos())
        cur.push_index(executor)
        executor.closure = self.parse_closure(cur)
        if not self.test_command_end(cur):
            pos = cur.pos()
            raise ParserError(
                f"Unexpected end of command at position {pos}: closure",
                cur.source, pos, fragment=cur.source[executor.start:pos],
            )
        executor.end = cur.pos()
        return executor

    # -----------------------------------------------------------------
    # Commands
    # -----------------------------------------------------------------

    def test_run_shorthand(self, cur: Cursor) -> bool:
        ahead = cur.ahead
        return cur.char == '/' and not cur.escaped and len(ahead) > 1 and ahead[0] == ':' and ahead[1] != '}'

    def parse_run_shorthand(self, cur: Cursor) -> ClosureExecutor:
        executor = ClosureExecutor(cur.pos(), name='')
        cur.push_index(executor)
        cur.take(2)  # discard "/:"
        if self.test_quoted_value(cur):
            executor.name = self.parse_quoted_value(cur)
        else:
            executor.name = self.parse_value(cur)
        cur.discard_whitespace()
        while self.test_named_argument(cur):
            key, value = self.parse_named_argument(cur)
            executor.provided_arguments[key] = value
            cur.discard_whitespace()
        # the closure name is the only unnamed part a shorthand takes
        if self.test_command_end(cur):
            executor.end = cur.pos()
            return executor
        pos = cur.pos()
        raise ParserError(
            f'Unexpected end of command at position {pos}: "/:{executor.name}"',
            cur.source, pos, fragment=cur.source[executor.start:pos],
        )

    def test_command(self, cur: Cursor) -> bool:
        ahead = cur.ahead
        return (
            cur.char == '/'
            and not cur.escaped
            and ahead[:1] not in ('/', '#')
            and not (ahead[:1] == ':' and ahead[1:2] != '}')
        )

    def test_command_end(self, cur: Cursor) -> bool:
        return self.test_closure_end(cur) or cur.end_of_text or (cur.char == '|' and not cur.escaped)

    def parse_command(self, cur: Cursor) -> Executor:
        start = cur.pos()
        kept_mark = len(cur.kept)
        executor = Executor(start)
        cur.push_index(executor)
        cur.take()  # discard "/"
        while cur.char and not cur.char.isspace() and not self.test_command_end(cur):
            executor.name += cur.take()
        cur.discard_whitespace()
        command = self.registry.lookup(executor.name)
        if command is None and cur.strict:
            raise ParserError(
                f'Unknown command at position {start}: "/{executor.name}"',
                cur.source, start, fragment=f'/{executor.name}', name=executor.name,
            )
        executor.command = command
        while self.test_named_argument(cur):
            key, value = self.parse_named_argument(cur)
            executor.args[key] = value
            cur.discard_whitespace()
        cur.discard_whitespace()
        if self.test_unnamed_argument(cur):
            executor.value = self.parse_unnamed_argument(cur)
        if executor.name == 'let':
            self._declare_let(cur.scope, executor)
        if self.test_command_end(cur):
            executor.end = cur.pos()
            if command is None or not command.purge_from_message:
                # the span already covers anything kept from nested closures
                del cur.kept[kept_mark:]
                cur.kept.append(cur.source[start:executor.end].strip())
            return executor
        pos = cur.pos()
        raise ParserError(
            f'Unexpected end of command at position {pos}: "/{executor.name}"',
            cur.source, pos, fragment=cur.source[start:pos],
        )

    def _declare_let(self, scope: Scope, executor: Executor):
        """`/let` makes its name known to the enclosing scope before anything runs."""
        for key, value in executor.args.items():
            if key != 'key':
                scope.declare(key)
            elif isinstance(value, str) and value:
                scope.declare(value)
        if 'key' in executor.args:
            return
        match executor.value:
            case str() as text if text.split():
                scope.declare(text.split()[0])
            case [str() as first, *_] if first.split():
                scope.declare(first.split()[0])

    # -----------------------------------------------------------------
    # Arguments
    # -----------------------------------------------------------------

    def test_named_argument(self, cur: Cursor) -> bool:
        return NAMED_ARGUMENT_RE.match(cur.text, cur.index) is not None

    def parse_named_argument(self, cur: Cursor) -> Tuple[str, Value]:
        key = NAMED_ARGUMENT_RE.match(cur.text, cur.index).group(1)
        cur.take(len(key) + 1)  # key and "="
        value: Value = ''
        if self.test_closure(cur):
            value = self.parse_closure(cur)
        elif self.test_quoted_value(cur):
            value = self.parse_quoted_value(cur)
        elif self.test_list_value(cur):
            value = self.parse_list_value(cur)
        elif self.test_value(cur):
            value = self.parse_value(cur)
        return key, value

    def test_unnamed_argument(self, cur: Cursor) -> bool:
        return not self.test_command_end(cur)

    def parse_unnamed_argument(self, cur: Cursor) -> Value:
        """Plain text, or a list once a closure is mixed in (a lone closure stays a Closure)."""
        text = ''
        is_list = False
        items: List[Union[str, Closure]] = []
        while not self.test_command_end(cur):
            if self.test_closure(cur):
                is_list = True
                segment = _trim(text)
                if segment:
                    items.append(unescape(segment, SYNTAX_CHARS))
                text = ''
                items.append(self.parse_closure(cur))
            else:
                text += cur.take()
        if is_list:
            segment = _trim(text)
            if segment:
                items.append(unescape(segment, SYNTAX_CHARS))
            if len(items) == 1:
                return items[0]
            return items
        return unescape(_trim(text), SYNTAX_CHARS)

    def test_quoted_value(self, cur: Cursor) -> bool:
        return cur.char == '"' and not cur.escaped

    def test_quoted_value_end(self, cur: Cursor, start: int) -> bool:
        if cur.end_of_text:
            if cur.strict:
                raise ParserError(
                    f"Unexpected end of quoted value at position {start}",
                    cur.source, start, fragment=cur.source[start:],
                )
            return True
        if not cur.strict and cur.char == ':' and cur.ahead == '}':
            return True
        return cur.char == '"' and not cur.escaped

    def parse_quoted_value(self, cur: Cursor) -> str:
        start = cur.pos()
        cur.take()  # discard opening quote
        value = ''
        while not self.test_quoted_value_end(cur, start):
            value += cur.take()
        if cur.char == '"':
            cur.take()  # discard closing quote
        return unescape(value, '"')

    def test_list_value(self, cur: Cursor) -> bool:
        return cur.char == '[' and not cur.escaped

    def parse_list_value(self, cur: Cursor) -> str:
        """Raw bracketed text, balanced on unescaped brackets."""
        start = cur.pos()
        value = ''
        depth = 0
        while True:
            if cur.end_of_text:
                raise ParserError(
                    f"Unexpected end of list value at position {start}",
                    cur.source, start, fragment=cur.source[start:],
                )
            char = cur.char
            escaped = cur.escaped
            value += cur.take()
            if escaped:
                continue
            if char == '[':
                depth += 1
            elif char == ']':
                depth -= 1
                if depth == 0:
                    break
        return unescape(value, '[]')

    def test_value(self, cur: Cursor) -> bool:
        return not cur.char.isspace()

    def test_value_end(self, cur: Cursor) -> bool:
        if cur.char.isspace() and not cur.escaped:
            return True
        return self.test_command_end(cur)

    def parse_value(self, cur: Cursor) -> str:
        value = ''
        while not self.test_value_end(cur):
            value += cur.take()
        return unescape(value, SYNTAX_CHARS)
