"""
The slash-command interpreter: closure execution and macro/variable substitution.
"""
import inspect
import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Union

from slash.slash_datatypes import (
    BRACES, Closure, ClosureExecutor, ClosureNotFoundError, ClosureResult, Executor, Scope,
    UnknownCommandError, Value, unescape,
)
from slash.slash_macros import MacroRenderer

logger = logging.getLogger(__name__)

# {{pipe}}, {{var::name}} or a bare {{name}}
PLACEHOLDER_RE = re.compile(r'\{\{(?:(pipe)|var::(\S+?)|([^\s{}]+?))\}\}')

_MISSING = object()


def to_text(value: Any) -> str:
    """Textual form of a value inlined into a string."""
    match value:
        case None:
            return ''
        case str():
            return value
        case Closure():
            return str(value)
        case list():
            return ' '.join(to_text(item) for item in value)
        case _:
            return str(value)


def unescape_value(value: Any) -> Any:
    """Removes brace escapes from strings; Closures pass through untouched."""
    match value:
        case str():
            return unescape(value, BRACES)
        case list():
            return [unescape_value(item) for item in value]
        case _:
            return value


class Evaluator:
    """The slash-command execution engine.

    Runs a closure's executors strictly one after another, awaiting every
    callback and nested closure before moving on.
    """
    def __init__(self, macros: Union[MacroRenderer, Mapping[str, Any], None] = None):
        self.macros = macros if isinstance(macros, MacroRenderer) else MacroRenderer(macros)
        self.side_effects: List[Dict[str, Any]] = []
        # Executors entered and not yet finished; left in place when one raises
        self.call_stack: List[Union[Executor, ClosureExecutor]] = []

    # -----------------------------------------------------------------
    # Substitution
    # -----------------------------------------------------------------

    def substitute(self, text: str, scope: Scope) -> Value:
        """Expands host macros, then {{pipe}}/variables, then the scope's macro list."""
        text = self.macros.render(text)
        value = self._substitute_placeholders(text, scope)
        for key, replacement in scope.macro_list:
            placeholder = '{{%s}}' % key
            match value:
                case str():
                    value = value.replace(placeholder, replacement)
                case list():
                    value = [item.replace(placeholder, replacement) if isinstance(item, str) else item
                             for item in value]
        return value

    def _lookup(self, m: re.Match, scope: Scope) -> Any:
        if m.group(1):
            return scope.pipe
        if m.group(2) is not None:
            return scope.get_variable(m.group(2))
        # a bare {{name}} only stands for a variable that holds a value
        return scope.get_variable(m.group(3), _MISSING)

    def _substitute_placeholders(self, text: str, scope: Scope) -> Value:
        pos = 0
        while True:
            m = PLACEHOLDER_RE.search(text, pos)
            if m is None:
                return text
            replacement = self._lookup(m, scope)
            if replacement is _MISSING:
                pos = m.end()
                continue
            before, after = text[:m.start()], text[m.end():]
            match replacement:
                case Closure():
                    spliced = [replacement]
                case list() if any(isinstance(item, Closure) for item in replacement):
                    spliced = list(replacement)
                case _:
                    spliced = None
            if spliced is not None:
                items: List[Union[str, Closure]] = []
                if before:
                    items.append(before)
                items.extend(spliced)
                if after:
                    rest = self._substitute_placeholders(after, scope)
                    items.extend(rest if isinstance(rest, list) else [rest])
                return items[0] if len(items) == 1 else items
            inline = to_text(replacement)
            text = f"{before}{inline}{after}"
            pos = m.start() + len(inline)

    # -----------------------------------------------------------------
    # Values
    # -----------------------------------------------------------------

    def bind(self, closure: Closure, scope: Scope) -> Closure:
        """A copy of `closure` whose lexical parent is `scope`, ready to hand to a callback."""
        bound = closure.get_copy()
        bound.scope.parent = scope
        bound.evaluator = self
        return bound

    async def _resolve_closure(self, closure: Closure, scope: Scope) -> Any:
        if closure.execute_now:
            result = await self.execute(closure, parent=scope)
            return result.pipe
        return self.bind(closure, scope)

    async def evaluate_value(self, value: Optional[Value], scope: Scope) -> Any:
        """Substitutes one argument value against `scope`."""
        match value:
            case None:
                return None
            case Closure():
                return await self._resolve_closure(value, scope)
            case list():
                items: List[Any] = []
                for item in value:
                    match item:
                        case Closure():
                            items.append(await self._resolve_closure(item, scope))
                        case _:
                            sub = self.substitute(item, scope)
                            items.extend(sub if isinstance(sub, list) else [sub])
                if not any(isinstance(item, Closure) for item in items):
                    return ' '.join(to_text(item) for item in items)
                return items
            case str():
                return self.substitute(value, scope)
            case _:
                return value

    # -----------------------------------------------------------------
    # Execution
    # -----------------------------------------------------------------

    async def execute(self, closure: Closure, parent: Optional[Scope] = None,
                      provided_arguments: Optional[Dict[str, Value]] = None,
                      bound_arguments: Optional[Dict[str, Any]] = None) -> ClosureResult:
        """Runs a fresh copy of `closure`, leaving the parsed template untouched.

        `provided_arguments` are unevaluated values substituted against the
        caller; `bound_arguments` are final values, assigned as they are.
        """
        run = closure.get_copy()
        run.evaluator = self
        if parent is not None:
            run.scope.parent = parent
        if provided_arguments is not None:
            run.provided_arguments = provided_arguments
        return await self.execute_direct(run, bound_arguments)

    async def execute_direct(self, closure: Closure,
                             bound_arguments: Optional[Dict[str, Any]] = None) -> ClosureResult:
        scope = closure.scope
        interrupt = False

        # defaults are evaluated inside the new scope
        for key, value in closure.arguments.items():
            scope.let_variable(key, unescape_value(await self.evaluate_value(value, scope)))
        # caller overrides are evaluated where they were written
        caller = scope.parent if scope.parent is not None else scope
        for key, value in closure.provided_arguments.items():
            scope.set_variable(key, unescape_value(await self.evaluate_value(value, caller)))
        for key, value in (bound_arguments or {}).items():
            scope.set_variable(key, value)

        for executor in closure.executor_list:
            if not executor.inject_pipe:
                # '||' breaks the pipe for the next command
                scope.pipe = None
            match executor:
                case ClosureExecutor():
                    result = await self._call_closure(executor, scope)
                    scope.pipe = result.pipe
                    interrupt = result.interrupt
                case Executor():
                    interrupt = await self._call_command(executor, scope)

        return ClosureResult(interrupt=interrupt, pipe=scope.pipe, new_text=closure.kept_text)

    async def _call_closure(self, executor: ClosureExecutor, scope: Scope) -> ClosureResult:
        self.call_stack.append(executor)
        target = executor.closure
        if target is None:
            target = scope.get_variable(executor.name)
            if not isinstance(target, Closure):
                raise ClosureNotFoundError(executor.name)
        result = await self.execute(target, parent=scope, provided_arguments=executor.provided_arguments)
        self.call_stack.pop()
        return result

    async def _call_command(self, executor: Executor, scope: Scope) -> bool:
        """Invokes one command, storing its result as the new pipe. Returns its interrupt flag."""
        self.call_stack.append(executor)
        command = executor.command
        if command is None:
            raise UnknownCommandError(executor.name)
        args: Dict[str, Any] = {'_scope': scope}
        for key, value in executor.args.items():
            args[key] = unescape_value(await self.evaluate_value(value, scope))
        if executor.value is None:
            value = scope.pipe if executor.inject_pipe else None
        else:
            value = unescape_value(await self.evaluate_value(executor.value, scope))
        if value is None:
            value = ''
        logger.debug("/%s %r", executor.name, value)
        result = command.callback(args, value)
        if inspect.isawaitable(result):
            result = await result
        scope.pipe = result
        self.call_stack.pop()
        return command.interrupts_generation
