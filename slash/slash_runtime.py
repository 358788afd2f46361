# slash_runtime.py

import inspect
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional

from slash.slash_datatypes import (
    Closure, ClosureNotFoundError, ClosureResult, CommandArgument, Command, ParserError, Scope,
    SlashRuntimeError, UndeclaredVariableError, UnknownCommandError,
)
from slash.slash_interpreter import Evaluator, to_text
from slash.slash_macros import MacroRenderer
from slash.slash_parser import CommandAt, Parser
from slash.slash_registry import CommandRegistry, HelpEntry
from slash.slash_serialize import deserialize

logger = logging.getLogger(__name__)


# ===================================================================
# 1. Command Declaration
# ===================================================================

def slash_command(name: Optional[str] = None, *, aliases: Optional[List[str]] = None, help_text: str = '',
                  interrupts_generation: bool = False, purge_from_message: bool = True,
                  named_arguments: Optional[List[CommandArgument]] = None,
                  unnamed_arguments: Optional[List[CommandArgument]] = None,
                  return_type: str = 'string'):
    """A decorator marking a method `(args, value)` as a slash command.

    Marked methods of the standard library and of a host object are
    registered by ScriptRunner.register_commands.
    """
    def decorate(func):
        func._slash_command = {
            'name': name or func.__name__.lstrip('_').replace('_', '-'),
            'aliases': list(aliases or []),
            'help_text': help_text,
            'interrupts_generation': interrupts_generation,
            'purge_from_message': purge_from_message,
            'named_arguments': list(named_arguments or []),
            'unnamed_arguments': list(unnamed_arguments or []),
            'return_type': return_type,
        }
        return func
    return decorate


def _named(args: Mapping[str, Any]) -> Dict[str, Any]:
    """Named arguments without the implicit `_scope` entry."""
    return {k: v for k, v in args.items() if not k.startswith('_')}


# ===================================================================
# 2. The Standard Library
# ===================================================================

class StdLib:
    """Built-in commands for output and variables."""
    def __init__(self, runner: 'ScriptRunner'):
        self.runner = runner

    @slash_command(
        help_text="Writes the value to standard output and passes it on.",
        unnamed_arguments=[CommandArgument(description='text to write', is_required=True)],
    )
    def _echo(self, args, value):
        self.runner.evaluator.side_effects.append({'topics': ['stdout'], 'message': to_text(value)})
        return value

    @slash_command(
        aliases=['return'],
        help_text="Passes the value on unchanged.",
        unnamed_arguments=[CommandArgument(description='the value')],
    )
    def _pass(self, args, value):
        return value

    @slash_command(
        help_text="Declares a variable in the current closure: /let key=name value, /let name value or /let name=value.",
        named_arguments=[CommandArgument('key', 'variable name')],
        unnamed_arguments=[CommandArgument(description='variable name and value', type_list=['string', 'closure'])],
    )
    def _let(self, args, value):
        scope: Scope = args['_scope']
        named = _named(args)
        if 'key' in named:
            scope.let_variable(named['key'], value)
            return value
        if named:
            for key, val in named.items():
                scope.let_variable(key, val)
            return val
        key, val = self._split_name(value)
        scope.let_variable(key, val)
        return val

    @slash_command(
        help_text="Gets (/var name) or sets (/var name value) a declared variable.",
        named_arguments=[CommandArgument('key', 'variable name')],
        unnamed_arguments=[CommandArgument(description='variable name and optional value', type_list=['string', 'closure'])],
    )
    def _var(self, args, value):
        scope: Scope = args['_scope']
        if 'key' in args:
            key, val = args['key'], value
        else:
            key, val = self._split_name(value)
        if val == '' or val is None:
            return scope.get_variable(key, '')
        scope.set_variable(key, val)
        return val

    @slash_command(
        help_text="Sets a host-wide variable.",
        named_arguments=[CommandArgument('key', 'variable name', is_required=True)],
        unnamed_arguments=[CommandArgument(description='the value')],
    )
    def _setvar(self, args, value):
        key = args.get('key')
        if not key:
            raise SlashRuntimeError("/setvar requires key=")
        self.runner.global_variables[key] = value
        return value

    @slash_command(
        help_text="Gets a host-wide variable.",
        named_arguments=[CommandArgument('key', 'variable name')],
        unnamed_arguments=[CommandArgument(description='variable name')],
    )
    def _getvar(self, args, value):
        key = args.get('key') or to_text(value).strip()
        return self.runner.global_variables.get(key, '')

    @slash_command(
        help_text="Runs a closure, or the closure held by a variable; named arguments are passed to it.",
        unnamed_arguments=[CommandArgument(description='closure or variable name', is_required=True,
                                           type_list=['closure', 'variable_name'])],
    )
    async def _run(self, args, value):
        scope: Scope = args['_scope']
        match value:
            case Closure():
                target = value
            case str():
                target = scope.get_variable(value.strip())
                if not isinstance(target, Closure):
                    raise ClosureNotFoundError(value.strip())
            case _:
                raise ClosureNotFoundError(to_text(value))
        result = await self.runner.evaluator.execute(target, parent=scope, bound_arguments=_named(args))
        return result.pipe

    def _split_name(self, value):
        """Splits 'name rest' (or ['name rest', closure, ...]) into the name and its value."""
        match value:
            case str():
                parts = value.split(None, 1)
                if not parts:
                    raise SlashRuntimeError("a variable name is required")
                return parts[0], parts[1] if len(parts) > 1 else ''
            case [str() as first, *rest] if first.split():
                parts = first.split(None, 1)
                remainder = parts[1:] + list(rest)
                if not remainder:
                    return parts[0], ''
                return parts[0], remainder[0] if len(remainder) == 1 else remainder
            case _:
                raise SlashRuntimeError("a variable name is required")


# ===================================================================
# 3. Script Execution
# ===================================================================

Token = Dict[str, Any]


@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error']
    value: Any = None
    interrupt: bool = False
    new_text: str = ''
    error_message: Optional[str] = None
    error_token: Optional[Token] = None
    side_effects: List[Dict] = field(default_factory=list)

    def format_error(self) -> str:
        """Formats an error message with line and column if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_token and 'line' in self.error_token:
            line = self.error_token.get('line')
            col = self.error_token.get('col')
            if not msg.startswith("Error on line "):
                col_info = f", col {col}" if col is not None else ""
                return f"Error on line {line}{col_info}: {msg}"
        return msg


def _line_col(source: str, offset: int) -> tuple:
    offset = max(0, min(offset, len(source)))
    line = source.count('\n', 0, offset) + 1
    col = offset - (source.rfind('\n', 0, offset) + 1) + 1
    return line, col


class ScriptRunner:
    """Parses and executes slash-command scripts for a host application."""

    def __init__(self, registry: Optional[CommandRegistry] = None, macros: Optional[Mapping[str, Any]] = None,
                 host_object: Optional[Any] = None, load_stdlib: bool = True):
        self.registry = registry if registry is not None else CommandRegistry()
        self.parser = Parser(self.registry)
        self.macros = MacroRenderer(macros)
        self.evaluator = Evaluator(self.macros)
        self.global_variables: Dict[str, Any] = {}
        self.host_object = host_object
        if load_stdlib:
            self.register_commands(StdLib(self))
        if host_object is not None:
            self.register_commands(host_object)

    @property
    def side_effects(self) -> List[Dict[str, Any]]:
        return self.evaluator.side_effects

    # --- Registration ---

    def register(self, name, callback, aliases=None, help_text='', interrupts_generation=False,
                 purge_from_message=True, **kwargs) -> Command:
        return self.registry.register(name, callback, aliases, help_text, interrupts_generation,
                                      purge_from_message, **kwargs)

    def register_commands(self, obj: Any) -> List[Command]:
        """Registers every @slash_command method of `obj`."""
        registered = []
        for _, member in inspect.getmembers(obj):
            if not callable(member):
                continue
            spec = getattr(member, '_slash_command', None)
            if spec is None:
                continue
            spec = dict(spec)
            name = spec.pop('name')
            registered.append(self.registry.register(name, member, **spec))
        return registered

    # --- Configuration ---

    def load_macros(self, path: str) -> Dict[str, Any]:
        """Adds host-wide macros from a YAML or JSON mapping file."""
        p = Path(path)
        data = deserialize(p.read_text(encoding='utf-8'), path_hint=str(p))
        if not isinstance(data, Mapping):
            raise ValueError(f"macro file {path} must contain a mapping")
        macros = {str(k): v for k, v in data.items()}
        self.macros.update(macros)
        return macros

    # --- Parsing and introspection ---

    def parse(self, text: str, strict: bool = True) -> Closure:
        return self.parser.parse(text, strict)

    def command_at(self, text: str, offset: int) -> Optional[CommandAt]:
        return self.parser.command_at(text, offset)

    def help(self) -> List[HelpEntry]:
        return self.registry.render_help()

    def dump_help(self, fmt: str = 'yaml') -> str:
        return self.registry.dump_help(fmt)

    # --- Execution ---

    async def execute(self, closure: Closure) -> ClosureResult:
        """Runs a parsed closure. Errors propagate to the caller."""
        return await self.evaluator.execute(closure)

    def _source_context(self, source: str, line: int, col: Optional[int], radius: int = 2) -> str:
        lines = source.splitlines()
        if not line or line < 1 or line > len(lines):
            return ""
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            ln = str(i).rjust(width)
            content = lines[i - 1]
            out.append(f"{prefix} {ln} | {content}")
            if i == line and col is not None:
                caret = " " * max(col - 1, 0)
                out.append(f"  {' ' * width} | {caret}^")
        return "\n".join(out)

    def _format_parse_error(self, e: ParserError, source: str) -> tuple:
        line, col = e.line, e.col
        msg = f"ParseError: {e.message} (line {line}, col {col})"
        context = self._source_context(source, line, col)
        if context:
            msg = f"{msg}\n{context}"
        token = {'offset': e.offset, 'line': line, 'col': col, 'text': e.fragment}
        return msg, token

    def _format_stacktrace(self) -> str:
        stack = self.evaluator.call_stack
        if not stack:
            return ""
        from slash.slash_printer import Printer
        pf = Printer().pformat
        return "Slash stacktrace: " + " ".join(f"({pf(frame)})" for frame in stack)

    def _format_runtime_error(self, e: Exception, source: str) -> tuple:
        match e:
            case ClosureNotFoundError():
                msg = f"ClosureNotFound: {e}"
            case UnknownCommandError():
                msg = f"UnknownCommand: /{e.name}"
            case UndeclaredVariableError():
                msg = f"UndeclaredVariable: {e.name}"
            case SlashRuntimeError():
                msg = f"RuntimeError: {e}"
            case _:
                msg = f"InternalError: {type(e).__name__}: {e}"

        token = None
        stack = self.evaluator.call_stack
        if stack:
            offset = stack[-1].start
            line, col = _line_col(source, offset)
            token = {'offset': offset, 'line': line, 'col': col, 'text': getattr(stack[-1], 'name', None)}
            context = self._source_context(source, line, col)
            if context:
                msg = f"{msg}\n(line {line}, col {col})\n{context}"
        st = self._format_stacktrace()
        if st:
            msg += "\n" + st
        return msg, token

    async def handle_script(self, source_code: str, strict: bool = True) -> ExecutionResult:
        """The main entry point to execute a script."""
        self.evaluator.side_effects.clear()
        self.evaluator.call_stack.clear()
        # 1. Parse
        try:
            closure = self.parser.parse(source_code, strict)
        except ParserError as e:
            msg, token = self._format_parse_error(e, source_code)
            self.evaluator.side_effects.append({'topics': ['stderr'], 'message': msg})
            return ExecutionResult(
                status='error',
                error_message=msg,
                error_token=token,
                side_effects=list(self.evaluator.side_effects),
            )

        # 2. Execute
        try:
            result = await self.evaluator.execute(closure)
        except Exception as e:
            logger.debug("script failed", exc_info=True)
            msg, token = self._format_runtime_error(e, source_code)
            self.evaluator.side_effects.append({'topics': ['stderr'], 'message': msg})
            return ExecutionResult(
                status='error',
                error_message=msg,
                error_token=token,
                new_text=closure.kept_text,
                side_effects=list(self.evaluator.side_effects),
            )

        return ExecutionResult(
            status='success',
            value=result.pipe,
            interrupt=result.interrupt,
            new_text=result.new_text,
            side_effects=list(self.evaluator.side_effects),
        )
