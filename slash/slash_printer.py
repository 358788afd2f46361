"""
A pretty-printer for slash-command values and parsed invocations.
"""
import collections.abc

from slash.slash_datatypes import Closure, ClosureExecutor, Executor, Scope, escape


class Printer:
    """Formats runtime values and executors back into script-like text."""

    def __init__(self):
        self._handlers = self._create_handlers()

    def pformat(self, obj) -> str:
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj)

    def _get_handler(self, obj):
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, str): return self._pformat_str
        if isinstance(obj, collections.abc.Mapping): return self._pformat_dict
        if isinstance(obj, (list, tuple)): return self._pformat_list
        return repr

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: str,
            float: str,
            bool: self._pformat_bool,
            type(None): lambda o: '',
            Closure: self._pformat_closure,
            Executor: self._pformat_executor,
            ClosureExecutor: self._pformat_closure_executor,
            Scope: self._pformat_scope,
        }

    def _pformat_str(self, obj):
        return str(obj)

    def _pformat_bool(self, obj):
        return "true" if obj else "false"

    def _pformat_list(self, obj):
        return ' '.join(self.pformat(item) for item in obj)

    def _pformat_dict(self, obj):
        return ' '.join(f"{k}={self._pformat_arg(v)}" for k, v in obj.items() if not str(k).startswith('_'))

    def _pformat_closure(self, obj):
        if obj.source:
            return obj.source + ('()' if obj.execute_now else '')
        body = ' | '.join(self.pformat(ex) for ex in obj.executor_list)
        return f"{{: {body} :}}" + ('()' if obj.execute_now else '')

    def _pformat_arg(self, value):
        # quote plain text that would otherwise split into several values
        if isinstance(value, str):
            if value and not any(c.isspace() for c in value):
                return value
            return '"' + escape(value, '"') + '"'
        return self.pformat(value)

    def _pformat_executor(self, obj):
        parts = [f"/{obj.name}"]
        parts.extend(f"{k}={self._pformat_arg(v)}" for k, v in obj.args.items())
        if obj.value is not None and obj.value != '':
            parts.append(self.pformat(obj.value))
        return ' '.join(parts)

    def _pformat_closure_executor(self, obj):
        if obj.closure is not None:
            return self.pformat(obj.closure)
        parts = [f"/:{obj.name}"]
        parts.extend(f"{k}={self._pformat_arg(v)}" for k, v in obj.provided_arguments.items())
        return ' '.join(parts)

    def _pformat_scope(self, obj):
        names = ', '.join(obj.all_variable_names)
        return f"<scope {names}>"
