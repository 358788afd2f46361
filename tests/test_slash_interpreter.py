import pytest

from slash.slash_datatypes import (
    Closure, ClosureNotFoundError, Scope, UndeclaredVariableError, UnknownCommandError,
)
from slash.slash_interpreter import Evaluator
from slash.slash_parser import Parser
from slash.slash_registry import CommandRegistry


class Recorder:
    """Collects every (name, args, value) call made by the registered test commands."""
    def __init__(self):
        self.calls = []

    def command(self, name, result=None):
        def callback(args, value):
            named = {k: v for k, v in args.items() if k != '_scope'}
            self.calls.append((name, named, value))
            return value if result is None else result
        return callback


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def registry(recorder):
    reg = CommandRegistry()
    reg.register("echo", recorder.command("echo"))
    reg.register("pass", lambda args, value: value)
    reg.register("stop", lambda args, value: value, interrupts_generation=True)

    def let(args, value):
        scope = args["_scope"]
        for key, val in args.items():
            if key != "_scope":
                scope.let_variable(key, val)
        return value
    reg.register("let", let)

    async def twice(args, value):
        first = await value.execute()
        second = await value.execute()
        return f"{first.pipe}{second.pipe}"
    reg.register("twice", twice)
    return reg


@pytest.fixture
def parser(registry):
    return Parser(registry)


@pytest.fixture
def evaluator():
    return Evaluator()


async def run(parser, evaluator, script, strict=True):
    return await evaluator.execute(parser.parse(script, strict))


# --- Ordering and pipes ---

@pytest.mark.asyncio
async def test_commands_run_left_to_right(parser, evaluator, recorder):
    await run(parser, evaluator, "/echo a | /echo b | /echo c")
    assert [value for _, _, value in recorder.calls] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_quoted_and_list_slashes_do_not_run(parser, evaluator, recorder):
    result = await run(parser, evaluator, '/echo x="a | /b" y=[c | /d] | /pass z')
    assert recorder.calls == [("echo", {"x": "a | /b", "y": "[c | /d]"}, "")]
    assert result.pipe == "z"


@pytest.mark.asyncio
async def test_pipe_is_injected_when_value_missing(parser, evaluator, recorder):
    result = await run(parser, evaluator, "/pass hello | /echo")
    assert recorder.calls == [("echo", {}, "hello")]
    assert result.pipe == "hello"


@pytest.mark.asyncio
async def test_pipe_placeholder(parser, evaluator, recorder):
    await run(parser, evaluator, "/pass 1 | /echo got {{pipe}}")
    assert recorder.calls[-1][2] == "got 1"


@pytest.mark.asyncio
async def test_double_pipe_clears_pipe(parser, evaluator, recorder):
    await run(parser, evaluator, "/pass 1 || /echo {{pipe}} | /pass 2 || /echo")
    assert [value for _, _, value in recorder.calls] == ["", ""]


@pytest.mark.asyncio
async def test_async_callback_is_awaited(parser, evaluator, recorder):
    result = await run(parser, evaluator, "/twice {: /pass x :} | /echo")
    assert result.pipe == "xx"
    assert recorder.calls == [("echo", {}, "xx")]


# --- Variables and scoping ---

@pytest.mark.asyncio
async def test_variable_placeholders(parser, evaluator, recorder):
    await run(parser, evaluator, "/let a=1 | /echo {{a}} {{var::a}}")
    assert recorder.calls[-1][2] == "1 1"


@pytest.mark.asyncio
async def test_unknown_bare_placeholder_is_left_alone(parser, evaluator, recorder):
    await run(parser, evaluator, "/echo {{user}}")
    assert recorder.calls[-1][2] == "{{user}}"


@pytest.mark.asyncio
async def test_inner_let_shadows_outer(parser, evaluator, recorder):
    await run(parser, evaluator, "/let x=1 | {: /let x=2 | /echo {{x}} :} | /echo {{x}}")
    assert [value for _, _, value in recorder.calls] == ["2", "1"]


@pytest.mark.asyncio
async def test_escaped_placeholder_is_not_substituted(parser, evaluator, recorder):
    await run(parser, evaluator, "/pass 1 | /echo \\{\\{pipe\\}\\}")
    assert recorder.calls[-1][2] == "{{pipe}}"


@pytest.mark.asyncio
async def test_named_args_are_substituted(parser, evaluator, recorder):
    await run(parser, evaluator, '/let a=1 | /echo x={{a}} y="{{a}} {{a}}" v')
    assert recorder.calls[-1][1] == {"x": "1", "y": "1 1"}


# --- Unnamed values ---

@pytest.mark.asyncio
async def test_closure_free_list_collapses_to_text(parser, evaluator, recorder):
    await run(parser, evaluator, "/echo a {: /pass b :}() c")
    assert recorder.calls[-1][2] == "a b c"


@pytest.mark.asyncio
async def test_list_with_closure_is_passed_as_list(parser, evaluator, recorder):
    await run(parser, evaluator, "/echo a {: /pass b :} c")
    value = recorder.calls[-1][2]
    assert isinstance(value, list)
    assert value[0] == "a"
    assert isinstance(value[1], Closure)
    assert value[2] == "c"


@pytest.mark.asyncio
async def test_closure_variable_splices_into_list(parser, evaluator, recorder):
    await run(parser, evaluator, "/let f={: /pass :} | /echo before {{f}} after")
    value = recorder.calls[-1][2]
    assert value[0] == "before "
    assert isinstance(value[1], Closure)
    assert value[2] == " after"


@pytest.mark.asyncio
async def test_execute_now_closure_yields_pipe(parser, evaluator, recorder):
    await run(parser, evaluator, "/echo {: /pass hi :}()")
    assert recorder.calls[-1][2] == "hi"


@pytest.mark.asyncio
async def test_deferred_closure_value_is_bound_to_scope(parser, evaluator):
    captured = {}
    parser.registry.register("grab", lambda args, value: captured.setdefault("value", value))
    await run(parser, evaluator, "/let y=outer | /grab {: /pass {{y}} :}")
    closure = captured["value"]
    assert isinstance(closure, Closure)
    result = await closure.execute()
    assert result.pipe == "outer"


# --- Closure calls ---

@pytest.mark.asyncio
async def test_closure_call_with_defaults_and_overrides(parser, evaluator, recorder):
    script = (
        "/let greet={: name=world /echo hello {{name}} :}"
        " | /:greet | /:greet name=you"
    )
    await run(parser, evaluator, script)
    assert [value for _, _, value in recorder.calls] == ["hello world", "hello you"]


@pytest.mark.asyncio
async def test_provided_args_resolve_in_caller_scope(parser, evaluator, recorder):
    script = (
        "/let v=outer"
        " | /let f={: a=none /let v=inner | /echo {{a}} {{v}} :}"
        " | /:f a={{v}}"
    )
    await run(parser, evaluator, script)
    assert recorder.calls[-1][2] == "outer inner"


@pytest.mark.asyncio
async def test_closure_call_adopts_pipe(parser, evaluator, recorder):
    await run(parser, evaluator, "/let f={: /pass inner :} | /:f | /echo")
    assert recorder.calls[-1][2] == "inner"


@pytest.mark.asyncio
async def test_closure_call_missing_variable(parser, evaluator):
    with pytest.raises(ClosureNotFoundError) as ei:
        await run(parser, evaluator, "/:missing")
    assert ei.value.variable == "missing"
    assert str(ei.value) == "missing is not a closure."


@pytest.mark.asyncio
async def test_closure_call_on_text_variable(parser, evaluator):
    with pytest.raises(ClosureNotFoundError):
        await run(parser, evaluator, "/let f=text | /:f")


@pytest.mark.asyncio
async def test_override_of_undeclared_argument_raises(parser, evaluator):
    with pytest.raises(UndeclaredVariableError):
        await run(parser, evaluator, "/let f={: /pass :} | /:f nope=1")


@pytest.mark.asyncio
async def test_unknown_command_at_runtime(parser, evaluator, recorder):
    with pytest.raises(UnknownCommandError) as ei:
        await run(parser, evaluator, "/echo a | /nope | /echo b", strict=False)
    assert ei.value.name == "nope"
    # earlier commands already ran; later ones did not
    assert [value for _, _, value in recorder.calls] == ["a"]
    assert evaluator.call_stack[-1].name == "nope"


# --- Interrupts ---

@pytest.mark.asyncio
async def test_interrupt_is_last_executor_flag(parser, evaluator):
    assert (await run(parser, evaluator, "/echo a | /stop")).interrupt is True
    assert (await run(parser, evaluator, "/stop | /echo a")).interrupt is False


@pytest.mark.asyncio
async def test_interrupt_propagates_from_closure_call(parser, evaluator):
    result = await run(parser, evaluator, "/let f={: /stop :} | /:f")
    assert result.interrupt is True


# --- Re-entrancy ---

@pytest.mark.asyncio
async def test_template_is_never_mutated(parser, evaluator):
    closure = parser.parse("/let x=1 | /pass {{x}}")
    first = await evaluator.execute(closure)
    second = await evaluator.execute(closure)
    assert first.pipe == second.pipe == "1"
    assert closure.scope.variables == {}
    assert closure.scope.pipe is None


@pytest.mark.asyncio
async def test_same_closure_runs_twice_from_a_callback(parser, evaluator):
    result = await run(parser, evaluator, "/twice {: /pass {{pipe}}x :}")
    # each run starts with an empty pipe
    assert result.pipe == "xx"


def test_scope_macros_are_substituted(evaluator):
    scope = Scope()
    scope.set_macro("who", "me")
    assert evaluator.substitute("hi {{who}}", scope) == "hi me"


@pytest.mark.asyncio
async def test_kept_text_is_returned(parser, evaluator):
    parser.registry.register("note", lambda args, value: value, purge_from_message=False)
    result = await run(parser, evaluator, "/note a | /echo b")
    assert result.new_text == "/note a"
