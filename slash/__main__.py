import asyncio
import logging
import os
import sys
from pathlib import Path

from slash.slash_runtime import ScriptRunner
from slash.slash_printer import Printer

# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)

def _configure_logging():
    level = logging.DEBUG if os.environ.get("SLASH_DEBUG") else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

def _print_result(result, printer: Printer):
    # Print side effects (from `/echo`)
    for effect in result.side_effects:
        if effect.get('topics') == ['stdout']:
            print(effect.get('message', ''))
    if result.value is not None and result.value != '':
        print(printer.pformat(result.value))

async def run_script_file(file_path: str):
    """Run a slash-command script file non-interactively and exit with appropriate status."""
    runner = ScriptRunner()
    printer = Printer()
    p = Path(file_path)
    try:
        source = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    result = await runner.handle_script(source)
    if result.status == 'error':
        for effect in result.side_effects:
            if effect.get('topics') == ['stdout']:
                print(effect.get('message', ''))
        print(result.format_error(), file=sys.stderr)
        raise SystemExit(1)
    _print_result(result, printer)

async def main():
    """Run a script file when provided, otherwise start the interactive REPL."""
    _configure_logging()
    if len(sys.argv) > 1:
        arg = sys.argv[1]
        if not arg.startswith("-"):
            await run_script_file(arg)
            return

    print("slash REPL v0.1")
    print("Type 'help' for commands, 'exit' or press Ctrl+D to quit.")

    runner = ScriptRunner()
    printer = Printer()

    while True:
        try:
            raw = await ainput(">> ")
            if raw == "":
                raise EOFError
            line = raw.strip()

            if not line:
                continue
            if line == "exit":
                break
            if line == "help":
                print(runner.dump_help('yaml'))
                continue

            result = await runner.handle_script(line)

            if result.status == 'error':
                print(result.format_error(), file=sys.stderr)
                continue

            _print_result(result, printer)

        except EOFError:
            print("\nExiting.")
            break
        except Exception as e:
            print(f"Error: {e}", file=sys.stderr)

def cli():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nExiting.")

if __name__ == "__main__":
    cli()
