"""
The command registry: a lookup table of invokable slash commands and the
structured help listing built from it.
"""

import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional

from slash.slash_datatypes import Command, CommandArgument, IllegalNameError

logger = logging.getLogger(__name__)

# A command name may not start with any of these.
RESERVED_PREFIXES = ('/', '#')


@dataclass
class HelpEntry:
    """One primary command in the help listing. Presentation is left to the caller."""
    name: str
    named_arguments: List[CommandArgument] = field(default_factory=list)
    unnamed_arguments: List[CommandArgument] = field(default_factory=list)
    return_type: str = 'void'
    help_text: str = ''
    aliases: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class CommandRegistry:
    """Maps command names and aliases to Command objects."""

    def __init__(self):
        self.commands: Dict[str, Command] = {}

    def register(self, name: str, callback: Callable[..., Any], aliases: Optional[List[str]] = None,
                 help_text: str = '', interrupts_generation: bool = False, purge_from_message: bool = True,
                 *, named_arguments: Optional[List[CommandArgument]] = None,
                 unnamed_arguments: Optional[List[CommandArgument]] = None,
                 return_type: str = 'void') -> Command:
        """Registers `callback` under `name` and every alias. Later registrations win."""
        if not name or name[0] in RESERVED_PREFIXES:
            raise IllegalNameError(name)
        aliases = list(aliases or [])
        command = Command(
            name=name,
            callback=callback,
            aliases=aliases,
            help_text=help_text,
            interrupts_generation=interrupts_generation,
            purge_from_message=purge_from_message,
            named_arguments=list(named_arguments or []),
            unnamed_arguments=list(unnamed_arguments or []),
            return_type=return_type,
        )
        duplicates = [key for key in [name, *aliases] if key in self.commands]
        if duplicates:
            logger.warning("Duplicate slash command registered: %s", ', '.join(duplicates))
        self.commands[name] = command
        for alias in aliases:
            self.commands[alias] = command
        return command

    def lookup(self, name: str) -> Optional[Command]:
        return self.commands.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self.commands

    def __len__(self) -> int:
        return len(self.primary_commands())

    def primary_commands(self) -> List[Command]:
        """Commands reachable under their own name (aliases dropped), sorted case-insensitively."""
        primaries = [cmd for key, cmd in self.commands.items() if cmd.name == key]
        return sorted(primaries, key=lambda c: (c.name.lower(), c.name))

    def render_help(self) -> List[HelpEntry]:
        return [
            HelpEntry(
                name=cmd.name,
                named_arguments=list(cmd.named_arguments),
                unnamed_arguments=list(cmd.unnamed_arguments),
                return_type=cmd.return_type,
                help_text=cmd.help_text,
                aliases=list(cmd.aliases),
            )
            for cmd in self.primary_commands()
        ]

    def dump_help(self, fmt: str = 'yaml') -> str:
        """The help listing serialized as YAML or JSON."""
        from slash.slash_serialize import serialize
        return serialize([entry.to_dict() for entry in self.render_help()], fmt=fmt)
