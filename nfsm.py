#!/usr/bin/env python
"""
NFSM - the "not finite, still a machine" automaton compiler.

turns a handful of arrow rules like `.q0 -[a,_]a> q0 -_> (q1);` into a transition table, and then either drives it one
action at a time or throws a whole input at it and backtracks until something accepts.

Copyright (C) 2023 the nfsm authors

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.
"""

__version__ = "0.1.0"

import enum
import io
import json
import os
import re
import string
import sys
import textwrap
import types
import lark
from collections import defaultdict
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union
try: # pragma: no cover
    import graphviz
    debug_enabled = True
    import lark.tree
except ImportError: # pragma: no cover
    debug_enabled = False

grammar = r"""
start: rule_stmt*

rule_stmt: source (transition+ state)+ ";"

?source: state
       | regex_source
       | any_source

regex_source: REGEX
any_source: "*"

state: INITIAL_MARK? state_name
state_name: NAME -> plain_name
          | "(" NAME ")" -> accepting_name

transition: "-" transition_body ">" -> right_transition
          | "<" transition_body "-" -> left_transition
          | "<" transition_body ">" -> both_transition

transition_body: SYMBOL -> plain_body
               | "[" SYMBOL ("," stack_op)* "]" push_list? -> stack_body

stack_op: SYMBOL -> read_op
        | SYMBOL ":" SYMBOL -> read_write_op
        | ":" SYMBOL -> write_op

push_list: SYMBOL ("," SYMBOL)*

INITIAL_MARK: "."
NAME: /[A-Za-z0-9_]+/
SYMBOL: /[^\s\[\],:;<>()\-#]+/
REGEX: /\/(\\.|[^\\\/\n])+\//
COMMENT: /#[^\n]*/

%import common.WS
%ignore WS
%ignore COMMENT
"""

parser = lark.Lark(grammar, parser="lalr", propagate_positions=True)

"""
NFSM operates in a few 'stages':

- 1. parsing rule statements out of the lark tree (ParseCtx)
- 2a. unpacking each statement into directed transition facts (unpack_rule)
- 2b. merging every statement into one table, checking for conflicts and broadcasting wildcard rules (RuleCompileCtx)
- 3a. running the table (Machine)
- 3b. (optional) codegen into standalone javascript (CodegenCtx)

Every stage hands a plain value to the next one; nothing compiled is kept in global state.
"""

EPSILON = "_"

# ==============
# PROGRAM CONFIG
# ==============

class ProgramFlag(int, enum.Enum):
    def __new__(cls, value, helpstr="", default=False):
        obj = int.__new__(cls, value)
        obj.default = default
        obj.helpstr = helpstr
        obj._value_ = value
        return obj

    # Verbosity options
    VERBOSE_MERGE = 200
    VERBOSE_WILDCARDS = 201
    VERBOSE_SEARCH = 202
    VERBOSE_DISPATCH = 203

    # Engine options
    STRICT_ACTIONS = (1, "Raise an error when dispatching an action that has no transition")
    PRUNE_REVISITED = (2, "Skip configurations that were already explored during one consume", True)

    # Codegen options
    USE_STRICT_DIRECTIVE = (10, "Start generated code with a 'use strict' directive", True)

    # Debug options
    DEBUG_TABLE_SHOW_OPS = (100, "Show stack operations on edges of dumped tables", True)

class ProgramOption(enum.Enum):
    def __init__(self, default, helpstr):
        self.default = default
        self.helpstr = helpstr

    # Engine options
    MAX_SEARCH_STEPS = (5000, "Maximum number of snapshots expanded per consume, 0 for no limit")
    STACK_COUNT = (0, "Minimum number of stack channels to allocate")

    # Codegen options
    TARGET = ("node", "Host for generated code: node, esm or browser")
    GLOBAL_NAME = ("", "Name to bind the machine under when targeting the browser")

    # Debug options
    DEBUG_GRAPH_DUMP_FORMAT = ("pdf", "Output format for graphviz dumpers, use 'dot' to get raw dot file")

class DebugDumpable(enum.Enum):
    PARSE = "parse"
    TABLE = "table"
    TRACEBACK = "traceback"

class ProgramData:
    _flags = {
            x: x.default for x in ProgramFlag
    }

    _options = {
            x: x.default for x in ProgramOption
    }
    _dump = []

    dump_prefix = None
    dry_run = False

    @classmethod
    def _print_version(cls):
        print("nfsm", __version__)
        print("Copyright (C) 2023 the nfsm authors")
        print("This is free software; see the source for copying conditions.  There is NO")
        print("warranty; not even for MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.")

    @classmethod
    def _print_help(cls, show_all=False):
        general = [
            ("-o<arg>, --output <arg>", "Output name without extension"),
            ("-f<flag>, -fno-<flag>, --flag <flag>=<arg>", "Enable or disable a flag"),
            ("-d<arg>,<arg>, --dump <arg>,<arg>", "Dump tables or the parse tree, one of: " + ", ".join(x.value for x in DebugDumpable)),
            ("--dump-prefix <arg>", "Prefix for dumped files (default is program name)"),
            ("-t, --dry-run", "Only compile the rules, don't generate code"),
            ("-h, --help, --help-all", "Show this help screen; --help-all includes debug options"),
            ("--version", "Show the version of nfsm"),
        ]
        options = [(f"--{cls._cli_name(x)} <arg>", f"{x.helpstr} (default: {x.default!r})") for x in cls._visible(ProgramOption, show_all)]
        flags = [(cls._cli_name(x), f"{x.helpstr} (default: {x.default})" if x.helpstr else "") for x in cls._visible(ProgramFlag, show_all)]

        print("Usage: nfsm [options] input")
        for title, rows in (("Global Options", general), ("Engine and Generation Options", options), ("Flags", flags)):
            print(f"\n{title}:")
            width = max(len(usage) for usage, _ in rows) + 2
            for usage, description in rows:
                print(f"  {usage: <{width}}{description}".rstrip())

    @staticmethod
    def _cli_name(member):
        return member.name.replace("_", "-").lower()

    @staticmethod
    def _visible(members, show_all):
        return [x for x in members if show_all or not x.name.startswith(("VERBOSE", "DEBUG"))]

    @classmethod
    def _reset_flags(cls):
        cls._flags = {
                x: x.default for x in ProgramFlag
        }
        cls._options = {
                x: x.default for x in ProgramOption
        }
        cls._dump = []
        cls.dry_run = False
        cls.dump_prefix = None

    @classmethod
    def load_commandline_flags(cls, all_cmd_options: List[str]):
        """
        Load the command line flags passed in. Returns a tuple of (input_filename, program_output_name)
        """

        cls._reset_flags()

        input_filename = None
        program_output_name = None

        flag_overrides = {}

        all_cmd_options_iter = iter(all_cmd_options)

        for option in all_cmd_options_iter:
            if not option:
                continue
            try:
                if option[0] != "-":
                    if input_filename is not None:
                        raise RuntimeError("Program filename specified multiple times")
                    input_filename = option
                    program_output_name = sanitize_program_name(os.path.splitext(os.path.basename(input_filename))[0])
                    continue
                elif option[1] == "-":
                    option_name = option[2:]
                    if option_name not in ["help", "dry-run", "version", "help-all"]:
                        option_value = next(all_cmd_options_iter)
                else:
                    option_name = option[1]
                    option_value = option[2:]
            except IndexError:
                raise RuntimeError("Invalid argument " + option)
            except StopIteration:
                raise RuntimeError("Missing value for argument " + option)

            if option_name in ["o", "output"]:
                if "." in option_value:
                    raise RuntimeError("Program output should not contain an extension")
                program_output_name = option_value
            elif option_name in ["f", "flag"]:
                if option_name == "f":
                    set_to = True
                    if option_value.startswith("no-"):
                        set_to = False
                        option_value = option_value[3:]
                    flag_name = option_value.upper().replace("-", "_")
                else:
                    if "=" not in option_value:
                        set_to = True
                        flag_name = option_value
                    else:
                        flag_name, set_to = option_value.split("=")
                        set_to = set_to in ["yes", "on"]
                    option_value = flag_name
                    flag_name = flag_name.upper().replace("-", "_")
                if flag_name not in ProgramFlag.__members__:
                    raise RuntimeError("Unknown flag " + option_value)
                flag_overrides[ProgramFlag[flag_name]] = set_to
            elif option_name in ["h", "help"]:
                cls._print_help()
                exit(0)
            elif option_name == "help-all":
                cls._print_help(show_all=True)
                exit(0)
            elif option_name == "version":
                cls._print_version()
                exit(0)
            elif option_name in ["d", "dump"]:
                for i in option_value.split(","):
                    try:
                        cls._dump.append(DebugDumpable(i))
                    except ValueError:
                        raise RuntimeError("Unknown dump type " + i)
            elif option_name == "dump-prefix":
                cls.dump_prefix = option_value
            elif option_name in ["t", "dry-run"]:
                cls.dry_run = True
            else:
                p_option_name = option_name.upper().replace("-", "_")
                if p_option_name not in ProgramOption.__members__:
                    raise RuntimeError("Unknown option " + option_name)
                try:
                    cls._options[ProgramOption[p_option_name]] = type(ProgramOption[p_option_name].default)(option_value)
                except ValueError as e:
                    raise RuntimeError("Invalid value for option " + option_name) from e

        if input_filename is None:
            raise RuntimeError("No input file provided!")

        for k, v in flag_overrides.items():
            cls._flags[k] = v

        if cls.dump_prefix is None:
            cls.dump_prefix = program_output_name

        return (input_filename, program_output_name)

    @classmethod
    def do(self, flag):
        return self._flags[flag]

    @classmethod
    def option(self, opt):
        return self._options[opt]

    @classmethod
    def dump(self, dumpable):
        return dumpable in self._dump

class IndexableInstance(type):
    def __init__(self, name, bases, dct):
        self._ii_cache = {}

    def __getitem__(cls, obj):
        if obj in cls._ii_cache:
            return cls._ii_cache[obj]
        else:
            cls._ii_cache[obj] = cls(obj) # pylint: disable=no-value-for-parameter,no-value-for-parameter
            return cls._ii_cache[obj]

class dprint(metaclass=IndexableInstance):
    def __init__(self, condition):
        self.condition = condition

    def __call__(self, *args, **kwargs):
        if ProgramData.do(self.condition): # pragma: no cover
            print(*args, **kwargs)

def sanitize_program_name(name: str):
    """
    Turn an arbitrary file name into something usable as an identifier in generated code
    """

    return "".join(x if (
        x in string.ascii_letters or x == '_' or (i > 0 and x in string.digits)
    ) else '_' for i, x in enumerate(name))

# ===========
# ERROR TYPES
# ===========

class SourcePos(NamedTuple):
    line: int
    column: int

    @classmethod
    def of(cls, obj):
        if isinstance(obj, lark.Token):
            return cls(obj.line, obj.column)
        if isinstance(obj, lark.Tree):
            if getattr(obj.meta, "empty", True):
                return None
            return cls(obj.meta.line, obj.meta.column)
        return None

class NFSMError(Exception):
    def __init__(self, reasons, message=None):
        self.reasons = [x for x in reasons if x is not None]
        self.message = message
        self.source_lines = None

    def attach_source(self, src: str):
        """
        Remember the source text so the error can point at the offending lines
        """

        self.source_lines = src.splitlines(keepends=False)
        return self

    def get_source_line(self, line: int):
        if self.source_lines is None or line is None or not (0 < line <= len(self.source_lines)):
            return None
        return self.source_lines[line - 1]

    @staticmethod
    def _position_of(reason):
        if isinstance(reason, SourcePos):
            return reason
        if isinstance(reason, (lark.Token, lark.Tree)):
            return SourcePos.of(reason)
        return getattr(reason, "pos", None)

    def _generate_whitespace_marker(self, line, column):
        marker = ""
        source_line = self.get_source_line(line)
        for i in range(column):
            if i == column - 1:
                marker += "^"
            elif i < len(source_line) and source_line[i] == "\t":
                marker += "\t"
            else:
                marker += " "
        return marker

    def _get_message(self, show_potential_reasons=True, reasons_header="Potential reasons include:", subset=None):
        if subset is None:
            subset = self.reasons
        info_strs = []
        for reason in subset:
            pos = self._position_of(reason)
            if pos is None or pos.line is None or pos.line < 1:
                continue
            source_line = self.get_source_line(pos.line)
            if source_line is None:
                info_strs.append(f"- at line {pos.line}, column {pos.column}")
                continue
            info_str = f"- line {pos.line}:\n{source_line}"
            if pos.column is not None and pos.column > 0:
                info_str += "\n" + self._generate_whitespace_marker(pos.line, pos.column)
            info_strs.append(info_str)

        if info_strs:
            return (f"{reasons_header}\n" if show_potential_reasons else "") + "\n".join(info_strs)
        else:
            return ""

    def __str__(self):
        details = self._get_message(reasons_header="Due to:")
        if self.message and details:
            return self.message + "\n" + details
        return self.message or details

class RuleSyntaxError(NFSMError):
    def __init__(self, msg, *source):
        super().__init__(source, msg)

class IllegalRuleError(NFSMError):
    def __init__(self, msg, *source):
        super().__init__(source, msg)

class DuplicateTransitionError(IllegalRuleError):
    def __init__(self, state, label, *source):
        super().__init__(f"Duplicate transition '{label}' from state '{state}' in a single rule", *source)
        self.state = state
        self.label = label

class AmbiguousTransitionError(IllegalRuleError):
    """
    Two rule statements (or two wildcard rules) both define what happens on the same transition out of the same state.
    """

    def __init__(self, state, label, *source):
        super().__init__(f"Multiple possible paths from state '{state}' via transition '{label}'", *source)
        self.state = state
        self.label = label

class NoInitialStateError(NFSMError):
    def __init__(self):
        super().__init__([], "Initial state not found; mark the initial state with a leading '.', e.g. .s0 -f> s1")

class MultipleInitialStatesError(NFSMError):
    def __init__(self, names, *source):
        super().__init__(source, "Multiple initial states: " + ", ".join(f"'{x}'" for x in names))
        self.names = list(names)

class InvalidActionError(NFSMError):
    def __init__(self, label, state, known=True):
        if known:
            msg = f"Invalid action '{label}' from state '{state}'"
        else:
            msg = f"Unknown action '{label}'"
        super().__init__([], msg)
        self.label = label
        self.state = state

class CodegenError(NFSMError):
    def __init__(self, msg):
        super().__init__([], msg)

# ==========
# TABLE DATA
# ==========

class Direction(enum.Enum):
    RIGHT = "r"
    LEFT = "l"
    BOTH = "lr"

class StackOp(NamedTuple):
    """
    What a transition does to one stack channel.

    read is a concrete symbol (match the top and pop it), EPSILON (match anything, don't pop) or None (no requirement).
    write is a symbol to push or None.
    """

    read: Optional[str] = None
    write: Optional[str] = None

class TransitionFilter(NamedTuple):
    input: str
    reads: Tuple[Optional[str], ...] = ()

    def key(self):
        """
        Canonical identity for conflict detection: epsilon reads and missing reads mean the same thing.
        """

        reads = [None if x == EPSILON else x for x in self.reads]
        while reads and reads[-1] is None:
            reads.pop()
        return (self.input, tuple(reads))

    def padded(self, count: int):
        if len(self.reads) >= count:
            return self
        return self._replace(reads=self.reads + (None,) * (count - len(self.reads)))

    def matches(self, input_head, stack_tops: Sequence[Optional[str]]):
        if self.input != EPSILON and self.input != input_head:
            return False
        for channel, read in enumerate(self.reads):
            if read is None or read == EPSILON:
                continue
            top = stack_tops[channel] if channel < len(stack_tops) else None
            if top != read:
                return False
        return True

    def __str__(self):
        if not any(x is not None for x in self.reads):
            return self.input
        return "[" + ",".join([self.input, *(x if x is not None else EPSILON for x in self.reads)]) + "]"

# Action IR. Each op knows how to apply itself to anything with state/stacks/input attributes.

class ConsumeInput(NamedTuple):
    opname = "consume"

    def apply(self, target):
        if target.input:
            del target.input[0]

class PopStack(NamedTuple):
    channel: int
    opname = "pop"

    def apply(self, target):
        if target.stacks[self.channel]:
            target.stacks[self.channel].pop()

class PushStack(NamedTuple):
    channel: int
    value: str
    opname = "push"

    def apply(self, target):
        target.stacks[self.channel].append(self.value)

class SetState(NamedTuple):
    state: str
    opname = "set"

    def apply(self, target):
        target.state = self.state

ActionOp = Union[ConsumeInput, PopStack, PushStack, SetState]
OP_TYPES = {x.opname: x for x in (ConsumeInput, PopStack, PushStack, SetState)}

class TransitionAction:
    def __init__(self, target: str, ops: Iterable[ActionOp]):
        self.target = target
        self.ops = tuple(ops)

    @classmethod
    def build(cls, target: str, input_symbol: str, stack_ops: Sequence[StackOp]):
        """
        Lower a transition into ops, in the order consume, pop, push, set state
        """

        ops = []
        if input_symbol != EPSILON:
            ops.append(ConsumeInput())
        for channel, op in enumerate(stack_ops):
            if op.read is not None and op.read != EPSILON:
                ops.append(PopStack(channel))
        for channel, op in enumerate(stack_ops):
            if op.write is not None and op.write != EPSILON:
                ops.append(PushStack(channel, op.write))
        ops.append(SetState(target))
        return cls(target, ops)

    def apply(self, target, consume_input=True):
        for op in self.ops:
            if not consume_input and isinstance(op, ConsumeInput):
                continue
            op.apply(target)

    def channels_used(self):
        return max((op.channel + 1 for op in self.ops if isinstance(op, (PopStack, PushStack))), default=0)

    def __eq__(self, other):
        if not isinstance(other, TransitionAction):
            return NotImplemented
        return self.target == other.target and [(x.opname, *x) for x in self.ops] == [(x.opname, *x) for x in other.ops]

    def __hash__(self):
        return hash((self.target, tuple((x.opname, *x) for x in self.ops)))

    def __repr__(self):
        return f"<TransitionAction to={self.target} ops={list(self.ops)}>"

class TransitionEntry:
    """
    One row of the table: the label it was written with, the filter deciding when it applies and what it does.
    """

    def __init__(self, label: str, transition_filter: TransitionFilter, action: TransitionAction, pos: Optional[SourcePos] = None):
        self.label = label
        self.filter = transition_filter
        self.action = action
        self.pos = pos

    def padded(self, count: int):
        if len(self.filter.reads) >= count:
            return self
        return TransitionEntry(self.label, self.filter.padded(count), self.action, self.pos)

    def describe(self):
        pushes = [f"{op.channel}:{op.value}" for op in self.action.ops if isinstance(op, PushStack)]
        if pushes:
            return f"{self.filter} push {','.join(pushes)}"
        return str(self.filter)

    def __repr__(self):
        return f"<TransitionEntry {self.describe()} to={self.action.target}>"

class CompiledMachine:
    """
    The output of compilation: the initial state, the per-state transition table and the accept set.

    This is pure data; `to_dict` gives a json-compatible version for caching and `from_dict` reverses it.
    """

    def __init__(self, initial: str, transitions: Dict[str, Iterable[TransitionEntry]], accept_states: Iterable[str],
            stack_count: int = 0, states: Iterable[str] = (), labels: Iterable[str] = ()):
        self.initial = initial
        self.transitions = types.MappingProxyType({k: tuple(v) for k, v in transitions.items()})
        self.accept_states = frozenset(accept_states)
        self.stack_count = stack_count
        self.states = tuple(states)
        self.labels = tuple(labels)

    def entries_for(self, state: str) -> Tuple[TransitionEntry, ...]:
        return self.transitions.get(state, ())

    def to_dict(self):
        return {
            "initial": self.initial,
            "accept_states": sorted(self.accept_states),
            "stack_count": self.stack_count,
            "states": list(self.states),
            "labels": list(self.labels),
            "transitions": {
                state: [{
                    "label": entry.label,
                    "input": entry.filter.input,
                    "reads": list(entry.filter.reads),
                    "target": entry.action.target,
                    "ops": [[op.opname, *op] for op in entry.action.ops]
                } for entry in entries] for state, entries in self.transitions.items()
            }
        }

    @classmethod
    def from_dict(cls, data):
        transitions = {}
        for state, entries in data["transitions"].items():
            transitions[state] = [TransitionEntry(
                entry["label"],
                TransitionFilter(entry["input"], tuple(entry["reads"])),
                TransitionAction(entry["target"], (OP_TYPES[op[0]](*op[1:]) for op in entry["ops"]))
            ) for entry in entries]
        return cls(data["initial"], transitions, data["accept_states"], data["stack_count"], data["states"], data["labels"])

# =========
# AST TYPES
# =========

class StateToken:
    def __init__(self, name: str, is_initial=False, is_accepting=False, pos: Optional[SourcePos] = None):
        self.name = name
        self.is_initial = is_initial
        self.is_accepting = is_accepting
        self.pos = pos

    def __repr__(self):
        return f"<StateToken {'.' if self.is_initial else ''}{self.name}{' accepting' if self.is_accepting else ''}>"

class WildcardToken:
    """
    Source position matching many states: a regular expression (searched, not fullmatched) or None for the catch-all `*`
    """

    def __init__(self, pattern: Union[str, "re.Pattern", None] = None, pos: Optional[SourcePos] = None):
        if isinstance(pattern, str):
            pattern = re.compile(pattern)
        self.pattern = pattern
        self.pos = pos

    def matches(self, name: str):
        return self.pattern is None or self.pattern.search(name) is not None

    def __str__(self):
        if self.pattern is None:
            return "*"
        return f"/{self.pattern.pattern}/"

    def __repr__(self):
        return f"<WildcardToken {self}>"

class TransitionToken:
    def __init__(self, label: str, direction: Union[Direction, str] = Direction.RIGHT, stack_ops: Iterable[StackOp] = (), pos: Optional[SourcePos] = None):
        self.label = label
        self.direction = Direction(direction)
        self.stack_ops = tuple(stack_ops)
        self.pos = pos

    def make_filter(self):
        return TransitionFilter(self.label, tuple(op.read for op in self.stack_ops))

    def __repr__(self):
        return f"<TransitionToken {self.make_filter()} {self.direction.value} ops={list(self.stack_ops)}>"

Token = Union[StateToken, WildcardToken, TransitionToken]

class RuleStatement:
    def __init__(self, tokens: Iterable[Token], pos: Optional[SourcePos] = None):
        self.tokens = list(tokens)
        self.pos = pos

    def __repr__(self):
        return f"<RuleStatement {self.tokens}>"

# =======
# PARSING
# =======

class ParseCtx:
    def __init__(self, parse_tree: lark.Tree):
        self._parse_tree = parse_tree
        self.statements: List[RuleStatement] = []

    def parse(self):
        # source order matters for ambiguity checks, so walk the children directly instead of find_data
        for stmt in self._parse_tree.children:
            self.statements.append(self._parse_rule_stmt(stmt))
        return self.statements

    def _parse_rule_stmt(self, stmt: lark.Tree):
        tokens = []
        for child in stmt.children:
            if child.data == "state":
                tokens.append(self._parse_state(child))
            elif child.data == "regex_source":
                tokens.append(self._parse_regex_source(child))
            elif child.data == "any_source":
                tokens.append(WildcardToken(None, SourcePos.of(child)))
            elif child.data.endswith("_transition"):
                tokens.append(self._parse_transition(child))
            else: # pragma: no cover
                raise IllegalRuleError("Unexpected element in rule " + str(child.data), child)
        return RuleStatement(tokens, SourcePos.of(stmt))

    def _parse_state(self, state: lark.Tree):
        *marks, name_tree = state.children
        name = name_tree.children[0]
        return StateToken(
            name.value,
            is_initial=bool(marks),
            is_accepting=name_tree.data == "accepting_name",
            pos=SourcePos.of(marks[0] if marks else name)
        )

    def _parse_regex_source(self, regex: lark.Tree):
        token = regex.children[0]
        try:
            return WildcardToken(token.value[1:-1], SourcePos.of(token))
        except re.error as e:
            raise IllegalRuleError(f"Invalid state pattern {token.value}: {e}", token) from e

    def _parse_transition(self, transition: lark.Tree):
        direction = {
            "right_transition": Direction.RIGHT,
            "left_transition": Direction.LEFT,
            "both_transition": Direction.BOTH
        }[transition.data]
        body = transition.children[0]
        label_token = body.children[0]
        if body.data == "plain_body":
            return TransitionToken(label_token.value, direction, (), SourcePos.of(label_token))

        stack_ops = []
        for op in body.children[1:]:
            if op.data == "push_list":
                self._apply_push_list(stack_ops, op)
            else:
                stack_ops.append(self._parse_stack_op(op))
        return TransitionToken(label_token.value, direction, stack_ops, SourcePos.of(label_token))

    def _parse_stack_op(self, op: lark.Tree):
        values = [x.value for x in op.children]
        if op.data == "read_op":
            return StackOp(read=values[0])
        elif op.data == "read_write_op":
            return StackOp(read=values[0], write=self._write_value(values[1]))
        else:
            return StackOp(write=self._write_value(values[0]))

    def _apply_push_list(self, stack_ops: List[StackOp], push_list: lark.Tree):
        """
        Symbols after the closing bracket push onto channels 0, 1, ... in order
        """

        for channel, symbol in enumerate(push_list.children):
            value = self._write_value(symbol.value)
            if value is None:
                continue
            while len(stack_ops) <= channel:
                stack_ops.append(StackOp())
            if stack_ops[channel].write is not None:
                raise IllegalRuleError(f"Stack channel {channel} is written twice by one transition", symbol)
            stack_ops[channel] = stack_ops[channel]._replace(write=value)

    @staticmethod
    def _write_value(symbol: str):
        return None if symbol == EPSILON else symbol

# =========
# UNPACKING
# =========

class UnpackedRule:
    """
    Everything one rule statement contributes: directed facts plus the inventory of names it mentions.
    """

    def __init__(self, index: int):
        self.index = index
        self.facts: List[Tuple[Union[str, WildcardToken], TransitionEntry]] = []
        self.states_found: List[str] = []
        self.labels_found: List[str] = []
        self.initial: List[StateToken] = []
        self.accepting: List[str] = []

    def explicit_facts(self):
        return [(source, entry) for source, entry in self.facts if not isinstance(source, WildcardToken)]

    def wildcard_facts(self):
        return [(source, entry) for source, entry in self.facts if isinstance(source, WildcardToken)]

def _push_found(arr, name):
    if name not in arr:
        arr.append(name)

def unpack_rule(statement: RuleStatement, index: int = 0) -> UnpackedRule:
    """
    Convert one rule statement into directed transition facts.

    Each transition connects the nearest state on its left with the nearest state on its right, so
    `a -f> b -g> c` is the same as `a -f> b; b -g> c;` and `a <g- <f> b` puts both g and f between a and b.
    """

    result = UnpackedRule(index)
    tokens = statement.tokens

    if not tokens or not isinstance(tokens[0], (StateToken, WildcardToken)) or not isinstance(tokens[-1], (StateToken, WildcardToken)):
        raise IllegalRuleError("Rule statements must start and end with a state", statement)

    seen = set()

    def emit(source, transition: TransitionToken, dest):
        if isinstance(dest, WildcardToken):
            raise IllegalRuleError(f"Wildcard state {dest} can only be the source of a transition", dest, transition)
        source_key = source.name if isinstance(source, StateToken) else source
        entry = TransitionEntry(
            transition.label,
            transition.make_filter(),
            TransitionAction.build(dest.name, transition.label, transition.stack_ops),
            transition.pos
        )
        dup_key = (source_key, entry.filter.key(), entry.action)
        if dup_key in seen:
            raise DuplicateTransitionError(source_key, transition.label, transition)
        seen.add(dup_key)
        result.facts.append((source_key, entry))

    left = None
    pending: List[TransitionToken] = []
    for token in tokens:
        if isinstance(token, TransitionToken):
            _push_found(result.labels_found, token.label)
            pending.append(token)
            continue

        if isinstance(token, StateToken):
            _push_found(result.states_found, token.name)
            if token.is_initial:
                result.initial.append(token)
            if token.is_accepting:
                _push_found(result.accepting, token.name)

        if left is not None:
            if not pending:
                raise IllegalRuleError("Missing transition between two states", left, token)
            for transition in pending:
                if transition.direction in (Direction.RIGHT, Direction.BOTH):
                    emit(left, transition, token)
                if transition.direction in (Direction.LEFT, Direction.BOTH):
                    if transition.direction == Direction.BOTH and _same_state(left, token):
                        continue
                    emit(token, transition, left)
        left = token
        pending = []

    return result

def _same_state(a, b):
    return isinstance(a, StateToken) and isinstance(b, StateToken) and a.name == b.name

# =======
# MERGING
# =======

class RuleCompileCtx:
    def __init__(self, statements: Iterable[RuleStatement]):
        self.statements = list(statements)
        self.unpacked: List[UnpackedRule] = []
        self.transitions: Dict[str, List[TransitionEntry]] = defaultdict(list)
        self.states_found: List[str] = []
        self.labels_found: List[str] = []
        self.compiled: Optional[CompiledMachine] = None

        # (state, filter key) -> (statement index, entry) for explicit entries
        self._owners = {}

    def compile(self) -> CompiledMachine:
        self.unpacked = [unpack_rule(stmt, i) for i, stmt in enumerate(self.statements)]

        for rule in self.unpacked:
            for name in rule.states_found:
                _push_found(self.states_found, name)
            for label in rule.labels_found:
                _push_found(self.labels_found, label)

        self._merge_explicit()
        self._apply_wildcards()

        initial = self._find_initial()
        accept_states = set()
        for rule in self.unpacked:
            accept_states.update(rule.accepting)

        stack_count = self._stack_count()
        table = {
            state: [entry.padded(stack_count) for entry in entries] for state, entries in self.transitions.items()
        }

        dprint[ProgramFlag.VERBOSE_MERGE]("compiled {} states, {} entries, {} stack channels".format(
            len(self.states_found), sum(len(x) for x in table.values()), stack_count))

        self.compiled = CompiledMachine(initial, table, accept_states, stack_count, self.states_found, self.labels_found)
        return self.compiled

    def _merge_explicit(self):
        for rule in self.unpacked:
            for state, entry in rule.explicit_facts():
                key = (state, entry.filter.key())
                owner_index, owner_entry = self._owners.setdefault(key, (rule.index, entry))
                if owner_index != rule.index:
                    raise AmbiguousTransitionError(state, entry.label, owner_entry, entry)
                dprint[ProgramFlag.VERBOSE_MERGE](f"adding {entry!r} to '{state}' from rule {rule.index}")
                self.transitions[state].append(entry)

    def _apply_wildcards(self):
        """
        Broadcast wildcard rules onto every concrete state they match, never over an explicit entry.
        """

        # wildcards are shadowed by label alone, whatever stack reads either side uses
        explicit_labels = {(state, entry.label) for state, entries in self.transitions.items() for entry in entries}
        wildcard_owners = {}
        for rule in self.unpacked:
            for wildcard, entry in rule.wildcard_facts():
                for state in self.states_found:
                    if not wildcard.matches(state):
                        continue
                    key = (state, entry.label)
                    if key in explicit_labels:
                        dprint[ProgramFlag.VERBOSE_WILDCARDS](f"explicit '{entry.label}' on '{state}' shadows {wildcard}")
                        continue
                    owner_index, owner_entry = wildcard_owners.setdefault(key, (rule.index, entry))
                    if owner_index != rule.index:
                        raise AmbiguousTransitionError(state, entry.label, owner_entry, entry)
                    dprint[ProgramFlag.VERBOSE_WILDCARDS](f"{wildcard} adds {entry!r} to '{state}'")
                    self.transitions[state].append(entry)

    def _find_initial(self):
        initial_tokens = [token for rule in self.unpacked for token in rule.initial]
        names = []
        for token in initial_tokens:
            _push_found(names, token.name)
        if not names:
            raise NoInitialStateError()
        if len(names) > 1:
            raise MultipleInitialStatesError(names, *initial_tokens)
        return names[0]

    def _stack_count(self):
        count = ProgramData.option(ProgramOption.STACK_COUNT)
        for rule in self.unpacked:
            for _, entry in rule.facts:
                count = max(count, len(entry.filter.reads), entry.action.channels_used())
        return count

def compile_rules(src: str) -> CompiledMachine:
    """
    Parse and compile DSL source text. Errors come back with the source attached so they can show the offending line.
    """

    try:
        parse_tree = parser.parse(src)
    except lark.exceptions.UnexpectedInput as e:
        line = getattr(e, "line", None)
        pos = SourcePos(line, e.column) if isinstance(line, int) and line > 0 else None
        summary = (str(e).strip().splitlines() or ["unexpected end of input"])[0]
        raise RuleSyntaxError("Syntax error: " + summary, pos).attach_source(src) from e

    try:
        statements = ParseCtx(parse_tree).parse()
        return RuleCompileCtx(statements).compile()
    except NFSMError as e:
        e.attach_source(src)
        raise

# ======
# ENGINE
# ======

class Snapshot:
    """
    One in-progress run during a consume call. Clones never share mutable storage with their parent.

    The trail is an immutable chain of (state, label, stacks) records, so it is shared between clones as is.
    """

    def __init__(self, state: str, stacks: List[List[str]], input: List[str], halted=False, trail=None, recording=False):
        self.state = state
        self.stacks = stacks
        self.input = input
        self.halted = halted
        self.trail = trail
        self.recording = recording

    def clone(self):
        return Snapshot(self.state, [list(x) for x in self.stacks], list(self.input), self.halted, self.trail, self.recording)

    @property
    def workload(self):
        return sum(len(x) for x in self.stacks) + len(self.input)

    def stack_tops(self):
        return tuple(x[-1] if x else None for x in self.stacks)

    def input_head(self):
        return self.input[0] if self.input else None

    def configuration(self):
        return (self.state, tuple(tuple(x) for x in self.stacks), len(self.input))

    def apply(self, entry: TransitionEntry):
        entry.action.apply(self)
        if self.recording:
            self.trail = (self.trail, (self.state, entry.label, tuple(tuple(x) for x in self.stacks)))

    def history(self):
        records = []
        link = self.trail
        while link is not None:
            link, record = link
            records.append(record)
        records.reverse()
        return records

    def __repr__(self):
        return f"<Snapshot state={self.state} stacks={self.stacks} input={self.input}{' halted' if self.halted else ''}>"

class Machine:
    """
    A running instance of a compiled table.

    dispatch() fires single actions deterministically, consume() searches the whole input nondeterministically and
    settles on either an accepting run or the run that got furthest.
    """

    def __init__(self, compiled: CompiledMachine, strict: Optional[bool] = None, max_steps: Optional[int] = None):
        self.compiled = compiled
        self.strict = ProgramData.do(ProgramFlag.STRICT_ACTIONS) if strict is None else strict
        self.max_steps = ProgramData.option(ProgramOption.MAX_SEARCH_STEPS) if max_steps is None else max_steps
        self._subscribers: List[Callable] = []
        self.reset()

    @property
    def initial(self):
        return self.compiled.initial

    @property
    def accept_states(self):
        return self.compiled.accept_states

    def reset(self):
        self.state = self.compiled.initial
        self.stacks = [[] for _ in range(self.compiled.stack_count)]
        self.input = []
        self.halted = False
        return self

    def in_accept_state(self):
        return not self.input and self.state in self.compiled.accept_states

    def subscribe(self, callback: Callable[[str, str, Tuple[Tuple[str, ...], ...]], None]):
        """
        Call callback(state, label, stacks) after every transition committed to this machine. Returns an unsubscriber.
        """

        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    def _notify(self, state, label, stacks):
        for callback in list(self._subscribers):
            callback(state, label, stacks)

    def stack_tops(self):
        return tuple(x[-1] if x else None for x in self.stacks)

    def possible_transitions(self, state: str, stack_tops: Sequence[Optional[str]], input_head: Optional[str]) -> List[TransitionEntry]:
        """
        Every entry out of state that matches, in table order; epsilon entries are included next to concrete ones.
        """

        return [entry for entry in self.compiled.entries_for(state) if entry.filter.matches(input_head, stack_tops)]

    def dispatch(self, label: str):
        tops = self.stack_tops()
        for entry in self.compiled.entries_for(self.state):
            if entry.filter.input == label and entry.filter.matches(label, tops):
                dprint[ProgramFlag.VERBOSE_DISPATCH](f"dispatch '{label}': {self.state} -> {entry.action.target}")
                entry.action.apply(self, consume_input=False)
                self.halted = False
                self._notify(self.state, entry.label, tuple(tuple(x) for x in self.stacks))
                return
        if self.strict:
            raise InvalidActionError(label, self.state, known=label in self.compiled.labels)
        dprint[ProgramFlag.VERBOSE_DISPATCH](f"ignoring invalid action '{label}' from state '{self.state}'")

    def _accepts(self, snapshot: Snapshot):
        return not snapshot.halted and not snapshot.input and snapshot.state in self.compiled.accept_states

    @staticmethod
    def _most_exhausted(candidate: Snapshot, current: Snapshot):
        return candidate if candidate.workload < current.workload else current

    def _adopt(self, snapshot: Snapshot):
        self.state = snapshot.state
        self.stacks = [list(x) for x in snapshot.stacks]
        self.input = list(snapshot.input)
        self.halted = snapshot.halted
        for state, label, stacks in snapshot.history():
            self._notify(state, label, stacks)
        return self

    def consume(self, input: Union[str, Iterable[str]], reset=False):
        """
        Feed a whole input and search for an accepting run.

        Pending snapshots live on an explicit work stack. A single match continues the popped snapshot in place, several
        matches fork one clone each. The first snapshot found accepting (empty input, accept state) is adopted; if the
        search runs dry the snapshot with the smallest remaining stacks + input is adopted instead.

        Epsilon loops that keep pushing never repeat a configuration, so only max_steps stops them; with max_steps set
        to 0 such a machine will search forever on input it does not accept.
        """

        if reset:
            self.reset()
        if isinstance(input, str):
            input = list(input)

        seed = Snapshot(self.state, [list(x) for x in self.stacks], list(input), recording=bool(self._subscribers))
        if self._accepts(seed):
            return self._adopt(seed)

        prune = ProgramData.do(ProgramFlag.PRUNE_REVISITED)
        explored = set()
        pending = [seed]
        exhausted = seed
        steps = 0

        while pending:
            if self.max_steps and steps >= self.max_steps:
                dprint[ProgramFlag.VERBOSE_SEARCH](f"giving up after {steps} steps with {len(pending)} pending")
                break
            snapshot = pending.pop()
            if prune:
                configuration = snapshot.configuration()
                if configuration in explored:
                    continue
                explored.add(configuration)
            steps += 1

            matches = self.possible_transitions(snapshot.state, snapshot.stack_tops(), snapshot.input_head())
            dprint[ProgramFlag.VERBOSE_SEARCH]("at", snapshot, "matches", matches)

            if not matches:
                snapshot.halted = True
                exhausted = self._most_exhausted(snapshot, exhausted)
            elif len(matches) == 1:
                if snapshot is exhausted:
                    snapshot = snapshot.clone()
                snapshot.apply(matches[0])
                if self._accepts(snapshot):
                    return self._adopt(snapshot)
                exhausted = self._most_exhausted(snapshot, exhausted)
                pending.append(snapshot)
            else:
                for entry in matches:
                    branch = snapshot.clone()
                    branch.apply(entry)
                    if self._accepts(branch):
                        return self._adopt(branch)
                    exhausted = self._most_exhausted(branch, exhausted)
                    pending.append(branch)

        dprint[ProgramFlag.VERBOSE_SEARCH]("no accepting run, halting at", exhausted)
        return self._adopt(exhausted)

def build(src: str, strict: Optional[bool] = None, max_steps: Optional[int] = None) -> Machine:
    return Machine(compile_rules(src), strict=strict, max_steps=max_steps)

# =======
# CODEGEN
# =======

class Outputter:
    SHIFT_WIDTH = 4

    def __init__(self, indent=0, target=None):
        if target:
            self.result = target
        else:
            self.result = io.StringIO()
        self.indent = indent

    def __enter__(self):
        return Outputter(self.indent + Outputter.SHIFT_WIDTH, self.result)

    def __exit__(self, *args, **kwargs):
        pass

    def add(self, *args, **kwargs):
        self.result.write(" " * self.indent)
        print(*args, **kwargs, file=self.result)

    def value(self):
        return self.result.getvalue()

    def __iadd__(self, tgt):
        self.result.write(textwrap.indent(tgt, " "*self.indent))
        return self

# The runtime is the same for every machine; only the table and settings around it change.
JS_RUNTIME = textwrap.dedent("""\
reset: function () {
    this.state = this.initial;
    this.stacks = [];
    for (var i = 0; i < this.stackCount; i++) this.stacks.push([]);
    this.input = [];
    this.halted = false;
    return this;
},
inAcceptState: function () {
    return this.input.length === 0 && this.acceptStates.indexOf(this.state) !== -1;
},
_possibleTransitions: function (snapshot) {
    var entries = this.transitions[snapshot.state] || [];
    var head = snapshot.input.length ? snapshot.input[0] : null;
    var result = [];
    for (var i = 0; i < entries.length; i++) {
        var entry = entries[i];
        if (entry.input !== "_" && entry.input !== head) continue;
        var ok = true;
        for (var c = 0; c < entry.reads.length; c++) {
            var read = entry.reads[c];
            if (read === null || read === "_") continue;
            var stack = snapshot.stacks[c];
            if (!stack.length || stack[stack.length - 1] !== read) {
                ok = false;
                break;
            }
        }
        if (ok) result.push(entry);
    }
    return result;
},
_clone: function (snapshot) {
    return {
        state: snapshot.state,
        stacks: snapshot.stacks.map(function (s) { return s.slice(); }),
        input: snapshot.input.slice(),
        halted: snapshot.halted
    };
},
_workload: function (snapshot) {
    var total = snapshot.input.length;
    for (var i = 0; i < snapshot.stacks.length; i++) total += snapshot.stacks[i].length;
    return total;
},
_accepts: function (snapshot) {
    return !snapshot.halted && snapshot.input.length === 0 && this.acceptStates.indexOf(snapshot.state) !== -1;
},
_adopt: function (snapshot) {
    this.state = snapshot.state;
    this.stacks = snapshot.stacks;
    this.input = snapshot.input;
    this.halted = snapshot.halted;
    return this;
},
dispatch: function (label) {
    var entries = this._possibleTransitions({state: this.state, stacks: this.stacks, input: [label]});
    for (var i = 0; i < entries.length; i++) {
        if (entries[i].input === label) {
            entries[i].fn.call(this, false);
            this.halted = false;
            return;
        }
    }
    if (this.strict) {
        throw new Error("Invalid action '" + label + "' from state '" + this.state + "'");
    }
},
consume: function (input, options) {
    if (options && options.reset) this.reset();
    if (typeof input === "string") input = input.split("");
    var seed = this._clone({state: this.state, stacks: this.stacks, input: input, halted: false});
    if (this._accepts(seed)) return this._adopt(seed);
    var pending = [seed];
    var exhausted = seed;
    var explored = {};
    var steps = 0;
    while (pending.length) {
        if (this.maxSteps && steps >= this.maxSteps) break;
        var snapshot = pending.pop();
        if (this.prune) {
            var key = JSON.stringify([snapshot.state, snapshot.stacks, snapshot.input.length]);
            if (Object.prototype.hasOwnProperty.call(explored, key)) continue;
            explored[key] = true;
        }
        steps++;
        var matches = this._possibleTransitions(snapshot);
        if (!matches.length) {
            snapshot.halted = true;
            if (this._workload(snapshot) < this._workload(exhausted)) exhausted = snapshot;
        } else if (matches.length === 1) {
            if (snapshot === exhausted) snapshot = this._clone(snapshot);
            matches[0].fn.call(snapshot, true);
            if (this._accepts(snapshot)) return this._adopt(snapshot);
            if (this._workload(snapshot) < this._workload(exhausted)) exhausted = snapshot;
            pending.push(snapshot);
        } else {
            for (var m = 0; m < matches.length; m++) {
                var branch = this._clone(snapshot);
                matches[m].fn.call(branch, true);
                if (this._accepts(branch)) return this._adopt(branch);
                if (this._workload(branch) < this._workload(exhausted)) exhausted = branch;
                pending.push(branch);
            }
        }
    }
    return this._adopt(exhausted);
}
""")

class CodegenCtx:
    TARGETS = ("node", "esm", "browser")

    def __init__(self, compiled: CompiledMachine, program_name: str, target: Optional[str] = None, global_name: Optional[str] = None):
        self.compiled = compiled
        self.program_name = sanitize_program_name(program_name)
        self.target = target if target is not None else ProgramData.option(ProgramOption.TARGET)
        self.global_name = global_name if global_name is not None else ProgramData.option(ProgramOption.GLOBAL_NAME)

    def generate_source(self):
        if self.target not in CodegenCtx.TARGETS:
            raise CodegenError(f"Unknown target '{self.target}', expected one of " + ", ".join(CodegenCtx.TARGETS))
        if self.target == "browser" and not self.global_name:
            raise CodegenError("The browser target needs a global name to bind the machine under")

        result = Outputter()
        result.add(f"// ============================" + "=" * len(self.program_name))
        result.add(f"// source file for nfsm machine {self.program_name}")
        result.add(f"// ============================" + "=" * len(self.program_name))
        if ProgramData.do(ProgramFlag.USE_STRICT_DIRECTIVE):
            result.add('"use strict";')
        result.add()
        result.add(f"var {self.program_name} = {{")
        with result as body:
            body += self._generate_settings()
            body.add("transitions: {")
            with body as table:
                table += self._generate_table()
            body.add("},")
            body += JS_RUNTIME
        result.add("};")
        result.add(f"{self.program_name}.reset();")
        result.add()
        result += self._generate_export()
        return result.value()

    def _generate_settings(self):
        result = Outputter()
        result.add(f"initial: {json.dumps(self.compiled.initial)},")
        result.add(f"acceptStates: {json.dumps(sorted(self.compiled.accept_states))},")
        result.add(f"stackCount: {self.compiled.stack_count},")
        result.add(f"strict: {json.dumps(bool(ProgramData.do(ProgramFlag.STRICT_ACTIONS)))},")
        result.add(f"prune: {json.dumps(bool(ProgramData.do(ProgramFlag.PRUNE_REVISITED)))},")
        result.add(f"maxSteps: {int(ProgramData.option(ProgramOption.MAX_SEARCH_STEPS))},")
        result.add(f"state: {json.dumps(self.compiled.initial)},")
        result.add("stacks: [],")
        result.add("input: [],")
        result.add("halted: false,")
        return result.value()

    def _generate_table(self):
        result = Outputter()
        for state, entries in self.compiled.transitions.items():
            result.add(f"{json.dumps(state)}: [")
            with result as state_entries:
                for entry in entries:
                    state_entries.add("{")
                    with state_entries as fields:
                        fields.add(f"label: {json.dumps(entry.label)},")
                        fields.add(f"input: {json.dumps(entry.filter.input)},")
                        fields.add(f"reads: {json.dumps(list(entry.filter.reads))},")
                        fields.add("fn: function (consumeInput) {")
                        with fields as fn_body:
                            for line in self._generate_action(entry.action):
                                fn_body.add(line)
                        fields.add("}")
                    state_entries.add("},")
            result.add("],")
        return result.value()

    def _generate_action(self, action: TransitionAction):
        """
        Render the op IR of one action as javascript statements against `this`
        """

        for op in action.ops:
            if isinstance(op, ConsumeInput):
                yield "if (consumeInput) this.input.shift();"
            elif isinstance(op, PopStack):
                yield f"this.stacks[{op.channel}].pop();"
            elif isinstance(op, PushStack):
                yield f"this.stacks[{op.channel}].push({json.dumps(op.value)});"
            elif isinstance(op, SetState):
                yield f"this.state = {json.dumps(op.state)};"
            else: # pragma: no cover
                raise CodegenError(f"Unknown action op {op!r}")

    def _generate_export(self):
        result = Outputter()
        if self.target == "node":
            result.add(f"module.exports = {self.program_name};")
        elif self.target == "esm":
            result.add(f"export default {self.program_name};")
        else:
            result.add(f"window[{json.dumps(self.global_name)}] = {self.program_name};")
        return result.value()

# =========
# DEBUGGING
# =========

def debug_dump_table(compiled: CompiledMachine, out_name="table"): # pragma: no cover
    if not debug_enabled:
        raise RuntimeError("Debugging was disabled! You probably need to install graphviz")

    g = graphviz.Digraph(name='table', comment=f"nfsm table starting at {compiled.initial}")

    g.node("__start", shape="point")
    for state in compiled.states:
        shape = "doublecircle" if state in compiled.accept_states else "circle"
        g.node(state, label=graphviz.escape(state), shape=shape)
    g.edge("__start", compiled.initial)

    for state, entries in compiled.transitions.items():
        for entry in entries:
            label = entry.describe() if ProgramData.do(ProgramFlag.DEBUG_TABLE_SHOW_OPS) else str(entry.filter)
            g.edge(state, entry.action.target, label=graphviz.escape(label))

    g.render(out_name, format=ProgramData.option(ProgramOption.DEBUG_GRAPH_DUMP_FORMAT), cleanup=True)

def debug_dump_table_text(compiled: CompiledMachine, target=sys.stdout):
    def lprint(*args, **kwargs):
        if target is not None:
            print(*args, **kwargs, file=target)

    lprint(f"initial: {compiled.initial}")
    lprint(f"accept: {', '.join(sorted(compiled.accept_states)) or '(none)'}")
    lprint(f"stacks: {compiled.stack_count}")
    for state in compiled.states:
        entries = compiled.entries_for(state)
        if not entries:
            continue
        lprint(f"{state}:")
        for entry in entries:
            lprint(f"  {entry.describe()} -> {entry.action.target}")

def main(): # pragma: no cover
    try:
        input_file, program_name = ProgramData.load_commandline_flags(sys.argv[1:])
    except RuntimeError as e:
        print(str(e), file=sys.stderr)
        print("Try nfsm --help for more information", file=sys.stderr)
        exit(1)

    try:
        with open(input_file) as f:
            contents = f.read()
    except IOError as e:
        print("Unable to read input file:", str(e), file=sys.stderr)
        exit(2)

    try:
        parse_tree = parser.parse(contents)
    except lark.LarkError as e:
        print("Syntax error:", str(e), file=sys.stderr)
        exit(3)

    if ProgramData.dump(DebugDumpable.PARSE):
        if debug_enabled:
            lark.tree.pydot__tree_to_png(parse_tree, ProgramData.dump_prefix + ".parse.png")
        else:
            print(parse_tree.pretty())

    try:
        statements = ParseCtx(parse_tree).parse()
        compiled = RuleCompileCtx(statements).compile()
    except NFSMError as e:
        e.attach_source(contents)
        if ProgramData.dump(DebugDumpable.TRACEBACK):
            raise
        else:
            print("Compile error:", str(e), file=sys.stderr)
            exit(4)

    if ProgramData.dump(DebugDumpable.TABLE):
        debug_dump_table_text(compiled)
        if debug_enabled:
            debug_dump_table(compiled, ProgramData.dump_prefix + ".table")
    if ProgramData.dry_run:
        print("... dry run, skipping code generation")
        exit(0)

    cctx = CodegenCtx(compiled, program_name)
    try:
        source = cctx.generate_source()
    except NFSMError as e:
        if ProgramData.dump(DebugDumpable.TRACEBACK):
            raise
        else:
            print("Codegen error:", str(e), file=sys.stderr)
            exit(5)

    with open(program_name + ".js", "w") as f:
        f.write(source)

if __name__ == "__main__":
    main()
