from __future__ import annotations
import json
import math
import os
import sys
import numpy as np
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Any, Callable, Dict, List, Optional, Tuple

from blocks import BlockMatcher, Definition, SourceLine, extract_definitions, split_source
from host import HookRegistry, RuntimeServices, build_default_services
from lexer import PseudocodeError
from parser import (
    Assignment,
    BinaryOp,
    CallExpression,
    CallStatement,
    CaseArm,
    CaseStatement,
    ConstantStatement,
    DeclareArrayStatement,
    DeclareStatement,
    Expression,
    ForStatement,
    Identifier,
    IfStatement,
    IndexExpression,
    InputStatement,
    Literal,
    OutputStatement,
    RepeatStatement,
    ReturnStatement,
    SourceLocation,
    Statement,
    UnaryOp,
    UntilClause,
    WhileStatement,
    literal_form,
    make_parser,
)
from values import (
    ARRAY_SIZE_LIMIT,
    NONE_VALUE,
    TYPE_ARRAY,
    TYPE_BOOLEAN,
    TYPE_CHAR,
    TYPE_INTEGER,
    TYPE_NONE,
    TYPE_REAL,
    TYPE_STRING,
    PseudoArray,
    PseudocodeRuntimeError,
    TypeRegistry,
    Value,
    check_assignable,
    clean_input,
    format_real,
    is_number,
    is_text,
    to_string,
)


LOOP_LIMIT = 1_000_000
CALL_DEPTH_LIMIT = 1000
# Python frames one pseudocode call may need, nested expressions included.
_FRAMES_PER_CALL = 40
_RANDOM_SCALE = 2**53 - 1

# Words the language reserves. Structural keywords never lex as identifiers,
# so in practice this warns about type and builtin names used as variables.
RESERVED_WORDS = frozenset(
    {
        "IF", "THEN", "ELSE", "ENDIF", "CASE", "OF", "OTHERWISE", "ENDCASE",
        "FOR", "TO", "STEP", "NEXT", "WHILE", "DO", "ENDWHILE", "REPEAT", "UNTIL",
        "PROCEDURE", "FUNCTION", "RETURNS", "RETURN", "CALL", "ENDPROCEDURE", "ENDFUNCTION",
        "INPUT", "OUTPUT", "DECLARE", "CONSTANT", "TRUE", "FALSE", "AND", "OR", "NOT",
        "INTEGER", "REAL", "BOOLEAN", "CHAR", "STRING", "ARRAY",
        "ROUND", "RANDOM", "LENGTH", "LCASE", "UCASE", "SUBSTRING", "DIV", "MOD",
    }
)


def _error(message: str, kind: str, location: Optional[SourceLocation] = None, rule: Optional[str] = None) -> PseudocodeRuntimeError:
    return PseudocodeRuntimeError(message, kind=kind, location=location, rule=rule)


class StopSignal(Exception):
    """Raised at a polling point once the host has cancelled the run."""


@dataclass
class ReturnSignal:
    value: Value
    location: SourceLocation
    literal_form: Optional[str] = None


@dataclass
class Declaration:
    name: str
    type: str
    initialized: bool = False


@dataclass
class Environment:
    parent: Optional["Environment"] = None
    # Keyed by lowercased name; Declaration.name keeps the canonical spelling.
    declarations: Dict[str, Declaration] = field(default_factory=dict)
    values: Dict[str, Value] = field(default_factory=dict)
    frozen: set = field(default_factory=set)

    def find_declaring_env(self, name: str) -> Optional["Environment"]:
        key = name.lower()
        env: Optional[Environment] = self
        while env is not None:
            if key in env.declarations:
                return env
            env = env.parent
        return None

    def declare(self, name: str, type_name: str, value: Value, *, initialized: bool = False) -> Declaration:
        key = name.lower()
        if key in self.frozen:
            raise _error(f"cannot assign to constant {self.declarations[key].name}", "TypeError", rule="DECLARE")
        existing = self.declarations.get(key)
        canonical = existing.name if existing is not None else name
        declaration = Declaration(name=canonical, type=type_name, initialized=initialized)
        self.declarations[key] = declaration
        self.values[key] = value
        return declaration

    def is_declared(self, name: str) -> bool:
        return self.find_declaring_env(name) is not None

    def lookup(self, name: str) -> Optional[Declaration]:
        env = self.find_declaring_env(name)
        if env is None:
            return None
        return env.declarations[name.lower()]

    def canonical_name(self, name: str) -> Optional[str]:
        declaration = self.lookup(name)
        return declaration.name if declaration is not None else None

    def get_type(self, name: str) -> Optional[str]:
        declaration = self.lookup(name)
        return declaration.type if declaration is not None else None

    def set_type(self, name: str, type_name: str) -> None:
        declaration = self.lookup(name)
        if declaration is None:
            raise _error(f"name {name} is not defined", "NameError")
        declaration.type = type_name

    def is_initialized(self, name: str) -> bool:
        declaration = self.lookup(name)
        return declaration is not None and declaration.initialized

    def mark_initialized(self, name: str) -> None:
        declaration = self.lookup(name)
        if declaration is not None:
            declaration.initialized = True

    def is_constant(self, name: str) -> bool:
        env = self.find_declaring_env(name)
        return env is not None and name.lower() in env.frozen

    def freeze(self, name: str) -> None:
        env = self.find_declaring_env(name)
        if env is None:
            raise _error(f"name {name} is not defined", "NameError")
        env.frozen.add(name.lower())

    def read(self, name: str) -> Value:
        env = self.find_declaring_env(name)
        if env is None:
            raise _error(f"name {name} is not defined", "NameError", rule="IDENT")
        key = name.lower()
        declaration = env.declarations[key]
        if not declaration.initialized:
            raise _error(f"name {declaration.name} is referenced before initialization", "NameError", rule="IDENT")
        return env.values[key]

    def assign(self, name: str, value: Value) -> None:
        """Write ``value`` into the environment that declared ``name``."""
        env = self.find_declaring_env(name)
        if env is None:
            raise _error(f"name {name} is not defined", "NameError", rule="ASSIGN")
        key = name.lower()
        if key in env.frozen:
            raise _error(f"cannot assign to constant {env.declarations[key].name}", "TypeError", rule="ASSIGN")
        env.values[key] = value
        env.declarations[key].initialized = True

    def snapshot(self) -> Dict[str, str]:
        def _render(declaration: Declaration, val: Value) -> str:
            if not declaration.initialized:
                return f"{declaration.type}:<unset>"
            rendered = to_string(val)
            if len(rendered) > 80:
                rendered = rendered[:77] + "..."
            return f"{declaration.type}:{rendered}"

        return {d.name: _render(d, self.values[k]) for k, d in self.declarations.items()}


@dataclass
class Frame:
    name: str
    env: Environment
    frame_id: str
    call_location: Optional[SourceLocation]


@dataclass
class StepEntry:
    step_index: int
    frame_id: Optional[str]
    rule: str
    location: Optional[SourceLocation]
    env_snapshot: Optional[Dict[str, str]]

    @property
    def line(self) -> Optional[int]:
        return self.location.line if self.location else None

    @property
    def statement(self) -> Optional[str]:
        return self.location.statement if self.location else None


class StepLog:
    """One entry per executed statement. The full history is kept only when
    verbose; the latest step of every frame is always kept for tracebacks."""

    def __init__(self, verbose: bool) -> None:
        self.verbose = verbose
        self.entries: List[StepEntry] = []
        self.step_count = 0
        self.last_entry: Optional[StepEntry] = None
        self.frame_last_entry: Dict[str, StepEntry] = {}

    def record(
        self,
        *,
        frame: Optional[Frame],
        rule: str,
        location: Optional[SourceLocation],
        env_snapshot: Optional[Dict[str, str]] = None,
    ) -> StepEntry:
        entry = StepEntry(
            step_index=self.step_count,
            frame_id=frame.frame_id if frame else None,
            rule=rule,
            location=location,
            env_snapshot=env_snapshot,
        )
        if self.verbose:
            self.entries.append(entry)
        if frame:
            self.frame_last_entry[frame.frame_id] = entry
        self.last_entry = entry
        self.step_count += 1
        return entry

    def last_entry_for_frame(self, frame_id: str) -> Optional[StepEntry]:
        return self.frame_last_entry.get(frame_id)


BuiltinImpl = Callable[["Interpreter", List[Value], SourceLocation], Value]


@dataclass
class BuiltinFunction:
    name: str
    min_args: int
    max_args: Optional[int]
    impl: BuiltinImpl

    def validate(self, supplied: int, location: SourceLocation) -> None:
        if self.min_args == self.max_args and supplied != self.min_args:
            raise _error(f"{self.name} expected {self.min_args} arguments, got {supplied}", "TypeError", location, self.name)
        if supplied < self.min_args:
            raise _error(f"{self.name} expects at least {self.min_args} arguments", "TypeError", location, self.name)
        if self.max_args is not None and supplied > self.max_args:
            raise _error(f"{self.name} expects at most {self.max_args} arguments", "TypeError", location, self.name)


class Builtins:
    def __init__(self, seed: Optional[int] = None) -> None:
        self.table: Dict[str, BuiltinFunction] = {}
        self.rng = np.random.default_rng(seed)
        self._register_custom("RANDOM", 0, 0, self._random)
        self._register_custom("ROUND", 2, 2, self._round)
        self._register_custom("LENGTH", 1, 1, self._length)
        self._register_custom("LCASE", 1, 1, self._lcase)
        self._register_custom("UCASE", 1, 1, self._ucase)
        self._register_custom("SUBSTRING", 3, 3, self._substring)
        self._register_custom("DIV", 2, 2, self._div)
        self._register_custom("MOD", 2, 2, self._mod)

    def _register_custom(self, name: str, min_args: int, max_args: Optional[int], impl: BuiltinImpl) -> None:
        self.table[name] = BuiltinFunction(name, min_args, max_args, impl)

    def has(self, name: str) -> bool:
        return name.upper() in self.table

    def invoke(self, interpreter: "Interpreter", name: str, args: List[Value], location: SourceLocation) -> Value:
        function = self.table.get(name.upper())
        if function is None:
            raise _error(f"name {name} is not defined", "NameError", location, name)
        function.validate(len(args), location)
        return function.impl(interpreter, args, location)

    def _expect_int(self, value: Value, rule: str, location: SourceLocation) -> int:
        if value.type == TYPE_INTEGER:
            return int(value.value)
        if value.type == TYPE_REAL and math.isfinite(value.value) and float(value.value).is_integer():
            return int(value.value)
        raise _error(f"{rule} expects INTEGER arguments, got {value.type}", "TypeError", location, rule)

    def _expect_number(self, value: Value, rule: str, location: SourceLocation) -> float:
        if not is_number(value):
            raise _error(f"{rule} expects a numeric argument, got {value.type}", "TypeError", location, rule)
        return value.value

    def _random(self, _: "Interpreter", __: List[Value], ___: SourceLocation) -> Value:
        # Both ends of [0, 1] are reachable.
        draw = int(self.rng.integers(0, _RANDOM_SCALE, endpoint=True))
        return Value(TYPE_REAL, draw / _RANDOM_SCALE)

    def _round(self, _: "Interpreter", args: List[Value], location: SourceLocation) -> Value:
        number = self._expect_number(args[0], "ROUND", location)
        places = self._expect_int(args[1], "ROUND", location)
        if places < 0:
            raise _error("ROUND places must not be negative", "ValueError", location, "ROUND")
        # Half-up on the exact binary value: floor(x * 10^p + 1/2) / 10^p.
        scale = 10 ** places
        rounded = Fraction(math.floor(Fraction(number) * scale + Fraction(1, 2)), scale)
        if places == 0:
            return Value(TYPE_INTEGER, int(rounded))
        return Value(TYPE_REAL, float(rounded))

    def _length(self, _: "Interpreter", args: List[Value], __: SourceLocation) -> Value:
        return Value(TYPE_INTEGER, len(to_string(args[0])))

    def _lcase(self, _: "Interpreter", args: List[Value], __: SourceLocation) -> Value:
        result_type = TYPE_CHAR if args[0].type == TYPE_CHAR else TYPE_STRING
        return Value(result_type, to_string(args[0]).lower())

    def _ucase(self, _: "Interpreter", args: List[Value], __: SourceLocation) -> Value:
        result_type = TYPE_CHAR if args[0].type == TYPE_CHAR else TYPE_STRING
        return Value(result_type, to_string(args[0]).upper())

    def _substring(self, _: "Interpreter", args: List[Value], location: SourceLocation) -> Value:
        text = to_string(args[0])
        start = self._expect_int(args[1], "SUBSTRING", location)
        length = self._expect_int(args[2], "SUBSTRING", location)
        if start < 1:
            raise _error("SUBSTRING start must be at least 1", "ValueError", location, "SUBSTRING")
        if length < 1:
            raise _error("SUBSTRING length must be at least 1", "ValueError", location, "SUBSTRING")
        return Value(TYPE_STRING, text[start - 1 : start - 1 + length])

    def _div(self, _: "Interpreter", args: List[Value], location: SourceLocation) -> Value:
        a = self._expect_int(args[0], "DIV", location)
        b = self._expect_int(args[1], "DIV", location)
        if b == 0:
            raise _error("integer division by zero", "ZeroDivisionError", location, "DIV")
        # Pairs with MOD so that b * DIV(a, b) + MOD(a, b) == a.
        return Value(TYPE_INTEGER, (a - self._safe_mod(a, b)) // b)

    def _mod(self, _: "Interpreter", args: List[Value], location: SourceLocation) -> Value:
        a = self._expect_int(args[0], "MOD", location)
        b = self._expect_int(args[1], "MOD", location)
        if b == 0:
            raise _error("integer modulo by zero", "ZeroDivisionError", location, "MOD")
        return Value(TYPE_INTEGER, self._safe_mod(a, b))

    def _safe_mod(self, a: int, b: int) -> int:
        return a % abs(b)


class Interpreter:
    def __init__(
        self,
        *,
        source: str,
        filename: str = "<string>",
        verbose: bool = False,
        services: Optional[RuntimeServices] = None,
        input_provider: Optional[Callable[[], str]] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        warning_sink: Optional[Callable[[str], None]] = None,
        loop_limit: int = LOOP_LIMIT,
        call_depth_limit: int = CALL_DEPTH_LIMIT,
        array_size_limit: int = ARRAY_SIZE_LIMIT,
        seed: Optional[int] = None,
    ) -> None:
        self.source = source
        self.filename = filename if filename == "<string>" else os.path.abspath(filename)
        self.verbose = verbose
        self.services = services or build_default_services()
        self.type_registry: TypeRegistry = self.services.type_registry
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.input_provider = input_provider or (lambda: input())
        self.output_sink = output_sink or (lambda text: print(text))
        self.warning_sink = warning_sink or (lambda text: print(text, file=sys.stderr))
        self.loop_limit = loop_limit
        self.call_depth_limit = call_depth_limit
        self.array_size_limit = array_size_limit
        self.builtins = Builtins(seed)
        self.matcher = BlockMatcher()

        self.functions: Dict[str, Definition] = {}
        self.global_env = Environment()
        self.step_log = StepLog(verbose=verbose)
        self.call_stack: List[Frame] = []
        self.frame_counter = 0
        self.current_line: Optional[int] = None

        self.output_lines: List[str] = []
        self.warnings: List[str] = []
        self._pending_warnings: List[str] = []
        self._seen_warnings: set = set()

        self._statement_cache: Dict[Tuple[int, str], Statement] = {}
        self._arm_cache: Dict[int, CaseArm] = {}
        self._until_cache: Dict[int, UntilClause] = {}

    # ---- run boundary ----

    def run(self) -> str:
        saved_limit = sys.getrecursionlimit()
        sys.setrecursionlimit(saved_limit + self.call_depth_limit * _FRAMES_PER_CALL)
        try:
            return self._run()
        finally:
            sys.setrecursionlimit(saved_limit)

    def _run(self) -> str:
        global_frame = self._new_frame("<main>", self.global_env, None)
        self.call_stack.append(global_frame)
        try:
            self._emit_event("program_start", self)
            lines = split_source(self.source)
            self.functions, main = extract_definitions(lines, self.filename)
            for definition in self.functions.values():
                self.current_line = definition.location.line
                self._check_reserved(definition.name)
                for param in definition.params:
                    self._check_reserved(param.name)
            self._execute_block(main, self.global_env, allow_return=False)
        except StopSignal:
            self._flush_warnings()
            self._emit_event("stopped", self)
            raise
        except PseudocodeError as error:
            if error.line is None:
                error.line = self.current_line
            self._fail(error)
            raise
        except RecursionError:
            wrapped = _error("maximum recursion depth exceeded", "RuntimeError", rule="CALL")
            wrapped.line = self.current_line
            self._fail(wrapped)
            raise wrapped from None
        except Exception as exc:
            # Convert unexpected Python-level exceptions so callers can format
            # them like any other pseudocode error.
            wrapped = _error(f"Internal interpreter error: {exc}", "RuntimeError", rule="internal")
            wrapped.line = self.current_line
            self._fail(wrapped)
            raise wrapped from exc
        self._flush_warnings()
        output = "\n".join(self.output_lines)
        self._emit_event("done", self, output)
        self.call_stack.pop()
        return output

    def stop(self) -> None:
        self.services.cancel()

    def _fail(self, error: PseudocodeError) -> None:
        if isinstance(error, PseudocodeRuntimeError) and self.step_log.last_entry is not None:
            error.step_index = self.step_log.last_entry.step_index
        self._flush_warnings()
        self._emit_event("error", self, error)

    def _check_cancel(self) -> None:
        if self.services.cancel_event.is_set():
            raise StopSignal()

    # ---- statements ----

    def _parse_line(self, line: SourceLine) -> Statement:
        key = (line.number, line.text)
        statement = self._statement_cache.get(key)
        if statement is None:
            statement = make_parser(line.text, self.filename, line.number).parse_statement()
            self._statement_cache[key] = statement
        return statement

    def _execute_block(self, lines: List[SourceLine], env: Environment, allow_return: bool) -> Optional[ReturnSignal]:
        i = 0
        while i < len(lines):
            line = lines[i]
            self._check_cancel()
            self.current_line = line.number
            try:
                statement = self._parse_line(line)
                self._log_step(rule=_rule_name(statement), location=statement.location)
                self._emit_event("before_statement", self, statement, env)
                signal, consumed = self._execute_statement(statement, lines, i, env, allow_return)
            except PseudocodeError as error:
                if error.line is None:
                    error.line = line.number
                raise
            if signal is not None:
                return signal
            i += consumed
        return None

    def _execute_statement(
        self,
        statement: Statement,
        lines: List[SourceLine],
        index: int,
        env: Environment,
        allow_return: bool,
    ) -> Tuple[Optional[ReturnSignal], int]:
        """Run one statement; returns a RETURN signal (if any) and the number of lines consumed."""
        if isinstance(statement, IfStatement):
            match = self.matcher.match_if(lines, index, statement.inline_then)
            branch = match.then_body if self._condition(statement.condition, env, "IF") else match.else_body
            return self._execute_block(branch, env, allow_return), match.length
        if isinstance(statement, ForStatement):
            match = self.matcher.match_for(lines, index, statement.counter)
            return self._execute_for(statement, match.body, env, allow_return), match.length
        if isinstance(statement, WhileStatement):
            match = self.matcher.match_block(lines, index, "WHILE")
            return self._execute_while(statement, match.body, env, allow_return), match.length
        if isinstance(statement, RepeatStatement):
            match = self.matcher.match_block(lines, index, "REPEAT")
            return self._execute_repeat(match.body, match.closer, env, allow_return), match.length
        if isinstance(statement, CaseStatement):
            match = self.matcher.match_block(lines, index, "CASE")
            return self._execute_case(statement, match.body, env, allow_return), match.length
        if isinstance(statement, ReturnStatement):
            if not allow_return:
                raise _error("'RETURN' outside function", "SyntaxError", statement.location, "RETURN")
            return self._execute_return(statement, env), 1
        if isinstance(statement, DeclareStatement):
            self._execute_declare(statement, env)
        elif isinstance(statement, DeclareArrayStatement):
            self._execute_declare_array(statement, env)
        elif isinstance(statement, ConstantStatement):
            self._execute_constant(statement, env)
        elif isinstance(statement, Assignment):
            self._execute_assignment(statement, env)
        elif isinstance(statement, OutputStatement):
            self._execute_output(statement, env)
        elif isinstance(statement, InputStatement):
            self._execute_input(statement, env)
        elif isinstance(statement, CallStatement):
            self._execute_call(statement, env)
        else:
            raise _error("invalid syntax", "SyntaxError", statement.location)
        return None, 1

    def _execute_declare(self, statement: DeclareStatement, env: Environment) -> None:
        spec = self.type_registry.get(statement.type_name)
        for name in statement.names:
            self._check_reserved(name)
            self._warn_redeclared_case(env, name)
            env.declare(name, statement.type_name, Value(statement.type_name, spec.default_value()))

    def _execute_declare_array(self, statement: DeclareArrayStatement, env: Environment) -> None:
        self._check_reserved(statement.name)
        self._warn_redeclared_case(env, statement.name)
        bounds: List[Tuple[int, int]] = []
        for bound in statement.bounds:
            lower = self._expect_bound(self._evaluate(bound.lower, env), bound.lower.location)
            upper = self._expect_bound(self._evaluate(bound.upper, env), bound.upper.location)
            bounds.append((lower, upper))
        array = PseudoArray.create(statement.element_type, bounds, size_limit=self.array_size_limit)
        env.declare(statement.name, array.declared_type, Value(TYPE_ARRAY, array), initialized=True)

    def _expect_bound(self, value: Value, location: SourceLocation) -> int:
        if value.type == TYPE_INTEGER or (value.type == TYPE_REAL and float(value.value).is_integer()):
            return int(value.value)
        raise _error("ARRAY bounds must be INTEGERs", "TypeError", location, "DECLARE")

    def _execute_constant(self, statement: ConstantStatement, env: Environment) -> None:
        form = literal_form(statement.expression)
        if form is None:
            raise _error("CONSTANT value must be a literal", "TypeError", statement.location, "CONSTANT")
        self._check_reserved(statement.name)
        value = self._evaluate(statement.expression, env)
        checked = self._checked(form, value, statement.expression, statement.location)
        self._warn_redeclared_case(env, statement.name)
        env.declare(statement.name, form, checked, initialized=True)
        env.freeze(statement.name)

    def _execute_assignment(self, statement: Assignment, env: Environment) -> None:
        target = statement.target
        if isinstance(target, IndexExpression):
            array, indices = self._resolve_element(target, env)
            value = self._evaluate(statement.expression, env)
            checked = self._checked(array.element_type, value, statement.expression, statement.location)
            array.set(indices, checked.value)
            return
        decl_env, declaration = self._lookup(env, target.name, target.location)
        if env.is_constant(target.name):
            raise _error(f"cannot assign to constant {declaration.name}", "TypeError", target.location, "ASSIGN")
        value = self._evaluate(statement.expression, env)
        checked = self._checked(declaration.type, value, statement.expression, statement.location)
        decl_env.assign(declaration.name, self._detach(checked))

    def _execute_output(self, statement: OutputStatement, env: Environment) -> None:
        parts = [self._render_output(expression, env) for expression in statement.values]
        self._emit_output("".join(parts))

    def _render_output(self, expression: Expression, env: Environment) -> str:
        value = self._evaluate(expression, env)
        if value.type == TYPE_REAL and isinstance(expression, (Identifier, IndexExpression)):
            return format_real(value.value)
        return to_string(value)

    def _execute_input(self, statement: InputStatement, env: Environment) -> None:
        target = statement.target
        if isinstance(target, IndexExpression):
            array, indices = self._resolve_element(target, env)
            dest_type = array.element_type
        else:
            decl_env, declaration = self._lookup(env, target.name, target.location)
            if env.is_constant(target.name):
                raise _error(f"cannot assign to constant {declaration.name}", "TypeError", target.location, "INPUT")
            dest_type = declaration.type
        self._flush_warnings()
        self._emit_event("input_request", self, target.name)
        try:
            raw = self.input_provider()
        except EOFError:
            raise _error("INPUT reached the end of the input stream", "RuntimeError", statement.location, "INPUT")
        self._check_cancel()
        text = clean_input(raw if raw is not None else "")
        checked = self._checked(dest_type, Value(TYPE_STRING, text), None, statement.location, from_input=True)
        if isinstance(target, IndexExpression):
            array.set(indices, checked.value)
        else:
            decl_env.assign(declaration.name, checked)

    def _execute_call(self, statement: CallStatement, env: Environment) -> None:
        definition = self.functions.get(statement.name.lower())
        if definition is None:
            raise _error(f"procedure {statement.name} is not defined", "NameError", statement.location, "CALL")
        self._invoke(definition, statement.args, env, statement.location)

    def _execute_return(self, statement: ReturnStatement, env: Environment) -> ReturnSignal:
        values = [self._evaluate(expression, env) for expression in statement.values]
        if len(values) == 1:
            return ReturnSignal(values[0], statement.location, literal_form(statement.values[0]))
        # Several values come back joined into one STRING.
        return ReturnSignal(Value(TYPE_STRING, "".join(to_string(v) for v in values)), statement.location)

    def _execute_for(
        self, statement: ForStatement, body: List[SourceLine], env: Environment, allow_return: bool
    ) -> Optional[ReturnSignal]:
        start = self._expect_loop_int(self._evaluate(statement.start, env), "FOR start", statement.start.location)
        end = self._expect_loop_int(self._evaluate(statement.end, env), "FOR end", statement.end.location)
        step = 1
        if statement.step is not None:
            step_value = self._evaluate(statement.step, env)
            step = self._expect_loop_int(step_value, "STEP", statement.step.location)
            if step == 0:
                raise _error("step argument must not be zero", "ValueError", statement.step.location, "FOR")

        counter = statement.counter
        if env.find_declaring_env(counter) is None:
            self._check_reserved(counter)
            env.declare(counter, TYPE_INTEGER, Value(TYPE_INTEGER, 0))
        decl_env, declaration = self._lookup(env, counter, statement.location)
        if declaration.type != TYPE_INTEGER:
            raise _error(f"FOR loop variable {declaration.name} must be an INTEGER", "TypeError", statement.location, "FOR")
        if env.is_constant(counter):
            raise _error(f"cannot assign to constant {declaration.name}", "TypeError", statement.location, "FOR")

        decl_env.assign(declaration.name, Value(TYPE_INTEGER, start))
        iterations = 0
        while True:
            self._check_cancel()
            current = int(decl_env.values[counter.lower()].value)
            if (step > 0 and current > end) or (step < 0 and current < end):
                return None
            iterations += 1
            self._check_loop_limit(iterations, statement.location)
            signal = self._execute_block(body, env, allow_return)
            if signal is not None:
                return signal
            self.current_line = statement.location.line
            current = int(decl_env.values[counter.lower()].value)
            decl_env.assign(declaration.name, Value(TYPE_INTEGER, current + step))

    def _execute_while(
        self, statement: WhileStatement, body: List[SourceLine], env: Environment, allow_return: bool
    ) -> Optional[ReturnSignal]:
        iterations = 0
        while True:
            self._check_cancel()
            self.current_line = statement.location.line
            if not self._condition(statement.condition, env, "WHILE"):
                return None
            iterations += 1
            self._check_loop_limit(iterations, statement.location)
            signal = self._execute_block(body, env, allow_return)
            if signal is not None:
                return signal

    def _execute_repeat(
        self, body: List[SourceLine], closer: SourceLine, env: Environment, allow_return: bool
    ) -> Optional[ReturnSignal]:
        until = self._until_cache.get(closer.number)
        if until is None:
            until = make_parser(closer.text, self.filename, closer.number).parse_until()
            self._until_cache[closer.number] = until
        iterations = 0
        while True:
            self._check_cancel()
            iterations += 1
            self._check_loop_limit(iterations, until.location)
            signal = self._execute_block(body, env, allow_return)
            if signal is not None:
                return signal
            self.current_line = closer.number
            if self._condition(until.condition, env, "UNTIL"):
                return None

    def _execute_case(
        self, statement: CaseStatement, body: List[SourceLine], env: Environment, allow_return: bool
    ) -> Optional[ReturnSignal]:
        subject = self._evaluate(statement.subject, env)
        fallback: Optional[Tuple[SourceLine, CaseArm]] = None
        for line in body:
            self._check_cancel()
            self.current_line = line.number
            arm = self._arm_cache.get(line.number)
            if arm is None:
                arm = make_parser(line.text, self.filename, line.number).parse_case_arm()
                self._arm_cache[line.number] = arm
            if arm.otherwise:
                fallback = (line, arm)
                continue
            if self._case_matches(subject, arm, env):
                return self._execute_block([SourceLine(line.number, arm.body)], env, allow_return)
        if fallback is not None:
            line, arm = fallback
            return self._execute_block([SourceLine(line.number, arm.body)], env, allow_return)
        return None

    def _case_matches(self, subject: Value, arm: CaseArm, env: Environment) -> bool:
        label = self._evaluate(arm.label, env)
        if arm.label_upper is None:
            return self._loosely_equal(subject, label)
        upper = self._evaluate(arm.label_upper, env)
        for kind in (is_number, is_text):
            if kind(subject) and kind(label) and kind(upper):
                return label.value <= subject.value <= upper.value
        return False

    def _loosely_equal(self, left: Value, right: Value) -> bool:
        if is_number(left) and is_number(right):
            return left.value == right.value
        if is_text(left) and is_text(right):
            return left.value == right.value
        if left.type == TYPE_BOOLEAN and right.type == TYPE_BOOLEAN:
            return bool(left.value) == bool(right.value)
        return False

    def _check_loop_limit(self, iterations: int, location: SourceLocation) -> None:
        if iterations > self.loop_limit:
            raise _error("maximum iteration limit exceeded", "RuntimeError", location, "LOOP")

    def _expect_loop_int(self, value: Value, rule: str, location: SourceLocation) -> int:
        if value.type == TYPE_INTEGER:
            return int(value.value)
        if value.type == TYPE_REAL and math.isfinite(value.value) and float(value.value).is_integer():
            return int(value.value)
        raise _error(f"{rule} must be an INTEGER, got {value.type}", "TypeError", location, "FOR")

    def _condition(self, expression: Expression, env: Environment, keyword: str) -> bool:
        value = self._evaluate(expression, env)
        if value.type != TYPE_BOOLEAN:
            raise _error(f"{keyword} condition must be a BOOLEAN, got {value.type}", "TypeError", expression.location, keyword)
        return bool(value.value)

    # ---- calls ----

    def _invoke(
        self,
        definition: Definition,
        arg_nodes: List[Expression],
        env: Environment,
        call_location: SourceLocation,
    ) -> Value:
        if len(arg_nodes) != len(definition.params):
            raise _error(
                f"{definition.name} expected {len(definition.params)} arguments, got {len(arg_nodes)}",
                "TypeError",
                call_location,
                definition.name,
            )
        # call_stack[0] is the main program.
        if len(self.call_stack) > self.call_depth_limit:
            raise _error(
                f"maximum recursion depth of {self.call_depth_limit} calls exceeded",
                "RuntimeError",
                call_location,
                definition.name,
            )
        args = [self._evaluate(node, env) for node in arg_nodes]
        call_env = Environment(parent=self.global_env)
        for param, node, value in zip(definition.params, arg_nodes, args):
            if param.type_name is not None:
                value = self._checked(param.type_name, value, node, call_location)
            if value.type == TYPE_NONE:
                raise _error(f"argument for {param.name} has no value", "TypeError", call_location, definition.name)
            declared = param.type_name or (value.value.declared_type if value.type == TYPE_ARRAY else value.type)
            call_env.declare(param.name, declared, self._detach(value), initialized=True)

        frame = self._new_frame(definition.name, call_env, call_location)
        self.call_stack.append(frame)
        saved_line = self.current_line
        signal = self._execute_block(definition.body, call_env, allow_return=definition.kind == "FUNCTION")
        # Frames are only popped on success so tracebacks can show the failing call chain.
        self.call_stack.pop()
        self.current_line = saved_line

        if definition.kind == "PROCEDURE" or signal is None:
            if definition.return_type is not None:
                raise _error(
                    f"FUNCTION {definition.name} ended without RETURN", "TypeError", call_location, definition.name
                )
            return NONE_VALUE
        if definition.return_type is None:
            return signal.value
        return self._checked(definition.return_type, signal.value, None, signal.location, literal=signal.literal_form)

    def _detach(self, value: Value) -> Value:
        # Arrays are bound by value.
        if value.type == TYPE_ARRAY:
            return Value(TYPE_ARRAY, value.value.copy())
        return value

    # ---- expressions ----

    def _evaluate(self, expression: Expression, env: Environment) -> Value:
        self._check_cancel()
        if isinstance(expression, Literal):
            return Value(expression.literal_type, expression.value)
        if isinstance(expression, Identifier):
            self._check_reserved(expression.name)
            decl_env, declaration = self._lookup(env, expression.name, expression.location)
            if not declaration.initialized:
                raise _error(
                    f"name {declaration.name} is referenced before initialization", "NameError", expression.location, "IDENT"
                )
            return decl_env.values[expression.name.lower()]
        if isinstance(expression, BinaryOp):
            return self._evaluate_binary(expression, env)
        if isinstance(expression, UnaryOp):
            return self._evaluate_unary(expression, env)
        if isinstance(expression, IndexExpression):
            array, indices = self._resolve_element(expression, env)
            return Value(array.element_type, array.get(indices))
        if isinstance(expression, CallExpression):
            return self._evaluate_call(expression, env)
        raise _error(f"cannot evaluate {type(expression).__name__}", "SyntaxError", expression.location)

    def _evaluate_call(self, expression: CallExpression, env: Environment) -> Value:
        if self.builtins.has(expression.name):
            args = [self._evaluate(arg, env) for arg in expression.args]
            return self.builtins.invoke(self, expression.name, args, expression.location)
        definition = self.functions.get(expression.name.lower())
        if definition is None:
            raise _error(f"name {expression.name} is not defined", "NameError", expression.location, "CALL")
        if definition.kind == "PROCEDURE":
            raise _error(
                f"PROCEDURE {definition.name} does not return a value; use CALL", "TypeError", expression.location, "CALL"
            )
        return self._invoke(definition, expression.args, env, expression.location)

    def _evaluate_unary(self, expression: UnaryOp, env: Environment) -> Value:
        operand = self._evaluate(expression.operand, env)
        if expression.op == "NOT":
            if operand.type != TYPE_BOOLEAN:
                raise _error(f"NOT requires a BOOLEAN operand, got {operand.type}", "TypeError", expression.location, "NOT")
            return Value(TYPE_BOOLEAN, not operand.value)
        if not is_number(operand):
            raise _error(
                f"bad operand type for unary {expression.op}: {operand.type}", "TypeError", expression.location, expression.op
            )
        if expression.op == "-":
            return Value(operand.type, -operand.value)
        return operand

    def _evaluate_binary(self, expression: BinaryOp, env: Environment) -> Value:
        op = expression.op
        location = expression.location
        if op in ("AND", "OR"):
            left = self._evaluate(expression.left, env)
            self._expect_boolean(left, op, location)
            if op == "AND" and not left.value:
                return Value(TYPE_BOOLEAN, False)
            if op == "OR" and left.value:
                return Value(TYPE_BOOLEAN, True)
            right = self._evaluate(expression.right, env)
            self._expect_boolean(right, op, location)
            return Value(TYPE_BOOLEAN, bool(right.value))

        left = self._evaluate(expression.left, env)
        right = self._evaluate(expression.right, env)
        if op in ("=", "<>", "<", ">", "<=", ">="):
            return Value(TYPE_BOOLEAN, self._compare(op, left, right, location))
        if op in ("DIV", "MOD"):
            return self.builtins.invoke(self, op, [left, right], location)
        if op in (",", "+") and (is_text(left) or is_text(right)):
            return Value(TYPE_STRING, to_string(left) + to_string(right))

        symbol = "+" if op == "," else op
        if not (is_number(left) and is_number(right)):
            raise _error(
                f"unsupported operand types for {symbol}: {left.type} and {right.type}", "TypeError", location, symbol
            )
        a = left.value
        b = right.value
        both_int = left.type == TYPE_INTEGER and right.type == TYPE_INTEGER
        try:
            if symbol == "+":
                return self._number(a + b, both_int, location)
            if symbol == "-":
                return self._number(a - b, both_int, location)
            if symbol == "*":
                return self._number(a * b, both_int, location)
            if symbol == "/":
                if b == 0:
                    raise _error("division by zero", "ZeroDivisionError", location, "/")
                return self._number(a / b, False, location)
            if symbol == "^":
                return self._power(a, b, both_int, location)
        except OverflowError:
            raise _error("numeric overflow", "RuntimeError", location, symbol)
        raise _error(f"unknown operator {op}", "SyntaxError", location)

    def _number(self, result: Any, as_int: bool, location: SourceLocation) -> Value:
        if as_int:
            return Value(TYPE_INTEGER, int(result))
        result = float(result)
        if not math.isfinite(result):
            raise _error("numeric overflow", "RuntimeError", location)
        return Value(TYPE_REAL, result)

    def _power(self, base: Any, exponent: Any, both_int: bool, location: SourceLocation) -> Value:
        if base == 0 and exponent < 0:
            raise _error("0 cannot be raised to a negative power", "ZeroDivisionError", location, "^")
        if both_int and exponent >= 0:
            # Keep exact integers while the result stays within REAL range.
            if abs(base) <= 1 or exponent * math.log2(abs(base)) <= 1024:
                return Value(TYPE_INTEGER, int(base) ** int(exponent))
            raise _error("numeric overflow", "RuntimeError", location, "^")
        if base < 0 and not float(exponent).is_integer():
            raise _error("cannot raise a negative number to a fractional power", "ValueError", location, "^")
        return self._number(math.pow(base, exponent), False, location)

    def _compare(self, op: str, left: Value, right: Value, location: SourceLocation) -> bool:
        if left.type == TYPE_BOOLEAN and right.type == TYPE_BOOLEAN:
            if op == "=":
                return bool(left.value) == bool(right.value)
            if op == "<>":
                return bool(left.value) != bool(right.value)
            raise _error(f"'{op}' is not supported between BOOLEAN values", "TypeError", location, op)
        comparable = (is_number(left) and is_number(right)) or (is_text(left) and is_text(right))
        if not comparable:
            raise _error(f"cannot compare {left.type} with {right.type}", "TypeError", location, op)
        a = left.value
        b = right.value
        if op == "=":
            return a == b
        if op == "<>":
            return a != b
        if op == "<":
            return a < b
        if op == ">":
            return a > b
        if op == "<=":
            return a <= b
        return a >= b

    def _expect_boolean(self, value: Value, op: str, location: SourceLocation) -> None:
        if value.type != TYPE_BOOLEAN:
            raise _error(f"{op} requires BOOLEAN operands, got {value.type}", "TypeError", location, op)

    # ---- names ----

    def _lookup(self, env: Environment, name: str, location: SourceLocation) -> Tuple[Environment, Declaration]:
        decl_env = env.find_declaring_env(name)
        if decl_env is None:
            raise _error(f"name {name} is not defined", "NameError", location, "IDENT")
        declaration = decl_env.declarations[name.lower()]
        if declaration.name != name:
            self._warn_case(declaration.name, name, location.line)
        return decl_env, declaration

    def _resolve_element(self, expression: IndexExpression, env: Environment) -> Tuple[PseudoArray, List[int]]:
        decl_env, declaration = self._lookup(env, expression.name, expression.location)
        value = decl_env.values[expression.name.lower()]
        if value.type != TYPE_ARRAY:
            raise _error(f"{declaration.name} is not an ARRAY", "TypeError", expression.location, "INDEX")
        indices: List[int] = []
        for node in expression.indices:
            index = self._evaluate(node, env)
            if index.type == TYPE_INTEGER:
                indices.append(int(index.value))
            elif index.type == TYPE_REAL and math.isfinite(index.value) and float(index.value).is_integer():
                indices.append(int(index.value))
            else:
                raise _error(f"ARRAY index must be an INTEGER, got {index.type}", "TypeError", node.location, "INDEX")
        array: PseudoArray = value.value
        if len(indices) != array.dimensions:
            raise _error(
                f"{declaration.name} has {array.dimensions} dimension(s) but {len(indices)} index(es) were given",
                "TypeError",
                expression.location,
                "INDEX",
            )
        return array, indices

    def _checked(
        self,
        dest_type: str,
        value: Value,
        source: Optional[Expression],
        location: SourceLocation,
        *,
        from_input: bool = False,
        literal: Optional[str] = None,
    ) -> Value:
        form = literal if literal is not None else literal_form(source)
        try:
            return check_assignable(dest_type, value, literal_form=form, from_input=from_input)
        except PseudocodeError as error:
            if error.line is None:
                error.line = location.line
                error.location = location
            raise

    # ---- diagnostics ----

    def _warn_case(self, canonical: str, used: str, line: Optional[int]) -> None:
        key = ("case", canonical, used, line)
        if key in self._seen_warnings:
            return
        self._seen_warnings.add(key)
        self._queue_warning(
            f'Warning: Line {line}: Identifier "{used}" is different in case from declared variable "{canonical}".'
        )

    def _warn_redeclared_case(self, env: Environment, name: str) -> None:
        existing = env.declarations.get(name.lower())
        if existing is not None and existing.name != name:
            self._warn_case(existing.name, name, self.current_line)

    def _check_reserved(self, name: str) -> None:
        word = name.upper()
        if word not in RESERVED_WORDS:
            return
        key = ("keyword", word)
        if key in self._seen_warnings:
            return
        self._seen_warnings.add(key)
        self._queue_warning(f'Warning: "{name}" is a keyword. Do not use keywords as identifiers.')

    def _queue_warning(self, message: str) -> None:
        self._pending_warnings.append(message)

    def _flush_warnings(self) -> None:
        pending = self._pending_warnings
        self._pending_warnings = []
        for message in pending:
            self.warnings.append(message)
            self.warning_sink(message)
            self._emit_event("warning", self, message)

    def _emit_output(self, text: str) -> None:
        self._flush_warnings()
        self.output_lines.append(text)
        self.output_sink(text)
        self._emit_event("output_line", self, text)

    # ---- frames & step log ----

    def _new_frame(self, name: str, env: Environment, call_location: Optional[SourceLocation]) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(name=name, env=env, frame_id=frame_id, call_location=call_location)

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hook_registry.emit(event, *args, **kwargs)
        except (PseudocodeError, StopSignal):
            raise
        except Exception as exc:
            raise _error(f"Host hook '{event}' failed: {exc}", "RuntimeError", rule="HOST")

    def _log_step(self, *, rule: str, location: Optional[SourceLocation]) -> None:
        frame = self.call_stack[-1] if self.call_stack else None
        env_snapshot = frame.env.snapshot() if (self.verbose and frame) else None
        self.step_log.record(frame=frame, rule=rule, location=location, env_snapshot=env_snapshot)


def _rule_name(statement: Statement) -> str:
    name = type(statement).__name__
    if name.endswith("Statement"):
        name = name[: -len("Statement")]
    return name.upper()


@dataclass
class TracebackFrame:
    name: str
    file: str
    # Where the frame was when the error surfaced; None if it never ran a statement.
    step: Optional[StepEntry]
    called_from: Optional[int]

    @property
    def line(self) -> Optional[int]:
        if self.step is not None:
            return self.step.line
        return self.called_from


class TracebackFormatter:
    """Renders the pseudocode call chain of a failed run, outermost call first."""

    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self) -> List[TracebackFrame]:
        return [
            TracebackFrame(
                name=frame.name,
                file=self.interpreter.filename,
                step=self.interpreter.step_log.last_entry_for_frame(frame.frame_id),
                called_from=frame.call_location.line if frame.call_location else None,
            )
            for frame in self.interpreter.call_stack
        ]

    def format_text(self, error: PseudocodeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames():
            lines.append(f"  File \"{frame.file}\", line {frame.line}, in {frame.name}")
            if frame.step is None:
                continue
            if frame.step.statement:
                lines.append(f"    {frame.step.statement}")
            lines.append(f"    step {frame.step.step_index}: {frame.step.rule}")
            if verbose and frame.step.env_snapshot:
                variables = ", ".join(f"{k}={v}" for k, v in frame.step.env_snapshot.items())
                lines.append(f"    variables: {variables}")
        lines.append(error.diagnostic())
        return "\n".join(lines)

    def to_json(self, error: PseudocodeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for frame in self.build_frames():
            entry: Dict[str, Any] = {
                "name": frame.name,
                "file": frame.file,
                "line": frame.line,
                "called_from": frame.called_from,
            }
            if frame.step is not None:
                entry["rule"] = frame.step.rule
                entry["statement"] = frame.step.statement
                entry["step_index"] = frame.step.step_index
                if frame.step.env_snapshot is not None:
                    entry["variables"] = frame.step.env_snapshot
            frames_json.append(entry)
        data = {
            "error": {
                "kind": error.kind,
                "message": error.message,
                "line": error.line,
                "failing_step_index": getattr(error, "step_index", None),
            },
            "diagnostic": error.diagnostic(),
            "traceback": frames_json,
        }
        return json.dumps(data, indent=2)


def interpret(source: str, **options: Any) -> str:
    """Run ``source`` and return the newline-joined output log."""
    return Interpreter(source=source, **options).run()
