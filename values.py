from __future__ import annotations
import math
import re
import numpy as np
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
from numpy.typing import NDArray

from lexer import PseudocodeError


TYPE_INTEGER = "INTEGER"
TYPE_REAL = "REAL"
TYPE_BOOLEAN = "BOOLEAN"
TYPE_CHAR = "CHAR"
TYPE_STRING = "STRING"
TYPE_ARRAY = "ARRAY"
# Result of a FUNCTION that finished without RETURN.
TYPE_NONE = "NONE"

SCALAR_TYPES = (TYPE_INTEGER, TYPE_REAL, TYPE_BOOLEAN, TYPE_CHAR, TYPE_STRING)
NUMERIC_TYPES = (TYPE_INTEGER, TYPE_REAL)
TEXT_TYPES = (TYPE_CHAR, TYPE_STRING)

ARRAY_SIZE_LIMIT = 1_000_000

NUMERIC_INPUT = re.compile(r"^[+-]?(?:\d+\.\d+|\d+)(?:[eE][+-]?\d+)?$")
ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")


class PseudocodeRuntimeError(PseudocodeError):
    """Raised for faults detected while a program runs."""

    def __init__(
        self,
        message: str,
        *,
        kind: str = "RuntimeError",
        line: Optional[int] = None,
        location: Optional[Any] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message, kind=kind, line=line, location=location)
        self.rule = rule
        self.step_index: Optional[int] = None


@dataclass
class Value:
    type: str
    value: Any


NONE_VALUE = Value(TYPE_NONE, None)


# ---- Types ----


@dataclass(frozen=True)
class TypeSpec:
    name: str
    default_value: Callable[[], Any]
    to_str: Callable[[Any], str]


@dataclass
class TypeRegistry:
    _types: Dict[str, TypeSpec] = field(default_factory=dict)

    def register(self, spec: TypeSpec) -> None:
        if spec.name in self._types:
            raise ValueError(f"Type '{spec.name}' is already defined")
        self._types[spec.name] = spec

    def has(self, name: str) -> bool:
        return name in self._types

    def get(self, name: str) -> TypeSpec:
        try:
            return self._types[name]
        except KeyError:
            raise PseudocodeRuntimeError(f"invalid type {name}", kind="TypeError")

    def names(self) -> set[str]:
        return set(self._types.keys())


def format_number(number: float) -> str:
    if isinstance(number, float):
        if math.isfinite(number) and number.is_integer() and abs(number) < 1e21:
            return str(int(number))
        return repr(number)
    return str(number)


def format_real(number: float) -> str:
    """Render an integral REAL with a trailing ``.0`` (``1`` -> ``1.0``)."""
    if math.isfinite(number) and float(number).is_integer() and abs(number) < 1e21:
        return f"{int(number)}.0"
    return format_number(float(number))


def build_type_registry() -> TypeRegistry:
    registry = TypeRegistry()
    registry.register(TypeSpec(TYPE_INTEGER, lambda: 0, lambda v: str(int(v))))
    registry.register(TypeSpec(TYPE_REAL, lambda: 0.0, lambda v: format_number(float(v))))
    registry.register(TypeSpec(TYPE_BOOLEAN, lambda: False, lambda v: "TRUE" if v else "FALSE"))
    registry.register(TypeSpec(TYPE_CHAR, lambda: " ", str))
    registry.register(TypeSpec(TYPE_STRING, lambda: "", str))
    return registry


SCALAR_REGISTRY = build_type_registry()


def default_value(type_name: str) -> Any:
    return SCALAR_REGISTRY.get(type_name).default_value()


def _scalar_str(type_name: str, raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bool):
        return "TRUE" if raw else "FALSE"
    if type_name in SCALAR_REGISTRY.names():
        return SCALAR_REGISTRY.get(type_name).to_str(raw)
    return format_number(raw) if isinstance(raw, float) else str(raw)


def to_string(value: Value) -> str:
    if value.type == TYPE_NONE:
        return ""
    if value.type == TYPE_ARRAY:
        array: PseudoArray = value.value
        return ",".join(_scalar_str(array.element_type, item) for item in array.data.flat)
    return _scalar_str(value.type, value.value)


# ---- Arrays ----


@dataclass
class PseudoArray:
    element_type: str
    bounds: List[Tuple[int, int]]
    data: NDArray[Any]

    @classmethod
    def create(
        cls,
        element_type: str,
        bounds: List[Tuple[int, int]],
        *,
        size_limit: int = ARRAY_SIZE_LIMIT,
    ) -> "PseudoArray":
        shape: List[int] = []
        for lower, upper in bounds:
            if upper < lower:
                raise PseudocodeRuntimeError(
                    f"ARRAY upper bound {upper} is less than lower bound {lower}", kind="ValueError", rule="DECLARE"
                )
            shape.append(upper - lower + 1)
        total = 1
        for size in shape:
            total *= size
        if total > size_limit:
            raise PseudocodeRuntimeError(
                f"ARRAY has {total} elements; the limit is {size_limit}", kind="ValueError", rule="DECLARE"
            )
        data = np.full(tuple(shape), default_value(element_type), dtype=object)
        return cls(element_type=element_type, bounds=list(bounds), data=data)

    @property
    def dimensions(self) -> int:
        return len(self.bounds)

    @property
    def declared_type(self) -> str:
        return f"{TYPE_ARRAY} OF {self.element_type}"

    def _position(self, indices: List[int]) -> Tuple[int, ...]:
        if len(indices) != len(self.bounds):
            raise PseudocodeRuntimeError(
                f"ARRAY has {len(self.bounds)} dimension(s) but {len(indices)} index(es) were given",
                kind="TypeError",
                rule="INDEX",
            )
        position: List[int] = []
        for index, (lower, upper) in zip(indices, self.bounds):
            if index < lower or index > upper:
                raise PseudocodeRuntimeError(
                    f"ARRAY index {index} out of bounds ({lower} to {upper})", kind="IndexError", rule="INDEX"
                )
            position.append(index - lower)
        return tuple(position)

    def get(self, indices: List[int]) -> Any:
        return self.data[self._position(indices)]

    def set(self, indices: List[int], raw: Any) -> None:
        self.data[self._position(indices)] = raw

    def copy(self) -> "PseudoArray":
        return PseudoArray(element_type=self.element_type, bounds=list(self.bounds), data=self.data.copy())


# ---- Assignment compatibility ----


def clean_input(text: str) -> str:
    return ANSI_ESCAPE.sub("", text).replace("\r", "").strip()


def coerce_input(dest_type: str, text: str) -> Value:
    """Best-effort conversion of one line of INPUT text toward ``dest_type``."""
    if dest_type in NUMERIC_TYPES and NUMERIC_INPUT.match(text):
        if re.search(r"[.eE]", text):
            return Value(TYPE_REAL, float(text))
        return Value(TYPE_INTEGER, int(text))
    if dest_type == TYPE_BOOLEAN and text.upper() in ("TRUE", "FALSE"):
        return Value(TYPE_BOOLEAN, text.upper() == "TRUE")
    if dest_type == TYPE_CHAR and len(text) == 1:
        return Value(TYPE_CHAR, text)
    return Value(TYPE_STRING, text)


def _mismatch(value: Value, dest_type: str) -> PseudocodeRuntimeError:
    return PseudocodeRuntimeError(f"Cannot assign {value.type} value to {dest_type}", kind="TypeError", rule="ASSIGN")


def check_assignable(
    dest_type: str,
    value: Value,
    *,
    literal_form: Optional[str] = None,
    from_input: bool = False,
) -> Value:
    """Validate ``value`` for a ``dest_type`` slot and return it normalized.

    ``literal_form`` is the literal type of the source expression when the
    source is written as a literal (``3.0`` is ``REAL``, ``'a'`` is ``CHAR``).
    """
    if from_input and value.type == TYPE_STRING:
        value = coerce_input(dest_type, value.value)

    if dest_type == TYPE_INTEGER:
        if literal_form == TYPE_REAL:
            raise PseudocodeRuntimeError("Cannot assign REAL value to INTEGER", kind="TypeError", rule="ASSIGN")
        if value.type == TYPE_INTEGER:
            return Value(TYPE_INTEGER, int(value.value))
        if value.type == TYPE_REAL and math.isfinite(value.value) and float(value.value).is_integer():
            return Value(TYPE_INTEGER, int(value.value))
        raise _mismatch(value, dest_type)

    if dest_type == TYPE_REAL:
        if value.type in NUMERIC_TYPES:
            number = float(value.value)
            if not math.isfinite(number):
                raise PseudocodeRuntimeError("REAL value must be finite", kind="ValueError", rule="ASSIGN")
            return Value(TYPE_REAL, number)
        raise _mismatch(value, dest_type)

    if dest_type == TYPE_BOOLEAN:
        if value.type == TYPE_BOOLEAN:
            return Value(TYPE_BOOLEAN, bool(value.value))
        raise _mismatch(value, dest_type)

    if dest_type == TYPE_CHAR:
        if not from_input and literal_form == TYPE_STRING:
            raise PseudocodeRuntimeError(
                "CHAR values must be written in single quotes", kind="TypeError", rule="ASSIGN"
            )
        if value.type not in TEXT_TYPES:
            raise _mismatch(value, dest_type)
        if len(value.value) != 1:
            raise PseudocodeRuntimeError("CHAR literal must be a single character", kind="ValueError", rule="ASSIGN")
        return Value(TYPE_CHAR, value.value)

    if dest_type == TYPE_STRING:
        if not from_input and literal_form == TYPE_CHAR:
            raise PseudocodeRuntimeError(
                "STRING values must be written in double quotes", kind="TypeError", rule="ASSIGN"
            )
        if value.type not in TEXT_TYPES:
            raise _mismatch(value, dest_type)
        return Value(TYPE_STRING, value.value)

    if dest_type.startswith(TYPE_ARRAY):
        if value.type != TYPE_ARRAY:
            raise _mismatch(value, dest_type)
        element_type = dest_type.partition(" OF ")[2]
        if element_type and value.value.element_type != element_type:
            raise _mismatch(Value(value.value.declared_type, None), dest_type)
        return value

    raise PseudocodeRuntimeError(f"invalid type {dest_type}", kind="TypeError", rule="ASSIGN")


def is_number(value: Value) -> bool:
    return value.type in NUMERIC_TYPES


def is_text(value: Value) -> bool:
    return value.type in TEXT_TYPES
