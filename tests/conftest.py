from __future__ import annotations

import textwrap
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List

import pytest

from interpreter import Interpreter
from lexer import PseudocodeError


@dataclass
class Outcome:
    output: str
    lines: List[str]
    warnings: List[str]
    interpreter: Interpreter


def _build(source: str, inputs: Iterable[str], **options: Any) -> Outcome:
    feed = iter(inputs)
    lines: List[str] = []
    warnings: List[str] = []

    def provide() -> str:
        try:
            return next(feed)
        except StopIteration:
            raise EOFError

    interpreter = Interpreter(
        source=textwrap.dedent(source).strip("\n"),
        input_provider=provide,
        output_sink=lines.append,
        warning_sink=warnings.append,
        **options,
    )
    return Outcome(output="", lines=lines, warnings=warnings, interpreter=interpreter)


@pytest.fixture
def run() -> Callable[..., Outcome]:
    def _run(source: str, inputs: Iterable[str] = (), **options: Any) -> Outcome:
        outcome = _build(source, inputs, **options)
        outcome.output = outcome.interpreter.run()
        return outcome

    return _run


@pytest.fixture
def run_error() -> Callable[..., PseudocodeError]:
    """Run a program that must fail and return the raised error.

    Lines printed before the failure are attached as ``error.lines``.
    """

    def _run_error(source: str, inputs: Iterable[str] = (), **options: Any) -> PseudocodeError:
        outcome = _build(source, inputs, **options)
        with pytest.raises(PseudocodeError) as info:
            outcome.interpreter.run()
        error = info.value
        error.lines = outcome.lines
        error.warnings = outcome.warnings
        return error

    return _run_error
