"""Pseudocode interpreter entry point."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from host import build_default_services
from interpreter import Interpreter, StopSignal, TracebackFormatter
from lexer import PseudocodeError, PseudocodeParseError

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_STOPPED = 130


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="IGCSE pseudocode interpreter")
    parser.add_argument("program", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit env snapshots in tracebacks")
    parser.add_argument("--traceback", action="store_true", help="Print a traceback before the error line")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--seed", type=int, default=None, help="Seed for RANDOM()")
    args = parser.parse_args(argv)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return EXIT_ERROR

    services = build_default_services()
    interpreter = Interpreter(
        source=source_text,
        filename=filename,
        verbose=args.verbose,
        services=services,
        input_provider=(lambda: input()),
        seed=args.seed,
    )
    try:
        interpreter.run()
    except (StopSignal, KeyboardInterrupt):
        services.cancel()
        print("stopped", file=sys.stderr)
        return EXIT_STOPPED
    except PseudocodeError as error:
        formatter = TracebackFormatter(interpreter)
        if args.traceback or (args.verbose and not isinstance(error, PseudocodeParseError)):
            print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        else:
            print(error.diagnostic(), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return EXIT_ERROR
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(run_cli())
