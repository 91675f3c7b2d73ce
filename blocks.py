from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from lexer import PseudocodeParseError, strip_comment
from parser import Param, SourceLocation, make_parser


CLOSERS = {
    "IF": "ENDIF",
    "FOR": "NEXT",
    "WHILE": "ENDWHILE",
    "REPEAT": "UNTIL",
    "CASE": "ENDCASE",
    "PROCEDURE": "ENDPROCEDURE",
    "FUNCTION": "ENDFUNCTION",
}

_HEAD = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


@dataclass(frozen=True)
class SourceLine:
    number: int
    text: str

    @property
    def code(self) -> str:
        return strip_comment(self.text).strip()

    @property
    def head(self) -> str:
        match = _HEAD.match(self.code)
        return match.group(0).upper() if match else ""


def split_source(source: str) -> List[SourceLine]:
    """Number the source lines, dropping blank and comment-only ones."""
    lines: List[SourceLine] = []
    for index, text in enumerate(source.splitlines()):
        line = SourceLine(number=index + 1, text=text)
        if line.code:
            lines.append(line)
    return lines


@dataclass
class Definition:
    kind: str
    name: str
    params: List[Param]
    return_type: Optional[str]
    body: List[SourceLine]
    location: SourceLocation


def _missing(closer: str, opener: str, line: int) -> PseudocodeParseError:
    return PseudocodeParseError(f"Missing {closer} for {opener} starting at line {line}", line=line)


def extract_definitions(lines: List[SourceLine], filename: str) -> Tuple[Dict[str, Definition], List[SourceLine]]:
    """Split ``lines`` into the PROCEDURE/FUNCTION table and the main body."""
    definitions: Dict[str, Definition] = {}
    main: List[SourceLine] = []
    i = 0
    while i < len(lines):
        line = lines[i]
        kind = line.head
        if kind not in ("PROCEDURE", "FUNCTION"):
            main.append(line)
            i += 1
            continue
        parser = make_parser(line.text, filename, line.number)
        if kind == "PROCEDURE":
            header = parser.parse_procedure_header()
            return_type = None
        else:
            header = parser.parse_function_header()
            return_type = header.return_type
        closer = CLOSERS[kind]
        end = i + 1
        while end < len(lines) and lines[end].head != closer:
            if lines[end].head in ("PROCEDURE", "FUNCTION"):
                raise PseudocodeParseError(
                    f"{lines[end].head} cannot be defined inside {kind} {header.name}", line=lines[end].number
                )
            end += 1
        if end >= len(lines):
            raise _missing(closer, kind, line.number)
        key = header.name.lower()
        if key in definitions:
            raise PseudocodeParseError(f"{kind} {header.name} is already defined", line=line.number)
        definitions[key] = Definition(
            kind=kind,
            name=header.name,
            params=header.params,
            return_type=return_type,
            body=lines[i + 1 : end],
            location=header.location,
        )
        i = end + 1
    return definitions, main


@dataclass
class IfMatch:
    then_body: List[SourceLine]
    else_body: List[SourceLine]
    length: int


@dataclass
class BlockMatch:
    body: List[SourceLine]
    closer: SourceLine
    length: int


class BlockMatcher:
    """Carves construct bodies out of a line list by nesting depth.

    Results are memoised per opener line; a construct occupies the same
    contiguous run of lines in every list that contains it.
    """

    def __init__(self) -> None:
        self._if_cache: Dict[int, IfMatch] = {}
        self._block_cache: Dict[int, BlockMatch] = {}

    def match_if(self, lines: List[SourceLine], start: int, inline_then: bool) -> IfMatch:
        opener = lines[start]
        cached = self._if_cache.get(opener.number)
        if cached is not None:
            return cached
        body_start = start + 1
        if not inline_then:
            if body_start >= len(lines) or lines[body_start].code.upper() != "THEN":
                raise PseudocodeParseError("expected THEN after IF", line=opener.number)
            body_start += 1
        then_body: List[SourceLine] = []
        else_body: List[SourceLine] = []
        current = then_body
        depth = 0
        i = body_start
        while i < len(lines):
            line = lines[i]
            head = line.head
            if head == "IF":
                depth += 1
            elif head == "ENDIF":
                if depth == 0:
                    match = IfMatch(then_body=then_body, else_body=else_body, length=i - start + 1)
                    self._if_cache[opener.number] = match
                    return match
                depth -= 1
            elif head == "ELSE" and depth == 0:
                if current is else_body:
                    raise PseudocodeParseError("IF has more than one ELSE", line=line.number)
                if line.code.upper() != "ELSE":
                    raise PseudocodeParseError("invalid syntax near ELSE", line=line.number)
                current = else_body
                i += 1
                continue
            current.append(line)
            i += 1
        raise _missing("ENDIF", "IF", opener.number)

    def match_for(self, lines: List[SourceLine], start: int, counter: str) -> BlockMatch:
        opener = lines[start]
        cached = self._block_cache.get(opener.number)
        if cached is not None:
            return cached
        depth = 0
        for i in range(start + 1, len(lines)):
            line = lines[i]
            head = line.head
            if head == "FOR":
                depth += 1
            elif head == "NEXT":
                if depth > 0:
                    depth -= 1
                    continue
                words = line.code.split()
                if len(words) > 2:
                    raise PseudocodeParseError("invalid syntax near NEXT", line=line.number)
                if len(words) == 2 and words[1].lower() != counter.lower():
                    raise PseudocodeParseError(
                        f"Mismatched NEXT: expected NEXT {counter} but found NEXT {words[1]}", line=line.number
                    )
                match = BlockMatch(body=lines[start + 1 : i], closer=line, length=i - start + 1)
                self._block_cache[opener.number] = match
                return match
        raise _missing("NEXT", "FOR", opener.number)

    def match_block(self, lines: List[SourceLine], start: int, opener_word: str) -> BlockMatch:
        """Match WHILE/ENDWHILE, REPEAT/UNTIL and CASE/ENDCASE."""
        opener = lines[start]
        cached = self._block_cache.get(opener.number)
        if cached is not None:
            return cached
        closer_word = CLOSERS[opener_word]
        depth = 0
        for i in range(start + 1, len(lines)):
            line = lines[i]
            head = line.head
            if head == opener_word:
                depth += 1
            elif head == closer_word:
                if depth > 0:
                    depth -= 1
                    continue
                if closer_word != "UNTIL" and line.code.upper() != closer_word:
                    raise PseudocodeParseError(f"invalid syntax near {closer_word}", line=line.number)
                match = BlockMatch(body=lines[start + 1 : i], closer=line, length=i - start + 1)
                self._block_cache[opener.number] = match
                return match
        raise _missing(closer_word, opener_word, opener.number)
