from __future__ import annotations
from dataclasses import dataclass
from typing import Any, List, Optional


class PseudocodeError(Exception):
    """Base class for interpreter errors."""

    def __init__(
        self,
        message: str,
        *,
        kind: str = "RuntimeError",
        line: Optional[int] = None,
        location: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.location = location
        if line is None and location is not None:
            line = location.line
        self.line = line

    def diagnostic(self) -> str:
        line = self.line if self.line is not None else "unknown"
        return f"Line {line}: {self.kind}: {self.message}"

    def __str__(self) -> str:
        return self.diagnostic()


class PseudocodeParseError(PseudocodeError):
    """Raised when a line cannot be tokenized or parsed."""

    def __init__(
        self,
        message: str,
        *,
        kind: str = "SyntaxError",
        line: Optional[int] = None,
        location: Optional[Any] = None,
    ) -> None:
        super().__init__(message, kind=kind, line=line, location=location)


@dataclass
class Token:
    type: str
    value: str
    line: int
    column: int


# Structural words. Type names and builtin names stay IDENT so that the
# parser can decide what they mean from context.
KEYWORDS = {
    "IF",
    "THEN",
    "ELSE",
    "ENDIF",
    "CASE",
    "OF",
    "OTHERWISE",
    "ENDCASE",
    "FOR",
    "TO",
    "STEP",
    "NEXT",
    "WHILE",
    "DO",
    "ENDWHILE",
    "REPEAT",
    "UNTIL",
    "PROCEDURE",
    "ENDPROCEDURE",
    "FUNCTION",
    "ENDFUNCTION",
    "RETURNS",
    "RETURN",
    "CALL",
    "INPUT",
    "OUTPUT",
    "DECLARE",
    "CONSTANT",
    "ARRAY",
    "TRUE",
    "FALSE",
    "AND",
    "OR",
    "NOT",
    "DIV",
    "MOD",
}

SYMBOLS = {
    "(": "LPAREN",
    ")": "RPAREN",
    "[": "LBRACKET",
    "]": "RBRACKET",
    ",": "COMMA",
    ":": "COLON",
    "=": "EQUALS",
    "+": "PLUS",
    "*": "STAR",
    "/": "SLASH",
    "^": "CARET",
    "←": "ASSIGN",
}

ESCAPES = {"n": "\n", "t": "\t", "\\": "\\", '"': '"', "'": "'"}


def strip_comment(text: str) -> str:
    """Return ``text`` without its trailing ``//`` comment, ignoring ``//`` inside literals."""
    quote: Optional[str] = None
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if quote is not None:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in ('"', "'"):
            quote = ch
        elif ch == "/" and i + 1 < n and text[i + 1] == "/":
            return text[:i]
        i += 1
    return text


class Lexer:
    """Tokenizes one source line. Pseudocode statements never span lines."""

    def __init__(self, text: str, filename: str, line: int = 1) -> None:
        self.text = text
        self.filename = filename
        self.index = 0
        self.line = line
        self.column = 1

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        _advance = self._advance
        symbols = SYMBOLS
        text = self.text
        n = len(text)

        while self.index < n:
            ch: str = text[self.index]
            if ch in " \t\r\n":
                _advance()
                continue
            if ch == "/" and self.index + 1 < n and text[self.index + 1] == "/":
                break
            if ch == "<":
                tokens_append(self._consume_less_than())
                continue
            if ch == ">":
                col = self.column
                _advance()
                if not self._eof and self._peek() == "=":
                    _advance()
                    tokens_append(Token("GTE", ">=", self.line, col))
                else:
                    tokens_append(Token("GT", ">", self.line, col))
                continue
            if ch == "-":
                tokens_append(Token("MINUS", "-", self.line, self.column))
                _advance()
                continue
            if ch in symbols:
                tokens_append(Token(symbols[ch], ch, self.line, self.column))
                _advance()
                continue
            if ch in ('"', "'"):
                tokens_append(self._consume_string())
                continue
            if ch.isdigit():
                tokens_append(self._consume_number())
                continue
            if ch.isalpha():
                tokens_append(self._consume_identifier())
                continue
            raise PseudocodeParseError(
                f"invalid character '{ch}' in column {self.column}", line=self.line
            )
        tokens_append(Token("EOF", "", self.line, self.column))
        return tokens

    def _consume_less_than(self) -> Token:
        col = self.column
        self._advance()
        if self._eof:
            return Token("LT", "<", self.line, col)
        nxt = self._peek()
        if nxt == "-":
            # "<-" and "<--" both assign
            self._advance()
            if not self._eof and self._peek() == "-":
                self._advance()
            return Token("ASSIGN", "<-", self.line, col)
        if nxt == "=":
            self._advance()
            return Token("LTE", "<=", self.line, col)
        if nxt == ">":
            self._advance()
            return Token("NOTEQUAL", "<>", self.line, col)
        return Token("LT", "<", self.line, col)

    def _consume_number(self) -> Token:
        col = self.column
        whole = self._consume_digits()
        if not self._eof and self._peek() == ".":
            saved_index, saved_col = self.index, self.column
            self._advance()  # consume '.'
            frac = self._consume_digits()
            if frac == "":
                # "5." is not a REAL literal; leave the dot for the parser to reject.
                self.index, self.column = saved_index, saved_col
                return Token("NUMBER", whole, self.line, col)
            return Token("REAL", f"{whole}.{frac}", self.line, col)
        return Token("NUMBER", whole, self.line, col)

    def _consume_digits(self) -> str:
        digits: List[str] = []
        text = self.text
        n = len(text)
        while self.index < n and text[self.index].isdigit():
            digits.append(text[self.index])
            self._advance()
        return "".join(digits)

    def _consume_string(self) -> Token:
        col = self.column
        opening = self._peek()
        self._advance()  # consume opening quote
        chars: List[str] = []
        while not self._eof:
            ch = self._peek()
            if ch == "\\" and self.index + 1 < len(self.text):
                escaped = self.text[self.index + 1]
                chars.append(ESCAPES.get(escaped, "\\" + escaped))
                self._advance()
                self._advance()
                continue
            if ch == opening:
                self._advance()
                token_type = "STRING" if opening == '"' else "CHAR"
                return Token(token_type, "".join(chars), self.line, col)
            chars.append(ch)
            self._advance()
        label = "STRING" if opening == '"' else "CHAR"
        raise PseudocodeParseError(f"unterminated {label} literal", line=self.line)

    def _consume_identifier(self) -> Token:
        col = self.column
        chars: List[str] = []
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n:
            ch = text[self.index]
            if ch.isalnum() or ch == "_":
                chars.append(ch)
                _advance()
                continue
            break
        value = "".join(chars)
        upper = value.upper()
        token_type: str = upper if upper in KEYWORDS else "IDENT"
        return Token(token_type, value, self.line, col)

    @property
    def _eof(self) -> bool:
        return self.index >= len(self.text)

    def _peek(self) -> str:
        return self.text[self.index]

    def _advance(self) -> None:
        self.column += 1
        self.index += 1
