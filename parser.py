from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, List, Optional, Union

from lexer import Lexer, PseudocodeParseError, Token, strip_comment
from values import SCALAR_TYPES


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


@dataclass
class Node:
    location: SourceLocation


class Statement(Node):
    pass


class Expression(Node):
    pass


# ---- Expressions ----


@dataclass
class Literal(Expression):
    value: Union[int, float, bool, str]
    literal_type: str


@dataclass
class Identifier(Expression):
    name: str


@dataclass
class UnaryOp(Expression):
    op: str
    operand: Expression


@dataclass
class BinaryOp(Expression):
    op: str
    left: Expression
    right: Expression


@dataclass
class IndexExpression(Expression):
    name: str
    indices: List[Expression]


@dataclass
class CallExpression(Expression):
    name: str
    args: List[Expression]


LValue = Union[Identifier, IndexExpression]


# ---- Statements ----


@dataclass
class DeclareStatement(Statement):
    names: List[str]
    type_name: str


@dataclass
class ArrayBound:
    lower: Expression
    upper: Expression


@dataclass
class DeclareArrayStatement(Statement):
    name: str
    bounds: List[ArrayBound]
    element_type: str


@dataclass
class ConstantStatement(Statement):
    name: str
    expression: Expression


@dataclass
class CallStatement(Statement):
    name: str
    args: List[Expression]


@dataclass
class IfStatement(Statement):
    condition: Expression
    inline_then: bool


@dataclass
class CaseStatement(Statement):
    subject: Expression


@dataclass
class CaseArm(Node):
    label: Optional[Expression]
    label_upper: Optional[Expression]
    body: str
    body_column: int

    @property
    def otherwise(self) -> bool:
        return self.label is None


@dataclass
class ForStatement(Statement):
    counter: str
    start: Expression
    end: Expression
    step: Optional[Expression]


@dataclass
class WhileStatement(Statement):
    condition: Expression


@dataclass
class RepeatStatement(Statement):
    pass


@dataclass
class UntilClause(Node):
    condition: Expression


@dataclass
class ReturnStatement(Statement):
    values: List[Expression]


@dataclass
class InputStatement(Statement):
    target: LValue


@dataclass
class OutputStatement(Statement):
    values: List[Expression]


@dataclass
class Assignment(Statement):
    target: LValue
    expression: Expression


@dataclass
class Param:
    name: str
    type_name: Optional[str]


@dataclass
class ProcedureHeader(Node):
    name: str
    params: List[Param]


@dataclass
class FunctionHeader(Node):
    name: str
    params: List[Param]
    return_type: Optional[str]


# Closers and mid-block words that only make sense inside their construct.
STRAY_WORDS = {
    "THEN": "IF",
    "ELSE": "IF",
    "ENDIF": "IF",
    "NEXT": "FOR",
    "ENDWHILE": "WHILE",
    "DO": "WHILE",
    "UNTIL": "REPEAT",
    "OTHERWISE": "CASE",
    "ENDCASE": "CASE",
    "ENDPROCEDURE": "PROCEDURE",
    "ENDFUNCTION": "FUNCTION",
}

TOKEN_NAMES = {
    "IDENT": "identifier",
    "ASSIGN": "'<-'",
    "COLON": "':'",
    "COMMA": "','",
    "LPAREN": "'('",
    "RPAREN": "')'",
    "LBRACKET": "'['",
    "RBRACKET": "']'",
    "EOF": "end of line",
}

COMPARISON_OPS = {"EQUALS": "=", "NOTEQUAL": "<>", "LT": "<", "GT": ">", "LTE": "<=", "GTE": ">="}


class Parser:
    """Parses the tokens of a single source line.

    Statements are parsed one line at a time as the executor reaches them, so
    a malformed line only fails when it is executed.
    """

    def __init__(
        self,
        tokens: List[Token],
        filename: str,
        source_line: str,
        *,
        type_names: Optional[Iterable[str]] = None,
    ):
        self.tokens = tokens
        self.filename = filename
        self.source_line = source_line
        self.type_names = set(type_names) if type_names is not None else set(SCALAR_TYPES)
        self.index = 0

    # ---- entry points ----

    def parse_statement(self) -> Statement:
        statement = self._parse_statement()
        self._expect_end()
        return statement

    def parse_expression(self) -> Expression:
        expr = self._parse_expression()
        self._expect_end()
        return expr

    def parse_procedure_header(self) -> ProcedureHeader:
        keyword = self._consume("PROCEDURE")
        name = self._consume("IDENT")
        params = self._parse_param_list()
        self._expect_end()
        return ProcedureHeader(location=self._location_from_token(keyword), name=name.value, params=params)

    def parse_function_header(self) -> FunctionHeader:
        keyword = self._consume("FUNCTION")
        name = self._consume("IDENT")
        params = self._parse_param_list()
        return_type: Optional[str] = None
        if self._match("RETURNS"):
            return_type = self._consume_type_token().value.upper()
        self._expect_end()
        return FunctionHeader(
            location=self._location_from_token(keyword),
            name=name.value,
            params=params,
            return_type=return_type,
        )

    def parse_case_arm(self) -> CaseArm:
        start = self._peek()
        label: Optional[Expression] = None
        label_upper: Optional[Expression] = None
        if self._match("OTHERWISE"):
            self._match("COLON")
        else:
            label = self._parse_or()
            if self._match("TO"):
                label_upper = self._parse_or()
            self._consume("COLON")
        body_token = self._peek()
        if body_token.type == "EOF":
            raise PseudocodeParseError("expected a statement after the CASE label", line=body_token.line)
        body = self.source_line[body_token.column - 1 :]
        return CaseArm(
            location=self._location_from_token(start),
            label=label,
            label_upper=label_upper,
            body=body,
            body_column=body_token.column,
        )

    def parse_until(self) -> UntilClause:
        keyword = self._consume("UNTIL")
        if self._peek().type == "EOF":
            raise PseudocodeParseError("expected condition after UNTIL", line=keyword.line)
        condition = self._parse_expression()
        self._expect_end()
        return UntilClause(location=self._location_from_token(keyword), condition=condition)

    # ---- statements ----

    def _parse_statement(self) -> Statement:
        token = self._peek()
        kind = token.type
        if kind == "DECLARE":
            return self._parse_declare()
        if kind == "CONSTANT":
            return self._parse_constant()
        if kind == "CALL":
            return self._parse_call()
        if kind == "IF":
            return self._parse_if()
        if kind == "CASE":
            return self._parse_case()
        if kind == "FOR":
            return self._parse_for()
        if kind == "WHILE":
            return self._parse_while()
        if kind == "REPEAT":
            self._consume("REPEAT")
            return RepeatStatement(location=self._location_from_token(token))
        if kind == "RETURN":
            keyword = self._consume("RETURN")
            return ReturnStatement(location=self._location_from_token(keyword), values=self._parse_argument_list())
        if kind == "INPUT":
            keyword = self._consume("INPUT")
            return InputStatement(location=self._location_from_token(keyword), target=self._parse_lvalue())
        if kind == "OUTPUT":
            keyword = self._consume("OUTPUT")
            return OutputStatement(location=self._location_from_token(keyword), values=self._parse_argument_list())
        if kind == "IDENT":
            return self._parse_assignment()
        if kind in STRAY_WORDS:
            raise PseudocodeParseError(
                f"'{token.value}' without matching {STRAY_WORDS[kind]}", line=token.line
            )
        raise PseudocodeParseError("invalid syntax", line=token.line)

    def _parse_declare(self) -> Statement:
        keyword = self._consume("DECLARE")
        names: List[str] = [self._consume("IDENT").value]
        while self._match("COMMA"):
            names.append(self._consume("IDENT").value)
        self._consume("COLON")
        location = self._location_from_token(keyword)
        if self._peek().type == "ARRAY":
            if len(names) != 1:
                raise PseudocodeParseError("only one ARRAY can be declared per DECLARE", line=keyword.line)
            self._consume("ARRAY")
            bounds = self._parse_array_bounds()
            self._consume("OF")
            element_type = self._consume_type_token().value.upper()
            return DeclareArrayStatement(location=location, name=names[0], bounds=bounds, element_type=element_type)
        type_name = self._consume_type_token().value.upper()
        return DeclareStatement(location=location, names=names, type_name=type_name)

    def _parse_array_bounds(self) -> List[ArrayBound]:
        lbracket = self._consume("LBRACKET")
        bounds: List[ArrayBound] = []
        while True:
            lower = self._parse_or()
            self._consume("COLON")
            upper = self._parse_or()
            bounds.append(ArrayBound(lower=lower, upper=upper))
            if not self._match("COMMA"):
                break
        self._consume("RBRACKET")
        if len(bounds) > 2:
            raise PseudocodeParseError("ARRAY must have one or two dimensions", line=lbracket.line)
        return bounds

    def _parse_constant(self) -> ConstantStatement:
        keyword = self._consume("CONSTANT")
        name = self._consume("IDENT")
        if not self._match("ASSIGN"):
            self._consume("EQUALS")
        expression = self._parse_expression()
        return ConstantStatement(location=self._location_from_token(keyword), name=name.value, expression=expression)

    def _parse_call(self) -> CallStatement:
        keyword = self._consume("CALL")
        name = self._consume("IDENT")
        args: List[Expression] = []
        if self._match("LPAREN"):
            args = self._parse_call_arguments()
        return CallStatement(location=self._location_from_token(keyword), name=name.value, args=args)

    def _parse_if(self) -> IfStatement:
        keyword = self._consume("IF")
        condition = self._parse_expression()
        inline_then = self._match("THEN")
        return IfStatement(location=self._location_from_token(keyword), condition=condition, inline_then=inline_then)

    def _parse_case(self) -> CaseStatement:
        keyword = self._consume("CASE")
        self._consume("OF")
        subject = self._parse_expression()
        return CaseStatement(location=self._location_from_token(keyword), subject=subject)

    def _parse_for(self) -> ForStatement:
        keyword = self._consume("FOR")
        counter = self._consume("IDENT")
        self._consume("ASSIGN")
        start = self._parse_expression()
        self._consume("TO")
        end = self._parse_expression()
        step: Optional[Expression] = None
        if self._match("STEP"):
            step = self._parse_expression()
        return ForStatement(
            location=self._location_from_token(keyword),
            counter=counter.value,
            start=start,
            end=end,
            step=step,
        )

    def _parse_while(self) -> WhileStatement:
        keyword = self._consume("WHILE")
        condition = self._parse_expression()
        self._match("DO")
        return WhileStatement(location=self._location_from_token(keyword), condition=condition)

    def _parse_assignment(self) -> Assignment:
        target = self._parse_lvalue()
        token = self._peek()
        if token.type == "EQUALS":
            code = strip_comment(self.source_line)
            lhs = code[: token.column - 1].strip()
            rhs = code[token.column :].strip()
            raise PseudocodeParseError(f"invalid syntax. Did you mean {lhs} <- {rhs}?", line=token.line)
        if token.type != "ASSIGN":
            raise PseudocodeParseError("invalid syntax", line=token.line)
        self._consume("ASSIGN")
        expression = self._parse_expression()
        return Assignment(location=target.location, target=target, expression=expression)

    def _parse_lvalue(self) -> LValue:
        ident = self._consume("IDENT")
        location = self._location_from_token(ident)
        if self._match("LBRACKET"):
            indices = self._parse_index_list()
            return IndexExpression(location=location, name=ident.value, indices=indices)
        return Identifier(location=location, name=ident.value)

    def _parse_param_list(self) -> List[Param]:
        params: List[Param] = []
        if not self._match("LPAREN"):
            return params
        if self._match("RPAREN"):
            return params
        while True:
            name = self._consume("IDENT")
            type_name: Optional[str] = None
            if self._match("COLON"):
                if self._match("ARRAY"):
                    if self._peek().type == "LBRACKET":
                        self._parse_array_bounds()
                    self._consume("OF")
                    type_name = "ARRAY OF " + self._consume_type_token().value.upper()
                else:
                    type_name = self._consume_type_token().value.upper()
            params.append(Param(name=name.value, type_name=type_name))
            if not self._match("COMMA"):
                break
        self._consume("RPAREN")
        return params

    # ---- expressions ----

    def _parse_argument_list(self) -> List[Expression]:
        # Comma separates arguments here, so each item stops before it.
        values: List[Expression] = [self._parse_or()]
        while self._match("COMMA"):
            values.append(self._parse_or())
        return values

    def _parse_call_arguments(self) -> List[Expression]:
        args: List[Expression] = []
        if self._match("RPAREN"):
            return args
        args = self._parse_argument_list()
        self._consume("RPAREN")
        return args

    def _parse_index_list(self) -> List[Expression]:
        indices = self._parse_argument_list()
        self._consume("RBRACKET")
        return indices

    def _parse_expression(self) -> Expression:
        # A bare comma inside an expression concatenates, like '+'.
        expr = self._parse_or()
        while self._peek().type == "COMMA":
            comma = self._consume("COMMA")
            right = self._parse_or()
            expr = BinaryOp(location=self._location_from_token(comma), op=",", left=expr, right=right)
        return expr

    def _parse_or(self) -> Expression:
        expr = self._parse_and()
        while self._peek().type == "OR":
            op = self._consume("OR")
            expr = BinaryOp(location=self._location_from_token(op), op="OR", left=expr, right=self._parse_and())
        return expr

    def _parse_and(self) -> Expression:
        expr = self._parse_not()
        while self._peek().type == "AND":
            op = self._consume("AND")
            expr = BinaryOp(location=self._location_from_token(op), op="AND", left=expr, right=self._parse_not())
        return expr

    def _parse_not(self) -> Expression:
        if self._peek().type == "NOT":
            op = self._consume("NOT")
            return UnaryOp(location=self._location_from_token(op), op="NOT", operand=self._parse_not())
        return self._parse_comparison()

    def _parse_comparison(self) -> Expression:
        expr = self._parse_additive()
        while self._peek().type in COMPARISON_OPS:
            token = self._consume(self._peek().type)
            right = self._parse_additive()
            expr = BinaryOp(location=self._location_from_token(token), op=COMPARISON_OPS[token.type], left=expr, right=right)
        return expr

    def _parse_additive(self) -> Expression:
        expr = self._parse_multiplicative()
        while self._peek().type in ("PLUS", "MINUS"):
            token = self._consume(self._peek().type)
            right = self._parse_multiplicative()
            expr = BinaryOp(location=self._location_from_token(token), op=token.value, left=expr, right=right)
        return expr

    def _parse_multiplicative(self) -> Expression:
        expr = self._parse_unary()
        while True:
            token = self._peek()
            if token.type in ("STAR", "SLASH"):
                op = token.value
            elif token.type in ("DIV", "MOD"):
                op = token.type
            else:
                break
            self.index += 1
            right = self._parse_unary()
            expr = BinaryOp(location=self._location_from_token(token), op=op, left=expr, right=right)
        return expr

    def _parse_unary(self) -> Expression:
        token = self._peek()
        if token.type in ("MINUS", "PLUS"):
            self.index += 1
            return UnaryOp(location=self._location_from_token(token), op=token.value, operand=self._parse_unary())
        return self._parse_power()

    def _parse_power(self) -> Expression:
        base = self._parse_primary()
        if self._peek().type == "CARET":
            caret = self._consume("CARET")
            # Right-associative: the exponent may itself contain '^'.
            exponent = self._parse_unary()
            return BinaryOp(location=self._location_from_token(caret), op="^", left=base, right=exponent)
        return base

    def _parse_primary(self) -> Expression:
        token = self._peek()
        location = self._location_from_token(token)
        if token.type == "NUMBER":
            self.index += 1
            return Literal(location=location, value=int(token.value), literal_type="INTEGER")
        if token.type == "REAL":
            self.index += 1
            return Literal(location=location, value=float(token.value), literal_type="REAL")
        if token.type == "STRING":
            self.index += 1
            return Literal(location=location, value=token.value, literal_type="STRING")
        if token.type == "CHAR":
            self.index += 1
            return Literal(location=location, value=token.value, literal_type="CHAR")
        if token.type in ("TRUE", "FALSE"):
            self.index += 1
            return Literal(location=location, value=token.type == "TRUE", literal_type="BOOLEAN")
        if token.type in ("DIV", "MOD"):
            # Call form: DIV(a, b) / MOD(a, b).
            self.index += 1
            self._consume("LPAREN")
            return CallExpression(location=location, name=token.type, args=self._parse_call_arguments())
        if token.type == "IDENT":
            self.index += 1
            if self._match("LPAREN"):
                return CallExpression(location=location, name=token.value, args=self._parse_call_arguments())
            if self._match("LBRACKET"):
                return IndexExpression(location=location, name=token.value, indices=self._parse_index_list())
            return Identifier(location=location, name=token.value)
        if token.type == "LPAREN":
            self.index += 1
            expr = self._parse_expression()
            self._consume("RPAREN")
            return expr
        if token.type == "EOF":
            raise PseudocodeParseError("invalid syntax: expression expected", line=token.line)
        raise PseudocodeParseError(f"invalid syntax near '{token.value}'", line=token.line)

    # ---- helpers ----

    def _expect_end(self) -> None:
        token = self._peek()
        if token.type != "EOF":
            raise PseudocodeParseError(f"invalid syntax near '{token.value}'", line=token.line)

    def _consume(self, token_type: str) -> Token:
        token = self._peek()
        if token.type != token_type:
            expected = TOKEN_NAMES.get(token_type, token_type)
            found = TOKEN_NAMES["EOF"] if token.type == "EOF" else f"'{token.value}'"
            raise PseudocodeParseError(f"invalid syntax: expected {expected} but found {found}", line=token.line)
        self.index += 1
        return token

    def _match(self, token_type: str) -> bool:
        if self._peek().type == token_type:
            self.index += 1
            return True
        return False

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _location_from_token(self, token: Token) -> SourceLocation:
        return SourceLocation(file=self.filename, line=token.line, column=token.column, statement=self.source_line.strip())

    def _consume_type_token(self) -> Token:
        token = self._consume("IDENT")
        if token.value.upper() not in self.type_names:
            raise PseudocodeParseError(f"invalid type {token.value}", kind="TypeError", line=token.line)
        return token


def literal_form(expression: Optional[Expression]) -> Optional[str]:
    """Literal type of ``expression`` when it is written as a literal (``-3.0`` is REAL)."""
    if isinstance(expression, UnaryOp) and expression.op in ("-", "+"):
        operand = expression.operand
        if isinstance(operand, Literal) and operand.literal_type in ("INTEGER", "REAL"):
            return operand.literal_type
        return None
    if isinstance(expression, Literal):
        return expression.literal_type
    return None


def make_parser(text: str, filename: str, line: int) -> Parser:
    tokens = Lexer(text, filename, line).tokenize()
    return Parser(tokens, filename, text)


def parse_statement(text: str, filename: str = "<string>", line: int = 1) -> Statement:
    return make_parser(text, filename, line).parse_statement()


def parse_expression(text: str, filename: str = "<string>", line: int = 1) -> Expression:
    return make_parser(text, filename, line).parse_expression()
