import sys

import pytest

from interpreter import Environment, Interpreter, interpret
from values import TYPE_INTEGER, Value


# ---- concrete scenarios ----


def test_declare_assign_output(run):
    outcome = run(
        """
        DECLARE X : INTEGER
        X <- 5
        OUTPUT X + 1
        """
    )
    assert outcome.output == "6"
    assert outcome.lines == ["6"]


def test_function_call(run):
    outcome = run(
        """
        FUNCTION Sq(N : INTEGER) RETURNS INTEGER
            RETURN N * N
        ENDFUNCTION
        OUTPUT Sq(4)
        """
    )
    assert outcome.output == "16"


def test_array_index_out_of_range(run_error):
    error = run_error(
        """
        DECLARE A : ARRAY[1:3] OF INTEGER
        A[1] <- 10
        OUTPUT A[4]
        """
    )
    assert error.kind == "IndexError"
    assert error.line == 3
    assert "(1 to 3)" in error.message


def test_div_by_zero(run_error):
    error = run_error("OUTPUT 5 DIV 0")
    assert error.kind == "ZeroDivisionError"
    assert error.diagnostic() == "Line 1: ZeroDivisionError: integer division by zero"


def test_nested_if_runs_only_the_inner_true_branch(run):
    outcome = run(
        """
        DECLARE X : INTEGER
        X <- 1
        IF X > 5 THEN
            OUTPUT "outer-then"
            IF X > 0 THEN
                OUTPUT "outer-then/inner-then"
            ELSE
                OUTPUT "outer-then/inner-else"
            ENDIF
        ELSE
            IF X > 0 THEN
                OUTPUT "inner-then"
            ELSE
                OUTPUT "inner-else"
            ENDIF
        ENDIF
        """
    )
    assert outcome.lines == ["inner-then"]


# ---- value & type model ----


def test_real_literal_rejected_for_integer(run_error):
    error = run_error(
        """
        DECLARE X : INTEGER
        X <- 3.0
        """
    )
    assert error.kind == "TypeError"
    assert error.line == 2


def test_integral_division_result_fits_integer(run):
    outcome = run(
        """
        DECLARE X : INTEGER
        X <- 6 / 2
        OUTPUT X
        """
    )
    assert outcome.output == "3"


def test_quote_forms(run, run_error):
    assert run("DECLARE C : CHAR\nC <- 'z'\nOUTPUT C").output == "z"
    assert run_error('DECLARE C : CHAR\nC <- "z"').kind == "TypeError"
    assert run_error("DECLARE S : STRING\nS <- 'hello'").kind == "TypeError"
    assert run_error("DECLARE C : CHAR\nC <- 'ab'").kind == "ValueError"


def test_real_variables_render_with_point_zero(run):
    outcome = run(
        """
        DECLARE R : REAL
        R <- 2
        OUTPUT R
        OUTPUT R + 1
        OUTPUT 7 / 2
        """
    )
    assert outcome.lines == ["2.0", "3", "3.5"]


# ---- names & scope ----


def test_case_insensitive_aliasing_warns_once_per_line(run):
    outcome = run(
        """
        DECLARE Total : INTEGER
        TOTAL <- 5
        OUTPUT TOTAL + TOTAL
        OUTPUT Total
        """
    )
    assert outcome.lines == ["10", "5"]
    assert outcome.warnings == [
        'Warning: Line 2: Identifier "TOTAL" is different in case from declared variable "Total".',
        'Warning: Line 3: Identifier "TOTAL" is different in case from declared variable "Total".',
    ]


def test_reserved_word_warning(run):
    outcome = run(
        """
        DECLARE Length : INTEGER
        Length <- 3
        OUTPUT Length
        """
    )
    assert outcome.output == "3"
    assert outcome.warnings == ['Warning: "Length" is a keyword. Do not use keywords as identifiers.']


def test_reference_before_initialization(run_error):
    error = run_error("DECLARE X : INTEGER\nOUTPUT X")
    assert error.kind == "NameError"
    assert error.message == "name X is referenced before initialization"


def test_undeclared_name(run_error):
    error = run_error("Y <- 1")
    assert error.kind == "NameError"
    assert error.message == "name Y is not defined"


def test_constants_are_write_protected(run, run_error):
    assert run("CONSTANT Rate = 5\nOUTPUT Rate * 2").output == "10"
    error = run_error("CONSTANT Rate <- 5\nRate <- 6")
    assert error.kind == "TypeError"
    assert error.line == 2


def test_constant_needs_a_literal(run_error):
    error = run_error("CONSTANT Rate <- 2 + 3")
    assert error.kind == "TypeError"
    assert error.message == "CONSTANT value must be a literal"


def test_procedures_run_in_a_child_of_the_global_scope(run, run_error):
    outcome = run(
        """
        DECLARE Count : INTEGER
        Count <- 0
        PROCEDURE Bump(By : INTEGER)
            Count <- Count + By
        ENDPROCEDURE
        CALL Bump(2)
        CALL Bump(3)
        OUTPUT Count
        """
    )
    assert outcome.output == "5"

    error = run_error(
        """
        PROCEDURE Inner
            OUTPUT Secret
        ENDPROCEDURE
        PROCEDURE Outer
            DECLARE Secret : INTEGER
            Secret <- 1
            CALL Inner
        ENDPROCEDURE
        CALL Outer
        """
    )
    assert error.kind == "NameError"
    assert error.line == 2


def test_arrays_are_passed_by_value(run):
    outcome = run(
        """
        DECLARE Nums : ARRAY[1:2] OF INTEGER
        Nums[1] <- 1
        Nums[2] <- 2
        PROCEDURE Zero(A : ARRAY OF INTEGER)
            A[1] <- 0
            OUTPUT A[1]
        ENDPROCEDURE
        CALL Zero(Nums)
        OUTPUT Nums[1]
        """
    )
    assert outcome.lines == ["0", "1"]


def test_environment_operations():
    root = Environment()
    child = Environment(parent=root)
    root.declare("Total", TYPE_INTEGER, Value(TYPE_INTEGER, 0))
    assert child.is_declared("TOTAL")
    assert child.find_declaring_env("total") is root
    assert child.canonical_name("tOtAl") == "Total"
    assert not child.is_initialized("Total")
    child.assign("TOTAL", Value(TYPE_INTEGER, 4))
    assert root.is_initialized("Total")
    assert root.read("total") == Value(TYPE_INTEGER, 4)
    assert "total" not in child.values
    child.set_type("Total", "REAL")
    assert root.get_type("Total") == "REAL"


# ---- control flow ----


@pytest.mark.parametrize(
    "header, expected",
    [
        ("FOR I <- 1 TO 10 STEP 3", ["1", "4", "7", "10"]),
        ("FOR I <- 5 TO 1 STEP -2", ["5", "3", "1"]),
        ("FOR I <- 5 TO 1", []),
        ("FOR I <- 2 TO 2", ["2"]),
    ],
)
def test_for_iteration_counts(run, header, expected):
    outcome = run(f"{header}\n    OUTPUT I\nNEXT I")
    assert outcome.lines == expected


def test_for_step_validation(run_error):
    assert run_error("FOR I <- 1 TO 3 STEP 0\nNEXT I").kind == "ValueError"
    assert run_error("FOR I <- 1 TO 3 STEP 0.5\nNEXT I").kind == "TypeError"


def test_for_requires_an_integer_variable(run_error):
    error = run_error("DECLARE R : REAL\nFOR R <- 1 TO 3\nNEXT R")
    assert error.kind == "TypeError"
    assert error.line == 2


def test_mismatched_next_is_fatal(run_error):
    error = run_error(
        """
        FOR I <- 1 TO 2
            OUTPUT I
        NEXT J
        """
    )
    assert error.kind == "SyntaxError"
    assert error.line == 3


def test_while_and_repeat(run):
    outcome = run(
        """
        DECLARE N : INTEGER
        N <- 0
        WHILE N < 3 DO
            N <- N + 1
        ENDWHILE
        OUTPUT N
        REPEAT
            N <- N - 2
        UNTIL N < 0
        OUTPUT N
        """
    )
    assert outcome.lines == ["3", "-1"]


def test_two_line_if_form(run):
    outcome = run(
        """
        IF 2 > 1
          THEN
            OUTPUT "yes"
          ELSE
            OUTPUT "no"
        ENDIF
        """
    )
    assert outcome.lines == ["yes"]


def test_conditions_must_be_boolean(run_error):
    error = run_error("IF 1 THEN\nOUTPUT 1\nENDIF")
    assert error.kind == "TypeError"
    assert error.message == "IF condition must be a BOOLEAN, got INTEGER"


def test_loop_limit(run_error):
    error = run_error("WHILE TRUE DO\nENDWHILE", loop_limit=10)
    assert error.kind == "RuntimeError"
    assert error.message == "maximum iteration limit exceeded"
    assert error.line == 1


def test_missing_endif(run_error):
    error = run_error('OUTPUT "before"\nIF TRUE THEN\nOUTPUT "x"')
    assert error.kind == "SyntaxError"
    assert error.message == "Missing ENDIF for IF starting at line 2"
    assert error.lines == ["before"]


@pytest.mark.parametrize(
    "score, expected",
    [(100, "perfect"), (75, "pass"), (50, "pass"), (10, "fail")],
)
def test_case_arms(run, score, expected):
    outcome = run(
        f"""
        DECLARE Score : INTEGER
        Score <- {score}
        CASE OF Score
            100 : OUTPUT "perfect"
            50 TO 99 : OUTPUT "pass"
            OTHERWISE OUTPUT "fail"
        ENDCASE
        """
    )
    assert outcome.lines == [expected]


def test_case_on_char_without_match(run):
    outcome = run(
        """
        DECLARE Grade : CHAR
        Grade <- 'C'
        CASE OF Grade
            'A' : OUTPUT "top"
            'B' : OUTPUT "good"
        ENDCASE
        OUTPUT "done"
        """
    )
    assert outcome.lines == ["done"]


# ---- functions ----


def test_recursion(run):
    outcome = run(
        """
        FUNCTION Fact(N : INTEGER) RETURNS INTEGER
            IF N <= 1 THEN
                RETURN 1
            ENDIF
            RETURN N * Fact(N - 1)
        ENDFUNCTION
        OUTPUT Fact(5)
        """
    )
    assert outcome.output == "120"


def test_return_value_is_checked(run_error):
    error = run_error(
        """
        FUNCTION Half(N : INTEGER) RETURNS INTEGER
            RETURN N / 2
        ENDFUNCTION
        OUTPUT Half(3)
        """
    )
    assert error.kind == "TypeError"
    assert error.line == 2


def test_return_outside_function(run_error):
    error = run_error("RETURN 5")
    assert error.kind == "SyntaxError"
    assert error.message == "'RETURN' outside function"


def test_function_without_return_yields_empty(run):
    outcome = run(
        """
        FUNCTION Nothing
        ENDFUNCTION
        OUTPUT "[", Nothing(), "]"
        """
    )
    assert outcome.output == "[]"


def test_multi_value_return_concatenates(run):
    outcome = run(
        """
        FUNCTION Label(N : INTEGER) RETURNS STRING
            RETURN "#", N
        ENDFUNCTION
        OUTPUT Label(7)
        """
    )
    assert outcome.output == "#7"


def test_wrong_arity(run_error):
    error = run_error(
        """
        PROCEDURE Two(A : INTEGER, B : INTEGER)
        ENDPROCEDURE
        CALL Two(1)
        """
    )
    assert error.kind == "TypeError"
    assert error.message == "Two expected 2 arguments, got 1"


def test_unknown_function(run_error):
    assert run_error("OUTPUT Missing(1)").kind == "NameError"


# ---- expressions ----


def test_concatenation_and_arithmetic(run):
    outcome = run(
        """
        DECLARE Name : STRING
        Name <- "Ann", "e"
        OUTPUT "Hello ", Name, "!"
        OUTPUT "n=" + 5
        OUTPUT 2 ^ 3 ^ 2
        OUTPUT 2 ^ -1
        OUTPUT -7 MOD 3, " ", DIV(-7, 3)
        OUTPUT TRUE AND NOT FALSE
        """
    )
    assert outcome.lines == ["Hello Annie!", "n=5", "512", "0.5", "2 -3", "TRUE"]


def test_relational_operands_must_match(run_error):
    error = run_error('OUTPUT 1 = "1"')
    assert error.kind == "TypeError"


def test_boolean_equality(run):
    outcome = run(
        """
        DECLARE Flag : BOOLEAN
        Flag <- 3 > 2
        IF Flag = TRUE THEN
            OUTPUT "set"
        ENDIF
        """
    )
    assert outcome.output == "set"


def test_logical_operators_need_booleans(run_error):
    assert run_error("OUTPUT 1 AND TRUE").kind == "TypeError"


def test_arithmetic_type_errors(run_error):
    assert run_error('OUTPUT "a" - 1').kind == "TypeError"
    assert run_error("OUTPUT TRUE + 1").kind == "TypeError"
    assert run_error("OUTPUT 1 / 0").kind == "ZeroDivisionError"
    assert run_error("OUTPUT 0 ^ -1").kind == "ZeroDivisionError"


def test_two_dimensional_arrays_with_computed_bounds(run, run_error):
    source = """
        DECLARE N : INTEGER
        N <- 2
        DECLARE Grid : ARRAY[1:N, 1:N + 1] OF INTEGER
        Grid[2, 3] <- 9
        OUTPUT Grid[2, 3] + Grid[1, 1]
        """
    assert run(source).output == "9"
    assert run_error(source + "OUTPUT Grid[3, 1]\n").kind == "IndexError"
    assert run_error(source + "OUTPUT Grid[1]\n").kind == "TypeError"


# ---- input ----


def test_input_coerces_to_the_destination(run):
    outcome = run(
        """
        DECLARE Age : INTEGER
        DECLARE R : REAL
        DECLARE C : CHAR
        DECLARE Ok : BOOLEAN
        INPUT Age
        INPUT R
        INPUT C
        INPUT Ok
        OUTPUT Age + 1
        OUTPUT R
        OUTPUT C
        OUTPUT Ok
        """,
        inputs=["  41\r", "2", "y", "true"],
    )
    assert outcome.lines == ["42", "2.0", "y", "TRUE"]


def test_input_type_error(run_error):
    error = run_error("DECLARE Age : INTEGER\nINPUT Age", inputs=["abc"])
    assert error.kind == "TypeError"
    assert error.line == 2


def test_input_into_array_element(run):
    outcome = run(
        """
        DECLARE A : ARRAY[1:2] OF STRING
        INPUT A[2]
        OUTPUT A[2]
        """,
        inputs=["hello"],
    )
    assert outcome.output == "hello"


# ---- run boundary ----


def test_syntax_hint_surfaces_at_execution(run_error):
    error = run_error('OUTPUT "a"\nX = 5')
    assert error.kind == "SyntaxError"
    assert error.message == "invalid syntax. Did you mean X <- 5?"
    assert error.line == 2
    assert error.lines == ["a"]


def test_interpret_returns_the_output_log():
    assert interpret('OUTPUT "a"\nOUTPUT "b"', output_sink=lambda text: None) == "a\nb"


def test_runs_are_independent():
    sink = []
    source = "DECLARE Total : INTEGER\nTOTAL <- 1"
    first = Interpreter(source=source, output_sink=sink.append, warning_sink=sink.append)
    second = Interpreter(source=source, output_sink=sink.append, warning_sink=sink.append)
    first.run()
    second.run()
    assert len(first.warnings) == len(second.warnings) == 1


def test_comments_and_blank_lines_are_ignored(run):
    outcome = run(
        """
        // compute
        DECLARE X : INTEGER   // counter

        X <- 1 // one
        OUTPUT "// not a comment", X
        """
    )
    assert outcome.output == "// not a comment1"


def test_div_and_mod_with_bracketed_right_operand(run):
    outcome = run(
        """
        DECLARE A : INTEGER
        DECLARE B : INTEGER
        A <- 17
        B <- 5
        OUTPUT A DIV (2 + 1)
        OUTPUT A MOD (B)
        OUTPUT A DIV(B) + DIV(A, B)
        """
    )
    assert outcome.lines == ["5", "2", "6"]


RECURSIVE_SUM = """
FUNCTION Sum(N : INTEGER) RETURNS INTEGER
    IF N = 0 THEN
        RETURN 0
    ENDIF
    RETURN N + Sum(N - 1)
ENDFUNCTION
OUTPUT Sum({depth})
"""


def test_deep_recursion(run):
    assert run(RECURSIVE_SUM.format(depth=500)).output == "125250"


def test_recursion_past_the_call_depth_limit(run_error):
    error = run_error(RECURSIVE_SUM.format(depth=100), call_depth_limit=50)
    assert error.diagnostic() == "Line 5: RuntimeError: maximum recursion depth of 50 calls exceeded"


def test_recursion_limit_is_restored_after_a_run(run):
    before = sys.getrecursionlimit()
    run(RECURSIVE_SUM.format(depth=10))
    assert sys.getrecursionlimit() == before
