import numpy as np
import pytest

from values import (
    NONE_VALUE,
    TYPE_BOOLEAN,
    TYPE_CHAR,
    TYPE_INTEGER,
    TYPE_REAL,
    TYPE_STRING,
    PseudoArray,
    PseudocodeRuntimeError,
    Value,
    check_assignable,
    clean_input,
    coerce_input,
    default_value,
    format_real,
    to_string,
)


def _kind(excinfo):
    return excinfo.value.kind


def test_default_values():
    assert default_value(TYPE_INTEGER) == 0
    assert default_value(TYPE_REAL) == 0.0
    assert default_value(TYPE_BOOLEAN) is False
    assert default_value(TYPE_CHAR) == " "
    assert default_value(TYPE_STRING) == ""



def test_real_literal_never_fits_integer():
    with pytest.raises(PseudocodeRuntimeError) as info:
        check_assignable(TYPE_INTEGER, Value(TYPE_REAL, 3.0), literal_form=TYPE_REAL)
    assert _kind(info) == "TypeError"
    assert info.value.message == "Cannot assign REAL value to INTEGER"


def test_integral_computed_real_fits_integer():
    checked = check_assignable(TYPE_INTEGER, Value(TYPE_REAL, 3.0))
    assert checked == Value(TYPE_INTEGER, 3)
    assert isinstance(checked.value, int)


def test_fractional_real_does_not_fit_integer():
    with pytest.raises(PseudocodeRuntimeError) as info:
        check_assignable(TYPE_INTEGER, Value(TYPE_REAL, 2.5))
    assert _kind(info) == "TypeError"


def test_integer_widens_to_real():
    checked = check_assignable(TYPE_REAL, Value(TYPE_INTEGER, 2))
    assert checked.type == TYPE_REAL
    assert isinstance(checked.value, float)


def test_boolean_destination():
    assert check_assignable(TYPE_BOOLEAN, Value(TYPE_BOOLEAN, True)).value is True
    with pytest.raises(PseudocodeRuntimeError):
        check_assignable(TYPE_BOOLEAN, Value(TYPE_INTEGER, 1))


def test_char_rules():
    assert check_assignable(TYPE_CHAR, Value(TYPE_CHAR, "a"), literal_form=TYPE_CHAR).value == "a"
    with pytest.raises(PseudocodeRuntimeError) as info:
        check_assignable(TYPE_CHAR, Value(TYPE_STRING, "a"), literal_form=TYPE_STRING)
    assert _kind(info) == "TypeError"
    with pytest.raises(PseudocodeRuntimeError) as info:
        check_assignable(TYPE_CHAR, Value(TYPE_CHAR, "ab"), literal_form=TYPE_CHAR)
    assert _kind(info) == "ValueError"
    assert info.value.message == "CHAR literal must be a single character"


def test_string_rules():
    assert check_assignable(TYPE_STRING, Value(TYPE_STRING, ""), literal_form=TYPE_STRING).value == ""
    assert check_assignable(TYPE_STRING, Value(TYPE_CHAR, "x")).type == TYPE_STRING
    with pytest.raises(PseudocodeRuntimeError) as info:
        check_assignable(TYPE_STRING, Value(TYPE_CHAR, "hello"), literal_form=TYPE_CHAR)
    assert _kind(info) == "TypeError"
    with pytest.raises(PseudocodeRuntimeError):
        check_assignable(TYPE_STRING, Value(TYPE_INTEGER, 5))


def test_input_coercion():
    assert coerce_input(TYPE_INTEGER, "42") == Value(TYPE_INTEGER, 42)
    assert coerce_input(TYPE_REAL, "-2.5") == Value(TYPE_REAL, -2.5)
    assert coerce_input(TYPE_BOOLEAN, "true") == Value(TYPE_BOOLEAN, True)
    assert coerce_input(TYPE_CHAR, "x") == Value(TYPE_CHAR, "x")
    assert coerce_input(TYPE_STRING, "42") == Value(TYPE_STRING, "42")


def test_input_values_are_checked_after_coercion():
    assert check_assignable(TYPE_INTEGER, Value(TYPE_STRING, "12"), from_input=True) == Value(TYPE_INTEGER, 12)
    assert check_assignable(TYPE_STRING, Value(TYPE_STRING, "x"), from_input=True) == Value(TYPE_STRING, "x")
    with pytest.raises(PseudocodeRuntimeError) as info:
        check_assignable(TYPE_INTEGER, Value(TYPE_STRING, "abc"), from_input=True)
    assert info.value.message == "Cannot assign STRING value to INTEGER"


def test_clean_input():
    assert clean_input("\x1b[31m 42\r\n") == "42"


def test_array_reads_and_writes_inside_bounds():
    array = PseudoArray.create(TYPE_INTEGER, [(-2, 2)])
    for index in range(-2, 3):
        array.set([index], index * 10)
        assert array.get([index]) == index * 10
    assert isinstance(array.data, np.ndarray)


@pytest.mark.parametrize("index", [-3, 3, 100])
def test_array_index_out_of_bounds(index):
    array = PseudoArray.create(TYPE_INTEGER, [(-2, 2)])
    with pytest.raises(PseudocodeRuntimeError) as info:
        array.get([index])
    assert _kind(info) == "IndexError"
    assert info.value.message == f"ARRAY index {index} out of bounds (-2 to 2)"


def test_two_dimensional_array():
    grid = PseudoArray.create(TYPE_CHAR, [(1, 2), (1, 3)])
    assert grid.data.shape == (2, 3)
    assert grid.get([2, 3]) == " "
    grid.set([2, 3], "z")
    assert grid.get([2, 3]) == "z"
    with pytest.raises(PseudocodeRuntimeError) as info:
        grid.get([1])
    assert _kind(info) == "TypeError"


def test_array_bounds_validation():
    with pytest.raises(PseudocodeRuntimeError) as info:
        PseudoArray.create(TYPE_INTEGER, [(5, 1)])
    assert _kind(info) == "ValueError"
    with pytest.raises(PseudocodeRuntimeError) as info:
        PseudoArray.create(TYPE_INTEGER, [(1, 1001), (1, 1000)])
    assert _kind(info) == "ValueError"


def test_array_copy_is_independent():
    array = PseudoArray.create(TYPE_INTEGER, [(1, 2)])
    clone = array.copy()
    clone.set([1], 9)
    assert array.get([1]) == 0


def test_to_string():
    assert to_string(Value(TYPE_BOOLEAN, True)) == "TRUE"
    assert to_string(Value(TYPE_BOOLEAN, False)) == "FALSE"
    assert to_string(Value(TYPE_REAL, 3.0)) == "3"
    assert to_string(Value(TYPE_REAL, 0.1)) == "0.1"
    assert to_string(NONE_VALUE) == ""


def test_format_real_round_trip():
    text = format_real(1.0)
    assert text == "1.0"
    assert float(text) == 1.0
    assert format_real(2.5) == "2.5"
