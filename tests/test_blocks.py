import textwrap

import pytest

from blocks import BlockMatcher, extract_definitions, split_source
from lexer import PseudocodeParseError


def _lines(text):
    return split_source(textwrap.dedent(text).strip("\n"))


def _numbers(lines):
    return [line.number for line in lines]


def test_split_source_drops_blank_and_comment_lines():
    lines = _lines(
        """
        // heading
        OUTPUT 1

        OUTPUT 2  // trailing
        """
    )
    assert _numbers(lines) == [2, 4]
    assert lines[1].code == "OUTPUT 2"
    assert lines[1].head == "OUTPUT"


def test_extract_definitions():
    lines = _lines(
        """
        OUTPUT "start"
        PROCEDURE Greet(Name : STRING)
            OUTPUT "Hi ", Name
        ENDPROCEDURE
        FUNCTION Twice(N : INTEGER) RETURNS INTEGER
            RETURN N * 2
        ENDFUNCTION
        CALL Greet("Ann")
        """
    )
    definitions, main = extract_definitions(lines, "<test>")
    assert sorted(definitions) == ["greet", "twice"]
    assert definitions["greet"].kind == "PROCEDURE"
    assert _numbers(definitions["greet"].body) == [3]
    assert definitions["twice"].return_type == "INTEGER"
    assert _numbers(main) == [1, 8]


def test_missing_endprocedure():
    lines = _lines(
        """
        PROCEDURE Broken
            OUTPUT 1
        """
    )
    with pytest.raises(PseudocodeParseError) as info:
        extract_definitions(lines, "<test>")
    assert info.value.message == "Missing ENDPROCEDURE for PROCEDURE starting at line 1"
    assert info.value.line == 1


def test_invalid_return_type_is_rejected_while_extracting():
    lines = _lines(
        """
        FUNCTION F RETURNS NUMBER
            RETURN 1
        ENDFUNCTION
        """
    )
    with pytest.raises(PseudocodeParseError) as info:
        extract_definitions(lines, "<test>")
    assert info.value.kind == "TypeError"


def test_both_if_forms_partition_the_same_way():
    inline = _lines(
        """
        IF X > 1 THEN
            OUTPUT "a"
        ELSE
            OUTPUT "b"
        ENDIF
        """
    )
    two_line = _lines(
        """
        IF X > 1
          THEN
            OUTPUT "a"
          ELSE
            OUTPUT "b"
        ENDIF
        """
    )
    first = BlockMatcher().match_if(inline, 0, inline_then=True)
    second = BlockMatcher().match_if(two_line, 0, inline_then=False)
    assert [l.code for l in first.then_body] == [l.code for l in second.then_body] == ['OUTPUT "a"']
    assert [l.code for l in first.else_body] == [l.code for l in second.else_body] == ['OUTPUT "b"']
    assert first.length == 5
    assert second.length == 6


def test_nested_else_belongs_to_inner_if():
    lines = _lines(
        """
        IF A THEN
            IF B THEN
                OUTPUT 1
            ELSE
                OUTPUT 2
            ENDIF
        ELSE
            OUTPUT 3
        ENDIF
        """
    )
    match = BlockMatcher().match_if(lines, 0, inline_then=True)
    assert _numbers(match.then_body) == [2, 3, 4, 5, 6]
    assert _numbers(match.else_body) == [8]


def test_missing_then_for_two_line_if():
    lines = _lines(
        """
        IF X > 1
            OUTPUT "a"
        ENDIF
        """
    )
    with pytest.raises(PseudocodeParseError) as info:
        BlockMatcher().match_if(lines, 0, inline_then=False)
    assert info.value.message == "expected THEN after IF"


def test_missing_endif_reports_opener_line():
    lines = _lines(
        """
        OUTPUT 0
        IF X THEN
            OUTPUT 1
        """
    )
    with pytest.raises(PseudocodeParseError) as info:
        BlockMatcher().match_if(lines, 1, inline_then=True)
    assert info.value.message == "Missing ENDIF for IF starting at line 2"
    assert info.value.line == 2


def test_for_matches_nested_next_by_depth():
    lines = _lines(
        """
        FOR I <- 1 TO 2
            FOR J <- 1 TO 2
                OUTPUT I * J
            NEXT J
        NEXT i
        """
    )
    match = BlockMatcher().match_for(lines, 0, "I")
    assert _numbers(match.body) == [2, 3, 4]
    assert match.closer.number == 5


def test_bare_next_closes_for():
    lines = _lines(
        """
        FOR I <- 1 TO 2
            OUTPUT I
        NEXT
        """
    )
    assert BlockMatcher().match_for(lines, 0, "I").length == 3


def test_mismatched_next():
    lines = _lines(
        """
        FOR I <- 1 TO 2
            OUTPUT I
        NEXT J
        """
    )
    with pytest.raises(PseudocodeParseError) as info:
        BlockMatcher().match_for(lines, 0, "I")
    assert info.value.message == "Mismatched NEXT: expected NEXT I but found NEXT J"
    assert info.value.line == 3


@pytest.mark.parametrize(
    "opener, closer",
    [("WHILE X < 3 DO", "ENDWHILE"), ("REPEAT", "UNTIL X > 3"), ("CASE OF X", "ENDCASE")],
)
def test_generic_blocks(opener, closer):
    word = opener.split()[0]
    lines = split_source("\n".join([opener, opener, "OUTPUT 1", closer, closer]))
    match = BlockMatcher().match_block(lines, 0, word)
    assert _numbers(match.body) == [2, 3, 4]
    assert match.closer.number == 5


def test_missing_endwhile():
    lines = split_source("WHILE TRUE\nOUTPUT 1")
    with pytest.raises(PseudocodeParseError) as info:
        BlockMatcher().match_block(lines, 0, "WHILE")
    assert info.value.message == "Missing ENDWHILE for WHILE starting at line 1"


def test_matches_are_memoised_per_opener_line():
    lines = split_source("WHILE TRUE\nOUTPUT 1\nENDWHILE")
    matcher = BlockMatcher()
    assert matcher.match_block(lines, 0, "WHILE") is matcher.match_block(lines, 0, "WHILE")
