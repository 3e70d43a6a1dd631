import pytest

from qflash.at_tok import (
    AtTokenError,
    AtTokenizer,
    char_count,
    get_element_value,
    start_tokenizing,
)


def test_csq_line_yields_two_ints():
    tok = start_tokenizing("+CSQ: 20,99")
    assert tok.next_int() == 20
    assert tok.next_int() == 99
    assert tok.has_more() is False


def test_missing_colon_is_rejected():
    with pytest.raises(AtTokenError):
        start_tokenizing("OK")


def test_none_line_is_rejected():
    with pytest.raises(AtTokenError):
        start_tokenizing(None)


def test_quoted_string_field():
    tok = start_tokenizing('+COPS: 0,0,"CHINA MOBILE",7')
    assert tok.next_int() == 0
    assert tok.next_int() == 0
    assert tok.next_str() == "CHINA MOBILE"
    assert tok.next_int() == 7
    assert not tok.has_more()


def test_quoted_string_containing_comma():
    tok = start_tokenizing('+X: "a,b",5')
    assert tok.next_str() == "a,b"
    assert tok.next_int() == 5


def test_hex_ints():
    tok = start_tokenizing("+X: 1A,0xff")
    assert tok.next_hex_int() == 0x1A
    assert tok.next_hex_int() == 0xFF


def test_int_accepts_leading_digits_only():
    tok = AtTokenizer("12abc,3")
    assert tok.next_int() == 12
    assert tok.next_int() == 3


def test_negative_int():
    tok = AtTokenizer(" -5")
    assert tok.next_int() == -5


def test_empty_field_is_not_an_int():
    tok = AtTokenizer(",4")
    with pytest.raises(AtTokenError):
        tok.next_int()
    assert tok.next_int() == 4


def test_bool_values():
    tok = AtTokenizer("1,0,2")
    assert tok.next_bool() is True
    assert tok.next_bool() is False
    with pytest.raises(AtTokenError):
        tok.next_bool()


def test_exhausted_tokenizer_raises():
    tok = AtTokenizer("7")
    assert tok.next_int() == 7
    assert tok.remaining is None
    with pytest.raises(AtTokenError):
        tok.next_str()
    with pytest.raises(AtTokenError):
        tok.next_int()
    with pytest.raises(AtTokenError):
        tok.skip_comma()


def test_skip_comma_moves_to_next_field():
    tok = AtTokenizer("abc,def")
    tok.skip_comma()
    assert tok.remaining == "def"
    assert tok.next_str() == "def"


def test_skip_comma_without_comma_goes_to_end():
    tok = AtTokenizer("abc")
    tok.skip_comma()
    assert tok.remaining == ""
    assert tok.has_more() is False


def test_char_count():
    assert char_count("a,b,c", ",") == 2
    assert char_count("abc", "") == 0
    assert char_count("", ",") == 0


def test_get_element_value_found():
    result = get_element_value("<a>val</a>rest", "<a>", "</a>")
    assert result == ("val", "rest")


def test_get_element_value_missing_tags():
    assert get_element_value("<a>val", "<a>", "</a>") is None
    assert get_element_value("val</a>", "<a>", "</a>") is None