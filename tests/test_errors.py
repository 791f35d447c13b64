import pytest

from kvs.errors import KeyNotFoundError, KvsError, UnexpectedCommandTypeError


def test_key_not_found_message():
    assert str(KeyNotFoundError()) == "Key not found"


def test_unexpected_command_type_message():
    assert str(UnexpectedCommandTypeError()) == "Unexpected command type"


def test_string_error_keeps_message():
    assert str(KvsError("something broke")) == "something broke"


@pytest.mark.parametrize(
    "error_type, message",
    [
        (KeyNotFoundError, "Key not found"),
        (UnexpectedCommandTypeError, "Unexpected command type"),
    ],
)
def test_specific_errors_are_caught_as_kvs_error(error_type, message):
    with pytest.raises(KvsError) as info:
        raise error_type()
    assert type(info.value) is error_type
    assert str(info.value) == message


def test_custom_message_for_key_not_found():
    error = KeyNotFoundError("missing: key1")
    assert str(error) == "missing: key1"
    assert isinstance(error, KvsError)