import pytest

from auth.service import TokenBuilder


@pytest.fixture
def builder():
    return TokenBuilder("secret key")


@pytest.mark.parametrize("user_id", ["0", "1", "42", str(2 ** 64 - 1)])
def test_round_trip(builder, user_id):
    token = builder.create_token(user_id)
    assert builder.is_token_valid(token)
    assert builder.get_id_from_token(token) == user_id


def test_token_is_hex_of_id_and_mac(builder):
    token = builder.create_token("7")
    assert len(token) == 2 * (8 + 32)
    assert token[:16] == "0000000000000007"


def test_tampered_token_is_invalid(builder):
    token = builder.create_token("7")
    forged = builder.create_token("8")[:16] + token[16:]
    assert not builder.is_token_valid(forged)
    with pytest.raises(ValueError):
        builder.get_id_from_token(forged)


def test_other_secret_rejects_token(builder):
    assert not TokenBuilder("another key").is_token_valid(builder.create_token("7"))


@pytest.mark.parametrize("token", ["", "zz", "abcd", None, "00" * 41])
def test_malformed_tokens_are_invalid(builder, token):
    assert not builder.is_token_valid(token)


@pytest.mark.parametrize("user_id", ["-1", str(2 ** 64), "abc"])
def test_create_rejects_ids_outside_uint64(builder, user_id):
    with pytest.raises(ValueError):
        builder.create_token(user_id)
