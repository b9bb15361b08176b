import pytest

from greenagent.service.wallet import (
    derive_address,
    format_address,
    generate_private_key,
    generate_secure_id,
    is_valid_address,
    is_valid_private_key,
)


def test_generated_key_derives_stable_address():
    key = generate_private_key()

    assert is_valid_private_key(key)
    address = derive_address(key)
    assert is_valid_address(address)
    assert derive_address(key) == address
    assert generate_private_key() != key


def test_known_key_address():
    key = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
    assert derive_address(key) == "0x2c7536E3605D9C16a7a3D7b1898e529396a65c23"


def test_derive_address_rejects_bad_keys():
    with pytest.raises(ValueError):
        derive_address("0x1234")


def test_secure_ids_are_16_hex_chars_and_distinct():
    ids = {generate_secure_id() for _ in range(50)}
    assert len(ids) == 50
    assert all(len(i) == 16 and int(i, 16) >= 0 for i in ids)


@pytest.mark.parametrize(
    "value, valid",
    [
        ("0x" + "a" * 40, True),
        ("0x" + "A" * 40, True),
        ("0x" + "a" * 39, False),
        ("a" * 42, False),
        ("0x" + "g" * 40, False),
        (None, False),
    ],
)
def test_is_valid_address(value, valid):
    assert is_valid_address(value) is valid


def test_format_address():
    assert format_address("0x1234567890abcdef1234567890abcdef12345678") == "0x1234...5678"
    assert format_address("0x12") == "0x12"
