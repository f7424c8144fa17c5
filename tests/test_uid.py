import string

from tusstore.uid import uid


def test_uid_is_32_hex_digits():
    value = uid()
    assert len(value) == 32
    assert set(value) <= set(string.hexdigits.lower())


def test_uid_values_are_unique():
    values = {uid() for _ in range(200)}
    assert len(values) == 200


def test_uid_decodes_to_16_bytes():
    assert len(bytes.fromhex(uid())) == 16