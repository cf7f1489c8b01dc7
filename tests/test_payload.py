import numpy as np
import pytest

from provmark import payload as pl


def test_text_to_bits_msb_first():
    assert pl.text_to_bits("A").tolist() == [0, 1, 0, 0, 0, 0, 0, 1]
    assert pl.text_to_bits("ab").size == 16


def test_bits_to_text_filters_and_drops_trailing():
    bits = np.concatenate([pl.text_to_bits("Hi"), [0, 0, 0, 0, 0, 0, 0, 1], [1, 0, 1]])
    assert pl.bits_to_text(bits) == "Hi "


def test_ecc_layout():
    assert pl.ecc_encode([1, 0]).tolist() == [1, 1, 1, 0, 0, 0]


def test_ecc_tolerates_one_flip_per_group():
    original = np.array([1, 0, 1, 1, 0], dtype=np.uint8)
    encoded = pl.ecc_encode(original)
    for group in range(original.size):
        for copy in range(pl.REDUNDANCY):
            damaged = encoded.copy()
            damaged[group * pl.REDUNDANCY + copy] ^= 1
            assert np.array_equal(pl.ecc_decode(damaged, original.size), original)


def test_ecc_fails_at_two_flips():
    original = np.array([1, 0], dtype=np.uint8)
    damaged = pl.ecc_encode(original)
    damaged[0] ^= 1
    damaged[1] ^= 1
    decoded = pl.ecc_decode(damaged, original.size)
    assert decoded[0] == 0 and decoded[1] == 0


def test_build_payload_pads_to_even_scan_length():
    text = pl.build_payload("alice@x.com", "2024-01-01T00:00:00.000Z")
    assert text == "alice@x.com|2024-01-01T00:00:00.000Z"
    odd = pl.build_payload("bob@x.com1", "2024-01-01T00:00:00.000Z")
    assert len(odd) % 2 == 0 and odd.endswith(" ")
    short = pl.build_payload("bo", "2024-01-01T00:00:00.000Z")
    assert len(short) == pl.MIN_PAYLOAD_CHARS


def test_encoded_length():
    bits = pl.encode_payload("alice@x.com", "2024-01-01T00:00:00.000Z")
    assert bits.size == 36 * 8 * pl.REDUNDANCY


@pytest.mark.parametrize("creator, ts", [
    ("", "2024-01-01T00:00:00.000Z"),
    ("alice@x.com", ""),
    ("alice|x", "2024-01-01T00:00:00.000Z"),
    ("alice@x.com", "2024-01-01T00:00:00Z"),
    ("a" * 70, "2024-01-01T00:00:00.000Z"),
])
def test_malformed_payload_rejected(creator, ts):
    with pytest.raises(pl.PayloadError):
        pl.build_payload(creator, ts)


def test_parse_payload():
    found = pl.parse_payload("alice@x.com|2024-01-01T00:00:00.000Z   ")
    assert found == ("alice@x.com", "2024-01-01T00:00:00.000Z", "alice@x.com|2024-01-01T00:00:00.000Z")
    assert pl.parse_payload("  alice@x.com|2024-01-01T00:00:00.000Z") is None
    assert pl.parse_payload("alice@x.com|2024-01-01T00:00:00Z") is None


def test_max_length_payload_kept_whole():
    creator = "c" * (pl.MAX_PAYLOAD_CHARS - 25)
    text = pl.build_payload(creator, "2024-01-01T00:00:00.000Z")
    assert text == f"{creator}|2024-01-01T00:00:00.000Z"
    assert len(text) == pl.MAX_PAYLOAD_CHARS
    with pytest.raises(pl.PayloadError):
        pl.build_payload(creator + "c", "2024-01-01T00:00:00.000Z")
