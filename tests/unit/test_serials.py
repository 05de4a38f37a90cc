"""Serial drawing, normalization and collision handling."""

import pytest

from gatepass.errors import MalformedSerial, PersistenceConflict, StoreUnavailable
from gatepass.model.serials import (
    ALPHABET, SERIAL_LENGTH, SerialGenerator, draw_serial, is_serial,
    normalize_serial,
)

from fakes import ScriptedDraw, never_taken


def test_alphabet_has_no_lookalikes():
    assert len(ALPHABET) == 32
    assert len(set(ALPHABET)) == 32
    for c in "0O1I":
        assert c not in ALPHABET


def test_draw_serial_shape():
    for _ in range(200):
        s = draw_serial()
        assert len(s) == SERIAL_LENGTH
        assert is_serial(s)


@pytest.mark.parametrize("raw,expected", [
    ("ABCDEF", "ABCDEF"),
    ("abcdef", "ABCDEF"),
    ("  abc-d23 ", "ABCD23"),
    ("AB CD 23", "ABCD23"),
    ("ABCDEFGH", "ABCDEF"),
])
def test_normalize_serial(raw, expected):
    assert normalize_serial(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "ABC", "??????", "O0O0I1"])
def test_normalize_serial_rejects_short_input(raw):
    with pytest.raises(MalformedSerial):
        normalize_serial(raw)


@pytest.mark.asyncio
async def test_generate_redraws_on_collision():
    async def exists(serial):
        return serial == "AAAAAA"

    draw = ScriptedDraw(["AAAAAA", "AAAAAA", "BBBBBB"])
    gen = SerialGenerator(exists, draw=draw)

    assert await gen.generate() == "BBBBBB"
    assert draw.calls == 3


@pytest.mark.asyncio
async def test_generate_gives_up_after_max_draws():
    async def exists(serial):
        return True

    draw = ScriptedDraw(["AAAAAA"])
    gen = SerialGenerator(exists, draw=draw, max_draws=5)

    with pytest.raises(PersistenceConflict):
        await gen.generate()
    assert draw.calls == 5


@pytest.mark.asyncio
async def test_generate_many_never_repeats_within_batch():
    draw = ScriptedDraw(["AAAAAA", "AAAAAA", "CCCCCC", "CCCCCC", "DDDDDD"])
    gen = SerialGenerator(never_taken, draw=draw)

    assert await gen.generate_many(3) == ["AAAAAA", "CCCCCC", "DDDDDD"]


@pytest.mark.asyncio
async def test_store_failure_during_existence_check_propagates():
    async def exists(serial):
        raise StoreUnavailable("store unavailable (serial_exists)")

    gen = SerialGenerator(exists)
    with pytest.raises(StoreUnavailable):
        await gen.generate()
