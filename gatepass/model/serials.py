"""
Ticket serials: 6 characters from an alphabet without the look-alikes
0/O and 1/I, so a code read off a phone screen at a gate can be typed back
without guessing.

32 symbols ** 6 positions ~ 1.07e9 codes. Against N issued serials a draw
collides with probability N / 32**6, so the existence check almost never
loops; the UNIQUE index on attendees.serial stays the actual authority.
"""
from __future__ import annotations

import logging
import re
import secrets
from typing import Awaitable, Callable, Iterable, List

from ..errors import MalformedSerial, PersistenceConflict

logger = logging.getLogger(__name__)

ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
SERIAL_LENGTH = 6
SERIAL_RE = re.compile(rf"^[{ALPHABET}]{{{SERIAL_LENGTH}}}$")

_NOT_IN_ALPHABET = re.compile(rf"[^{ALPHABET}]")

# upper bound on draws for a single serial before giving up
MAX_DRAWS = 64


def draw_serial() -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(SERIAL_LENGTH))


def is_serial(value: str) -> bool:
    return SERIAL_RE.match(value or "") is not None


def normalize_serial(value: object) -> str:
    """
    Uppercase, drop everything outside the alphabet, keep 6 characters.
    Raises MalformedSerial if fewer than 6 usable characters remain.
    """
    s = _NOT_IN_ALPHABET.sub("", str(value or "").upper())[:SERIAL_LENGTH]
    if not SERIAL_RE.match(s):
        raise MalformedSerial(
            f"Serial must be {SERIAL_LENGTH} characters from {ALPHABET}."
        )
    return s


class SerialGenerator:
    """
    Draws serials and checks the purchase store so the one returned is not
    already issued. `exists` is the store's attendee-serial lookup; any store
    error it raises propagates and aborts the caller (fail closed).
    """

    def __init__(
        self,
        exists: Callable[[str], Awaitable[bool]],
        draw: Callable[[], str] = draw_serial,
        max_draws: int = MAX_DRAWS,
    ) -> None:
        self.exists = exists
        self.draw = draw
        self.max_draws = max_draws

    async def generate(self, taken: Iterable[str] = ()) -> str:
        taken = set(taken)
        for _ in range(self.max_draws):
            serial = self.draw()
            if serial in taken:
                continue
            if not await self.exists(serial):
                return serial
            logger.info("serial collision on draw, redrawing")
        raise PersistenceConflict(
            f"no free serial after {self.max_draws} draws"
        )

    async def generate_many(self, n: int) -> List[str]:
        serials: List[str] = []
        for _ in range(n):
            serials.append(await self.generate(taken=serials))
        return serials
