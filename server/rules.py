"""
Bid and challenge rules for Perudo.

Pure functions only: no I/O and no mutable state. Everything the room needs
to decide whether a bid is legal and who loses a challenge lives here, so the
rules can be tested exhaustively without a room or a socket.

Bid ordering:
    Bids are compared as (count, value) tuples. A raise must strictly
    increase count, or keep count and strictly increase value.
    There is no upper clamp on count: a bid larger than the dice in play is
    a legal raise that always resolves false.

Jokers:
    Faces of 1 count toward any bid on 2-6 unless the round is palifico.
    Bids on 1 are never allowed in a palifico round.
"""

import random
from dataclasses import dataclass
from typing import Iterable, NamedTuple, Optional, Sequence

from constants import DIE_FACES, JOKER_FACE


@dataclass(frozen=True)
class Bid:
    """
    A claim that at least `count` dice show `value` across all hands.

    Attributes:
        count: Claimed number of matching dice (>= 1).
        value: Claimed die face (1-6).
    """

    count: int
    value: int

    def to_dict(self) -> dict:
        return {"count": self.count, "value": self.value}

    @classmethod
    def from_dict(cls, d: dict) -> "Bid":
        return cls(count=d["count"], value=d["value"])

    def as_tuple(self) -> tuple[int, int]:
        return (self.count, self.value)

    def __str__(self) -> str:
        return f"{self.count}x{self.value}"


class DudoOutcome(NamedTuple):
    """Result of a Dudo challenge."""
    actual_count: int
    bidder_loses: bool


class CalzaOutcome(NamedTuple):
    """Result of a Calza (exact) call."""
    actual_count: int
    caller_wins: bool


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def is_well_formed(bid: Bid) -> bool:
    """Check count >= 1 and value in 1..6, with integer fields."""
    return (
        _is_int(bid.count)
        and _is_int(bid.value)
        and bid.count >= 1
        and 1 <= bid.value <= DIE_FACES
    )


def check_raise(
    previous: Optional[Bid],
    proposed: Bid,
    is_palifico: bool = False,
) -> Optional[str]:
    """
    Explain why a proposed bid is not a legal raise.

    Args:
        previous: The standing bid, or None for the opening bid.
        proposed: The bid being placed.
        is_palifico: Whether jokers are disabled this round.

    Returns:
        A human-readable reason, or None if the bid is legal.
    """
    if not is_well_formed(proposed):
        return f"Bid must have count >= 1 and value 1-{DIE_FACES}"

    if is_palifico and proposed.value == JOKER_FACE:
        return "Bids on aces are not allowed in a palifico round"

    if previous is None:
        return None

    if proposed.as_tuple() <= previous.as_tuple():
        if proposed.count < previous.count:
            return f"Count cannot go below {previous.count}"
        return f"Bid must raise {previous}: more dice, or the same count on a higher face"

    return None


def is_valid_raise(
    previous: Optional[Bid],
    proposed: Bid,
    is_palifico: bool = False,
) -> bool:
    """True if `proposed` may follow `previous`."""
    return check_raise(previous, proposed, is_palifico) is None


def count_matches(
    hands: Iterable[Sequence[int]],
    value: int,
    jokers_wild: bool,
) -> int:
    """
    Count dice across all hands that satisfy a bid on `value`.

    Args:
        hands: One sequence of die faces per player.
        value: The bid face.
        jokers_wild: Whether faces of 1 count toward a non-1 bid.

    Returns:
        Number of matching dice.
    """
    wild = jokers_wild and value != JOKER_FACE
    total = 0
    for hand in hands:
        for die in hand:
            if die == value or (wild and die == JOKER_FACE):
                total += 1
    return total


def resolve_dudo(
    hands: Iterable[Sequence[int]],
    bid: Bid,
    is_palifico: bool,
) -> DudoOutcome:
    """
    Resolve a Dudo challenge against `bid`.

    The bid is false (the bidder loses a die) iff fewer than bid.count dice
    match. Otherwise the challenger loses a die.
    """
    actual = count_matches(hands, bid.value, jokers_wild=not is_palifico)
    return DudoOutcome(actual_count=actual, bidder_loses=actual < bid.count)


def resolve_calza(
    hands: Iterable[Sequence[int]],
    bid: Bid,
    is_palifico: bool,
) -> CalzaOutcome:
    """Resolve a Calza call: the caller wins iff the count is exact."""
    actual = count_matches(hands, bid.value, jokers_wild=not is_palifico)
    return CalzaOutcome(actual_count=actual, caller_wins=actual == bid.count)


def next_raise(bid: Bid, is_palifico: bool = False) -> Bid:
    """
    Smallest-commitment raise over `bid`.

    Palifico rounds keep the face and add a die. Otherwise the face goes up
    while it can, then the count.
    """
    if is_palifico or bid.value >= DIE_FACES:
        return Bid(count=bid.count + 1, value=bid.value)
    return Bid(count=bid.count, value=bid.value + 1)


def roll_dice(count: int, rng: Optional[random.Random] = None) -> list[int]:
    """Roll `count` dice. Pass a seeded Random for reproducible hands."""
    rng = rng or random
    return [rng.randint(1, DIE_FACES) for _ in range(count)]


def total_dice(hands: Iterable[Sequence[int]]) -> int:
    return sum(len(hand) for hand in hands)
