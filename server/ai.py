"""AI personalities and decision making for CPU players in Perudo."""

import asyncio
import logging
import math
import os
import random
from dataclasses import dataclass
from typing import Optional

from config import config
from constants import DIE_FACES, JOKER_FACE, TIMEOUT_DUDO_THRESHOLD
from errors import GameError
from game import Game, GamePhase, Player
from rules import Bid, count_matches, is_valid_raise, next_raise


# Debug logging configuration
# Set AI_DEBUG=1 environment variable to enable detailed AI decision logging
AI_DEBUG = os.environ.get("AI_DEBUG", "0") == "1"

# Create a dedicated logger for AI decisions
ai_logger = logging.getLogger("perudo.ai")
if AI_DEBUG:
    ai_logger.setLevel(logging.DEBUG)
    if not ai_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            "%(asctime)s [AI] %(message)s", datefmt="%H:%M:%S"
        ))
        ai_logger.addHandler(handler)


def ai_log(message: str):
    """Log AI decision info when AI_DEBUG is enabled."""
    if AI_DEBUG:
        ai_logger.debug(message)


# =============================================================================
# CPU Turn Timing Configuration (seconds)
# =============================================================================

CPU_TIMING = {
    # Pause before a CPU deals the next round
    "pre_roll": (0.6, 1.0),
    # Variance multiplier range for chaotic personalities
    "thinking_multiplier_chaotic": (0.5, 1.6),
}


# =============================================================================
# Personalities
# =============================================================================

@dataclass(frozen=True)
class Personality:
    """
    Decision parameters shared by every CPU with the same temperament.

    Attributes:
        id: Registry key (shark, turtle, ...).
        label: Short description shown to players.
        dudo_threshold: Call Dudo once the bid is at least this likely false.
        calza_threshold: Higher means Calza is attempted less often.
        bluff_frequency: Chance of bidding on a face the hand does not back.
        aggression: Chance of jumping an extra die when raising.
        unpredictability: Noise added to thresholds (0 = fully deterministic).
    """
    id: str
    label: str
    dudo_threshold: float
    calza_threshold: float
    bluff_frequency: float
    aggression: float
    unpredictability: float


PERSONALITIES: dict[str, Personality] = {
    "shark": Personality("shark", "Aggressive Predator", 0.55, 0.8, 0.25, 0.75, 0.2),
    "turtle": Personality("turtle", "Careful & Patient", 0.85, 0.3, 0.08, 0.15, 0.1),
    "chaos": Personality("chaos", "Unpredictable Wildcard", 0.65, 0.6, 0.45, 0.5, 0.9),
    "calculator": Personality("calculator", "Pure Mathematics", 0.70, 0.4, 0.15, 0.4, 0.0),
    "bluffer": Personality("bluffer", "Master of Deception", 0.88, 0.5, 0.55, 0.6, 0.4),
    "trapper": Personality("trapper", "Sets Traps", 0.72, 0.45, 0.3, 0.55, 0.25),
}


@dataclass
class CPUProfile:
    """Named CPU opponent with a personality."""
    name: str
    personality: Personality

    @property
    def style(self) -> str:
        return self.personality.label

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "style": self.style,
            "personality": self.personality.id,
        }


_NAME_TO_PERSONALITY = {
    "El Bloffo": "shark",
    "La Serpiente": "shark",
    "El Bandido": "shark",
    "El Zorro Viejo": "shark",
    "Doña Suerte": "turtle",
    "Tía Pícara": "turtle",
    "Señora Riesgo": "turtle",
    "Don Peligro": "turtle",
    "La Mentirosa": "chaos",
    "El Calaverón": "chaos",
    "La Calavera Loca": "chaos",
    "Señorita Dados": "chaos",
    "Profesor Huesos": "calculator",
    "Don Dinero": "calculator",
    "Capitán Dados": "calculator",
    "Conde Cubiletes": "calculator",
    "El Tramposo": "bluffer",
    "Madame Fortuna": "bluffer",
    "El Embustero": "bluffer",
    "Doña Trampa": "bluffer",
    "Señor Dudoso": "trapper",
    "Don Calzón": "trapper",
    "El Gran Jugador": "trapper",
    "El Tahúr": "trapper",
    "Don Faroleo": "trapper",
}

CPU_PROFILES = [
    CPUProfile(name=name, personality=PERSONALITIES[pid])
    for name, pid in _NAME_TO_PERSONALITY.items()
]

DEFAULT_PROFILE = CPUProfile(name="CPU", personality=PERSONALITIES["calculator"])

# Track profiles per room (room_code -> set of used profile names)
_room_used_profiles: dict[str, set[str]] = {}
# Track cpu_id -> (room_code, profile) mapping
_cpu_profiles: dict[str, tuple[str, CPUProfile]] = {}


def _claim(cpu_id: str, room_code: str, profile: CPUProfile) -> CPUProfile:
    _room_used_profiles.setdefault(room_code, set()).add(profile.name)
    _cpu_profiles[cpu_id] = (room_code, profile)
    return profile


def assign_profile(
    cpu_id: str,
    room_code: str,
    personality: Optional[str] = None,
    rng: Optional[random.Random] = None,
) -> Optional[CPUProfile]:
    """
    Assign a random unused profile to a CPU player in a room.

    Args:
        cpu_id: The CPU player's id.
        room_code: Room the CPU sits in.
        personality: Restrict to one personality (Gauntlet tiers).
        rng: Random source for reproducible picks.

    Returns:
        The profile, or None if every matching profile is taken.
    """
    used_in_room = _room_used_profiles.get(room_code, set())
    available = [
        p for p in CPU_PROFILES
        if p.name not in used_in_room and (personality is None or p.personality.id == personality)
    ]
    if not available:
        return None
    return _claim(cpu_id, room_code, (rng or random).choice(available))


def assign_specific_profile(cpu_id: str, profile_name: str, room_code: str) -> Optional[CPUProfile]:
    """Assign a specific profile to a CPU player by name in a specific room."""
    used_in_room = _room_used_profiles.get(room_code, set())
    for profile in CPU_PROFILES:
        if profile.name == profile_name and profile.name not in used_in_room:
            return _claim(cpu_id, room_code, profile)
    return None


def release_profile(cpu_id: str) -> None:
    """Release a CPU player's profile back to its room's pool."""
    entry = _cpu_profiles.pop(cpu_id, None)
    if entry is None:
        return
    room_code, profile = entry
    if room_code in _room_used_profiles:
        _room_used_profiles[room_code].discard(profile.name)
        if not _room_used_profiles[room_code]:
            del _room_used_profiles[room_code]


def cleanup_room_profiles(room_code: str):
    """Clean up all profile tracking for a room when it's deleted."""
    _room_used_profiles.pop(room_code, None)
    to_remove = [cpu_id for cpu_id, (rc, _) in _cpu_profiles.items() if rc == room_code]
    for cpu_id in to_remove:
        del _cpu_profiles[cpu_id]


def reset_all_profiles():
    """Reset all profile tracking (for cleanup)."""
    _room_used_profiles.clear()
    _cpu_profiles.clear()


def get_profile(cpu_id: str) -> Optional[CPUProfile]:
    """Get the profile for a CPU player."""
    entry = _cpu_profiles.get(cpu_id)
    return entry[1] if entry else None


def get_available_profiles(room_code: str) -> list[dict]:
    """Get available CPU profiles for a specific room."""
    used_in_room = _room_used_profiles.get(room_code, set())
    return [p.to_dict() for p in CPU_PROFILES if p.name not in used_in_room]


def get_all_profiles() -> list[dict]:
    """Get all CPU profiles for display."""
    return [p.to_dict() for p in CPU_PROFILES]


# =============================================================================
# Probability model
# =============================================================================

def match_probability(value: int, is_palifico: bool) -> float:
    """Chance one unseen die supports a bid on `value`."""
    if is_palifico or value == JOKER_FACE:
        return 1 / DIE_FACES
    return 2 / DIE_FACES


def binomial_pmf(n: int, k: int, p: float) -> float:
    if k < 0 or k > n:
        return 0.0
    return math.comb(n, k) * (p ** k) * ((1 - p) ** (n - k))


def bid_failure_probability(
    bid: Bid,
    hand: list[int],
    total_dice: int,
    is_palifico: bool,
) -> float:
    """
    Probability that fewer than bid.count dice match, given our own hand.

    Unseen dice are modelled as independent: X ~ Binomial(unseen, p).
    """
    known = count_matches([hand], bid.value, jokers_wild=not is_palifico)
    needed = bid.count - known
    if needed <= 0:
        return 0.0
    unseen = total_dice - len(hand)
    if needed > unseen:
        return 1.0
    p = match_probability(bid.value, is_palifico)
    return sum(binomial_pmf(unseen, k, p) for k in range(needed))


def exact_probability(
    bid: Bid,
    hand: list[int],
    total_dice: int,
    is_palifico: bool,
) -> float:
    """Probability that exactly bid.count dice match."""
    known = count_matches([hand], bid.value, jokers_wild=not is_palifico)
    unseen = total_dice - len(hand)
    p = match_probability(bid.value, is_palifico)
    return binomial_pmf(unseen, bid.count - known, p)


def _effective_counts(hand: list[int], is_palifico: bool) -> dict[int, int]:
    return {
        value: count_matches([hand], value, jokers_wild=not is_palifico)
        for value in range(2, DIE_FACES + 1)
    }


# =============================================================================
# Decisions
# =============================================================================

@dataclass
class CPUAction:
    """A move expressed in the same vocabulary a human client uses."""
    kind: str  # "bid", "dudo" or "calza"
    bid: Optional[Bid] = None
    reason: str = ""


def timeout_move(
    hand: list[int],
    current_bid: Optional[Bid],
    total_dice: int,
    is_palifico: bool,
) -> CPUAction:
    """
    Conservative auto-move for a player whose turn timed out.

    Never calls Calza. Opens on the face the hand backs best, calls Dudo
    only when the standing bid is very likely false, and otherwise makes
    the smallest raise.
    """
    if current_bid is None:
        counts = _effective_counts(hand, is_palifico)
        best_value, best_count = 2, 0
        for value, count in counts.items():
            if count > best_count:
                best_value, best_count = value, count
        return CPUAction("bid", Bid(max(1, best_count), best_value), "safe opening")

    p_false = bid_failure_probability(current_bid, hand, total_dice, is_palifico)
    if p_false > TIMEOUT_DUDO_THRESHOLD:
        return CPUAction("dudo", reason=f"bid {p_false:.0%} likely false")

    raise_to = next_raise(current_bid, is_palifico)
    if not is_valid_raise(current_bid, raise_to, is_palifico):
        return CPUAction("dudo", reason="no legal minimum raise")
    return CPUAction("bid", raise_to, "minimum raise")


class DudoAI:
    """AI decision-making for Perudo."""

    @staticmethod
    def _noisy(value: float, personality: Personality, rng: random.Random) -> float:
        if personality.unpredictability <= 0:
            return value
        spread = 0.15 * personality.unpredictability
        return min(0.99, max(0.01, value + rng.uniform(-spread, spread)))

    @staticmethod
    def choose_opening_bid(
        hand: list[int],
        total_dice: int,
        is_palifico: bool,
        personality: Personality,
        rng: random.Random,
    ) -> Bid:
        """Open on our strongest face, padded by what the table probably holds."""
        counts = _effective_counts(hand, is_palifico)
        best_value = max(counts, key=lambda v: (counts[v], v))
        if rng.random() < personality.bluff_frequency:
            best_value = rng.randint(2, DIE_FACES)

        unseen = total_dice - len(hand)
        expected_unseen = unseen * match_probability(best_value, is_palifico)
        # Aggressive players claim more of the expected share
        share = 0.3 + 0.5 * personality.aggression
        count = counts[best_value] + int(expected_unseen * share)
        return Bid(count=max(1, count), value=best_value)

    @staticmethod
    def candidate_raises(current: Bid, is_palifico: bool, aggression_jump: bool) -> list[Bid]:
        """Cheapest legal raise on every face, optionally one die higher."""
        candidates = []
        for value in range(1, DIE_FACES + 1):
            if is_palifico and value == JOKER_FACE:
                continue
            count = current.count if value > current.value else current.count + 1
            if is_palifico and value != current.value:
                # Stay on the face in play during palifico
                continue
            candidates.append(Bid(count, value))
            if aggression_jump:
                candidates.append(Bid(count + 1, value))
        return [b for b in candidates if is_valid_raise(current, b, is_palifico)]

    @staticmethod
    def choose_action(
        game: Game,
        player: Player,
        profile: CPUProfile,
        rng: Optional[random.Random] = None,
    ) -> CPUAction:
        """
        Decide a move for `player`, who must hold the turn.

        Returns:
            A CPUAction using the same bid/dudo/calza commands a human sends.
        """
        rng = rng or random.Random()
        personality = profile.personality
        rnd = game.round
        hand = list(player.hand)
        total = game.dice_in_play()

        if rnd.current_bid is None:
            bid = DudoAI.choose_opening_bid(hand, total, rnd.is_palifico, personality, rng)
            return CPUAction("bid", bid, "opening")

        current = rnd.current_bid
        p_false = bid_failure_probability(current, hand, total, rnd.is_palifico)
        dudo_threshold = DudoAI._noisy(personality.dudo_threshold, personality, rng)
        if p_false >= dudo_threshold:
            return CPUAction("dudo", reason=f"p_false={p_false:.2f} >= {dudo_threshold:.2f}")

        # Calza only pays when there is a die to win back
        if player.dice_count < game.settings.starting_dice and p_false < 0.5:
            p_exact = exact_probability(current, hand, total, rnd.is_palifico)
            calza_bar = DudoAI._noisy(personality.calza_threshold * 0.6, personality, rng)
            if p_exact >= calza_bar:
                return CPUAction("calza", reason=f"p_exact={p_exact:.2f} >= {calza_bar:.2f}")

        jump = rng.random() < personality.aggression * 0.5
        options = DudoAI.candidate_raises(current, rnd.is_palifico, jump)
        if not options:
            return CPUAction("dudo", reason="no raise available")

        scored = [
            (1 - bid_failure_probability(b, hand, total, rnd.is_palifico), b)
            for b in options
        ]
        scored.sort(key=lambda item: (item[0], -item[1].count), reverse=True)

        if rng.random() < personality.bluff_frequency:
            plausible = [b for score, b in scored if score >= 0.3]
            if plausible:
                return CPUAction("bid", rng.choice(plausible), "bluff")

        best_score, best_bid = scored[0]
        if best_score < 1 - dudo_threshold and rnd.last_bidder_id:
            # Every raise looks worse than challenging
            return CPUAction("dudo", reason=f"best raise only {best_score:.2f}")
        return CPUAction("bid", best_bid, f"p_true={best_score:.2f}")


def think_time(profile: CPUProfile, rng: Optional[random.Random] = None) -> float:
    """Seconds a CPU pauses before acting."""
    rng = rng or random
    low, high = config.CPU_THINK_MIN_SECONDS, config.CPU_THINK_MAX_SECONDS
    seconds = rng.uniform(low, high) if high > low else low
    if profile.personality.unpredictability > 0.5:
        chaos_mult = CPU_TIMING["thinking_multiplier_chaotic"]
        seconds *= rng.uniform(chaos_mult[0], chaos_mult[1])
    return seconds


async def process_cpu_turn(room, cpu_id: str) -> bool:
    """
    Take one turn for a CPU player through the room's public commands.

    The CPU reads the state after its thinking pause and submits a command
    like any client would; if the state moved on in the meantime the room
    rejects it and nothing happens.

    Returns:
        True if a command was accepted.
    """
    profile = get_profile(cpu_id) or DEFAULT_PROFILE
    await asyncio.sleep(think_time(profile))

    game = room.game
    player = game.get_player(cpu_id)
    if player is None or game.phase != GamePhase.BIDDING or game.current_player() is not player:
        return False

    action = DudoAI.choose_action(game, player, profile)
    ai_log(f"{player.name} ({profile.personality.id}) -> {action.kind} {action.bid or ''} [{action.reason}]")

    try:
        if action.kind == "dudo":
            await room.dudo(cpu_id)
        elif action.kind == "calza":
            await room.calza(cpu_id)
        else:
            await room.bid(cpu_id, action.bid)
    except GameError as e:
        ai_log(f"{player.name} move rejected: {e.code} {e.reason}")
        return False
    return True


async def process_cpu_roll(room, cpu_id: str) -> bool:
    """Deal the next round on behalf of a CPU player."""
    pre_roll = CPU_TIMING["pre_roll"]
    await asyncio.sleep(random.uniform(pre_roll[0], pre_roll[1]))
    try:
        await room.roll_dice(cpu_id)
    except GameError as e:
        ai_log(f"CPU {cpu_id} roll rejected: {e.code} {e.reason}")
        return False
    return True
