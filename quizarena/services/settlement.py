"""Reward settlement: reward = score × rate, and payout lists for the ledger."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from decimal import Decimal, InvalidOperation, localcontext
from typing import Any

from quizarena.database import ParticipantRecord
from quizarena.errors import InvalidRosterState, ValidationFailed
from quizarena.models.session import PayoutResponse

logger = logging.getLogger(__name__)

# Stored in a signed 64-bit integer column.
_MAX_LEDGER_ID = 2**63 - 1


def compute_reward(score: int, rate: Decimal) -> Decimal:
    """Exact reward for *score* correct items at *rate* units each.

    Rates are token base units and routinely exceed the default 28-digit
    decimal precision, so integral rates are multiplied as Python ints.
    """
    if isinstance(score, bool) or not isinstance(score, int) or score < 0:
        raise InvalidRosterState(f"Score {score!r} is not a non-negative integer.")
    rate = Decimal(rate)
    if rate == rate.to_integral_value():
        return Decimal(score * int(rate))
    with localcontext() as ctx:
        ctx.prec = 100
        return Decimal(score) * rate


def format_amount(value: Decimal) -> str:
    """Render an amount for the ledger: integers as plain digits, no exponent."""
    if value == value.to_integral_value():
        return str(int(value))
    return format(value, "f")


def build_payout(
    participants: Sequence[ParticipantRecord],
    rate: Decimal,
    ledger_game_id: int | None,
) -> PayoutResponse:
    """Same-order, same-length address/reward/score lists for every participant.

    A completed participant's stored reward must equal score × rate; any
    disagreement means the roster cannot be paid out deterministically.
    """
    addresses: list[str] = []
    rewards: list[str] = []
    scores: list[int] = []
    for participant in participants:
        reward = compute_reward(participant.score, rate)
        if participant.is_completed and participant.reward is not None and Decimal(participant.reward) != reward:
            logger.error(
                "Stored reward %s for %s disagrees with recomputed %s",
                participant.reward,
                participant.address,
                reward,
            )
            raise InvalidRosterState(f"Reward for {participant.address} does not match its score.")
        addresses.append(participant.address)
        rewards.append(format_amount(reward))
        scores.append(participant.score)

    if not len(addresses) == len(rewards) == len(scores):
        raise InvalidRosterState()
    return PayoutResponse(ledger_game_id=ledger_game_id, participants=addresses, rewards=rewards, scores=scores)


def parse_ledger_game_id(value: Any) -> int:
    """Accept an int, a decimal string, a ``0x`` hex string or ``{"hex": "0x.."}``."""
    if isinstance(value, dict):
        value = value.get("hex")
    if isinstance(value, bool):
        raise ValidationFailed("Ledger game id must be a number.")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            if text.lower().startswith("0x"):
                parsed = int(text, 16)
            else:
                number = Decimal(text)
                if number != number.to_integral_value():
                    raise ValueError("not an integer")
                parsed = int(number)
        except (ValueError, OverflowError, InvalidOperation) as exc:
            raise ValidationFailed(f"Unexpected ledger game id format: {value!r}") from exc
    else:
        raise ValidationFailed(f"Unexpected ledger game id format: {value!r}")
    if parsed < 0:
        raise ValidationFailed("Ledger game id must be non-negative.")
    if parsed > _MAX_LEDGER_ID:
        raise ValidationFailed("Ledger game id is too large.")
    return parsed
