"""
Risk-tiered settlement delay policy.

The processor's risk score (0-100, higher = riskier) picks how long a fiat
payment is held before its on-chain release. Lower risk settles faster.
"""

from typing import Tuple

from fiatgate.core.errors import ValidationError

MIN_RISK_SCORE = 0
MAX_RISK_SCORE = 100

# (inclusive upper bound of the risk score, delay in days), ascending
SETTLEMENT_TIERS: Tuple[Tuple[int, int], ...] = (
    (20, 0),  # immediate
    (40, 7),
    (60, 30),
    (80, 60),
    (100, 120),
)


def validate_risk_score(risk_score: object) -> int:
    # bool is an int subclass; a True risk score is a malformed event
    if isinstance(risk_score, bool) or not isinstance(risk_score, int):
        raise ValidationError(
            "Risk score must be an integer",
            metadata={"risk_score": repr(risk_score)},
        )
    if not MIN_RISK_SCORE <= risk_score <= MAX_RISK_SCORE:
        raise ValidationError(
            f"Risk score must be between {MIN_RISK_SCORE} and {MAX_RISK_SCORE}",
            metadata={"risk_score": risk_score},
        )
    return risk_score


def delay_days(risk_score: int) -> int:
    """
    Settlement delay in days for a risk score.

    | risk score | delay |
    |------------|-------|
    | 0-20       | 0     |
    | 21-40      | 7     |
    | 41-60      | 30    |
    | 61-80      | 60    |
    | 81-100     | 120   |

    Raises:
        ValidationError: score is not an integer in 0-100
    """
    score = validate_risk_score(risk_score)
    for upper_bound, days in SETTLEMENT_TIERS:
        if score <= upper_bound:
            return days
    # Unreachable: the last tier's bound equals MAX_RISK_SCORE
    raise ValidationError("Risk score outside every tier", metadata={"risk_score": score})
