# Juice Risk-Delay Policy
# Maps a payment processor risk score (0-100, higher = riskier) to the number
# of days a payment is held before it may be credited or settled.
# Shared by the purchase and direct-settlement pipelines.

from typing import Optional

from errors import ValidationError

# (max_score_inclusive, delay_days)
RISK_DELAY_TABLE: list[tuple[int, int]] = [
    (20, 0),     # 0-20: immediate
    (40, 7),     # 21-40
    (60, 30),    # 41-60
    (80, 60),    # 61-80
    (100, 120),  # 81-100: maximum protection
]

NULL_RISK_DELAY_DAYS = 7
MAX_DELAY_DAYS = 120


def validate_risk_score(risk_score) -> Optional[int]:
    """Return the score as an int, or None. Rejects anything outside 0-100."""
    if risk_score is None:
        return None
    if isinstance(risk_score, bool) or not isinstance(risk_score, int):
        raise ValidationError(f"Risk score must be an integer 0-100, got {risk_score!r}")
    if risk_score < 0 or risk_score > 100:
        raise ValidationError(f"Risk score out of range 0-100: {risk_score}")
    return risk_score


def delay_days(risk_score: Optional[int], default_days: int = NULL_RISK_DELAY_DAYS) -> int:
    """Settlement delay for a risk score. None falls back to default_days."""
    score = validate_risk_score(risk_score)
    if score is None:
        return default_days
    for max_score, days in RISK_DELAY_TABLE:
        if score <= max_score:
            return days
    return MAX_DELAY_DAYS
