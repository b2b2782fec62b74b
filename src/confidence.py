"""
ResolveChain - Confidence Scorer

Fixed rule table mapping evidence metrics to a confidence in [0, 1].
Not a learned model; the thresholds below are part of the protocol and
must be reproduced exactly by any independent verifier.
"""

from models import Evidence

# (minimum percentage decrease, base score), checked top to bottom
BASE_SCORE_TABLE = (
    (0.90, 0.95),
    (0.70, 0.85),
    (0.50, 0.70),
)
FALLBACK_BASE_SCORE = 0.50

SENTIMENT_BONUS_THRESHOLD = 0.20
SENTIMENT_BONUS = 0.05

SOURCE_BONUS_MIN_SOURCES = 3
SOURCE_BONUS = 0.03

MAX_CONFIDENCE = 1.0


def base_score(percentage_decrease: float) -> float:
    for threshold, value in BASE_SCORE_TABLE:
        if percentage_decrease >= threshold:
            return value
    return FALLBACK_BASE_SCORE


def score(evidence: Evidence) -> float:
    """
    Score evidence.

    Expects validated evidence; a missing percentage decrease is taken from
    the complaint counts.
    """
    pct = evidence.percentage_decrease
    if pct is None:
        pct = evidence.recomputed_percentage_decrease()

    confidence = base_score(pct)

    if evidence.sentiment_shift > SENTIMENT_BONUS_THRESHOLD:
        confidence += SENTIMENT_BONUS

    # Distinct sources; the same platform listed twice is one source
    if len(set(evidence.data_sources)) >= SOURCE_BONUS_MIN_SOURCES:
        confidence += SOURCE_BONUS

    return min(confidence, MAX_CONFIDENCE)
