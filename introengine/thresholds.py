"""
Configurable thresholds for ICP matching, path discovery and scoring.
All thresholds are defined here as module-level constants.
Override via environment variables (IE_*) for quick tuning.

To tune: change values here or set env vars in private_data/.env
e.g. IE_MIN_ICP_SCORE=30
"""

# config loads .env on import
from introengine.config import _env_float, _env_int


# =============================================================================
# ICP MATCHING
# Weights sum to 1.0.
# =============================================================================

ICP_WEIGHTS = {
    'industry': 0.35,
    'size': 0.25,
    'technology': 0.15,
    'location': 0.15,
    'digital_maturity': 0.10,
}

# Targets below this never reach path discovery or outbound generation
MIN_ICP_SCORE = _env_float("IE_MIN_ICP_SCORE", 20.0)

# Classification labels
ICP_MATCH_THRESHOLD = 80.0      # "icp_match"
ICP_PARTIAL_THRESHOLD = 40.0    # "icp_partial"

# Size outside [min, max]: linear decay by relative distance, 0 at the cutoff.
# 1.0 means a company twice the max (or with no employees vs. min) scores 0.
SIZE_DECAY_CUTOFF = _env_float("IE_SIZE_DECAY_CUTOFF", 1.0)

# Company attribute missing while the ICP constrains it
UNKNOWN_CRITERION_SCORE = 50.0

MATURITY_LEVELS = ('low', 'medium', 'high')

# =============================================================================
# PATH DISCOVERY
# =============================================================================

# Similarity points a contact's employer needs for an INFERRED path
INFERRED_MIN_SIMILARITY = _env_int("IE_INFERRED_MIN_SIMILARITY", 3)

# =============================================================================
# OUTBOUND
# =============================================================================

OUTBOUND_QUOTA_PER_RUN = _env_int("IE_OUTBOUND_QUOTA", 10)

# =============================================================================
# OPPORTUNITY SCORING
# =============================================================================

SCORE_WEIGHTS = {
    'industry_fit': 0.30,
    'buying_signal': 0.20,
    'intro_strength': 0.30,
    'lead_potential': 0.20,
}

INTRO_STRENGTH_BASE = {
    'DIRECT': 90.0,
    'SECOND_LEVEL': 70.0,
    'INFERRED': 45.0,
    'OUTBOUND': 15.0,
}

# Points per relationship_strength step away from 3 (the midpoint of 1-5)
STRENGTH_STEP_POINTS = 5.0
MIN_RECENCY_FACTOR = 0.8

BUYING_SIGNAL_NEUTRAL = 50.0

LEAD_POTENTIAL_WEIGHTS = {
    'size': 0.6,
    'seniority': 0.4,
}

# =============================================================================
# DECAY HALF-LIVES (days)
# =============================================================================

HALF_LIFE_FUNDING = 180       # 6 months
HALF_LIFE_HIRING = 90         # 3 months
HALF_LIFE_RELATIONSHIP = 730  # 2 years

# =============================================================================
# FOLLOW-UPS
# =============================================================================

FOLLOWUP_STALE_DAYS = _env_int("IE_FOLLOWUP_STALE_DAYS", 3)

# =============================================================================
# WEEKLY ADVISOR
# =============================================================================

WEEKLY_PERIOD_DAYS = 7
# Open opportunity with no status change for this long counts as stalled
WEEKLY_STALL_DAYS = _env_int("IE_WEEKLY_STALL_DAYS", 7)


assert abs(sum(ICP_WEIGHTS.values()) - 1.0) < 1e-9
assert abs(sum(SCORE_WEIGHTS.values()) - 1.0) < 1e-9
