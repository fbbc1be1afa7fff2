"""Global constants for hindsight.

Centralizes the tuning numbers shared across the learning components.
Per-component values that users may want to change are exposed again as
config defaults in ``hindsight.core.config``.
"""

# =============================================================================
# Storage Layout
# =============================================================================

DEFAULT_DATA_DIR_NAME = ".hindsight"
"""Directory under the user's home that holds all learning state."""

JSON_INDENT = 2
"""Indentation for every JSON file the core writes."""

# =============================================================================
# Composite Scoring Weights
# =============================================================================

SCORE_WEIGHT_SUCCESS = 0.35
"""Weight of the success signal in tool and experience composites."""

SCORE_WEIGHT_SPEED = 0.25
"""Weight of the speed signal in tool and experience composites."""

SCORE_WEIGHT_ACCURACY = 0.25
"""Weight of accuracy (tool learner) or error rate (lifelong learner)."""

SCORE_WEIGHT_EFFICIENCY = 0.15
"""Weight of brevity (tool learner) or resource efficiency (lifelong learner)."""

NEUTRAL_SCORE = 0.5
"""Score used when a signal is unknown."""

# =============================================================================
# GRPO
# =============================================================================

GRPO_LEARNING_RATE = 0.1
"""Default step size for strategy weights and cumulative tool scores."""

GRPO_MIN_WEIGHT = 0.01
"""Lower bound of a strategy or team weight."""

GRPO_MAX_WEIGHT = 5.0
"""Upper bound of a strategy or team weight."""

GRPO_DEFAULT_WEIGHT = 1.0
"""Weight assumed for a strategy that has never been ranked."""

GRPO_MAX_ROUNDS = 300
"""Rolling cap of recorded optimization rounds."""

SCORE_DECIMALS = 3
"""Rounding applied to persisted composite scores and weights."""

# =============================================================================
# Retention
# =============================================================================

SHORT_TERM_TTL_DAYS = 7
"""Lifetime of command memories."""

LONG_TERM_TTL_DAYS = 90
"""Lifetime of context and error memories; also the tool record retention."""

# =============================================================================
# Knowledge Transfer
# =============================================================================

PROMOTION_MIN_SUCCESSES = 3
"""Consecutive confidence increases required before promotion."""

PROMOTION_MIN_CONFIDENCE = 0.8
"""Confidence required before promotion."""

DEMOTION_CONSECUTIVE_FAILURES = 2
"""Consecutive failed uses that demote a promoted pattern."""

DEMOTION_ERROR_RATE = 0.2
"""Failure rate above which a promoted pattern is demoted."""

DEMOTION_MIN_USAGE = 5
"""Uses required before the failure-rate rule applies."""

HOTSWAP_LOCK_MAX_WAIT_SECONDS = 5.0
"""How long ``hot_swap()`` waits for the lock before giving up."""

HOTSWAP_LOCK_STALE_SECONDS = 30.0
"""Age after which a held lock is considered abandoned."""

HOTSWAP_LOCK_POLL_SECONDS = 0.05
"""Polling interval while waiting for the lock."""
