"""Project-wide constants shared by the ORM, settings and scoring layers."""

DB_SCHEMA = "tabflow"

# Score bounds. New tabs start at the ceiling.
MIN_SCORE = 0.0
MAX_SCORE = 2.0
DEFAULT_SCORE = MAX_SCORE
