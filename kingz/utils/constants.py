"""
Constants used across the match and check-in system.
"""

# Check-in / presence
CHECK_IN_RADIUS_KM = 0.5  # Max distance from a venue to check in
STALE_CHECK_IN_HOURS = 2  # Presence older than this is evicted
PRESENCE_SWEEP_INTERVAL_SECONDS = 600  # 10 minutes
CHECK_IN_UPSERT_RETRIES = 3

# Active-venue discovery
ACTIVE_VENUES_DEFAULT_LIMIT = 5
ACTIVE_VENUES_MAX_LIMIT = 10
ACTIVE_PLAYERS_PREVIEW = 3

# Challenges
DEFAULT_SPORT = "basketball"
CHALLENGE_EXPIRY_MINUTES = 2
MATCH_HISTORY_DEFAULT_LIMIT = 20
MATCH_HISTORY_MAX_LIMIT = 50

# Video upload
MAX_VIDEO_SIZE_BYTES = 100 * 1024 * 1024  # 100MB
MAX_DISPUTE_REASON_LENGTH = 50

# Rewards
BASE_XP = 50
WIN_BONUS_XP = 50
XP_PER_POINT_MARGIN = 10
MAX_MARGIN_BONUS_XP = 100  # Caps winner XP at 200
BASE_RP = 20
RP_PER_POINT_MARGIN = 2
MAX_WINNER_RP = 50
LOSER_XP = 50

# Analysis queue
MAX_ANALYSIS_ATTEMPTS = 3
ANALYSIS_RETRY_DELAY_SECONDS = 2.0
ANALYSIS_POLL_INTERVAL_SECONDS = 30
ANALYSIS_STALE_RUNNING_MINUTES = 15  # Running jobs older than this were orphaned by a restart
UPLOAD_STALE_MINUTES = 15  # Uploads still unfinished after this are released back to the recorder
