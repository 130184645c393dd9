"""
Application constants.
Collection names, status values and gamification thresholds.
"""

# Collections (mirror the remote table names)
COLLECTION_PROJECTS = "projects"
COLLECTION_PORTFOLIO = "user_portfolio"
COLLECTION_GAMIFICATION = "user_gamification"
COLLECTION_DAILY_GOALS = "daily_goals"
COLLECTION_BADGES = "user_badges"
COLLECTION_WEEKLY_CHALLENGES = "weekly_challenges"

ALL_COLLECTIONS = (
    COLLECTION_PROJECTS,
    COLLECTION_PORTFOLIO,
    COLLECTION_GAMIFICATION,
    COLLECTION_DAILY_GOALS,
    COLLECTION_BADGES,
    COLLECTION_WEEKLY_CHALLENGES,
)

# Collections whose changes can make a badge eligible
BADGE_TRIGGER_COLLECTIONS = frozenset({
    COLLECTION_GAMIFICATION,
    COLLECTION_DAILY_GOALS,
})

# New rows of these collections are shown first (newest first)
PREPEND_COLLECTIONS = frozenset({COLLECTION_PROJECTS})

# Goal status
GOAL_STATUS_PENDING = "pending"
GOAL_STATUS_COMPLETED = "completed"

# Weekly challenge status
CHALLENGE_STATUS_ACTIVE = "active"
CHALLENGE_STATUS_COMPLETED = "completed"
CHALLENGE_STATUS_EXPIRED = "expired"

# Levels
XP_PER_LEVEL = 1000  # Fixed threshold, level = total_xp // 1000 + 1

# Badge thresholds
BADGE_FIRST_INTERVIEW_XP = 75
BADGE_STREAK_MASTER_DAYS = 7
BADGE_EARLY_BIRD_HOUR = 10  # Local hour before which a completed goal counts
BADGE_KNOWLEDGE_SEEKER_XP = 500

# Initial weekly challenge
INITIAL_CHALLENGE_TITLE = "Interview Master Challenge"
INITIAL_CHALLENGE_DESCRIPTION = "Complete 3 practice interviews this week"
INITIAL_CHALLENGE_REWARD_XP = 300
INITIAL_CHALLENGE_TARGET = 3
INITIAL_CHALLENGE_DAYS = 7

# Leaderboard
LEADERBOARD_SIZE = 10

# Profile stats sync
DEFAULT_USERNAME = "user"

# Recent mutation records kept for diagnostics
MUTATION_HISTORY_SIZE = 50
