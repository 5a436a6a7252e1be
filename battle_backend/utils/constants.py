"""
Constants used across the battle system.

Tunables can be overridden through environment variables.
"""

import os

# Supported team formats ("NvN"); team size is the leading digit
BATTLE_FORMATS = ("1v1", "2v2", "3v3", "4v4", "5v5")

# Match durations (minutes) a battle leader may propose
ALLOWED_MATCH_DURATIONS = (3, 6, 12, 22, 30)

# Matchmaking penalty for declining a found match
DECLINE_BLOCK_MINUTES = int(os.getenv("BATTLE_DECLINE_BLOCK_MINUTES", "3"))
DECLINE_BLOCK_REASON = "declined_match"

# Invitations expire if not answered within this window
INVITATION_TTL_SECONDS = int(os.getenv("BATTLE_INVITATION_TTL_SECONDS", "300"))

# Matches left in pending_accept longer than this are cancelled by the sweep
ACCEPT_TIMEOUT_SECONDS = int(os.getenv("BATTLE_ACCEPT_TIMEOUT_SECONDS", "60"))

# How often the cleanup worker runs (seconds)
CLEANUP_INTERVAL_SECONDS = int(os.getenv("BATTLE_CLEANUP_INTERVAL_SECONDS", "30"))

# "websocket" (in-process) or "redis"
CHANNEL_BACKEND = os.getenv("BATTLE_CHANNEL_BACKEND", "websocket").lower()

TEAM_A = "team_a"
TEAM_B = "team_b"
DRAW = "draw"
BOTH_TEAMS = "both"
