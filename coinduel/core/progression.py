"""
Experience, level and rank formulas.

Pure functions over a user record; nothing here touches storage.
"""

from typing import Dict

XP_PER_LEVEL = 100

# (minimum level, name, emoji, color), highest first
RANKS = [
    (50, "Legend", "👑", "#fbbf24"),
    (25, "Master", "⭐", "#8b5cf6"),
    (15, "Expert", "🔥", "#ef4444"),
    (10, "Advanced", "💎", "#06b6d4"),
    (5, "Rising", "🚀", "#f59e0b"),
    (1, "Novice", "🌱", "#10b981"),
]


def level_for_xp(total_xp: int) -> int:
    return max(total_xp, 0) // XP_PER_LEVEL + 1


def get_level_info(total_xp: int) -> Dict:
    """Level plus progress through it, as the client's XP bar expects."""
    total_xp = max(total_xp, 0)
    level = level_for_xp(total_xp)
    xp_into_level = total_xp - (level - 1) * XP_PER_LEVEL
    return {
        "level": level,
        "totalXP": total_xp,
        "xpIntoLevel": xp_into_level,
        "xpForLevel": XP_PER_LEVEL,
        "xpToNextLevel": XP_PER_LEVEL - xp_into_level,
    }


def get_rank_info(level: int) -> Dict:
    for min_level, name, emoji, color in RANKS:
        if level >= min_level:
            return {"rank": f"{emoji} {name}", "name": name, "emoji": emoji, "color": color}
    # Unreachable for level >= 1
    _, name, emoji, color = RANKS[-1]
    return {"rank": f"{emoji} {name}", "name": name, "emoji": emoji, "color": color}


def award_xp(user: Dict, amount: int, reason: str) -> Dict:
    """
    Add XP to a user record in place and report any level change.

    Args:
        user: Mapping with a "total_xp" key (missing is treated as 0)
        amount: XP to add, never negative
        reason: Short label shown to the player

    Returns:
        Dict with xpGained, reason, oldLevel, newLevel, levelUp and totalXP
    """
    amount = max(int(amount), 0)
    old_xp = user.get("total_xp") or 0
    new_xp = old_xp + amount
    user["total_xp"] = new_xp

    old_level = level_for_xp(old_xp)
    new_level = level_for_xp(new_xp)
    return {
        "xpGained": amount,
        "reason": reason,
        "oldLevel": old_level,
        "newLevel": new_level,
        "levelUp": new_level > old_level,
        "totalXP": new_xp,
    }
