"""Progressive leveling curve.

Advancing from level L to L+1 costs ``100 + (L - 1) * 50`` XP:

    Level 1 -> 2: 100 XP
    Level 2 -> 3: 150 XP
    Level 3 -> 4: 200 XP
"""
BASE_LEVEL_XP = 100
LEVEL_XP_STEP = 50


def xp_needed_for_level(level: int) -> int:
    """XP required to advance from ``level`` to the next one."""
    if level < 1:
        return BASE_LEVEL_XP
    return BASE_LEVEL_XP + (level - 1) * LEVEL_XP_STEP


def xp_at_start_of_level(level: int) -> int:
    """Total XP at which ``level`` is first reached."""
    n = max(0, level - 1)
    return n * BASE_LEVEL_XP + LEVEL_XP_STEP * n * (n - 1) // 2


def level_from_total_xp(total_xp) -> dict:
    remaining = max(0, int(total_xp or 0))
    level = 1
    needed = xp_needed_for_level(level)

    while remaining >= needed:
        remaining -= needed
        level += 1
        needed = xp_needed_for_level(level)

    return {
        'level': level,
        'xpIntoCurrentLevel': remaining,
        'xpNeededForCurrentLevel': needed,
    }


def calculate_level(total_xp) -> int:
    return level_from_total_xp(total_xp)['level']
