"""Level and progress derivation from a cumulative XP total."""

LEVEL_XP = 500
XP_PER_SESSION = 250


def _check(xp):
    if xp < 0:
        raise ValueError(f"XP cannot be negative: {xp}")


def level(xp: int) -> int:
    _check(xp)
    return xp // LEVEL_XP + 1


def progress_fraction(xp: int) -> float:
    """Fraction of the current level already earned, in [0, 1)."""
    _check(xp)
    return (xp % LEVEL_XP) / LEVEL_XP


def progress_percent(xp: int) -> float:
    return progress_fraction(xp) * 100


def xp_to_next_level(xp: int) -> int:
    _check(xp)
    return LEVEL_XP - xp % LEVEL_XP


def summary(xp: int) -> dict:
    return {
        'total_xp': xp,
        'level': level(xp),
        'progress': progress_fraction(xp),
        'xp_to_next_level': xp_to_next_level(xp),
    }
