import logging

from .exceptions import LevelTableError

logger = logging.getLogger(__name__)


def resolve_level(levels, total_xp):
    """
    Return the tier whose [min_xp, max_xp] range contains ``total_xp``.

    A null ``max_xp`` is unbounded. If bad seed data makes ranges overlap,
    the tier with the highest number wins.
    """
    match = None
    for level in levels:
        if level.contains(total_xp) and (match is None or level.number > match.number):
            match = level

    if match is None:
        logger.error(f"No level matches {total_xp} XP ({len(levels)} tiers configured)")
        raise LevelTableError(f"Unable to calculate level for XP amount: {total_xp}")
    return match


def lowest_level(levels):
    if not levels:
        logger.error("Level table is empty")
        raise LevelTableError("No levels found. Please seed the database with initial levels.")
    return min(levels, key=lambda level: level.number)


def next_level(levels, current):
    higher = [level for level in levels if level.number > current.number]
    return min(higher, key=lambda level: level.number) if higher else None


def progress_to_next_level(levels, current, total_xp):
    """Percentage (0-100) of the way from ``current`` to the next tier."""
    upcoming = next_level(levels, current)
    if upcoming is None:
        return 100
    span = upcoming.min_xp - current.min_xp
    if span <= 0:
        return 100
    percentage = (total_xp - current.min_xp) * 100 / span
    return round(max(0, min(100, percentage)))
