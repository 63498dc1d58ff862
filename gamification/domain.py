"""
Plain value types the progression engine works with.

The ORM rows in ``gamification.models`` are translated into these by the
store, so the engine can be driven by any store implementation.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from .criteria import Criteria


@dataclass(frozen=True)
class LevelTier:
    id: int
    number: int
    name: str
    min_xp: int
    max_xp: Optional[int] = None
    color: str = ''
    icon: str = ''

    def contains(self, xp: int) -> bool:
        if xp < self.min_xp:
            return False
        return self.max_xp is None or xp <= self.max_xp

    def as_dict(self):
        return {
            'id': self.id,
            'number': self.number,
            'name': self.name,
            'minXp': self.min_xp,
            'maxXp': self.max_xp,
            'color': self.color,
            'icon': self.icon,
        }


@dataclass(frozen=True)
class AchievementRule:
    id: int
    name: str
    description: str
    criteria: Criteria
    xp_reward: int = 0
    is_secret: bool = False

    def as_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'xpReward': self.xp_reward,
        }


@dataclass
class ProgressState:
    user_id: int
    total_xp: int
    level: LevelTier
    streak: int = 0
    last_active_at: Optional[datetime] = None

    def as_dict(self):
        return {
            'totalXp': self.total_xp,
            'level': self.level.as_dict(),
            'streak': self.streak,
            'lastActiveAt': self.last_active_at.isoformat() if self.last_active_at else None,
        }


@dataclass(frozen=True)
class LevelUp:
    previous_level: LevelTier
    new_level: LevelTier

    def as_dict(self):
        return {
            'previousLevel': self.previous_level.as_dict(),
            'newLevel': self.new_level.as_dict(),
        }


@dataclass
class AwardResult:
    progress: ProgressState
    xp_awarded: int
    level_up: Optional[LevelUp] = None
    achievements_unlocked: List[AchievementRule] = field(default_factory=list)

    def as_dict(self):
        data = self.progress.as_dict()
        data['xpAwarded'] = self.xp_awarded
        if self.level_up:
            data['levelUp'] = self.level_up.as_dict()
        data['achievementsUnlocked'] = [a.as_dict() for a in self.achievements_unlocked]
        return data
