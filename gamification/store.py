"""
Data access for the progression engine.

``ProgressStore`` is the capability set the engine needs. The engine only
talks to a store, which keeps it usable against the ORM in production and
against an in-memory store in unit tests.
"""
import logging
from contextlib import contextmanager

from django.db import IntegrityError, OperationalError, transaction
from django.db.models import F
from django.utils import timezone

from learning.models import QuestionAttempt, UserLessonProgress, UserModuleProgress
from .criteria import Criteria
from .domain import AchievementRule, LevelTier, ProgressState
from .exceptions import ProgressConflict
from .models import Achievement, Level, UserAchievement, UserProgress

logger = logging.getLogger(__name__)


class ProgressStore:

    @contextmanager
    def locked(self, user_id):
        """Serialize all reads and writes for one user's progress row."""
        raise NotImplementedError

    def get_user_progress(self, user_id):
        raise NotImplementedError

    def create_user_progress(self, user_id, level):
        raise NotImplementedError

    def save_user_progress(self, state):
        raise NotImplementedError

    def increment_total_xp(self, user_id, amount):
        raise NotImplementedError

    def get_levels(self):
        raise NotImplementedError

    def get_achievement_catalog(self):
        raise NotImplementedError

    def get_unlocked_achievement_ids(self, user_id):
        raise NotImplementedError

    def insert_user_achievement(self, user_id, achievement_id):
        """Return False if the pair was already unlocked."""
        raise NotImplementedError

    def count_completed_modules(self, user_id):
        raise NotImplementedError

    def count_completed_lessons(self, user_id):
        raise NotImplementedError

    def count_correct_attempts(self, user_id):
        raise NotImplementedError


def level_to_tier(level):
    return LevelTier(
        id=level.id,
        number=level.number,
        name=level.name,
        min_xp=level.min_xp,
        max_xp=level.max_xp,
        color=level.color,
        icon=level.icon,
    )


def achievement_to_rule(achievement):
    return AchievementRule(
        id=achievement.id,
        name=achievement.name,
        description=achievement.description,
        criteria=Criteria.parse(achievement.criteria),
        xp_reward=achievement.xp_reward,
        is_secret=achievement.is_secret,
    )


def progress_to_state(progress):
    return ProgressState(
        user_id=progress.user_id,
        total_xp=progress.total_xp,
        level=level_to_tier(progress.level),
        streak=progress.streak,
        last_active_at=progress.last_active_at,
    )


class DjangoProgressStore(ProgressStore):

    @contextmanager
    def locked(self, user_id):
        try:
            with transaction.atomic():
                yield
        except OperationalError as e:
            # Deadlocks, lock timeouts and "database is locked" all land here.
            logger.warning(f"Progress write for user {user_id} conflicted: {e}")
            raise ProgressConflict(str(e)) from e

    def get_user_progress(self, user_id):
        progress = (
            UserProgress.objects.select_for_update()
            .select_related('level')
            .filter(user_id=user_id)
            .first()
        )
        return progress_to_state(progress) if progress else None

    def create_user_progress(self, user_id, level):
        progress, created = UserProgress.objects.get_or_create(
            user_id=user_id,
            defaults={'level_id': level.id, 'total_xp': 0, 'streak': 0},
        )
        if created:
            logger.info(f"Created progress for user {user_id} at level {level.number}")
        # Take the row lock whether we won the insert or lost it to another request.
        return self.get_user_progress(user_id)

    def save_user_progress(self, state):
        UserProgress.objects.filter(user_id=state.user_id).update(
            total_xp=state.total_xp,
            level_id=state.level.id,
            streak=state.streak,
            last_active_at=state.last_active_at,
            updated_at=timezone.now(),
        )

    def increment_total_xp(self, user_id, amount):
        UserProgress.objects.filter(user_id=user_id).update(
            total_xp=F('total_xp') + amount,
            updated_at=timezone.now(),
        )

    def get_levels(self):
        return [level_to_tier(level) for level in Level.objects.order_by('number')]

    def get_achievement_catalog(self):
        return [achievement_to_rule(a) for a in Achievement.objects.order_by('id')]

    def get_unlocked_achievement_ids(self, user_id):
        return set(
            UserAchievement.objects.filter(user_id=user_id).values_list('achievement_id', flat=True)
        )

    def insert_user_achievement(self, user_id, achievement_id):
        try:
            with transaction.atomic():
                UserAchievement.objects.create(user_id=user_id, achievement_id=achievement_id)
        except IntegrityError:
            logger.info(f"Achievement {achievement_id} already unlocked for user {user_id}")
            return False
        return True

    def count_completed_modules(self, user_id):
        return UserModuleProgress.objects.filter(user_id=user_id, is_completed=True).count()

    def count_completed_lessons(self, user_id):
        return UserLessonProgress.objects.filter(user_id=user_id, is_completed=True).count()

    def count_correct_attempts(self, user_id):
        return QuestionAttempt.objects.filter(user_id=user_id, is_correct=True).count()
