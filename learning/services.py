import logging

from django.db import transaction
from django.utils import timezone

from gamification.levels import next_level, progress_to_next_level
from gamification.models import UserAchievement
from gamification.services import ProgressionEngine
from .exceptions import LessonNotFound, ModuleNotFound, QuestionNotFound
from .models import (
    Lesson, LearningModule, Question, QuestionAttempt, UserLessonProgress, UserModuleProgress,
)

logger = logging.getLogger(__name__)


def answers_match(answer, correct_answer):
    """
    Case-insensitive comparison after trimming surrounding whitespace.

    Every question type, MATCHING included, is judged this way; there is no
    partial credit.
    """
    return (answer or '').strip().lower() == (correct_answer or '').strip().lower()


class LearningService:
    def __init__(self, engine=None):
        self.engine = engine or ProgressionEngine()

    def recompute_module_progress(self, user_id, module_id):
        """
        Rebuild the user's rollup for a module from their lesson progress.

        A module without lessons is 0% and never completed.
        """
        if not LearningModule.objects.filter(id=module_id).exists():
            raise ModuleNotFound(module_id)

        total_lessons = Lesson.objects.filter(module_id=module_id).count()
        completed = UserLessonProgress.objects.filter(
            user_id=user_id,
            lesson__module_id=module_id,
            is_completed=True,
        )
        completed_count = completed.count()
        xp_earned = sum(completed.values_list('xp_earned', flat=True))

        progress = (completed_count / total_lessons) * 100 if total_lessons > 0 else 0
        is_completed = total_lessons > 0 and completed_count == total_lessons

        module_progress, created = UserModuleProgress.objects.get_or_create(
            user_id=user_id,
            module_id=module_id,
        )
        if is_completed and not module_progress.is_completed:
            module_progress.completed_at = timezone.now()
            logger.info(f"User {user_id} completed module {module_id}")
        elif not is_completed:
            module_progress.completed_at = None
        module_progress.progress = progress
        module_progress.is_completed = is_completed
        module_progress.xp_earned = xp_earned
        module_progress.save()
        return module_progress

    def refresh_module_rollups(self, module_id):
        """Recompute every user's rollup for a module whose lesson set changed."""
        user_ids = list(
            UserModuleProgress.objects.filter(module_id=module_id).values_list('user_id', flat=True)
        )
        for user_id in user_ids:
            self.recompute_module_progress(user_id, module_id)
        if user_ids:
            logger.info(f"Refreshed {len(user_ids)} rollups for module {module_id}")
        return len(user_ids)

    def complete_lesson_and_earn_xp(self, user_id, lesson_id):
        """
        Mark a lesson complete and award its XP once.

        Repeat calls are no-ops: the lesson's ``xp_earned`` is fixed the first
        time it becomes completed and no further XP is awarded.
        """
        lesson = Lesson.objects.filter(id=lesson_id).first()
        if lesson is None:
            raise LessonNotFound(lesson_id)

        with transaction.atomic():
            lesson_progress, created = UserLessonProgress.objects.select_for_update().get_or_create(
                user_id=user_id,
                lesson=lesson,
            )
            if lesson_progress.is_completed:
                logger.info(f"User {user_id} re-completed lesson {lesson_id}, no XP awarded")
                return {
                    'xpEarned': 0,
                    'alreadyCompleted': True,
                }

            lesson_progress.is_completed = True
            lesson_progress.completed_at = timezone.now()
            lesson_progress.xp_earned = lesson.xp_reward
            lesson_progress.save()

            # Roll the module up before awarding so MODULES_COMPLETED sees it.
            self.recompute_module_progress(user_id, lesson.module_id)

            result = {
                'xpEarned': lesson.xp_reward,
                'alreadyCompleted': False,
            }
            if lesson.xp_reward > 0:
                award = self.engine.add_xp(user_id, lesson.xp_reward)
                result.update(_award_payload(award))
            return result

    def submit_question_answer(self, user_id, question_id, answer, time_spent=None):
        question = Question.objects.filter(id=question_id).first()
        if question is None:
            raise QuestionNotFound(question_id)

        is_correct = answers_match(answer, question.correct_answer)
        points = question.points if is_correct else 0

        with transaction.atomic():
            QuestionAttempt.objects.create(
                user_id=user_id,
                question=question,
                answer=answer,
                is_correct=is_correct,
                points=points,
                time_spent=time_spent,
            )

            result = {
                'isCorrect': is_correct,
                'points': points,
                'explanation': question.explanation,
                'xpEarned': 0,
            }
            if is_correct and points > 0:
                award = self.engine.add_xp(user_id, points)
                result['xpEarned'] = points
                result.update(_award_payload(award))
            return result

    def get_progress_overview(self, user_id):
        state = self.engine.get_or_create_progress(user_id)
        levels = self.engine.store.get_levels()
        upcoming = next_level(levels, state.level) if levels else None

        module_progress = (
            UserModuleProgress.objects.filter(user_id=user_id)
            .select_related('module')
            .order_by('-created_at')
        )
        lesson_progress = (
            UserLessonProgress.objects.filter(user_id=user_id)
            .select_related('lesson', 'lesson__module')
            .order_by('-created_at')
        )
        recent_achievements = (
            UserAchievement.objects.filter(user_id=user_id)
            .select_related('achievement')
            .order_by('-unlocked_at')[:5]
        )

        return {
            'userProgress': state.as_dict(),
            'nextLevel': upcoming.as_dict() if upcoming else None,
            'progressToNextLevel': progress_to_next_level(levels, state.level, state.total_xp),
            'moduleProgress': [
                {
                    'moduleId': mp.module_id,
                    'moduleTitle': mp.module.title,
                    'progress': round(mp.progress),
                    'isCompleted': mp.is_completed,
                    'xpEarned': mp.xp_earned,
                }
                for mp in module_progress
            ],
            'lessonProgress': [
                {
                    'lessonId': lp.lesson_id,
                    'lessonTitle': lp.lesson.title,
                    'moduleId': lp.lesson.module_id,
                    'isCompleted': lp.is_completed,
                    'xpEarned': lp.xp_earned,
                }
                for lp in lesson_progress
            ],
            'recentAchievements': [
                {
                    'id': ua.achievement_id,
                    'name': ua.achievement.name,
                    'description': ua.achievement.description,
                    'xpReward': ua.achievement.xp_reward,
                    'unlockedAt': ua.unlocked_at.isoformat(),
                }
                for ua in recent_achievements
            ],
        }


def _award_payload(award):
    payload = {
        'progress': award.progress.as_dict(),
        'achievementsUnlocked': [a.as_dict() for a in award.achievements_unlocked],
    }
    if award.level_up:
        payload['levelUp'] = award.level_up.as_dict()
    return payload
