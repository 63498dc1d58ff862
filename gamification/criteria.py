"""
Achievement unlock criteria.

Criteria are stored as JSON on ``Achievement.criteria``, e.g.
``{"type": "STREAK_DAYS", "value": 7}``, and parsed once into a
:class:`Criteria`. Each :class:`CriteriaKind` has exactly one evaluator in
``EVALUATORS``; adding a kind means adding a member and an evaluator.
"""
import enum
import logging
from dataclasses import dataclass
from functools import cached_property
from typing import Optional

logger = logging.getLogger(__name__)


class CriteriaKind(str, enum.Enum):
    TOTAL_XP = 'TOTAL_XP'
    LEVEL_REACHED = 'LEVEL_REACHED'
    STREAK_DAYS = 'STREAK_DAYS'
    MODULES_COMPLETED = 'MODULES_COMPLETED'
    LESSONS_COMPLETED = 'LESSONS_COMPLETED'
    QUESTIONS_CORRECT = 'QUESTIONS_CORRECT'


@dataclass(frozen=True)
class Criteria:
    kind: Optional[CriteriaKind]
    value: int = 0

    @classmethod
    def parse(cls, data):
        """
        Build a Criteria from its stored JSON form.

        Anything unrecognised (unknown type, missing or non-numeric value)
        yields a criteria with ``kind=None``, which never evaluates true.
        """
        try:
            kind = CriteriaKind(data['type'])
            value = int(data['value'])
        except (ValueError, KeyError, TypeError):
            logger.warning(f"Unrecognised achievement criteria: {data!r}")
            return cls(kind=None)
        return cls(kind=kind, value=value)


class AchievementFacts:
    """
    Per-user facts the criteria are checked against.

    ``state`` is the live ProgressState, so XP rewards applied during an
    evaluation are visible to later checks. Counts from the store are loaded
    at most once per evaluation.
    """

    def __init__(self, store, user_id, state):
        self.store = store
        self.user_id = user_id
        self.state = state

    @cached_property
    def completed_modules(self):
        return self.store.count_completed_modules(self.user_id)

    @cached_property
    def completed_lessons(self):
        return self.store.count_completed_lessons(self.user_id)

    @cached_property
    def correct_attempts(self):
        return self.store.count_correct_attempts(self.user_id)


def _total_xp(facts, value):
    return facts.state.total_xp >= value


def _level_reached(facts, value):
    return facts.state.level.number >= value


def _streak_days(facts, value):
    return facts.state.streak >= value


def _modules_completed(facts, value):
    return facts.completed_modules >= value


def _lessons_completed(facts, value):
    return facts.completed_lessons >= value


def _questions_correct(facts, value):
    return facts.correct_attempts >= value


EVALUATORS = {
    CriteriaKind.TOTAL_XP: _total_xp,
    CriteriaKind.LEVEL_REACHED: _level_reached,
    CriteriaKind.STREAK_DAYS: _streak_days,
    CriteriaKind.MODULES_COMPLETED: _modules_completed,
    CriteriaKind.LESSONS_COMPLETED: _lessons_completed,
    CriteriaKind.QUESTIONS_CORRECT: _questions_correct,
}


def criteria_met(criteria, facts):
    evaluator = EVALUATORS.get(criteria.kind)
    if evaluator is None:
        return False
    return evaluator(facts, criteria.value)
