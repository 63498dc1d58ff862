import logging
import random
import time

from django.conf import settings
from django.utils import timezone

from .criteria import AchievementFacts, criteria_met
from .domain import AwardResult, LevelUp, ProgressState
from .exceptions import InvalidXPAmount, ProgressConflict, ProgressUnavailable
from .levels import lowest_level, resolve_level
from .store import DjangoProgressStore

logger = logging.getLogger(__name__)


def _calendar_day(moment):
    if timezone.is_aware(moment):
        return timezone.localtime(moment).date()
    return moment.date()


def next_streak(streak, last_active_at, now):
    """
    Streak after an XP-earning activity at ``now``.

    Days are calendar days in the project time zone: activity on the next
    day extends the streak, a skipped day restarts it at 1 (the day of the
    activity counts), and a second activity on the same day leaves it as is.
    """
    if last_active_at is None:
        return 1

    days_since_last_active = (_calendar_day(now) - _calendar_day(last_active_at)).days
    if days_since_last_active <= 0:
        return max(streak, 1)
    if days_since_last_active == 1:
        return streak + 1
    return 1


class ProgressionEngine:
    """
    Awards XP and keeps level, streak and achievements consistent with it.

    All reads and writes for one award happen inside ``store.locked(user_id)``
    so concurrent awards to the same user are serialized. A store signals a
    lost race with ProgressConflict; the award is then re-run from a fresh
    read, up to ``max_attempts`` times, after a jittered exponential wait.
    """

    def __init__(self, store=None, clock=None, notifier=None, max_attempts=None, retry_backoff=None):
        self.store = store or DjangoProgressStore()
        self.clock = clock or timezone.now
        if notifier is None:
            from .notifications import publish_award
            notifier = publish_award
        self.notifier = notifier
        self.max_attempts = max_attempts or getattr(settings, 'PROGRESSION_MAX_AWARD_ATTEMPTS', 3)
        if retry_backoff is None:
            retry_backoff = getattr(settings, 'PROGRESSION_RETRY_BACKOFF', 0.05)
        self.retry_backoff = retry_backoff

    def retry_delay(self, attempt):
        """Seconds to wait after failed ``attempt``; doubles each time, with jitter."""
        return self.retry_backoff * (2 ** (attempt - 1)) * random.uniform(0.5, 1.0)

    def get_or_create_progress(self, user_id):
        with self.store.locked(user_id):
            state = self.store.get_user_progress(user_id)
            if state is None:
                state = self.store.create_user_progress(user_id, lowest_level(self.store.get_levels()))
            return state

    def add_xp(self, user_id, amount):
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidXPAmount(f"XP amount must be a positive integer, got {amount!r}")

        attempt = 1
        while True:
            try:
                result = self._award(user_id, amount)
                break
            except ProgressConflict:
                if attempt >= self.max_attempts:
                    logger.error(f"Giving up awarding {amount} XP to user {user_id} after {attempt} attempts")
                    raise ProgressUnavailable(
                        f"Progress for user {user_id} is busy, please try again"
                    )
                delay = self.retry_delay(attempt)
                logger.warning(f"Retrying XP award for user {user_id} in {delay:.3f}s (attempt {attempt + 1})")
                time.sleep(delay)
                attempt += 1

        if result.level_up or result.achievements_unlocked:
            self.notifier(result)
        return result

    def _award(self, user_id, amount):
        with self.store.locked(user_id):
            levels = self.store.get_levels()
            state = self.store.get_user_progress(user_id)
            if state is None:
                state = self.store.create_user_progress(user_id, lowest_level(levels))

            previous_level = state.level
            now = self.clock()
            new_total_xp = state.total_xp + amount
            new_level = resolve_level(levels, new_total_xp)
            new_streak = next_streak(state.streak, state.last_active_at, now)
            if state.last_active_at and new_streak == 1 and state.streak > 1:
                logger.info(f"User {user_id} broke streak of {state.streak} days")

            state = ProgressState(
                user_id=user_id,
                total_xp=new_total_xp,
                level=new_level,
                streak=new_streak,
                last_active_at=now,
            )
            self.store.save_user_progress(state)
            logger.info(f"User {user_id} gained {amount} XP. Total: {new_total_xp}, Level: {new_level.number}")

            unlocked = self.evaluate_achievements(user_id, state, levels=levels)
            if state.level != new_level:
                # Achievement rewards pushed the user over a level boundary.
                self.store.save_user_progress(state)

            level_up = None
            if state.level.number > previous_level.number:
                level_up = LevelUp(previous_level=previous_level, new_level=state.level)
                logger.info(f"User {user_id} leveled up to {state.level.number} ({state.level.name})!")

            return AwardResult(
                progress=state,
                xp_awarded=amount,
                level_up=level_up,
                achievements_unlocked=unlocked,
            )

    def evaluate_achievements(self, user_id, state, levels=None):
        """
        Unlock every achievement whose criteria ``state`` now satisfies.

        Rewards are added straight to total XP (no streak credit) and the
        level is re-resolved from the new total. Passes repeat until nothing
        new unlocks, so a reward can satisfy another achievement in the same
        call. Returns the newly unlocked rules in catalog order.
        """
        unlocked_ids = self.store.get_unlocked_achievement_ids(user_id)
        pending = [rule for rule in self.store.get_achievement_catalog() if rule.id not in unlocked_ids]
        facts = AchievementFacts(self.store, user_id, state)
        newly_unlocked = []

        while pending:
            still_locked = []
            rewarded = False
            for rule in pending:
                if not criteria_met(rule.criteria, facts):
                    still_locked.append(rule)
                    continue
                if not self.store.insert_user_achievement(user_id, rule.id):
                    continue
                newly_unlocked.append(rule)
                logger.info(f"User {user_id} unlocked achievement: {rule.name}")
                if rule.xp_reward > 0:
                    self.store.increment_total_xp(user_id, rule.xp_reward)
                    state.total_xp += rule.xp_reward
                    rewarded = True

            if not rewarded:
                break
            if levels is None:
                levels = self.store.get_levels()
            state.level = resolve_level(levels, state.total_xp)
            pending = still_locked

        return newly_unlocked
