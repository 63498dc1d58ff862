import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone as dt_timezone
from types import SimpleNamespace
from unittest import mock

from channels.layers import get_channel_layer
from channels.testing import WebsocketCommunicator
from django.db import IntegrityError, connection, transaction
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APITestCase

from accounts.models import User
from learning.models import LearningModule, UserModuleProgress
from .consumers import ProgressConsumer
from .criteria import Criteria, CriteriaKind
from .domain import AchievementRule, AwardResult, LevelTier, LevelUp, ProgressState
from .exceptions import InvalidXPAmount, LevelTableError, ProgressConflict, ProgressUnavailable
from .levels import next_level, progress_to_next_level, resolve_level
from .models import Achievement, Level, UserAchievement, UserProgress
from .notifications import publish_award
from .services import ProgressionEngine, next_streak
from .store import DjangoProgressStore, ProgressStore


LEVELS = [
    LevelTier(id=1, number=1, name='Beginner', min_xp=0, max_xp=99),
    LevelTier(id=2, number=2, name='Novice', min_xp=100, max_xp=299),
    LevelTier(id=3, number=3, name='Apprentice', min_xp=300, max_xp=None),
]

DAY_0 = datetime(2025, 3, 10, 5, 0, tzinfo=dt_timezone.utc)


def rule(id, name, kind, value, xp_reward=0):
    return AchievementRule(
        id=id,
        name=name,
        description=name,
        criteria=Criteria.parse({'type': kind, 'value': value}),
        xp_reward=xp_reward,
    )


class InMemoryProgressStore(ProgressStore):
    def __init__(self, levels=LEVELS, achievements=(), completed_modules=0, completed_lessons=0,
                 correct_attempts=0):
        self.levels = list(levels)
        self.achievements = list(achievements)
        self.progress = {}
        self.unlocked = {}
        self.completed_modules = completed_modules
        self.completed_lessons = completed_lessons
        self.correct_attempts = correct_attempts
        self.conflicts = 0

    @contextmanager
    def locked(self, user_id):
        if self.conflicts:
            self.conflicts -= 1
            raise ProgressConflict("simulated conflict")
        yield

    def get_user_progress(self, user_id):
        state = self.progress.get(user_id)
        return replace(state) if state else None

    def create_user_progress(self, user_id, level):
        self.progress[user_id] = ProgressState(user_id=user_id, total_xp=0, level=level)
        return replace(self.progress[user_id])

    def save_user_progress(self, state):
        self.progress[state.user_id] = replace(state)

    def increment_total_xp(self, user_id, amount):
        self.progress[user_id].total_xp += amount

    def get_levels(self):
        return list(self.levels)

    def get_achievement_catalog(self):
        return list(self.achievements)

    def get_unlocked_achievement_ids(self, user_id):
        return set(self.unlocked.get(user_id, ()))

    def insert_user_achievement(self, user_id, achievement_id):
        unlocked = self.unlocked.setdefault(user_id, set())
        if achievement_id in unlocked:
            return False
        unlocked.add(achievement_id)
        return True

    def count_completed_modules(self, user_id):
        return self.completed_modules

    def count_completed_lessons(self, user_id):
        return self.completed_lessons

    def count_correct_attempts(self, user_id):
        return self.correct_attempts


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class LevelResolutionTestCase(SimpleTestCase):
    def test_every_xp_amount_matches_exactly_one_level(self):
        for xp in list(range(0, 400)) + [10_000, 10 ** 9]:
            level = resolve_level(LEVELS, xp)
            self.assertLessEqual(level.min_xp, xp)
            if level.max_xp is not None:
                self.assertGreaterEqual(level.max_xp, xp)
            self.assertEqual(sum(1 for l in LEVELS if l.contains(xp)), 1)

    def test_boundaries(self):
        self.assertEqual(resolve_level(LEVELS, 99).number, 1)
        self.assertEqual(resolve_level(LEVELS, 100).number, 2)
        self.assertEqual(resolve_level(LEVELS, 299).number, 2)
        self.assertEqual(resolve_level(LEVELS, 300).number, 3)

    def test_overlapping_tiers_prefer_highest_number(self):
        overlapping = LEVELS + [LevelTier(id=9, number=9, name='Overlap', min_xp=50, max_xp=150)]
        self.assertEqual(resolve_level(overlapping, 120).number, 9)

    def test_empty_table_is_configuration_error(self):
        with self.assertRaises(LevelTableError):
            resolve_level([], 10)

    def test_xp_below_lowest_tier_is_configuration_error(self):
        gapped = [LevelTier(id=1, number=1, name='Late start', min_xp=50, max_xp=None)]
        with self.assertRaises(LevelTableError):
            resolve_level(gapped, 10)

    def test_progress_to_next_level(self):
        self.assertEqual(progress_to_next_level(LEVELS, LEVELS[0], 50), 50)
        self.assertEqual(progress_to_next_level(LEVELS, LEVELS[1], 200), 50)
        self.assertEqual(progress_to_next_level(LEVELS, LEVELS[2], 5000), 100)
        self.assertIsNone(next_level(LEVELS, LEVELS[2]))


class StreakTestCase(SimpleTestCase):
    def test_first_activity_starts_streak(self):
        self.assertEqual(next_streak(0, None, DAY_0), 1)

    def test_consecutive_same_day_and_gap(self):
        day_1 = DAY_0 + timedelta(days=1)
        self.assertEqual(next_streak(3, DAY_0, day_1), 4)
        self.assertEqual(next_streak(4, day_1, day_1 + timedelta(hours=2)), 4)
        self.assertEqual(next_streak(4, day_1, DAY_0 + timedelta(days=3)), 1)

    def test_calendar_days_not_elapsed_hours(self):
        late = datetime(2025, 3, 10, 23, 30)
        early_next_day = datetime(2025, 3, 11, 0, 30)
        self.assertEqual(next_streak(2, late, early_next_day), 3)

        morning = datetime(2025, 3, 10, 0, 30)
        night = datetime(2025, 3, 10, 23, 30)
        self.assertEqual(next_streak(2, morning, night), 2)


class CriteriaTestCase(SimpleTestCase):
    def test_parse_known_kind(self):
        criteria = Criteria.parse({'type': 'STREAK_DAYS', 'value': 7})
        self.assertEqual(criteria.kind, CriteriaKind.STREAK_DAYS)
        self.assertEqual(criteria.value, 7)

    def test_unknown_or_malformed_criteria_have_no_kind(self):
        self.assertIsNone(Criteria.parse({'type': 'LOGIN_COUNT', 'value': 1}).kind)
        self.assertIsNone(Criteria.parse({'type': 'TOTAL_XP'}).kind)
        self.assertIsNone(Criteria.parse({'type': 'TOTAL_XP', 'value': 'lots'}).kind)
        self.assertIsNone(Criteria.parse(['TOTAL_XP', 10]).kind)

    def test_parsed_criteria_are_plain_values(self):
        self.assertEqual(
            Criteria.parse({'type': 'TOTAL_XP', 'value': '1000'}),
            Criteria(kind=CriteriaKind.TOTAL_XP, value=1000),
        )
        self.assertEqual(Criteria.parse({'type': 'LOGIN_COUNT', 'value': 1}), Criteria(kind=None))
        self.assertEqual(Criteria.parse(None), Criteria(kind=None))


class ProgressionEngineTestCase(SimpleTestCase):
    def setUp(self):
        self.notified = []
        self.clock = Clock(DAY_0)

    def make_engine(self, store, **kwargs):
        return ProgressionEngine(store=store, clock=self.clock, notifier=self.notified.append, **kwargs)

    def test_first_award_bootstraps_progress(self):
        store = InMemoryProgressStore()
        result = self.make_engine(store).add_xp(1, 20)

        self.assertEqual(result.progress.total_xp, 20)
        self.assertEqual(result.progress.level.number, 1)
        self.assertEqual(result.progress.streak, 1)
        self.assertEqual(result.progress.last_active_at, DAY_0)
        self.assertIsNone(result.level_up)

    def test_end_to_end_level_up_and_achievement(self):
        store = InMemoryProgressStore(achievements=[
            rule(1, 'Knowledge Seeker', 'TOTAL_XP', 1000, xp_reward=100),
        ])
        store.progress[7] = ProgressState(user_id=7, total_xp=90, level=LEVELS[0], streak=1, last_active_at=DAY_0)
        engine = self.make_engine(store)

        first = engine.add_xp(7, 15)
        self.assertEqual(first.progress.total_xp, 105)
        self.assertEqual(first.level_up, LevelUp(previous_level=LEVELS[0], new_level=LEVELS[1]))
        self.assertEqual(first.achievements_unlocked, [])

        second = engine.add_xp(7, 900)
        self.assertEqual(second.progress.total_xp, 1105)
        self.assertEqual([a.name for a in second.achievements_unlocked], ['Knowledge Seeker'])
        self.assertEqual(second.level_up.new_level.number, 3)
        self.assertEqual(store.progress[7].total_xp, 1105)
        self.assertEqual(store.progress[7].level.number, 3)

        payload = second.as_dict()
        self.assertEqual(payload['totalXp'], 1105)
        self.assertEqual(payload['levelUp']['previousLevel']['number'], 2)
        self.assertEqual(payload['achievementsUnlocked'][0]['xpReward'], 100)

    def test_streak_over_several_days(self):
        store = InMemoryProgressStore()
        store.progress[3] = ProgressState(user_id=3, total_xp=10, level=LEVELS[0], streak=3, last_active_at=DAY_0)
        engine = self.make_engine(store)

        self.clock.now = DAY_0 + timedelta(days=1)
        self.assertEqual(engine.add_xp(3, 5).progress.streak, 4)
        self.clock.now = DAY_0 + timedelta(days=1, hours=3)
        self.assertEqual(engine.add_xp(3, 5).progress.streak, 4)
        self.clock.now = DAY_0 + timedelta(days=3)
        self.assertEqual(engine.add_xp(3, 5).progress.streak, 1)

    def test_total_and_level_never_decrease(self):
        store = InMemoryProgressStore()
        engine = self.make_engine(store)
        previous_xp, previous_level = 0, 0
        for amount in [1, 7, 50, 42, 1, 199, 3, 500]:
            progress = engine.add_xp(1, amount).progress
            self.assertGreaterEqual(progress.total_xp, previous_xp)
            self.assertGreaterEqual(progress.level.number, previous_level)
            previous_xp, previous_level = progress.total_xp, progress.level.number

    def test_non_positive_or_non_integer_amount_is_rejected_without_writes(self):
        store = InMemoryProgressStore()
        engine = self.make_engine(store)
        for amount in [0, -5, 1.5, True, '10']:
            with self.assertRaises(InvalidXPAmount):
                engine.add_xp(1, amount)
        self.assertEqual(store.progress, {})

    def test_missing_level_table_is_fatal(self):
        engine = self.make_engine(InMemoryProgressStore(levels=[]))
        with self.assertRaises(LevelTableError):
            engine.add_xp(1, 10)

    def test_achievement_unlocks_only_once(self):
        store = InMemoryProgressStore(achievements=[rule(1, 'Hundred', 'TOTAL_XP', 100, xp_reward=10)])
        engine = self.make_engine(store)

        self.assertEqual(len(engine.add_xp(1, 150).achievements_unlocked), 1)
        self.assertEqual(engine.add_xp(1, 150).achievements_unlocked, [])
        self.assertEqual(store.unlocked[1], {1})
        self.assertEqual(store.progress[1].total_xp, 310)

    def test_several_achievements_unlock_from_one_award(self):
        store = InMemoryProgressStore(
            achievements=[
                rule(1, 'First XP', 'TOTAL_XP', 1),
                rule(2, 'Showed Up', 'STREAK_DAYS', 1),
                rule(3, 'Quiz Whiz', 'QUESTIONS_CORRECT', 5),
                rule(4, 'Module Master', 'MODULES_COMPLETED', 1),
                rule(5, 'Bookworm', 'LESSONS_COMPLETED', 3),
                rule(6, 'Mystery', 'LOGIN_COUNT', 0),
            ],
            correct_attempts=5,
            completed_modules=0,
            completed_lessons=3,
        )
        result = self.make_engine(store).add_xp(1, 10)
        self.assertEqual([a.id for a in result.achievements_unlocked], [1, 2, 3, 5])

    def test_reward_can_unlock_further_achievements_in_same_call(self):
        store = InMemoryProgressStore(achievements=[
            rule(1, 'Big Spender', 'TOTAL_XP', 140),
            rule(2, 'Centurion', 'TOTAL_XP', 100, xp_reward=50),
        ])
        result = self.make_engine(store).add_xp(1, 100)
        self.assertEqual([a.id for a in result.achievements_unlocked], [2, 1])
        self.assertEqual(result.progress.total_xp, 150)

    def test_reward_crossing_level_boundary_reports_level_up(self):
        store = InMemoryProgressStore(achievements=[rule(1, 'Almost', 'TOTAL_XP', 95, xp_reward=10)])
        store.progress[1] = ProgressState(user_id=1, total_xp=90, level=LEVELS[0])

        result = self.make_engine(store).add_xp(1, 5)
        self.assertEqual(result.progress.total_xp, 105)
        self.assertEqual(result.level_up.new_level.number, 2)
        self.assertEqual(store.progress[1].level.number, 2)

    def test_achievement_reward_does_not_touch_streak(self):
        store = InMemoryProgressStore(achievements=[rule(1, 'Hundred', 'TOTAL_XP', 100, xp_reward=500)])
        store.progress[1] = ProgressState(user_id=1, total_xp=0, level=LEVELS[0], streak=4,
                                          last_active_at=DAY_0 - timedelta(days=1))
        result = self.make_engine(store).add_xp(1, 100)
        self.assertEqual(result.progress.streak, 5)
        self.assertEqual(store.progress[1].streak, 5)

    def test_conflicts_are_retried(self):
        store = InMemoryProgressStore()
        store.conflicts = 2
        engine = self.make_engine(store, max_attempts=3, retry_backoff=0.1)
        with mock.patch('gamification.services.time.sleep') as sleep:
            result = engine.add_xp(1, 10)
        self.assertEqual(result.progress.total_xp, 10)

        first_wait, second_wait = [c.args[0] for c in sleep.call_args_list]
        self.assertTrue(0.05 <= first_wait <= 0.1)
        self.assertTrue(0.1 <= second_wait <= 0.2)

    def test_exhausted_retries_surface_as_unavailable(self):
        store = InMemoryProgressStore()
        store.conflicts = 3
        with self.assertRaises(ProgressUnavailable):
            self.make_engine(store, max_attempts=3, retry_backoff=0).add_xp(1, 10)
        self.assertEqual(store.progress, {})

    def test_notifier_only_called_for_level_ups_and_unlocks(self):
        store = InMemoryProgressStore()
        engine = self.make_engine(store)
        engine.add_xp(1, 10)
        self.assertEqual(self.notified, [])
        engine.add_xp(1, 100)
        self.assertEqual(len(self.notified), 1)
        self.assertEqual(self.notified[0].level_up.new_level.number, 2)


class DjangoProgressStoreTestCase(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username='rangers1', password='pass')
        self.level1 = Level.objects.create(number=1, name='Beginner', min_xp=0, max_xp=99)
        self.level2 = Level.objects.create(number=2, name='Novice', min_xp=100, max_xp=299)
        self.level3 = Level.objects.create(number=3, name='Apprentice', min_xp=300, max_xp=None)
        self.engine = ProgressionEngine(notifier=lambda result: None, clock=Clock(DAY_0))

    def test_first_award_creates_progress_row(self):
        result = self.engine.add_xp(self.user.id, 120)

        progress = UserProgress.objects.get(user=self.user)
        self.assertEqual(progress.total_xp, 120)
        self.assertEqual(progress.level, self.level2)
        self.assertEqual(progress.streak, 1)
        self.assertEqual(progress.last_active_at, DAY_0)
        self.assertEqual(result.level_up.previous_level.number, 1)

    def test_achievement_reward_persisted_with_consistent_level(self):
        Achievement.objects.create(
            name='Knowledge Seeker',
            description='Reach 1000 total XP',
            criteria={'type': 'TOTAL_XP', 'value': 250},
            xp_reward=100,
        )
        result = self.engine.add_xp(self.user.id, 260)

        progress = UserProgress.objects.get(user=self.user)
        self.assertEqual(progress.total_xp, 360)
        self.assertEqual(progress.level, self.level3)
        self.assertEqual(result.progress.total_xp, 360)
        self.assertEqual(UserAchievement.objects.filter(user=self.user).count(), 1)

    def test_modules_completed_counted_from_rollups(self):
        module = LearningModule.objects.create(title='Basics', slug='basics')
        UserModuleProgress.objects.create(user=self.user, module=module, is_completed=True, progress=100)
        Achievement.objects.create(
            name='Module Master',
            description='Complete your first module',
            criteria={'type': 'MODULES_COMPLETED', 'value': 1},
        )
        result = self.engine.add_xp(self.user.id, 5)
        self.assertEqual([a.name for a in result.achievements_unlocked], ['Module Master'])

    def test_duplicate_unlock_insert_is_a_no_op(self):
        achievement = Achievement.objects.create(
            name='Streak Champion', description='7 days', criteria={'type': 'STREAK_DAYS', 'value': 7},
        )
        store = DjangoProgressStore()
        self.assertTrue(store.insert_user_achievement(self.user.id, achievement.id))
        self.assertFalse(store.insert_user_achievement(self.user.id, achievement.id))
        self.assertEqual(UserAchievement.objects.filter(user=self.user).count(), 1)

    def test_unique_constraint_enforced_by_database(self):
        achievement = Achievement.objects.create(
            name='Perfect Score', description='10 correct', criteria={'type': 'QUESTIONS_CORRECT', 'value': 10},
        )
        UserAchievement.objects.create(user=self.user, achievement=achievement)
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                UserAchievement.objects.create(user=self.user, achievement=achievement)

    def test_missing_levels_abort_award(self):
        Level.objects.all().delete()
        with self.assertRaises(LevelTableError):
            self.engine.add_xp(self.user.id, 10)
        self.assertFalse(UserProgress.objects.filter(user=self.user).exists())


class ConcurrentAwardTestCase(TransactionTestCase):
    def setUp(self):
        self.user = User.objects.create_user(username='double-submit', password='pass')
        Level.objects.create(number=1, name='Beginner', min_xp=0, max_xp=None)

    def test_parallel_awards_to_one_user_all_land(self):
        if connection.vendor == 'sqlite' and connection.is_in_memory_db():
            self.skipTest("needs a file-backed database shared between threads")

        workers, awards_each = 4, 10
        barrier = threading.Barrier(workers)
        outcomes = []
        outcomes_lock = threading.Lock()

        def award():
            engine = ProgressionEngine(notifier=lambda result: None)
            try:
                barrier.wait()
                for _ in range(awards_each):
                    try:
                        engine.add_xp(self.user.id, 1)
                        outcome = 'ok'
                    except ProgressUnavailable:
                        outcome = 'busy'
                    with outcomes_lock:
                        outcomes.append(outcome)
            finally:
                connection.close()

        threads = [threading.Thread(target=award) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(outcomes.count('busy'), 0)
        self.assertEqual(outcomes.count('ok'), workers * awards_each)
        progress = UserProgress.objects.get(user=self.user)
        self.assertEqual(progress.total_xp, workers * awards_each)
        self.assertEqual(progress.streak, 1)


class NotificationTestCase(TestCase):
    def make_result(self):
        return AwardResult(
            progress=ProgressState(user_id=7, total_xp=105, level=LEVELS[1], streak=1, last_active_at=DAY_0),
            xp_awarded=15,
            level_up=LevelUp(previous_level=LEVELS[0], new_level=LEVELS[1]),
        )

    def test_award_published_to_user_group_after_commit(self):
        channel_layer = mock.Mock()
        channel_layer.group_send = mock.AsyncMock()
        with mock.patch('gamification.notifications.get_channel_layer', return_value=channel_layer):
            with self.captureOnCommitCallbacks(execute=True):
                publish_award(self.make_result())

        group, message = channel_layer.group_send.call_args.args
        self.assertEqual(group, 'progress_7')
        self.assertEqual(message['type'], 'progress_update')
        self.assertEqual(message['progress']['levelUp']['newLevel']['number'], 2)

    @override_settings(PROGRESS_NOTIFICATIONS_ENABLED=False)
    def test_disabled_notifications_send_nothing(self):
        with self.captureOnCommitCallbacks() as callbacks:
            publish_award(self.make_result())
        self.assertEqual(callbacks, [])


class ProgressConsumerTestCase(TransactionTestCase):
    async def test_user_receives_progress_updates(self):
        communicator = WebsocketCommunicator(ProgressConsumer.as_asgi(), '/ws/progress/')
        communicator.scope['user'] = SimpleNamespace(id=42, is_authenticated=True)
        connected, _ = await communicator.connect()
        self.assertTrue(connected)

        await get_channel_layer().group_send('progress_42', {
            'type': 'progress_update',
            'progress': {'totalXp': 105, 'levelUp': {'newLevel': {'number': 2}}, 'achievementsUnlocked': []},
        })
        message = await communicator.receive_json_from()
        self.assertEqual(message['type'], 'progress_update')
        self.assertEqual(message['levelUp']['newLevel']['number'], 2)
        self.assertEqual(message['progress']['totalXp'], 105)

        await communicator.disconnect()

    async def test_anonymous_connection_rejected(self):
        communicator = WebsocketCommunicator(ProgressConsumer.as_asgi(), '/ws/progress/')
        communicator.scope['user'] = SimpleNamespace(id=None, is_authenticated=False)
        connected, _ = await communicator.connect()
        self.assertFalse(connected)


class GamificationApiTestCase(APITestCase):
    def setUp(self):
        self.user1 = User.objects.create_user(username='user1', password='pass')
        self.user2 = User.objects.create_user(username='user2', password='pass')
        self.level1 = Level.objects.create(number=1, name='Beginner', min_xp=0, max_xp=99)
        self.level2 = Level.objects.create(number=2, name='Novice', min_xp=100, max_xp=None)
        UserProgress.objects.create(user=self.user1, total_xp=50, level=self.level1, streak=2)
        UserProgress.objects.create(user=self.user2, total_xp=150, level=self.level2, streak=5)
        self.open = Achievement.objects.create(
            name='Knowledge Seeker', description='Reach 1000 total XP',
            criteria={'type': 'TOTAL_XP', 'value': 1000}, xp_reward=100,
        )
        self.secret = Achievement.objects.create(
            name='Perfect Score', description='Get 10 questions correct',
            criteria={'type': 'QUESTIONS_CORRECT', 'value': 10}, xp_reward=50, is_secret=True,
        )
        self.client.force_authenticate(user=self.user1)

    def test_requires_authentication(self):
        self.client.force_authenticate(user=None)
        response = self.client.get(reverse('level-list'))
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_level_list(self):
        response = self.client.get(reverse('level-list'))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([level['number'] for level in response.json()], [1, 2])
        self.assertIsNone(response.json()[1]['max_xp'])

    def test_secret_achievements_hidden_until_unlocked(self):
        response = self.client.get(reverse('achievement-list'))
        data = {a['id']: a for a in response.json()}
        self.assertEqual(data[self.open.id]['name'], 'Knowledge Seeker')
        self.assertEqual(data[self.secret.id]['name'], '???')
        self.assertFalse(data[self.secret.id]['unlocked'])

        UserAchievement.objects.create(user=self.user1, achievement=self.secret)
        response = self.client.get(reverse('achievement-list'))
        data = {a['id']: a for a in response.json()}
        self.assertEqual(data[self.secret.id]['name'], 'Perfect Score')
        self.assertTrue(data[self.secret.id]['unlocked'])
        self.assertIsNotNone(data[self.secret.id]['unlocked_at'])

    def test_leaderboard_ordered_by_xp(self):
        response = self.client.get(reverse('leaderboard'))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        data = response.json()
        self.assertEqual([row['username'] for row in data], ['user2', 'user1'])
        self.assertEqual(data[0]['level'], 2)
        self.assertEqual(data[0]['streak'], 5)
