from contextlib import contextmanager
from unittest import mock

from django.db import connection
from django.test import SimpleTestCase, TestCase
from django.test.utils import CaptureQueriesContext
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APITestCase

from accounts.models import User
from gamification.exceptions import ProgressConflict, ProgressUnavailable
from gamification.models import Achievement, Level, UserAchievement, UserProgress
from gamification.services import ProgressionEngine
from gamification.store import DjangoProgressStore
from .exceptions import LessonNotFound, ModuleNotFound, QuestionNotFound
from .models import (
    LearningModule, Lesson, Question, QuestionAttempt, UserLessonProgress, UserModuleProgress,
)
from .services import LearningService, answers_match


class BusyProgressStore(DjangoProgressStore):
    @contextmanager
    def locked(self, user_id):
        raise ProgressConflict("row locked")
        yield


def create_levels():
    Level.objects.create(number=1, name='Beginner', min_xp=0, max_xp=99)
    Level.objects.create(number=2, name='Novice', min_xp=100, max_xp=299)
    Level.objects.create(number=3, name='Apprentice', min_xp=300, max_xp=None)


class AnswerMatchingTestCase(SimpleTestCase):
    def test_case_and_whitespace_are_ignored(self):
        for answer in ['Goes', ' goes ', 'GOES', 'goes']:
            self.assertTrue(answers_match(answer, 'goes'))

    def test_different_answer_does_not_match(self):
        self.assertFalse(answers_match('go', 'goes'))
        self.assertFalse(answers_match('', 'goes'))


class LearningServiceTestCase(TestCase):
    def setUp(self):
        create_levels()
        self.user = User.objects.create_user(username='ranger', password='pass')
        self.module = LearningModule.objects.create(title='Basic English Grammar', slug='basic-english-grammar')
        self.lesson1 = Lesson.objects.create(module=self.module, title='Present Tense', content='...', order=1,
                                             xp_reward=10)
        self.lesson2 = Lesson.objects.create(module=self.module, title='Past Tense', content='...', order=2,
                                             xp_reward=15)
        self.question = Question.objects.create(
            lesson=self.lesson1,
            question_type='FILL_BLANK',
            question='He ___ to school every day.',
            correct_answer='goes',
            explanation='Third person singular takes -es.',
            points=10,
        )
        self.service = LearningService(engine=ProgressionEngine(notifier=lambda result: None))

    def test_complete_lesson_awards_xp_once(self):
        first = self.service.complete_lesson_and_earn_xp(self.user.id, self.lesson1.id)
        self.assertEqual(first['xpEarned'], 10)
        self.assertFalse(first['alreadyCompleted'])
        self.assertEqual(first['progress']['totalXp'], 10)

        second = self.service.complete_lesson_and_earn_xp(self.user.id, self.lesson1.id)
        self.assertEqual(second, {'xpEarned': 0, 'alreadyCompleted': True})

        self.assertEqual(UserProgress.objects.get(user=self.user).total_xp, 10)
        lesson_progress = UserLessonProgress.objects.get(user=self.user, lesson=self.lesson1)
        self.assertTrue(lesson_progress.is_completed)
        self.assertEqual(lesson_progress.xp_earned, 10)

    def test_module_rollup_tracks_completed_lessons(self):
        self.service.complete_lesson_and_earn_xp(self.user.id, self.lesson1.id)
        rollup = UserModuleProgress.objects.get(user=self.user, module=self.module)
        self.assertEqual(rollup.progress, 50)
        self.assertFalse(rollup.is_completed)
        self.assertIsNone(rollup.completed_at)

        self.service.complete_lesson_and_earn_xp(self.user.id, self.lesson2.id)
        rollup.refresh_from_db()
        self.assertEqual(rollup.progress, 100)
        self.assertTrue(rollup.is_completed)
        self.assertIsNotNone(rollup.completed_at)
        self.assertEqual(rollup.xp_earned, 25)

    def test_module_without_lessons_is_never_complete(self):
        empty = LearningModule.objects.create(title='Coming soon', slug='coming-soon')
        rollup = self.service.recompute_module_progress(self.user.id, empty.id)
        self.assertEqual(rollup.progress, 0)
        self.assertFalse(rollup.is_completed)

    def test_unknown_module_raises(self):
        with self.assertRaises(ModuleNotFound):
            self.service.recompute_module_progress(self.user.id, 9999)

    def test_finishing_module_unlocks_module_achievement_in_same_call(self):
        Achievement.objects.create(
            name='Module Master',
            description='Complete your first module',
            criteria={'type': 'MODULES_COMPLETED', 'value': 1},
            xp_reward=100,
        )
        self.service.complete_lesson_and_earn_xp(self.user.id, self.lesson1.id)
        result = self.service.complete_lesson_and_earn_xp(self.user.id, self.lesson2.id)

        self.assertEqual([a['name'] for a in result['achievementsUnlocked']], ['Module Master'])
        self.assertEqual(result['progress']['totalXp'], 125)
        self.assertEqual(result['levelUp']['newLevel']['number'], 2)

    def test_unknown_lesson_writes_nothing(self):
        with self.assertRaises(LessonNotFound):
            self.service.complete_lesson_and_earn_xp(self.user.id, 9999)
        self.assertFalse(UserLessonProgress.objects.exists())
        self.assertFalse(UserProgress.objects.exists())

    def test_busy_progress_rolls_back_lesson_completion(self):
        service = LearningService(engine=ProgressionEngine(store=BusyProgressStore(), notifier=lambda r: None))
        with self.assertRaises(ProgressUnavailable):
            service.complete_lesson_and_earn_xp(self.user.id, self.lesson1.id)
        self.assertFalse(UserLessonProgress.objects.filter(is_completed=True).exists())
        self.assertFalse(UserModuleProgress.objects.exists())

    def test_correct_answer_variants(self):
        for answer in ['Goes', ' goes ', 'GOES']:
            result = self.service.submit_question_answer(self.user.id, self.question.id, answer)
            self.assertTrue(result['isCorrect'])
            self.assertEqual(result['points'], 10)
            self.assertEqual(result['xpEarned'], 10)
        self.assertEqual(UserProgress.objects.get(user=self.user).total_xp, 30)
        self.assertEqual(QuestionAttempt.objects.filter(user=self.user, is_correct=True).count(), 3)

    def test_wrong_answer_logged_without_xp(self):
        result = self.service.submit_question_answer(self.user.id, self.question.id, 'go', time_spent=12)

        self.assertFalse(result['isCorrect'])
        self.assertEqual(result['points'], 0)
        self.assertEqual(result['xpEarned'], 0)
        self.assertEqual(result['explanation'], 'Third person singular takes -es.')
        attempt = QuestionAttempt.objects.get(user=self.user)
        self.assertFalse(attempt.is_correct)
        self.assertEqual(attempt.points, 0)
        self.assertEqual(attempt.answer, 'go')
        self.assertEqual(attempt.time_spent, 12)
        self.assertFalse(UserProgress.objects.filter(user=self.user).exists())

    def test_unknown_question_raises(self):
        with self.assertRaises(QuestionNotFound):
            self.service.submit_question_answer(self.user.id, 9999, 'goes')
        self.assertFalse(QuestionAttempt.objects.exists())

    def test_correct_answers_unlock_question_achievement(self):
        Achievement.objects.create(
            name='Perfect Score',
            description='Get 2 questions correct',
            criteria={'type': 'QUESTIONS_CORRECT', 'value': 2},
            xp_reward=50,
            is_secret=True,
        )
        first = self.service.submit_question_answer(self.user.id, self.question.id, 'goes')
        self.assertEqual(first['achievementsUnlocked'], [])
        second = self.service.submit_question_answer(self.user.id, self.question.id, 'goes')
        self.assertEqual([a['name'] for a in second['achievementsUnlocked']], ['Perfect Score'])
        self.assertEqual(UserAchievement.objects.filter(user=self.user).count(), 1)

    def test_progress_overview(self):
        self.service.complete_lesson_and_earn_xp(self.user.id, self.lesson1.id)
        overview = self.service.get_progress_overview(self.user.id)

        self.assertEqual(overview['userProgress']['totalXp'], 10)
        self.assertEqual(overview['nextLevel']['number'], 2)
        self.assertEqual(overview['progressToNextLevel'], 10)
        self.assertEqual(overview['moduleProgress'][0]['progress'], 50)
        self.assertEqual(overview['lessonProgress'][0]['lessonId'], self.lesson1.id)
        self.assertEqual(overview['recentAchievements'], [])

    def test_progress_overview_creates_progress_for_new_user(self):
        overview = self.service.get_progress_overview(self.user.id)
        self.assertEqual(overview['userProgress']['totalXp'], 0)
        self.assertEqual(overview['userProgress']['level']['number'], 1)
        self.assertTrue(UserProgress.objects.filter(user=self.user).exists())


class LearningApiTestCase(APITestCase):
    def setUp(self):
        create_levels()
        self.user = User.objects.create_user(username='ranger', password='pass')
        self.module = LearningModule.objects.create(
            title='Basic English Grammar', slug='basic-english-grammar', is_published=True,
        )
        self.draft = LearningModule.objects.create(
            title='Advanced Writing', slug='advanced-writing', difficulty='ADVANCED',
        )
        self.lesson = Lesson.objects.create(module=self.module, title='Present Tense', content='...', xp_reward=10)
        self.question = Question.objects.create(
            lesson=self.lesson,
            question_type='MULTIPLE_CHOICE',
            question='Which is correct?',
            options=[{'value': 'goes', 'label': 'He goes'}, {'value': 'go', 'label': 'He go'}],
            correct_answer='goes',
            points=10,
        )
        self.client.force_authenticate(user=self.user)

    def test_module_list_hides_answers(self):
        response = self.client.get(reverse('module-list'))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        modules = response.json()['modules']
        self.assertEqual(len(modules), 2)
        question = modules[0]['lessons'][0]['questions'][0]
        self.assertNotIn('correct_answer', question)
        self.assertFalse(modules[0]['lessons'][0]['is_completed'])

    def test_module_list_filters(self):
        response = self.client.get(reverse('module-list'), {'published': 'true'})
        self.assertEqual([m['slug'] for m in response.json()['modules']], ['basic-english-grammar'])
        response = self.client.get(reverse('module-list'), {'difficulty': 'advanced'})
        self.assertEqual([m['slug'] for m in response.json()['modules']], ['advanced-writing'])

    def test_complete_lesson(self):
        url = reverse('lesson-complete', args=[self.lesson.id])
        response = self.client.post(url)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()['message'], 'Lesson completed successfully')
        self.assertEqual(response.json()['xpEarned'], 10)

        response = self.client.post(url)
        self.assertEqual(response.json()['xpEarned'], 0)
        self.assertTrue(response.json()['alreadyCompleted'])

    def test_complete_unknown_lesson(self):
        response = self.client.post(reverse('lesson-complete', args=[9999]))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.json()['error'], 'Lesson not found')

    def test_busy_progress_returns_503(self):
        with mock.patch('learning.views.LearningService.complete_lesson_and_earn_xp',
                        side_effect=ProgressUnavailable('busy')):
            response = self.client.post(reverse('lesson-complete', args=[self.lesson.id]))
        self.assertEqual(response.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)
        self.assertEqual(response.json()['code'], 'progress_unavailable')

    def test_missing_levels_returns_500(self):
        Level.objects.all().delete()
        response = self.client.post(reverse('lesson-complete', args=[self.lesson.id]))
        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.assertEqual(response.json()['code'], 'level_table_misconfigured')
        self.assertFalse(UserLessonProgress.objects.filter(is_completed=True).exists())

    def test_submit_answer(self):
        response = self.client.post(
            reverse('question-submit', args=[self.question.id]),
            {'answer': 'GOES', 'timeSpent': 20},
            format='json',
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.json()['isCorrect'])
        self.assertEqual(response.json()['xpEarned'], 10)
        self.assertEqual(QuestionAttempt.objects.get(user=self.user).time_spent, 20)

    def test_submit_without_answer(self):
        for payload in [{}, {'answer': ''}]:
            response = self.client.post(reverse('question-submit', args=[self.question.id]), payload, format='json')
            self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
            self.assertEqual(response.json()['error'], 'Answer is required')
        self.assertFalse(QuestionAttempt.objects.exists())

    def test_submit_unknown_question(self):
        response = self.client.post(reverse('question-submit', args=[9999]), {'answer': 'goes'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.json()['error'], 'Question not found')

    def test_progress_endpoint(self):
        self.client.post(reverse('lesson-complete', args=[self.lesson.id]))
        response = self.client.get(reverse('learning-progress'))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        data = response.json()
        self.assertEqual(data['userProgress']['totalXp'], 10)
        self.assertEqual(data['moduleProgress'][0]['isCompleted'], True)
        self.assertEqual(data['nextLevel']['name'], 'Novice')

    def test_requires_authentication(self):
        self.client.force_authenticate(user=None)
        response = self.client.post(reverse('lesson-complete', args=[self.lesson.id]))
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)


class LearningContentQueryTestCase(APITestCase):
    def setUp(self):
        self.user = User.objects.create_user(username='ranger', password='pass')
        self.client.force_authenticate(user=self.user)

    def add_module(self, index, lessons):
        module = LearningModule.objects.create(title=f'Module {index}', slug=f'module-{index}')
        for order in range(lessons):
            lesson = Lesson.objects.create(module=module, title=f'Lesson {order}', content='...', order=order)
            Question.objects.create(lesson=lesson, question_type='TRUE_FALSE', question='True?',
                                    correct_answer='true')
            UserLessonProgress.objects.create(user=self.user, lesson=lesson, is_completed=True)
        UserModuleProgress.objects.create(user=self.user, module=module, progress=100, is_completed=True)

    def count_module_list_queries(self):
        with CaptureQueriesContext(connection) as queries:
            response = self.client.get(reverse('module-list'))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        return len(queries), response.json()['modules']

    def test_module_list_query_count_does_not_grow_with_content(self):
        self.add_module(1, lessons=1)
        small_count, _ = self.count_module_list_queries()

        for index in range(2, 5):
            self.add_module(index, lessons=3)
        large_count, modules = self.count_module_list_queries()

        self.assertEqual(large_count, small_count)
        self.assertEqual(len(modules), 4)
        self.assertTrue(all(lesson['is_completed'] for m in modules for lesson in m['lessons']))
        self.assertTrue(all(m['user_progress']['is_completed'] for m in modules))


class LearningContentApiTestCase(APITestCase):
    def setUp(self):
        create_levels()
        self.ranger = User.objects.create_user(username='ranger', password='pass')
        self.core = User.objects.create_user(username='core', password='pass', role='CORE')
        self.admin = User.objects.create_user(username='admin', password='pass', role='ADMIN')
        self.module = LearningModule.objects.create(title='Basic English Grammar', slug='basic-english-grammar')
        self.lesson = Lesson.objects.create(module=self.module, title='Present Tense', content='...', xp_reward=10)
        self.question = Question.objects.create(
            lesson=self.lesson,
            question_type='FILL_BLANK',
            question='He ___ to school every day.',
            correct_answer='goes',
            explanation='Third person singular takes -es.',
        )
        self.client.force_authenticate(user=self.ranger)

    def test_module_detail_includes_caller_progress(self):
        LearningService(engine=ProgressionEngine(notifier=lambda r: None)).complete_lesson_and_earn_xp(
            self.ranger.id, self.lesson.id,
        )
        response = self.client.get(reverse('module-detail', args=[self.module.id]))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        data = response.json()
        self.assertTrue(data['user_progress']['is_completed'])
        self.assertTrue(data['lessons'][0]['is_completed'])
        self.assertEqual(data['lessons'][0]['user_progress']['xp_earned'], 10)

    def test_lesson_detail_hides_answers(self):
        response = self.client.get(reverse('lesson-detail', args=[self.lesson.id]))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        question = response.json()['questions'][0]
        self.assertNotIn('correct_answer', question)
        self.assertNotIn('explanation', question)
        self.assertIsNone(response.json()['user_progress'])

    def test_unknown_content_returns_not_found(self):
        for name, message in [('module-detail', 'Module not found'), ('lesson-detail', 'Lesson not found'),
                              ('question-detail', 'Question not found')]:
            response = self.client.get(reverse(name, args=[9999]))
            self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
            self.assertEqual(response.json()['error'], message)

    def test_members_cannot_author_content(self):
        response = self.client.post(reverse('module-list'), {'title': 'Mine', 'slug': 'mine'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        response = self.client.patch(reverse('question-detail', args=[self.question.id]),
                                     {'correct_answer': 'go'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.question.refresh_from_db()
        self.assertEqual(self.question.correct_answer, 'goes')

    def test_core_member_creates_and_edits_module(self):
        self.client.force_authenticate(user=self.core)
        response = self.client.post(reverse('module-list'), {
            'title': 'Public Speaking',
            'slug': 'public-speaking',
            'difficulty': 'INTERMEDIATE',
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        module_id = response.json()['id']
        self.assertEqual(response.json()['xp_reward'], 100)

        response = self.client.patch(reverse('module-detail', args=[module_id]), {'is_published': True},
                                     format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(LearningModule.objects.get(id=module_id).is_published)

        response = self.client.post(reverse('module-list'), {'title': 'Again', 'slug': 'public-speaking'},
                                    format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_only_admins_delete_content(self):
        self.client.force_authenticate(user=self.core)
        response = self.client.delete(reverse('module-detail', args=[self.module.id]))
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        self.client.force_authenticate(user=self.admin)
        response = self.client.delete(reverse('module-detail', args=[self.module.id]))
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.assertFalse(LearningModule.objects.exists())
        self.assertFalse(Question.objects.exists())

    def test_adding_lesson_reopens_completed_module(self):
        LearningService(engine=ProgressionEngine(notifier=lambda r: None)).complete_lesson_and_earn_xp(
            self.ranger.id, self.lesson.id,
        )
        self.client.force_authenticate(user=self.core)
        response = self.client.post(reverse('lesson-list'), {
            'module': self.module.id,
            'title': 'Past Tense',
            'content': '...',
            'order': 2,
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)

        rollup = UserModuleProgress.objects.get(user=self.ranger, module=self.module)
        self.assertEqual(rollup.progress, 50)
        self.assertFalse(rollup.is_completed)
        self.assertIsNone(rollup.completed_at)

    def test_deleting_lesson_recomputes_rollup(self):
        extra = Lesson.objects.create(module=self.module, title='Past Tense', content='...', order=2)
        LearningService(engine=ProgressionEngine(notifier=lambda r: None)).complete_lesson_and_earn_xp(
            self.ranger.id, self.lesson.id,
        )
        self.assertFalse(UserModuleProgress.objects.get(user=self.ranger).is_completed)

        self.client.force_authenticate(user=self.admin)
        response = self.client.delete(reverse('lesson-detail', args=[extra.id]))
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        rollup = UserModuleProgress.objects.get(user=self.ranger)
        self.assertTrue(rollup.is_completed)
        self.assertEqual(rollup.progress, 100)

    def test_lesson_list_filtered_by_module(self):
        other = LearningModule.objects.create(title='Other', slug='other')
        Lesson.objects.create(module=other, title='Elsewhere', content='...')
        response = self.client.get(reverse('lesson-list'), {'module': self.module.id})
        self.assertEqual([lesson['title'] for lesson in response.json()['lessons']], ['Present Tense'])

    def test_question_answers_visible_to_editors_only(self):
        response = self.client.get(reverse('question-list'), {'lesson': self.lesson.id})
        self.assertNotIn('correct_answer', response.json()['questions'][0])

        self.client.force_authenticate(user=self.core)
        response = self.client.get(reverse('question-list'), {'type': 'fill_blank'})
        self.assertEqual(response.json()['questions'][0]['correct_answer'], 'goes')

    def test_core_member_adds_question(self):
        self.client.force_authenticate(user=self.core)
        response = self.client.post(reverse('question-list'), {
            'lesson': self.lesson.id,
            'question_type': 'TRUE_FALSE',
            'question': '"She go" is correct.',
            'correct_answer': 'false',
            'points': 5,
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(self.lesson.questions.count(), 2)
