from django.core.management.base import BaseCommand
from django.db import transaction
from learning.models import LearningModule, Lesson, Question

MODULES = [
    {
        'slug': 'english-basics',
        'title': 'English Basics',
        'description': 'Learn fundamental English grammar, vocabulary, and sentence structure.',
        'difficulty': 'BEGINNER',
        'order': 1,
        'is_published': True,
        'xp_reward': 150,
        'lessons': [
            {
                'title': 'Introduction to English',
                'content': '<h2>Welcome to English Basics!</h2><p>English sentences typically follow the Subject-Verb-Object (SVO) pattern.</p>',
                'xp_reward': 25,
                'questions': [
                    {
                        'question_type': 'MULTIPLE_CHOICE',
                        'question': 'What is the typical sentence structure in English?',
                        'options': [
                            {'value': 'SVO', 'label': 'Subject-Verb-Object'},
                            {'value': 'VSO', 'label': 'Verb-Subject-Object'},
                            {'value': 'OVS', 'label': 'Object-Verb-Subject'},
                            {'value': 'SOV', 'label': 'Subject-Object-Verb'},
                        ],
                        'correct_answer': 'SVO',
                        'explanation': 'English typically follows the Subject-Verb-Object (SVO) pattern, like "I eat apples".',
                        'points': 10,
                    },
                    {
                        'question_type': 'TRUE_FALSE',
                        'question': 'English is spoken by over 1.5 billion people worldwide.',
                        'correct_answer': 'true',
                        'explanation': 'Yes, English is indeed spoken by over 1.5 billion people globally.',
                        'points': 10,
                    },
                ],
            },
            {
                'title': 'Basic Vocabulary',
                'content': '<h2>Essential English Words</h2><p>Common nouns, basic verbs and useful adjectives.</p>',
                'xp_reward': 30,
                'questions': [
                    {
                        'question_type': 'FILL_BLANK',
                        'question': 'Complete the sentence: "I _____ a book every night." (Use the verb "read")',
                        'correct_answer': 'read',
                        'explanation': 'The correct answer is "read" - I read a book every night.',
                        'points': 15,
                    },
                    {
                        'question_type': 'MULTIPLE_CHOICE',
                        'question': 'Which word means "to possess"?',
                        'options': [
                            {'value': 'have', 'label': 'Have'},
                            {'value': 'go', 'label': 'Go'},
                            {'value': 'see', 'label': 'See'},
                            {'value': 'come', 'label': 'Come'},
                        ],
                        'correct_answer': 'have',
                        'explanation': '"Have" means to possess or own something.',
                        'points': 10,
                    },
                ],
            },
            {
                'title': 'Present Tense',
                'content': '<h2>Present Tense in English</h2><p>The present tense describes actions happening now or regularly.</p>',
                'xp_reward': 35,
                'questions': [
                    {
                        'question_type': 'FILL_BLANK',
                        'question': 'Complete: "She _____ to school every day." (Use "go")',
                        'correct_answer': 'goes',
                        'explanation': 'For he/she/it, we add "s" or "es" to the base verb: goes.',
                        'points': 15,
                    },
                ],
            },
        ],
    },
    {
        'slug': 'everyday-conversations',
        'title': 'Everyday Conversations',
        'description': 'Practice common phrases and expressions for daily situations.',
        'difficulty': 'BEGINNER',
        'order': 2,
        'is_published': True,
        'xp_reward': 200,
        'lessons': [
            {
                'title': 'Greetings and Introductions',
                'content': '<h2>How to Greet People in English</h2><p>Proper greetings are essential for making good first impressions!</p>',
                'xp_reward': 25,
                'questions': [
                    {
                        'question_type': 'MULTIPLE_CHOICE',
                        'question': 'What is an appropriate greeting for the afternoon?',
                        'options': [
                            {'value': 'Good morning', 'label': 'Good morning'},
                            {'value': 'Good afternoon', 'label': 'Good afternoon'},
                            {'value': 'Good evening', 'label': 'Good evening'},
                            {'value': 'Good night', 'label': 'Good night'},
                        ],
                        'correct_answer': 'Good afternoon',
                        'explanation': 'Good afternoon is used from 12 PM to 6 PM.',
                        'points': 10,
                    },
                ],
            },
        ],
    },
    {
        'slug': 'business-english',
        'title': 'Business English',
        'description': 'Professional communication skills for workplace success.',
        'difficulty': 'INTERMEDIATE',
        'order': 3,
        'is_published': True,
        'xp_reward': 250,
        'lessons': [],
    },
]


class Command(BaseCommand):
    help = 'Populate the database with sample learning modules, lessons and questions'

    @transaction.atomic
    def handle(self, *args, **options):
        for module_data in MODULES:
            module_data = dict(module_data)
            lessons = module_data.pop('lessons')
            slug = module_data.pop('slug')
            module, created = LearningModule.objects.update_or_create(slug=slug, defaults=module_data)
            self.stdout.write(self.style.SUCCESS(f'Created module: {module.title}') if created else f'Updated module: {module.title}')

            for lesson_order, lesson_data in enumerate(lessons, start=1):
                lesson_data = dict(lesson_data)
                questions = lesson_data.pop('questions')
                lesson, _ = Lesson.objects.update_or_create(
                    module=module,
                    title=lesson_data.pop('title'),
                    defaults={**lesson_data, 'order': lesson_order},
                )
                for question_order, question_data in enumerate(questions, start=1):
                    question_data = dict(question_data)
                    Question.objects.update_or_create(
                        lesson=lesson,
                        question=question_data.pop('question'),
                        defaults={**question_data, 'order': question_order},
                    )

        self.stdout.write(self.style.SUCCESS('Learning content population completed!'))
