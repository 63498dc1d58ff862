from rest_framework import serializers
from .models import LearningModule, Lesson, Question, UserModuleProgress, UserLessonProgress


class QuestionSerializer(serializers.ModelSerializer):
    """Question as shown to a learner; the answer and explanation stay server-side."""

    class Meta:
        model = Question
        fields = ['id', 'lesson', 'question_type', 'question', 'options', 'order', 'points']


class QuestionAuthoringSerializer(serializers.ModelSerializer):
    class Meta:
        model = Question
        fields = [
            'id', 'lesson', 'question_type', 'question', 'options',
            'correct_answer', 'explanation', 'order', 'points',
        ]


class UserLessonProgressSerializer(serializers.ModelSerializer):
    class Meta:
        model = UserLessonProgress
        fields = ['is_completed', 'completed_at', 'xp_earned']


class UserModuleProgressSerializer(serializers.ModelSerializer):
    class Meta:
        model = UserModuleProgress
        fields = ['is_completed', 'completed_at', 'progress', 'xp_earned']


class LessonSerializer(serializers.ModelSerializer):
    """
    Lesson with its questions and the requesting user's progress.

    Per-user rows come from ``context['lesson_progress']`` (lesson id -> row)
    so listing many lessons costs no extra queries.
    """
    questions = QuestionSerializer(many=True, read_only=True)
    is_completed = serializers.SerializerMethodField()
    user_progress = serializers.SerializerMethodField()

    class Meta:
        model = Lesson
        fields = ['id', 'module', 'title', 'content', 'order', 'xp_reward', 'questions', 'is_completed',
                  'user_progress']

    def _progress(self, lesson):
        return self.context.get('lesson_progress', {}).get(lesson.id)

    def get_is_completed(self, lesson):
        progress = self._progress(lesson)
        return bool(progress and progress.is_completed)

    def get_user_progress(self, lesson):
        progress = self._progress(lesson)
        return UserLessonProgressSerializer(progress).data if progress else None


class LearningModuleSerializer(serializers.ModelSerializer):
    lessons = LessonSerializer(many=True, read_only=True)
    user_progress = serializers.SerializerMethodField()

    class Meta:
        model = LearningModule
        fields = [
            'id', 'title', 'description', 'slug', 'difficulty', 'order',
            'is_published', 'thumbnail', 'xp_reward', 'lessons', 'user_progress',
        ]

    def get_user_progress(self, module):
        progress = self.context.get('module_progress', {}).get(module.id)
        return UserModuleProgressSerializer(progress).data if progress else None


class SubmitAnswerSerializer(serializers.Serializer):
    answer = serializers.CharField(trim_whitespace=False, allow_blank=False)
    timeSpent = serializers.IntegerField(min_value=0, required=False, allow_null=True)
