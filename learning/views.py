import logging

from django.db import transaction
from django.http import Http404
from rest_framework import generics, status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from accounts.permissions import IsContentEditorOrReadOnly
from gamification.exceptions import InvalidXPAmount, LevelTableError, ProgressUnavailable
from .exceptions import LearningError, LessonNotFound, ModuleNotFound, QuestionNotFound
from .models import LearningModule, Lesson, Question, UserLessonProgress, UserModuleProgress
from .serializers import (
    LearningModuleSerializer, LessonSerializer, QuestionAuthoringSerializer, QuestionSerializer,
    SubmitAnswerSerializer,
)
from .services import LearningService

logger = logging.getLogger(__name__)


def learning_error_response(exc):
    """Translate learning and progression errors into API responses."""
    if isinstance(exc, (LessonNotFound, QuestionNotFound, ModuleNotFound)):
        return Response({'error': str(exc)}, status=status.HTTP_404_NOT_FOUND)
    if isinstance(exc, InvalidXPAmount):
        return Response({'error': str(exc)}, status=status.HTTP_400_BAD_REQUEST)
    if isinstance(exc, ProgressUnavailable):
        return Response(
            {'error': 'Progress is busy, please try again', 'code': 'progress_unavailable'},
            status=status.HTTP_503_SERVICE_UNAVAILABLE,
        )
    if isinstance(exc, LevelTableError):
        logger.error(f"Level table misconfigured: {exc}")
        return Response(
            {'error': 'Level table is not configured', 'code': 'level_table_misconfigured'},
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
    raise exc


def learner_context(user):
    """The user's lesson and module progress keyed by content id, for the serializers."""
    return {
        'user': user,
        'lesson_progress': {lp.lesson_id: lp for lp in UserLessonProgress.objects.filter(user=user)},
        'module_progress': {mp.module_id: mp for mp in UserModuleProgress.objects.filter(user=user)},
    }


class LearningContentMixin:
    """Shared setup for the module, lesson and question endpoints."""
    permission_classes = [IsAuthenticated, IsContentEditorOrReadOnly]
    with_progress = True

    def get_serializer_context(self):
        context = super().get_serializer_context()
        if self.with_progress:
            context.update(learner_context(self.request.user))
        return context

    def get_object(self):
        try:
            return super().get_object()
        except Http404:
            raise self.not_found(self.kwargs.get(self.lookup_field))

    def handle_exception(self, exc):
        if isinstance(exc, LearningError):
            return learning_error_response(exc)
        return super().handle_exception(exc)


class ModuleListView(LearningContentMixin, generics.ListCreateAPIView):
    serializer_class = LearningModuleSerializer

    def get_queryset(self):
        modules = LearningModule.objects.prefetch_related('lessons__questions')

        difficulty = self.request.query_params.get('difficulty')
        published = self.request.query_params.get('published')
        if difficulty:
            modules = modules.filter(difficulty=difficulty.upper())
        if published is not None:
            modules = modules.filter(is_published=published == 'true')
        return modules

    def list(self, request, *args, **kwargs):
        serializer = self.get_serializer(self.get_queryset(), many=True)
        return Response({'modules': serializer.data})

    def perform_create(self, serializer):
        module = serializer.save()
        logger.info(f"User {self.request.user.id} created module {module.id} ({module.slug})")


class ModuleDetailView(LearningContentMixin, generics.RetrieveUpdateDestroyAPIView):
    queryset = LearningModule.objects.prefetch_related('lessons__questions')
    serializer_class = LearningModuleSerializer
    not_found = ModuleNotFound

    def perform_destroy(self, instance):
        logger.info(f"User {self.request.user.id} deleted module {instance.id} ({instance.slug})")
        instance.delete()


class LessonListView(LearningContentMixin, generics.ListCreateAPIView):
    serializer_class = LessonSerializer

    def get_queryset(self):
        lessons = Lesson.objects.prefetch_related('questions')
        module_id = self.request.query_params.get('module')
        if module_id:
            lessons = lessons.filter(module_id=module_id)
        return lessons

    def list(self, request, *args, **kwargs):
        serializer = self.get_serializer(self.get_queryset(), many=True)
        return Response({'lessons': serializer.data})

    @transaction.atomic
    def perform_create(self, serializer):
        lesson = serializer.save()
        LearningService().refresh_module_rollups(lesson.module_id)


class LessonDetailView(LearningContentMixin, generics.RetrieveUpdateDestroyAPIView):
    queryset = Lesson.objects.prefetch_related('questions')
    serializer_class = LessonSerializer
    not_found = LessonNotFound

    @transaction.atomic
    def perform_update(self, serializer):
        previous_module_id = serializer.instance.module_id
        lesson = serializer.save()
        service = LearningService()
        service.refresh_module_rollups(lesson.module_id)
        if lesson.module_id != previous_module_id:
            service.refresh_module_rollups(previous_module_id)

    @transaction.atomic
    def perform_destroy(self, instance):
        module_id = instance.module_id
        instance.delete()
        LearningService().refresh_module_rollups(module_id)


class QuestionListView(LearningContentMixin, generics.ListCreateAPIView):
    with_progress = False

    def get_serializer_class(self):
        if getattr(self.request.user, 'can_edit_content', False):
            return QuestionAuthoringSerializer
        return QuestionSerializer

    def get_queryset(self):
        questions = Question.objects.all()
        lesson_id = self.request.query_params.get('lesson')
        question_type = self.request.query_params.get('type')
        if lesson_id:
            questions = questions.filter(lesson_id=lesson_id)
        if question_type:
            questions = questions.filter(question_type=question_type.upper())
        return questions

    def list(self, request, *args, **kwargs):
        serializer = self.get_serializer(self.get_queryset(), many=True)
        return Response({'questions': serializer.data})


class QuestionDetailView(LearningContentMixin, generics.RetrieveUpdateDestroyAPIView):
    queryset = Question.objects.all()
    not_found = QuestionNotFound
    with_progress = False

    def get_serializer_class(self):
        if getattr(self.request.user, 'can_edit_content', False):
            return QuestionAuthoringSerializer
        return QuestionSerializer


class ProgressView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        try:
            overview = LearningService().get_progress_overview(request.user.id)
        except LevelTableError as e:
            return learning_error_response(e)
        return Response(overview)


class CompleteLessonView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request, lesson_id):
        try:
            result = LearningService().complete_lesson_and_earn_xp(request.user.id, lesson_id)
        except (LessonNotFound, ModuleNotFound, ProgressUnavailable, LevelTableError, InvalidXPAmount) as e:
            return learning_error_response(e)
        return Response({'message': 'Lesson completed successfully', **result})


class SubmitAnswerView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request, question_id):
        serializer = SubmitAnswerSerializer(data=request.data)
        if not serializer.is_valid():
            return Response({'error': 'Answer is required', 'details': serializer.errors},
                            status=status.HTTP_400_BAD_REQUEST)

        try:
            result = LearningService().submit_question_answer(
                request.user.id,
                question_id,
                serializer.validated_data['answer'],
                serializer.validated_data.get('timeSpent'),
            )
        except (QuestionNotFound, ProgressUnavailable, LevelTableError, InvalidXPAmount) as e:
            return learning_error_response(e)
        return Response(result)
