from django.urls import path
from . import views

urlpatterns = [
    path('modules/', views.ModuleListView.as_view(), name='module-list'),
    path('modules/<int:pk>/', views.ModuleDetailView.as_view(), name='module-detail'),
    path('lessons/', views.LessonListView.as_view(), name='lesson-list'),
    path('lessons/<int:pk>/', views.LessonDetailView.as_view(), name='lesson-detail'),
    path('lessons/<int:lesson_id>/complete/', views.CompleteLessonView.as_view(), name='lesson-complete'),
    path('questions/', views.QuestionListView.as_view(), name='question-list'),
    path('questions/<int:pk>/', views.QuestionDetailView.as_view(), name='question-detail'),
    path('questions/<int:question_id>/submit/', views.SubmitAnswerView.as_view(), name='question-submit'),
    path('progress/', views.ProgressView.as_view(), name='learning-progress'),
]
