from django.urls import path
from . import views

urlpatterns = [
    path('levels/', views.LevelListView.as_view(), name='level-list'),
    path('achievements/', views.AchievementListView.as_view(), name='achievement-list'),
    path('leaderboard/', views.LeaderboardView.as_view(), name='leaderboard'),
]
