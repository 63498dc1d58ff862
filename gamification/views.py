from django.conf import settings
from rest_framework import generics
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView
from .models import Level, Achievement, UserAchievement, UserProgress
from .serializers import LevelSerializer, AchievementSerializer, LeaderboardSerializer


class LevelListView(generics.ListAPIView):
    queryset = Level.objects.order_by('number')
    serializer_class = LevelSerializer
    permission_classes = [IsAuthenticated]


class AchievementListView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        unlocks = dict(
            UserAchievement.objects.filter(user=request.user).values_list('achievement_id', 'unlocked_at')
        )
        achievements = Achievement.objects.order_by('id')
        serializer = AchievementSerializer(achievements, many=True, context={'unlocks': unlocks})
        return Response(serializer.data)


class LeaderboardView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        size = getattr(settings, 'LEADERBOARD_SIZE', 10)
        top_progress = (
            UserProgress.objects.select_related('user', 'level')
            .order_by('-total_xp', 'user__username')[:size]
        )
        leaderboard_data = [
            {
                'username': progress.user.username,
                'total_xp': progress.total_xp,
                'level': progress.level.number,
                'level_name': progress.level.name,
                'streak': progress.streak,
            }
            for progress in top_progress
        ]
        return Response(LeaderboardSerializer(leaderboard_data, many=True).data)
