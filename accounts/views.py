from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView
from gamification.models import UserProgress
from .serializers import UserSerializer


class MeView(APIView):
    """The authenticated member with a short progress summary."""
    permission_classes = [IsAuthenticated]

    def get(self, request):
        data = UserSerializer(request.user).data
        progress = UserProgress.objects.filter(user=request.user).select_related('level').first()
        data['progress'] = {
            'total_xp': progress.total_xp,
            'level': progress.level.number,
            'level_name': progress.level.name,
            'streak': progress.streak,
        } if progress else None
        return Response(data)
