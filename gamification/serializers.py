from rest_framework import serializers
from .models import Level, Achievement


class LevelSerializer(serializers.ModelSerializer):
    class Meta:
        model = Level
        fields = ['id', 'number', 'name', 'description', 'min_xp', 'max_xp', 'color', 'icon']


class AchievementSerializer(serializers.ModelSerializer):
    """Catalog entry with the requesting user's unlock state; secret ones stay hidden until unlocked."""
    unlocked = serializers.SerializerMethodField()
    unlocked_at = serializers.SerializerMethodField()

    class Meta:
        model = Achievement
        fields = ['id', 'name', 'description', 'icon', 'color', 'xp_reward', 'is_secret', 'unlocked', 'unlocked_at']

    def _unlock(self, achievement):
        return self.context.get('unlocks', {}).get(achievement.id)

    def get_unlocked(self, achievement):
        return self._unlock(achievement) is not None

    def get_unlocked_at(self, achievement):
        unlocked_at = self._unlock(achievement)
        return unlocked_at.isoformat() if unlocked_at else None

    def to_representation(self, achievement):
        data = super().to_representation(achievement)
        if achievement.is_secret and not data['unlocked']:
            data['name'] = '???'
            data['description'] = 'Secret achievement'
        return data


class LeaderboardSerializer(serializers.Serializer):
    username = serializers.CharField()
    total_xp = serializers.IntegerField()
    level = serializers.IntegerField()
    level_name = serializers.CharField()
    streak = serializers.IntegerField()
