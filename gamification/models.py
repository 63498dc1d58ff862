from django.db import models
from accounts.models import User


class Level(models.Model):
    number = models.PositiveIntegerField(unique=True)
    name = models.CharField(max_length=100)
    description = models.TextField(blank=True)
    min_xp = models.PositiveIntegerField()
    max_xp = models.PositiveIntegerField(blank=True, null=True)  # null = unbounded top tier
    color = models.CharField(max_length=20, default='#10B981')
    icon = models.CharField(max_length=50, blank=True)

    class Meta:
        ordering = ['number']

    def __str__(self):
        return f"Level {self.number} - {self.name}"


class Achievement(models.Model):
    name = models.CharField(max_length=100, unique=True)
    description = models.TextField()
    icon = models.CharField(max_length=50, blank=True)
    color = models.CharField(max_length=20, default='#10B981')
    criteria = models.JSONField()  # e.g., {"type": "TOTAL_XP", "value": 1000}
    xp_reward = models.PositiveIntegerField(default=0)
    is_secret = models.BooleanField(default=False)

    class Meta:
        ordering = ['id']

    def __str__(self):
        return self.name


class UserProgress(models.Model):
    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name='progress')
    total_xp = models.PositiveIntegerField(default=0)
    level = models.ForeignKey(Level, on_delete=models.PROTECT, related_name='+')
    streak = models.PositiveIntegerField(default=0)
    last_active_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.user.username} Progress"


class UserAchievement(models.Model):
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='achievements')
    achievement = models.ForeignKey(Achievement, on_delete=models.CASCADE, related_name='unlocks')
    unlocked_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['user', 'achievement'], name='unique_user_achievement'),
        ]

    def __str__(self):
        return f"{self.user.username} - {self.achievement.name}"
