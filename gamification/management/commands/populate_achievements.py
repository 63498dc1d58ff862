from django.core.management.base import BaseCommand
from gamification.models import Achievement

class Command(BaseCommand):
    help = 'Populate the database with the achievement catalog'

    def handle(self, *args, **options):
        achievements_data = [
            {
                'name': 'First Steps',
                'description': 'Complete your first lesson',
                'icon': 'star',
                'color': '#10B981',
                'criteria': {'type': 'LESSONS_COMPLETED', 'value': 1},
                'xp_reward': 25,
            },
            {
                'name': 'Quick Learner',
                'description': 'Complete 5 lessons',
                'icon': 'trophy',
                'color': '#3B82F6',
                'criteria': {'type': 'LESSONS_COMPLETED', 'value': 5},
                'xp_reward': 50,
            },
            {
                'name': 'Module Master',
                'description': 'Complete your first module',
                'icon': 'medal',
                'color': '#F59E0B',
                'criteria': {'type': 'MODULES_COMPLETED', 'value': 1},
                'xp_reward': 100,
            },
            {
                'name': 'Streak Champion',
                'description': 'Maintain a 7-day learning streak',
                'icon': 'target',
                'color': '#EF4444',
                'criteria': {'type': 'STREAK_DAYS', 'value': 7},
                'xp_reward': 75,
            },
            {
                'name': 'Knowledge Seeker',
                'description': 'Reach 1000 total XP',
                'icon': 'star',
                'color': '#8B5CF6',
                'criteria': {'type': 'TOTAL_XP', 'value': 1000},
                'xp_reward': 100,
            },
            {
                'name': 'Perfect Score',
                'description': 'Get 10 questions correct',
                'icon': 'trophy',
                'color': '#10B981',
                'criteria': {'type': 'QUESTIONS_CORRECT', 'value': 10},
                'xp_reward': 50,
                'is_secret': True,
            },
        ]

        for achievement_data in achievements_data:
            name = achievement_data.pop('name')
            achievement, created = Achievement.objects.update_or_create(name=name, defaults=achievement_data)
            if created:
                self.stdout.write(self.style.SUCCESS(f'Created achievement: {achievement.name}'))
            else:
                self.stdout.write(f'Achievement updated: {achievement.name}')

        self.stdout.write(self.style.SUCCESS('Achievement population completed!'))
