from django.core.management.base import BaseCommand
from gamification.models import Level

class Command(BaseCommand):
    help = 'Populate the database with the level table'

    def handle(self, *args, **options):
        levels_data = [
            {'number': 1, 'name': 'Beginner', 'description': 'Just getting started!', 'min_xp': 0, 'max_xp': 99, 'color': '#10B981'},
            {'number': 2, 'name': 'Novice', 'description': 'Learning the basics', 'min_xp': 100, 'max_xp': 299, 'color': '#3B82F6'},
            {'number': 3, 'name': 'Apprentice', 'description': 'Making good progress', 'min_xp': 300, 'max_xp': 599, 'color': '#8B5CF6'},
            {'number': 4, 'name': 'Student', 'description': 'Building confidence', 'min_xp': 600, 'max_xp': 999, 'color': '#F59E0B'},
            {'number': 5, 'name': 'Scholar', 'description': 'Solid understanding', 'min_xp': 1000, 'max_xp': 1499, 'color': '#EF4444'},
            {'number': 6, 'name': 'Expert', 'description': 'Advanced knowledge', 'min_xp': 1500, 'max_xp': 2499, 'color': '#EC4899'},
            {'number': 7, 'name': 'Master', 'description': 'Exceptional skills', 'min_xp': 2500, 'max_xp': 4999, 'color': '#6366F1'},
            {'number': 8, 'name': 'Grandmaster', 'description': 'Elite level', 'min_xp': 5000, 'max_xp': None, 'color': '#A855F7'},
        ]

        for level_data in levels_data:
            number = level_data.pop('number')
            level, created = Level.objects.update_or_create(number=number, defaults=level_data)
            if created:
                self.stdout.write(self.style.SUCCESS(f'Created level: {level}'))
            else:
                self.stdout.write(f'Updated level: {level}')

        self.stdout.write(self.style.SUCCESS('Level population completed!'))
