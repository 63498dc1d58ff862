from django.urls import reverse
from rest_framework import status
from rest_framework.test import APITestCase

from gamification.models import Level, UserProgress
from .models import User


class AccountsApiTestCase(APITestCase):
    def setUp(self):
        self.user = User.objects.create_user(
            username='ranger1', password='s3cret-pass', member_code='PH-001', angkatan='2024',
        )

    def test_new_members_default_to_rangers(self):
        self.assertEqual(self.user.role, 'RANGERS')

    def test_obtain_token_and_fetch_me(self):
        response = self.client.post(
            reverse('token_obtain_pair'),
            {'username': 'ranger1', 'password': 's3cret-pass'},
            format='json',
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        access = response.json()['access']

        self.client.credentials(HTTP_AUTHORIZATION=f'Bearer {access}')
        response = self.client.get(reverse('me'))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()['member_code'], 'PH-001')
        self.assertIsNone(response.json()['progress'])

    def test_me_includes_progress_summary(self):
        level = Level.objects.create(number=2, name='Novice', min_xp=100, max_xp=299)
        UserProgress.objects.create(user=self.user, total_xp=150, level=level, streak=3)
        self.client.force_authenticate(user=self.user)

        response = self.client.get(reverse('me'))
        self.assertEqual(response.json()['progress'], {
            'total_xp': 150,
            'level': 2,
            'level_name': 'Novice',
            'streak': 3,
        })

    def test_me_requires_authentication(self):
        response = self.client.get(reverse('me'))
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_content_roles(self):
        self.assertFalse(self.user.can_edit_content)
        self.user.role = 'CORE'
        self.assertTrue(self.user.can_edit_content)
        self.assertFalse(self.user.can_delete_content)
        self.user.role = 'ADMIN'
        self.assertTrue(self.user.can_delete_content)
