from django.db import models
from django.contrib.auth.models import AbstractUser


class User(AbstractUser):
    ROLE_CHOICES = [
        ('ADMIN', 'Admin'),
        ('CORE', 'Core'),
        ('COMMITTEE', 'Committee'),
        ('RANGERS', 'Rangers'),
    ]
    CONTENT_EDITOR_ROLES = ('ADMIN', 'CORE')

    role = models.CharField(max_length=20, choices=ROLE_CHOICES, default='RANGERS')
    member_code = models.CharField(max_length=20, unique=True, blank=True, null=True)
    position = models.CharField(max_length=100, blank=True)
    angkatan = models.CharField(max_length=10, blank=True)

    def __str__(self):
        return self.username

    @property
    def can_edit_content(self):
        return self.role in self.CONTENT_EDITOR_ROLES

    @property
    def can_delete_content(self):
        return self.role == 'ADMIN'
