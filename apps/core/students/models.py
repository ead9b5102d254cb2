from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models


class Student(models.Model):
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='student_profile',
    )
    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100, blank=True)
    school_email = models.EmailField(unique=True, null=True, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['last_name', 'first_name', 'id']
        indexes = [
            models.Index(fields=['is_active'], name='students_active_idx'),
        ]

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()

    def clean(self):
        super().clean()
        if self.first_name:
            self.first_name = self.first_name.strip()
        if not self.first_name:
            raise ValidationError({'first_name': 'First name is required.'})
        if self.school_email:
            self.school_email = self.school_email.strip().lower()

        if self.user_id and self.user.role != 'student':
            raise ValidationError({'user': 'Linked user must have the student role.'})

    def save(self, *args, **kwargs):
        if self.school_email:
            self.school_email = self.school_email.strip().lower()
        else:
            self.school_email = None
        super().save(*args, **kwargs)

    def __str__(self):
        return self.full_name
