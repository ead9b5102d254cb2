from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models

from apps.core.students.models import Student


class SchoolClass(models.Model):
    teacher = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='classes_taught',
    )
    name = models.CharField(max_length=100)
    code = models.CharField(max_length=20, unique=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['name', 'id']
        indexes = [
            models.Index(fields=['teacher', 'is_active'], name='academics_class_teacher_idx'),
        ]

    def clean(self):
        super().clean()
        if self.name:
            self.name = self.name.strip()
        if not self.name:
            raise ValidationError({'name': 'Class name is required.'})
        if self.teacher_id and self.teacher.role != 'teacher':
            raise ValidationError({'teacher': 'Class owner must have the teacher role.'})

    def delete(self, *args, **kwargs):
        if self.is_active:
            self.is_active = False
            self.save(update_fields=['is_active'])

    def __str__(self):
        return f"{self.name} ({self.code})"


class Enrollment(models.Model):
    school_class = models.ForeignKey(
        SchoolClass,
        on_delete=models.CASCADE,
        related_name='enrollments',
    )
    student = models.ForeignKey(
        Student,
        on_delete=models.CASCADE,
        related_name='enrollments',
    )
    enrolled = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['school_class__name', 'student__last_name', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['school_class', 'student'],
                name='unique_enrollment_per_class',
            ),
        ]
        indexes = [
            models.Index(fields=['student', 'enrolled'], name='academics_enrol_student_idx'),
        ]

    def __str__(self):
        return f"{self.student} in {self.school_class.name}"
