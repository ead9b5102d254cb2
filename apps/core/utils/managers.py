from django.db import models


class StudentOwnedQuerySet(models.QuerySet):
    def for_student(self, student):
        return self.filter(student=student)


class StudentOwnedManager(models.Manager):
    def get_queryset(self):
        return StudentOwnedQuerySet(self.model, using=self._db)

    def for_student(self, student):
        return self.get_queryset().for_student(student)
