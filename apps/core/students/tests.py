from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from django.core.exceptions import ValidationError
from django.test import TestCase

from .models import Student
from .services import resolve_student


class StudentProfileTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.user = self.user_model.objects.create_user(
            username='neha',
            password='pass12345',
            role='student',
            email='Neha@School.example.com',
        )

    def test_school_email_is_normalized(self):
        student = Student.objects.create(first_name='Neha', school_email='  NEHA@School.Example.com ')
        self.assertEqual(student.school_email, 'neha@school.example.com')

        blank = Student.objects.create(first_name='Arjun', school_email='')
        self.assertIsNone(blank.school_email)

    def test_linked_user_must_be_a_student(self):
        teacher = self.user_model.objects.create_user(username='t1', password='pass12345', role='teacher')
        student = Student(first_name='Kiran', user=teacher)
        with self.assertRaises(ValidationError):
            student.full_clean()

    def test_resolve_student_prefers_user_link(self):
        Student.objects.create(first_name='Other', school_email='neha@school.example.com')
        linked = Student.objects.create(first_name='Neha', user=self.user)
        self.assertEqual(resolve_student(self.user), linked)

    def test_resolve_student_falls_back_to_school_email(self):
        by_email = Student.objects.create(first_name='Neha', school_email='neha@school.example.com')
        self.assertEqual(resolve_student(self.user), by_email)

    def test_resolve_student_ignores_inactive_and_anonymous(self):
        Student.objects.create(first_name='Neha', user=self.user, is_active=False)
        self.assertIsNone(resolve_student(self.user))
        self.assertIsNone(resolve_student(AnonymousUser()))
        self.assertIsNone(resolve_student(None))
