from django.contrib.auth import get_user_model
from django.test import TestCase

from apps.core.students.models import Student

from .models import Enrollment, SchoolClass
from .services import class_ids_for_student, teacher_can_access_student, teacher_classes, teacher_student_ids


class EnrollmentAccessTests(TestCase):
    def setUp(self):
        user_model = get_user_model()
        self.teacher = user_model.objects.create_user(username='mentor', password='pass12345', role='teacher')
        self.other_teacher = user_model.objects.create_user(username='mentor2', password='pass12345', role='teacher')
        self.admin = user_model.objects.create_superuser('boss', 'boss@example.com', 'pass12345')

        self.school_class = SchoolClass.objects.create(teacher=self.teacher, name='Finance 101', code='FIN-101')
        self.other_class = SchoolClass.objects.create(teacher=self.other_teacher, name='Art', code='ART-1')

        self.student = Student.objects.create(first_name='Ishaan')
        self.dropped = Student.objects.create(first_name='Tara')
        Enrollment.objects.create(school_class=self.school_class, student=self.student)
        Enrollment.objects.create(school_class=self.school_class, student=self.dropped, enrolled=False)

    def test_teacher_reaches_only_enrolled_students(self):
        self.assertTrue(teacher_can_access_student(self.teacher, self.student))
        self.assertFalse(teacher_can_access_student(self.teacher, self.dropped))
        self.assertFalse(teacher_can_access_student(self.other_teacher, self.student))
        self.assertTrue(teacher_can_access_student(self.admin, self.student))
        self.assertEqual(teacher_student_ids(self.teacher), {self.student.pk})

    def test_deactivated_class_drops_access(self):
        self.school_class.delete()
        self.school_class.refresh_from_db()
        self.assertFalse(self.school_class.is_active)
        self.assertFalse(teacher_can_access_student(self.teacher, self.student))
        self.assertEqual(class_ids_for_student(self.student), set())
        self.assertFalse(teacher_classes(self.teacher).exists())
