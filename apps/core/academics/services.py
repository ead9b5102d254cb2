from apps.core.students.models import Student

from .models import Enrollment, SchoolClass


def active_enrollments(student: Student):
    return Enrollment.objects.filter(
        student=student,
        enrolled=True,
        school_class__is_active=True,
    )


def class_ids_for_student(student: Student):
    return set(active_enrollments(student).values_list('school_class_id', flat=True))


def teacher_student_ids(teacher):
    return set(
        Enrollment.objects.filter(
            school_class__teacher=teacher,
            school_class__is_active=True,
            enrolled=True,
        ).values_list('student_id', flat=True)
    )


def teacher_can_access_student(teacher, student: Student) -> bool:
    if teacher is None or student is None:
        return False
    if getattr(teacher, 'role', None) == 'superadmin':
        return True
    return Enrollment.objects.filter(
        school_class__teacher=teacher,
        school_class__is_active=True,
        student=student,
        enrolled=True,
    ).exists()


def teacher_classes(teacher):
    return SchoolClass.objects.filter(teacher=teacher, is_active=True).order_by('name', 'id')
