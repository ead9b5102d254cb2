from __future__ import annotations

from .models import Student


def resolve_student(user) -> Student | None:
    """Find the student profile behind an authenticated user.

    Profiles are matched by the user link first; older profiles created
    before accounts were linked fall back to the school e-mail address.
    """
    if user is None or not user.is_authenticated:
        return None

    student = Student.objects.filter(user=user, is_active=True).first()
    if student:
        return student

    email = (user.email or '').strip().lower()
    if not email:
        return None

    return Student.objects.filter(school_email=email, is_active=True).first()
