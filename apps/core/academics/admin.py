from django.contrib import admin

from .models import Enrollment, SchoolClass


@admin.register(SchoolClass)
class SchoolClassAdmin(admin.ModelAdmin):
    list_display = ('name', 'code', 'teacher', 'is_active')
    list_filter = ('is_active',)
    search_fields = ('name', 'code', 'teacher__username')


@admin.register(Enrollment)
class EnrollmentAdmin(admin.ModelAdmin):
    list_display = ('student', 'school_class', 'enrolled', 'created_at')
    list_filter = ('enrolled', 'school_class')
    search_fields = ('student__first_name', 'student__last_name', 'school_class__name')
