from django.contrib import admin

from .models import Student


@admin.register(Student)
class StudentAdmin(admin.ModelAdmin):
    list_display = ('first_name', 'last_name', 'school_email', 'user', 'is_active')
    list_filter = ('is_active',)
    search_fields = ('first_name', 'last_name', 'school_email', 'user__username')
