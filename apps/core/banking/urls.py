from django.urls import path

from .views import (
    account_list,
    account_setup,
    statement_available,
    statement_download,
    statement_generate,
    statement_request,
    teacher_funds_add,
    teacher_funds_remove,
    teacher_recurring_list,
    teacher_recurring_stop,
    teacher_statement_available,
    teacher_statement_download,
    teacher_statement_request,
    teacher_student_account_list,
    transaction_list,
    transfer,
)

urlpatterns = [
    path('accounts/', account_list, name='banking_account_list'),
    path('accounts/setup/', account_setup, name='banking_account_setup'),
    path('transfer/', transfer, name='banking_transfer'),
    path('transactions/', transaction_list, name='banking_transaction_list'),
    path('statements/available/', statement_available, name='banking_statement_available'),
    path('statements/request/', statement_request, name='banking_statement_request'),
    path('statements/generate/', statement_generate, name='banking_statement_generate'),
    path('statements/<int:statement_id>/download/', statement_download, name='banking_statement_download'),
    path('teacher/funds/add/', teacher_funds_add, name='banking_teacher_funds_add'),
    path('teacher/funds/remove/', teacher_funds_remove, name='banking_teacher_funds_remove'),
    path(
        'teacher/students/<int:student_id>/accounts/',
        teacher_student_account_list,
        name='banking_teacher_student_accounts',
    ),
    path('teacher/statements/available/', teacher_statement_available, name='banking_teacher_statement_available'),
    path('teacher/statements/request/', teacher_statement_request, name='banking_teacher_statement_request'),
    path(
        'teacher/statements/<int:statement_id>/download/',
        teacher_statement_download,
        name='banking_teacher_statement_download',
    ),
    path('teacher/recurring/', teacher_recurring_list, name='banking_teacher_recurring_list'),
    path('teacher/recurring/<int:adjustment_id>/stop/', teacher_recurring_stop, name='banking_teacher_recurring_stop'),
]
