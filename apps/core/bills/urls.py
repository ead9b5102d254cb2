from django.urls import path

from .views import (
    bill_assign,
    bill_cancel,
    bill_delete,
    bill_detail,
    bill_list,
    bill_pay,
    bill_students,
    bill_update,
    student_bill_list,
)

urlpatterns = [
    path('', bill_list, name='bill_list'),
    path('student/', student_bill_list, name='student_bill_list'),
    path('<int:bill_id>/', bill_detail, name='bill_detail'),
    path('<int:bill_id>/edit/', bill_update, name='bill_update'),
    path('<int:bill_id>/cancel/', bill_cancel, name='bill_cancel'),
    path('<int:bill_id>/delete/', bill_delete, name='bill_delete'),
    path('<int:bill_id>/assign/', bill_assign, name='bill_assign'),
    path('<int:bill_id>/students/', bill_students, name='bill_students'),
    path('<int:bill_id>/pay/', bill_pay, name='bill_pay'),
]
