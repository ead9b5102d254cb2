from django.contrib.auth.decorators import login_required
from django.core.exceptions import ValidationError
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from apps.core.banking.exceptions import AccessDenied
from apps.core.banking.serializers import serialize_account, serialize_transaction
from apps.core.students.services import resolve_student
from apps.core.users.audit import log_audit_event
from apps.core.users.decorators import role_required
from apps.core.utils.responses import (
    exception_response,
    form_error_response,
    success_response,
)

from .forms import BillClassesForm, BillForm, BillPaymentForm, BillStudentsForm, BillUpdateForm
from .models import Bill, StudentBill
from .services import (
    assign_bill_to_classes,
    cancel_bill,
    create_bill,
    delete_bill,
    exclude_students_from_bill,
    get_teacher_bill,
    include_students_in_bill,
    next_due_dates,
    pay_bill,
    remove_bill_from_classes,
    student_bills,
    suggested_payment,
    update_bill,
)


def _serialize_bill(bill, include_students=False):
    data = {
        'id': bill.pk,
        'title': bill.title,
        'emoji': bill.emoji,
        'description': bill.description,
        'amount': str(bill.amount),
        'due_date': bill.due_date.isoformat(),
        'frequency': bill.frequency,
        'frequency_display': bill.get_frequency_display(),
        'status': bill.status,
        'class_ids': sorted(bill.assignments.values_list('school_class_id', flat=True)),
        'upcoming_due_dates': [value.isoformat() for value in next_due_dates(bill, count=3)],
    }
    if include_students:
        data['students'] = [
            {
                'student_id': row.student_id,
                'name': row.student.full_name,
                'paid_amount': str(row.paid_amount),
                'remaining': str(row.remaining),
                'is_paid': row.is_paid,
                'is_excluded': row.is_excluded,
            }
            for row in StudentBill.objects.filter(bill=bill).select_related('student').order_by('student__last_name', 'id')
        ]
    return data


@login_required
@role_required(['teacher', 'superadmin'])
@require_http_methods(['GET', 'POST'])
def bill_list(request):
    if request.method == 'POST':
        form = BillForm(request.POST, teacher=request.user)
        if not form.is_valid():
            return form_error_response(form)
        try:
            bill = create_bill(
                teacher=request.user,
                title=form.cleaned_data['title'],
                amount=form.cleaned_data['amount'],
                due_date=form.cleaned_data['due_date'],
                frequency=form.cleaned_data['frequency'],
                description=form.cleaned_data['description'],
                emoji=form.cleaned_data['emoji'],
                class_ids=[school_class.pk for school_class in form.cleaned_data['classes']],
            )
        except ValidationError as exc:
            return exception_response(exc)

        log_audit_event(request, 'bills.created', target=bill, details=f'{bill.title} ({bill.amount})')
        return success_response(_serialize_bill(bill, include_students=True), status=201)

    bills = Bill.objects.all() if request.user.role == 'superadmin' else Bill.objects.filter(creator=request.user)
    return success_response([_serialize_bill(bill) for bill in bills.order_by('due_date', 'id')])


@login_required
@role_required(['teacher', 'superadmin'])
@require_GET
def bill_detail(request, bill_id):
    try:
        bill = get_teacher_bill(teacher=request.user, bill_id=bill_id)
    except ValidationError as exc:
        return exception_response(exc)
    return success_response(_serialize_bill(bill, include_students=True))


@login_required
@role_required(['teacher', 'superadmin'])
@require_POST
def bill_update(request, bill_id):
    form = BillUpdateForm(request.POST)
    if not form.is_valid():
        return form_error_response(form)

    try:
        bill = update_bill(teacher=request.user, bill_id=bill_id, **form.changes())
    except ValidationError as exc:
        return exception_response(exc)

    log_audit_event(request, 'bills.updated', target=bill, details=', '.join(sorted(form.changes())))
    return success_response(_serialize_bill(bill))


@login_required
@role_required(['teacher', 'superadmin'])
@require_POST
def bill_cancel(request, bill_id):
    try:
        bill = cancel_bill(teacher=request.user, bill_id=bill_id)
    except ValidationError as exc:
        return exception_response(exc)

    log_audit_event(request, 'bills.cancelled', target=bill)
    return success_response(_serialize_bill(bill))


@login_required
@role_required(['teacher', 'superadmin'])
@require_POST
def bill_delete(request, bill_id):
    try:
        deleted_id = delete_bill(teacher=request.user, bill_id=bill_id)
    except ValidationError as exc:
        return exception_response(exc)

    log_audit_event(request, 'bills.deleted', details=f'Bill {deleted_id}')
    return success_response({'id': deleted_id})


@login_required
@role_required(['teacher', 'superadmin'])
@require_POST
def bill_assign(request, bill_id):
    form = BillClassesForm(request.POST)
    if not form.is_valid():
        return form_error_response(form)

    action = form.cleaned_data['action']
    handler = assign_bill_to_classes if action == BillClassesForm.ACTION_ASSIGN else remove_bill_from_classes
    try:
        bill = handler(teacher=request.user, bill_id=bill_id, class_ids=form.cleaned_data['classes'])
    except ValidationError as exc:
        return exception_response(exc)

    log_audit_event(
        request,
        f'bills.classes_{action}',
        target=bill,
        details=', '.join(str(class_id) for class_id in form.cleaned_data['classes']),
    )
    return success_response(_serialize_bill(bill, include_students=True))


@login_required
@role_required(['teacher', 'superadmin'])
@require_POST
def bill_students(request, bill_id):
    form = BillStudentsForm(request.POST)
    if not form.is_valid():
        return form_error_response(form)

    excluded = form.cleaned_data['excluded']
    handler = exclude_students_from_bill if excluded else include_students_in_bill
    try:
        bill = handler(teacher=request.user, bill_id=bill_id, student_ids=form.cleaned_data['students'])
    except ValidationError as exc:
        return exception_response(exc)

    log_audit_event(
        request,
        'bills.students_excluded' if excluded else 'bills.students_included',
        target=bill,
        details=', '.join(str(student_id) for student_id in form.cleaned_data['students']),
    )
    return success_response(_serialize_bill(bill, include_students=True))


def _current_student(request):
    student = resolve_student(request.user)
    if student is None:
        raise AccessDenied('No student profile is linked to this account.')
    return student


@login_required
@role_required('student')
@require_GET
def student_bill_list(request):
    try:
        rows = student_bills(student=_current_student(request))
    except ValidationError as exc:
        return exception_response(exc)

    data = []
    for row in rows:
        item = _serialize_bill(row['bill'])
        item.update({
            'student_status': row['status'],
            'paid_amount': str(row['student_bill'].paid_amount),
            'remaining': str(row['remaining']),
            'suggested_payment': str(row['suggested_payment']),
            'days_overdue': row['days_overdue'],
        })
        data.append(item)
    return success_response(data)


@login_required
@role_required('student')
@require_POST
def bill_pay(request, bill_id):
    form = BillPaymentForm(request.POST)
    if not form.is_valid():
        return form_error_response(form)

    try:
        student = _current_student(request)
        payment = pay_bill(
            student=student,
            bill_id=bill_id,
            account_id=form.cleaned_data['account'],
            amount=form.cleaned_data['amount'],
            created_by=request.user,
        )
    except ValidationError as exc:
        return exception_response(exc)

    log_audit_event(
        request,
        'bills.payment',
        target=payment,
        details=f'{payment.amount} towards {payment.bill.title} from {payment.account.display_account_number}',
    )
    student_bill = payment.student_bill
    return success_response({
        'payment_id': payment.pk,
        'amount': str(payment.amount),
        'paid_at': payment.paid_at.isoformat(),
        'transaction': serialize_transaction(payment.transaction),
        'account': serialize_account(payment.account),
        'paid_amount': str(student_bill.paid_amount),
        'remaining': str(student_bill.remaining),
        'is_paid': student_bill.is_paid,
        'suggested_payment': str(suggested_payment(student_bill)),
    })
