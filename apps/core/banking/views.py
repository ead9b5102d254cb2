import hmac

from django.conf import settings
from django.contrib.auth.decorators import login_required
from django.core.exceptions import ValidationError
from django.http import HttpResponse
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from apps.core.students.services import resolve_student
from apps.core.users.audit import log_audit_event
from apps.core.users.decorators import role_required
from apps.core.utils.responses import (
    error_response,
    exception_response,
    form_error_response,
    success_response,
)

from .exceptions import AccessDenied
from .forms import FundsAdjustmentForm, StatementAvailabilityForm, StatementRequestForm, TransferForm
from .serializers import (
    serialize_account,
    serialize_recurring_adjustment,
    serialize_statement,
    serialize_transaction,
)
from .services import (
    DIRECTION_ADD,
    DIRECTION_REMOVE,
    adjust_funds,
    get_accounts,
    get_transactions,
    list_recurring_adjustments,
    setup_accounts,
    stop_recurring_adjustment,
    teacher_student_accounts,
    transfer_funds,
)
from .statements import (
    export_statement,
    generate_monthly_statements,
    get_owned_statement,
    get_teacher_statement,
    list_available_statements,
    request_statement,
    teacher_list_available_statements,
    teacher_request_statement,
)

TRANSACTION_PAGE_LIMIT = 200


def _current_student(request):
    student = resolve_student(request.user)
    if student is None:
        raise AccessDenied('No student profile is linked to this account.')
    return student


@login_required
@role_required('student')
@require_POST
def account_setup(request):
    try:
        student = _current_student(request)
        accounts = setup_accounts(student=student)
    except ValidationError as exc:
        return exception_response(exc)

    log_audit_event(request, 'banking.accounts_setup', target=student)
    return success_response([serialize_account(account) for account in accounts])


@login_required
@role_required('student')
@require_GET
def account_list(request):
    try:
        accounts = get_accounts(student=_current_student(request))
    except ValidationError as exc:
        return exception_response(exc)
    return success_response([serialize_account(account) for account in accounts])


@login_required
@role_required('student')
@require_POST
def transfer(request):
    form = TransferForm(request.POST)
    if not form.is_valid():
        return form_error_response(form)

    try:
        student = _current_student(request)
        result = transfer_funds(
            student=student,
            from_account_id=form.cleaned_data['from_account'],
            to_account_id=form.cleaned_data['to_account'],
            amount=form.cleaned_data['amount'],
            created_by=request.user,
        )
    except ValidationError as exc:
        return exception_response(exc)

    log_audit_event(
        request,
        'banking.transfer',
        target=result['out_transaction'],
        details=(
            f"Transferred {result['out_transaction'].amount} from "
            f"{result['from_account'].display_account_number} to {result['to_account'].display_account_number}."
        ),
    )
    return success_response({
        'out_transaction': serialize_transaction(result['out_transaction']),
        'in_transaction': serialize_transaction(result['in_transaction']),
        'from_account': serialize_account(result['from_account']),
        'to_account': serialize_account(result['to_account']),
    })


@login_required
@role_required('student')
@require_GET
def transaction_list(request):
    try:
        rows = get_transactions(
            student=_current_student(request),
            account_id=request.GET.get('account'),
        )[:TRANSACTION_PAGE_LIMIT]
        data = [serialize_transaction(row) for row in rows]
    except ValidationError as exc:
        return exception_response(exc)
    return success_response(data)


@login_required
@role_required('student')
@require_GET
def statement_available(request):
    form = StatementAvailabilityForm(request.GET)
    if not form.is_valid():
        return form_error_response(form)

    try:
        months = list_available_statements(
            student=_current_student(request),
            account_id=form.cleaned_data['account'],
            year=form.cleaned_data['year'] or timezone.localdate().year,
        )
    except ValidationError as exc:
        return exception_response(exc)
    return success_response(months)


@login_required
@role_required('student')
@require_POST
def statement_request(request):
    form = StatementRequestForm(request.POST)
    if not form.is_valid():
        return form_error_response(form)

    try:
        statement = request_statement(
            student=_current_student(request),
            account_id=form.cleaned_data['account'],
            month=form.cleaned_data['month'],
            year=form.cleaned_data['year'],
        )
    except ValidationError as exc:
        return exception_response(exc)

    log_audit_event(request, 'banking.statement_requested', target=statement, details=statement.period_label)
    return success_response(serialize_statement(statement, include_lines=True))


@login_required
@role_required('student')
@require_GET
def statement_download(request, statement_id):
    try:
        statement = get_owned_statement(student=_current_student(request), statement_id=statement_id)
        content, content_type, filename = export_statement(statement, request.GET.get('export'))
    except ValidationError as exc:
        return exception_response(exc)

    response = HttpResponse(content, content_type=content_type)
    response['Content-Disposition'] = f'attachment; filename="{filename}"'
    return response


def _cron_authorized(request):
    secret = settings.BANKING_CRON_SECRET
    header = request.headers.get('Authorization', '')
    # Bytes, since compare_digest rejects non-ASCII str input.
    return hmac.compare_digest(header.encode(), f'Bearer {secret}'.encode())


@csrf_exempt
@require_POST
def statement_generate(request):
    if not settings.BANKING_CRON_SECRET:
        return error_response('Scheduled statement generation is not configured.', code='disabled', status=503)
    if not _cron_authorized(request):
        return error_response('Unauthorized.', code='unauthenticated', status=401)

    force = request.GET.get('force') in ('1', 'true', 'yes')
    try:
        summary = generate_monthly_statements(force=force)
    except ValidationError as exc:
        return exception_response(exc)
    return success_response(summary)


def _adjust(request, direction):
    form = FundsAdjustmentForm(request.POST)
    if not form.is_valid():
        return form_error_response(form)

    try:
        results = adjust_funds(
            teacher=request.user,
            student_ids=form.cleaned_data['students'],
            account_type=form.cleaned_data['account_type'],
            amount=form.cleaned_data['amount'],
            description=form.cleaned_data['description'],
            direction=direction,
            recurrence=form.cleaned_data['recurrence'],
            issue_date=form.cleaned_data['issue_date'],
        )
    except ValidationError as exc:
        return exception_response(exc)

    succeeded = [row['student_id'] for row in results if row['success']]
    log_audit_event(
        request,
        f'banking.funds_{"added" if direction == DIRECTION_ADD else "removed"}',
        details=(
            f"{form.cleaned_data['amount']} {form.cleaned_data['account_type']} ({form.cleaned_data['recurrence']}) for students "
            f"{', '.join(str(student_id) for student_id in succeeded) or 'none'}."
        ),
    )

    if not succeeded:
        return error_response('No student balances were changed.', code='adjustment_failed', results=results)
    # 207 when some students failed.
    status = 207 if len(succeeded) < len(results) else 200
    return success_response({'results': results}, status=status)


@login_required
@role_required(['teacher', 'superadmin'])
@require_POST
def teacher_funds_add(request):
    return _adjust(request, DIRECTION_ADD)


@login_required
@role_required(['teacher', 'superadmin'])
@require_POST
def teacher_funds_remove(request):
    return _adjust(request, DIRECTION_REMOVE)


@login_required
@role_required(['teacher', 'superadmin'])
@require_GET
def teacher_student_account_list(request, student_id):
    try:
        student, accounts = teacher_student_accounts(teacher=request.user, student_id=student_id)
        recent = get_transactions(student=student)[:50]
        data = {
            'student': {'id': student.pk, 'name': student.full_name},
            'accounts': [serialize_account(account) for account in accounts],
            'transactions': [serialize_transaction(row) for row in recent],
        }
    except ValidationError as exc:
        return exception_response(exc)
    return success_response(data)


@login_required
@role_required(['teacher', 'superadmin'])
@require_GET
def teacher_statement_available(request):
    form = StatementAvailabilityForm(request.GET)
    if not form.is_valid():
        return form_error_response(form)

    try:
        months = teacher_list_available_statements(
            teacher=request.user,
            account_id=form.cleaned_data['account'],
            year=form.cleaned_data['year'] or timezone.localdate().year,
        )
    except ValidationError as exc:
        return exception_response(exc)
    return success_response(months)


@login_required
@role_required(['teacher', 'superadmin'])
@require_POST
def teacher_statement_request(request):
    form = StatementRequestForm(request.POST)
    if not form.is_valid():
        return form_error_response(form)

    try:
        statement = teacher_request_statement(
            teacher=request.user,
            account_id=form.cleaned_data['account'],
            month=form.cleaned_data['month'],
            year=form.cleaned_data['year'],
        )
    except ValidationError as exc:
        return exception_response(exc)

    log_audit_event(request, 'banking.statement_requested', target=statement, details=statement.period_label)
    return success_response(serialize_statement(statement, include_lines=True))


@login_required
@role_required(['teacher', 'superadmin'])
@require_GET
def teacher_statement_download(request, statement_id):
    try:
        statement = get_teacher_statement(teacher=request.user, statement_id=statement_id)
        content, content_type, filename = export_statement(statement, request.GET.get('export'))
    except ValidationError as exc:
        return exception_response(exc)

    response = HttpResponse(content, content_type=content_type)
    response['Content-Disposition'] = f'attachment; filename="{filename}"'
    return response


@login_required
@role_required(['teacher', 'superadmin'])
@require_GET
def teacher_recurring_list(request):
    student_id = request.GET.get('student')
    if student_id not in (None, '') and not str(student_id).isdigit():
        return error_response('Student id must be a number.', code='invalid_input')

    rows = list_recurring_adjustments(
        teacher=request.user,
        student_id=int(student_id) if student_id else None,
        include_inactive=request.GET.get('all') in ('1', 'true', 'yes'),
    )
    return success_response([serialize_recurring_adjustment(row) for row in rows])


@login_required
@role_required(['teacher', 'superadmin'])
@require_POST
def teacher_recurring_stop(request, adjustment_id):
    try:
        adjustment = stop_recurring_adjustment(teacher=request.user, adjustment_id=adjustment_id)
    except ValidationError as exc:
        return exception_response(exc)

    log_audit_event(request, 'banking.recurring_stopped', target=adjustment, details=str(adjustment))
    return success_response(serialize_recurring_adjustment(adjustment))
