from __future__ import annotations

import logging
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.utils import timezone

from apps.core.academics.models import Enrollment, SchoolClass
from apps.core.academics.services import class_ids_for_student
from apps.core.banking.exceptions import (
    AccessDenied,
    BillClosed,
    BillNotFound,
    OverpaymentNotAllowed,
)
from apps.core.banking.models import BankTransaction
from apps.core.banking.services import (
    _quantize,
    debit,
    get_owned_account,
    retry_on_contention,
    validate_amount,
)
from apps.core.students.models import Student
from apps.core.utils.dates import occurrence_date

from .models import Bill, BillAssignment, BillPayment, StudentBill

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ('title', 'emoji', 'description', 'amount', 'due_date', 'frequency')


def _bill_pk(bill_id) -> int:
    if isinstance(bill_id, Bill):
        return bill_id.pk
    try:
        return int(bill_id)
    except (TypeError, ValueError):
        raise BillNotFound() from None


def _is_superadmin(user):
    return getattr(user, 'role', None) == 'superadmin'


def get_teacher_bill(*, teacher, bill_id) -> Bill:
    bill = Bill.objects.filter(pk=_bill_pk(bill_id)).first()
    if bill is None or (bill.creator_id != teacher.pk and not _is_superadmin(teacher)):
        raise BillNotFound()
    return bill


def _teacher_class_ids(teacher, class_ids):
    class_ids = {int(class_id) for class_id in class_ids}
    if not class_ids:
        return set()
    classes = SchoolClass.objects.filter(pk__in=class_ids, is_active=True)
    if not _is_superadmin(teacher):
        classes = classes.filter(teacher=teacher)
    owned = set(classes.values_list('pk', flat=True))
    if owned != class_ids:
        raise AccessDenied('Bills can only be assigned to your own classes.')
    return owned


def assigned_student_ids(bill: Bill):
    """Active students enrolled in any class the bill is assigned to, minus exclusions."""
    enrolled = set(
        Enrollment.objects.filter(
            school_class__bill_assignments__bill=bill,
            school_class__is_active=True,
            student__is_active=True,
            enrolled=True,
        ).values_list('student_id', flat=True)
    )
    excluded = set(
        StudentBill.objects.filter(bill=bill, is_excluded=True).values_list('student_id', flat=True)
    )
    return enrolled - excluded


def sync_student_bills(bill: Bill):
    student_ids = assigned_student_ids(bill)
    existing = set(StudentBill.objects.filter(bill=bill).values_list('student_id', flat=True))
    StudentBill.objects.bulk_create(
        [
            StudentBill(bill=bill, student_id=student_id, amount_due=bill.amount)
            for student_id in sorted(student_ids - existing)
        ],
        ignore_conflicts=True,
    )
    return student_ids


def _is_overdue(bill, today):
    return today > bill.due_date


def compute_bill_status(bill: Bill, today=None) -> str:
    if bill.is_cancelled:
        return Bill.STATUS_CANCELLED

    today = today or timezone.localdate()
    overdue = _is_overdue(bill, today)
    student_ids = assigned_student_ids(bill)
    if not student_ids:
        return Bill.STATUS_LATE if overdue else Bill.STATUS_ACTIVE

    rows = StudentBill.objects.filter(bill=bill, student_id__in=student_ids)
    paid_count = rows.filter(is_paid=True).count()
    partial_count = rows.filter(is_paid=False, paid_amount__gt=0).count()

    if paid_count == len(student_ids):
        return Bill.STATUS_PAID
    if paid_count or partial_count:
        return Bill.STATUS_LATE if overdue else Bill.STATUS_PARTIAL
    if overdue:
        return Bill.STATUS_LATE
    if bill.due_date == today:
        return Bill.STATUS_DUE
    return Bill.STATUS_ACTIVE


def student_bill_status(student_bill: StudentBill, today=None) -> str:
    bill = student_bill.bill
    if bill.is_cancelled:
        return Bill.STATUS_CANCELLED
    if student_bill.is_paid:
        return Bill.STATUS_PAID

    today = today or timezone.localdate()
    overdue = _is_overdue(bill, today)
    if student_bill.paid_amount > 0:
        return Bill.STATUS_LATE if overdue else Bill.STATUS_PARTIAL
    if overdue:
        return Bill.STATUS_LATE
    if bill.due_date == today:
        return Bill.STATUS_DUE
    return Bill.STATUS_ACTIVE


def days_overdue(bill: Bill, today=None) -> int:
    today = today or timezone.localdate()
    return max((today - bill.due_date).days, 0)


@transaction.atomic
def refresh_bill_status(bill: Bill, today=None) -> str:
    bill = Bill.objects.select_for_update().get(pk=bill.pk)
    status = compute_bill_status(bill, today=today)
    if status != bill.status:
        bill.status = status
        bill.save(update_fields=['status', 'updated_at'])
    return status


def refresh_open_bill_statuses(today=None):
    changed = 0
    for bill in Bill.objects.filter(status__in=Bill.OPEN_STATUSES + (Bill.STATUS_PAID,)).order_by('pk'):
        previous = bill.status
        if refresh_bill_status(bill, today=today) != previous:
            changed += 1
    return changed


def next_due_dates(bill: Bill, count=12):
    dates = [bill.due_date]
    if bill.frequency == Bill.FREQUENCY_ONCE:
        return dates
    for index in range(1, count + 1):
        dates.append(occurrence_date(bill.due_date, bill.frequency, index))
    return dates


def suggested_payment(student_bill: StudentBill) -> Decimal:
    remaining = student_bill.remaining
    if remaining <= 0:
        return Decimal('0.00')
    return max(_quantize(remaining / 2), Decimal('0.01'))


@transaction.atomic
def create_bill(*, teacher, title, amount, due_date, frequency=Bill.FREQUENCY_ONCE, description='', emoji='', class_ids=()):
    amount = validate_amount(amount)
    owned_class_ids = _teacher_class_ids(teacher, class_ids)

    bill = Bill(
        creator=teacher,
        title=title,
        emoji=emoji or '',
        description=description or '',
        amount=amount,
        due_date=due_date,
        frequency=frequency,
    )
    bill.full_clean(exclude=['creator'])
    bill.save()

    for class_id in sorted(owned_class_ids):
        BillAssignment.objects.create(bill=bill, school_class_id=class_id)
    sync_student_bills(bill)
    refresh_bill_status(bill)
    bill.refresh_from_db()
    return bill


@transaction.atomic
def update_bill(*, teacher, bill_id, **changes):
    bill = get_teacher_bill(teacher=teacher, bill_id=bill_id)
    unknown = set(changes) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown bill fields: {', '.join(sorted(unknown))}")

    # Student bill rows before the bill row, the same order payments lock in.
    student_bills = list(StudentBill.objects.select_for_update().filter(bill=bill).order_by('pk'))
    bill = Bill.objects.select_for_update().get(pk=bill.pk)
    if bill.is_cancelled:
        raise BillClosed()

    if 'amount' in changes:
        changes['amount'] = validate_amount(changes['amount'])
        highest_paid = max((row.paid_amount for row in student_bills), default=Decimal('0.00'))
        if changes['amount'] < highest_paid:
            raise OverpaymentNotAllowed(
                f'Amount cannot be lower than the {highest_paid} a student has already paid.'
            )

    for field, value in changes.items():
        setattr(bill, field, value)
    bill.full_clean(exclude=['creator'])
    bill.save()

    if 'amount' in changes:
        now = timezone.now()
        for row in student_bills:
            row.amount_due = bill.amount
            is_paid = row.paid_amount >= row.amount_due
            if is_paid and not row.is_paid:
                row.paid_at = now
            elif not is_paid:
                row.paid_at = None
            row.is_paid = is_paid
            row.save(update_fields=['amount_due', 'is_paid', 'paid_at', 'updated_at'])

    refresh_bill_status(bill)
    bill.refresh_from_db()
    return bill


@transaction.atomic
def cancel_bill(*, teacher, bill_id):
    bill = get_teacher_bill(teacher=teacher, bill_id=bill_id)
    bill = Bill.objects.select_for_update().get(pk=bill.pk)
    bill.status = Bill.STATUS_CANCELLED
    bill.save(update_fields=['status', 'updated_at'])
    return bill


@transaction.atomic
def delete_bill(*, teacher, bill_id):
    bill = get_teacher_bill(teacher=teacher, bill_id=bill_id)
    if BillPayment.objects.filter(bill=bill).exists():
        raise ValidationError(
            'Bills with payments cannot be deleted. Cancel the bill instead.',
            code='bill_has_payments',
        )
    bill_pk = bill.pk
    bill.delete()
    return bill_pk


@transaction.atomic
def assign_bill_to_classes(*, teacher, bill_id, class_ids):
    bill = get_teacher_bill(teacher=teacher, bill_id=bill_id)
    for class_id in sorted(_teacher_class_ids(teacher, class_ids)):
        BillAssignment.objects.get_or_create(bill=bill, school_class_id=class_id)
    sync_student_bills(bill)
    refresh_bill_status(bill)
    return bill


@transaction.atomic
def remove_bill_from_classes(*, teacher, bill_id, class_ids):
    bill = get_teacher_bill(teacher=teacher, bill_id=bill_id)
    class_ids = _teacher_class_ids(teacher, class_ids)
    BillAssignment.objects.filter(bill=bill, school_class_id__in=class_ids).delete()
    refresh_bill_status(bill)
    return bill


def _set_exclusion(*, teacher, bill_id, student_ids, excluded):
    bill = get_teacher_bill(teacher=teacher, bill_id=bill_id)
    student_ids = {int(student_id) for student_id in student_ids}
    enrolled = set(
        Enrollment.objects.filter(
            school_class__bill_assignments__bill=bill,
            student_id__in=student_ids,
            enrolled=True,
        ).values_list('student_id', flat=True)
    )
    if enrolled != student_ids:
        raise AccessDenied('Students must be enrolled in a class this bill is assigned to.')

    for student_id in sorted(student_ids):
        StudentBill.objects.update_or_create(
            bill=bill,
            student_id=student_id,
            defaults={'is_excluded': excluded},
            create_defaults={'is_excluded': excluded, 'amount_due': bill.amount},
        )
    refresh_bill_status(bill)
    return bill


@transaction.atomic
def exclude_students_from_bill(*, teacher, bill_id, student_ids):
    return _set_exclusion(teacher=teacher, bill_id=bill_id, student_ids=student_ids, excluded=True)


@transaction.atomic
def include_students_in_bill(*, teacher, bill_id, student_ids):
    return _set_exclusion(teacher=teacher, bill_id=bill_id, student_ids=student_ids, excluded=False)


def student_can_view_bill(student: Student, bill: Bill) -> bool:
    if student is None:
        return False
    return BillAssignment.objects.filter(
        bill=bill,
        school_class_id__in=class_ids_for_student(student),
    ).exists()


def student_bills(*, student: Student, today=None):
    """Open bills of a student's classes with what is left to pay."""
    today = today or timezone.localdate()
    bills = (
        Bill.objects.filter(
            assignments__school_class_id__in=class_ids_for_student(student),
        )
        .exclude(status=Bill.STATUS_CANCELLED)
        .distinct()
        .order_by('due_date', 'id')
    )
    rows = {row.bill_id: row for row in StudentBill.objects.for_student(student).filter(bill__in=bills)}

    result = []
    for bill in bills:
        row = rows.get(bill.pk) or StudentBill(bill=bill, student=student, amount_due=bill.amount)
        if row.is_excluded:
            continue
        result.append({
            'bill': bill,
            'student_bill': row,
            'status': student_bill_status(row, today=today),
            'remaining': row.remaining,
            'suggested_payment': suggested_payment(row),
            'days_overdue': days_overdue(bill, today=today),
        })
    return result


def _student_bill_for_update(bill: Bill, student: Student) -> StudentBill:
    try:
        with transaction.atomic():
            row, _created = StudentBill.objects.get_or_create(
                bill=bill,
                student=student,
                defaults={'amount_due': bill.amount},
            )
    except IntegrityError:
        row = StudentBill.objects.get(bill=bill, student=student)
    return StudentBill.objects.select_for_update(of=('self',)).select_related('bill').get(pk=row.pk)


@retry_on_contention
@transaction.atomic
def pay_bill(*, student: Student, bill_id, account_id, amount, created_by=None) -> BillPayment:
    # Lock order: student bill, account, bill.
    amount = validate_amount(amount)
    bill = Bill.objects.filter(pk=_bill_pk(bill_id)).first()
    if bill is None:
        raise BillNotFound()
    if not student_can_view_bill(student, bill):
        raise AccessDenied('This bill is not assigned to any of your classes.')
    account = get_owned_account(student=student, account_id=account_id)

    student_bill = _student_bill_for_update(bill, student)
    if student_bill.bill.is_cancelled:
        raise BillClosed()
    if student_bill.is_excluded:
        raise AccessDenied('You are excluded from this bill.')

    remaining = student_bill.remaining
    if amount > remaining:
        if remaining <= 0:
            raise OverpaymentNotAllowed('This bill is already fully paid.')
        raise OverpaymentNotAllowed(f'Payment exceeds the remaining amount of {remaining}.')

    ledger_row = debit(
        account_id=account.pk,
        amount=amount,
        transaction_type=BankTransaction.TYPE_WITHDRAWAL,
        description=f'Payment for {student_bill.bill.title}',
        created_by=created_by,
    )

    student_bill.paid_amount = student_bill.paid_amount + amount
    student_bill.is_paid = student_bill.paid_amount >= student_bill.amount_due
    if student_bill.is_paid:
        student_bill.paid_at = ledger_row.created_at
    student_bill.save(update_fields=['paid_amount', 'is_paid', 'paid_at', 'updated_at'])

    payment = BillPayment.objects.create(
        bill=student_bill.bill,
        student=student,
        student_bill=student_bill,
        account=ledger_row.account,
        transaction=ledger_row,
        amount=amount,
        paid_at=ledger_row.created_at,
    )
    refresh_bill_status(student_bill.bill)
    logger.info('Student %s paid %s towards bill %s', student.pk, amount, bill.pk)
    return payment
