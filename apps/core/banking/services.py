from __future__ import annotations

import functools
import logging
import secrets
import time
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import DatabaseError, IntegrityError, OperationalError, connection, transaction
from django.db.models import F
from django.utils import timezone

from apps.core.academics.services import teacher_can_access_student
from apps.core.students.models import Student
from apps.core.utils.dates import occurrence_date

from .exceptions import (
    AccessDenied,
    AccountMismatch,
    AccountNotFound,
    AdjustmentNotFound,
    BankingError,
    ConcurrencyConflict,
    InsufficientFunds,
    InvalidAmount,
    LockTimeout,
)
from .models import BankAccount, BankTransaction, RecurringAdjustment

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')
MAX_BALANCE = Decimal('9999999999.99')
ACCOUNT_NUMBER_ATTEMPTS = 20

DIRECTION_ADD = RecurringAdjustment.DIRECTION_ADD
DIRECTION_REMOVE = RecurringAdjustment.DIRECTION_REMOVE

SERIALIZATION_SQLSTATES = {'40001', '40P01'}
LOCK_SQLSTATES = {'55P03'}
SERIALIZATION_MESSAGES = ('deadlock detected', 'could not serialize access')
LOCK_MESSAGES = (
    'database is locked',
    'database table is locked',
    'due to lock timeout',
    'could not obtain lock',
    'lock wait timeout exceeded',
)


def _to_decimal(value) -> Decimal:
    return Decimal(str(value or '0'))


def _quantize(value: Decimal) -> Decimal:
    return _to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def validate_amount(value) -> Decimal:
    # Floats go through str so 0.1 stays 0.1.
    if value is None or isinstance(value, bool):
        raise InvalidAmount()
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmount() from None

    if not amount.is_finite() or amount <= 0:
        raise InvalidAmount()
    if amount != amount.quantize(CENT, rounding=ROUND_HALF_UP):
        raise InvalidAmount()
    if amount > MAX_BALANCE:
        raise InvalidAmount('Amount exceeds the supported limit.')
    return amount.quantize(CENT)


def account_pk(value) -> int:
    if isinstance(value, BankAccount):
        return value.pk
    try:
        return int(value)
    except (TypeError, ValueError):
        raise AccountNotFound() from None


def _contention_error(exc: OperationalError):
    cause = exc.__cause__
    sqlstate = getattr(cause, 'sqlstate', None) or getattr(cause, 'pgcode', None)
    if sqlstate in SERIALIZATION_SQLSTATES:
        return ConcurrencyConflict()
    if sqlstate in LOCK_SQLSTATES:
        return LockTimeout()

    message = str(exc).lower()
    if any(marker in message for marker in SERIALIZATION_MESSAGES):
        return ConcurrencyConflict()
    if any(marker in message for marker in LOCK_MESSAGES):
        return LockTimeout()
    return None


def retry_on_contention(func):
    """Retry lock timeouts and lost version checks, outside atomic blocks only."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        attempts = max(int(settings.BANKING_MAX_RETRIES), 0) + 1
        backoff = float(settings.BANKING_RETRY_BACKOFF_SECONDS)
        attempt = 1
        while True:
            try:
                return func(*args, **kwargs)
            except OperationalError as exc:
                translated = _contention_error(exc)
                if translated is None:
                    raise
                error = translated
                cause = exc
            except (LockTimeout, ConcurrencyConflict) as exc:
                error = exc
                cause = None

            if connection.in_atomic_block or attempt >= attempts:
                if cause is not None:
                    raise error from cause
                raise error

            delay = backoff * (2 ** (attempt - 1))
            logger.warning(
                '%s failed with %s (attempt %s of %s), retrying in %.3fs',
                func.__name__,
                error.code,
                attempt,
                attempts,
                delay,
            )
            time.sleep(delay)
            attempt += 1

    return wrapper


def _apply_lock_timeout():
    if connection.vendor != 'postgresql':
        return
    timeout_ms = int(settings.BANKING_LOCK_TIMEOUT_MS)
    with connection.cursor() as cursor:
        # is_local=true scopes the setting to the current transaction.
        cursor.execute("SELECT set_config('lock_timeout', %s, true)", [f'{timeout_ms}ms'])


def lock_accounts(account_ids) -> dict[int, BankAccount]:
    """Lock the given accounts in ascending id order. Must run inside an atomic block."""
    ids = sorted({account_pk(account_id) for account_id in account_ids})
    _apply_lock_timeout()
    return {
        account.pk: account
        for account in BankAccount.objects.select_for_update().filter(pk__in=ids).order_by('pk')
    }


def _lock_account(account_id) -> BankAccount:
    pk = account_pk(account_id)
    account = lock_accounts([pk]).get(pk)
    if account is None:
        raise AccountNotFound()
    return account


def _apply_balance(account: BankAccount, new_balance: Decimal):
    updated = BankAccount.objects.filter(pk=account.pk, version=account.version).update(
        balance=new_balance,
        version=F('version') + 1,
        updated_at=timezone.now(),
    )
    if updated != 1:
        raise ConcurrencyConflict()
    account.balance = new_balance
    account.version += 1


def _post(
    account: BankAccount,
    *,
    amount: Decimal,
    transaction_type: str,
    description: str,
    created_by=None,
    created_at=None,
    related_transaction=None,
) -> BankTransaction:
    if transaction_type in BankTransaction.DEBIT_TYPES:
        if amount > account.balance:
            raise InsufficientFunds(
                f'Insufficient funds in {account.get_account_type_display().lower()} account.'
            )
        new_balance = account.balance - amount
    else:
        new_balance = account.balance + amount
        if new_balance > MAX_BALANCE:
            raise InvalidAmount('Resulting balance exceeds the supported limit.')

    _apply_balance(account, new_balance)
    return BankTransaction.objects.create(
        account=account,
        transaction_type=transaction_type,
        amount=amount,
        balance_after=new_balance,
        description=(description or '')[:255],
        created_by=created_by,
        created_at=created_at or timezone.now(),
        related_transaction=related_transaction,
    )


@retry_on_contention
@transaction.atomic
def credit(
    *,
    account_id,
    amount,
    transaction_type=BankTransaction.TYPE_DEPOSIT,
    description='',
    created_by=None,
    created_at=None,
    related_transaction=None,
) -> BankTransaction:
    if transaction_type not in BankTransaction.CREDIT_TYPES:
        raise ValidationError(f'{transaction_type} is not a credit transaction type.')
    amount = validate_amount(amount)
    account = _lock_account(account_id)
    return _post(
        account,
        amount=amount,
        transaction_type=transaction_type,
        description=description,
        created_by=created_by,
        created_at=created_at,
        related_transaction=related_transaction,
    )


@retry_on_contention
@transaction.atomic
def debit(
    *,
    account_id,
    amount,
    transaction_type=BankTransaction.TYPE_WITHDRAWAL,
    description='',
    created_by=None,
    created_at=None,
    related_transaction=None,
) -> BankTransaction:
    if transaction_type not in BankTransaction.DEBIT_TYPES:
        raise ValidationError(f'{transaction_type} is not a debit transaction type.')
    amount = validate_amount(amount)
    account = _lock_account(account_id)
    return _post(
        account,
        amount=amount,
        transaction_type=transaction_type,
        description=description,
        created_by=created_by,
        created_at=created_at,
        related_transaction=related_transaction,
    )


def query_transactions(*, account, start=None, end=None):
    """Transactions of one account, most recent first, within ``[start, end)``."""
    queryset = BankTransaction.objects.filter(account=account)
    if start is not None:
        queryset = queryset.filter(created_at__gte=start)
    if end is not None:
        queryset = queryset.filter(created_at__lt=end)
    return queryset.order_by('-created_at', '-id')


def _generate_account_number() -> str:
    for _ in range(ACCOUNT_NUMBER_ATTEMPTS):
        number = str(10_000_000 + secrets.randbelow(90_000_000))
        if not BankAccount.objects.filter(account_number=number).exists():
            return number
    raise ConcurrencyConflict('Could not allocate a unique account number.')


@retry_on_contention
@transaction.atomic
def setup_accounts(*, student: Student):
    # The unique (student, account_type) constraint backs up the student row lock.
    Student.objects.select_for_update().filter(pk=student.pk).first()

    accounts = []
    for account_type, _label in BankAccount.ACCOUNT_TYPE_CHOICES:
        account = BankAccount.objects.filter(student=student, account_type=account_type).first()
        if account is None:
            try:
                with transaction.atomic():
                    account = BankAccount.objects.create(
                        student=student,
                        account_type=account_type,
                        account_number=_generate_account_number(),
                    )
            except IntegrityError:
                account = BankAccount.objects.filter(student=student, account_type=account_type).first()
                if account is None:
                    raise ConcurrencyConflict() from None
        accounts.append(account)
    return accounts


def get_accounts(*, student: Student):
    accounts = list(BankAccount.objects.for_student(student).order_by('account_type', 'id'))
    if len(accounts) < len(BankAccount.ACCOUNT_TYPE_CHOICES):
        accounts = setup_accounts(student=student)
    return accounts


def get_owned_account(*, student: Student, account_id) -> BankAccount:
    account = BankAccount.objects.filter(pk=account_pk(account_id)).first()
    if account is None:
        raise AccountNotFound()
    if student is None or account.student_id != student.pk:
        raise AccessDenied('You do not have access to this account.')
    return account


def get_transactions(*, student: Student, account_id=None, start=None, end=None):
    if account_id not in (None, ''):
        account = get_owned_account(student=student, account_id=account_id)
        return query_transactions(account=account, start=start, end=end).select_related('account')

    get_accounts(student=student)
    queryset = BankTransaction.objects.filter(account__student=student)
    if start is not None:
        queryset = queryset.filter(created_at__gte=start)
    if end is not None:
        queryset = queryset.filter(created_at__lt=end)
    return queryset.select_related('account').order_by('-created_at', '-id')


@retry_on_contention
@transaction.atomic
def transfer_funds(*, student: Student, from_account_id, to_account_id, amount, created_by=None):
    amount = validate_amount(amount)
    from_pk = account_pk(from_account_id)
    to_pk = account_pk(to_account_id)
    if from_pk == to_pk:
        raise AccountMismatch('Cannot transfer to the same account.')

    accounts = lock_accounts([from_pk, to_pk])
    source = accounts.get(from_pk)
    destination = accounts.get(to_pk)
    if source is None or destination is None:
        raise AccountNotFound()
    if student is None or source.student_id != student.pk or destination.student_id != student.pk:
        raise AccountMismatch()

    created_at = timezone.now()
    description = (
        f'Transfer from {source.get_account_type_display()} to {destination.get_account_type_display()}'
    )
    out_transaction = debit(
        account_id=from_pk,
        amount=amount,
        transaction_type=BankTransaction.TYPE_TRANSFER_OUT,
        description=description,
        created_by=created_by,
        created_at=created_at,
    )
    in_transaction = credit(
        account_id=to_pk,
        amount=amount,
        transaction_type=BankTransaction.TYPE_TRANSFER_IN,
        description=description,
        created_by=created_by,
        created_at=created_at,
        related_transaction=out_transaction,
    )
    out_transaction.related_transaction = in_transaction
    out_transaction.save(update_fields=['related_transaction'])

    return {
        'out_transaction': out_transaction,
        'in_transaction': in_transaction,
        'from_account': out_transaction.account,
        'to_account': in_transaction.account,
    }


@retry_on_contention
@transaction.atomic
def _adjust_student_funds(*, student, account_type, amount, description, direction, created_by):
    accounts = {account.account_type: account for account in setup_accounts(student=student)}
    account = accounts[account_type]
    if direction == DIRECTION_ADD:
        return credit(
            account_id=account.pk,
            amount=amount,
            transaction_type=BankTransaction.TYPE_DEPOSIT,
            description=description or 'Funds added by teacher',
            created_by=created_by,
        )
    return debit(
        account_id=account.pk,
        amount=amount,
        transaction_type=BankTransaction.TYPE_WITHDRAWAL,
        description=description or 'Funds removed by teacher',
        created_by=created_by,
    )


def _default_description(direction, recurrence):
    verb = 'added' if direction == DIRECTION_ADD else 'removed'
    if recurrence == RecurringAdjustment.RECURRENCE_ONCE:
        return f'Funds {verb} by teacher'
    return f'Recurring {recurrence} funds {verb} by teacher'


@retry_on_contention
@transaction.atomic
def _adjust_and_schedule(
    *,
    student,
    account_type,
    amount,
    description,
    direction,
    recurrence,
    issue_date,
    post_now,
    created_by,
):
    row = None
    if post_now:
        row = _adjust_student_funds(
            student=student,
            account_type=account_type,
            amount=amount,
            description=description,
            direction=direction,
            created_by=created_by,
        )
        if recurrence == RecurringAdjustment.RECURRENCE_ONCE:
            return row, None

    # Today's occurrence is already posted when post_now is set.
    occurrences = 1 if post_now else 0
    adjustment = RecurringAdjustment.objects.create(
        created_by=created_by,
        student=student,
        account_type=account_type,
        amount=amount,
        direction=direction,
        description=description,
        recurrence=recurrence,
        start_date=issue_date,
        next_run=occurrence_date(issue_date, recurrence, occurrences),
        occurrences=occurrences,
        last_run_at=row.created_at if row is not None else None,
    )
    return row, adjustment


def adjust_funds(
    *,
    teacher,
    student_ids,
    account_type,
    amount,
    description='',
    direction=DIRECTION_ADD,
    recurrence=RecurringAdjustment.RECURRENCE_ONCE,
    issue_date=None,
    today=None,
):
    """Post to, or schedule for, one account of each listed student."""
    amount = validate_amount(amount)
    if account_type not in dict(BankAccount.ACCOUNT_TYPE_CHOICES):
        raise AccountNotFound('Unknown account type.')
    if direction not in (DIRECTION_ADD, DIRECTION_REMOVE):
        raise ValidationError('Direction must be add or remove.')
    if recurrence not in dict(RecurringAdjustment.RECURRENCE_CHOICES):
        raise ValidationError('Recurrence must be once, weekly, biweekly or monthly.', code='invalid_recurrence')

    today = today or timezone.localdate()
    issue_date = issue_date or today
    if issue_date < today:
        raise ValidationError('The issue date cannot be in the past.', code='invalid_date')
    post_now = issue_date == today
    description = description or _default_description(direction, recurrence)

    results = []
    seen = set()
    for raw_id in student_ids:
        try:
            student_id = int(raw_id)
        except (TypeError, ValueError):
            results.append({'student_id': raw_id, 'success': False, 'code': 'student_not_found', 'error': 'Student not found.'})
            continue
        if student_id in seen:
            continue
        seen.add(student_id)

        student = Student.objects.filter(pk=student_id, is_active=True).first()
        if student is None:
            results.append({'student_id': student_id, 'success': False, 'code': 'student_not_found', 'error': 'Student not found.'})
            continue
        if not teacher_can_access_student(teacher, student):
            error = AccessDenied('Student is not enrolled in any of your classes.')
            results.append({'student_id': student_id, 'success': False, 'code': error.code, 'error': str(error)})
            continue

        try:
            row, adjustment = _adjust_and_schedule(
                student=student,
                account_type=account_type,
                amount=amount,
                description=description,
                direction=direction,
                recurrence=recurrence,
                issue_date=issue_date,
                post_now=post_now,
                created_by=teacher,
            )
        except BankingError as exc:
            results.append({'student_id': student_id, 'success': False, 'code': exc.code, 'error': str(exc)})
            continue

        result = {'student_id': student_id, 'success': True}
        if row is not None:
            result['transaction_id'] = row.pk
            result['balance'] = str(row.balance_after)
        if adjustment is not None:
            result['adjustment_id'] = adjustment.pk
            result['next_run'] = adjustment.next_run.isoformat()
        results.append(result)
    return results


@retry_on_contention
@transaction.atomic
def _run_next_occurrence(*, adjustment_id, today):
    adjustment = (
        RecurringAdjustment.objects.select_for_update(of=('self',))
        .select_related('student', 'created_by')
        .filter(pk=adjustment_id, is_active=True, next_run__lte=today)
        .first()
    )
    if adjustment is None:
        return None

    row = None
    error = None
    if not adjustment.student.is_active or not teacher_can_access_student(adjustment.created_by, adjustment.student):
        # The student left the teacher's classes; nothing more will be posted.
        error = AccessDenied('Student is not enrolled in any of your classes.')
        adjustment.is_active = False
        adjustment.stopped_at = timezone.now()
    else:
        try:
            with transaction.atomic():
                row = _adjust_student_funds(
                    student=adjustment.student,
                    account_type=adjustment.account_type,
                    amount=adjustment.amount,
                    description=adjustment.description,
                    direction=adjustment.direction,
                    created_by=adjustment.created_by,
                )
        except BankingError as exc:
            if exc.retryable:
                raise
            error = exc

    adjustment.occurrences += 1
    adjustment.last_run_at = row.created_at if row is not None else timezone.now()
    adjustment.last_error = str(error)[:255] if error is not None else ''
    next_run = occurrence_date(adjustment.start_date, adjustment.recurrence, adjustment.occurrences)
    if next_run is None:
        adjustment.is_active = False
    else:
        adjustment.next_run = next_run
    adjustment.save()

    if error is not None:
        logger.warning('Scheduled adjustment %s skipped an occurrence: %s', adjustment.pk, error)
    return error is None


def run_due_adjustments(*, today=None):
    today = today or timezone.localdate()
    summary = {'due': 0, 'posted': 0, 'failed': 0}
    due_ids = list(
        RecurringAdjustment.objects.filter(is_active=True, next_run__lte=today)
        .order_by('next_run', 'pk')
        .values_list('pk', flat=True)
    )
    for adjustment_id in due_ids:
        summary['due'] += 1
        # Catch up on every occurrence missed since the last run.
        while True:
            try:
                posted = _run_next_occurrence(adjustment_id=adjustment_id, today=today)
            except (BankingError, DatabaseError):
                logger.exception('Scheduled adjustment %s could not run', adjustment_id)
                summary['failed'] += 1
                break
            if posted is None:
                break
            summary['posted' if posted else 'failed'] += 1

    logger.info(
        'Scheduled adjustments for %s: %s due, %s posted, %s failed',
        today,
        summary['due'],
        summary['posted'],
        summary['failed'],
    )
    return summary


def list_recurring_adjustments(*, teacher, student_id=None, include_inactive=False):
    queryset = RecurringAdjustment.objects.select_related('student')
    if getattr(teacher, 'role', None) != 'superadmin':
        queryset = queryset.filter(created_by=teacher)
    if not include_inactive:
        queryset = queryset.filter(is_active=True)
    if student_id is not None:
        queryset = queryset.filter(student_id=student_id)
    return queryset.order_by('next_run', 'pk')


@transaction.atomic
def stop_recurring_adjustment(*, teacher, adjustment_id) -> RecurringAdjustment:
    try:
        pk = int(adjustment_id)
    except (TypeError, ValueError):
        raise AdjustmentNotFound() from None
    adjustment = RecurringAdjustment.objects.select_for_update().filter(pk=pk).first()
    if adjustment is None:
        raise AdjustmentNotFound()
    if adjustment.created_by_id != teacher.pk and getattr(teacher, 'role', None) != 'superadmin':
        raise AccessDenied('You can only stop adjustments you scheduled.')

    if adjustment.is_active:
        adjustment.is_active = False
        adjustment.stopped_at = timezone.now()
        adjustment.save(update_fields=['is_active', 'stopped_at', 'updated_at'])
        logger.info('Scheduled adjustment %s stopped by %s', adjustment.pk, teacher.pk)
    return adjustment


def teacher_student_accounts(*, teacher, student_id):
    student = Student.objects.filter(pk=student_id, is_active=True).first()
    if student is None or not teacher_can_access_student(teacher, student):
        raise AccessDenied('Student is not enrolled in any of your classes.')
    return student, get_accounts(student=student)


def get_teacher_account(*, teacher, account_id) -> BankAccount:
    account = BankAccount.objects.select_related('student').filter(pk=account_pk(account_id)).first()
    if account is None:
        raise AccountNotFound()
    if not account.student.is_active or not teacher_can_access_student(teacher, account.student):
        raise AccessDenied('Student is not enrolled in any of your classes.')
    return account


def replay_balance(account: BankAccount) -> Decimal:
    """Rebuild a balance from the transaction log, oldest first."""
    balance = Decimal('0.00')
    rows = BankTransaction.objects.filter(account=account).order_by('created_at', 'id').values_list(
        'transaction_type',
        'amount',
    )
    for transaction_type, amount in rows:
        if transaction_type in BankTransaction.CREDIT_TYPES:
            balance += amount
        else:
            balance -= amount
    return _quantize(balance)


def reconcile_accounts(*, account_ids=None):
    queryset = BankAccount.objects.order_by('pk')
    if account_ids:
        queryset = queryset.filter(pk__in=account_ids)

    mismatches = []
    for account_id in queryset.values_list('pk', flat=True):
        with transaction.atomic():
            account = _lock_account(account_id)
            replayed = replay_balance(account)
        if replayed != account.balance:
            logger.warning(
                'Account %s balance %s does not match replayed ledger balance %s',
                account.display_account_number,
                account.balance,
                replayed,
            )
            mismatches.append({
                'account_id': account.pk,
                'account_number': account.display_account_number,
                'balance': account.balance,
                'replayed_balance': replayed,
            })
    return mismatches
