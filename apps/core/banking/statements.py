from __future__ import annotations

import calendar
import csv
import logging
from datetime import datetime
from decimal import Decimal
from io import BytesIO, StringIO

from PIL import Image, ImageDraw
from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import Q
from django.utils import timezone
from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

from .exceptions import (
    AccountNotFound,
    BankingError,
    InvalidPeriod,
    PeriodNotElapsed,
    StatementNotFound,
)
from .models import BankAccount, BankStatement, BankTransaction
from .services import (
    _quantize,
    account_pk,
    get_owned_account,
    get_teacher_account,
    lock_accounts,
    query_transactions,
    retry_on_contention,
)

logger = logging.getLogger(__name__)

EXPORT_XLSX = 'xlsx'
EXPORT_CSV = 'csv'
EXPORT_PDF = 'pdf'
EXPORT_CONTENT_TYPES = {
    EXPORT_XLSX: 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
    EXPORT_CSV: 'text/csv',
    EXPORT_PDF: 'application/pdf',
}

LINE_HEADERS = ['Date', 'Type', 'Description', 'Amount', 'Balance']


def normalize_period(month, year):
    try:
        month = int(month)
        year = int(year)
    except (TypeError, ValueError):
        raise InvalidPeriod() from None
    if not 1 <= month <= 12 or not 1970 <= year <= 9999:
        raise InvalidPeriod()
    return month, year


def period_bounds(month, year):
    """Start and end of a calendar month in the active time zone, as ``[start, end)``."""
    month, year = normalize_period(month, year)
    tz = timezone.get_current_timezone()
    start = datetime(year, month, 1, tzinfo=tz)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=tz)
    else:
        end = datetime(year, month + 1, 1, tzinfo=tz)
    return start, end


def previous_period(now=None):
    local_now = timezone.localtime(now or timezone.now())
    if local_now.month == 1:
        return 12, local_now.year - 1
    return local_now.month - 1, local_now.year


def _statement_line(row: BankTransaction):
    return {
        'id': row.pk,
        'date': timezone.localtime(row.created_at).isoformat(),
        'type': row.transaction_type,
        'type_display': row.get_transaction_type_display(),
        'description': row.description,
        'amount': str(row.amount),
        'signed_amount': str(row.signed_amount),
        'balance_after': str(row.balance_after),
        'related_transaction_id': row.related_transaction_id,
    }


def _opening_balance(account: BankAccount, month, year, period_start) -> Decimal:
    previous = (
        BankStatement.objects.filter(account=account)
        .filter(Q(year__lt=year) | Q(year=year, month__lt=month))
        .order_by('-year', '-month')
        .first()
    )
    if previous is not None and previous.period_end == period_start:
        return previous.closing_balance

    later_rows = BankTransaction.objects.filter(account=account, created_at__gte=period_start)
    movement = sum((row.signed_amount for row in later_rows), Decimal('0.00'))
    return _quantize(account.balance - movement)


@retry_on_contention
@transaction.atomic
def generate_statement(*, account_id, month, year, now=None) -> BankStatement:
    # The account row stays locked so the balance and the transaction list agree.
    month, year = normalize_period(month, year)
    period_start, period_end = period_bounds(month, year)
    if period_end > (now or timezone.now()):
        raise PeriodNotElapsed()

    pk = account_pk(account_id)
    account = lock_accounts([pk]).get(pk)
    if account is None:
        raise AccountNotFound()

    existing = BankStatement.objects.filter(account=account, year=year, month=month).first()
    if existing is not None:
        return existing

    rows = list(
        query_transactions(account=account, start=period_start, end=period_end).order_by('created_at', 'id')
    )
    opening_balance = _opening_balance(account, month, year, period_start)
    total_credits = _quantize(sum((row.amount for row in rows if row.is_credit), Decimal('0.00')))
    total_debits = _quantize(sum((row.amount for row in rows if not row.is_credit), Decimal('0.00')))

    try:
        with transaction.atomic():
            return BankStatement.objects.create(
                account=account,
                month=month,
                year=year,
                period_start=period_start,
                period_end=period_end,
                opening_balance=opening_balance,
                closing_balance=_quantize(opening_balance + total_credits - total_debits),
                total_credits=total_credits,
                total_debits=total_debits,
                transaction_count=len(rows),
                lines=[_statement_line(row) for row in rows],
                generated_at=timezone.now(),
            )
    except IntegrityError:
        existing = BankStatement.objects.filter(account=account, year=year, month=month).first()
        if existing is None:
            raise
        return existing


def _ensure_account_existed(account: BankAccount, month, year):
    _start, period_end = period_bounds(month, year)
    if period_end <= account.created_at:
        raise InvalidPeriod('The account did not exist during this period.')


def request_statement(*, student, account_id, month, year, now=None) -> BankStatement:
    account = get_owned_account(student=student, account_id=account_id)
    _ensure_account_existed(account, month, year)
    return generate_statement(account_id=account.pk, month=month, year=year, now=now)


def teacher_request_statement(*, teacher, account_id, month, year, now=None) -> BankStatement:
    account = get_teacher_account(teacher=teacher, account_id=account_id)
    _ensure_account_existed(account, month, year)
    return generate_statement(account_id=account.pk, month=month, year=year, now=now)


def _available_months(account: BankAccount, year, now=None):
    _january, year = normalize_period(1, year)
    now = now or timezone.now()
    generated = dict(
        BankStatement.objects.filter(account=account, year=year).values_list('month', 'id')
    )

    months = []
    for month in range(1, 13):
        _start, period_end = period_bounds(month, year)
        months.append({
            'month': month,
            'month_name': calendar.month_name[month],
            'available': period_end <= now and period_end > account.created_at,
            'statement_id': generated.get(month),
        })
    return months


def list_available_statements(*, student, account_id, year, now=None):
    return _available_months(get_owned_account(student=student, account_id=account_id), year, now=now)


def teacher_list_available_statements(*, teacher, account_id, year, now=None):
    return _available_months(get_teacher_account(teacher=teacher, account_id=account_id), year, now=now)


def _get_statement(statement_id) -> BankStatement:
    try:
        statement = BankStatement.objects.select_related('account').filter(pk=int(statement_id)).first()
    except (TypeError, ValueError):
        statement = None
    if statement is None:
        raise StatementNotFound()
    return statement


def get_owned_statement(*, student, statement_id) -> BankStatement:
    statement = _get_statement(statement_id)
    get_owned_account(student=student, account_id=statement.account_id)
    return statement


def get_teacher_statement(*, teacher, statement_id) -> BankStatement:
    statement = _get_statement(statement_id)
    get_teacher_account(teacher=teacher, account_id=statement.account_id)
    return statement


def _batch_period(month, year, now):
    if month is None and year is None:
        return previous_period(now)

    local_now = timezone.localtime(now)
    if year is None:
        # The latest elapsed occurrence of that month.
        month, _year = normalize_period(month, local_now.year)
        year = local_now.year if month < local_now.month else local_now.year - 1
    elif month is None:
        _january, year = normalize_period(1, year)
        default_month, default_year = previous_period(now)
        month = default_month if year == default_year else 12
    return normalize_period(month, year)


def generate_monthly_statements(*, month=None, year=None, now=None, force=False):
    # Each account runs in its own transaction so one failure does not stop the batch.
    now = now or timezone.now()
    local_now = timezone.localtime(now)
    explicit = month is not None or year is not None
    if not force and not explicit and local_now.day != int(settings.BANKING_STATEMENT_DAY):
        return {
            'ran': False,
            'reason': f'Statements are generated on day {settings.BANKING_STATEMENT_DAY} of the month.',
        }

    month, year = _batch_period(month, year, now)
    period_start, period_end = period_bounds(month, year)
    if period_end > now:
        raise PeriodNotElapsed()

    summary = {
        'ran': True,
        'month': month,
        'year': year,
        'total': 0,
        'success': 0,
        'failed': 0,
        'skipped': 0,
        'errors': [],
    }
    for account in BankAccount.objects.order_by('pk').iterator():
        summary['total'] += 1
        has_activity = BankTransaction.objects.filter(
            account=account,
            created_at__gte=period_start,
            created_at__lt=period_end,
        ).exists()
        if not has_activity:
            summary['skipped'] += 1
            continue

        try:
            generate_statement(account_id=account.pk, month=month, year=year, now=now)
        except (BankingError, DatabaseError) as exc:
            logger.exception('Statement generation failed for account %s', account.display_account_number)
            summary['failed'] += 1
            summary['errors'].append({'account_id': account.pk, 'error': str(exc)})
        else:
            summary['success'] += 1

    logger.info(
        'Statements for %s/%s: %s generated, %s skipped, %s failed',
        month,
        year,
        summary['success'],
        summary['skipped'],
        summary['failed'],
    )
    return summary


def _line_rows(statement: BankStatement):
    rows = []
    for line in statement.lines:
        rows.append([
            line['date'][:10],
            line['type_display'],
            line['description'],
            line['signed_amount'],
            line['balance_after'],
        ])
    return rows


def _summary_rows(statement: BankStatement):
    return [
        ['Account', statement.account.display_account_number],
        ['Period', statement.period_label],
        ['Currency', settings.BANKING_CURRENCY],
        ['Opening Balance', str(statement.opening_balance)],
        ['Total Credits', str(statement.total_credits)],
        ['Total Debits', str(statement.total_debits)],
        ['Closing Balance', str(statement.closing_balance)],
    ]


def render_statement_xlsx(statement: BankStatement) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = 'Statement'

    sheet.append([f'{statement.account} Statement'])
    sheet['A1'].font = Font(bold=True, size=14)
    for label, value in _summary_rows(statement):
        sheet.append([label, value])
    sheet.append([])

    sheet.append(LINE_HEADERS)
    header_row = sheet.max_row
    for cell in sheet[header_row]:
        cell.font = Font(bold=True, color='FFFFFF')
        cell.fill = PatternFill('solid', fgColor='1F4E78')
        cell.alignment = Alignment(horizontal='center')

    for line in statement.lines:
        sheet.append([
            line['date'][:10],
            line['type_display'],
            line['description'],
            float(Decimal(line['signed_amount'])),
            float(Decimal(line['balance_after'])),
        ])
        for cell in sheet[sheet.max_row][3:5]:
            cell.number_format = '#,##0.00'

    for index, header in enumerate(LINE_HEADERS, start=1):
        width = max(len(header) + 6, 14)
        if header == 'Description':
            width = 40
        sheet.column_dimensions[get_column_letter(index)].width = width

    output = BytesIO()
    workbook.save(output)
    return output.getvalue()


def render_statement_csv(statement: BankStatement) -> bytes:
    output = StringIO()
    writer = csv.writer(output)
    for row in _summary_rows(statement):
        writer.writerow(row)
    writer.writerow([])
    writer.writerow(LINE_HEADERS)
    for row in _line_rows(statement):
        writer.writerow(row)
    return output.getvalue().encode('utf-8')


def render_statement_pdf(statement: BankStatement) -> bytes:
    width = 1600
    row_height = 40
    summary_height = 34
    title_height = 60

    summary = _summary_rows(statement)
    rows = _line_rows(statement) or [['', 'No transactions in this period', '', '', '']]
    height = title_height + len(summary) * summary_height + 30 + row_height * (len(rows) + 1) + 40

    image = Image.new('RGB', (width, height), 'white')
    draw = ImageDraw.Draw(image)
    draw.text((20, 20), f'{statement.account} Statement', fill='black')

    y = title_height
    for label, value in summary:
        draw.text((20, y), f'{label}:', fill='black')
        draw.text((260, y), str(value), fill='black')
        y += summary_height
    y += 30

    col_widths = [200, 220, 660, 220, 220]
    x = 20
    for header, col_width in zip(LINE_HEADERS, col_widths):
        draw.rectangle((x, y, x + col_width, y + row_height), outline='black', fill='#dfe7f1')
        draw.text((x + 6, y + 12), header, fill='black')
        x += col_width
    y += row_height

    for row in rows:
        x = 20
        for value, col_width in zip(row, col_widths):
            draw.rectangle((x, y, x + col_width, y + row_height), outline='black')
            text = str(value)
            if len(text) > 60:
                text = text[:57] + '...'
            draw.text((x + 6, y + 12), text, fill='black')
            x += col_width
        y += row_height

    output = BytesIO()
    image.save(output, format='PDF')
    return output.getvalue()


RENDERERS = {
    EXPORT_XLSX: render_statement_xlsx,
    EXPORT_CSV: render_statement_csv,
    EXPORT_PDF: render_statement_pdf,
}


def export_statement(statement: BankStatement, export_format=EXPORT_XLSX):
    export_format = (export_format or EXPORT_XLSX).lower()
    renderer = RENDERERS.get(export_format)
    if renderer is None:
        raise ValidationError('Unsupported export format.', code='invalid_export')
    return renderer(statement), EXPORT_CONTENT_TYPES[export_format], statement.filename(export_format)
