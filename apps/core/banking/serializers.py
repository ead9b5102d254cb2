from django.utils import timezone


def serialize_account(account):
    return {
        'id': account.pk,
        'account_type': account.account_type,
        'account_type_display': account.get_account_type_display(),
        'account_number': account.account_number,
        'display_account_number': account.display_account_number,
        'balance': str(account.balance),
    }


def serialize_transaction(row):
    return {
        'id': row.pk,
        'account_id': row.account_id,
        'transaction_type': row.transaction_type,
        'transaction_type_display': row.get_transaction_type_display(),
        'amount': str(row.amount),
        'signed_amount': str(row.signed_amount),
        'balance_after': str(row.balance_after),
        'description': row.description,
        'related_transaction_id': row.related_transaction_id,
        'created_at': timezone.localtime(row.created_at).isoformat(),
    }


def serialize_statement(statement, include_lines=False):
    data = {
        'id': statement.pk,
        'account_id': statement.account_id,
        'month': statement.month,
        'year': statement.year,
        'period': statement.period_label,
        'opening_balance': str(statement.opening_balance),
        'closing_balance': str(statement.closing_balance),
        'total_credits': str(statement.total_credits),
        'total_debits': str(statement.total_debits),
        'transaction_count': statement.transaction_count,
        'generated_at': timezone.localtime(statement.generated_at).isoformat(),
    }
    if include_lines:
        data['lines'] = statement.lines
    return data


def serialize_recurring_adjustment(adjustment):
    return {
        'id': adjustment.pk,
        'student_id': adjustment.student_id,
        'student_name': adjustment.student.full_name,
        'account_type': adjustment.account_type,
        'amount': str(adjustment.amount),
        'direction': adjustment.direction,
        'description': adjustment.description,
        'recurrence': adjustment.recurrence,
        'start_date': adjustment.start_date.isoformat(),
        'next_run': adjustment.next_run.isoformat(),
        'occurrences': adjustment.occurrences,
        'last_error': adjustment.last_error,
        'is_active': adjustment.is_active,
    }
