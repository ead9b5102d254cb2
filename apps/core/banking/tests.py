import threading
from datetime import date, datetime
from decimal import Decimal
from io import BytesIO, StringIO
from unittest import mock

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.db import OperationalError, connection
from django.test import TestCase, TransactionTestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from openpyxl import load_workbook

from apps.core.academics.models import Enrollment, SchoolClass
from apps.core.students.models import Student
from apps.core.users.models import AuditLog

from .exceptions import (
    AccessDenied,
    AccountMismatch,
    AccountNotFound,
    AdjustmentNotFound,
    ConcurrencyConflict,
    InsufficientFunds,
    InvalidAmount,
    InvalidPeriod,
    LockTimeout,
    PeriodNotElapsed,
)
from .models import BankAccount, BankStatement, BankTransaction, RecurringAdjustment
from .services import (
    adjust_funds,
    credit,
    debit,
    get_accounts,
    list_recurring_adjustments,
    query_transactions,
    reconcile_accounts,
    replay_balance,
    retry_on_contention,
    run_due_adjustments,
    setup_accounts,
    stop_recurring_adjustment,
    transfer_funds,
    validate_amount,
)
from .statements import (
    export_statement,
    generate_monthly_statements,
    generate_statement,
    get_teacher_statement,
    list_available_statements,
    request_statement,
    teacher_list_available_statements,
    teacher_request_statement,
)


def aware(*args):
    return timezone.make_aware(datetime(*args))


class BankingBaseTestCase(TestCase):
    def setUp(self):
        user_model = get_user_model()

        self.teacher = user_model.objects.create_user(
            username='bank_teacher',
            password='pass12345',
            role='teacher',
        )
        self.student_user = user_model.objects.create_user(
            username='bank_student',
            password='pass12345',
            role='student',
            email='riya@school.example.com',
        )
        self.student = Student.objects.create(
            user=self.student_user,
            first_name='Riya',
            last_name='Shah',
            school_email='riya@school.example.com',
        )
        self.other_student = Student.objects.create(first_name='Aman', last_name='Verma')

        self.school_class = SchoolClass.objects.create(teacher=self.teacher, name='Economics', code='ECO-1')
        Enrollment.objects.create(school_class=self.school_class, student=self.student)

        self.checking, self.savings = setup_accounts(student=self.student)

    def fund(self, account, amount, created_at=None):
        return credit(
            account_id=account.pk,
            amount=amount,
            transaction_type=BankTransaction.TYPE_DEPOSIT,
            description='Starting balance',
            created_at=created_at,
        )

    def balance(self, account):
        return BankAccount.objects.get(pk=account.pk).balance


class AccountSetupTests(BankingBaseTestCase):
    def test_setup_creates_checking_and_savings(self):
        self.assertEqual(self.checking.account_type, BankAccount.TYPE_CHECKING)
        self.assertEqual(self.savings.account_type, BankAccount.TYPE_SAVINGS)
        self.assertEqual(len(self.checking.account_number), 8)
        self.assertTrue(self.checking.account_number.isdigit())
        self.assertTrue(self.checking.display_account_number.startswith('CH'))
        self.assertTrue(self.savings.display_account_number.startswith('SV'))
        self.assertEqual(self.checking.balance, Decimal('0.00'))

    def test_setup_is_idempotent(self):
        again = setup_accounts(student=self.student)
        self.assertEqual([account.pk for account in again], [self.checking.pk, self.savings.pk])
        self.assertEqual(BankAccount.objects.for_student(self.student).count(), 2)

    def test_get_accounts_creates_missing_accounts_lazily(self):
        self.assertFalse(BankAccount.objects.for_student(self.other_student).exists())
        accounts = get_accounts(student=self.other_student)
        self.assertEqual(
            [account.account_type for account in accounts],
            [BankAccount.TYPE_CHECKING, BankAccount.TYPE_SAVINGS],
        )

    def test_accounts_cannot_be_deleted(self):
        with self.assertRaises(ValidationError):
            self.checking.delete()


class LedgerTests(BankingBaseTestCase):
    def test_credit_updates_balance_and_records_transaction(self):
        row = self.fund(self.checking, '25.50')
        account = BankAccount.objects.get(pk=self.checking.pk)
        self.assertEqual(account.balance, Decimal('25.50'))
        self.assertEqual(account.version, 1)
        self.assertEqual(row.balance_after, Decimal('25.50'))
        self.assertEqual(row.transaction_type, BankTransaction.TYPE_DEPOSIT)

    def test_debit_more_than_balance_is_rejected_without_side_effects(self):
        self.fund(self.checking, '10.00')
        with self.assertRaises(InsufficientFunds):
            debit(account_id=self.checking.pk, amount='10.01', description='Snack')
        self.assertEqual(self.balance(self.checking), Decimal('10.00'))
        self.assertEqual(BankTransaction.objects.filter(account=self.checking).count(), 1)

    def test_invalid_amounts_are_rejected(self):
        for value in (None, 0, '-5', 'abc', 'NaN', 'Infinity', '1.005', True):
            with self.subTest(value=value):
                with self.assertRaises(InvalidAmount):
                    validate_amount(value)
        with self.assertRaises(InvalidAmount):
            credit(account_id=self.checking.pk, amount='0')
        self.assertEqual(validate_amount('12.5'), Decimal('12.50'))

    def test_credit_rejects_debit_types(self):
        with self.assertRaises(ValidationError):
            credit(account_id=self.checking.pk, amount='5', transaction_type=BankTransaction.TYPE_WITHDRAWAL)

    def test_unknown_account_raises_account_not_found(self):
        with self.assertRaises(AccountNotFound):
            credit(account_id=999999, amount='5')

    def test_transactions_are_immutable(self):
        row = self.fund(self.checking, '5.00')
        row.description = 'Edited'
        with self.assertRaises(ValidationError):
            row.save()
        with self.assertRaises(ValidationError):
            row.delete()

    def test_query_transactions_returns_most_recent_first(self):
        first = self.fund(self.checking, '1.00', created_at=aware(2024, 1, 5, 9))
        second = self.fund(self.checking, '2.00', created_at=aware(2024, 2, 5, 9))
        third = self.fund(self.checking, '3.00', created_at=aware(2024, 3, 5, 9))

        rows = list(query_transactions(account=self.checking))
        self.assertEqual([row.pk for row in rows], [third.pk, second.pk, first.pk])

        window = list(query_transactions(account=self.checking, start=aware(2024, 2, 1), end=aware(2024, 3, 1)))
        self.assertEqual([row.pk for row in window], [second.pk])


class TransferTests(BankingBaseTestCase):
    def test_transfer_moves_funds_and_links_pair(self):
        self.fund(self.checking, '100.00')
        self.fund(self.savings, '50.00')

        result = transfer_funds(
            student=self.student,
            from_account_id=self.checking.pk,
            to_account_id=self.savings.pk,
            amount='30.00',
            created_by=self.student_user,
        )

        self.assertEqual(self.balance(self.checking), Decimal('70.00'))
        self.assertEqual(self.balance(self.savings), Decimal('80.00'))

        out_tx = BankTransaction.objects.get(pk=result['out_transaction'].pk)
        in_tx = BankTransaction.objects.get(pk=result['in_transaction'].pk)
        self.assertEqual(out_tx.transaction_type, BankTransaction.TYPE_TRANSFER_OUT)
        self.assertEqual(in_tx.transaction_type, BankTransaction.TYPE_TRANSFER_IN)
        self.assertEqual(out_tx.amount, Decimal('30.00'))
        self.assertEqual(in_tx.amount, Decimal('30.00'))
        self.assertEqual(out_tx.related_transaction_id, in_tx.pk)
        self.assertEqual(in_tx.related_transaction_id, out_tx.pk)
        self.assertEqual(out_tx.created_at, in_tx.created_at)
        self.assertEqual(out_tx.description, 'Transfer from Checking to Savings')

    def test_overdraft_transfer_leaves_balances_unchanged(self):
        self.fund(self.checking, '50.00')
        with self.assertRaises(InsufficientFunds):
            transfer_funds(
                student=self.student,
                from_account_id=self.checking.pk,
                to_account_id=self.savings.pk,
                amount='1000000.00',
            )
        self.assertEqual(self.balance(self.checking), Decimal('50.00'))
        self.assertEqual(self.balance(self.savings), Decimal('0.00'))
        self.assertFalse(
            BankTransaction.objects.filter(
                transaction_type__in=[BankTransaction.TYPE_TRANSFER_OUT, BankTransaction.TYPE_TRANSFER_IN]
            ).exists()
        )

    def test_transfer_to_same_account_is_rejected(self):
        self.fund(self.checking, '10.00')
        with self.assertRaises(AccountMismatch):
            transfer_funds(
                student=self.student,
                from_account_id=self.checking.pk,
                to_account_id=self.checking.pk,
                amount='5.00',
            )

    def test_transfer_to_another_students_account_is_rejected(self):
        self.fund(self.checking, '10.00')
        other_checking, _other_savings = setup_accounts(student=self.other_student)
        with self.assertRaises(AccountMismatch):
            transfer_funds(
                student=self.student,
                from_account_id=self.checking.pk,
                to_account_id=other_checking.pk,
                amount='5.00',
            )
        self.assertEqual(self.balance(self.checking), Decimal('10.00'))
        self.assertEqual(self.balance(other_checking), Decimal('0.00'))

    def test_transfer_with_unknown_account_raises_not_found(self):
        with self.assertRaises(AccountNotFound):
            transfer_funds(
                student=self.student,
                from_account_id=self.checking.pk,
                to_account_id=999999,
                amount='5.00',
            )

    def test_repeated_transfers_stop_when_funds_run_out(self):
        self.fund(self.checking, '30.00')
        succeeded = failed = 0
        for _ in range(5):
            try:
                transfer_funds(
                    student=self.student,
                    from_account_id=self.checking.pk,
                    to_account_id=self.savings.pk,
                    amount='10.00',
                )
            except InsufficientFunds:
                failed += 1
            else:
                succeeded += 1

        self.assertEqual((succeeded, failed), (3, 2))
        self.assertEqual(self.balance(self.checking), Decimal('0.00'))
        self.assertEqual(self.balance(self.savings), Decimal('30.00'))

    def test_replaying_the_log_reconstructs_balances(self):
        self.fund(self.checking, '100.00')
        transfer_funds(
            student=self.student,
            from_account_id=self.checking.pk,
            to_account_id=self.savings.pk,
            amount='45.25',
        )
        debit(account_id=self.savings.pk, amount='5.25', description='Lunch')

        self.assertEqual(replay_balance(self.checking), self.balance(self.checking))
        self.assertEqual(replay_balance(self.savings), self.balance(self.savings))
        self.assertEqual(reconcile_accounts(), [])

    def test_reconcile_reports_tampered_balance(self):
        self.fund(self.checking, '20.00')
        BankAccount.objects.filter(pk=self.checking.pk).update(balance=Decimal('25.00'))

        mismatches = reconcile_accounts()
        self.assertEqual(len(mismatches), 1)
        self.assertEqual(mismatches[0]['account_id'], self.checking.pk)
        self.assertEqual(mismatches[0]['replayed_balance'], Decimal('20.00'))


class AdjustFundsTests(BankingBaseTestCase):
    def test_teacher_adds_funds_to_enrolled_student(self):
        results = adjust_funds(
            teacher=self.teacher,
            student_ids=[self.student.pk],
            account_type=BankAccount.TYPE_CHECKING,
            amount='15.00',
        )
        self.assertEqual(results[0]['success'], True)
        self.assertEqual(self.balance(self.checking), Decimal('15.00'))
        row = BankTransaction.objects.get(account=self.checking)
        self.assertEqual(row.created_by, self.teacher)
        self.assertEqual(row.transaction_type, BankTransaction.TYPE_DEPOSIT)

    def test_results_report_each_student_separately(self):
        self.fund(self.checking, '5.00')
        results = adjust_funds(
            teacher=self.teacher,
            student_ids=[self.student.pk, self.other_student.pk, 424242],
            account_type=BankAccount.TYPE_CHECKING,
            amount='10.00',
            direction='remove',
        )
        codes = {row['student_id']: row.get('code') for row in results}
        self.assertEqual(codes[self.student.pk], 'insufficient_funds')
        self.assertEqual(codes[self.other_student.pk], 'access_denied')
        self.assertEqual(codes[424242], 'student_not_found')
        self.assertEqual(self.balance(self.checking), Decimal('5.00'))


class RetryTests(TestCase):
    def _outside_atomic(self):
        return mock.patch('apps.core.banking.services.connection', mock.Mock(in_atomic_block=False))

    @override_settings(BANKING_MAX_RETRIES=3, BANKING_RETRY_BACKOFF_SECONDS=0.01)
    def test_retries_contention_then_succeeds(self):
        calls = []

        @retry_on_contention
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise LockTimeout()
            return 'done'

        with self._outside_atomic(), mock.patch('apps.core.banking.services.time.sleep') as sleep:
            self.assertEqual(flaky(), 'done')
        self.assertEqual(len(calls), 3)
        self.assertEqual([call.args[0] for call in sleep.call_args_list], [0.01, 0.02])

    @override_settings(BANKING_MAX_RETRIES=2, BANKING_RETRY_BACKOFF_SECONDS=0)
    def test_gives_up_after_max_retries(self):
        calls = []

        @retry_on_contention
        def always_conflicts():
            calls.append(1)
            raise ConcurrencyConflict()

        with self._outside_atomic(), mock.patch('apps.core.banking.services.time.sleep'):
            with self.assertRaises(ConcurrencyConflict):
                always_conflicts()
        self.assertEqual(len(calls), 3)

    def test_database_lock_errors_become_lock_timeout(self):
        @retry_on_contention
        def locked():
            raise OperationalError('database is locked')

        with self.assertRaises(LockTimeout) as ctx:
            locked()
        self.assertTrue(ctx.exception.retryable)

    def test_no_retry_inside_enclosing_transaction(self):
        calls = []

        @retry_on_contention
        def conflicted():
            calls.append(1)
            raise ConcurrencyConflict()

        self.assertTrue(connection.in_atomic_block)
        with self.assertRaises(ConcurrencyConflict):
            conflicted()
        self.assertEqual(len(calls), 1)

    def test_unrelated_database_errors_propagate(self):
        @retry_on_contention
        def broken():
            raise OperationalError('no such table: missing')

        with self.assertRaises(OperationalError):
            broken()

    def test_shared_cache_table_locks_become_lock_timeout(self):
        @retry_on_contention
        def locked():
            raise OperationalError('database table is locked: banking_bankaccount')

        with self.assertRaises(LockTimeout):
            locked()

    def test_other_errors_mentioning_locks_propagate(self):
        @retry_on_contention
        def broken():
            raise OperationalError('unable to open lock file')

        with self.assertRaises(OperationalError) as ctx:
            broken()
        self.assertNotIsInstance(ctx.exception, LockTimeout)


class StatementTests(BankingBaseTestCase):
    def setUp(self):
        super().setUp()
        self.fund(self.checking, '100.00', created_at=aware(2024, 3, 5, 10))
        debit(
            account_id=self.checking.pk,
            amount='30.00',
            description='Rent',
            created_at=aware(2024, 3, 20, 10),
        )
        self.fund(self.checking, '10.00', created_at=aware(2024, 4, 2, 10))

    def test_generate_statement_snapshots_the_month(self):
        statement = generate_statement(account_id=self.checking.pk, month=3, year=2024)

        self.assertEqual(statement.opening_balance, Decimal('0.00'))
        self.assertEqual(statement.closing_balance, Decimal('70.00'))
        self.assertEqual(statement.total_credits, Decimal('100.00'))
        self.assertEqual(statement.total_debits, Decimal('30.00'))
        self.assertEqual(statement.transaction_count, 2)
        self.assertEqual([line['amount'] for line in statement.lines], ['100.00', '30.00'])
        self.assertEqual(statement.lines[1]['signed_amount'], '-30.00')

    def test_next_statement_opens_with_previous_closing_balance(self):
        generate_statement(account_id=self.checking.pk, month=3, year=2024)
        april = generate_statement(account_id=self.checking.pk, month=4, year=2024)
        self.assertEqual(april.opening_balance, Decimal('70.00'))
        self.assertEqual(april.closing_balance, Decimal('80.00'))

    def test_generate_statement_is_idempotent(self):
        first = generate_statement(account_id=self.checking.pk, month=3, year=2024)
        self.fund(self.checking, '999.00', created_at=aware(2024, 3, 28, 10))
        second = generate_statement(account_id=self.checking.pk, month=3, year=2024)

        self.assertEqual(first.pk, second.pk)
        self.assertEqual(second.closing_balance, Decimal('70.00'))
        self.assertEqual(second.generated_at, first.generated_at)
        self.assertEqual(BankStatement.objects.filter(account=self.checking).count(), 1)

    def test_current_month_is_not_available(self):
        today = timezone.localdate()
        with self.assertRaises(PeriodNotElapsed):
            generate_statement(account_id=self.checking.pk, month=today.month, year=today.year)

    def test_invalid_period_and_unknown_account(self):
        with self.assertRaises(InvalidPeriod):
            generate_statement(account_id=self.checking.pk, month=13, year=2024)
        with self.assertRaises(AccountNotFound):
            generate_statement(account_id=999999, month=3, year=2024)

    def test_statements_are_immutable(self):
        statement = generate_statement(account_id=self.checking.pk, month=3, year=2024)
        with self.assertRaises(ValidationError):
            statement.save()

    def test_request_statement_checks_ownership(self):
        with self.assertRaises(AccessDenied):
            request_statement(student=self.other_student, account_id=self.checking.pk, month=3, year=2024)

    def test_request_statement_rejects_months_before_the_account_existed(self):
        BankAccount.objects.filter(pk=self.checking.pk).update(created_at=aware(2024, 2, 10))

        with self.assertRaises(InvalidPeriod):
            request_statement(student=self.student, account_id=self.checking.pk, month=1, year=2024)
        self.assertFalse(BankStatement.objects.exists())

        statement = request_statement(student=self.student, account_id=self.checking.pk, month=2, year=2024)
        self.assertEqual(statement.period_label, 'February 2024')

    def test_batch_month_without_year_uses_latest_elapsed_month(self):
        march = generate_monthly_statements(month=3, now=aware(2024, 4, 10, 6))
        self.assertEqual((march['month'], march['year']), (3, 2024))
        self.assertEqual(march['success'], 1)

        december = generate_monthly_statements(month=12, now=aware(2024, 4, 10, 6))
        self.assertEqual((december['month'], december['year']), (12, 2023))
        self.assertEqual(december['failed'], 0)
        self.assertEqual(december['skipped'], 2)

    def test_batch_rejects_invalid_or_unfinished_periods(self):
        with self.assertRaises(InvalidPeriod):
            generate_monthly_statements(month=0, year=2024, now=aware(2024, 4, 10, 6))
        with self.assertRaises(PeriodNotElapsed):
            generate_monthly_statements(month=4, year=2024, now=aware(2024, 4, 10, 6))
        self.assertFalse(BankStatement.objects.exists())

    def test_list_available_statements(self):
        BankAccount.objects.filter(pk=self.checking.pk).update(created_at=aware(2024, 2, 10))
        generate_statement(account_id=self.checking.pk, month=3, year=2024)

        months = list_available_statements(
            student=self.student,
            account_id=self.checking.pk,
            year=2024,
            now=aware(2024, 6, 15),
        )
        available = [row['month'] for row in months if row['available']]
        self.assertEqual(available, [2, 3, 4, 5])
        march = months[2]
        self.assertIsNotNone(march['statement_id'])
        self.assertIsNone(months[3]['statement_id'])

    def test_monthly_batch_skips_accounts_without_activity(self):
        summary = generate_monthly_statements(now=aware(2024, 4, 27, 6))
        self.assertTrue(summary['ran'])
        self.assertEqual((summary['month'], summary['year']), (3, 2024))
        self.assertEqual(summary['total'], 2)
        self.assertEqual(summary['success'], 1)
        self.assertEqual(summary['skipped'], 1)
        self.assertEqual(summary['failed'], 0)
        self.assertTrue(BankStatement.objects.filter(account=self.checking, month=3, year=2024).exists())

    def test_monthly_batch_waits_for_statement_day(self):
        summary = generate_monthly_statements(now=aware(2024, 4, 12, 6))
        self.assertFalse(summary['ran'])
        self.assertFalse(BankStatement.objects.exists())

    def test_generate_statements_command(self):
        output = StringIO()
        call_command('generate_statements', '--month', '3', '--year', '2024', stdout=output)
        self.assertIn('1 generated', output.getvalue())
        self.assertTrue(BankStatement.objects.filter(account=self.checking, month=3, year=2024).exists())

    def test_exports(self):
        statement = generate_statement(account_id=self.checking.pk, month=3, year=2024)

        content, content_type, filename = export_statement(statement, 'xlsx')
        self.assertEqual(filename, 'March_2024_statement.xlsx')
        sheet = load_workbook(BytesIO(content)).active
        values = [cell for row in sheet.iter_rows(values_only=True) for cell in row]
        self.assertIn('Opening Balance', values)
        self.assertIn('Rent', values)

        content, content_type, filename = export_statement(statement, 'csv')
        self.assertEqual(content_type, 'text/csv')
        self.assertIn(b'Closing Balance,70.00', content)

        content, _content_type, filename = export_statement(statement, 'pdf')
        self.assertTrue(content.startswith(b'%PDF'))
        self.assertEqual(filename, 'March_2024_statement.pdf')

        with self.assertRaises(ValidationError):
            export_statement(statement, 'docx')


class BankingViewTests(BankingBaseTestCase):
    def test_student_transfer_returns_linked_pair(self):
        self.fund(self.checking, '100.00')
        self.client.login(username='bank_student', password='pass12345')

        response = self.client.post(
            reverse('banking_transfer'),
            {'from_account': self.checking.pk, 'to_account': self.savings.pk, 'amount': '30.00'},
        )

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertTrue(payload['success'])
        self.assertEqual(payload['data']['from_account']['balance'], '70.00')
        self.assertEqual(payload['data']['to_account']['balance'], '30.00')
        self.assertTrue(AuditLog.objects.filter(action='banking.transfer').exists())

    def test_transfer_failure_is_typed(self):
        self.client.login(username='bank_student', password='pass12345')
        response = self.client.post(
            reverse('banking_transfer'),
            {'from_account': self.checking.pk, 'to_account': self.savings.pk, 'amount': '5.00'},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['code'], 'insufficient_funds')
        self.assertFalse(response.json()['retryable'])

        response = self.client.post(
            reverse('banking_transfer'),
            {'from_account': self.checking.pk, 'to_account': self.savings.pk, 'amount': '-1'},
        )
        self.assertEqual(response.json()['code'], 'invalid_amount')

    def test_account_list_and_transactions(self):
        self.fund(self.checking, '12.00')
        self.client.login(username='bank_student', password='pass12345')

        accounts = self.client.get(reverse('banking_account_list')).json()['data']
        self.assertEqual([row['account_type'] for row in accounts], ['checking', 'savings'])

        response = self.client.get(reverse('banking_transaction_list'), {'account': self.checking.pk})
        self.assertEqual(response.json()['data'][0]['amount'], '12.00')

    def test_student_cannot_read_other_students_transactions(self):
        other_checking, _other_savings = setup_accounts(student=self.other_student)
        self.client.login(username='bank_student', password='pass12345')
        response = self.client.get(reverse('banking_transaction_list'), {'account': other_checking.pk})
        self.assertEqual(response.status_code, 403)

    def test_teacher_cannot_use_student_endpoints(self):
        self.client.login(username='bank_teacher', password='pass12345')
        response = self.client.get(reverse('banking_account_list'))
        self.assertEqual(response.status_code, 403)

    def test_teacher_adds_funds(self):
        self.client.login(username='bank_teacher', password='pass12345')
        response = self.client.post(
            reverse('banking_teacher_funds_add'),
            {'students': str(self.student.pk), 'account_type': 'savings', 'amount': '8.00'},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.balance(self.savings), Decimal('8.00'))

        response = self.client.get(reverse('banking_teacher_student_accounts', args=[self.student.pk]))
        self.assertEqual(response.json()['data']['accounts'][1]['balance'], '8.00')

    def test_teacher_adjustment_partial_failure_is_multi_status(self):
        self.client.login(username='bank_teacher', password='pass12345')
        response = self.client.post(
            reverse('banking_teacher_funds_add'),
            {'students': f'{self.student.pk},{self.other_student.pk}', 'account_type': 'checking', 'amount': '1.00'},
        )
        self.assertEqual(response.status_code, 207)

    def test_statement_request_and_download(self):
        BankAccount.objects.filter(pk=self.checking.pk).update(created_at=aware(2024, 1, 1))
        self.fund(self.checking, '40.00', created_at=aware(2024, 3, 5, 10))
        self.client.login(username='bank_student', password='pass12345')

        response = self.client.post(
            reverse('banking_statement_request'),
            {'account': self.checking.pk, 'month': 3, 'year': 2024},
        )
        self.assertEqual(response.status_code, 200)
        statement_id = response.json()['data']['id']

        response = self.client.get(reverse('banking_statement_download', args=[statement_id]), {'export': 'csv'})
        self.assertEqual(response.status_code, 200)
        self.assertIn('March_2024_statement.csv', response['Content-Disposition'])

    @override_settings(BANKING_CRON_SECRET='s3cret')
    def test_cron_endpoint_requires_bearer_token(self):
        response = self.client.post(reverse('banking_statement_generate'))
        self.assertEqual(response.status_code, 401)

        response = self.client.post(
            reverse('banking_statement_generate') + '?force=1',
            HTTP_AUTHORIZATION='Bearer s3cret',
        )
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()['data']['ran'])

    @override_settings(BANKING_CRON_SECRET='s3cret')
    def test_cron_endpoint_rejects_non_ascii_token(self):
        response = self.client.post(
            reverse('banking_statement_generate'),
            HTTP_AUTHORIZATION='Bearer \u00e9t\u00e9',
        )
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()['code'], 'unauthenticated')

    def test_cron_endpoint_disabled_without_secret(self):
        with override_settings(BANKING_CRON_SECRET=''):
            response = self.client.post(reverse('banking_statement_generate'), HTTP_AUTHORIZATION='Bearer ')
        self.assertEqual(response.status_code, 503)


class ScheduledAdjustmentTests(BankingBaseTestCase):
    def schedule(self, **overrides):
        options = {
            'teacher': self.teacher,
            'student_ids': [self.student.pk],
            'account_type': BankAccount.TYPE_CHECKING,
            'amount': '5.00',
            'today': date(2024, 1, 31),
        }
        options.update(overrides)
        return adjust_funds(**options)

    def test_future_issue_date_is_scheduled_without_posting(self):
        results = self.schedule(issue_date=date(2024, 2, 10))

        self.assertTrue(results[0]['success'])
        self.assertNotIn('transaction_id', results[0])
        self.assertEqual(results[0]['next_run'], '2024-02-10')
        self.assertEqual(self.balance(self.checking), Decimal('0.00'))

        self.assertEqual(run_due_adjustments(today=date(2024, 2, 9))['due'], 0)
        summary = run_due_adjustments(today=date(2024, 2, 10))
        self.assertEqual((summary['posted'], summary['failed']), (1, 0))
        self.assertEqual(self.balance(self.checking), Decimal('5.00'))

        adjustment = RecurringAdjustment.objects.get(pk=results[0]['adjustment_id'])
        self.assertFalse(adjustment.is_active)
        self.assertEqual(adjustment.occurrences, 1)
        row = BankTransaction.objects.get(account=self.checking)
        self.assertEqual(row.created_by, self.teacher)
        self.assertEqual(row.description, 'Funds added by teacher')

    def test_recurring_adjustment_posts_today_and_catches_up(self):
        results = self.schedule(recurrence=RecurringAdjustment.RECURRENCE_MONTHLY)

        self.assertIn('transaction_id', results[0])
        self.assertEqual(results[0]['next_run'], '2024-02-29')
        self.assertEqual(self.balance(self.checking), Decimal('5.00'))
        self.assertEqual(
            BankTransaction.objects.get(account=self.checking).description,
            'Recurring monthly funds added by teacher',
        )

        summary = run_due_adjustments(today=date(2024, 4, 30))
        self.assertEqual((summary['due'], summary['posted']), (1, 3))
        self.assertEqual(self.balance(self.checking), Decimal('20.00'))

        adjustment = RecurringAdjustment.objects.get(pk=results[0]['adjustment_id'])
        self.assertTrue(adjustment.is_active)
        self.assertEqual(adjustment.occurrences, 4)
        self.assertEqual(adjustment.next_run, date(2024, 5, 31))

        self.assertEqual(run_due_adjustments(today=date(2024, 4, 30))['posted'], 0)

    def test_issue_date_in_the_past_is_rejected(self):
        with self.assertRaises(ValidationError):
            self.schedule(issue_date=date(2024, 1, 30))
        with self.assertRaises(ValidationError):
            self.schedule(recurrence='daily')
        self.assertFalse(RecurringAdjustment.objects.exists())

    def test_failed_occurrence_is_recorded_and_schedule_moves_on(self):
        results = self.schedule(
            direction='remove',
            recurrence=RecurringAdjustment.RECURRENCE_WEEKLY,
            issue_date=date(2024, 2, 1),
        )

        summary = run_due_adjustments(today=date(2024, 2, 1))
        self.assertEqual((summary['posted'], summary['failed']), (0, 1))

        adjustment = RecurringAdjustment.objects.get(pk=results[0]['adjustment_id'])
        self.assertTrue(adjustment.is_active)
        self.assertEqual(adjustment.next_run, date(2024, 2, 8))
        self.assertIn('Insufficient funds', adjustment.last_error)
        self.assertEqual(self.balance(self.checking), Decimal('0.00'))

    def test_schedule_stops_when_student_leaves_the_class(self):
        results = self.schedule(
            recurrence=RecurringAdjustment.RECURRENCE_BIWEEKLY,
            issue_date=date(2024, 2, 1),
        )
        Enrollment.objects.filter(student=self.student).update(enrolled=False)

        summary = run_due_adjustments(today=date(2024, 2, 1))
        self.assertEqual(summary['failed'], 1)
        adjustment = RecurringAdjustment.objects.get(pk=results[0]['adjustment_id'])
        self.assertFalse(adjustment.is_active)
        self.assertEqual(self.balance(self.checking), Decimal('0.00'))

    def test_only_the_scheduling_teacher_can_stop_an_adjustment(self):
        results = self.schedule(recurrence=RecurringAdjustment.RECURRENCE_WEEKLY, issue_date=date(2024, 2, 1))
        adjustment_id = results[0]['adjustment_id']
        other_teacher = get_user_model().objects.create_user(
            username='other_teacher',
            password='pass12345',
            role='teacher',
        )

        self.assertEqual(list(list_recurring_adjustments(teacher=other_teacher)), [])
        with self.assertRaises(AccessDenied):
            stop_recurring_adjustment(teacher=other_teacher, adjustment_id=adjustment_id)
        with self.assertRaises(AdjustmentNotFound):
            stop_recurring_adjustment(teacher=self.teacher, adjustment_id=999999)

        stopped = stop_recurring_adjustment(teacher=self.teacher, adjustment_id=adjustment_id)
        self.assertFalse(stopped.is_active)
        self.assertIsNotNone(stopped.stopped_at)
        self.assertEqual(list(list_recurring_adjustments(teacher=self.teacher)), [])
        self.assertEqual(run_due_adjustments(today=date(2024, 3, 1))['due'], 0)

    def test_run_scheduled_adjustments_command(self):
        self.schedule(issue_date=timezone.localdate(), recurrence=RecurringAdjustment.RECURRENCE_WEEKLY, today=None)
        RecurringAdjustment.objects.update(next_run=timezone.localdate())

        output = StringIO()
        call_command('run_scheduled_adjustments', stdout=output)
        self.assertIn('1 posted', output.getvalue())
        self.assertEqual(self.balance(self.checking), Decimal('10.00'))


class TeacherStatementTests(BankingBaseTestCase):
    def setUp(self):
        super().setUp()
        BankAccount.objects.filter(pk=self.checking.pk).update(created_at=aware(2024, 2, 10))
        self.fund(self.checking, '60.00', created_at=aware(2024, 3, 5, 10))
        self.other_teacher = get_user_model().objects.create_user(
            username='other_teacher',
            password='pass12345',
            role='teacher',
        )

    def test_teacher_lists_and_requests_statements_of_enrolled_student(self):
        months = teacher_list_available_statements(
            teacher=self.teacher,
            account_id=self.checking.pk,
            year=2024,
            now=aware(2024, 5, 2),
        )
        self.assertEqual([row['month'] for row in months if row['available']], [2, 3, 4])

        statement = teacher_request_statement(teacher=self.teacher, account_id=self.checking.pk, month=3, year=2024)
        self.assertEqual(statement.closing_balance, Decimal('60.00'))
        self.assertEqual(get_teacher_statement(teacher=self.teacher, statement_id=statement.pk).pk, statement.pk)

        with self.assertRaises(InvalidPeriod):
            teacher_request_statement(teacher=self.teacher, account_id=self.checking.pk, month=1, year=2024)

    def test_teacher_without_the_student_is_denied(self):
        statement = generate_statement(account_id=self.checking.pk, month=3, year=2024)
        with self.assertRaises(AccessDenied):
            teacher_list_available_statements(teacher=self.other_teacher, account_id=self.checking.pk, year=2024)
        with self.assertRaises(AccessDenied):
            teacher_request_statement(teacher=self.other_teacher, account_id=self.checking.pk, month=3, year=2024)
        with self.assertRaises(AccessDenied):
            get_teacher_statement(teacher=self.other_teacher, statement_id=statement.pk)
        with self.assertRaises(AccountNotFound):
            teacher_request_statement(teacher=self.teacher, account_id=999999, month=3, year=2024)

    def test_teacher_statement_views(self):
        self.client.login(username='bank_teacher', password='pass12345')

        response = self.client.post(
            reverse('banking_teacher_statement_request'),
            {'account': self.checking.pk, 'month': 3, 'year': 2024},
        )
        self.assertEqual(response.status_code, 200)
        statement_id = response.json()['data']['id']

        response = self.client.get(reverse('banking_teacher_statement_available'), {'account': self.checking.pk, 'year': 2024})
        self.assertEqual(response.json()['data'][2]['statement_id'], statement_id)

        response = self.client.get(reverse('banking_teacher_statement_download', args=[statement_id]))
        self.assertEqual(response.status_code, 200)
        self.assertIn('March_2024_statement.xlsx', response['Content-Disposition'])

        self.client.login(username='other_teacher', password='pass12345')
        response = self.client.get(reverse('banking_teacher_statement_download', args=[statement_id]))
        self.assertEqual(response.status_code, 403)

    def test_recurring_views(self):
        self.client.login(username='bank_teacher', password='pass12345')
        response = self.client.post(
            reverse('banking_teacher_funds_add'),
            {
                'students': str(self.student.pk),
                'account_type': 'savings',
                'amount': '3.00',
                'recurrence': 'weekly',
            },
        )
        self.assertEqual(response.status_code, 200)
        adjustment_id = response.json()['data']['results'][0]['adjustment_id']
        self.assertEqual(self.balance(self.savings), Decimal('3.00'))

        rows = self.client.get(reverse('banking_teacher_recurring_list')).json()['data']
        self.assertEqual([row['id'] for row in rows], [adjustment_id])
        self.assertEqual(rows[0]['recurrence'], 'weekly')

        response = self.client.post(reverse('banking_teacher_recurring_stop', args=[adjustment_id]))
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()['data']['is_active'])
        self.assertTrue(AuditLog.objects.filter(action='banking.recurring_stopped').exists())

        response = self.client.post(reverse('banking_teacher_recurring_stop', args=[999999]))
        self.assertEqual(response.status_code, 404)


@override_settings(BANKING_MAX_RETRIES=10, BANKING_RETRY_BACKOFF_SECONDS=0.01)
class ConcurrentTransferTests(TransactionTestCase):
    # Row locks on PostgreSQL; database locks and the version check on SQLite.
    def setUp(self):
        self.student = Student.objects.create(first_name='Kabir')
        self.checking, self.savings = setup_accounts(student=self.student)
        credit(account_id=self.checking.pk, amount='30.00')

    def test_concurrent_transfers_never_overdraw(self):
        outcomes = []
        lock = threading.Lock()

        def worker():
            try:
                transfer_funds(
                    student=self.student,
                    from_account_id=self.checking.pk,
                    to_account_id=self.savings.pk,
                    amount='10.00',
                )
            except InsufficientFunds:
                result = 'insufficient'
            except (LockTimeout, ConcurrencyConflict):
                result = 'contention'
            else:
                result = 'ok'
            finally:
                connection.close()
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sorted(outcomes), ['insufficient'] * 3 + ['ok'] * 3)
        self.assertEqual(BankAccount.objects.get(pk=self.checking.pk).balance, Decimal('0.00'))
        self.assertEqual(BankAccount.objects.get(pk=self.savings.pk).balance, Decimal('30.00'))
        self.assertEqual(
            BankTransaction.objects.filter(transaction_type=BankTransaction.TYPE_TRANSFER_OUT).count(),
            3,
        )
