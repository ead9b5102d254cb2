from datetime import date, timedelta
from decimal import Decimal
from io import StringIO

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone

from apps.core.academics.models import Enrollment, SchoolClass
from apps.core.banking.exceptions import (
    AccessDenied,
    BillClosed,
    BillNotFound,
    InsufficientFunds,
    OverpaymentNotAllowed,
)
from apps.core.banking.models import BankAccount, BankTransaction
from apps.core.banking.services import credit, setup_accounts
from apps.core.students.models import Student

from .models import Bill, BillPayment, StudentBill
from .services import (
    assign_bill_to_classes,
    cancel_bill,
    compute_bill_status,
    create_bill,
    delete_bill,
    exclude_students_from_bill,
    include_students_in_bill,
    next_due_dates,
    pay_bill,
    student_bill_status,
    student_bills,
    suggested_payment,
    update_bill,
)


class BillsBaseTestCase(TestCase):
    def setUp(self):
        user_model = get_user_model()
        self.today = timezone.localdate()

        self.teacher = user_model.objects.create_user(
            username='bills_teacher',
            password='pass12345',
            role='teacher',
        )
        self.other_teacher = user_model.objects.create_user(
            username='bills_other_teacher',
            password='pass12345',
            role='teacher',
        )
        self.student_user = user_model.objects.create_user(
            username='bills_student',
            password='pass12345',
            role='student',
        )
        self.student = Student.objects.create(user=self.student_user, first_name='Meera', last_name='Iyer')
        self.classmate = Student.objects.create(first_name='Dev', last_name='Rao')
        self.outsider = Student.objects.create(first_name='Zoya', last_name='Khan')

        self.school_class = SchoolClass.objects.create(teacher=self.teacher, name='Life Skills', code='LS-1')
        self.other_class = SchoolClass.objects.create(teacher=self.other_teacher, name='History', code='HIS-1')
        Enrollment.objects.create(school_class=self.school_class, student=self.student)

        self.checking, self.savings = setup_accounts(student=self.student)
        credit(account_id=self.checking.pk, amount='300.00', description='Starting balance')

        self.bill = create_bill(
            teacher=self.teacher,
            title='Rent',
            emoji='🏠',
            amount='200.00',
            due_date=self.today + timedelta(days=10),
            frequency=Bill.FREQUENCY_MONTHLY,
            class_ids=[self.school_class.pk],
        )

    def pay(self, amount, student=None, account=None, bill=None):
        return pay_bill(
            student=student or self.student,
            bill_id=(bill or self.bill).pk,
            account_id=(account or self.checking).pk,
            amount=amount,
        )


class BillPaymentTests(BillsBaseTestCase):
    def test_partial_payments_settle_bill_and_block_overpayment(self):
        first = self.pay('75.00')
        self.assertEqual(first.student_bill.remaining, Decimal('125.00'))
        self.assertEqual(Bill.objects.get(pk=self.bill.pk).status, Bill.STATUS_PARTIAL)

        self.pay('125.00')
        student_bill = StudentBill.objects.get(bill=self.bill, student=self.student)
        self.assertTrue(student_bill.is_paid)
        self.assertIsNotNone(student_bill.paid_at)
        self.assertEqual(student_bill.paid_amount, Decimal('200.00'))
        self.assertEqual(Bill.objects.get(pk=self.bill.pk).status, Bill.STATUS_PAID)
        self.assertEqual(BillPayment.objects.filter(bill=self.bill, student=self.student).count(), 2)

        with self.assertRaises(OverpaymentNotAllowed):
            self.pay('0.01')
        self.assertEqual(BankAccount.objects.get(pk=self.checking.pk).balance, Decimal('100.00'))

    def test_payment_debits_account_with_withdrawal(self):
        payment = self.pay('50.00')
        row = BankTransaction.objects.get(pk=payment.transaction_id)
        self.assertEqual(row.transaction_type, BankTransaction.TYPE_WITHDRAWAL)
        self.assertEqual(row.description, 'Payment for Rent')
        self.assertEqual(row.amount, Decimal('50.00'))
        self.assertEqual(payment.paid_at, row.created_at)

    def test_payment_larger_than_remaining_is_rejected(self):
        with self.assertRaises(OverpaymentNotAllowed):
            self.pay('200.01')
        self.assertFalse(BillPayment.objects.exists())

    def test_insufficient_funds_leaves_bill_untouched(self):
        with self.assertRaises(InsufficientFunds):
            self.pay('10.00', account=self.savings)
        student_bill = StudentBill.objects.get(bill=self.bill, student=self.student)
        self.assertEqual(student_bill.paid_amount, Decimal('0.00'))
        self.assertFalse(BillPayment.objects.exists())

    def test_student_outside_assigned_classes_cannot_pay(self):
        outsider_checking, _savings = setup_accounts(student=self.outsider)
        credit(account_id=outsider_checking.pk, amount='50.00')
        with self.assertRaises(AccessDenied):
            self.pay('10.00', student=self.outsider, account=outsider_checking)

    def test_paying_from_someone_elses_account_is_denied(self):
        Enrollment.objects.create(school_class=self.school_class, student=self.classmate)
        classmate_checking, _savings = setup_accounts(student=self.classmate)
        with self.assertRaises(AccessDenied):
            self.pay('10.00', account=classmate_checking)

    def test_cancelled_and_missing_bills(self):
        cancel_bill(teacher=self.teacher, bill_id=self.bill.pk)
        with self.assertRaises(BillClosed):
            self.pay('10.00')
        with self.assertRaises(BillNotFound):
            pay_bill(student=self.student, bill_id=999999, account_id=self.checking.pk, amount='1.00')

    def test_excluded_student_cannot_pay(self):
        exclude_students_from_bill(teacher=self.teacher, bill_id=self.bill.pk, student_ids=[self.student.pk])
        with self.assertRaises(AccessDenied):
            self.pay('10.00')

        include_students_in_bill(teacher=self.teacher, bill_id=self.bill.pk, student_ids=[self.student.pk])
        self.pay('10.00')

    def test_payments_are_immutable(self):
        payment = self.pay('20.00')
        with self.assertRaises(ValidationError):
            payment.save()
        with self.assertRaises(ValidationError):
            payment.delete()


class BillStatusTests(BillsBaseTestCase):
    def test_status_follows_due_date_and_payments(self):
        self.assertEqual(compute_bill_status(self.bill, today=self.today), Bill.STATUS_ACTIVE)
        self.assertEqual(compute_bill_status(self.bill, today=self.bill.due_date), Bill.STATUS_DUE)
        late_day = self.bill.due_date + timedelta(days=1)
        self.assertEqual(compute_bill_status(self.bill, today=late_day), Bill.STATUS_LATE)

        self.pay('20.00')
        self.bill.refresh_from_db()
        self.assertEqual(compute_bill_status(self.bill, today=self.today), Bill.STATUS_PARTIAL)
        self.assertEqual(compute_bill_status(self.bill, today=late_day), Bill.STATUS_LATE)

    def test_bill_is_paid_only_when_every_student_paid(self):
        Enrollment.objects.create(school_class=self.school_class, student=self.classmate)
        self.pay('200.00')
        self.assertEqual(compute_bill_status(self.bill, today=self.today), Bill.STATUS_PARTIAL)

        exclude_students_from_bill(teacher=self.teacher, bill_id=self.bill.pk, student_ids=[self.classmate.pk])
        self.assertEqual(compute_bill_status(self.bill, today=self.today), Bill.STATUS_PAID)

    def test_cancelled_status_wins(self):
        cancel_bill(teacher=self.teacher, bill_id=self.bill.pk)
        self.bill.refresh_from_db()
        self.assertEqual(compute_bill_status(self.bill), Bill.STATUS_CANCELLED)

    def test_student_status(self):
        student_bill = StudentBill.objects.get(bill=self.bill, student=self.student)
        self.assertEqual(student_bill_status(student_bill, today=self.today), Bill.STATUS_ACTIVE)
        self.pay('200.00')
        student_bill.refresh_from_db()
        self.assertEqual(student_bill_status(student_bill, today=self.today), Bill.STATUS_PAID)

    def test_update_bill_statuses_command(self):
        Bill.objects.filter(pk=self.bill.pk).update(due_date=self.today - timedelta(days=2))
        output = StringIO()
        call_command('update_bill_statuses', stdout=output)
        self.assertEqual(Bill.objects.get(pk=self.bill.pk).status, Bill.STATUS_LATE)
        self.assertIn('Updated 1', output.getvalue())


class RecurringDateTests(BillsBaseTestCase):
    def _bill(self, due_date, frequency):
        return Bill(creator=self.teacher, title='Phone', amount=Decimal('10.00'), due_date=due_date, frequency=frequency)

    def test_once_has_single_date(self):
        self.assertEqual(next_due_dates(self._bill(date(2024, 1, 31), Bill.FREQUENCY_ONCE)), [date(2024, 1, 31)])

    def test_monthly_clamps_to_month_end(self):
        dates = next_due_dates(self._bill(date(2024, 1, 31), Bill.FREQUENCY_MONTHLY), count=3)
        self.assertEqual(dates, [date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)])

    def test_quarterly_and_biweekly(self):
        quarterly = next_due_dates(self._bill(date(2023, 11, 30), Bill.FREQUENCY_QUARTERLY), count=2)
        self.assertEqual(quarterly, [date(2023, 11, 30), date(2024, 2, 29), date(2024, 5, 30)])

        biweekly = next_due_dates(self._bill(date(2024, 1, 1), Bill.FREQUENCY_BIWEEKLY), count=2)
        self.assertEqual(biweekly, [date(2024, 1, 1), date(2024, 1, 15), date(2024, 1, 29)])

    def test_yearly_leap_day(self):
        dates = next_due_dates(self._bill(date(2024, 2, 29), Bill.FREQUENCY_YEARLY), count=4)
        self.assertEqual(dates[1], date(2025, 2, 28))
        self.assertEqual(dates[4], date(2028, 2, 29))


class BillMaintenanceTests(BillsBaseTestCase):
    def test_create_bill_materializes_student_rows(self):
        self.assertTrue(StudentBill.objects.filter(bill=self.bill, student=self.student).exists())
        self.assertEqual(StudentBill.objects.get(bill=self.bill, student=self.student).amount_due, Decimal('200.00'))

    def test_cannot_assign_another_teachers_class(self):
        with self.assertRaises(AccessDenied):
            assign_bill_to_classes(teacher=self.teacher, bill_id=self.bill.pk, class_ids=[self.other_class.pk])

    def test_other_teacher_cannot_see_bill(self):
        with self.assertRaises(BillNotFound):
            cancel_bill(teacher=self.other_teacher, bill_id=self.bill.pk)

    def test_amount_cannot_drop_below_paid(self):
        self.pay('150.00')
        with self.assertRaises(OverpaymentNotAllowed):
            update_bill(teacher=self.teacher, bill_id=self.bill.pk, amount='100.00')

        update_bill(teacher=self.teacher, bill_id=self.bill.pk, amount='150.00')
        student_bill = StudentBill.objects.get(bill=self.bill, student=self.student)
        self.assertTrue(student_bill.is_paid)
        self.assertEqual(student_bill.remaining, Decimal('0.00'))

        update_bill(teacher=self.teacher, bill_id=self.bill.pk, amount='180.00', title='Rent (updated)')
        student_bill.refresh_from_db()
        self.assertFalse(student_bill.is_paid)
        self.assertEqual(student_bill.remaining, Decimal('30.00'))

    def test_delete_refused_once_paid(self):
        self.pay('10.00')
        with self.assertRaises(ValidationError):
            delete_bill(teacher=self.teacher, bill_id=self.bill.pk)

        spare = create_bill(
            teacher=self.teacher,
            title='Field trip',
            amount='20.00',
            due_date=self.today,
            class_ids=[self.school_class.pk],
        )
        delete_bill(teacher=self.teacher, bill_id=spare.pk)
        self.assertFalse(Bill.objects.filter(pk=spare.pk).exists())

    def test_suggested_payment_is_half_of_remaining(self):
        student_bill = StudentBill.objects.get(bill=self.bill, student=self.student)
        self.assertEqual(suggested_payment(student_bill), Decimal('100.00'))
        self.pay('199.99')
        student_bill.refresh_from_db()
        self.assertEqual(suggested_payment(student_bill), Decimal('0.01'))

    def test_student_bill_list(self):
        self.pay('50.00')
        rows = student_bills(student=self.student)
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]['remaining'], Decimal('150.00'))
        self.assertEqual(rows[0]['status'], Bill.STATUS_PARTIAL)
        self.assertEqual(student_bills(student=self.outsider), [])


class BillViewTests(BillsBaseTestCase):
    def test_teacher_creates_bill(self):
        self.client.login(username='bills_teacher', password='pass12345')
        response = self.client.post(
            reverse('bill_list'),
            {
                'title': 'Phone',
                'emoji': '📱',
                'amount': '35.00',
                'due_date': (self.today + timedelta(days=5)).isoformat(),
                'frequency': Bill.FREQUENCY_MONTHLY,
                'classes': [self.school_class.pk],
            },
        )
        self.assertEqual(response.status_code, 201)
        payload = response.json()['data']
        self.assertEqual(payload['class_ids'], [self.school_class.pk])
        self.assertEqual(len(payload['students']), 1)

    def test_student_pays_through_endpoint(self):
        self.client.login(username='bills_student', password='pass12345')
        response = self.client.post(
            reverse('bill_pay', args=[self.bill.pk]),
            {'account': self.checking.pk, 'amount': '75.00'},
        )
        self.assertEqual(response.status_code, 200)
        data = response.json()['data']
        self.assertEqual(data['remaining'], '125.00')
        self.assertEqual(data['suggested_payment'], '62.50')
        self.assertEqual(data['account']['balance'], '225.00')

        response = self.client.post(
            reverse('bill_pay', args=[self.bill.pk]),
            {'account': self.checking.pk, 'amount': '500.00'},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['code'], 'overpayment_not_allowed')

    def test_student_bill_list_endpoint(self):
        self.client.login(username='bills_student', password='pass12345')
        response = self.client.get(reverse('student_bill_list'))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['data'][0]['remaining'], '200.00')

    def test_student_cannot_create_bills(self):
        self.client.login(username='bills_student', password='pass12345')
        response = self.client.get(reverse('bill_list'))
        self.assertEqual(response.status_code, 403)
