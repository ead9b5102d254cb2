from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from apps.core.academics.models import SchoolClass
from apps.core.banking.models import BankAccount, BankTransaction, FinancialRecordModel
from apps.core.students.models import Student
from apps.core.utils.managers import StudentOwnedManager


class Bill(models.Model):
    FREQUENCY_ONCE = 'once'
    FREQUENCY_WEEKLY = 'weekly'
    FREQUENCY_BIWEEKLY = 'biweekly'
    FREQUENCY_MONTHLY = 'monthly'
    FREQUENCY_QUARTERLY = 'quarterly'
    FREQUENCY_YEARLY = 'yearly'
    FREQUENCY_CHOICES = (
        (FREQUENCY_ONCE, 'Once'),
        (FREQUENCY_WEEKLY, 'Every week'),
        (FREQUENCY_BIWEEKLY, 'Every 2 weeks'),
        (FREQUENCY_MONTHLY, 'Monthly'),
        (FREQUENCY_QUARTERLY, 'Every 3 months'),
        (FREQUENCY_YEARLY, 'Annually'),
    )

    STATUS_ACTIVE = 'active'
    STATUS_DUE = 'due'
    STATUS_PARTIAL = 'partial'
    STATUS_PAID = 'paid'
    STATUS_LATE = 'late'
    STATUS_CANCELLED = 'cancelled'
    STATUS_CHOICES = (
        (STATUS_ACTIVE, 'Active'),
        (STATUS_DUE, 'Due'),
        (STATUS_PARTIAL, 'Partial'),
        (STATUS_PAID, 'Paid'),
        (STATUS_LATE, 'Late'),
        (STATUS_CANCELLED, 'Cancelled'),
    )
    OPEN_STATUSES = (STATUS_ACTIVE, STATUS_DUE, STATUS_PARTIAL, STATUS_LATE)

    creator = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='bills_created',
    )
    title = models.CharField(max_length=200)
    emoji = models.CharField(max_length=16, blank=True)
    description = models.TextField(blank=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    due_date = models.DateField()
    frequency = models.CharField(max_length=20, choices=FREQUENCY_CHOICES, default=FREQUENCY_ONCE)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_ACTIVE)
    classes = models.ManyToManyField(
        SchoolClass,
        through='BillAssignment',
        related_name='bills',
        blank=True,
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['due_date', 'id']
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name='bill_amount_positive',
            ),
        ]
        indexes = [
            models.Index(fields=['creator', 'status'], name='bills_creator_status_idx'),
            models.Index(fields=['due_date'], name='bills_due_date_idx'),
        ]

    @property
    def is_cancelled(self):
        return self.status == self.STATUS_CANCELLED

    def clean(self):
        super().clean()
        if self.title:
            self.title = self.title.strip()
        if not self.title:
            raise ValidationError({'title': 'Title is required.'})
        if self.amount is None or self.amount <= 0:
            raise ValidationError({'amount': 'Amount must be greater than zero.'})

    def __str__(self):
        return f"{self.emoji} {self.title}".strip()


class BillAssignment(models.Model):
    bill = models.ForeignKey(
        Bill,
        on_delete=models.CASCADE,
        related_name='assignments',
    )
    school_class = models.ForeignKey(
        SchoolClass,
        on_delete=models.CASCADE,
        related_name='bill_assignments',
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['bill_id', 'school_class__name']
        constraints = [
            models.UniqueConstraint(
                fields=['bill', 'school_class'],
                name='unique_bill_per_class',
            ),
        ]

    def __str__(self):
        return f"{self.bill.title} -> {self.school_class.name}"


class StudentBill(models.Model):
    bill = models.ForeignKey(
        Bill,
        on_delete=models.CASCADE,
        related_name='student_bills',
    )
    student = models.ForeignKey(
        Student,
        on_delete=models.CASCADE,
        related_name='student_bills',
    )
    objects = StudentOwnedManager()

    amount_due = models.DecimalField(max_digits=12, decimal_places=2)
    paid_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    is_paid = models.BooleanField(default=False)
    paid_at = models.DateTimeField(null=True, blank=True)
    is_excluded = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['bill__due_date', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['bill', 'student'],
                name='unique_student_bill',
            ),
            models.CheckConstraint(
                condition=Q(paid_amount__gte=0),
                name='student_bill_paid_non_negative',
            ),
            models.CheckConstraint(
                condition=Q(paid_amount__lte=F('amount_due')),
                name='student_bill_no_overpayment',
            ),
        ]
        indexes = [
            models.Index(fields=['student', 'is_paid'], name='bills_student_paid_idx'),
        ]

    @property
    def remaining(self):
        return max(self.amount_due - self.paid_amount, Decimal('0.00'))

    def __str__(self):
        return f"{self.student} - {self.bill.title}"


class BillPayment(FinancialRecordModel):
    bill = models.ForeignKey(
        Bill,
        on_delete=models.PROTECT,
        related_name='payments',
    )
    student = models.ForeignKey(
        Student,
        on_delete=models.PROTECT,
        related_name='bill_payments',
    )
    student_bill = models.ForeignKey(
        StudentBill,
        on_delete=models.PROTECT,
        related_name='payments',
    )
    account = models.ForeignKey(
        BankAccount,
        on_delete=models.PROTECT,
        related_name='bill_payments',
    )
    transaction = models.OneToOneField(
        BankTransaction,
        on_delete=models.PROTECT,
        related_name='bill_payment',
    )
    objects = StudentOwnedManager()

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    paid_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ['-paid_at', '-id']
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name='bill_payment_amount_positive',
            ),
        ]
        indexes = [
            models.Index(fields=['bill', 'student'], name='bills_payment_bill_student_idx'),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError('Bill payments are immutable.')
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.student} paid {self.amount} for {self.bill.title}"
