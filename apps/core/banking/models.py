import calendar
from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from django.utils import timezone

from apps.core.students.models import Student
from apps.core.utils.managers import StudentOwnedManager


class FinancialRecordModel(models.Model):
    class Meta:
        abstract = True

    def delete(self, *args, **kwargs):
        raise ValidationError('Financial records cannot be deleted.')


class BankAccount(FinancialRecordModel):
    TYPE_CHECKING = 'checking'
    TYPE_SAVINGS = 'savings'
    ACCOUNT_TYPE_CHOICES = (
        (TYPE_CHECKING, 'Checking'),
        (TYPE_SAVINGS, 'Savings'),
    )
    DISPLAY_PREFIXES = {
        TYPE_CHECKING: 'CH',
        TYPE_SAVINGS: 'SV',
    }

    student = models.ForeignKey(
        Student,
        on_delete=models.PROTECT,
        related_name='bank_accounts',
    )
    objects = StudentOwnedManager()

    account_type = models.CharField(max_length=20, choices=ACCOUNT_TYPE_CHOICES)
    account_number = models.CharField(max_length=8, unique=True)
    balance = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    version = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['student_id', 'account_type', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['student', 'account_type'],
                name='unique_account_type_per_student',
            ),
            models.CheckConstraint(
                condition=Q(balance__gte=0),
                name='bank_account_balance_non_negative',
            ),
        ]

    @property
    def display_account_number(self):
        return f"{self.DISPLAY_PREFIXES.get(self.account_type, '')}{self.account_number}"

    def clean(self):
        super().clean()
        if self.balance is None or self.balance < 0:
            raise ValidationError({'balance': 'Balance cannot be negative.'})

    def __str__(self):
        return f"{self.get_account_type_display()} {self.display_account_number}"


class BankTransaction(FinancialRecordModel):
    TYPE_DEPOSIT = 'deposit'
    TYPE_WITHDRAWAL = 'withdrawal'
    TYPE_TRANSFER_OUT = 'transfer_out'
    TYPE_TRANSFER_IN = 'transfer_in'
    TRANSACTION_TYPE_CHOICES = (
        (TYPE_DEPOSIT, 'Deposit'),
        (TYPE_WITHDRAWAL, 'Withdrawal'),
        (TYPE_TRANSFER_OUT, 'Transfer Out'),
        (TYPE_TRANSFER_IN, 'Transfer In'),
    )
    CREDIT_TYPES = frozenset({TYPE_DEPOSIT, TYPE_TRANSFER_IN})
    DEBIT_TYPES = frozenset({TYPE_WITHDRAWAL, TYPE_TRANSFER_OUT})

    account = models.ForeignKey(
        BankAccount,
        on_delete=models.PROTECT,
        related_name='transactions',
    )
    transaction_type = models.CharField(max_length=20, choices=TRANSACTION_TYPE_CHOICES)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    balance_after = models.DecimalField(max_digits=12, decimal_places=2)
    description = models.CharField(max_length=255, blank=True)
    related_transaction = models.OneToOneField(
        'self',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='linked_from',
    )
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='bank_transactions_created',
    )
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ['-created_at', '-id']
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name='bank_transaction_amount_positive',
            ),
            models.CheckConstraint(
                condition=Q(balance_after__gte=0),
                name='bank_transaction_balance_non_negative',
            ),
        ]
        indexes = [
            models.Index(fields=['account', 'created_at'], name='banking_tx_account_created_idx'),
            models.Index(fields=['account', 'transaction_type'], name='banking_tx_account_type_idx'),
        ]

    @property
    def is_credit(self):
        return self.transaction_type in self.CREDIT_TYPES

    @property
    def signed_amount(self):
        return self.amount if self.is_credit else -self.amount

    def save(self, *args, **kwargs):
        if not self._state.adding:
            # Only the missing half of a transfer pair may be filled in later.
            update_fields = set(kwargs.get('update_fields') or ())
            if update_fields != {'related_transaction'}:
                raise ValidationError('Bank transactions are immutable.')
            previous_link = BankTransaction.objects.filter(pk=self.pk).values_list(
                'related_transaction_id',
                flat=True,
            ).first()
            if previous_link is not None and previous_link != self.related_transaction_id:
                raise ValidationError('Linked transactions cannot be relinked.')
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.get_transaction_type_display()} {self.amount} ({self.account.display_account_number})"


class BankStatement(FinancialRecordModel):
    account = models.ForeignKey(
        BankAccount,
        on_delete=models.PROTECT,
        related_name='statements',
    )
    month = models.PositiveSmallIntegerField()
    year = models.PositiveSmallIntegerField()
    period_start = models.DateTimeField()
    period_end = models.DateTimeField()
    opening_balance = models.DecimalField(max_digits=12, decimal_places=2)
    closing_balance = models.DecimalField(max_digits=12, decimal_places=2)
    total_credits = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    total_debits = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    transaction_count = models.PositiveIntegerField(default=0)
    lines = models.JSONField(default=list, blank=True)
    generated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ['-year', '-month', 'account_id']
        constraints = [
            models.UniqueConstraint(
                fields=['account', 'year', 'month'],
                name='unique_statement_per_account_period',
            ),
            models.CheckConstraint(
                condition=Q(month__gte=1) & Q(month__lte=12),
                name='bank_statement_valid_month',
            ),
            models.CheckConstraint(
                condition=Q(closing_balance__gte=0) & Q(opening_balance__gte=0),
                name='bank_statement_non_negative_balances',
            ),
        ]

    @property
    def month_name(self):
        return calendar.month_name[self.month]

    @property
    def period_label(self):
        return f"{self.month_name} {self.year}"

    def filename(self, extension):
        return f"{self.month_name}_{self.year}_statement.{extension}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError('Statements are immutable once generated.')
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.account.display_account_number} - {self.period_label}"


class RecurringAdjustment(models.Model):
    DIRECTION_ADD = 'add'
    DIRECTION_REMOVE = 'remove'
    DIRECTION_CHOICES = (
        (DIRECTION_ADD, 'Add funds'),
        (DIRECTION_REMOVE, 'Remove funds'),
    )
    RECURRENCE_ONCE = 'once'
    RECURRENCE_WEEKLY = 'weekly'
    RECURRENCE_BIWEEKLY = 'biweekly'
    RECURRENCE_MONTHLY = 'monthly'
    RECURRENCE_CHOICES = (
        (RECURRENCE_ONCE, 'Once'),
        (RECURRENCE_WEEKLY, 'Every week'),
        (RECURRENCE_BIWEEKLY, 'Every 2 weeks'),
        (RECURRENCE_MONTHLY, 'Monthly'),
    )

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='recurring_adjustments_created',
    )
    student = models.ForeignKey(
        Student,
        on_delete=models.PROTECT,
        related_name='recurring_adjustments',
    )
    account_type = models.CharField(max_length=20, choices=BankAccount.ACCOUNT_TYPE_CHOICES)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    direction = models.CharField(max_length=10, choices=DIRECTION_CHOICES, default=DIRECTION_ADD)
    description = models.CharField(max_length=255, blank=True)
    recurrence = models.CharField(max_length=10, choices=RECURRENCE_CHOICES, default=RECURRENCE_ONCE)
    start_date = models.DateField()
    next_run = models.DateField()
    occurrences = models.PositiveIntegerField(default=0)
    last_run_at = models.DateTimeField(null=True, blank=True)
    last_error = models.CharField(max_length=255, blank=True)
    is_active = models.BooleanField(default=True)
    stopped_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['next_run', 'id']
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name='recurring_adjustment_amount_positive',
            ),
        ]
        indexes = [
            models.Index(fields=['is_active', 'next_run'], name='banking_recurring_due_idx'),
        ]

    @property
    def is_recurring(self):
        return self.recurrence != self.RECURRENCE_ONCE

    def __str__(self):
        return (
            f"{self.get_direction_display()} {self.amount} {self.get_account_type_display()} "
            f"for {self.student} ({self.get_recurrence_display()})"
        )
