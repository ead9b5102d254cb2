from decimal import Decimal

from django import forms
from django.core.exceptions import ValidationError

from .models import BankAccount, RecurringAdjustment


class AmountField(forms.DecimalField):
    def __init__(self, **kwargs):
        kwargs.setdefault('max_digits', 12)
        kwargs.setdefault('decimal_places', 2)
        kwargs.setdefault('min_value', Decimal('0.01'))
        super().__init__(**kwargs)


class IdListField(forms.Field):
    widget = forms.MultipleHiddenInput

    def to_python(self, value):
        if not value:
            return []
        if isinstance(value, str):
            value = value.split(',')

        ids = []
        for item in value:
            for part in str(item).split(','):
                part = part.strip()
                if not part:
                    continue
                if not part.isdigit():
                    raise ValidationError('Enter a comma separated list of ids.')
                ids.append(int(part))
        return ids


class TransferForm(forms.Form):
    from_account = forms.IntegerField(min_value=1)
    to_account = forms.IntegerField(min_value=1)
    amount = AmountField()


class StatementRequestForm(forms.Form):
    account = forms.IntegerField(min_value=1)
    month = forms.IntegerField(min_value=1, max_value=12)
    year = forms.IntegerField(min_value=1970, max_value=9999)


class StatementAvailabilityForm(forms.Form):
    account = forms.IntegerField(min_value=1)
    year = forms.IntegerField(min_value=1970, max_value=9999, required=False)


class FundsAdjustmentForm(forms.Form):
    students = IdListField()
    account_type = forms.ChoiceField(choices=BankAccount.ACCOUNT_TYPE_CHOICES)
    amount = AmountField()
    description = forms.CharField(max_length=255, required=False)
    recurrence = forms.ChoiceField(choices=RecurringAdjustment.RECURRENCE_CHOICES, required=False)
    issue_date = forms.DateField(required=False)

    def clean_students(self):
        student_ids = self.cleaned_data['students']
        if not student_ids:
            raise ValidationError('Select at least one student.')
        return student_ids

    def clean_description(self):
        return (self.cleaned_data.get('description') or '').strip()

    def clean_recurrence(self):
        return self.cleaned_data.get('recurrence') or RecurringAdjustment.RECURRENCE_ONCE
