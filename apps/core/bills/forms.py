from django import forms

from apps.core.academics.models import SchoolClass
from apps.core.banking.forms import AmountField, IdListField

from .models import Bill


class BillForm(forms.ModelForm):
    amount = AmountField()
    classes = forms.ModelMultipleChoiceField(queryset=SchoolClass.objects.none(), required=False)

    class Meta:
        model = Bill
        fields = ['title', 'emoji', 'description', 'amount', 'due_date', 'frequency']

    def __init__(self, *args, **kwargs):
        self.teacher = kwargs.pop('teacher', None)
        super().__init__(*args, **kwargs)

        class_qs = SchoolClass.objects.filter(is_active=True)
        if self.teacher is not None and getattr(self.teacher, 'role', None) != 'superadmin':
            class_qs = class_qs.filter(teacher=self.teacher)
        self.fields['classes'].queryset = class_qs.order_by('name', 'id')


class BillUpdateForm(forms.Form):
    title = forms.CharField(max_length=200, required=False)
    emoji = forms.CharField(max_length=16, required=False)
    description = forms.CharField(required=False)
    amount = AmountField(required=False)
    due_date = forms.DateField(required=False)
    frequency = forms.ChoiceField(choices=Bill.FREQUENCY_CHOICES, required=False)

    def changes(self):
        """Only the fields that were actually submitted."""
        return {
            field: self.cleaned_data[field]
            for field in self.fields
            if field in self.data and self.cleaned_data.get(field) not in (None, '')
        }


class BillClassesForm(forms.Form):
    ACTION_ASSIGN = 'assign'
    ACTION_REMOVE = 'remove'

    classes = IdListField()
    action = forms.ChoiceField(
        choices=((ACTION_ASSIGN, 'Assign'), (ACTION_REMOVE, 'Remove')),
        required=False,
    )

    def clean_action(self):
        return self.cleaned_data.get('action') or self.ACTION_ASSIGN


class BillStudentsForm(forms.Form):
    students = IdListField()
    excluded = forms.BooleanField(required=False)


class BillPaymentForm(forms.Form):
    account = forms.IntegerField(min_value=1)
    amount = AmountField()
