import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ('students', '0001_initial'),
        ('banking', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='RecurringAdjustment',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('account_type', models.CharField(choices=[('checking', 'Checking'), ('savings', 'Savings')], max_length=20)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('direction', models.CharField(choices=[('add', 'Add funds'), ('remove', 'Remove funds')], default='add', max_length=10)),
                ('description', models.CharField(blank=True, max_length=255)),
                ('recurrence', models.CharField(choices=[('once', 'Once'), ('weekly', 'Every week'), ('biweekly', 'Every 2 weeks'), ('monthly', 'Monthly')], default='once', max_length=10)),
                ('start_date', models.DateField()),
                ('next_run', models.DateField()),
                ('occurrences', models.PositiveIntegerField(default=0)),
                ('last_run_at', models.DateTimeField(blank=True, null=True)),
                ('last_error', models.CharField(blank=True, max_length=255)),
                ('is_active', models.BooleanField(default=True)),
                ('stopped_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('created_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='recurring_adjustments_created', to=settings.AUTH_USER_MODEL)),
                ('student', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='recurring_adjustments', to='students.student')),
            ],
            options={
                'ordering': ['next_run', 'id'],
                'indexes': [
                    models.Index(fields=['is_active', 'next_run'], name='banking_recurring_due_idx'),
                ],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('amount__gt', 0)), name='recurring_adjustment_amount_positive'),
                ],
            },
        ),
    ]
