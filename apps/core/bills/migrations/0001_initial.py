import django.db.models.deletion
import django.utils.timezone
from decimal import Decimal
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ('academics', '0001_initial'),
        ('banking', '0001_initial'),
        ('students', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='Bill',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('title', models.CharField(max_length=200)),
                ('emoji', models.CharField(blank=True, max_length=16)),
                ('description', models.TextField(blank=True)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('due_date', models.DateField()),
                ('frequency', models.CharField(choices=[('once', 'Once'), ('weekly', 'Every week'), ('biweekly', 'Every 2 weeks'), ('monthly', 'Monthly'), ('quarterly', 'Every 3 months'), ('yearly', 'Annually')], default='once', max_length=20)),
                ('status', models.CharField(choices=[('active', 'Active'), ('due', 'Due'), ('partial', 'Partial'), ('paid', 'Paid'), ('late', 'Late'), ('cancelled', 'Cancelled')], default='active', max_length=20)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('creator', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='bills_created', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ['due_date', 'id'],
                'indexes': [
                    models.Index(fields=['creator', 'status'], name='bills_creator_status_idx'),
                    models.Index(fields=['due_date'], name='bills_due_date_idx'),
                ],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('amount__gt', 0)), name='bill_amount_positive'),
                ],
            },
        ),
        migrations.CreateModel(
            name='BillAssignment',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('bill', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='assignments', to='bills.bill')),
                ('school_class', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='bill_assignments', to='academics.schoolclass')),
            ],
            options={
                'ordering': ['bill_id', 'school_class__name'],
                'constraints': [
                    models.UniqueConstraint(fields=('bill', 'school_class'), name='unique_bill_per_class'),
                ],
            },
        ),
        migrations.AddField(
            model_name='bill',
            name='classes',
            field=models.ManyToManyField(blank=True, related_name='bills', through='bills.BillAssignment', to='academics.schoolclass'),
        ),
        migrations.CreateModel(
            name='StudentBill',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('amount_due', models.DecimalField(decimal_places=2, max_digits=12)),
                ('paid_amount', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('is_paid', models.BooleanField(default=False)),
                ('paid_at', models.DateTimeField(blank=True, null=True)),
                ('is_excluded', models.BooleanField(default=False)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('bill', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='student_bills', to='bills.bill')),
                ('student', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='student_bills', to='students.student')),
            ],
            options={
                'ordering': ['bill__due_date', 'id'],
                'indexes': [
                    models.Index(fields=['student', 'is_paid'], name='bills_student_paid_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(fields=('bill', 'student'), name='unique_student_bill'),
                    models.CheckConstraint(condition=models.Q(('paid_amount__gte', 0)), name='student_bill_paid_non_negative'),
                    models.CheckConstraint(condition=models.Q(('paid_amount__lte', models.F('amount_due'))), name='student_bill_no_overpayment'),
                ],
            },
        ),
        migrations.CreateModel(
            name='BillPayment',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('paid_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('account', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='bill_payments', to='banking.bankaccount')),
                ('bill', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='payments', to='bills.bill')),
                ('student', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='bill_payments', to='students.student')),
                ('student_bill', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='payments', to='bills.studentbill')),
                ('transaction', models.OneToOneField(on_delete=django.db.models.deletion.PROTECT, related_name='bill_payment', to='banking.banktransaction')),
            ],
            options={
                'ordering': ['-paid_at', '-id'],
                'indexes': [
                    models.Index(fields=['bill', 'student'], name='bills_payment_bill_student_idx'),
                ],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('amount__gt', 0)), name='bill_payment_amount_positive'),
                ],
            },
        ),
    ]
