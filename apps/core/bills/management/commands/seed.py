import random
from datetime import timedelta
from decimal import Decimal

from django.core.management.base import BaseCommand
from django.db import transaction
from django.utils import timezone
from faker import Faker

from apps.core.academics.models import Enrollment, SchoolClass
from apps.core.banking.models import BankTransaction
from apps.core.banking.services import credit, setup_accounts
from apps.core.bills.models import Bill
from apps.core.bills.services import create_bill
from apps.core.students.models import Student
from apps.core.users.models import User


class Command(BaseCommand):
    help = 'Seeds the database with a demo class, students, bank accounts and bills.'

    def add_arguments(self, parser):
        parser.add_argument('--students', type=int, default=10)
        parser.add_argument('--seed', type=int, help='Random seed for repeatable data.')

    @transaction.atomic
    def handle(self, *args, **options):
        self.stdout.write('Seeding database...')

        fake = Faker()
        if options.get('seed') is not None:
            Faker.seed(options['seed'])
            random.seed(options['seed'])

        if not User.objects.filter(username='superadmin').exists():
            User.objects.create_superuser('superadmin', 'superadmin@example.com', 'password')
            self.stdout.write(self.style.SUCCESS('Successfully created superadmin user.'))

        teacher, created = User.objects.get_or_create(
            username='teacher',
            defaults={
                'role': User.ROLE_TEACHER,
                'email': 'teacher@example.com',
                'first_name': fake.first_name(),
                'last_name': fake.last_name(),
            },
        )
        if created:
            teacher.set_password('password')
            teacher.save()
            self.stdout.write(self.style.SUCCESS(f'Successfully created teacher: {teacher.username}'))

        school_class, created = SchoolClass.objects.get_or_create(
            code='ECON-1',
            defaults={'teacher': teacher, 'name': 'Economics'},
        )
        if created:
            self.stdout.write(self.style.SUCCESS(f'Successfully created class: {school_class.name}'))

        for _ in range(options['students']):
            first_name = fake.first_name()
            last_name = fake.last_name()
            username = fake.unique.user_name()
            email = f'{username}@students.example.com'
            user = User.objects.create_user(
                username=username,
                password='password',
                email=email,
                first_name=first_name,
                last_name=last_name,
                role=User.ROLE_STUDENT,
            )
            student = Student.objects.create(
                user=user,
                first_name=first_name,
                last_name=last_name,
                school_email=email,
            )
            Enrollment.objects.create(school_class=school_class, student=student)

            checking, savings = setup_accounts(student=student)
            credit(
                account_id=checking.pk,
                amount=Decimal(random.randint(50, 300)),
                transaction_type=BankTransaction.TYPE_DEPOSIT,
                description='Starting balance',
                created_by=teacher,
            )
            credit(
                account_id=savings.pk,
                amount=Decimal(random.randint(0, 100) + 1),
                transaction_type=BankTransaction.TYPE_DEPOSIT,
                description='Starting balance',
                created_by=teacher,
            )
            self.stdout.write(f'Created student {student.full_name} ({checking.display_account_number})')

        today = timezone.localdate()
        for title, emoji, amount, days, frequency in (
            ('Rent', '🏠', Decimal('200.00'), 14, Bill.FREQUENCY_MONTHLY),
            ('Phone', '📱', Decimal('35.00'), 7, Bill.FREQUENCY_MONTHLY),
            ('Field trip', '🚌', Decimal('20.00'), 3, Bill.FREQUENCY_ONCE),
        ):
            if Bill.objects.filter(creator=teacher, title=title).exists():
                continue
            create_bill(
                teacher=teacher,
                title=title,
                emoji=emoji,
                amount=amount,
                due_date=today + timedelta(days=days),
                frequency=frequency,
                description=fake.sentence(),
                class_ids=[school_class.pk],
            )
            self.stdout.write(self.style.SUCCESS(f'Successfully created bill: {title}'))

        self.stdout.write(self.style.SUCCESS('Database seeded successfully.'))
