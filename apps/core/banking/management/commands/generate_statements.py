from django.core.management.base import BaseCommand, CommandError

from apps.core.banking.exceptions import BankingError
from apps.core.banking.statements import generate_monthly_statements


class Command(BaseCommand):
    help = 'Generates last month\'s bank statements for every account with activity.'

    def add_arguments(self, parser):
        parser.add_argument('--force', action='store_true', help='Run even when today is not the statement day.')
        parser.add_argument('--month', type=int, help='Month to generate (1-12).')
        parser.add_argument('--year', type=int, help='Year to generate.')

    def handle(self, *args, **options):
        try:
            summary = generate_monthly_statements(
                month=options.get('month'),
                year=options.get('year'),
                force=options['force'],
            )
        except BankingError as exc:
            raise CommandError(str(exc)) from exc

        if not summary['ran']:
            self.stdout.write(self.style.WARNING(summary['reason']))
            return

        self.stdout.write(
            f"{summary['month']}/{summary['year']}: {summary['total']} accounts, "
            f"{summary['success']} generated, {summary['skipped']} skipped, {summary['failed']} failed."
        )
        for error in summary['errors']:
            self.stdout.write(self.style.ERROR(f"Account {error['account_id']}: {error['error']}"))
        if summary['failed']:
            raise CommandError(f"{summary['failed']} statements could not be generated.")
        self.stdout.write(self.style.SUCCESS('Statements generated.'))
