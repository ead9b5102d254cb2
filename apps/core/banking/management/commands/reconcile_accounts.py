from django.core.management.base import BaseCommand, CommandError

from apps.core.banking.services import reconcile_accounts


class Command(BaseCommand):
    help = 'Replays every account\'s transaction log and reports balances that do not match.'

    def add_arguments(self, parser):
        parser.add_argument('account_ids', nargs='*', type=int)

    def handle(self, *args, **options):
        mismatches = reconcile_accounts(account_ids=options['account_ids'] or None)
        if not mismatches:
            self.stdout.write(self.style.SUCCESS('All account balances match their transaction history.'))
            return

        for row in mismatches:
            self.stdout.write(
                self.style.ERROR(
                    f"{row['account_number']}: stored {row['balance']}, replayed {row['replayed_balance']}"
                )
            )
        raise CommandError(f'{len(mismatches)} account(s) out of balance.')
