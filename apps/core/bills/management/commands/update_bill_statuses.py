from django.core.management.base import BaseCommand

from apps.core.bills.services import refresh_open_bill_statuses


class Command(BaseCommand):
    help = 'Recomputes the stored status of every open bill (due today, late, partially paid, paid).'

    def handle(self, *args, **options):
        changed = refresh_open_bill_statuses()
        self.stdout.write(self.style.SUCCESS(f'Updated {changed} bill status(es).'))
