from django.core.management.base import BaseCommand, CommandError

from apps.core.banking.services import run_due_adjustments


class Command(BaseCommand):
    help = 'Posts every scheduled or recurring teacher fund adjustment that is due.'

    def handle(self, *args, **options):
        summary = run_due_adjustments()
        self.stdout.write(
            f"{summary['due']} due, {summary['posted']} posted, {summary['failed']} failed."
        )
        if summary['failed']:
            raise CommandError(f"{summary['failed']} scheduled adjustment(s) could not be posted.")
        self.stdout.write(self.style.SUCCESS('Scheduled adjustments processed.'))
