from django.core.management.base import BaseCommand

from bookings.sweep import process_due_reminders, run_hold_sweep


class Command(BaseCommand):
    help = 'Send hold reminders, expire stale holds and deliver due event reminders'

    def add_arguments(self, parser):
        parser.add_argument(
            '--skip-event-reminders',
            action='store_true',
            help='Only run the hold reminder and expiry passes',
        )

    def handle(self, *args, **options):
        summary = run_hold_sweep()
        self.stdout.write(summary['message'])
        for result in summary['results']:
            if not result['success']:
                self.stderr.write(
                    f"{result['action']} failed for {result['booking_id']}: {result.get('error')}"
                )

        if options['skip_event_reminders']:
            return

        reminders = process_due_reminders()
        self.stdout.write(reminders['message'])
        self.stdout.write(self.style.SUCCESS('Sweep complete'))
