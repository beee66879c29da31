from django.core.management.base import BaseCommand

from services.matching import redispatch_waiting_trips, sweep_expired_offers


class Command(BaseCommand):
    help = "Expire trip offers past their deadline and re-dispatch waiting trips."

    def add_arguments(self, parser):
        parser.add_argument(
            "--no-redispatch",
            action="store_true",
            help="Only expire overdue offers; do not re-dispatch waiting trips.",
        )

    def handle(self, *args, **options):
        expired_count = sweep_expired_offers()
        dispatched = [] if options["no_redispatch"] else redispatch_waiting_trips()

        self.stdout.write(
            self.style.SUCCESS(
                f"Expired {expired_count} offer(s); dispatched {len(dispatched)} waiting trip(s)."
            )
        )
