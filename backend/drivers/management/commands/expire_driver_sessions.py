from django.core.management.base import BaseCommand

from drivers.services import expire_stale_sessions


class Command(BaseCommand):
    help = "Take offline drivers that have not reported their position recently."

    def add_arguments(self, parser):
        parser.add_argument(
            "--ttl",
            type=int,
            default=None,
            help="Seconds without a position update before a driver is expired "
                 "(default: DRIVER_SESSION_TTL_SECONDS).",
        )

    def handle(self, *args, **options):
        expired = expire_stale_sessions(ttl_seconds=options["ttl"])

        self.stdout.write(
            self.style.SUCCESS(f"Expired {len(expired)} driver session(s).")
        )
