"""
Cron / worker entry point: escalates and expires pending broadcasts and
re-broadcasts stuck deliveries.

    python manage.py run_broadcast_sweeps            # one pass
    python manage.py run_broadcast_sweeps --loop     # every --interval seconds
"""
import time

from django.core.management.base import BaseCommand

from logistics.services import get_broadcast_service


class Command(BaseCommand):
    help = "Escalate / expire pending broadcasts and re-broadcast stuck deliveries"

    def add_arguments(self, parser):
        parser.add_argument("--loop", action="store_true", help="Keep sweeping until interrupted")
        parser.add_argument("--interval", type=float, default=5.0, help="Seconds between sweeps in --loop mode")
        parser.add_argument("--skip-rebroadcast", action="store_true", help="Only run the phase sweep")

    def handle(self, *args, **options):
        service = get_broadcast_service()

        while True:
            swept = service.scheduler.sweep()
            line = f"Escalated {len(swept.escalated)}, expired {len(swept.expired)}"

            if not options["skip_rebroadcast"]:
                rebroadcast = service.rebroadcast.run()
                line += f", re-broadcast {len(rebroadcast.rebroadcast)} of {rebroadcast.checked} stuck deliveries"

            self.stdout.write(line)

            if not options["loop"]:
                return
            try:
                time.sleep(options["interval"])
            except KeyboardInterrupt:
                self.stdout.write("Stopped.")
                return
