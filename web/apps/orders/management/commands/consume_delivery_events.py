"""Run the delivery completion listener.

Usage:
    python manage.py consume_delivery_events            # loop until SIGINT/SIGTERM
    python manage.py consume_delivery_events --once     # single poll batch
"""

import signal
import threading

from django.core.management.base import BaseCommand

from apps.orders import providers


class Command(BaseCommand):
    help = "Consume delivery outcome events and apply them to orders."

    def add_arguments(self, parser):
        parser.add_argument("--once", action="store_true", help="Handle one batch and exit.")
        parser.add_argument("--consumer", default=None, help="Consumer name inside the group.")
        parser.add_argument("--block-ms", type=int, default=1000)

    def handle(self, *args, **options):
        channel = providers.get_event_channel()
        listener = providers.get_delivery_listener(consumer=options["consumer"])

        if options["once"]:
            handled = listener.consume_once(channel, block_ms=options["block_ms"])
            self.stdout.write(f"handled {handled} message(s)")
            return

        stop = threading.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, lambda *_: stop.set())
        listener.run(channel, stop_event=stop, block_ms=options["block_ms"])
