"""CLI simulator for the booking concierge.

Plays the role of the messaging channel: every line you type is sent
through the full webhook pipeline as an inbound message from one contact.
With the in-memory store a demo tenant is seeded, so you can start with
``Ref: demo-studio``.

Usage:
    uv run python -m src.main                      # text channel
    uv run python -m src.main --voice              # voice transcript mode
    uv run python -m src.main --from +15550001111  # pick the contact identity
    uv run python -m src.main --debug              # debug mode (shows API calls)
"""

from __future__ import annotations

import argparse
import logging

from src.api.schemas import InboundMessage
from src.config import load_settings
from src.controller import build_controller, build_store
from src.services.store import DocumentStore, InMemoryDocumentStore

logger = logging.getLogger(__name__)

DEMO_TENANT_ID = "demo-tenant"


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("src").setLevel(logging.DEBUG if debug else logging.INFO)


def seed_demo_tenant(store: DocumentStore) -> None:
    """A pro-plan studio open Monday to Friday with a short catalog."""
    store.set(
        f"tenants/{DEMO_TENANT_ID}",
        {
            "name": "Demo Studio",
            "slug": "demo-studio",
            "country": "US",
            "timezone": "America/New_York",
            "plan": "pro",
            "active": True,
            "business_hours": {"open": "09:00", "close": "18:00", "break": "12:00-13:00", "days": [1, 2, 3, 4, 5]},
            "services": [
                {"name": "Haircut", "price": 30, "duration": 30},
                {"name": "Beard Trim", "price": 15, "duration": 15},
                {"name": "Haircut + Beard", "price": 40, "duration": 45},
            ],
        },
    )


def main():
    """Run the interactive simulator loop."""
    parser = argparse.ArgumentParser(description="Booking concierge CLI simulator")
    parser.add_argument("--from", dest="identity", default="+15550001111", help="Contact identity to send as")
    parser.add_argument("--voice", action="store_true", help="Mark messages as voice transcripts")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    args = parser.parse_args()

    _configure_logging(debug=args.debug)
    settings = load_settings()
    store = build_store(settings)
    if isinstance(store, InMemoryDocumentStore):
        seed_demo_tenant(store)
    controller = build_controller(settings, store=store)

    print("\n" + "=" * 60)
    print("  Booking Concierge - CLI Simulator")
    print("=" * 60)
    print(f"  Sending as {args.identity} ({'voice' if args.voice else 'text'}).")
    print("  Start with 'Ref: demo-studio'. Type 'quit' to exit.")
    print("=" * 60 + "\n")

    while True:
        try:
            user_input = input("You: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not user_input:
            continue

        if user_input.lower() in ("exit", "quit", "q"):
            print("\nGoodbye!")
            break

        result = controller.handle(
            InboundMessage(from_identity=args.identity, body_text=user_input, is_voice_channel=args.voice),
        )
        if result.reply is None:
            print("\n(concierge paused, a human will answer)\n")
            continue
        suffix = " [paused]" if result.paused else ""
        print(f"\nConcierge{suffix}: {result.reply}\n")


if __name__ == "__main__":
    main()
