"""CLI entry point: chat with the booking agent of one business.

Appointments live in memory for the duration of the session and are not
mirrored to any external calendar.

Usage:
    python -m appointment_agent.main --seed businesses.json
    python -m appointment_agent.main --seed businesses.json --subdomain salon --debug
"""

from __future__ import annotations

import argparse
import logging

from appointment_agent.agent import BookingAgent
from appointment_agent.config import SEED_FILE, SLOT_INTERVAL_MINUTES
from appointment_agent.models import ConversationTurn
from appointment_agent.services.booking import BookingService
from appointment_agent.services.scheduling import AppointmentGuard
from appointment_agent.services.store import InMemoryStore

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """WARNING by default, DEBUG when --debug is passed."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )
    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("appointment_agent").setLevel(logging.DEBUG if debug else logging.INFO)


def main():
    parser = argparse.ArgumentParser(description="Appointment agent CLI")
    parser.add_argument("--seed", default=SEED_FILE, help="JSON file with the businesses to load")
    parser.add_argument("--subdomain", help="Business to chat with (defaults to the first one)")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    args = parser.parse_args()
    _configure_logging(debug=args.debug)

    if not args.seed:
        parser.error("no businesses to load: pass --seed or set SEED_FILE")

    store = InMemoryStore()
    store.load_businesses(args.seed)
    if args.subdomain:
        business = store.get_business_by_subdomain(args.subdomain)
        if business is None:
            parser.error(f"unknown subdomain: {args.subdomain}")
    else:
        businesses = store.list_businesses()
        if not businesses:
            parser.error(f"{args.seed} contains no businesses")
        business = businesses[0]

    guard = AppointmentGuard(store, slot_interval_minutes=SLOT_INTERVAL_MINUTES)
    agent = BookingAgent(BookingService(store, guard))

    print("\n" + "=" * 60)
    print(f"  {business.name} - booking assistant")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' to start over.")
    print("=" * 60 + "\n")

    history: list[ConversationTurn] = []

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
        if user_input.lower() == "new":
            history = []
            print("\n>> New conversation started.\n")
            continue

        history.append(ConversationTurn(role="user", content=user_input))
        try:
            reply = agent.respond(business, history)
        except KeyboardInterrupt:
            print("\n\nGoodbye!")
            break
        except Exception as e:
            logger.exception("Error processing message")
            history.pop()
            print(f"\nAssistant: Sorry, something went wrong: {e}")
            print("     Please try again or type 'new' to start over.\n")
            continue

        history.append(ConversationTurn(role="assistant", content=reply))
        print(f"\nAssistant: {reply}\n")


if __name__ == "__main__":
    main()
