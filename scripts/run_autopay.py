from __future__ import annotations

import argparse
import json
import logging

from rafflenum.config import Settings
from rafflenum.db.engine import get_sessionmaker, make_engine
from rafflenum.gateway.api import VindiGateway
from rafflenum.pricing import TicketPriceCache
from rafflenum.workflows import run_autopay_for_draw, run_autopay_for_open_draws


def main() -> int:
    """Run autopay for one draw, or for every open draw not processed yet."""
    parser = argparse.ArgumentParser(description=main.__doc__)
    parser.add_argument("--draw-id", type=int, default=None)
    parser.add_argument("--force", action="store_true")
    parser.add_argument("--limit", type=int, default=50)
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    settings = Settings.from_env()
    engine = make_engine()
    Session = get_sessionmaker(engine)
    gateway = VindiGateway.from_settings(settings)
    prices = TicketPriceCache(
        Session, default_cents=settings.price_cents, ttl=settings.price_cache_ttl_sec
    )

    if args.draw_id is not None:
        reports = [
            run_autopay_for_draw(
                Session,
                gateway,
                args.draw_id,
                force=args.force,
                settings=settings,
                price_cache=prices,
            )
        ]
    else:
        reports = run_autopay_for_open_draws(
            Session,
            gateway,
            limit=args.limit,
            force=args.force,
            settings=settings,
            price_cache=prices,
        )

    print(json.dumps([r.as_dict() for r in reports], indent=2))
    return 1 if any(r.failed for r in reports) else 0


if __name__ == "__main__":
    raise SystemExit(main())
