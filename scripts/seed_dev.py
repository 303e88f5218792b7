import logging

from rafflenum.db.engine import get_sessionmaker, make_engine
from rafflenum.models import AppConfig, AutopayProfile, Base
from rafflenum.pricing import PRICE_KEY
from rafflenum.workflows import create_reservation, ensure_open_draw
from rafflenum.config import Settings


def main() -> None:
    """Reset the development database and load sample data.

    Creates an open draw, two autopay subscribers with stored cards and one
    interactive hold, so autopay and checkout can be exercised locally.
    """
    logging.basicConfig(level=logging.INFO)
    engine = make_engine()

    # Slots and reservations reference each other; SQLite cannot drop them
    # with foreign keys enforced.
    with engine.connect() as conn:
        if conn.dialect.name == "sqlite":
            conn.exec_driver_sql("PRAGMA foreign_keys=OFF")
        Base.metadata.drop_all(bind=conn)
        if conn.dialect.name == "sqlite":
            conn.exec_driver_sql("PRAGMA foreign_keys=ON")
        conn.commit()

    Base.metadata.create_all(engine)
    Session = get_sessionmaker(engine)
    settings = Settings.from_env()

    with Session.begin() as session:
        AppConfig.set_value(session, PRICE_KEY, settings.price_cents)
        draw = ensure_open_draw(session)

        alice = AutopayProfile(
            owner_id=1,
            provider_customer_id="cus_dev_1",
            provider_payment_profile_id="pp_dev_1",
        )
        alice.set_numbers([7, 13, 42])
        bob = AutopayProfile(
            owner_id=2,
            provider_customer_id="cus_dev_2",
            provider_payment_profile_id="pp_dev_2",
        )
        bob.set_numbers([0, 99])
        session.add_all([alice, bob])
        session.flush()

        create_reservation(session, owner_id=3, numbers=[21, 22], settings=settings)
        draw_id = draw.id

    print(f"Development database seeded (open draw {draw_id}).")


if __name__ == "__main__":
    main()
