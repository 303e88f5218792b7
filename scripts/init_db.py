from __future__ import annotations

import argparse
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect

from rafflenum.db.engine import get_sessionmaker, make_engine
from rafflenum.workflows import ensure_open_draw


def upgrade_db(target_revision: str = "head") -> None:
    """Apply Alembic migrations up to ``target_revision``."""
    project_root = Path(__file__).resolve().parents[1]
    alembic_cfg = Config(str(project_root / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(project_root / "alembic"))
    command.upgrade(alembic_cfg, target_revision)


def open_first_draw() -> int:
    """Make sure a draw is open for sale and return its id."""
    engine = make_engine()
    Session = get_sessionmaker(engine)
    with Session.begin() as session:
        return ensure_open_draw(session).id


def print_tables() -> None:
    engine = make_engine()
    insp = inspect(engine)
    print("Current tables:", ", ".join(sorted(insp.get_table_names())))


def main() -> None:
    """Migrate to head, open a draw if none is open and report the schema."""
    parser = argparse.ArgumentParser(description=main.__doc__)
    parser.add_argument("--revision", default="head")
    parser.add_argument(
        "--no-draw", action="store_true", help="do not open a draw after migrating"
    )
    args = parser.parse_args()

    upgrade_db(args.revision)
    print_tables()
    if not args.no_draw:
        print("Open draw:", open_first_draw())


if __name__ == "__main__":
    main()
