from __future__ import annotations

import argparse

from quality_review.infrastructure.config import DatabaseConfig
from quality_review.infrastructure.db import create_database_engine, create_session_factory
from quality_review.infrastructure.uow import UnitOfWork
from quality_review.utils.seed import initialise_database, seed_demo_data


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create the schema and load demo review data.")
    parser.add_argument("--backend", choices=["sqlite", "mysql"], default="sqlite")
    parser.add_argument("--sqlite-path", default="./quality_review.db")
    parser.add_argument("--mysql-host", default="localhost")
    parser.add_argument("--mysql-port", type=int, default=3306)
    parser.add_argument("--mysql-user", default="root")
    parser.add_argument("--mysql-password", default="")
    parser.add_argument("--mysql-database", default="quality_review")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    config = DatabaseConfig(
        backend=args.backend,
        sqlite_path=args.sqlite_path,
        mysql_host=args.mysql_host,
        mysql_port=args.mysql_port,
        mysql_user=args.mysql_user,
        mysql_password=args.mysql_password,
        mysql_database=args.mysql_database,
    )
    engine = create_database_engine(config)
    initialise_database(engine)

    uow = UnitOfWork(create_session_factory(engine))
    with uow.begin("seed_demo") as session:
        counts = seed_demo_data(session)
    print(f"[seed] {counts}")


if __name__ == "__main__":
    main()
