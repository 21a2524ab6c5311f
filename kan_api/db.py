from __future__ import annotations

import argparse
import secrets
import string
import uuid
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import (
    BigInteger,
    Column,
    ForeignKey,
    Index,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session

from kan_api.config import settings

ROOT = Path(__file__).resolve().parents[1]
UID_ALPHABET = string.ascii_lowercase + string.digits

metadata = MetaData()

workspace = Table(
    "workspace",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("public_id", String(32), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("slug", String(255), nullable=False, unique=True),
    Column("created_at", BigInteger, nullable=False),
)

workspace_member = Table(
    "workspace_member",
    metadata,
    Column("workspace_id", String(36), ForeignKey("workspace.id"), primary_key=True),
    Column("user_id", String(255), primary_key=True),
    Column("role", String(16), nullable=False),
)

board = Table(
    "board",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("public_id", String(32), nullable=False, unique=True),
    Column("workspace_id", String(36), ForeignKey("workspace.id"), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("slug", String(255), nullable=False),
    Column("cover_image", Text),
    Column("created_at", BigInteger, nullable=False),
    Column("deleted_at", BigInteger),
    UniqueConstraint("workspace_id", "slug", name="uq_board_workspace_slug"),
)

Index("ix_workspace_member_user", workspace_member.c.user_id)


def _ensure_sqlite_dir(db_url: str) -> None:
    url = make_url(db_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)


def get_engine(db_url: str | None = None):
    url = db_url or settings.db_url
    _ensure_sqlite_dir(url)
    return create_engine(url, future=True)


@contextmanager
def session_scope(db_url: str | None = None):
    engine = get_engine(db_url)
    with Session(engine) as session:
        yield session


def init_db(db_url: str | None = None) -> None:
    engine = get_engine(db_url)
    metadata.create_all(engine)


def upgrade_db(db_url: str | None = None) -> None:
    url = db_url or settings.db_url
    _ensure_sqlite_dir(url)
    cfg = Config()
    cfg.set_main_option("script_location", str(ROOT / "alembic"))
    cfg.set_main_option("sqlalchemy.url", url.replace("%", "%%"))
    command.upgrade(cfg, "head")


def now_ms() -> int:
    return int(datetime.now(UTC).timestamp() * 1000)


def generate_uid(length: int = 12) -> str:
    return "".join(secrets.choice(UID_ALPHABET) for _ in range(length))


def ensure_dev_seed(db_url: str | None = None) -> None:
    with session_scope(db_url) as session:
        exists = session.execute(select(workspace.c.id).limit(1)).first()
        if exists:
            return
        t = now_ms()
        workspace_id = str(uuid.uuid4())
        session.execute(
            workspace.insert().values(
                id=workspace_id,
                public_id=generate_uid(),
                name="Local Workspace",
                slug="local-workspace",
                created_at=t,
            )
        )
        session.execute(
            workspace_member.insert(),
            [
                {"workspace_id": workspace_id, "user_id": "admin@example.com", "role": "admin"},
                {"workspace_id": workspace_id, "user_id": "member@example.com", "role": "member"},
            ],
        )
        session.execute(
            board.insert(),
            [
                {
                    "id": str(uuid.uuid4()),
                    "public_id": generate_uid(),
                    "workspace_id": workspace_id,
                    "name": name,
                    "slug": slug,
                    "cover_image": None,
                    "created_at": t,
                }
                for name, slug in (("Roadmap", "roadmap"), ("Bugs", "bugs"))
            ],
        )
        session.commit()


def _cli() -> None:
    parser = argparse.ArgumentParser()
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("init")
    sub.add_parser("upgrade")
    sub.add_parser("seed")
    args = parser.parse_args()
    if args.command == "init":
        init_db()
    elif args.command == "upgrade":
        upgrade_db()
    elif args.command == "seed":
        ensure_dev_seed()


if __name__ == "__main__":
    _cli()
