from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header
from sqlalchemy import RowMapping, select
from sqlalchemy.orm import Session

from kan_api.db import board, workspace_member
from kan_api.errors import not_found, unauthorized


@dataclass(frozen=True)
class User:
    user_id: str
    email: str


def get_user(x_user_id: str | None = Header(default=None)) -> User:
    user_id = (x_user_id or "").strip().lower()
    if not user_id:
        raise unauthorized()
    return User(user_id=user_id, email=user_id)


def member_board_or_404(session: Session, board_public_id: str, user: User) -> RowMapping:
    """Load a live board together with the caller's workspace role.

    Missing boards, deleted boards and boards in a workspace the user does
    not belong to are indistinguishable to the caller.
    """
    stmt = (
        select(board, workspace_member.c.role)
        .join(workspace_member, workspace_member.c.workspace_id == board.c.workspace_id)
        .where(
            board.c.public_id == board_public_id,
            board.c.deleted_at.is_(None),
            workspace_member.c.user_id == user.user_id,
        )
    )
    row = session.execute(stmt).mappings().one_or_none()
    if row is None:
        raise not_found()
    return row
