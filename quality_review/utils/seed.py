from __future__ import annotations

from sqlalchemy import inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from quality_review.domain.models import Audience, roles_for_audience
from quality_review.infrastructure.db import utcnow
from quality_review.infrastructure.logging import get_logger
from quality_review.infrastructure.models import (
    Base,
    BoardORM,
    CardAssigneeORM,
    CardORM,
    UserCompanyRoleORM,
    UserORM,
)
from quality_review.infrastructure.repositories import DimensionRepo

logger = get_logger(__name__)

DEMO_USERS: list[tuple[str, str, list[str]]] = [
    ("Ada Admin", "SUPER_ADMIN", ["Head of Art"]),
    ("Lee Lead", "MEMBER", ["Tech Lead"]),
    ("Pat Owner", "MEMBER", ["Product Owner"]),
    ("Val Viewer", "VIEWER", []),
    ("Dana Developer", "MEMBER", ["Developer"]),
]

DEMO_QUESTIONS: list[tuple[str, str, Audience]] = [
    ("Code quality", "Readable, tested and consistent with the codebase", Audience.LEAD),
    ("Acceptance", "Meets the acceptance criteria of the story", Audience.PO),
    ("Polish", "Visual and interaction finish", Audience.BOTH),
]


def initialise_database(engine: Engine) -> bool:
    """
    Ensure all ORM tables exist.

    Returns:
        True if every table already existed before this call, False if at least one table
        needed to be created.
    """

    inspector = inspect(engine)
    existing_tables = set(inspector.get_table_names())
    expected_tables = [table.name for table in Base.metadata.sorted_tables]
    already_exists = all(table in existing_tables for table in expected_tables)
    Base.metadata.create_all(engine)
    return already_exists


def seed_demo_data(session: Session) -> dict[str, int]:
    """Insert a small board with users, review questions and tasks. Flushes only."""
    users = []
    for name, permission, role_names in DEMO_USERS:
        user = UserORM(name=name, permission=permission)
        user.company_roles = [UserCompanyRoleORM(role_name=role) for role in role_names]
        session.add(user)
        users.append(user)

    board = BoardORM(name="Demo board")
    session.add(board)
    session.flush()

    repo = DimensionRepo(session)
    for name, description, audience in DEMO_QUESTIONS:
        repo.create(name=name, description=description, roles=roles_for_audience(audience))

    developer = users[-1]
    for index, points in enumerate([3, 5, 8], start=1):
        card = CardORM(
            board_id=board.id,
            title=f"Demo task {index}",
            card_type="TASK",
            payload={"storyPoints": points},
            phase="BACKLOG",
            updated_at=utcnow(),
        )
        card.assignees = [CardAssigneeORM(user_id=developer.id)]
        session.add(card)
    session.flush()

    counts = {
        "users": len(DEMO_USERS),
        "questions": len(DEMO_QUESTIONS),
        "cards": 3,
        "board_id": board.id,
    }
    logger.info("Seeded demo data", extra=counts)
    return counts
