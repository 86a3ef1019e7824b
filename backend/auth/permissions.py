"""
Container role resolution and permission predicates.

This module answers two questions for workspaces and projects:
- What role (if any) does a user hold in a container?
- Does that role allow reading, writing, or managing members?

Roles are ordered (viewer < member < admin < owner) and every predicate is a
threshold on that order, so adding a role never requires touching more than
the enum.
"""

import logging
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import Forbidden, NotFound, StorageFailure
from models import (
    ContainerScope, Project, ProjectMember, ProjectScope, Role, Workspace,
    WorkspaceMember, WorkspaceScope,
)

logger = logging.getLogger(__name__)

RolePredicate = Callable[[Optional[Role]], bool]


def membership_table(container: ContainerScope):
    """Return (membership model, its container foreign key column)."""
    if isinstance(container, ProjectScope):
        return ProjectMember, ProjectMember.project_id
    if isinstance(container, WorkspaceScope):
        return WorkspaceMember, WorkspaceMember.workspace_id
    raise TypeError(f"Not a container scope: {container!r}")


def _container_label(container: ContainerScope) -> str:
    return "Project" if isinstance(container, ProjectScope) else "Workspace"


# ============== Role Resolver ==============

def role_of(db: Session, container: ContainerScope, user_id: int) -> Optional[Role]:
    """
    Look up a user's role in a workspace or project.

    Args:
        db: Database session
        container: ProjectScope or WorkspaceScope to look in
        user_id: ID of the user

    Returns:
        The member's Role, or None when the user has no membership

    Raises:
        StorageFailure: If the lookup itself fails (authorization fails closed)

    Example:
        >>> role = role_of(db, WorkspaceScope(3), user.id)
        >>> can_write(role)
        True
    """
    model, container_column = membership_table(container)
    logger.debug(f"Resolving role of user {user_id} in {container}")

    try:
        role = db.execute(
            select(model.role).where(container_column == container.id, model.user_id == user_id)
        ).scalar_one_or_none()
    except SQLAlchemyError:
        logger.exception(f"Role lookup failed for user {user_id} in {container}, denying")
        db.rollback()
        raise StorageFailure()

    logger.debug(f"User {user_id} has role {role.value if role else None} in {container}")
    return role


# ============== Permission Predicates ==============

def has_role_at_least(role: Optional[Role], minimum: Role) -> bool:
    """Check if role meets or exceeds minimum. None never does."""
    return role is not None and role.rank >= minimum.rank


def can_read(role: Optional[Role]) -> bool:
    return has_role_at_least(role, Role.viewer)


def can_write(role: Optional[Role]) -> bool:
    return has_role_at_least(role, Role.member)


def can_manage_members(role: Optional[Role]) -> bool:
    return has_role_at_least(role, Role.admin)


def roles_satisfying(predicate: RolePredicate) -> list[Role]:
    """All roles for which predicate holds, e.g. the readable roles for listing."""
    return [role for role in Role if predicate(role)]


def readable_container_ids(model, container_column, user_id: int):
    """
    Subquery of container ids in which the user holds a readable role.

    Used inside the task listing filter so the disjunction is evaluated by
    the database instead of post-filtering in Python.
    """
    return select(container_column).where(
        model.user_id == user_id,
        model.role.in_(roles_satisfying(can_read)),
    )


# ============== Container guards ==============

def get_container_or_404(db: Session, container: ContainerScope):
    """Load the Workspace/Project row behind a scope or raise NotFound."""
    model = Project if isinstance(container, ProjectScope) else Workspace
    entity = db.get(model, container.id)
    if entity is None:
        label = _container_label(container)
        logger.info(f"{label} {container.id} not found")
        raise NotFound(f"{label} not found")
    return entity


def require_container_permission(
    db: Session,
    container: ContainerScope,
    user_id: int,
    predicate: RolePredicate,
) -> Role:
    """
    Require a user's container role to satisfy a predicate, or raise.

    Container existence is acknowledged to callers: a missing container is a
    404 but a denied user gets 403.

    Args:
        db: Database session
        container: ProjectScope or WorkspaceScope
        user_id: ID of the requesting user
        predicate: One of can_read, can_write, can_manage_members

    Returns:
        The resolved role

    Raises:
        NotFound: 404 if the container does not exist
        Forbidden: 403 if the role does not satisfy predicate
    """
    get_container_or_404(db, container)

    role = role_of(db, container, user_id)
    if not predicate(role):
        logger.info(
            f"User {user_id} with role {role.value if role else None} denied "
            f"{predicate.__name__} on {container}"
        )
        raise Forbidden()

    logger.debug(f"Permission {predicate.__name__} granted to user {user_id} on {container}")
    return role
