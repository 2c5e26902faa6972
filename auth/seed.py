"""
auth/seed.py -- Idempotent seeding of default permissions, roles and the admin user.

Creates, only where missing:
  - every permission in auth.permissions.PERMISSIONS
  - role "admin" holding all of them
  - role "user" holding none
  - user "admin" with the "admin" role (only when an admin password is given)

Safe to run on every deploy: existing rows are left untouched.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from auth.models import Role, User
from auth.passwords import hash_password
from auth.permissions import PERMISSIONS
from auth.store import UserStore

logger = logging.getLogger("userdir.auth")

ADMIN_ROLE = "admin"
USER_ROLE = "user"
ADMIN_USERNAME = "admin"


def seed_permissions(store: UserStore) -> None:
    for name, description in PERMISSIONS.items():
        if store.get_permission_by_name(name) is None:
            store.create_permission(name, description)
            logger.info("Seeded permission %s", name)


def seed_roles(store: UserStore) -> Role:
    """Create the default roles. Returns the admin role."""
    admin = store.get_role_by_name(ADMIN_ROLE)
    if admin is None:
        admin = store.create_role(
            ADMIN_ROLE,
            "Administrator with full access",
            [p.id for p in store.list_permissions()],
        )
        logger.info("Seeded role %s", ADMIN_ROLE)
    if store.get_role_by_name(USER_ROLE) is None:
        store.create_role(USER_ROLE, "Regular user without administrative permissions")
        logger.info("Seeded role %s", USER_ROLE)
    return admin


def seed_admin_user(store: UserStore, admin_role: Role, password: str) -> User | None:
    """Create the admin user if absent. Returns the new user, or None if it already existed."""
    if store.get_by_username(ADMIN_USERNAME) is not None:
        return None
    user = store.create_user(ADMIN_USERNAME, hash_password(password), [admin_role.id])
    logger.info("Seeded admin user (id=%s)", user.id)
    return user


def seed_defaults(store: UserStore, admin_password: str | None = None) -> None:
    seed_permissions(store)
    admin_role = seed_roles(store)
    if admin_password:
        seed_admin_user(store, admin_role, admin_password)
