# Overview: Mirrors identity provider accounts into local User rows.

from __future__ import annotations

from ..extensions import db
from ..models import User
from ..models.auth import ROLE_CUSTOMER, VALID_ROLES
from ..errors import NotFoundError
from ..validation import ValidationError
from storefront.time_utils import utcnow


def upsert_user_from_identity(assertion: dict) -> User:
    """
    Create or refresh the local user for a verified identity assertion.

    The assertion is the identity provider's profile: provider, subject,
    email, name and optionally phone and role. A role in the assertion is
    applied on every login; without one, new users start as CUSTOMER and
    existing users keep their role.

    Raises:
        ValidationError: if provider/subject are missing or role is unknown
    """
    if not isinstance(assertion, dict):
        raise ValidationError("Invalid identity assertion")

    provider = str(assertion.get("provider") or "").strip()
    subject = str(assertion.get("subject") or "").strip()
    if not provider or not subject:
        raise ValidationError("provider and subject are required")

    role = assertion.get("role")
    if role is not None and role not in VALID_ROLES:
        raise ValidationError(f"role must be one of: {', '.join(VALID_ROLES)}")

    user = db.session.query(User).filter_by(provider=provider, subject=subject).first()
    if user is None:
        user = User(provider=provider, subject=subject, role=role or ROLE_CUSTOMER, is_active=True)
        db.session.add(user)
    elif role is not None:
        user.role = role

    for field in ("email", "name", "phone"):
        value = assertion.get(field)
        if value:
            setattr(user, field, str(value).strip())

    user.last_login_at = utcnow()
    db.session.commit()
    return user


def set_user_role(email: str, role: str) -> User:
    """Change a user's role (CLI/admin bootstrap)."""
    if role not in VALID_ROLES:
        raise ValidationError(f"role must be one of: {', '.join(VALID_ROLES)}")

    user = db.session.query(User).filter_by(email=email).first()
    if not user:
        raise NotFoundError(f"User {email} not found")

    user.role = role
    db.session.commit()
    return user
