"""User service - account records, passwords and OAuth linking"""

from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from typing import Optional
from datetime import datetime
from sessionguard.models.user import User, DELETED_DISPLAY_NAME
from sessionguard.core.clock import utcnow
from sessionguard.core.security import get_password_hash
import logging

logger = logging.getLogger(__name__)


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


class UserService:
    """Service for user management"""

    @staticmethod
    def get_user_by_id(db: Session, user_id: int) -> Optional[User]:
        """Get user by ID"""
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def get_user_by_email(db: Session, email: str) -> Optional[User]:
        """Get user by normalized email"""
        normalized = normalize_email(email)
        if not normalized:
            return None
        return db.query(User).filter(User.email == normalized).first()

    @staticmethod
    def create_user(
        db: Session,
        email: str,
        password: Optional[str],
        *,
        provider: str = "credentials",
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        email_verified: bool = False,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        """
        Create new user

        Args:
            db: Database session
            email: Email address (normalized before storing)
            password: Plain password, or None for OAuth-only accounts
            provider: Linked provider tag

        Returns:
            Created user, or None if the email is already taken
        """
        normalized = normalize_email(email)
        user = User(
            email=normalized,
            email_verified=email_verified,
            password_hash=get_password_hash(password) if password else None,
            provider=provider,
            display_name=display_name or normalized.split("@")[0],
            avatar_url=avatar_url,
            failed_login_attempts=0,
            created_at=now or utcnow(),
        )

        db.add(user)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("Registration raced on an existing email")
            return None
        db.refresh(user)

        logger.info(f"Created user {user.id} (provider: {provider})")
        return user

    @staticmethod
    def set_password(db: Session, user: User, password: str, *, commit: bool = True) -> None:
        user.password_hash = get_password_hash(password)
        if commit:
            db.commit()

    @staticmethod
    def mark_email_verified(db: Session, user: User) -> None:
        if not user.email_verified:
            user.email_verified = True
            db.commit()

    @staticmethod
    def find_or_create_oauth_user(
        db: Session,
        *,
        provider: str,
        email: str,
        display_name: Optional[str],
        avatar_url: Optional[str],
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        """
        Resolve an OAuth identity to a local account by verified email

        Existing credential accounts are linked; the provider tag records the
        first provider that proved ownership of the address. An account whose
        email was never verified may have been registered by someone else, so
        its password is discarded and the provider takes over the account.
        """
        user = UserService.get_user_by_email(db, email)
        if user:
            changed = False
            if not user.email_verified:
                user.email_verified = True
                user.password_hash = None
                user.provider = provider
                changed = True
                logger.warning(f"Unverified account {user.id} claimed through {provider}; password cleared")
            if not user.avatar_url and avatar_url:
                user.avatar_url = avatar_url
                changed = True
            if user.provider == "credentials" and not user.password_hash:
                user.provider = provider
                changed = True
            if changed:
                db.commit()
            return user

        user = UserService.create_user(
            db,
            email,
            None,
            provider=provider,
            display_name=display_name,
            avatar_url=avatar_url,
            email_verified=True,
            now=now,
        )
        if user is None:
            # Lost a race with a concurrent first login
            return UserService.get_user_by_email(db, email)
        return user

    @staticmethod
    def soft_delete(db: Session, user: User) -> None:
        """
        Anonymize the account, keeping the row for referential integrity

        Args:
            db: Database session
            user: User to delete
        """
        user.email = None
        user.email_verified = False
        user.password_hash = None
        user.display_name = DELETED_DISPLAY_NAME
        user.avatar_url = None
        user.failed_login_attempts = 0
        user.locked_until = None
        db.commit()

        logger.info(f"Soft-deleted user {user.id}")


# Singleton instance
user_service = UserService()
