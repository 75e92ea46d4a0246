"""User model.

Users are owned by the identity/login service; this service only reads the
fields it needs to evaluate MFA policy and address OTP emails.
"""

import enum
import uuid

from sqlalchemy import Boolean, Column, DateTime, Enum as SQLEnum, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.core.database import Base
from app.utils.datetime_utils import utc_now_lambda


class UserRole(str, enum.Enum):
    """Organisation roles that an MFA policy can target."""

    EMPLOYEE = "Employee"
    MANAGER = "Manager"
    HR = "HR"
    ADMIN = "Admin"
    IT = "IT"


class User(Base):
    """User model."""

    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String(255), nullable=False, unique=True, index=True)
    display_name = Column(String(255))
    role = Column(SQLEnum(UserRole, name="user_role"), nullable=False, default=UserRole.EMPLOYEE)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utc_now_lambda, nullable=False)

    # Relationships
    mfa = relationship(
        "UserMFA", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    trusted_devices = relationship(
        "TrustedDevice", back_populates="user", cascade="all, delete-orphan"
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def __repr__(self):
        return f"<User {self.id} role={self.role}>"
