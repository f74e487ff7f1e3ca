"""
User Model - local mirror of identity-provider users
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean

from fintrack.db.database import Base
from fintrack.db.models.webhook_event import utcnow

DEFAULT_FIRST_NAME = "User"


class User(Base):
    """Local user record, keyed by the identity provider's subject id"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    subject_id = Column(String(200), unique=True, index=True, nullable=False)
    # stored lower-cased; unique so a second subject can never claim the same inbox
    email = Column(String(320), unique=True, index=True, nullable=False)
    first_name = Column(String(100), nullable=False, default=DEFAULT_FIRST_NAME)
    last_name = Column(String(100), nullable=False, default="")
    phone_number = Column(String(32), nullable=True)
    avatar = Column(String(1000), nullable=True)
    username = Column(String(100), unique=True, nullable=True)

    last_sign_in_at = Column(DateTime(timezone=True), nullable=True)
    is_onboarded = Column(Boolean, nullable=False, default=False)

    # Preferences
    theme = Column(String(10), nullable=False, default="light")
    currency = Column(String(10), nullable=False, default="IN")
    language = Column(String(10), nullable=False, default="en")

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()
