"""CreditAccount model: the per-user credit balance row."""

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditAccount(Base):
    """Current credit balance. Mutated only through services.credits."""

    __tablename__ = "credits"
    __table_args__ = (
        CheckConstraint("credits_remaining >= 0", name="ck_credits_non_negative"),
    )

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    credits_remaining = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="credit_account")
