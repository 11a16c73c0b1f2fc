"""BillingProfile model mapping users to Stripe customers."""

from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class BillingProfile(Base):
    """At most one Stripe customer per user."""

    __tablename__ = "billing_profiles"

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    stripe_customer_id = Column(String, unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="billing_profile")
