"""Project model: one image generation request."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


PROJECT_STATUSES = ("pending", "processing", "completed", "failed")
PAYMENT_STATUSES = ("pending", "paid", "not_required")


class Project(Base):
    """Generation request owned by a single user."""

    __tablename__ = "projects"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    input_image_url = Column(String, nullable=True)
    output_image_url = Column(String, nullable=True)  # set only once status is completed
    prompt = Column(Text, nullable=False)
    model_key = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)
    payment_status = Column(String, nullable=False, default="pending")
    payment_amount = Column(Integer, nullable=False, default=0)  # minor currency units
    currency = Column(String, nullable=True)
    stripe_checkout_session_id = Column(String, nullable=True, index=True)
    stripe_payment_intent_id = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="projects")
