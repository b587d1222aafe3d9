"""
Collaborator Models
Reference images, seed posts and profiles. Their lifecycles are owned
elsewhere; the pipeline only reads them (and writes profile avatars).
Profile moderation flags are checked when a step executes.
"""

from datetime import datetime
from sqlalchemy import Boolean, Column, String, Text, DateTime

from stylize.core.database import Base


class ReferenceImage(Base):
    """A user-owned selfie used as generation input."""

    __tablename__ = "reference_images"

    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    pool = Column(String, nullable=False, default="private")
    storage_path = Column(String, nullable=False)
    # pending, active, deleted
    status = Column(String, nullable=False, default="active")
    created_at = Column(DateTime, default=datetime.utcnow)


class Post(Base):
    """Published post that can seed a try-this-style request."""

    __tablename__ = "posts"

    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    prompt = Column(Text, nullable=True)
    preset_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Profile(Base):
    """User profile; only the avatar fields are written here."""

    __tablename__ = "profiles"

    user_id = Column(String, primary_key=True)
    banned = Column(Boolean, nullable=False, default=False)
    shadowbanned = Column(Boolean, nullable=False, default=False)
    avatar_job_id = Column(String, nullable=True)
    avatar_version_id = Column(String, nullable=True)
    avatar_image_pool = Column(String, nullable=True)
    avatar_image_path = Column(String, nullable=True)
    avatar_thumb_pool = Column(String, nullable=True)
    avatar_thumb_path = Column(String, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
