from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from . import Base, utcnow

class Profile(Base):
    __tablename__ = 'profiles'
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=False)
    avatar_url = Column(String, nullable=True)
    field_of_study = Column(String(255), nullable=True)
    year = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class UserInterest(Base):
    __tablename__ = 'user_interests'
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey('profiles.id', ondelete='CASCADE'), index=True, nullable=False)
    category = Column(String(100), nullable=False)
    __table_args__ = (
        UniqueConstraint('user_id', 'category', name='uix_user_interest'),
    )
