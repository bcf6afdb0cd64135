from sqlalchemy import Column, Integer, Text, String, Boolean, DateTime, ForeignKey, Index
from . import Base, utcnow

class Message(Base):
    __tablename__ = 'messages'
    id = Column(Integer, primary_key=True)
    sender_id = Column(Integer, ForeignKey('profiles.id', ondelete='CASCADE'), index=True, nullable=False)
    receiver_id = Column(Integer, ForeignKey('profiles.id', ondelete='CASCADE'), index=True, nullable=False)
    content = Column(Text, nullable=False)
    media_url = Column(String, nullable=True)
    read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    __table_args__ = (
        Index('ix_messages_pair_created', 'sender_id', 'receiver_id', 'created_at'),
    )
