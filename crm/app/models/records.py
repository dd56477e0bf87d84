"""
Pipeline CRM Contact, Company, Activity and Message Models
"""

from sqlalchemy import Column, String, DateTime, Text, ForeignKey, JSON, Uuid
import uuid

from ..core.clock import utcnow
from ..core.database import Base


class Company(Base):
    """Company (account) record"""
    __tablename__ = "companies"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(200), nullable=False)
    domain = Column(String(255))
    phone = Column(String(50))
    address = Column(JSON)
    enrichment_data = Column(JSON)
    tags = Column(JSON, default=list)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Contact(Base):
    """Contact (person) record"""
    __tablename__ = "contacts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, ForeignKey("companies.id"))
    first_name = Column(String(100))
    last_name = Column(String(100))
    email = Column(String(255), index=True)
    phone = Column(String(50))
    avatar_url = Column(Text)
    linkedin_url = Column(Text)
    twitter_handle = Column(String(100))
    address = Column(JSON)
    enrichment_data = Column(JSON)
    tags = Column(JSON, default=list)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def full_name(self) -> str:
        if self.first_name and self.last_name:
            return f"{self.first_name} {self.last_name}"
        return self.email or ""


class Activity(Base):
    """Call, meeting, task or note logged against a record"""
    __tablename__ = "activities"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    type = Column(String(50), nullable=False)
    subject = Column(String(200))
    description = Column(Text)
    ai_summary = Column(Text)
    contact_id = Column(Uuid, ForeignKey("contacts.id"))
    deal_id = Column(Uuid, ForeignKey("deals.id"))
    tags = Column(JSON, default=list)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Message(Base):
    """Inbound or outbound conversation message"""
    __tablename__ = "messages"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    contact_id = Column(Uuid, ForeignKey("contacts.id"))
    direction = Column(String(20))
    channel = Column(String(20))
    content = Column(Text)
    media_url = Column(Text)
    tags = Column(JSON, default=list)
    timestamp = Column(DateTime, default=utcnow, index=True)
