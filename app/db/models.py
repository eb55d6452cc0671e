from sqlalchemy.orm import declarative_base
from sqlalchemy import Column, Integer, String, DateTime, Text

Base = declarative_base()

class AuditEntry(Base):
    __tablename__ = "audit_events"
    id = Column(Integer, primary_key=True)
    ts = Column(DateTime(timezone=True), index=True)
    source = Column(String(32), default="event")   # кто написал: event / admin
    message = Column(Text)
