"""
Database models using SQLAlchemy ORM
Backing store for the per-user input registry and node devices
"""
from datetime import datetime
from sqlalchemy import (
    Column, String, DateTime, Float, Integer, BigInteger, Text, UniqueConstraint
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class Input(Base):
    """
    Input registry - one row per named telemetry channel under a user's node
    Holds the latest sample and the processing chain triggered by it
    """
    __tablename__ = "input"
    __table_args__ = (
        UniqueConstraint("userid", "nodeid", "name", name="uq_input_user_node_name"),
    )
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    userid = Column(Integer, nullable=False, index=True)
    nodeid = Column(String(64), nullable=False)
    name = Column(String(64), nullable=False)
    description = Column(String(128), nullable=False, default="")
    processList = Column(Text, nullable=False, default="")
    time = Column(BigInteger)  # UNIX seconds of the latest sample
    value = Column(Float)
    
    def to_record(self) -> dict:
        return {
            "id": self.id,
            "userid": self.userid,
            "nodeid": self.nodeid,
            "name": self.name,
            "description": self.description or "",
            "processList": self.processList or "",
            "time": self.time,
            "value": self.value,
        }


class Device(Base):
    """
    Device bookkeeping - one row per (user, node), created on first sight of a node
    """
    __tablename__ = "device"
    __table_args__ = (
        UniqueConstraint("userid", "nodeid", name="uq_device_user_node"),
    )
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    userid = Column(Integer, nullable=False, index=True)
    nodeid = Column(String(64), nullable=False)
    name = Column(String(64), nullable=False, default="")
    ip = Column(String(64), nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)
