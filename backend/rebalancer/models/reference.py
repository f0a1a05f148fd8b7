"""
Reference Models: Locations and SKUs (immutable master data)
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, Boolean, DateTime
from rebalancer.database.session import Base


class Location(Base):
    __tablename__ = "locations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    location_code = Column(String(50), nullable=False, unique=True, index=True)
    location_name = Column(String(200), nullable=False)
    role = Column(String(50), nullable=False)  # central_warehouse, hub, store
    region = Column(String(100), index=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Sku(Base):
    __tablename__ = "skus"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sku_code = Column(String(50), nullable=False, unique=True, index=True)
    sku_name = Column(String(300), nullable=False)
    pack_size = Column(String(50))
    category = Column(String(100), index=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
