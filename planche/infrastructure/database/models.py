import uuid
from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, JSON
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base

Base = declarative_base()

class Template(Base):
    __tablename__ = "template"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    planche = Column(String, nullable=False, unique=True, index=True)
    format = Column(String)
    background = Column(String)
    background_url = Column(String)
    price = Column(Float, nullable=False, default=0)
    order = Column(Integer, nullable=False, default=0)
    rotation_web = Column(Boolean)
    photos = Column(JSON)  # list of slots as authored: x, y, width, rotation, cropTop, cropBottom, effect, mug, feather
    photo_web = Column(JSON)  # {"planche": ..., "photos": [...]} or null
    create_time = Column(DateTime)
    update_time = Column(DateTime)

class Student(Base):
    __tablename__ = "student"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    student_id = Column(String, nullable=False, index=True)
    first_name = Column(String)
    last_name = Column(String)
    qr_code = Column(String)
    thumbnail_url = Column(String)
    create_time = Column(DateTime)
    update_time = Column(DateTime)
