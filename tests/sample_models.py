"""
Mapped entities used by the test suite (and importable with --models sample_models).
"""

from sqlalchemy import Column, DateTime, Integer, LargeBinary, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class Book(Base):
    __tablename__ = "books"

    id = Column(Integer, primary_key=True)
    title = Column(String(200), nullable=False)
    tenant_id = Column(String(50), nullable=True)
    pages = Column(Integer, nullable=True)
    published_at = Column(DateTime, nullable=True)


class Author(Base):
    __tablename__ = "authors"

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)


class Cover(Base):
    __tablename__ = "covers"

    id = Column(Integer, primary_key=True)
    image = Column(LargeBinary, nullable=True)
