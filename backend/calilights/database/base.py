# backend/calilights/database/base.py
"""Declarative base shared by every engine table."""

from sqlalchemy.orm import declarative_base

Base = declarative_base()
