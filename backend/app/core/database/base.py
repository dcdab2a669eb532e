# backend/app/core/database/base.py
"""
SQLAlchemy declarative base.

All models of this layer derive from Base so DatabaseService.init_db() can
create their tables in one call.
"""

from sqlalchemy.orm import declarative_base

# Declarative base for all models
Base = declarative_base()
