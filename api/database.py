"""
Database engine — SQLAlchemy + psycopg2.
"""
from sqlalchemy import create_engine

from pipeline.config import DATABASE_URL

engine = create_engine(DATABASE_URL, pool_pre_ping=True)
