"""
Database connection

Reads DATABASE_URL and DATABASE_NAME from the environment. When either is
missing `db` is None and handlers answer "Database not configured".
"""
import logging
import os

from dotenv import load_dotenv
from pymongo import MongoClient

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]
    logger.info("Using MongoDB database %r", DATABASE_NAME)
else:
    logger.warning("DATABASE_URL or DATABASE_NAME not set, database disabled")
