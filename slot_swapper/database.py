# database.py
from databases import Database
from sqlalchemy import create_engine, MetaData

from slot_swapper.config import DATABASE_URL

# Create the core database objects
database = Database(DATABASE_URL)
metadata = MetaData()
engine = create_engine(DATABASE_URL)
