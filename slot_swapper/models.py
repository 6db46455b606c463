# models.py
import sqlalchemy
from slot_swapper.database import metadata

# 'users' table
users = sqlalchemy.Table(
    "users",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.String(32), primary_key=True),
    sqlalchemy.Column("name", sqlalchemy.String),
    sqlalchemy.Column("email", sqlalchemy.String, unique=True, index=True),
    sqlalchemy.Column("hashed_password", sqlalchemy.String),
    sqlalchemy.Column("created_at", sqlalchemy.DateTime(timezone=True)),
)

# 'slots' table
# pending_swap_id names the PENDING swap request holding the slot while it is SWAP_PENDING.
# revision is replaced on every write and guards compare-and-set updates.
slots = sqlalchemy.Table(
    "slots",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.String(32), primary_key=True),
    sqlalchemy.Column("owner_id", sqlalchemy.String(32), sqlalchemy.ForeignKey("users.id"), index=True),
    sqlalchemy.Column("title", sqlalchemy.String),
    sqlalchemy.Column("start_time", sqlalchemy.DateTime(timezone=True)),
    sqlalchemy.Column("end_time", sqlalchemy.DateTime(timezone=True)),
    sqlalchemy.Column("status", sqlalchemy.String(16), default="BUSY", index=True),
    sqlalchemy.Column("pending_swap_id", sqlalchemy.String(32), nullable=True),
    sqlalchemy.Column("revision", sqlalchemy.String(32)),
    sqlalchemy.Column("created_at", sqlalchemy.DateTime(timezone=True)),
)

# 'swap_requests' table
# Slot references are plain columns: slots may be deleted while history rows survive.
swap_requests = sqlalchemy.Table(
    "swap_requests",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.String(32), primary_key=True),
    sqlalchemy.Column("requester_id", sqlalchemy.String(32), sqlalchemy.ForeignKey("users.id"), index=True),
    sqlalchemy.Column("requester_slot_id", sqlalchemy.String(32), index=True),
    sqlalchemy.Column("target_user_id", sqlalchemy.String(32), sqlalchemy.ForeignKey("users.id"), index=True),
    sqlalchemy.Column("target_slot_id", sqlalchemy.String(32), index=True),
    sqlalchemy.Column("status", sqlalchemy.String(16), default="PENDING"),
    sqlalchemy.Column("revision", sqlalchemy.String(32)),
    sqlalchemy.Column("created_at", sqlalchemy.DateTime(timezone=True)),
    sqlalchemy.Column("updated_at", sqlalchemy.DateTime(timezone=True)),
)
