from sqlalchemy import (
    Boolean,
    Column,
    Date,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
)
from sqlalchemy.engine import Engine

metadata = MetaData()

customers = Table(
    "customers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(30), nullable=False),
    Column("email", String(120), nullable=False),
    Column("phone", String(20)),
    Column("address", String(120)),
    Column("city", String(30)),
    Column("postcode", String(12)),
    Column("country", String(20)),
)

reservations = Table(
    "reservations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("cust_id", Integer, ForeignKey("customers.id"), nullable=False),
    # NULL until the guest checks in and a room is assigned.
    Column("room_no", Integer, nullable=True),
    Column("checkin_date", Date, nullable=False),
    Column("checkout_date", Date, nullable=False),
    Column("no_guests", Integer, nullable=False, server_default="1"),
    Column("booking_date", Date),
)

invoices = Table(
    "invoices",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("res_id", Integer, ForeignKey("reservations.id"), nullable=False),
    Column("total", Numeric(8, 2), nullable=False),
    Column("invoice_date", Date, nullable=False),
    Column("paid", Boolean, nullable=False, server_default="0"),
)


def create_schema(engine: Engine) -> None:
    metadata.create_all(engine)


def drop_schema(engine: Engine) -> None:
    metadata.drop_all(engine)
