"""
Plain customer maintenance. Each call is one short DbSession; nothing here
compares snapshots, so concurrent edits of a customer go through
update_customer_email instead.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import delete, insert, select

from ..db.lease import LeaseManager
from ..db.session import DbSession
from .schema import customers

logger = logging.getLogger(__name__)

LISTED_FIELDS = ("id", "name", "city", "phone")


def list_customers(manager: LeaseManager, city: Optional[str] = None) -> list[dict[str, Any]]:
    """
    Customers ordered by id, optionally only those whose city starts with `city`.
    """
    stmt = select(*(customers.c[name] for name in LISTED_FIELDS)).order_by(customers.c.id)
    if city is not None:
        stmt = stmt.where(customers.c.city.startswith(city, autoescape=True))
    with DbSession(manager) as session:
        return session.fetch_all(stmt)


def create_customer(
    manager: LeaseManager,
    name: str,
    email: str,
    phone: Optional[str] = None,
    country: Optional[str] = None,
) -> Any:
    """Insert a customer and return the generated id."""
    stmt = insert(customers).values(name=name, email=email, phone=phone, country=country)
    with DbSession(manager) as session:
        if session.supports_returning:
            stmt = stmt.returning(customers.c.id)
        customer_id = session.execute_insert(stmt)
    logger.info("Created customer %s", customer_id)
    return customer_id


def delete_customer(manager: LeaseManager, customer_id: int) -> bool:
    """
    Delete one customer. Returns False if there was no such customer.

    Customers that still have reservations are rejected by the foreign key
    on databases that enforce it.
    """
    with DbSession(manager) as session:
        deleted = session.execute(delete(customers).where(customers.c.id == customer_id))
    if deleted:
        logger.info("Deleted customer %s", customer_id)
    return deleted > 0
