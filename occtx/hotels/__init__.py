from .checkin import check_in, fetch_customer, fetch_reservation, update_customer_email
from .customers import create_customer, delete_customer, list_customers
from .schema import create_schema, drop_schema, metadata

__all__ = [
    "check_in",
    "create_customer",
    "create_schema",
    "delete_customer",
    "drop_schema",
    "fetch_customer",
    "fetch_reservation",
    "list_customers",
    "metadata",
    "update_customer_email",
]
