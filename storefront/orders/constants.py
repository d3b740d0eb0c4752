from storefront.common.logging_setup import get_logger
from storefront.schema.full_schema import OrderStatus

logger = get_logger("storefront.orders")

ORDER_NUMBER_PREFIX = "ORD"

# statuses a customer (or admin) may still cancel from
CANCELLABLE_STATUSES = (
    OrderStatus.PENDING.value,
    OrderStatus.CONFIRMED.value,
    OrderStatus.PROCESSING.value,
)

# remote order states that are still worth handing back to a retried checkout
REUSABLE_REMOTE_STATUSES = ("CREATED", "APPROVED")

DEFAULT_PAGE_LIMIT = 10
MAX_PAGE_LIMIT = 50
