from .builders import BUILDERS, CreatedResource
from .duplicates import check_for_duplicate_processing, claim_fulfillment
from .guests import find_or_create_user_for_guest
from .notify import (
    Delivery, send_admin_sale_notification, send_confirmation_email,
)
from .processor import ProcessPaymentResult, process_approved_payment

__all__ = [
    "BUILDERS",
    "CreatedResource",
    "Delivery",
    "ProcessPaymentResult",
    "check_for_duplicate_processing",
    "claim_fulfillment",
    "find_or_create_user_for_guest",
    "process_approved_payment",
    "send_admin_sale_notification",
    "send_confirmation_email",
]
