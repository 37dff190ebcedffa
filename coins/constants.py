# Reserved wallet owned by the platform. Funds every purchase and giveaway.
SYSTEM_USER_ID = 0

DEFAULT_PURCHASE_DESCRIPTION = "Purchase via Stripe"
DEFAULT_GIVEAWAY_REASON = "Admin giveaway"
DEFAULT_TRANSFER_DESCRIPTION = "User transfer"

DEFAULT_HISTORY_LIMIT = 10
