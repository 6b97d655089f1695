"""MulTiShop backend — identity sync between Clerk and the local user store."""
