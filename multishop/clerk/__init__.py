"""Clerk Backend API access (metadata writes)."""

from multishop.clerk.client import ClerkClient, close_clerk_client, get_clerk_client

__all__ = ["ClerkClient", "close_clerk_client", "get_clerk_client"]
