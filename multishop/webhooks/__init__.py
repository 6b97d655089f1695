"""Webhook inbound system.

Receives Clerk identity webhooks delivered through Svix.
Each webhook is signature-verified, schema-validated, deduplicated and
applied to the local users table.
"""
