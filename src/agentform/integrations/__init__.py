"""Outbound integrations: payload builders, signed webhook delivery and the type registry."""
