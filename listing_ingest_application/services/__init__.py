"""Stores and external service clients used by activities and the webhook server."""
