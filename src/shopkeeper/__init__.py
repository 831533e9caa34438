"""Shopkeeper: Stripe Checkout and Billing Portal integration with webhook-synchronized state."""

__version__ = "0.1.0"
