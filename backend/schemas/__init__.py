# Pydantic models for orders, webhooks and the fulfillment payload
